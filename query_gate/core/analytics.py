"""Usage Analytics - Cost, Token and Latency Reporting.

Records every routing outcome (rule match, cache hit or miss, model call,
error) in a bounded in-memory buffer and:
1. Aggregates counts, cost, tokens and latency over a trailing window
2. Aggregates per-user usage for the current calendar month
3. Periodically flushes the buffer to an HTTP sink; failed flushes keep
   the events for the next attempt
"""

import asyncio
import contextlib
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Deque, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


class EventKind(str, Enum):
    """Kinds of analytics event."""

    API_CALL = "api_call"
    CACHE_HIT = "cache_hit"
    CACHE_MISS = "cache_miss"
    RULE_MATCH = "rule_match"
    ERROR = "error"


# Outcomes that produced an answer
ANSWERED_KINDS = (EventKind.API_CALL, EventKind.CACHE_HIT, EventKind.RULE_MATCH)


@dataclass(eq=False)
class AnalyticsEvent:
    """One recorded outcome."""

    kind: EventKind
    timestamp: float = field(default_factory=time.time)
    user_id: Optional[str] = None
    query: Optional[str] = None
    model: Optional[str] = None
    tokens: int = 0
    cost_usd: Decimal = field(default_factory=lambda: Decimal("0"))
    response_time_ms: Optional[float] = None
    cache_type: Optional[str] = None  # exact | semantic | precomputed
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready representation sent to the sink."""
        data: Dict[str, Any] = {
            "type": self.kind.value,
            "timestamp": int(self.timestamp * 1000),
        }
        optional = {
            "user_id": self.user_id,
            "query": self.query,
            "model": self.model,
            "tokens": self.tokens or None,
            "cost": float(self.cost_usd) if self.cost_usd else None,
            "response_time": self.response_time_ms,
            "cache_type": self.cache_type,
            "error": self.error,
        }
        data.update({key: value for key, value in optional.items() if value is not None})
        return data


@dataclass
class UsageStats:
    """Aggregates over a trailing window."""

    window_seconds: float
    total_events: int = 0
    api_calls: int = 0
    cache_hits: int = 0
    cache_misses: int = 0
    rule_matches: int = 0
    errors: int = 0
    total_cost_usd: Decimal = field(default_factory=lambda: Decimal("0"))
    total_tokens: int = 0
    avg_response_time_ms: float = 0.0

    @property
    def cache_hit_rate(self) -> float:
        """Fraction (0-1) of cache lookups that hit."""
        lookups = self.cache_hits + self.cache_misses
        return self.cache_hits / lookups if lookups else 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "window_seconds": self.window_seconds,
            "total_events": self.total_events,
            "api_calls": self.api_calls,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "rule_matches": self.rule_matches,
            "errors": self.errors,
            "total_cost_usd": float(self.total_cost_usd),
            "total_tokens": self.total_tokens,
            "avg_response_time_ms": round(self.avg_response_time_ms, 2),
            "cache_hit_rate": round(self.cache_hit_rate, 4),
        }


@dataclass
class UserUsage:
    """A user's model usage for one calendar month."""

    user_id: str
    month: str  # YYYY-MM
    request_count: int = 0
    total_tokens: int = 0
    total_cost_usd: Decimal = field(default_factory=lambda: Decimal("0"))


class UsageAnalytics:
    """Bounded event log with windowed aggregates and a periodic HTTP flush.

    Usage:
        analytics = UsageAnalytics(sink_url="https://example.com/analytics")
        analytics.track_api_call("gpt-3.5-turbo", 120, Decimal("0.00018"), 640.0)
        print(analytics.stats().to_dict())
        await analytics.flush()
    """

    def __init__(
        self,
        max_events: int = 1000,
        flush_interval: float = 60.0,
        default_window: float = 3600.0,
        sink_url: Optional[str] = None,
        sink_timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self._max_events = max_events
        self._events: Deque[AnalyticsEvent] = deque(maxlen=max_events)
        self._flush_interval = flush_interval
        self._default_window = default_window
        self._sink_url = sink_url
        self._sink_timeout = sink_timeout
        self._client = client
        self._flush_task: Optional[asyncio.Task] = None
        self._flushed_total = 0
        self._failed_flushes = 0

    @classmethod
    def from_settings(cls, settings, client: Optional[httpx.AsyncClient] = None) -> "UsageAnalytics":
        """Build from an ``AnalyticsSettings`` section."""
        return cls(
            max_events=settings.max_events,
            flush_interval=settings.flush_interval_seconds,
            default_window=settings.default_window_seconds,
            sink_url=settings.sink_url,
            sink_timeout=settings.sink_timeout_seconds,
            client=client,
        )

    def __len__(self) -> int:
        return len(self._events)

    @property
    def sink_configured(self) -> bool:
        return bool(self._sink_url)

    # -------------------------------------------------------------------------
    # Recording
    # -------------------------------------------------------------------------

    def record(self, event: AnalyticsEvent) -> None:
        """Append an event; the oldest is dropped once the buffer is full."""
        self._events.append(event)

    def track_api_call(
        self,
        model: str,
        tokens: int,
        cost_usd: Decimal,
        response_time_ms: float,
        user_id: Optional[str] = None,
        query: Optional[str] = None,
    ) -> None:
        self.record(
            AnalyticsEvent(
                kind=EventKind.API_CALL,
                model=model,
                tokens=tokens,
                cost_usd=Decimal(cost_usd),
                response_time_ms=response_time_ms,
                user_id=user_id,
                query=query,
            )
        )

    def track_cache_hit(
        self,
        cache_type: str,
        response_time_ms: float,
        user_id: Optional[str] = None,
    ) -> None:
        self.record(
            AnalyticsEvent(
                kind=EventKind.CACHE_HIT,
                cache_type=cache_type,
                response_time_ms=response_time_ms,
                user_id=user_id,
            )
        )

    def track_cache_miss(self, user_id: Optional[str] = None, query: Optional[str] = None) -> None:
        self.record(AnalyticsEvent(kind=EventKind.CACHE_MISS, user_id=user_id, query=query))

    def track_rule_match(self, response_time_ms: float, user_id: Optional[str] = None) -> None:
        self.record(
            AnalyticsEvent(
                kind=EventKind.RULE_MATCH,
                response_time_ms=response_time_ms,
                user_id=user_id,
            )
        )

    def track_error(
        self,
        error: str,
        user_id: Optional[str] = None,
        query: Optional[str] = None,
    ) -> None:
        self.record(AnalyticsEvent(kind=EventKind.ERROR, error=error, user_id=user_id, query=query))

    # -------------------------------------------------------------------------
    # Aggregation
    # -------------------------------------------------------------------------

    def stats(self, window_seconds: Optional[float] = None) -> UsageStats:
        """Aggregate the events recorded within the trailing window."""
        window = self._default_window if window_seconds is None else window_seconds
        window_start = time.time() - window
        recent = [e for e in self._events if e.timestamp >= window_start]

        stats = UsageStats(window_seconds=window, total_events=len(recent))
        response_times = []
        for event in recent:
            if event.kind == EventKind.API_CALL:
                stats.api_calls += 1
                stats.total_cost_usd += event.cost_usd
                stats.total_tokens += event.tokens
            elif event.kind == EventKind.CACHE_HIT:
                stats.cache_hits += 1
            elif event.kind == EventKind.CACHE_MISS:
                stats.cache_misses += 1
            elif event.kind == EventKind.RULE_MATCH:
                stats.rule_matches += 1
            elif event.kind == EventKind.ERROR:
                stats.errors += 1

            if event.kind in ANSWERED_KINDS:
                response_times.append(event.response_time_ms or 0.0)

        if response_times:
            stats.avg_response_time_ms = sum(response_times) / len(response_times)
        return stats

    def usage_for_user(self, user_id: str, now: Optional[datetime] = None) -> UserUsage:
        """Model usage of one user for the current calendar month (UTC)."""
        now = now or datetime.now(timezone.utc)
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
        start_ts = month_start.timestamp()

        usage = UserUsage(user_id=user_id, month=month_start.strftime("%Y-%m"))
        for event in self._events:
            if (
                event.kind == EventKind.API_CALL
                and event.user_id == user_id
                and event.timestamp >= start_ts
            ):
                usage.request_count += 1
                usage.total_tokens += event.tokens
                usage.total_cost_usd += event.cost_usd
        return usage

    def events(self) -> List[AnalyticsEvent]:
        """Copy of the buffered events (for debugging)."""
        return list(self._events)

    def clear(self) -> None:
        self._events.clear()

    # -------------------------------------------------------------------------
    # Flushing
    # -------------------------------------------------------------------------

    async def flush(self) -> int:
        """Send buffered events to the sink.

        Only the events that were sent are removed on success; on any failure
        the buffer is left as it was.

        Returns:
            Number of events flushed
        """
        if not self._sink_url or not self._events:
            return 0

        batch = list(self._events)
        payload = {"events": [event.to_dict() for event in batch]}
        try:
            if self._client is not None:
                response = await self._client.post(
                    self._sink_url, json=payload, timeout=self._sink_timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self._sink_timeout) as client:
                    response = await client.post(self._sink_url, json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            self._failed_flushes += 1
            logger.warning(f"Failed to flush {len(batch)} analytics events: {e}")
            return 0

        sent = {id(event) for event in batch}
        remaining = [event for event in self._events if id(event) not in sent]
        self._events = deque(remaining, maxlen=self._max_events)
        self._flushed_total += len(batch)
        logger.info(f"Flushed {len(batch)} analytics events")
        return len(batch)

    async def _flush_loop(self) -> None:
        while True:
            await asyncio.sleep(self._flush_interval)
            await self.flush()

    def start(self) -> None:
        """Start the periodic flush loop."""
        if self._flush_task is not None and not self._flush_task.done():
            return
        self._flush_task = asyncio.get_running_loop().create_task(self._flush_loop())

    async def stop(self) -> None:
        """Stop the flush loop and make a final flush attempt."""
        if self._flush_task is not None:
            self._flush_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._flush_task
            self._flush_task = None
        await self.flush()

    def flush_status(self) -> Dict[str, Any]:
        return {
            "buffered": len(self._events),
            "flushed_total": self._flushed_total,
            "failed_flushes": self._failed_flushes,
            "sink_configured": self.sink_configured,
        }
