"""Priority Request Queue - Admission Control and Fair Scheduling.

Requests are admitted up to a fixed depth and dispatched one at a time,
highest priority first, by a background worker that pauses for a fixed
interval between items to protect the upstream provider.

Priority = tier weight (vendor > premium > free) + active-session bonus.
Equal priorities dispatch in arrival order. A long run of high-priority
arrivals can starve low-priority ones; entries that wait past the timeout
are evicted and their callers get a timeout error.
"""

import asyncio
import contextlib
import itertools
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .errors import InternalPipelineError, QueueFullError, QueueTimeoutError

logger = logging.getLogger(__name__)

# processor(query, user_id) -> result handed back to the caller
QueueProcessorFn = Callable[[str, Optional[str]], Awaitable[Any]]

_request_ids = itertools.count(1)


class UserTier(str, Enum):
    """Caller tiers, from lowest to highest priority."""

    FREE = "free"
    PREMIUM = "premium"
    VENDOR = "vendor"


DEFAULT_TIER_WEIGHTS: Dict[UserTier, int] = {
    UserTier.VENDOR: 100,
    UserTier.PREMIUM: 50,
    UserTier.FREE: 10,
}


@dataclass(eq=False)
class QueuedRequest:
    """A request admitted to the queue and waiting for dispatch."""

    id: str
    query: str
    user_id: Optional[str]
    user_tier: UserTier
    priority: int  # Higher = dispatched first
    processor: QueueProcessorFn
    future: "asyncio.Future[Any]"
    timestamp: float = field(default_factory=time.time)
    timeout_handle: Optional[asyncio.TimerHandle] = None

    @property
    def wait_seconds(self) -> float:
        return time.time() - self.timestamp


class RequestQueue:
    """Bounded priority queue drained by a single paced worker.

    Features:
    - Admission control at a fixed maximum depth
    - Tier-based priority, FIFO within a priority
    - Timeout eviction of stale entries
    - Fixed delay between dispatches
    """

    def __init__(
        self,
        max_queue_size: int = 100,
        max_wait: float = 30.0,
        dispatch_interval: float = 0.1,
        tier_weights: Optional[Dict[UserTier, int]] = None,
        active_session_bonus: int = 10,
    ):
        self._queue: List[QueuedRequest] = []
        self._max_queue_size = max_queue_size
        self._max_wait = max_wait
        self._dispatch_interval = dispatch_interval
        self._tier_weights = dict(DEFAULT_TIER_WEIGHTS)
        if tier_weights:
            self._tier_weights.update(tier_weights)
        self._session_bonus = active_session_bonus
        self._worker: Optional[asyncio.Task] = None

        # Stats
        self._dispatched = 0
        self._rejected = 0
        self._timed_out = 0

    @classmethod
    def from_settings(cls, settings) -> "RequestQueue":
        """Build from a ``QueueSettings`` section."""
        return cls(
            max_queue_size=settings.max_queue_size,
            max_wait=settings.max_wait_seconds,
            dispatch_interval=settings.dispatch_interval_seconds,
            tier_weights={
                UserTier.VENDOR: settings.vendor_weight,
                UserTier.PREMIUM: settings.premium_weight,
                UserTier.FREE: settings.free_weight,
            },
            active_session_bonus=settings.active_session_bonus,
        )

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def processing(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def calculate_priority(self, user_tier: UserTier, is_active_session: bool = True) -> int:
        """Priority from tier weight plus the active-session bonus."""
        bonus = self._session_bonus if is_active_session else 0
        return self._tier_weights[UserTier(user_tier)] + bonus

    async def enqueue(
        self,
        query: str,
        user_id: Optional[str],
        processor: QueueProcessorFn,
        user_tier: UserTier = UserTier.FREE,
    ) -> Any:
        """Admit a request and wait for the processor's result.

        Raises:
            QueueFullError: If the queue is already at its maximum depth
            QueueTimeoutError: If the request waits past the timeout
        """
        if len(self._queue) >= self._max_queue_size:
            self._rejected += 1
            logger.warning(f"Request queue full ({self._max_queue_size}), rejecting request")
            raise QueueFullError("Request queue is full. Please try again later.")

        loop = asyncio.get_running_loop()
        tier = UserTier(user_tier)
        request = QueuedRequest(
            id=f"req-{next(_request_ids)}",
            query=query,
            user_id=user_id,
            user_tier=tier,
            priority=self.calculate_priority(tier),
            processor=processor,
            future=loop.create_future(),
        )
        request.timeout_handle = loop.call_later(self._max_wait, self._expire, request)

        # Insert before the first entry with strictly lower priority
        index = next(
            (i for i, queued in enumerate(self._queue) if queued.priority < request.priority),
            len(self._queue),
        )
        self._queue.insert(index, request)
        logger.debug(
            f"Enqueued request {request.id} ({tier.value}, priority {request.priority}) "
            f"at position {index}"
        )

        if not self.processing:
            self._worker = loop.create_task(self._run())
            self._worker.add_done_callback(self._on_worker_done)

        return await request.future

    def _expire(self, request: QueuedRequest) -> None:
        """Evict a request that is still waiting."""
        if request in self._queue:
            self._queue.remove(request)
            self._timed_out += 1
            logger.warning(f"Request {request.id} evicted after {self._max_wait:.0f}s in queue")
            if not request.future.done():
                request.future.set_exception(
                    QueueTimeoutError("Request timeout: queue wait time exceeded")
                )

    async def _run(self) -> None:
        """Dispatch entries in priority order until the queue drains."""
        while self._queue:
            request = self._queue.pop(0)
            if request.timeout_handle is not None:
                request.timeout_handle.cancel()

            if request.future.done():
                # Caller stopped waiting
                continue

            try:
                result = await request.processor(request.query, request.user_id)
            except Exception as e:
                if not request.future.done():
                    request.future.set_exception(e)
            else:
                if not request.future.done():
                    request.future.set_result(result)
            self._dispatched += 1

            await asyncio.sleep(self._dispatch_interval)

    def _on_worker_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(f"Request queue worker crashed: {type(exc).__name__}: {exc}")

    def status(self) -> Dict[str, Any]:
        """Get queue status."""
        return {
            "queue_length": len(self._queue),
            "processing": self.processing,
            "estimated_wait_seconds": len(self._queue) * self._dispatch_interval,
            "dispatched": self._dispatched,
            "rejected": self._rejected,
            "timed_out": self._timed_out,
        }

    def clear(self) -> int:
        """Reject every waiting request (for admin/testing)."""
        cleared = len(self._queue)
        for request in self._queue:
            if request.timeout_handle is not None:
                request.timeout_handle.cancel()
            if not request.future.done():
                request.future.set_exception(InternalPipelineError("Queue cleared"))
        self._queue = []
        return cleared

    async def stop(self) -> None:
        """Clear the queue and stop the worker."""
        self.clear()
        if self._worker is not None:
            self._worker.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._worker
            self._worker = None
