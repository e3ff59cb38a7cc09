"""Batch Grouper - Coalesce Near-Duplicate Concurrent Queries.

Requests accumulate in a pending list and are flushed either when the list
reaches ``max_batch_size`` or when the batch window timer fires. At flush
time the pending requests are partitioned into similarity groups:

- Groups of one are processed individually
- Larger groups go to the processor as a single call whose result list is
  distributed back to the members by position

Each request may carry a payload (for example its prepared prompt); the
processor receives the payloads alongside the queries and must answer every
member from its own payload. A failure in one group never affects the
results of another.
"""

import asyncio
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from .errors import InternalPipelineError, ProviderError, QueueTimeoutError

logger = logging.getLogger(__name__)

# processor(queries, user_ids, payloads) -> one result per query, in order.
# A result that is an exception rejects only that member.
BatchProcessorFn = Callable[
    [List[str], List[Optional[str]], List[Any]], Awaitable[List[Any]]
]

_request_ids = itertools.count(1)


@dataclass(eq=False)
class BatchedRequest:
    """A request waiting in the batch window."""

    id: str
    query: str
    user_id: Optional[str]
    processor: BatchProcessorFn
    future: "asyncio.Future[Any]"
    payload: Any = None  # Opaque per-request data handed to the processor
    timestamp: float = field(default_factory=time.time)
    timeout_handle: Optional[asyncio.TimerHandle] = None

    def resolve(self, result: Any) -> None:
        if not self.future.done():
            self.future.set_result(result)

    def reject(self, error: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(error)


class BatchProcessor:
    """Merges similar queries that arrive within one batch window."""

    def __init__(
        self,
        max_batch_size: int = 10,
        batch_interval: float = 2.0,
        request_timeout: float = 30.0,
        word_overlap_threshold: float = 0.8,
        max_word_count_difference: int = 2,
    ):
        self._max_batch_size = max_batch_size
        self._batch_interval = batch_interval
        self._request_timeout = request_timeout
        self._overlap_threshold = word_overlap_threshold
        self._max_word_diff = max_word_count_difference

        self._pending: List[BatchedRequest] = []
        self._processing = False
        self._timer: Optional[asyncio.TimerHandle] = None
        self._background_tasks: Set[asyncio.Task] = set()

        # Stats
        self._total_submitted = 0
        self._total_groups = 0
        self._merged_requests = 0

    @classmethod
    def from_settings(cls, settings) -> "BatchProcessor":
        """Build from a ``BatchSettings`` section."""
        return cls(
            max_batch_size=settings.max_batch_size,
            batch_interval=settings.batch_interval_seconds,
            request_timeout=settings.request_timeout_seconds,
            word_overlap_threshold=settings.word_overlap_threshold,
            max_word_count_difference=settings.max_word_count_difference,
        )

    def are_similar(self, query1: str, query2: str) -> bool:
        """Cheap word-overlap similarity between two queries."""
        lower1 = query1.lower().strip()
        lower2 = query2.lower().strip()
        if lower1 == lower2:
            return True

        words1 = lower1.split()
        words2 = lower2.split()
        if abs(len(words1) - len(words2)) > self._max_word_diff:
            return False

        longest = max(len(words1), len(words2))
        if longest == 0:
            return False
        vocabulary = set(words2)
        common = sum(1 for word in words1 if word in vocabulary)
        return common / longest >= self._overlap_threshold

    def group_similar(self, requests: List[BatchedRequest]) -> List[List[BatchedRequest]]:
        """Partition requests into groups of queries similar to each group's first member."""
        groups = []
        grouped: Set[str] = set()

        for request in requests:
            if request.id in grouped:
                continue
            group = [request]
            grouped.add(request.id)

            for other in requests:
                if other.id in grouped:
                    continue
                if self.are_similar(request.query, other.query):
                    group.append(other)
                    grouped.add(other.id)
            groups.append(group)
        return groups

    async def submit(
        self,
        query: str,
        user_id: Optional[str],
        processor: BatchProcessorFn,
        payload: Any = None,
    ) -> Any:
        """Add a query to the current batch and wait for its result.

        Raises:
            QueueTimeoutError: If the request waits past its deadline unflushed
        """
        loop = asyncio.get_running_loop()
        request = BatchedRequest(
            id=f"batch-{next(_request_ids)}",
            query=query,
            user_id=user_id,
            processor=processor,
            future=loop.create_future(),
            payload=payload,
        )
        request.timeout_handle = loop.call_later(
            self._request_timeout, self._expire, request
        )
        self._pending.append(request)
        self._total_submitted += 1

        if len(self._pending) >= self._max_batch_size:
            self._spawn_flush()
        else:
            self._arm_timer()

        return await request.future

    def _arm_timer(self) -> None:
        if self._timer is not None or self._processing:
            return
        loop = asyncio.get_running_loop()
        self._timer = loop.call_later(self._batch_interval, self._on_timer)

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _on_timer(self) -> None:
        self._timer = None
        self._spawn_flush()

    def _spawn_flush(self) -> None:
        """Run a flush in a tracked background task."""
        task = asyncio.get_running_loop().create_task(self._process_batch())
        self._background_tasks.add(task)
        task.add_done_callback(self._on_flush_done)

    def _on_flush_done(self, task: asyncio.Task) -> None:
        self._background_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(f"Batch flush crashed: {type(exc).__name__}: {exc}")

    def _expire(self, request: BatchedRequest) -> None:
        """Evict a request still waiting in the pending list."""
        if request in self._pending:
            self._pending.remove(request)
            if not self._pending:
                self._cancel_timer()
            logger.warning(f"Batched request {request.id} timed out before flush")
            request.reject(QueueTimeoutError("Request timeout: batch wait time exceeded"))

    async def _process_batch(self) -> None:
        """Flush the whole pending list, one similarity group at a time."""
        if self._processing or not self._pending:
            return

        self._processing = True
        self._cancel_timer()
        current = self._pending
        self._pending = []
        for request in current:
            if request.timeout_handle is not None:
                request.timeout_handle.cancel()

        try:
            groups = self.group_similar(current)
            logger.debug(f"Flushing {len(current)} batched requests in {len(groups)} groups")
            for group in groups:
                await self._process_group(group)
        finally:
            self._processing = False
            if self._pending:
                if len(self._pending) >= self._max_batch_size:
                    self._spawn_flush()
                else:
                    self._arm_timer()

    async def _process_group(self, group: List[BatchedRequest]) -> None:
        self._total_groups += 1
        if len(group) > 1:
            self._merged_requests += len(group) - 1

        processor = group[0].processor
        try:
            results = await processor(
                [request.query for request in group],
                [request.user_id for request in group],
                [request.payload for request in group],
            )
        except Exception as e:
            logger.warning(f"Batch group of {len(group)} failed: {e}")
            for request in group:
                request.reject(e)
            return

        for index, request in enumerate(group):
            result = results[index] if index < len(results) else None
            if isinstance(result, BaseException):
                request.reject(result)
            elif result:
                request.resolve(result)
            else:
                request.reject(ProviderError("No result for batched query"))

    def status(self) -> Dict[str, Any]:
        """Get batch status."""
        return {
            "batch_size": len(self._pending),
            "processing": self._processing,
            "total_submitted": self._total_submitted,
            "total_groups": self._total_groups,
            "merged_requests": self._merged_requests,
        }

    def clear(self) -> int:
        """Reject every pending request and reset the window."""
        cleared = len(self._pending)
        for request in self._pending:
            if request.timeout_handle is not None:
                request.timeout_handle.cancel()
            request.reject(InternalPipelineError("Batch cleared"))
        self._pending = []
        self._cancel_timer()
        return cleared
