"""Tests for the batch grouper."""

import asyncio

import pytest

from query_gate.core.batch_processor import BatchedRequest, BatchProcessor
from query_gate.core.errors import InternalPipelineError, ProviderError, QueueTimeoutError


class RecordingProcessor:
    """Batch processor double answering 'answer:<query>' per query."""

    def __init__(self, fail_on=None):
        self.calls = []
        self.fail_on = fail_on

    async def __call__(self, queries, user_ids, payloads):
        self.calls.append(list(queries))
        if self.fail_on and self.fail_on in queries:
            raise ProviderError("group failed")
        return [f"answer:{q}" for q in queries]


def _request(query, request_id):
    loop = asyncio.get_event_loop()
    return BatchedRequest(
        id=request_id, query=query, user_id=None, processor=None, future=loop.create_future()
    )


class TestSimilarity:
    """Tests for the word-overlap heuristic."""

    def test_identical_after_normalization(self):
        assert BatchProcessor().are_similar("  Return Policy ", "return policy")

    def test_high_overlap(self):
        assert BatchProcessor().are_similar(
            "what are your opening hours today",
            "what are your opening hours",
        )

    def test_low_overlap(self):
        assert not BatchProcessor().are_similar("brake pads price", "wiper blades size")

    def test_word_count_difference_too_large(self):
        assert not BatchProcessor().are_similar(
            "opening hours", "opening hours on weekends and bank holidays"
        )

    def test_symmetric_for_equal_lengths(self):
        b = BatchProcessor()
        a, c = "do you sell brake pads", "do you sell brake discs"
        assert b.are_similar(a, c) == b.are_similar(c, a)

    @pytest.mark.asyncio
    async def test_group_similar(self):
        b = BatchProcessor()
        requests = [
            _request("what are your opening hours", "1"),
            _request("brake pads price", "2"),
            _request("what are your opening hours today", "3"),
        ]
        groups = b.group_similar(requests)
        assert [[r.id for r in g] for g in groups] == [["1", "3"], ["2"]]


class TestBatchProcessor:
    """Tests for submit / flush behaviour."""

    @pytest.mark.asyncio
    async def test_single_request_flushed_by_timer(self, batcher):
        processor = RecordingProcessor()
        result = await batcher.submit("hello there", "u1", processor)
        assert result == "answer:hello there"
        assert processor.calls == [["hello there"]]

    @pytest.mark.asyncio
    async def test_similar_requests_merged_into_one_call(self, batcher):
        processor = RecordingProcessor()
        results = await asyncio.gather(
            batcher.submit("what are your opening hours", None, processor),
            batcher.submit("what are your opening hours today", None, processor),
            batcher.submit("brake pads price", None, processor),
        )
        assert results == [
            "answer:what are your opening hours",
            "answer:what are your opening hours today",
            "answer:brake pads price",
        ]
        assert len(processor.calls) == 2
        assert batcher.status()["merged_requests"] == 1

    @pytest.mark.asyncio
    async def test_full_batch_flushes_immediately(self):
        batcher = BatchProcessor(max_batch_size=3, batch_interval=10.0)
        processor = RecordingProcessor()
        results = await asyncio.wait_for(
            asyncio.gather(*(batcher.submit(f"query {i} unique{i} words{i}", None, processor) for i in range(3))),
            timeout=1.0,
        )
        assert len(results) == 3

    @pytest.mark.asyncio
    async def test_group_failure_is_isolated(self, batcher):
        processor = RecordingProcessor(fail_on="brake pads price")
        results = await asyncio.gather(
            batcher.submit("what are your opening hours", None, processor),
            batcher.submit("brake pads price", None, processor),
            return_exceptions=True,
        )
        assert results[0] == "answer:what are your opening hours"
        assert isinstance(results[1], ProviderError)

    @pytest.mark.asyncio
    async def test_missing_result_rejects_member(self, batcher):
        async def short(queries, user_ids, payloads):
            return ["only one"]

        results = await asyncio.gather(
            batcher.submit("opening hours today", None, short),
            batcher.submit("opening hours today", None, short),
            return_exceptions=True,
        )
        assert results[0] == "only one"
        assert isinstance(results[1], ProviderError)

    @pytest.mark.asyncio
    async def test_payloads_reach_processor_by_position(self, batcher):
        seen = []

        async def by_payload(queries, user_ids, payloads):
            seen.append(list(zip(queries, user_ids, payloads)))
            return [f"{uid}:{payload}" for uid, payload in zip(user_ids, payloads)]

        results = await asyncio.gather(
            batcher.submit("what are your opening hours", "alice", by_payload, "oslo"),
            batcher.submit("what are your opening hours today", "bob", by_payload, "madrid"),
        )
        assert results == ["alice:oslo", "bob:madrid"]
        assert len(seen) == 1
        assert [payload for _, _, payload in seen[0]] == ["oslo", "madrid"]

    @pytest.mark.asyncio
    async def test_exception_result_rejects_only_that_member(self, batcher):
        async def mixed(queries, user_ids, payloads):
            return ["fine", ProviderError("second member failed")]

        results = await asyncio.gather(
            batcher.submit("opening hours today", None, mixed),
            batcher.submit("opening hours today", None, mixed),
            return_exceptions=True,
        )
        assert results[0] == "fine"
        assert isinstance(results[1], ProviderError)

    @pytest.mark.asyncio
    async def test_requests_arriving_during_flush_get_a_new_timer(self):
        batcher = BatchProcessor(batch_interval=0.01)

        async def slow(queries, user_ids, payloads):
            await asyncio.sleep(0.05)
            return [f"answer:{q}" for q in queries]

        first = asyncio.ensure_future(batcher.submit("first question here", None, slow))
        await asyncio.sleep(0.02)
        assert batcher.status()["processing"]
        second = await asyncio.wait_for(batcher.submit("second unrelated thing", None, slow), 1.0)
        assert second == "answer:second unrelated thing"
        assert await first == "answer:first question here"

    @pytest.mark.asyncio
    async def test_pending_request_times_out(self):
        batcher = BatchProcessor(batch_interval=10.0, request_timeout=0.05)
        with pytest.raises(QueueTimeoutError):
            await batcher.submit("slow window", None, RecordingProcessor())
        assert batcher.status()["batch_size"] == 0

    @pytest.mark.asyncio
    async def test_clear_rejects_pending(self):
        batcher = BatchProcessor(batch_interval=10.0)
        pending = asyncio.ensure_future(batcher.submit("waiting", None, RecordingProcessor()))
        await asyncio.sleep(0)
        assert batcher.clear() == 1
        with pytest.raises(InternalPipelineError):
            await pending
