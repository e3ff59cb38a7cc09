"""End-to-end tests for the query pipeline."""

import asyncio
import json
import re
from decimal import Decimal

import httpx
import pytest

from query_gate.core.circuit_breaker import CircuitState
from query_gate.core.errors import ErrorKind, QueryValidationError, QueueFullError, UnauthorizedError
from query_gate.core.query_classifier import ModelTier
from query_gate.core.request_queue import RequestQueue
from query_gate.core.rule_engine import Rule, RuleEngine
from query_gate.pipeline import (
    AssistantPipeline,
    AssistantServices,
    ReplySource,
    build_system_prompt,
    get_services,
)
from query_gate.providers import HashingEmbedder, MockProvider
from query_gate.settings import Settings


class TestRuleAndCachePaths:
    """Answers resolved without a model call."""

    @pytest.mark.asyncio
    async def test_greeting_answered_by_rule(self, pipeline, provider):
        reply = await pipeline.answer("Hi")
        assert reply.source == ReplySource.RULE
        assert reply.text.startswith("Hello!")
        assert provider.calls == []
        assert pipeline.services.analytics.stats().rule_matches == 1

    @pytest.mark.asyncio
    async def test_return_policy_answered_by_rule(self, pipeline, provider):
        reply = await pipeline.answer("What is your return policy?")
        assert "30 days" in reply.text
        assert provider.calls == []

    @pytest.mark.asyncio
    async def test_second_identical_query_is_cached(self, pipeline, provider):
        query = "Do my winter tyres need different pressures than summer ones"
        first = await pipeline.answer(query, user_id="u1")
        second = await pipeline.answer(query, user_id="u1")

        assert first.source == ReplySource.MODEL
        assert second.source == ReplySource.CACHE
        assert second.cached
        assert second.text == first.text
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_reworded_query_hits_semantic_cache(self, pipeline, provider):
        await pipeline.answer("Do my winter tyres need different pressures than summer ones")
        reply = await pipeline.answer("do my winter tyres need different pressures than summer ones?")
        assert reply.source == ReplySource.CACHE
        assert len(provider.calls) == 1


class TestModelPath:
    """Answers that reach the provider."""

    @pytest.mark.asyncio
    async def test_compare_query_routed_to_premium(self, pipeline, provider):
        reply = await pipeline.answer(
            "Compare the ceramic and the semi-metallic brake pads for my car"
        )
        assert reply.source == ReplySource.MODEL
        assert reply.model == "gpt-4"
        assert reply.classification.tier == ModelTier.PREMIUM
        assert reply.cost_usd > Decimal("0")

    @pytest.mark.asyncio
    async def test_search_query_uses_cheap_chat_model(self, pipeline):
        reply = await pipeline.answer("show me red brake calipers")
        assert reply.classification.tier == ModelTier.EMBEDDING
        assert reply.model == "gpt-3.5-turbo"

    @pytest.mark.asyncio
    async def test_prompt_is_optimized(self, pipeline, provider):
        history = [{"role": "user", "content": f"old turn {i}"} for i in range(9)]
        await pipeline.answer(
            "Could my alternator be the reason the battery keeps dying overnight?",
            history=history,
            context={"cart_items": [{"id": 1, "name": "Battery", "price": 90}]},
        )
        messages = provider.calls[0]
        assert messages[0]["role"] == "system"
        assert "Battery" in messages[0]["content"]
        # system + 5 history turns + user message
        assert len(messages) == 7
        assert messages[-1]["role"] == "user"

    @pytest.mark.asyncio
    async def test_identical_concurrent_questions_share_one_call(self, pipeline, provider):
        query = "what are the opening hours of the service centre"
        replies = await asyncio.gather(
            pipeline.answer(query, user_id="u1"),
            pipeline.answer(query, user_id="u2"),
        )
        assert all(r.source == ReplySource.MODEL for r in replies)
        assert [r.text for r in replies] == ["Model answer", "Model answer"]
        assert len(provider.calls) == 1
        assert pipeline.services.analytics.stats().api_calls == 1

    @pytest.mark.asyncio
    async def test_grouped_questions_answered_from_their_own_prompts(
        self, fast_settings, provider_factory
    ):
        provider = provider_factory(echo=True)
        pipeline = AssistantPipeline(
            AssistantServices.from_settings(
                fast_settings, provider=provider, embedder=HashingEmbedder()
            )
        )
        alice, bob = await asyncio.gather(
            pipeline.answer(
                "Do my winter tyres need different pressures than summer ones",
                user_id="alice",
                context={"location": "Oslo"},
            ),
            pipeline.answer(
                "Do my winter tyres need different pressures than summer tyres",
                user_id="bob",
                context={"location": "Madrid"},
            ),
        )

        assert pipeline.services.batcher.status()["merged_requests"] == 1
        assert alice.text.endswith("summer ones")
        assert bob.text.endswith("summer tyres")
        assert len(provider.calls) == 2
        for messages in provider.calls:
            if messages[-1]["content"].endswith("summer tyres"):
                assert "Madrid" in messages[0]["content"]
                assert "Oslo" not in messages[0]["content"]
            else:
                assert "Oslo" in messages[0]["content"]
        assert pipeline.services.analytics.stats().api_calls == 2

    @pytest.mark.asyncio
    async def test_flush_loop_starts_with_first_answer(self, provider):
        received = []

        def handler(request):
            received.append(json.loads(request.content))
            return httpx.Response(200)

        settings = Settings(
            _env_file=None,
            analytics={"sink_url": "https://sink.test/events", "flush_interval_seconds": 0.01},
        )
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        pipeline = AssistantPipeline(
            AssistantServices.from_settings(settings, provider=provider, client=client)
        )

        await pipeline.answer("Hi")
        await asyncio.sleep(0.05)

        assert received
        assert received[0]["events"][0]["type"] == "rule_match"
        await pipeline.aclose()

    @pytest.mark.asyncio
    async def test_batching_disabled(self, provider):
        settings = Settings(_env_file=None, batch={"enabled": False}, queue={"dispatch_interval_seconds": 0.0})
        pipeline = AssistantPipeline(AssistantServices.from_settings(settings, provider=provider))
        reply = await pipeline.answer("Is a ceramic coating worth it for a daily driver car")
        assert reply.source == ReplySource.MODEL
        assert pipeline.services.batcher is None


class TestFailures:
    """Errors raised to the caller and degraded fallbacks."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("message", ["", "   ", None])
    async def test_invalid_message_raises(self, pipeline, message):
        with pytest.raises(QueryValidationError):
            await pipeline.answer(message)

    @pytest.mark.asyncio
    async def test_circuit_opens_after_five_failures(self, fast_settings, provider_factory):
        failing = provider_factory(fail=True)
        pipeline = AssistantPipeline(AssistantServices.from_settings(fast_settings, provider=failing))

        for i in range(5):
            reply = await pipeline.answer(f"Why does my engine knock under load number {i}")
            assert reply.source == ReplySource.FALLBACK
            assert reply.error_kind == ErrorKind.UPSTREAM_FAILURE

        assert pipeline.services.breaker.state == CircuitState.OPEN

        reply = await pipeline.answer("Why does my engine knock under load number 6")
        assert reply.error_kind == ErrorKind.UPSTREAM_UNAVAILABLE
        assert reply.text == fast_settings.fallback_message
        assert len(failing.calls) == 5

    @pytest.mark.asyncio
    async def test_circuit_recovers_after_cooldown(self, fast_settings, provider_factory):
        provider = provider_factory(fail=True)
        pipeline = AssistantPipeline(AssistantServices.from_settings(fast_settings, provider=provider))
        for i in range(5):
            await pipeline.answer(f"Why does my engine knock under load number {i}")

        provider.fail = False
        await asyncio.sleep(0.15)
        reply = await pipeline.answer("Why does my gearbox whine in third gear only")
        assert reply.source == ReplySource.MODEL
        assert pipeline.services.breaker.state == CircuitState.HALF_OPEN

    @pytest.mark.asyncio
    async def test_open_circuit_still_serves_semantic_cache(self, pipeline, provider):
        query = "Do my winter tyres need different pressures than summer ones"
        await pipeline.answer(query)
        breaker = pipeline.services.breaker
        for _ in range(5):
            breaker.record_failure()
        assert breaker.state == CircuitState.OPEN

        cached = await pipeline.answer(query + "?", user_id="u2")
        assert cached.source == ReplySource.CACHE

        degraded = await pipeline.answer("Why does my gearbox whine in third gear only")
        assert degraded.error_kind == ErrorKind.UPSTREAM_UNAVAILABLE
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_queue_full_is_raised(self, fast_settings, provider):
        services = AssistantServices.from_settings(fast_settings, provider=provider)
        services.queue = RequestQueue(max_queue_size=1, dispatch_interval=0.0)
        pipeline = AssistantPipeline(services)

        results = await asyncio.gather(
            pipeline.answer("Is a ceramic coating worth it for a daily driver car"),
            pipeline.answer("How often should the timing belt on a diesel be replaced"),
            return_exceptions=True,
        )
        assert results[0].source == ReplySource.MODEL
        assert isinstance(results[1], QueueFullError)

    @pytest.mark.asyncio
    async def test_rule_requiring_login(self, fast_settings, provider):
        services = AssistantServices.from_settings(fast_settings, provider=provider)
        services.rules = RuleEngine(
            rules=[
                Rule(
                    "my_orders",
                    (re.compile("my orders", re.IGNORECASE),),
                    "Here are your orders.",
                    priority=1,
                    requires_auth=True,
                )
            ]
        )
        pipeline = AssistantPipeline(services)

        with pytest.raises(UnauthorizedError):
            await pipeline.answer("show my orders")
        reply = await pipeline.answer("show my orders", user_id="u1")
        assert reply.text == "Here are your orders."

    @pytest.mark.asyncio
    async def test_errors_recorded_in_analytics(self, fast_settings, provider_factory):
        pipeline = AssistantPipeline(
            AssistantServices.from_settings(fast_settings, provider=provider_factory(fail=True))
        )
        await pipeline.answer("Why does my engine knock under load")
        assert pipeline.services.analytics.stats().errors == 1


class TestServices:
    """Tests for the service container and prompt building."""

    def test_mock_provider_without_api_key(self):
        services = get_services()
        assert isinstance(services.provider, MockProvider)
        assert isinstance(services.embedder, HashingEmbedder)
        assert get_services() is services

    def test_status_snapshot(self, pipeline):
        status = pipeline.status()
        assert set(status) == {"circuits", "cache", "queue", "batch", "analytics"}

    def test_minimal_prompt_without_context(self):
        assert build_system_prompt(None).startswith("You are a helpful AI assistant")

    def test_context_prompt(self):
        prompt = build_system_prompt(
            {
                "page": {"pathname": "/shop", "page_type": "shop"},
                "orders": [{"id": 1}],
                "location": "Pune",
            }
        )
        assert "Current page: /shop (shop)" in prompt
        assert "User's cart is empty" in prompt
        assert "1 past orders" in prompt
        assert "Pune" in prompt
