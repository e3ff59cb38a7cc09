"""End-to-end query handling.

One incoming message flows through the cheapest resolution first:

1. Validation
2. Rule matcher (precomputed responses, then static rules)
3. Query classifier picks a model tier
4. Exact cache lookup by query hash
5. Semantic cache lookup by embedding similarity
6. Circuit breaker check (open -> degraded fallback)
7. Prompt optimizer, then priority queue -> batch grouper -> model provider;
   grouped requests with identical prompts share one provider call
8. Cache store and analytics

Validation, capacity and authorization errors are raised to the caller;
timeouts, provider failures and internal defects degrade to a fallback reply
that carries the error kind.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from functools import lru_cache
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx

from query_gate.core import observability
from query_gate.core.analytics import UsageAnalytics
from query_gate.core.batch_processor import BatchProcessor
from query_gate.core.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from query_gate.core.errors import (
    CircuitOpenError,
    ErrorKind,
    InternalPipelineError,
    ProviderError,
    QueryGateError,
    QueryValidationError,
    QueueFullError,
    UnauthorizedError,
)
from query_gate.core.prompt_optimizer import (
    OptimizationLimits,
    PromptOptimizer,
    minimal_system_prompt,
    minimize_context,
)
from query_gate.core.query_classifier import (
    ClassificationResult,
    ModelTier,
    QueryClassifier,
    QueryComplexity,
    estimate_tokens,
)
from query_gate.core.request_queue import RequestQueue, UserTier
from query_gate.core.rule_engine import RuleEngine
from query_gate.core.semantic_cache import SemanticCache, hash_query
from query_gate.providers import Embedder, ModelProvider, build_provider
from query_gate.settings import Settings, get_settings

logger = logging.getLogger(__name__)

Message = Dict[str, str]

# Errors the caller must handle itself
RAISED_ERRORS = (QueryValidationError, QueueFullError, UnauthorizedError)


class ReplySource(str, Enum):
    """Where an answer came from."""

    PRECOMPUTED = "precomputed"
    RULE = "rule"
    CACHE = "cache"
    MODEL = "model"
    FALLBACK = "fallback"


@dataclass
class AssistantReply:
    """The answer returned to the caller."""

    text: str
    source: ReplySource
    cached: bool = False
    model: Optional[str] = None
    tokens: int = 0
    cost_usd: Decimal = field(default_factory=lambda: Decimal("0"))
    elapsed_ms: float = 0.0
    classification: Optional[ClassificationResult] = None
    error_kind: Optional[ErrorKind] = None

    @property
    def degraded(self) -> bool:
        return self.error_kind is not None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "response": self.text,
            "source": self.source.value,
            "cached": self.cached,
        }
        if self.model:
            data["model"] = self.model
        if self.error_kind is not None:
            data["error"] = self.error_kind.value
        return data


@dataclass
class ModelRequest:
    """A prepared model call for one query: model choice plus its own prompt."""

    model: str
    tier: ModelTier
    messages: List[Message]
    prompt_tokens: int

    @property
    def key(self) -> Tuple[str, Tuple[Tuple[str, str], ...]]:
        """Requests with equal keys send byte-identical calls upstream."""
        return self.model, tuple((m["role"], m["content"]) for m in self.messages)


@dataclass
class ModelAnswer:
    """Outcome of one upstream call, shared by every request with the same key."""

    text: str
    model: str
    tokens: int
    cost_usd: Decimal
    shared_by: int = 1


@dataclass
class AssistantServices:
    """The shared components one pipeline runs on."""

    settings: Settings
    rules: RuleEngine
    classifier: QueryClassifier
    optimizer: PromptOptimizer
    breakers: CircuitBreakerRegistry
    cache: SemanticCache
    queue: RequestQueue
    batcher: Optional[BatchProcessor]
    analytics: UsageAnalytics
    provider: ModelProvider
    embedder: Optional[Embedder] = None

    @classmethod
    def from_settings(
        cls,
        settings: Optional[Settings] = None,
        provider: Optional[ModelProvider] = None,
        embedder: Optional[Embedder] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> "AssistantServices":
        """Build every component from settings.

        ``provider`` and ``embedder`` override the ones chosen from the
        provider settings.
        """
        settings = settings or get_settings()
        if provider is None:
            provider, default_embedder = build_provider(settings, client=client)
            embedder = embedder or default_embedder

        return cls(
            settings=settings,
            rules=RuleEngine.from_settings(settings.rules),
            classifier=QueryClassifier.from_settings(settings.classifier),
            optimizer=PromptOptimizer.from_settings(settings.optimizer),
            breakers=CircuitBreakerRegistry(CircuitBreakerConfig.from_settings(settings.circuit)),
            cache=SemanticCache.from_settings(settings.cache),
            queue=RequestQueue.from_settings(settings.queue),
            batcher=BatchProcessor.from_settings(settings.batch) if settings.batch.enabled else None,
            analytics=UsageAnalytics.from_settings(settings.analytics, client=client),
            provider=provider,
            embedder=embedder,
        )

    @property
    def breaker(self) -> CircuitBreaker:
        """The circuit breaker guarding the configured provider."""
        return self.breakers.get(self.provider.name)


@lru_cache(maxsize=1)
def get_services() -> AssistantServices:
    """Process-wide services built from ``get_settings()``."""
    return AssistantServices.from_settings()


def reset_services() -> None:
    get_services.cache_clear()


def build_system_prompt(context: Optional[Dict[str, Any]] = None) -> str:
    """System prompt carrying whatever page and user context is available.

    ``context`` keys: ``page`` ({pathname, page_type}), ``cart_items``,
    ``orders``, ``has_bookings``, ``location``.
    """
    if not context:
        return minimal_system_prompt()

    cart = context.get("cart_items") or []
    orders = context.get("orders") or []
    trimmed = minimize_context(cart=cart, orders=orders)

    lines = []
    page = context.get("page")
    if page:
        lines.append(f"Current page: {page.get('pathname')} ({page.get('page_type')})")
    if cart:
        names = ", ".join(str(item.get("name")) for item in trimmed["cart"])
        lines.append(f"User has {len(cart)} items in cart: {names}")
    else:
        lines.append("User's cart is empty")
    if orders:
        lines.append(f"User has {len(orders)} past orders")
    else:
        lines.append("User has no past orders")
    if context.get("has_bookings"):
        lines.append("User has service bookings")
    if context.get("location"):
        lines.append(f"User location: {context['location']}")

    return (
        "You are a helpful AI assistant for Shining Motors, an automotive social platform.\n\n"
        "Context:\n" + "\n".join(lines) + "\n\n"
        "You help users with:\n"
        "- Finding products in the shop\n"
        "- Understanding services offered\n"
        "- Answering questions about events\n"
        "- Helping with orders and bookings\n"
        "- Finding vendors and mechanics\n"
        "- General questions about the platform\n\n"
        "Be friendly, concise, and helpful. Use the context provided to give personalized "
        "responses. If you don't know something, suggest they contact support."
    )


class AssistantPipeline:
    """Routes one message through rules, cache, and the model provider."""

    def __init__(self, services: Optional[AssistantServices] = None):
        self.services = services or get_services()
        settings = self.services.settings
        self._limits = OptimizationLimits(
            max_history=settings.optimizer.max_history,
            max_system_prompt_length=settings.optimizer.max_system_prompt_length,
            max_message_length=settings.optimizer.max_message_length,
            max_history_message_length=settings.optimizer.max_history_message_length,
        )

    def _validate(self, message: Any) -> str:
        if not isinstance(message, str) or not message.strip():
            raise QueryValidationError("Message is required")
        limit = self.services.settings.max_query_length
        if len(message) > limit:
            raise QueryValidationError(f"Message exceeds {limit} characters")
        return message

    async def answer(
        self,
        message: str,
        user_id: Optional[str] = None,
        user_tier: UserTier = UserTier.FREE,
        history: Optional[Sequence[Message]] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> AssistantReply:
        """Answer one message.

        Raises:
            QueryValidationError: Empty or oversized message
            UnauthorizedError: Anonymous caller hit a rule requiring a login
            QueueFullError: The request queue is at capacity
        """
        message = self._validate(message)
        started = time.perf_counter()
        services = self.services
        if services.analytics.sink_configured:
            # Idempotent; the flush loop needs a running event loop
            services.analytics.start()

        found = services.rules.find(message)
        if found is not None:
            if found.requires_auth and user_id is None:
                services.analytics.track_error("unauthorized", user_id, message)
                raise UnauthorizedError(f"Rule {found.rule_name} requires a signed-in user")
            elapsed = _elapsed_ms(started)
            services.analytics.track_rule_match(elapsed, user_id)
            observability.log_rule_hit(found.rule_name, user_id, elapsed)
            return AssistantReply(
                text=found.response,
                source=ReplySource.PRECOMPUTED if found.precomputed else ReplySource.RULE,
                elapsed_ms=elapsed,
            )

        try:
            return await self._answer_remote(message, user_id, user_tier, history, context, started)
        except RAISED_ERRORS as e:
            services.analytics.track_error(e.failure_code, user_id, message)
            raise
        except QueryGateError as e:
            return self._fallback(e, user_id, message, started)
        except Exception as e:
            logger.exception(f"Unexpected failure answering query: {e}")
            return self._fallback(InternalPipelineError(str(e)), user_id, message, started)

    async def _answer_remote(
        self,
        message: str,
        user_id: Optional[str],
        user_tier: UserTier,
        history: Optional[Sequence[Message]],
        context: Optional[Dict[str, Any]],
        started: float,
    ) -> AssistantReply:
        services = self.services
        classification = services.classifier.classify(message)

        query_hash = hash_query(message, user_id)
        entry = services.cache.get(query_hash)
        if entry is not None:
            return self._cache_reply(entry.response, "exact", query_hash, user_id, started)

        embedding = None
        if services.embedder is not None:
            try:
                embedding = await services.embedder.embed(message)
            except ProviderError as e:
                logger.warning(f"Embedding failed, skipping semantic cache: {e}")
            else:
                entry = services.cache.find(embedding)
                if entry is not None:
                    return self._cache_reply(
                        entry.response, "semantic", entry.query_hash, user_id, started
                    )

        services.analytics.track_cache_miss(user_id, message)

        # Checked after both cache tiers so an open circuit still serves cached answers
        breaker = services.breaker
        if breaker.is_open():
            observability.log_circuit_rejected(breaker.name, breaker.state.value)
            raise CircuitOpenError("AI service temporarily unavailable. Please try again later.")

        optimized = services.optimizer.optimize(
            build_system_prompt(context), history, message, limits=self._limits
        )
        model = classification.recommended_model
        if classification.tier == ModelTier.EMBEDDING:
            # Search requests are still answered by the chat model
            model = services.classifier.model_for(ModelTier.CHEAP)
        request = ModelRequest(
            model=model,
            tier=classification.tier,
            messages=[{"role": "system", "content": optimized.system_prompt}, *optimized.messages],
            prompt_tokens=optimized.token_estimate,
        )

        async def dispatch(query: str, uid: Optional[str]) -> "asyncio.Future[ModelAnswer]":
            # Hand off without waiting so the queue keeps pacing admissions
            if services.batcher is None:
                return asyncio.ensure_future(self._call_model(query, uid, request))
            return asyncio.ensure_future(
                services.batcher.submit(query, uid, self._complete_batch, request)
            )

        pending = await services.queue.enqueue(message, user_id, dispatch, user_tier)
        answer: ModelAnswer = await pending

        ttl = (
            services.settings.cache.simple_ttl_seconds
            if classification.complexity == QueryComplexity.SIMPLE
            else services.settings.cache.default_ttl_seconds
        )
        services.cache.store(message, answer.text, embedding, query_hash, ttl=ttl)

        return AssistantReply(
            text=answer.text,
            source=ReplySource.MODEL,
            model=answer.model,
            tokens=answer.tokens,
            cost_usd=answer.cost_usd,
            elapsed_ms=_elapsed_ms(started),
            classification=classification,
        )

    async def _complete_batch(
        self,
        queries: List[str],
        user_ids: List[Optional[str]],
        requests: List[ModelRequest],
    ) -> List[Any]:
        """Answer each member of a similarity group from its own prompt.

        Members whose prompts are identical share one upstream call; every
        other member gets its own. A failed call is returned in place of the
        answer for the members that depended on it.
        """
        members: Dict[Any, List[int]] = {}
        for index, request in enumerate(requests):
            members.setdefault(request.key, []).append(index)

        keys = list(members)
        outcomes = await asyncio.gather(
            *(
                self._call_model(
                    queries[members[key][0]],
                    user_ids[members[key][0]],
                    requests[members[key][0]],
                    shared_by=len(members[key]),
                )
                for key in keys
            ),
            return_exceptions=True,
        )

        results: List[Any] = [None] * len(requests)
        for key, outcome in zip(keys, outcomes):
            for index in members[key]:
                results[index] = outcome
        return results

    async def _call_model(
        self,
        query: str,
        user_id: Optional[str],
        request: ModelRequest,
        shared_by: int = 1,
    ) -> ModelAnswer:
        """One breaker-guarded provider call, recorded as a single api_call event."""
        services = self.services
        started = time.perf_counter()
        response = await services.breaker.call(
            services.provider.complete, request.model, request.messages
        )

        tokens = response.tokens or request.prompt_tokens + estimate_tokens(response.text)
        cost = services.classifier.cost_for_model(request.model, tokens)
        elapsed = _elapsed_ms(started)
        services.analytics.track_api_call(request.model, tokens, cost, elapsed, user_id, query)
        observability.log_model_call(
            request.model,
            request.tier.value,
            tokens,
            float(cost),
            elapsed,
            merged=shared_by,
        )
        return ModelAnswer(
            text=response.text,
            model=request.model,
            tokens=tokens,
            cost_usd=cost,
            shared_by=shared_by,
        )

    def _cache_reply(
        self,
        text: str,
        cache_type: str,
        query_hash: str,
        user_id: Optional[str],
        started: float,
    ) -> AssistantReply:
        elapsed = _elapsed_ms(started)
        self.services.analytics.track_cache_hit(cache_type, elapsed, user_id)
        observability.log_cache_hit(cache_type, query_hash, elapsed)
        return AssistantReply(
            text=text,
            source=ReplySource.CACHE,
            cached=True,
            elapsed_ms=elapsed,
        )

    def _fallback(
        self,
        error: QueryGateError,
        user_id: Optional[str],
        message: str,
        started: float,
    ) -> AssistantReply:
        logger.warning(f"Degrading to fallback reply ({error.kind.value}): {error}")
        self.services.analytics.track_error(str(error), user_id, message)
        observability.log_fallback(error.kind.value, str(error), user_id)
        return AssistantReply(
            text=self.services.settings.fallback_message,
            source=ReplySource.FALLBACK,
            elapsed_ms=_elapsed_ms(started),
            error_kind=error.kind,
        )

    def status(self) -> Dict[str, Any]:
        """Snapshot of every stateful component."""
        services = self.services
        return {
            "circuits": services.breakers.get_all_status(),
            "cache": services.cache.get_stats(),
            "queue": services.queue.status(),
            "batch": services.batcher.status() if services.batcher else None,
            "analytics": services.analytics.stats().to_dict(),
        }

    async def aclose(self) -> None:
        """Stop background work and flush analytics."""
        await self.services.queue.stop()
        if self.services.batcher is not None:
            self.services.batcher.clear()
        await self.services.analytics.stop()


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
