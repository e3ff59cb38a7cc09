"""Core routing and resilience components.

This module provides:
- RuleEngine: Instant answers for FAQ-shaped queries
- QueryClassifier: Complexity estimation and model tier routing
- PromptOptimizer: Token reduction before model calls
- CircuitBreaker: Protection against upstream provider failures
- SemanticCache: Reuse of answers for near-duplicate queries
- BatchProcessor: Coalescing of similar concurrent queries
- RequestQueue: Admission control and tier-based scheduling
- UsageAnalytics: Cost, token and latency reporting
"""

from .errors import (
    ErrorKind,
    QueryGateError,
    QueryValidationError,
    QueueFullError,
    QueueTimeoutError,
    CircuitOpenError,
    ProviderError,
    InternalPipelineError,
    UnauthorizedError,
)
from .rule_engine import (
    Rule,
    RuleEngine,
    RuleMatch,
    PrecomputedResponse,
    load_precomputed_responses,
)
from .query_classifier import (
    ClassificationResult,
    ModelTier,
    QueryClassifier,
    QueryComplexity,
    estimate_tokens,
)
from .prompt_optimizer import (
    OptimizationLimits,
    OptimizedPrompt,
    PromptOptimizer,
    minimal_system_prompt,
    minimize_context,
)
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from .semantic_cache import (
    CachedResponse,
    SemanticCache,
    cosine_similarity,
    hash_query,
)
from .batch_processor import BatchProcessor, BatchedRequest
from .request_queue import QueuedRequest, RequestQueue, UserTier
from .analytics import AnalyticsEvent, EventKind, UsageAnalytics, UsageStats

__all__ = [
    # Errors
    "ErrorKind",
    "QueryGateError",
    "QueryValidationError",
    "QueueFullError",
    "QueueTimeoutError",
    "CircuitOpenError",
    "ProviderError",
    "InternalPipelineError",
    "UnauthorizedError",
    # Rules
    "Rule",
    "RuleEngine",
    "RuleMatch",
    "PrecomputedResponse",
    "load_precomputed_responses",
    # Classification
    "ClassificationResult",
    "ModelTier",
    "QueryClassifier",
    "QueryComplexity",
    "estimate_tokens",
    # Prompt optimization
    "OptimizationLimits",
    "OptimizedPrompt",
    "PromptOptimizer",
    "minimal_system_prompt",
    "minimize_context",
    # Circuit breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Cache
    "CachedResponse",
    "SemanticCache",
    "cosine_similarity",
    "hash_query",
    # Scheduling
    "BatchProcessor",
    "BatchedRequest",
    "QueuedRequest",
    "RequestQueue",
    "UserTier",
    # Analytics
    "AnalyticsEvent",
    "EventKind",
    "UsageAnalytics",
    "UsageStats",
]
