"""Query Classifier - Complexity Estimation and Model Tier Routing.

Routes simple queries to the cheap tier and reasoning-heavy ones to the
premium tier using hand-tuned keyword heuristics:

Tier Hierarchy:
- EMBEDDING: search/lookup requests answered by vector search
- CHEAP: short or FAQ-like questions
- PREMIUM: comparisons, recommendations, long multi-part queries
"""

import logging
import math
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Dict, Optional, Tuple

logger = logging.getLogger(__name__)


class QueryComplexity(str, Enum):
    """Complexity levels for routing."""

    SIMPLE = "simple"
    MEDIUM = "medium"
    COMPLEX = "complex"


class ModelTier(str, Enum):
    """Model tiers from cheapest to most capable."""

    EMBEDDING = "embedding"
    CHEAP = "cheap"
    PREMIUM = "premium"


# Keywords that indicate simple questions
SIMPLE_KEYWORDS: Tuple[str, ...] = (
    "what is",
    "what are",
    "how to",
    "where is",
    "when is",
    "who is",
    "can i",
    "do you",
    "is there",
    "tell me about",
    "explain",
)

# Keywords that indicate multi-step reasoning
COMPLEX_KEYWORDS: Tuple[str, ...] = (
    "compare",
    "recommend",
    "suggest",
    "analyze",
    "which is better",
    "what should i",
    "help me choose",
    "find the best",
    "personalized",
    "based on",
)

# Keywords that indicate a search/lookup intent
SEARCH_KEYWORDS: Tuple[str, ...] = (
    "find",
    "search",
    "look for",
    "show me",
    "products like",
    "similar to",
)


@dataclass(frozen=True)
class ClassificationResult:
    """Result of classifying one query. Produced fresh, never persisted."""

    complexity: QueryComplexity
    tier: ModelTier
    recommended_model: str
    confidence: float  # 0-1
    reasoning: str


@dataclass(frozen=True)
class TierConfig:
    """Model id and unit cost of one tier."""

    model: str
    cost_per_1k_tokens: Decimal


DEFAULT_TIERS: Dict[ModelTier, TierConfig] = {
    ModelTier.EMBEDDING: TierConfig("text-embedding-3-small", Decimal("0.00002")),
    ModelTier.CHEAP: TierConfig("gpt-3.5-turbo", Decimal("0.0015")),
    ModelTier.PREMIUM: TierConfig("gpt-4", Decimal("0.03")),
}


def estimate_tokens(text: str) -> int:
    """Rough token estimate: 1 token ~ 4 characters, rounded up."""
    return math.ceil(len(text) / 4)


class QueryClassifier:
    """Classifies a query's complexity and recommends a model tier.

    Decision order (first match wins):
    1. Search intent and <= 10 words -> simple / embedding (0.8)
    2. < 30 chars, no complex keywords -> simple / cheap (0.9)
    3. > 200 chars or > 30 words -> complex / premium (0.8)
    4. Complex keywords -> complex / premium (0.85)
    5. Simple keywords and < 100 chars -> simple / cheap (0.75)
    6. Question mark and 6-19 words -> medium / cheap (0.7)
    7. Otherwise -> medium / cheap (0.6)
    """

    def __init__(self, tiers: Optional[Dict[ModelTier, TierConfig]] = None):
        self._tiers = dict(DEFAULT_TIERS)
        if tiers:
            self._tiers.update(tiers)

    @classmethod
    def from_settings(cls, settings) -> "QueryClassifier":
        """Build from a ``ClassifierSettings`` section."""
        return cls(
            tiers={
                ModelTier.EMBEDDING: TierConfig(
                    settings.embedding_model, settings.embedding_cost_per_1k
                ),
                ModelTier.CHEAP: TierConfig(settings.cheap_model, settings.cheap_cost_per_1k),
                ModelTier.PREMIUM: TierConfig(
                    settings.premium_model, settings.premium_cost_per_1k
                ),
            }
        )

    def model_for(self, tier: ModelTier) -> str:
        return self._tiers[tier].model

    def _result(
        self,
        complexity: QueryComplexity,
        tier: ModelTier,
        confidence: float,
        reasoning: str,
    ) -> ClassificationResult:
        return ClassificationResult(
            complexity=complexity,
            tier=tier,
            recommended_model=self.model_for(tier),
            confidence=confidence,
            reasoning=reasoning,
        )

    def classify(self, query: str) -> ClassificationResult:
        """Classify a query to determine complexity and recommended model."""
        lowered = query.lower().strip()
        length = len(lowered)
        word_count = len(lowered.split())

        has_search = any(k in lowered for k in SEARCH_KEYWORDS)
        has_simple = any(k in lowered for k in SIMPLE_KEYWORDS)
        has_complex = any(k in lowered for k in COMPLEX_KEYWORDS)

        if has_search and word_count <= 10:
            result = self._result(
                QueryComplexity.SIMPLE,
                ModelTier.EMBEDDING,
                0.8,
                "Query appears to be a search request, use embeddings for semantic search",
            )
        elif length < 30 and not has_complex:
            result = self._result(
                QueryComplexity.SIMPLE,
                ModelTier.CHEAP,
                0.9,
                "Short query, likely a simple question",
            )
        elif length > 200 or word_count > 30:
            result = self._result(
                QueryComplexity.COMPLEX,
                ModelTier.PREMIUM,
                0.8,
                "Long query, likely requires complex reasoning",
            )
        elif has_complex:
            result = self._result(
                QueryComplexity.COMPLEX,
                ModelTier.PREMIUM,
                0.85,
                "Query contains complex reasoning keywords",
            )
        elif has_simple and length < 100:
            result = self._result(
                QueryComplexity.SIMPLE,
                ModelTier.CHEAP,
                0.75,
                "Query matches simple question patterns",
            )
        elif "?" in lowered and 5 < word_count < 20:
            result = self._result(
                QueryComplexity.MEDIUM,
                ModelTier.CHEAP,
                0.7,
                "Question format, medium complexity, try the cheap tier first",
            )
        else:
            result = self._result(
                QueryComplexity.MEDIUM,
                ModelTier.CHEAP,
                0.6,
                "Default classification, start with the cheap tier",
            )

        logger.debug(
            f"Classified query as {result.complexity.value} -> {result.recommended_model} "
            f"({result.confidence:.2f})"
        )
        return result

    def estimate_cost(self, tier: ModelTier, estimated_tokens: int = 500) -> Decimal:
        """Cost in USD of ``estimated_tokens`` on a tier. Reporting only."""
        unit = self._tiers[tier].cost_per_1k_tokens
        return (Decimal(estimated_tokens) / Decimal(1000)) * unit

    def cost_for_model(self, model: str, estimated_tokens: int) -> Decimal:
        """Cost for a model id; unknown models cost the cheap tier rate."""
        for tier, config in self._tiers.items():
            if config.model == model:
                return self.estimate_cost(tier, estimated_tokens)
        return self.estimate_cost(ModelTier.CHEAP, estimated_tokens)

    def should_use_cheap(self, query: str) -> bool:
        return self.classify(query).tier == ModelTier.CHEAP

    def should_use_premium(self, query: str) -> bool:
        return self.classify(query).tier == ModelTier.PREMIUM

    def should_use_embeddings(self, query: str) -> bool:
        return self.classify(query).tier == ModelTier.EMBEDDING
