"""Semantic Response Cache - Reuse Answers for Near-Duplicate Queries.

Implements a cache keyed by meaning rather than exact text:
1. Exact lookup by content hash
2. Similarity lookup by cosine similarity of embedding vectors
3. TTL expiration, swept lazily on every lookup
4. Popularity-based eviction (lowest hit counts first) when full
"""

import hashlib
import logging
import math
import re
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

logger = logging.getLogger(__name__)

Embedding = Sequence[float]


@dataclass
class CachedResponse:
    """A cached answer and the embedding of the query that produced it."""

    query: str
    response: str
    embedding: List[float]
    query_hash: str
    created_at: float = field(default_factory=time.time)
    expires_at: float = 0.0
    hit_count: int = 0

    def is_expired(self, now: Optional[float] = None) -> bool:
        """Expired once ``now >= expires_at``."""
        return (time.time() if now is None else now) >= self.expires_at

    @property
    def age_seconds(self) -> float:
        return time.time() - self.created_at


@dataclass
class CacheStats:
    """Statistics for the semantic cache."""

    hits: int = 0
    misses: int = 0
    evictions: int = 0
    expirations: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        return (self.hits / total * 100) if total > 0 else 0.0


_WHITESPACE = re.compile(r"\s+")


def normalize_query(query: str) -> str:
    """Normalize a query for exact-match hashing."""
    return _WHITESPACE.sub(" ", query.strip()).lower()


def hash_query(query: str, user_id: Optional[str] = None) -> str:
    """Create a stable cache key for a query (optionally scoped to a user)."""
    content = f"{normalize_query(query)}|{user_id or ''}"
    return hashlib.sha256(content.encode()).hexdigest()[:16]


def cosine_similarity(a: Embedding, b: Embedding) -> float:
    """Cosine similarity of two vectors; 0.0 for mismatched or zero vectors."""
    if len(a) != len(b) or not a:
        return 0.0

    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


class SemanticCache:
    """Response cache with similarity lookup, TTL and popularity eviction.

    Eviction removes the least-hit ``eviction_fraction`` of entries, which
    favors broadly reused answers over recently added ones.
    """

    def __init__(
        self,
        max_entries: int = 1000,
        similarity_threshold: float = 0.85,
        default_ttl: float = 24 * 60 * 60,
        eviction_fraction: float = 0.1,
    ):
        self._cache: Dict[str, CachedResponse] = {}
        self._max_entries = max_entries
        self._threshold = similarity_threshold
        self._default_ttl = default_ttl
        self._eviction_fraction = eviction_fraction
        self._stats = CacheStats()

    @classmethod
    def from_settings(cls, settings) -> "SemanticCache":
        """Build from a ``SemanticCacheSettings`` section."""
        return cls(
            max_entries=settings.max_entries,
            similarity_threshold=settings.similarity_threshold,
            default_ttl=settings.default_ttl_seconds,
            eviction_fraction=settings.eviction_fraction,
        )

    @property
    def similarity_threshold(self) -> float:
        return self._threshold

    def __len__(self) -> int:
        return len(self._cache)

    def find(
        self,
        embedding: Embedding,
        min_similarity: Optional[float] = None,
    ) -> Optional[CachedResponse]:
        """Find the most similar unexpired answer at or above the threshold.

        Ties keep the first entry found.
        """
        threshold = self._threshold if min_similarity is None else min_similarity
        now = time.time()
        self._sweep_expired(now)

        best: Optional[CachedResponse] = None
        best_similarity = -1.0
        for entry in self._cache.values():
            if not entry.embedding or entry.is_expired(now):
                continue
            similarity = cosine_similarity(embedding, entry.embedding)
            if similarity >= threshold and similarity > best_similarity:
                best = entry
                best_similarity = similarity

        if best is None:
            self._stats.misses += 1
            return None

        best.hit_count += 1
        self._stats.hits += 1
        logger.debug(f"Semantic cache hit {best.query_hash} (similarity {best_similarity:.3f})")
        return best

    def get(self, query_hash: str) -> Optional[CachedResponse]:
        """Exact lookup by query hash. Expired entries are swept first."""
        self._sweep_expired(time.time())
        entry = self._cache.get(query_hash)
        if entry is None:
            self._stats.misses += 1
            return None

        entry.hit_count += 1
        self._stats.hits += 1
        logger.debug(f"Cache hit for query hash {query_hash}")
        return entry

    def store(
        self,
        query: str,
        response: str,
        embedding: Optional[Embedding],
        query_hash: str,
        ttl: Optional[float] = None,
    ) -> CachedResponse:
        """Store an answer; evicts the least-hit entries when full."""
        if query_hash not in self._cache and len(self._cache) >= self._max_entries:
            self._sweep_expired(time.time())
            if len(self._cache) >= self._max_entries:
                self._evict_least_used()

        now = time.time()
        entry = CachedResponse(
            query=query,
            response=response,
            embedding=list(embedding or []),
            query_hash=query_hash,
            created_at=now,
            expires_at=now + (self._default_ttl if ttl is None else ttl),
        )
        self._cache[query_hash] = entry
        logger.debug(f"Cached response for query hash {query_hash}")
        return entry

    def _sweep_expired(self, now: float) -> int:
        expired = [key for key, entry in self._cache.items() if entry.is_expired(now)]
        for key in expired:
            del self._cache[key]
        self._stats.expirations += len(expired)
        return len(expired)

    def _evict_least_used(self) -> int:
        """Remove the lowest-hit fraction of entries (at least one)."""
        # sorted() is stable: among equal hit counts the oldest go first
        ranked = sorted(self._cache.items(), key=lambda item: item[1].hit_count)
        to_remove = max(1, math.ceil(len(ranked) * self._eviction_fraction))
        for key, _ in ranked[:to_remove]:
            del self._cache[key]
        self._stats.evictions += to_remove
        logger.info(f"Evicted {to_remove} least-used cache entries")
        return to_remove

    def invalidate(self, query_hash: str) -> bool:
        """Invalidate a specific cache entry."""
        return self._cache.pop(query_hash, None) is not None

    def clear(self) -> int:
        """Clear all cache entries."""
        count = len(self._cache)
        self._cache.clear()
        return count

    def get_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        total_hits = sum(entry.hit_count for entry in self._cache.values())
        size = len(self._cache)
        return {
            "size": size,
            "max_entries": self._max_entries,
            "total_hits": total_hits,
            "avg_hits": total_hits / size if size else 0.0,
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "hit_rate": f"{self._stats.hit_rate:.1f}%",
            "evictions": self._stats.evictions,
            "expirations": self._stats.expirations,
        }
