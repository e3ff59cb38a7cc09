"""Observability utilities for consistent Logfire logging.

This module provides centralized logging utilities that ensure:
- Every routing decision (rule, cache, model call) is recorded the same way
- Circuit rejections and degraded fallbacks are emitted as warnings
- Logging failures never break request handling
"""

from __future__ import annotations

import logging
from typing import Any, Optional

import logfire

logger = logging.getLogger(__name__)


def configure_logfire(token: Optional[str] = None, service_name: str = "query-gate") -> None:
    """Configure Logfire; records are only shipped when a token is present."""
    try:
        logfire.configure(
            token=token,
            service_name=service_name,
            send_to_logfire="if-token-present",
            console=False,
        )
    except Exception as e:
        logger.debug(f"Failed to configure logfire: {e}")


# =============================================================================
# DECISION LOGGING
# =============================================================================


def log_rule_hit(rule_name: str, user_id: Optional[str], elapsed_ms: float) -> None:
    """Log a query answered by a rule or precomputed response."""
    try:
        logfire.info(
            "Rule hit: {rule_name}",
            rule_name=rule_name,
            user_id=user_id,
            elapsed_ms=round(elapsed_ms, 2),
        )
    except Exception as e:
        logger.debug(f"Failed to log rule hit: {e}")


def log_cache_hit(cache_type: str, query_hash: str, elapsed_ms: float) -> None:
    """Log a query answered from the cache.

    Args:
        cache_type: "exact" for a hash hit, "semantic" for a similarity hit
        query_hash: Hash of the cached entry
        elapsed_ms: Time spent answering
    """
    try:
        logfire.info(
            "Cache hit ({cache_type}): {query_hash}",
            cache_type=cache_type,
            query_hash=query_hash,
            elapsed_ms=round(elapsed_ms, 2),
        )
    except Exception as e:
        logger.debug(f"Failed to log cache hit: {e}")


def log_model_call(
    model: str,
    tier: str,
    tokens: int,
    cost_usd: float,
    elapsed_ms: float,
    **extra_fields: Any,
) -> None:
    """Log a completed upstream model call."""
    try:
        logfire.info(
            "Model call: {model} ({tier})",
            model=model,
            tier=tier,
            tokens=tokens,
            cost_usd=cost_usd,
            elapsed_ms=round(elapsed_ms, 2),
            **extra_fields,
        )
    except Exception as e:
        logger.debug(f"Failed to log model call: {e}")


def log_circuit_rejected(provider: str, state: str) -> None:
    """Log a request rejected because the provider circuit is open."""
    try:
        logfire.warn(
            "Circuit rejected request for {provider}",
            provider=provider,
            state=state,
        )
    except Exception as e:
        logger.debug(f"Failed to log circuit rejection: {e}")


def log_fallback(error_kind: str, reason: str, user_id: Optional[str] = None) -> None:
    """Log a degraded fallback reply."""
    try:
        logfire.warn(
            "Fallback reply ({error_kind}): {reason}",
            error_kind=error_kind,
            reason=reason,
            user_id=user_id,
        )
    except Exception as e:
        logger.debug(f"Failed to log fallback: {e}")
