"""
Typed settings management using pydantic-settings.

Every tunable of the routing and resilience layer lives here, grouped per
component. Values are loaded from the environment (prefix ``QUERY_GATE_``,
nested delimiter ``__``) and an optional ``.env`` file.

Usage:
    from query_gate.settings import get_settings

    settings = get_settings()
    print(settings.circuit.failure_threshold)

    # Override a nested value from the environment:
    #   QUERY_GATE_QUEUE__MAX_QUEUE_SIZE=250
"""

from __future__ import annotations

from decimal import Decimal
from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# =============================================================================
# Rule Matcher
# =============================================================================


class RuleSettings(BaseSettings):
    """Rule matcher configuration."""

    model_config = SettingsConfigDict(env_prefix="QUERY_GATE_RULES_", extra="ignore")

    precomputed_file: Optional[Path] = Field(
        default=None,
        description="JSON file of precomputed responses checked before the rule list",
    )
    likely_max_length: int = Field(
        default=20,
        ge=0,
        description="Queries shorter than this are treated as likely rule-based",
    )


# =============================================================================
# Query Classifier
# =============================================================================


class ClassifierSettings(BaseSettings):
    """Model tiers and the per-tier unit cost table."""

    model_config = SettingsConfigDict(env_prefix="QUERY_GATE_CLASSIFIER_", extra="ignore")

    cheap_model: str = Field(default="gpt-3.5-turbo")
    premium_model: str = Field(default="gpt-4")
    embedding_model: str = Field(default="text-embedding-3-small")

    # USD per 1K tokens
    cheap_cost_per_1k: Decimal = Field(default=Decimal("0.0015"), ge=0)
    premium_cost_per_1k: Decimal = Field(default=Decimal("0.03"), ge=0)
    embedding_cost_per_1k: Decimal = Field(default=Decimal("0.00002"), ge=0)


# =============================================================================
# Prompt Optimizer
# =============================================================================


class OptimizerSettings(BaseSettings):
    """Prompt size limits applied before every model call."""

    model_config = SettingsConfigDict(env_prefix="QUERY_GATE_OPTIMIZER_", extra="ignore")

    max_history: int = Field(default=5, ge=0)
    max_system_prompt_length: int = Field(default=800, ge=1)
    max_message_length: int = Field(default=1000, ge=1)
    max_history_message_length: int = Field(default=500, ge=1)


# =============================================================================
# Circuit Breaker
# =============================================================================


class CircuitBreakerSettings(BaseSettings):
    """Circuit breaker thresholds (seconds for all durations)."""

    model_config = SettingsConfigDict(env_prefix="QUERY_GATE_CIRCUIT_", extra="ignore")

    failure_threshold: int = Field(default=5, ge=1)
    success_threshold: int = Field(default=2, ge=1)
    cooldown_seconds: float = Field(default=60.0, gt=0)
    failure_window_seconds: float = Field(default=60.0, gt=0)


# =============================================================================
# Semantic Cache
# =============================================================================


class SemanticCacheSettings(BaseSettings):
    """Semantic cache sizing and expiry."""

    model_config = SettingsConfigDict(env_prefix="QUERY_GATE_CACHE_", extra="ignore")

    similarity_threshold: float = Field(default=0.85, ge=0.0, le=1.0)
    max_entries: int = Field(default=1000, ge=1)
    eviction_fraction: float = Field(default=0.1, gt=0.0, le=1.0)
    default_ttl_seconds: float = Field(default=24 * 60 * 60, gt=0)
    simple_ttl_seconds: float = Field(
        default=7 * 24 * 60 * 60,
        gt=0,
        description="TTL for answers to queries classified as simple",
    )


# =============================================================================
# Batch Grouper
# =============================================================================


class BatchSettings(BaseSettings):
    """Batch window and similarity grouping."""

    model_config = SettingsConfigDict(env_prefix="QUERY_GATE_BATCH_", extra="ignore")

    enabled: bool = Field(default=True)
    max_batch_size: int = Field(default=10, ge=1)
    batch_interval_seconds: float = Field(default=2.0, ge=0)
    request_timeout_seconds: float = Field(default=30.0, gt=0)
    word_overlap_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    max_word_count_difference: int = Field(default=2, ge=0)


# =============================================================================
# Priority Request Queue
# =============================================================================


class QueueSettings(BaseSettings):
    """Admission control and dispatch pacing."""

    model_config = SettingsConfigDict(env_prefix="QUERY_GATE_QUEUE_", extra="ignore")

    max_queue_size: int = Field(default=100, ge=1)
    max_wait_seconds: float = Field(default=30.0, gt=0)
    dispatch_interval_seconds: float = Field(default=0.1, ge=0)
    vendor_weight: int = Field(default=100)
    premium_weight: int = Field(default=50)
    free_weight: int = Field(default=10)
    active_session_bonus: int = Field(default=10)


# =============================================================================
# Usage Analytics
# =============================================================================


class AnalyticsSettings(BaseSettings):
    """Event buffer bounds and the durable sink."""

    model_config = SettingsConfigDict(env_prefix="QUERY_GATE_ANALYTICS_", extra="ignore")

    max_events: int = Field(default=1000, ge=1)
    flush_interval_seconds: float = Field(default=60.0, gt=0)
    default_window_seconds: float = Field(default=3600.0, gt=0)
    sink_url: Optional[str] = Field(
        default=None,
        description="HTTP endpoint receiving {'events': [...]} batches",
    )
    sink_timeout_seconds: float = Field(default=10.0, gt=0)


# =============================================================================
# Provider Settings (Secrets)
# =============================================================================


class ProviderSettings(BaseSettings):
    """Model provider endpoint and credentials.

    SecretStr prevents accidental logging of the API key.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    openai_api_key: Optional[SecretStr] = Field(default=None, alias="OPENAI_API_KEY")
    base_url: str = Field(default="https://api.openai.com/v1", alias="QUERY_GATE_PROVIDER_BASE_URL")
    temperature: float = Field(default=0.7, ge=0.0, le=2.0, alias="QUERY_GATE_PROVIDER_TEMPERATURE")
    max_tokens: int = Field(default=500, ge=1, alias="QUERY_GATE_PROVIDER_MAX_TOKENS")
    timeout_seconds: float = Field(default=30.0, gt=0, alias="QUERY_GATE_PROVIDER_TIMEOUT")
    provider_name: str = Field(default="openai", alias="QUERY_GATE_PROVIDER_NAME")
    logfire_token: Optional[SecretStr] = Field(default=None, alias="LOGFIRE_TOKEN")

    @field_validator("base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @property
    def has_api_key(self) -> bool:
        return (
            self.openai_api_key is not None
            and self.openai_api_key.get_secret_value() != ""
        )


# =============================================================================
# Master Settings Class
# =============================================================================


class Settings(BaseSettings):
    """Master settings combining all component sections."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="QUERY_GATE_",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    fallback_message: str = Field(
        default=(
            "I apologize, but I'm having trouble processing your request right now. "
            "Please try again in a moment."
        ),
    )
    max_query_length: int = Field(default=4000, ge=1)

    rules: RuleSettings = Field(default_factory=RuleSettings)
    classifier: ClassifierSettings = Field(default_factory=ClassifierSettings)
    optimizer: OptimizerSettings = Field(default_factory=OptimizerSettings)
    circuit: CircuitBreakerSettings = Field(default_factory=CircuitBreakerSettings)
    cache: SemanticCacheSettings = Field(default_factory=SemanticCacheSettings)
    batch: BatchSettings = Field(default_factory=BatchSettings)
    queue: QueueSettings = Field(default_factory=QueueSettings)
    analytics: AnalyticsSettings = Field(default_factory=AnalyticsSettings)
    provider: ProviderSettings = Field(default_factory=ProviderSettings)


# =============================================================================
# Cached Singleton Accessors
# =============================================================================


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the cached settings singleton.

    The settings are loaded once and cached for the process lifetime.
    To reload, call clear_settings_cache() first.
    """
    return Settings()


def clear_settings_cache() -> None:
    """Clear the cached settings instance.

    Call this if environment variables or .env files have changed
    and you need to reload configuration.
    """
    get_settings.cache_clear()
