import importlib.metadata

try:
    __version__ = importlib.metadata.version("query-gate")
except importlib.metadata.PackageNotFoundError:
    # Dev checkout without installed metadata
    __version__ = "0.0.0-dev"

# Export typed settings
from query_gate.settings import (
    Settings,
    RuleSettings,
    ClassifierSettings,
    OptimizerSettings,
    CircuitBreakerSettings,
    SemanticCacheSettings,
    BatchSettings,
    QueueSettings,
    AnalyticsSettings,
    ProviderSettings,
    get_settings,
    clear_settings_cache,
)
