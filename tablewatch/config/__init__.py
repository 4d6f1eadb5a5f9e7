"""Unified configuration system for tablewatch."""

from tablewatch.config.loader import ConfigLoadError, YAMLConfigLoader, expand_env_refs
from tablewatch.config.manager import ConfigManager, ReloadResult
from tablewatch.config.models import (
    PollingConfig,
    SourceConfig,
    TableConfig,
    TableWatchConfig,
    TransportConfig,
    TriggersConfig,
)

__all__ = [
    "ConfigLoadError",
    "ConfigManager",
    "PollingConfig",
    "ReloadResult",
    "SourceConfig",
    "TableConfig",
    "TableWatchConfig",
    "TransportConfig",
    "TriggersConfig",
    "YAMLConfigLoader",
    "expand_env_refs",
]
