"""Configuration schema and YAML loading."""

from download_watch.config.loader import ConfigLoadError, YamlConfigLoader
from download_watch.config.models import (
    ConfigLoadRequest,
    LoggingSettings,
    SourceSettings,
    WatchConfig,
)

__all__ = [
    "ConfigLoadError",
    "ConfigLoadRequest",
    "LoggingSettings",
    "SourceSettings",
    "WatchConfig",
    "YamlConfigLoader",
]
