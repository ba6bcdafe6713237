"""Configuration management."""

from workflow_runtime.config.settings import (
    DispatchSettings,
    EngineSettings,
    Environment,
    PostgresSettings,
    RedisSettings,
    RetrySettings,
    Settings,
    get_settings,
)

__all__ = [
    "DispatchSettings",
    "EngineSettings",
    "Environment",
    "PostgresSettings",
    "RedisSettings",
    "RetrySettings",
    "Settings",
    "get_settings",
]
