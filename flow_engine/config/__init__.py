"""Configuration management."""

from flow_engine.config.settings import (
    EngineSettings,
    Environment,
    IdempotencyBackend,
    PostgresSettings,
    RedisSettings,
    Settings,
    StorageBackend,
    get_settings,
)

__all__ = [
    "EngineSettings",
    "Environment",
    "IdempotencyBackend",
    "PostgresSettings",
    "RedisSettings",
    "Settings",
    "StorageBackend",
    "get_settings",
]
