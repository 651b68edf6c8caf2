"""Storage layer for flow persistence."""

from typing import Optional

from flow_engine.config.settings import Settings, StorageBackend
from flow_engine.core.errors import ConfigurationError
from flow_engine.storage.base import BarrierRecord, EngineStorage, NodeRunHandle, NodeRunMetrics
from flow_engine.storage.memory import MemoryStorage
from flow_engine.storage.postgres.database import Database
from flow_engine.storage.postgres.repository import PostgresStorage


def create_storage(settings: Settings, database: Optional[Database] = None) -> EngineStorage:
    """
    Select the persistence backend named by the settings.

    The postgres backend needs an initialized Database from the caller,
    who also owns closing it.
    """
    if settings.engine.storage_backend == StorageBackend.POSTGRES:
        if database is None:
            raise ConfigurationError("The postgres storage backend requires a Database")
        return PostgresStorage(database)
    return MemoryStorage()


__all__ = [
    "BarrierRecord",
    "EngineStorage",
    "MemoryStorage",
    "NodeRunHandle",
    "NodeRunMetrics",
    "PostgresStorage",
    "create_storage",
]
