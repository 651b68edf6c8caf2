"""PostgreSQL storage layer."""

from flow_engine.storage.postgres.database import Database
from flow_engine.storage.postgres.models import (
    Base,
    BarrierModel,
    BarrierTopicModel,
    NodeRunModel,
    TaskModel,
    WorkflowInstanceModel,
)
from flow_engine.storage.postgres.repository import PostgresStorage

__all__ = [
    "Base",
    "BarrierModel",
    "BarrierTopicModel",
    "Database",
    "NodeRunModel",
    "PostgresStorage",
    "TaskModel",
    "WorkflowInstanceModel",
]
