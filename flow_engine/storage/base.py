"""
Persistence contract used by the engine.

The engine only ever calls these operations; backends implement them. Every
context, task and barrier handed across this boundary is treated as a
snapshot: implementations must not keep references the engine later
mutates, and callers must not mutate what they read back.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel

from flow_engine.core.models import (
    BarrierProgress,
    BarrierTopicRecord,
    ExecutionMetrics,
    JsonObject,
    Task,
    TaskDraft,
)
from flow_engine.core.state_machine import InstanceStatus, NodeRunStatus


@dataclass(frozen=True)
class NodeRunHandle:
    """Opaque reference to an open node run."""

    run_id: str
    node_id: str
    attempt: int
    waiting: bool


@dataclass(frozen=True)
class NodeRunMetrics:
    """Duration split recorded when a node run is closed."""

    duration_ms: int
    active_ms: int
    waiting_ms: int


class BarrierRecord(BaseModel):
    """Durable barrier progress for one (node, key)."""

    instance_id: str
    node_id: str
    key: str
    progress: BarrierProgress

    @property
    def timeout_at(self) -> Optional[datetime]:
        return self.progress.timeout_at


class EngineStorage(ABC):
    """Durable store for instance, node-run, task and barrier state."""

    # ==================== Instances ====================

    @abstractmethod
    async def on_workflow_start(self, instance_id: str, flow_name: str, context: JsonObject) -> None:
        ...

    @abstractmethod
    async def on_workflow_end(
        self,
        instance_id: str,
        status: InstanceStatus,
        metrics: ExecutionMetrics,
        context: JsonObject,
    ) -> None:
        ...

    # ==================== Node Runs ====================

    @abstractmethod
    async def enter_node_run(
        self,
        instance_id: str,
        node_id: str,
        attempt: int,
        waiting: bool,
    ) -> NodeRunHandle:
        ...

    @abstractmethod
    async def leave_node_run(
        self,
        instance_id: str,
        handle: NodeRunHandle,
        status: NodeRunStatus,
        metrics: NodeRunMetrics,
        context: JsonObject,
    ) -> None:
        """Close a run and checkpoint the instance context."""

    # ==================== Tasks ====================

    @abstractmethod
    async def create_task(self, draft: TaskDraft) -> Task:
        ...

    @abstractmethod
    async def get_task(self, task_id: str) -> Optional[Task]:
        ...

    @abstractmethod
    async def mark_task_submitted(self, task_id: str, payload: Any) -> Optional[Task]:
        ...

    @abstractmethod
    async def expire_task(self, task_id: str) -> Optional[Task]:
        """Expire an OPEN task. Tasks in any other state are left alone."""

    @abstractmethod
    async def list_tasks_by_assignee(self, assignee: str) -> list[Task]:
        """OPEN tasks assigned to the given assignee."""

    # ==================== Barriers ====================

    @abstractmethod
    async def save_barrier(
        self,
        instance_id: str,
        node_id: str,
        key: str,
        progress: BarrierProgress,
    ) -> None:
        ...

    @abstractmethod
    async def load_barrier_by_key(self, topic: str, key: str) -> Optional[BarrierRecord]:
        """Open barrier expecting ``topic`` under ``key``, if any."""

    @abstractmethod
    async def record_barrier_topic(
        self,
        instance_id: str,
        node_id: str,
        topic: str,
        record: BarrierTopicRecord,
    ) -> None:
        """Append an immutable audit row for one topic report."""

    # ==================== Sweeps ====================

    @abstractmethod
    async def find_expired_barriers(self, now: datetime) -> list[BarrierRecord]:
        """Uncompleted barriers whose timeout is at or before now."""

    @abstractmethod
    async def find_expired_tasks(self, now: datetime) -> list[Task]:
        """OPEN tasks whose expiry is at or before now."""
