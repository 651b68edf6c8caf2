"""
In-process storage backend.

Keeps everything in dictionaries. Reads return deep copies so callers can
never mutate stored state behind the store's back.
"""

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from flow_engine.core.models import (
    BarrierProgress,
    BarrierTopicRecord,
    ExecutionMetrics,
    JsonObject,
    Task,
    TaskDraft,
    new_id,
    utcnow,
)
from flow_engine.core.state_machine import (
    InstanceStatus,
    InvalidStateTransitionError,
    NodeRunStatus,
    TaskStateMachine,
    TaskStatus,
)
from flow_engine.storage.base import (
    BarrierRecord,
    EngineStorage,
    NodeRunHandle,
    NodeRunMetrics,
)

logger = logging.getLogger(__name__)


@dataclass
class InstanceRecord:
    flow_name: str
    context: JsonObject
    status: InstanceStatus = InstanceStatus.RUNNING
    metrics: ExecutionMetrics = field(default_factory=ExecutionMetrics)
    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None


@dataclass
class NodeRunRecord:
    instance_id: str
    node_id: str
    attempt: int
    waiting: bool
    status: NodeRunStatus = NodeRunStatus.RUNNING
    metrics: Optional[NodeRunMetrics] = None
    started_at: datetime = field(default_factory=utcnow)
    ended_at: Optional[datetime] = None


@dataclass
class BarrierTopicAudit:
    instance_id: str
    node_id: str
    topic: str
    record: BarrierTopicRecord


class MemoryStorage(EngineStorage):
    """Dictionary-backed EngineStorage."""

    def __init__(self):
        self.instances: dict[str, InstanceRecord] = {}
        self.node_runs: dict[str, NodeRunRecord] = {}
        self._tasks: dict[str, Task] = {}
        self._barriers: dict[tuple[str, str], BarrierRecord] = {}
        self.barrier_topics: list[BarrierTopicAudit] = []

    # ==================== Instances ====================

    async def on_workflow_start(self, instance_id: str, flow_name: str, context: JsonObject) -> None:
        if instance_id not in self.instances:
            self.instances[instance_id] = InstanceRecord(
                flow_name=flow_name,
                context=copy.deepcopy(context),
            )

    async def on_workflow_end(
        self,
        instance_id: str,
        status: InstanceStatus,
        metrics: ExecutionMetrics,
        context: JsonObject,
    ) -> None:
        record = self.instances.get(instance_id)
        if record is None:
            return
        record.status = status
        record.metrics = metrics.model_copy()
        record.context = copy.deepcopy(context)
        record.completed_at = utcnow()

    # ==================== Node Runs ====================

    async def enter_node_run(
        self,
        instance_id: str,
        node_id: str,
        attempt: int,
        waiting: bool,
    ) -> NodeRunHandle:
        run_id = new_id()
        self.node_runs[run_id] = NodeRunRecord(
            instance_id=instance_id,
            node_id=node_id,
            attempt=attempt,
            waiting=waiting,
        )
        return NodeRunHandle(run_id=run_id, node_id=node_id, attempt=attempt, waiting=waiting)

    async def leave_node_run(
        self,
        instance_id: str,
        handle: NodeRunHandle,
        status: NodeRunStatus,
        metrics: NodeRunMetrics,
        context: JsonObject,
    ) -> None:
        run = self.node_runs.get(handle.run_id)
        if run is not None:
            run.status = status
            run.metrics = metrics
            run.ended_at = utcnow()
        instance = self.instances.get(instance_id)
        if instance is not None:
            instance.context = copy.deepcopy(context)

    # ==================== Tasks ====================

    async def create_task(self, draft: TaskDraft) -> Task:
        task = Task(id=new_id(), **copy.deepcopy(draft.model_dump()))
        self._tasks[task.id] = task
        return task.model_copy(deep=True)

    async def get_task(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    def _transition(self, task: Task, to_state: TaskStatus) -> bool:
        machine = TaskStateMachine(task.status)
        try:
            machine.transition(to_state)
        except InvalidStateTransitionError:
            logger.debug(f"Task {task.id} is {task.status.value}, ignoring {to_state.value}")
            return False
        task.status = machine.state
        return True

    async def mark_task_submitted(self, task_id: str, payload: Any) -> Optional[Task]:
        task = self._tasks.get(task_id)
        if task is None:
            return None
        if self._transition(task, TaskStatus.SUBMITTED):
            task.submitted_at = utcnow()
            task.payload = copy.deepcopy(payload)
        return task.model_copy(deep=True)

    async def expire_task(self, task_id: str) -> Optional[Task]:
        task = self._tasks.get(task_id)
        if task is None:
            return None
        self._transition(task, TaskStatus.EXPIRED)
        return task.model_copy(deep=True)

    async def list_tasks_by_assignee(self, assignee: str) -> list[Task]:
        return [
            task.model_copy(deep=True)
            for task in self._tasks.values()
            if task.status == TaskStatus.OPEN and assignee in task.assignees
        ]

    # ==================== Barriers ====================

    async def save_barrier(
        self,
        instance_id: str,
        node_id: str,
        key: str,
        progress: BarrierProgress,
    ) -> None:
        self._barriers[(node_id, key)] = BarrierRecord(
            instance_id=instance_id,
            node_id=node_id,
            key=key,
            progress=progress.model_copy(deep=True),
        )

    async def load_barrier_by_key(self, topic: str, key: str) -> Optional[BarrierRecord]:
        for record in self._barriers.values():
            progress = record.progress
            if record.key == key and topic in progress.expected_topics and not progress.completed:
                return record.model_copy(deep=True)
        return None

    async def record_barrier_topic(
        self,
        instance_id: str,
        node_id: str,
        topic: str,
        record: BarrierTopicRecord,
    ) -> None:
        self.barrier_topics.append(
            BarrierTopicAudit(
                instance_id=instance_id,
                node_id=node_id,
                topic=topic,
                record=record.model_copy(deep=True),
            )
        )

    # ==================== Sweeps ====================

    async def find_expired_barriers(self, now: datetime) -> list[BarrierRecord]:
        return [
            record.model_copy(deep=True)
            for record in self._barriers.values()
            if not record.progress.completed and record.progress.is_expired(now)
        ]

    async def find_expired_tasks(self, now: datetime) -> list[Task]:
        return [
            task.model_copy(deep=True)
            for task in self._tasks.values()
            if task.status == TaskStatus.OPEN and task.is_expired(now)
        ]
