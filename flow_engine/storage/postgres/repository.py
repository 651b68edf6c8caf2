"""
PostgreSQL implementation of the engine persistence contract.

Each operation runs in its own session; closing a node run updates the
run row and the instance context in one transaction.
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import and_, select, update
from sqlalchemy.dialects.postgresql import insert

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
from flow_engine.core.state_machine import InstanceStatus, NodeRunStatus, TaskStatus
from flow_engine.storage.base import (
    BarrierRecord,
    EngineStorage,
    NodeRunHandle,
    NodeRunMetrics,
)
from flow_engine.storage.postgres.database import Database
from flow_engine.storage.postgres.models import (
    BarrierModel,
    BarrierTopicModel,
    NodeRunModel,
    TaskModel,
    WorkflowInstanceModel,
)

logger = logging.getLogger(__name__)


def _task_from_row(row: TaskModel) -> Task:
    return Task(
        id=row.id,
        workflow_instance_id=row.instance_id,
        node_id=row.node_id,
        form_schema_ref=row.form_schema_ref,
        status=TaskStatus(row.status),
        assignees=list(row.assignees or []),
        context=row.context or {},
        created_at=row.created_at,
        submitted_at=row.submitted_at,
        expires_at=row.expires_at,
        payload=row.payload,
    )


def _barrier_from_row(row: BarrierModel) -> BarrierRecord:
    progress = BarrierProgress.model_validate(row.progress)
    # The column is authoritative for the deadline the sweeper queries on.
    progress.timeout_at = row.expires_at
    return BarrierRecord(
        instance_id=row.instance_id,
        node_id=row.node_id,
        key=row.correlate_key,
        progress=progress,
    )


class PostgresStorage(EngineStorage):
    """EngineStorage backed by SQLAlchemy async sessions."""

    def __init__(self, database: Database):
        self.database = database

    # ==================== Instances ====================

    async def on_workflow_start(self, instance_id: str, flow_name: str, context: JsonObject) -> None:
        async with self.database.session() as session:
            await session.execute(
                insert(WorkflowInstanceModel)
                .values(
                    id=instance_id,
                    flow_name=flow_name,
                    status=InstanceStatus.RUNNING.value,
                    context=context,
                )
                .on_conflict_do_nothing(index_elements=["id"])
            )

    async def on_workflow_end(
        self,
        instance_id: str,
        status: InstanceStatus,
        metrics: ExecutionMetrics,
        context: JsonObject,
    ) -> None:
        async with self.database.session() as session:
            await session.execute(
                update(WorkflowInstanceModel)
                .where(WorkflowInstanceModel.id == instance_id)
                .values(
                    status=status.value,
                    wall_ms_total=metrics.wall_ms_total,
                    active_ms_total=metrics.active_ms_total,
                    waiting_ms_total=metrics.waiting_ms_total,
                    context=context,
                    completed_at=utcnow(),
                )
            )

    async def get_instance(self, instance_id: str) -> Optional[WorkflowInstanceModel]:
        """Durable instance row, for inspection and tests."""
        async with self.database.session() as session:
            result = await session.execute(
                select(WorkflowInstanceModel).where(WorkflowInstanceModel.id == instance_id)
            )
            return result.scalar_one_or_none()

    # ==================== Node Runs ====================

    async def enter_node_run(
        self,
        instance_id: str,
        node_id: str,
        attempt: int,
        waiting: bool,
    ) -> NodeRunHandle:
        run_id = new_id()
        async with self.database.session() as session:
            session.add(
                NodeRunModel(
                    id=run_id,
                    instance_id=instance_id,
                    node_id=node_id,
                    attempt=attempt,
                    waiting=waiting,
                    status=NodeRunStatus.RUNNING.value,
                    started_at=utcnow(),
                )
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
        async with self.database.transaction() as session:
            await session.execute(
                update(NodeRunModel)
                .where(NodeRunModel.id == handle.run_id)
                .values(
                    status=status.value,
                    duration_ms=metrics.duration_ms,
                    active_ms=metrics.active_ms,
                    waiting_ms=metrics.waiting_ms,
                    ended_at=utcnow(),
                )
            )
            await session.execute(
                update(WorkflowInstanceModel)
                .where(WorkflowInstanceModel.id == instance_id)
                .values(context=context)
            )

    # ==================== Tasks ====================

    async def create_task(self, draft: TaskDraft) -> Task:
        task = Task(id=new_id(), **draft.model_dump())
        async with self.database.session() as session:
            session.add(
                TaskModel(
                    id=task.id,
                    instance_id=task.workflow_instance_id,
                    node_id=task.node_id,
                    form_schema_ref=task.form_schema_ref,
                    status=task.status.value,
                    assignees=task.assignees,
                    context=task.context,
                    created_at=task.created_at,
                    expires_at=task.expires_at,
                )
            )
        return task

    async def get_task(self, task_id: str) -> Optional[Task]:
        async with self.database.session() as session:
            result = await session.execute(select(TaskModel).where(TaskModel.id == task_id))
            row = result.scalar_one_or_none()
            return _task_from_row(row) if row else None

    async def _close_task(self, task_id: str, values: dict[str, Any]) -> Optional[Task]:
        """Move an OPEN task to a terminal status; other states are left alone."""
        async with self.database.session() as session:
            await session.execute(
                update(TaskModel)
                .where(and_(TaskModel.id == task_id, TaskModel.status == TaskStatus.OPEN.value))
                .values(**values)
            )
            result = await session.execute(select(TaskModel).where(TaskModel.id == task_id))
            row = result.scalar_one_or_none()
            return _task_from_row(row) if row else None

    async def mark_task_submitted(self, task_id: str, payload: Any) -> Optional[Task]:
        return await self._close_task(
            task_id,
            {"status": TaskStatus.SUBMITTED.value, "submitted_at": utcnow(), "payload": payload},
        )

    async def expire_task(self, task_id: str) -> Optional[Task]:
        return await self._close_task(task_id, {"status": TaskStatus.EXPIRED.value})

    async def list_tasks_by_assignee(self, assignee: str) -> list[Task]:
        async with self.database.session() as session:
            result = await session.execute(
                select(TaskModel)
                .where(
                    and_(
                        TaskModel.assignees.any(assignee),
                        TaskModel.status == TaskStatus.OPEN.value,
                    )
                )
                .order_by(TaskModel.created_at)
            )
            return [_task_from_row(row) for row in result.scalars().all()]

    # ==================== Barriers ====================

    async def save_barrier(
        self,
        instance_id: str,
        node_id: str,
        key: str,
        progress: BarrierProgress,
    ) -> None:
        document = progress.model_dump(mode="json", by_alias=True)
        statement = insert(BarrierModel).values(
            instance_id=instance_id,
            node_id=node_id,
            correlate_key=key,
            mode=progress.mode.value,
            quorum=progress.quorum,
            expected_topics=progress.expected_topics,
            emit_merged=progress.emit_merged,
            completed=progress.completed,
            progress=document,
            expires_at=progress.timeout_at,
        )
        statement = statement.on_conflict_do_update(
            constraint="uq_workflow_barriers_node_key",
            set_={
                "instance_id": statement.excluded.instance_id,
                "progress": statement.excluded.progress,
                "completed": statement.excluded.completed,
                "expires_at": statement.excluded.expires_at,
                "updated_at": utcnow(),
            },
        )
        async with self.database.session() as session:
            await session.execute(statement)

    async def load_barrier_by_key(self, topic: str, key: str) -> Optional[BarrierRecord]:
        async with self.database.session() as session:
            result = await session.execute(
                select(BarrierModel)
                .where(
                    and_(
                        BarrierModel.correlate_key == key,
                        BarrierModel.expected_topics.any(topic),
                        BarrierModel.completed.is_(False),
                    )
                )
                .order_by(BarrierModel.created_at)
                .limit(1)
            )
            row = result.scalar_one_or_none()
            return _barrier_from_row(row) if row else None

    async def record_barrier_topic(
        self,
        instance_id: str,
        node_id: str,
        topic: str,
        record: BarrierTopicRecord,
    ) -> None:
        async with self.database.session() as session:
            session.add(
                BarrierTopicModel(
                    id=new_id(),
                    instance_id=instance_id,
                    node_id=node_id,
                    topic=topic,
                    status="PASS" if record.passed else "FAIL",
                    payload=record.payload,
                    started_at=record.started_at,
                    ended_at=record.ended_at,
                    duration_ms=record.duration_ms,
                )
            )

    # ==================== Sweeps ====================

    async def find_expired_barriers(self, now: datetime) -> list[BarrierRecord]:
        async with self.database.session() as session:
            result = await session.execute(
                select(BarrierModel)
                .where(
                    and_(
                        BarrierModel.completed.is_(False),
                        BarrierModel.expires_at.is_not(None),
                        BarrierModel.expires_at <= now,
                    )
                )
                .order_by(BarrierModel.expires_at)
            )
            return [_barrier_from_row(row) for row in result.scalars().all()]

    async def find_expired_tasks(self, now: datetime) -> list[Task]:
        async with self.database.session() as session:
            result = await session.execute(
                select(TaskModel)
                .where(
                    and_(
                        TaskModel.status == TaskStatus.OPEN.value,
                        TaskModel.expires_at.is_not(None),
                        TaskModel.expires_at <= now,
                    )
                )
                .order_by(TaskModel.expires_at)
            )
            return [_task_from_row(row) for row in result.scalars().all()]
