"""
Integration tests for the PostgreSQL storage backend.

Requires a running PostgreSQL reachable through the POSTGRES_* settings;
skipped otherwise. Every test uses fresh ids so runs can share a database.
"""

from datetime import timedelta

import pytest
import pytest_asyncio

from flow_engine.config import get_settings
from flow_engine.core.compiler import compile_rule_set
from flow_engine.core.models import (
    BarrierMode,
    BarrierProgress,
    BarrierTopicRecord,
    ExecutionMetrics,
    TaskDraft,
    new_id,
    utcnow,
)
from flow_engine.core.state_machine import InstanceStatus, NodeRunStatus, TaskStatus
from flow_engine.orchestrator.engine import Engine
from flow_engine.storage.base import NodeRunMetrics
from flow_engine.storage.postgres.database import Database
from flow_engine.storage.postgres.repository import PostgresStorage

pytest.importorskip("asyncpg")


@pytest_asyncio.fixture
async def database():
    """Create database connection for tests."""
    db = Database(get_settings().postgres)

    try:
        await db.init()
        await db.create_all()
    except Exception as e:
        await db.close()
        pytest.skip(f"PostgreSQL not available: {e}")

    yield db

    await db.close()


@pytest.fixture
def pg_storage(database) -> PostgresStorage:
    return PostgresStorage(database)


async def _started_instance(storage: PostgresStorage) -> str:
    instance_id = new_id()
    await storage.on_workflow_start(instance_id, "flow", {"user": {"id": "u-1"}})
    return instance_id


def _draft(instance_id, assignee, expires_at=None):
    return TaskDraft(
        workflow_instance_id=instance_id,
        node_id="form",
        form_schema_ref="review",
        assignees=[assignee],
        context={"user": {"id": "u-1"}},
        expires_at=expires_at,
    )


class TestInstances:
    """Tests for instance and node-run persistence."""

    @pytest.mark.asyncio
    async def test_lifecycle(self, pg_storage):
        """Test start, checkpoint and end of an instance."""
        instance_id = await _started_instance(pg_storage)
        await pg_storage.on_workflow_start(instance_id, "flow", {"ignored": True})

        handle = await pg_storage.enter_node_run(instance_id, "a", attempt=1, waiting=False)
        await pg_storage.leave_node_run(
            instance_id, handle, NodeRunStatus.COMPLETED, NodeRunMetrics(4, 4, 0), {"step": "a"}
        )
        row = await pg_storage.get_instance(instance_id)
        assert row.status == InstanceStatus.RUNNING.value
        assert row.context == {"step": "a"}

        metrics = ExecutionMetrics(wall_ms_total=9, active_ms_total=4, waiting_ms_total=0)
        await pg_storage.on_workflow_end(instance_id, InstanceStatus.COMPLETED, metrics, {"done": True})
        row = await pg_storage.get_instance(instance_id)
        assert row.status == InstanceStatus.COMPLETED.value
        assert row.wall_ms_total == 9
        assert row.completed_at is not None


class TestTasks:
    """Tests for task persistence."""

    @pytest.mark.asyncio
    async def test_submit_once(self, pg_storage):
        """Test that only an open task can be submitted."""
        instance_id = await _started_instance(pg_storage)
        assignee = f"user-{new_id()}"
        task = await pg_storage.create_task(_draft(instance_id, assignee))

        assert [t.id for t in await pg_storage.list_tasks_by_assignee(assignee)] == [task.id]

        submitted = await pg_storage.mark_task_submitted(task.id, {"approved": True})
        assert submitted.status == TaskStatus.SUBMITTED
        assert submitted.payload == {"approved": True}

        again = await pg_storage.expire_task(task.id)
        assert again.status == TaskStatus.SUBMITTED
        assert await pg_storage.list_tasks_by_assignee(assignee) == []
        assert await pg_storage.get_task("missing") is None

    @pytest.mark.asyncio
    async def test_find_expired_tasks(self, pg_storage):
        """Test that expired open tasks are found."""
        instance_id = await _started_instance(pg_storage)
        now = utcnow()
        expired = await pg_storage.create_task(_draft(instance_id, "x", expires_at=now - timedelta(seconds=1)))
        later = await pg_storage.create_task(_draft(instance_id, "x", expires_at=now + timedelta(hours=1)))

        found = {task.id for task in await pg_storage.find_expired_tasks(now)}
        assert expired.id in found
        assert later.id not in found


class TestBarriers:
    """Tests for barrier persistence."""

    @pytest.mark.asyncio
    async def test_save_load_and_complete(self, pg_storage):
        """Test barrier upsert, lookup by key and completion."""
        instance_id = await _started_instance(pg_storage)
        key = new_id()
        now = utcnow()
        progress = BarrierProgress(
            node_id="gate",
            instance_id=instance_id,
            key=key,
            mode=BarrierMode.ALL,
            expected_topics=["a", "b"],
            timeout_at=now - timedelta(seconds=1),
        )
        await pg_storage.save_barrier(instance_id, "gate", key, progress)

        record = await pg_storage.load_barrier_by_key("b", key)
        assert record.instance_id == instance_id
        assert record.progress.expected_topics == ["a", "b"]
        assert await pg_storage.load_barrier_by_key("c", key) is None
        assert key in {r.key for r in await pg_storage.find_expired_barriers(now)}

        await pg_storage.record_barrier_topic(
            instance_id,
            "gate",
            "a",
            BarrierTopicRecord(topic="a", passed=True, payload={"ok": True}, started_at=now, ended_at=now),
        )

        progress.completed = True
        await pg_storage.save_barrier(instance_id, "gate", key, progress)
        assert await pg_storage.load_barrier_by_key("b", key) is None
        assert key not in {r.key for r in await pg_storage.find_expired_barriers(now)}


class TestEngineOnPostgres:
    """Tests for an engine running against PostgreSQL."""

    @pytest.mark.asyncio
    async def test_form_round_trip(self, pg_storage, schemas, evaluator, sample_rule_set):
        """Test that a form flow persists its instance and task."""
        for ref, schema in sample_rule_set["schemas"].items():
            schemas.register(ref, schema)
        engine = Engine(compile_rule_set(sample_rule_set), pg_storage, schemas, evaluator)

        started = await engine.start_instance("review", {"user": {"id": "u-1"}})
        task = await pg_storage.get_task(started.pending_task.id)
        assert task.status == TaskStatus.OPEN

        result = await engine.resume_with_form(task.id, {"approved": True})

        assert result.status == InstanceStatus.COMPLETED
        row = await pg_storage.get_instance(started.instance_id)
        assert row.status == InstanceStatus.COMPLETED.value
        assert row.context["forms"]["form"]["status"] == "SUBMITTED"

    @pytest.mark.asyncio
    async def test_ping(self, database):
        """Test that a live database answers the health probe."""
        assert await database.ping() is True
