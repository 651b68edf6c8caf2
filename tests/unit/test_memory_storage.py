"""
Unit tests for the in-process storage backend.
"""

from datetime import timedelta

import pytest

from flow_engine.core.models import BarrierMode, BarrierProgress, ExecutionMetrics, TaskDraft, utcnow
from flow_engine.core.state_machine import InstanceStatus, NodeRunStatus, TaskStatus
from flow_engine.storage.base import NodeRunMetrics
from flow_engine.storage.memory import MemoryStorage


def _draft(instance_id="i-1", assignees=("alice",), expires_at=None):
    return TaskDraft(
        workflow_instance_id=instance_id,
        node_id="form",
        form_schema_ref="review",
        assignees=list(assignees),
        context={"user": {"id": "u-1"}},
        expires_at=expires_at,
    )


def _progress(instance_id="i-1", key="k-1", timeout_at=None):
    return BarrierProgress(
        node_id="gate",
        instance_id=instance_id,
        key=key,
        mode=BarrierMode.ALL,
        expected_topics=["a", "b"],
        timeout_at=timeout_at,
    )


class TestInstancesAndRuns:
    """Tests for instance and node-run bookkeeping."""

    @pytest.mark.asyncio
    async def test_workflow_lifecycle(self, storage: MemoryStorage):
        """Test start, node run checkpoint and end."""
        context = {"n": 1}
        await storage.on_workflow_start("i-1", "flow", context)
        context["n"] = 2
        assert storage.instances["i-1"].context == {"n": 1}

        handle = await storage.enter_node_run("i-1", "a", attempt=1, waiting=False)
        await storage.leave_node_run("i-1", handle, NodeRunStatus.COMPLETED, NodeRunMetrics(5, 5, 0), {"n": 3})
        run = storage.node_runs[handle.run_id]
        assert run.status == NodeRunStatus.COMPLETED
        assert run.metrics.active_ms == 5
        assert storage.instances["i-1"].context == {"n": 3}

        metrics = ExecutionMetrics(wall_ms_total=10, active_ms_total=5, waiting_ms_total=0)
        await storage.on_workflow_end("i-1", InstanceStatus.COMPLETED, metrics, {"n": 4})
        record = storage.instances["i-1"]
        assert record.status == InstanceStatus.COMPLETED
        assert record.metrics.wall_ms_total == 10
        assert record.completed_at is not None

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, storage: MemoryStorage):
        """Test that a repeated start does not reset the record."""
        await storage.on_workflow_start("i-1", "flow", {"n": 1})
        await storage.on_workflow_start("i-1", "flow", {"n": 99})
        assert storage.instances["i-1"].context == {"n": 1}


class TestTasks:
    """Tests for task persistence."""

    @pytest.mark.asyncio
    async def test_create_and_list(self, storage: MemoryStorage):
        """Test that open tasks are listed per assignee."""
        task = await storage.create_task(_draft(assignees=("alice", "bob")))
        await storage.create_task(_draft(assignees=("carol",)))

        assert task.status == TaskStatus.OPEN
        assert [t.id for t in await storage.list_tasks_by_assignee("bob")] == [task.id]
        assert await storage.list_tasks_by_assignee("nobody") == []

    @pytest.mark.asyncio
    async def test_reads_are_copies(self, storage: MemoryStorage):
        """Test that mutating a read task does not change the store."""
        task = await storage.create_task(_draft())
        task.context["user"]["id"] = "tampered"
        stored = await storage.get_task(task.id)
        assert stored.context["user"]["id"] == "u-1"

    @pytest.mark.asyncio
    async def test_submit(self, storage: MemoryStorage):
        """Test submitting an open task."""
        task = await storage.create_task(_draft())
        submitted = await storage.mark_task_submitted(task.id, {"approved": True})

        assert submitted.status == TaskStatus.SUBMITTED
        assert submitted.payload == {"approved": True}
        assert submitted.submitted_at is not None
        assert await storage.list_tasks_by_assignee("alice") == []

    @pytest.mark.asyncio
    async def test_expired_task_stays_expired(self, storage: MemoryStorage):
        """Test that closing transitions only apply to open tasks."""
        task = await storage.create_task(_draft())
        await storage.expire_task(task.id)

        late = await storage.mark_task_submitted(task.id, {"approved": True})
        assert late.status == TaskStatus.EXPIRED
        assert late.payload is None

    @pytest.mark.asyncio
    async def test_unknown_task(self, storage: MemoryStorage):
        """Test that unknown tasks read as None."""
        assert await storage.get_task("missing") is None
        assert await storage.expire_task("missing") is None
        assert await storage.mark_task_submitted("missing", {}) is None

    @pytest.mark.asyncio
    async def test_find_expired_tasks(self, storage: MemoryStorage):
        """Test that only open tasks past their expiry are found."""
        now = utcnow()
        expired = await storage.create_task(_draft(expires_at=now - timedelta(seconds=1)))
        await storage.create_task(_draft(expires_at=now + timedelta(hours=1)))
        await storage.create_task(_draft())

        assert [t.id for t in await storage.find_expired_tasks(now)] == [expired.id]

        await storage.expire_task(expired.id)
        assert await storage.find_expired_tasks(now) == []


class TestBarriers:
    """Tests for barrier persistence."""

    @pytest.mark.asyncio
    async def test_save_and_load_by_key(self, storage: MemoryStorage):
        """Test that open barriers are found by topic and key."""
        await storage.save_barrier("i-1", "gate", "k-1", _progress())

        record = await storage.load_barrier_by_key("a", "k-1")
        assert record.instance_id == "i-1"
        assert record.progress.expected_topics == ["a", "b"]
        assert await storage.load_barrier_by_key("zzz", "k-1") is None
        assert await storage.load_barrier_by_key("a", "other") is None

    @pytest.mark.asyncio
    async def test_completed_barriers_not_loaded(self, storage: MemoryStorage):
        """Test that a completed barrier no longer correlates."""
        progress = _progress()
        progress.completed = True
        await storage.save_barrier("i-1", "gate", "k-1", progress)
        assert await storage.load_barrier_by_key("a", "k-1") is None

    @pytest.mark.asyncio
    async def test_save_is_upsert(self, storage: MemoryStorage):
        """Test that saving the same node and key replaces the record."""
        now = utcnow()
        await storage.save_barrier("i-1", "gate", "k-1", _progress(timeout_at=now - timedelta(seconds=1)))
        assert len(await storage.find_expired_barriers(now)) == 1

        progress = _progress(timeout_at=now - timedelta(seconds=1))
        progress.completed = True
        await storage.save_barrier("i-1", "gate", "k-1", progress)
        assert await storage.find_expired_barriers(now) == []

    @pytest.mark.asyncio
    async def test_saved_progress_is_a_snapshot(self, storage: MemoryStorage):
        """Test that later mutation of progress does not leak into the store."""
        progress = _progress()
        await storage.save_barrier("i-1", "gate", "k-1", progress)
        progress.completed = True

        assert await storage.load_barrier_by_key("a", "k-1") is not None
