"""
Integration tests for routing across rule sets.
"""

import copy
from datetime import timedelta

import pytest

from flow_engine.core.errors import ConfigurationError, NotFoundError
from flow_engine.core.models import IgnoredEvent, utcnow
from flow_engine.core.state_machine import InstanceStatus
from flow_engine.orchestrator.manager import EngineManager


@pytest.fixture
def manager(storage, schemas, evaluator) -> EngineManager:
    return EngineManager(storage, schemas, evaluator)


class TestRegistration:
    """Tests for rule-set registration and flow lookup."""

    def test_register_rule_set(self, manager, sample_rule_set, schemas):
        """Test that registration compiles flows and registers schemas."""
        registered = manager.register_rule_set(sample_rule_set)

        assert registered.rule_set == "onboarding"
        assert registered.version == "1.0.0"
        assert "payment" in registered.flows
        assert schemas.has("kyc.review")
        assert "onboarding@1.0.0" in manager.engines

    def test_list_and_describe(self, manager, sample_rule_set):
        """Test flow summaries and descriptions."""
        manager.register_rule_set(sample_rule_set)

        names = {summary.name for summary in manager.list_flows()}
        assert names == set(sample_rule_set["flows"])

        description = manager.describe_flow("payment")
        assert description.rule_set == {"name": "onboarding", "version": "1.0.0"}
        assert description.definition.entry == "wait"

    def test_describe_unknown_flow(self, manager):
        """Test that unknown flows are not found."""
        with pytest.raises(NotFoundError):
            manager.describe_flow("nope")

    def test_invalid_rule_set(self, manager):
        """Test that invalid documents are rejected without registering anything."""
        with pytest.raises(ConfigurationError):
            manager.register_rule_set({"name": "broken", "version": "1"})
        assert manager.engines == {}

    @pytest.mark.asyncio
    async def test_newer_version_serves_new_instances(self, manager, sample_rule_set):
        """Test that a new version takes over flow names while old instances keep their engine."""
        manager.register_rule_set(sample_rule_set)
        old = await manager.start_instance("payment", {"orderId": "o-1"})

        newer = copy.deepcopy(sample_rule_set)
        newer["version"] = "2.0.0"
        manager.register_rule_set(newer)
        new = await manager.start_instance("payment", {"orderId": "o-2"})

        assert manager.instance_to_engine[old.instance_id] == "onboarding@1.0.0"
        assert manager.instance_to_engine[new.instance_id] == "onboarding@2.0.0"
        assert manager.describe_flow("payment").rule_set["version"] == "2.0.0"

        resumed = await manager.notify_event("payment.confirmed", "o-1", {"amount": 3})
        assert resumed.instance_id == old.instance_id
        assert resumed.status == InstanceStatus.COMPLETED
        assert old.instance_id not in manager.instance_to_engine


class TestRouting:
    """Tests for instance operations routed through the manager."""

    @pytest.mark.asyncio
    async def test_form_round_trip(self, manager, sample_rule_set):
        """Test start, task listing, submission and status through the manager."""
        manager.register_rule_set(sample_rule_set)

        started = await manager.start_instance("review", {"user": {"id": "u-1"}})
        tasks = await manager.list_tasks("alice")
        assert [task.id for task in tasks] == [started.pending_task.id]
        assert manager.get_instance_status(started.instance_id).status == InstanceStatus.WAITING

        result = await manager.resume_with_form(started.pending_task.id, {"approved": True})

        assert result.status == InstanceStatus.COMPLETED
        assert manager.get_instance_status(started.instance_id).status == InstanceStatus.COMPLETED
        assert await manager.list_tasks("alice") == []

    @pytest.mark.asyncio
    async def test_unknown_task_and_instance(self, manager, sample_rule_set):
        """Test not-found routing errors."""
        manager.register_rule_set(sample_rule_set)

        with pytest.raises(NotFoundError):
            await manager.resume_with_form("missing", {})
        with pytest.raises(NotFoundError):
            manager.get_instance_status("missing")
        with pytest.raises(NotFoundError):
            await manager.start_instance("nope", {})

    @pytest.mark.asyncio
    async def test_event_without_engines_is_ignored(self, manager):
        """Test that events are ignored when nothing is registered."""
        result = await manager.notify_event("t", "k", {})
        assert isinstance(result, IgnoredEvent)

    @pytest.mark.asyncio
    async def test_process_timeouts_across_engines(self, manager, sample_rule_set):
        """Test that the sweep covers every engine and updates routing."""
        manager.register_rule_set(sample_rule_set)
        started = await manager.start_instance("review_strict", {})
        assert manager.is_loaded(started.instance_id)

        report = await manager.process_timeouts(now=utcnow() + timedelta(minutes=5))

        assert report.tasks_expired == 1
        assert started.instance_id not in manager.instance_to_engine
        assert not manager.is_loaded(started.instance_id)
        assert manager.get_instance_status(started.instance_id).status == InstanceStatus.FAILED
