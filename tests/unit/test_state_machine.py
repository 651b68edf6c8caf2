"""
Unit tests for state machine transitions.
"""

import pytest

from flow_engine.core.errors import EngineInvariantError
from flow_engine.core.state_machine import (
    InstanceStateMachine,
    InstanceStatus,
    InvalidStateTransitionError,
    TaskStateMachine,
    TaskStatus,
)


class TestInstanceStateMachine:
    """Tests for instance state machine."""

    def test_initial_state(self):
        """Test default initial state is RUNNING."""
        sm = InstanceStateMachine()
        assert sm.state == InstanceStatus.RUNNING
        assert not sm.is_terminal

    def test_suspend_and_resume(self):
        """Test RUNNING -> WAITING -> RUNNING."""
        sm = InstanceStateMachine()

        sm.transition(InstanceStatus.WAITING)
        assert sm.is_waiting

        transition = sm.transition(InstanceStatus.RUNNING, reason="event delivered")
        assert sm.state == InstanceStatus.RUNNING
        assert transition.from_state == "WAITING"
        assert transition.to_state == "RUNNING"
        assert transition.reason == "event delivered"

    def test_waiting_can_fail(self):
        """Test that an expired form fails a waiting instance directly."""
        sm = InstanceStateMachine(InstanceStatus.WAITING)
        sm.transition(InstanceStatus.FAILED)
        assert sm.is_terminal

    def test_waiting_cannot_complete(self):
        """Test that a waiting instance must resume before completing."""
        sm = InstanceStateMachine(InstanceStatus.WAITING)
        with pytest.raises(InvalidStateTransitionError):
            sm.transition(InstanceStatus.COMPLETED)

    @pytest.mark.parametrize("terminal", [InstanceStatus.COMPLETED, InstanceStatus.FAILED])
    def test_terminal_states_are_final(self, terminal):
        """Test that transitions from terminal states are rejected."""
        sm = InstanceStateMachine(terminal)
        assert sm.get_valid_transitions() == set()
        with pytest.raises(InvalidStateTransitionError):
            sm.transition(InstanceStatus.RUNNING)

    def test_invalid_transition_is_invariant_error(self):
        """Test that invalid transitions belong to the engine invariant errors."""
        sm = InstanceStateMachine(InstanceStatus.COMPLETED)
        with pytest.raises(EngineInvariantError):
            sm.transition(InstanceStatus.WAITING)

    def test_transition_with_guard(self):
        """Test transition with guard condition."""
        sm = InstanceStateMachine()

        with pytest.raises(InvalidStateTransitionError, match="Guard condition failed"):
            sm.transition(InstanceStatus.COMPLETED, guard=lambda: False)
        assert sm.state == InstanceStatus.RUNNING

        sm.transition(InstanceStatus.COMPLETED, guard=lambda: True)
        assert sm.state == InstanceStatus.COMPLETED

    def test_history(self):
        """Test that transition history is recorded in order."""
        sm = InstanceStateMachine()
        sm.transition(InstanceStatus.WAITING)
        sm.transition(InstanceStatus.RUNNING)
        sm.transition(InstanceStatus.COMPLETED, metadata={"nodes": 3})

        history = sm.history
        assert [t.to_state for t in history] == ["WAITING", "RUNNING", "COMPLETED"]
        assert history[-1].metadata == {"nodes": 3}


class TestTaskStateMachine:
    """Tests for task state machine."""

    def test_open_to_submitted(self):
        """Test OPEN -> SUBMITTED."""
        sm = TaskStateMachine()
        sm.transition(TaskStatus.SUBMITTED)
        assert sm.is_terminal

    def test_open_to_expired(self):
        """Test OPEN -> EXPIRED."""
        sm = TaskStateMachine()
        sm.transition(TaskStatus.EXPIRED)
        assert sm.state == TaskStatus.EXPIRED

    def test_expired_cannot_be_submitted(self):
        """Test that a late submission cannot reopen an expired task."""
        sm = TaskStateMachine(TaskStatus.EXPIRED)
        assert not sm.can_transition_to(TaskStatus.SUBMITTED)
        with pytest.raises(InvalidStateTransitionError):
            sm.transition(TaskStatus.SUBMITTED)
