"""
State machine definitions for instance, task and node-run states.

Implements explicit state transitions with guards and validation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Callable, ClassVar, Generic, Optional, TypeVar

from pydantic import BaseModel, Field

from flow_engine.core.errors import EngineInvariantError


class InstanceStatus(str, Enum):
    """
    Possible states for a flow instance.

    State transitions:
    - RUNNING -> WAITING -> RUNNING (resume)
    - RUNNING -> COMPLETED
    - RUNNING -> FAILED
    - WAITING -> FAILED (form expired without a TIMEOUT edge)
    """

    RUNNING = "RUNNING"      # Traversal loop is visiting nodes
    WAITING = "WAITING"      # Suspended on a form, event or barrier
    COMPLETED = "COMPLETED"  # Reached the end of the graph
    FAILED = "FAILED"        # Terminated by an unrecoverable timeout


class TaskStatus(str, Enum):
    """Possible states for a human-form task."""

    OPEN = "OPEN"
    SUBMITTED = "SUBMITTED"
    EXPIRED = "EXPIRED"


class NodeRunStatus(str, Enum):
    """Status reported when a node run is closed."""

    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class StateTransition(BaseModel):
    """Represents a state transition event."""

    from_state: str
    to_state: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class InvalidStateTransitionError(EngineInvariantError):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_state: str, to_state: str, message: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid state transition from {from_state} to {to_state}"
            + (f": {message}" if message else "")
        )


# Type alias for transition guards
TransitionGuard = Callable[[], bool]

S = TypeVar("S", bound=Enum)


class _StateMachine(Generic[S]):
    """Shared transition bookkeeping for the concrete machines below."""

    VALID_TRANSITIONS: ClassVar[dict] = {}
    TERMINAL_STATES: ClassVar[set] = set()

    def __init__(self, initial_state: S):
        self._state = initial_state
        self._history: list[StateTransition] = []

    @property
    def state(self) -> S:
        """Get current state."""
        return self._state

    @property
    def history(self) -> list[StateTransition]:
        """Get state transition history."""
        return self._history.copy()

    @property
    def is_terminal(self) -> bool:
        """Check if current state is terminal."""
        return self._state in self.TERMINAL_STATES

    def can_transition_to(self, to_state: S) -> bool:
        """Check if transition to given state is valid."""
        return to_state in self.VALID_TRANSITIONS.get(self._state, set())

    def get_valid_transitions(self) -> set[S]:
        """Get all valid transitions from current state."""
        return set(self.VALID_TRANSITIONS.get(self._state, set()))

    def transition(
        self,
        to_state: S,
        reason: Optional[str] = None,
        guard: Optional[TransitionGuard] = None,
        metadata: Optional[dict] = None,
    ) -> StateTransition:
        """
        Transition to a new state.

        Args:
            to_state: Target state
            reason: Reason for transition
            guard: Optional guard function that must return True
            metadata: Additional metadata for the transition

        Returns:
            StateTransition record

        Raises:
            InvalidStateTransitionError: If transition is not valid
        """
        if not self.can_transition_to(to_state):
            raise InvalidStateTransitionError(
                self._state.value,
                to_state.value,
                f"Valid transitions: {sorted(s.value for s in self.get_valid_transitions())}",
            )

        if guard is not None and not guard():
            raise InvalidStateTransitionError(
                self._state.value,
                to_state.value,
                "Guard condition failed",
            )

        transition = StateTransition(
            from_state=self._state.value,
            to_state=to_state.value,
            reason=reason,
            metadata=metadata or {},
        )

        self._history.append(transition)
        self._state = to_state

        return transition


class InstanceStateMachine(_StateMachine[InstanceStatus]):
    """State machine for flow instance status."""

    VALID_TRANSITIONS: ClassVar[dict[InstanceStatus, set[InstanceStatus]]] = {
        InstanceStatus.RUNNING: {
            InstanceStatus.WAITING,
            InstanceStatus.COMPLETED,
            InstanceStatus.FAILED,
        },
        InstanceStatus.WAITING: {InstanceStatus.RUNNING, InstanceStatus.FAILED},
        InstanceStatus.COMPLETED: set(),  # Terminal state
        InstanceStatus.FAILED: set(),     # Terminal state
    }

    TERMINAL_STATES: ClassVar[set[InstanceStatus]] = {
        InstanceStatus.COMPLETED,
        InstanceStatus.FAILED,
    }

    def __init__(self, initial_state: InstanceStatus = InstanceStatus.RUNNING):
        super().__init__(initial_state)

    @property
    def is_waiting(self) -> bool:
        """Check if the instance is suspended."""
        return self._state == InstanceStatus.WAITING


class TaskStateMachine(_StateMachine[TaskStatus]):
    """State machine for human-form task status."""

    VALID_TRANSITIONS: ClassVar[dict[TaskStatus, set[TaskStatus]]] = {
        TaskStatus.OPEN: {TaskStatus.SUBMITTED, TaskStatus.EXPIRED},
        TaskStatus.SUBMITTED: set(),
        TaskStatus.EXPIRED: set(),
    }

    TERMINAL_STATES: ClassVar[set[TaskStatus]] = {
        TaskStatus.SUBMITTED,
        TaskStatus.EXPIRED,
    }

    def __init__(self, initial_state: TaskStatus = TaskStatus.OPEN):
        super().__init__(initial_state)
