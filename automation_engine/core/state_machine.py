"""
State machine definitions for workflow and execution statuses.

Implements explicit state transitions with guards and validation.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Callable, ClassVar, Optional

from pydantic import BaseModel, Field


class ExecutionStatus(str, Enum):
    """
    Possible states for a workflow execution.

    State transitions:
    - RUNNING -> RUNNING (advance to the next node)
    - RUNNING -> WAITING -> RUNNING (wait node or retry backoff)
    - RUNNING -> COMPLETED | FAILED
    - WAITING -> COMPLETED (woke on a wait node with no outgoing edge)
    - RUNNING | WAITING -> CANCELLED
    """

    RUNNING = "RUNNING"      # Ready to advance from current_node_id
    WAITING = "WAITING"      # Suspended until wake_at
    COMPLETED = "COMPLETED"  # Reached a node with no outgoing edge
    FAILED = "FAILED"        # External effect failed after all retries
    CANCELLED = "CANCELLED"  # Stopped on request


class WorkflowStatus(str, Enum):
    """
    Lifecycle of a workflow definition.

    Only ACTIVE workflows start new executions. Pausing never touches
    executions that are already running or waiting.
    """

    DRAFT = "DRAFT"
    ACTIVE = "ACTIVE"
    PAUSED = "PAUSED"


class StateTransition(BaseModel):
    """Represents a state transition event."""

    from_state: str
    to_state: str
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    reason: Optional[str] = None
    triggered_by: Optional[str] = None  # worker id, scheduler, api
    metadata: dict = Field(default_factory=dict)


class InvalidStateTransitionError(Exception):
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


class StateMachine:
    """
    Table-driven state machine.

    Subclasses provide VALID_TRANSITIONS and TERMINAL_STATES.
    """

    VALID_TRANSITIONS: ClassVar[dict[Enum, set[Enum]]] = {}
    TERMINAL_STATES: ClassVar[set[Enum]] = set()

    def __init__(self, initial_state: Enum):
        self._state = initial_state
        self._history: list[StateTransition] = []

    @property
    def state(self):
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

    def can_transition_to(self, to_state: Enum) -> bool:
        """Check if transition to given state is valid."""
        return to_state in self.VALID_TRANSITIONS.get(self._state, set())

    def get_valid_transitions(self) -> set:
        """Get all valid transitions from current state."""
        return self.VALID_TRANSITIONS.get(self._state, set()).copy()

    def transition(
        self,
        to_state: Enum,
        reason: Optional[str] = None,
        triggered_by: Optional[str] = None,
        guard: Optional[TransitionGuard] = None,
        metadata: Optional[dict] = None,
    ) -> StateTransition:
        """
        Transition to a new state.

        Args:
            to_state: Target state
            reason: Reason for transition
            triggered_by: Who/what triggered the transition
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
                f"Valid transitions: {sorted(s.value for s in self.get_valid_transitions())}"
            )

        if guard is not None and not guard():
            raise InvalidStateTransitionError(
                self._state.value,
                to_state.value,
                "Guard condition failed"
            )

        transition = StateTransition(
            from_state=self._state.value,
            to_state=to_state.value,
            reason=reason,
            triggered_by=triggered_by,
            metadata=metadata or {},
        )

        self._history.append(transition)
        self._state = to_state

        return transition


class ExecutionStateMachine(StateMachine):
    """State machine for a single workflow execution."""

    VALID_TRANSITIONS = {
        ExecutionStatus.RUNNING: {
            ExecutionStatus.RUNNING,
            ExecutionStatus.WAITING,
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        },
        ExecutionStatus.WAITING: {
            ExecutionStatus.RUNNING,
            ExecutionStatus.COMPLETED,
            ExecutionStatus.FAILED,
            ExecutionStatus.CANCELLED,
        },
        ExecutionStatus.COMPLETED: set(),  # Terminal state
        ExecutionStatus.FAILED: set(),     # Terminal state
        ExecutionStatus.CANCELLED: set(),  # Terminal state
    }

    TERMINAL_STATES = {
        ExecutionStatus.COMPLETED,
        ExecutionStatus.FAILED,
        ExecutionStatus.CANCELLED,
    }

    def __init__(self, initial_state: ExecutionStatus = ExecutionStatus.RUNNING):
        super().__init__(initial_state)

    @property
    def is_success(self) -> bool:
        """Check if the execution completed successfully."""
        return self._state == ExecutionStatus.COMPLETED

    @property
    def is_suspended(self) -> bool:
        """Check if the execution is waiting for its wake time."""
        return self._state == ExecutionStatus.WAITING


class WorkflowStatusMachine(StateMachine):
    """State machine for a workflow definition's lifecycle."""

    VALID_TRANSITIONS = {
        WorkflowStatus.DRAFT: {WorkflowStatus.ACTIVE},
        WorkflowStatus.ACTIVE: {WorkflowStatus.PAUSED, WorkflowStatus.DRAFT},
        WorkflowStatus.PAUSED: {WorkflowStatus.ACTIVE, WorkflowStatus.DRAFT},
    }

    def __init__(self, initial_state: WorkflowStatus = WorkflowStatus.DRAFT):
        super().__init__(initial_state)

    @property
    def accepts_events(self) -> bool:
        """Only active workflows start new executions."""
        return self._state == WorkflowStatus.ACTIVE


TERMINAL_EXECUTION_STATUSES = frozenset(ExecutionStateMachine.TERMINAL_STATES)
