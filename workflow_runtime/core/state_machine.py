"""
State machine for workflow instance status.

Implements explicit status transitions with validation. Completed and
Cancelled are terminal; Faulted only leaves through an explicit retry.
"""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

from pydantic import BaseModel, Field

from workflow_runtime.core.clock import utc_now

if TYPE_CHECKING:
    from workflow_runtime.core.models import WorkflowInstanceState


class WorkflowStatus(str, Enum):
    """
    Possible statuses of a workflow instance.

    Status transitions:
    - PENDING -> RUNNING -> COMPLETED | FAULTED | CANCELLED
    - RUNNING -> SUSPENDED -> RUNNING (resume)
    - FAULTED -> RUNNING (retry only)
    - PENDING | SUSPENDED -> CANCELLED | FAULTED (cancel / terminate)
    """

    PENDING = "PENDING"      # Created but not started
    RUNNING = "RUNNING"      # Execution loop active
    SUSPENDED = "SUSPENDED"  # Waiting on one or more bookmarks
    COMPLETED = "COMPLETED"  # Reached an end of every path
    FAULTED = "FAULTED"      # Activity failure or terminate
    CANCELLED = "CANCELLED"  # Cancelled by a caller


class StateTransition(BaseModel):
    """Represents a status transition event."""

    from_state: str
    to_state: str
    timestamp: datetime = Field(default_factory=utc_now)
    reason: Optional[str] = None


class InvalidStateTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_state: str, to_state: str, message: str = ""):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(
            f"Invalid state transition from {from_state} to {to_state}"
            + (f": {message}" if message else "")
        )


class WorkflowStateMachine:
    """
    State machine for workflow instance statuses.

    Defines valid transitions and classifies statuses.
    """

    # Valid status transitions: from_state -> [valid_to_states]
    VALID_TRANSITIONS: dict[WorkflowStatus, set[WorkflowStatus]] = {
        WorkflowStatus.PENDING: {
            WorkflowStatus.RUNNING,
            WorkflowStatus.CANCELLED,
            WorkflowStatus.FAULTED,
        },
        WorkflowStatus.RUNNING: {
            WorkflowStatus.COMPLETED,
            WorkflowStatus.FAULTED,
            WorkflowStatus.CANCELLED,
            WorkflowStatus.SUSPENDED,
        },
        WorkflowStatus.SUSPENDED: {
            WorkflowStatus.RUNNING,
            WorkflowStatus.CANCELLED,
            WorkflowStatus.FAULTED,
        },
        WorkflowStatus.FAULTED: {WorkflowStatus.RUNNING},  # Retry only
        WorkflowStatus.COMPLETED: set(),  # Terminal state
        WorkflowStatus.CANCELLED: set(),  # Terminal state
    }

    # Statuses that end an instance (Faulted can still be retried)
    TERMINAL_STATES: set[WorkflowStatus] = {
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAULTED,
        WorkflowStatus.CANCELLED,
    }

    # Statuses a Cancel request is accepted from
    CANCELLABLE_STATES: set[WorkflowStatus] = {
        WorkflowStatus.PENDING,
        WorkflowStatus.RUNNING,
        WorkflowStatus.SUSPENDED,
    }

    def __init__(self, initial_state: WorkflowStatus = WorkflowStatus.PENDING):
        self._state = initial_state
        self._history: list[StateTransition] = []

    @property
    def state(self) -> WorkflowStatus:
        """Get current status."""
        return self._state

    @property
    def history(self) -> list[StateTransition]:
        """Get status transition history."""
        return self._history.copy()

    @property
    def is_terminal(self) -> bool:
        """Check if current status is terminal."""
        return self._state in self.TERMINAL_STATES

    def can_transition_to(self, to_state: WorkflowStatus) -> bool:
        """Check if transition to given status is valid."""
        return to_state in self.VALID_TRANSITIONS.get(self._state, set())

    def get_valid_transitions(self) -> set[WorkflowStatus]:
        """Get all valid transitions from current status."""
        return self.VALID_TRANSITIONS.get(self._state, set()).copy()

    def transition(
        self,
        to_state: WorkflowStatus,
        reason: Optional[str] = None,
    ) -> StateTransition:
        """
        Transition to a new status.

        Args:
            to_state: Target status
            reason: Reason for transition

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

        transition = StateTransition(
            from_state=self._state.value,
            to_state=to_state.value,
            reason=reason,
        )

        self._history.append(transition)
        self._state = to_state

        return transition


def transition_instance(
    state: "WorkflowInstanceState",
    to_state: WorkflowStatus,
    reason: Optional[str] = None,
) -> StateTransition:
    """
    Move an instance to a new status and stamp its lifecycle timestamps.

    Raises:
        InvalidStateTransitionError: If the edge is not in the state machine
    """
    machine = WorkflowStateMachine(state.status)
    transition = machine.transition(to_state, reason=reason)

    now = transition.timestamp
    state.status = to_state
    state.last_updated_at = now

    if to_state == WorkflowStatus.RUNNING and state.started_at is None:
        state.started_at = now
    elif to_state in (WorkflowStatus.COMPLETED, WorkflowStatus.CANCELLED, WorkflowStatus.FAULTED):
        state.completed_at = now
    elif to_state == WorkflowStatus.RUNNING:
        state.completed_at = None

    return transition
