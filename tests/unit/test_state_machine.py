"""
Unit tests for instance status transitions.
"""

import pytest

from workflow_runtime.core.models import WorkflowInstanceState
from workflow_runtime.core.state_machine import (
    InvalidStateTransitionError,
    WorkflowStateMachine,
    WorkflowStatus,
    transition_instance,
)


class TestWorkflowStateMachine:
    """Tests for the workflow status machine."""

    def test_initial_state(self):
        """Test default initial state is PENDING."""
        sm = WorkflowStateMachine()
        assert sm.state == WorkflowStatus.PENDING
        assert not sm.is_terminal

    def test_valid_transition_pending_to_running(self):
        """Test valid transition from PENDING to RUNNING."""
        sm = WorkflowStateMachine()

        transition = sm.transition(WorkflowStatus.RUNNING, reason="Started")

        assert sm.state == WorkflowStatus.RUNNING
        assert transition.from_state == "PENDING"
        assert transition.to_state == "RUNNING"
        assert transition.reason == "Started"

    def test_suspend_and_resume(self):
        """Test RUNNING -> SUSPENDED -> RUNNING round trip."""
        sm = WorkflowStateMachine(WorkflowStatus.RUNNING)

        sm.transition(WorkflowStatus.SUSPENDED)
        sm.transition(WorkflowStatus.RUNNING)

        assert sm.state == WorkflowStatus.RUNNING
        assert len(sm.history) == 2

    def test_completed_is_terminal(self):
        """Test that no transition leaves COMPLETED."""
        sm = WorkflowStateMachine(WorkflowStatus.COMPLETED)

        assert sm.is_terminal
        assert sm.get_valid_transitions() == set()
        with pytest.raises(InvalidStateTransitionError):
            sm.transition(WorkflowStatus.RUNNING)

    def test_faulted_only_leaves_through_retry(self):
        """Test FAULTED can only move back to RUNNING."""
        sm = WorkflowStateMachine(WorkflowStatus.FAULTED)

        assert sm.get_valid_transitions() == {WorkflowStatus.RUNNING}
        with pytest.raises(InvalidStateTransitionError):
            sm.transition(WorkflowStatus.CANCELLED)

    def test_pending_cannot_suspend(self):
        """Test that a never-started instance cannot suspend."""
        sm = WorkflowStateMachine(WorkflowStatus.PENDING)

        with pytest.raises(InvalidStateTransitionError) as exc_info:
            sm.transition(WorkflowStatus.SUSPENDED)

        assert exc_info.value.from_state == "PENDING"
        assert exc_info.value.to_state == "SUSPENDED"

    def test_cancellable_states(self):
        """Test which statuses accept a cancel."""
        assert WorkflowStateMachine.CANCELLABLE_STATES == {
            WorkflowStatus.PENDING,
            WorkflowStatus.RUNNING,
            WorkflowStatus.SUSPENDED,
        }


class TestTransitionInstance:
    """Tests for stamping lifecycle timestamps on instance state."""

    def _state(self, status: WorkflowStatus = WorkflowStatus.PENDING) -> WorkflowInstanceState:
        return WorkflowInstanceState(workflow_id="wf", version=1, status=status)

    def test_start_sets_started_at(self):
        """Test the first move to RUNNING sets started_at."""
        state = self._state()

        transition_instance(state, WorkflowStatus.RUNNING)

        assert state.status == WorkflowStatus.RUNNING
        assert state.started_at is not None
        assert state.last_updated_at is not None

    def test_completion_sets_completed_at(self):
        """Test reaching a final status sets completed_at."""
        state = self._state(WorkflowStatus.RUNNING)

        transition_instance(state, WorkflowStatus.COMPLETED)

        assert state.completed_at is not None

    def test_retry_clears_completed_at(self):
        """Test a retried instance is no longer marked completed."""
        state = self._state(WorkflowStatus.RUNNING)
        transition_instance(state, WorkflowStatus.FAULTED)
        started_at = state.started_at

        transition_instance(state, WorkflowStatus.RUNNING)

        assert state.completed_at is None
        assert state.started_at == started_at

    def test_invalid_transition_leaves_state_unchanged(self):
        """Test a rejected transition does not touch the instance."""
        state = self._state(WorkflowStatus.CANCELLED)

        with pytest.raises(InvalidStateTransitionError):
            transition_instance(state, WorkflowStatus.RUNNING)

        assert state.status == WorkflowStatus.CANCELLED
