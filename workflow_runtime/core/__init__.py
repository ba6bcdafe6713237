"""Core domain models and business logic."""

from workflow_runtime.core.activities import (
    Activity,
    ActivityResult,
    ActivityType,
    GatewayDirection,
)
from workflow_runtime.core.models import (
    Bookmark,
    ErrorHandler,
    RetryPolicy,
    Transition,
    WorkflowDefinition,
    WorkflowExecutionRecord,
    WorkflowInstanceState,
    WorkflowTimer,
)
from workflow_runtime.core.state_machine import (
    InvalidStateTransitionError,
    WorkflowStateMachine,
    WorkflowStatus,
)

__all__ = [
    "Activity",
    "ActivityResult",
    "ActivityType",
    "GatewayDirection",
    "Bookmark",
    "ErrorHandler",
    "RetryPolicy",
    "Transition",
    "WorkflowDefinition",
    "WorkflowExecutionRecord",
    "WorkflowInstanceState",
    "WorkflowTimer",
    "InvalidStateTransitionError",
    "WorkflowStateMachine",
    "WorkflowStatus",
]
