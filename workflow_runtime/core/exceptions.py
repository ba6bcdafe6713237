"""
Exception taxonomy for the workflow runtime.

Engine-level problems (unknown ids, forbidden status, missing bookmarks,
invalid input) are raised as exceptions. Failures inside an activity are
never raised: they travel as ``ActivityResult.error`` and fault only the
instance that produced them.
"""

from typing import Any, Optional
from uuid import UUID


class WorkflowError(Exception):
    """Base class for all workflow runtime errors."""

    def __init__(
        self,
        message: str,
        instance_id: Optional[UUID] = None,
        workflow_id: Optional[str] = None,
    ):
        self.instance_id = instance_id
        self.workflow_id = workflow_id
        super().__init__(message)


class WorkflowNotFoundError(WorkflowError):
    """Raised when an instance or definition does not exist."""

    @classmethod
    def for_instance(cls, instance_id: UUID) -> "WorkflowNotFoundError":
        return cls(f"Workflow instance '{instance_id}' not found", instance_id=instance_id)

    @classmethod
    def for_definition(
        cls,
        workflow_id: str,
        version: Optional[int] = None,
    ) -> "WorkflowNotFoundError":
        suffix = f" version {version}" if version is not None else ""
        return cls(f"Workflow definition '{workflow_id}'{suffix} not found", workflow_id=workflow_id)


class WorkflowInvalidStateError(WorkflowError):
    """Raised when an operation is attempted from a status that forbids it."""

    def __init__(
        self,
        instance_id: UUID,
        current_status: Any,
        operation: str,
    ):
        self.current_status = current_status
        self.operation = operation
        status = getattr(current_status, "value", current_status)
        super().__init__(
            f"Cannot {operation} workflow instance '{instance_id}' in status {status}",
            instance_id=instance_id,
        )


class WorkflowBookmarkNotFoundError(WorkflowError):
    """Raised when resuming a bookmark the instance does not hold."""

    def __init__(self, instance_id: UUID, bookmark_name: str):
        self.bookmark_name = bookmark_name
        super().__init__(
            f"Bookmark '{bookmark_name}' not found on workflow instance '{instance_id}'",
            instance_id=instance_id,
        )


class WorkflowValidationError(WorkflowError):
    """Raised for missing required inputs or a structurally invalid definition."""

    def __init__(
        self,
        message: str,
        errors: Optional[list[str]] = None,
        workflow_id: Optional[str] = None,
    ):
        self.errors = errors or []
        detail = f": {'; '.join(self.errors)}" if self.errors else ""
        super().__init__(f"{message}{detail}", workflow_id=workflow_id)


class WorkflowActivityNotFoundError(WorkflowError):
    """Raised when the graph references an activity id it does not declare."""

    def __init__(self, activity_id: str, workflow_id: Optional[str] = None):
        self.activity_id = activity_id
        super().__init__(
            f"Activity '{activity_id}' not found in workflow '{workflow_id}'",
            workflow_id=workflow_id,
        )


class WorkflowExecutionError(WorkflowError):
    """Raised when the engine cannot carry an operation through."""


class WorkflowLockError(WorkflowExecutionError):
    """Raised when the instance's advisory lock is held by another engine."""

    def __init__(self, instance_id: UUID, holder_id: str):
        self.holder_id = holder_id
        super().__init__(
            f"Could not acquire lock for workflow instance '{instance_id}'",
            instance_id=instance_id,
        )
