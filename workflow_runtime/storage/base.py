"""
Persistence contracts for definitions, instances and timers.

The engine depends only on these interfaces; in-memory and SQL-backed
implementations live alongside.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from workflow_runtime.core.models import (
    DefinitionListResult,
    DefinitionQuery,
    InstanceQuery,
    InstanceQueryResult,
    TriggerType,
    WorkflowDefinition,
    WorkflowExecutionRecord,
    WorkflowInstanceState,
    WorkflowTimer,
)


class LockProvider(ABC):
    """
    Per-instance advisory lock.

    A lock is a holder id plus an expiry. Acquisition is re-entrant for the
    same holder (and extends the expiry) and rejected for a different holder
    while the lock is unexpired.
    """

    @abstractmethod
    async def try_acquire_lock(
        self,
        instance_id: UUID,
        holder_id: str,
        duration: timedelta,
    ) -> bool:
        """Try to take or extend the lock. Returns True when held by holder_id."""

    @abstractmethod
    async def release_lock(self, instance_id: UUID, holder_id: str) -> None:
        """Release the lock if held by holder_id."""


class DefinitionStore(ABC):
    """Versioned workflow definition storage."""

    @abstractmethod
    async def get(self, workflow_id: str, version: Optional[int] = None) -> Optional[WorkflowDefinition]:
        """Get an explicit version, or the latest active non-draft version."""

    @abstractmethod
    async def get_versions(self, workflow_id: str) -> list[WorkflowDefinition]:
        """All versions of a definition, oldest first."""

    @abstractmethod
    async def save(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        """Insert or replace by (id, version)."""

    @abstractmethod
    async def delete(self, workflow_id: str) -> bool:
        """Deactivate every version. Returns False when the id is unknown."""

    @abstractmethod
    async def publish(self, workflow_id: str, version: int) -> bool:
        """Clear the draft flag of one version."""

    @abstractmethod
    async def unpublish(self, workflow_id: str, version: int) -> bool:
        """Set the draft flag of one version."""

    @abstractmethod
    async def list_definitions(self, query: Optional[DefinitionQuery] = None) -> DefinitionListResult:
        """Filtered, paginated listing of the latest version per id."""

    @abstractmethod
    async def get_by_trigger(
        self,
        trigger_type: TriggerType,
        match: Optional[str] = None,
    ) -> list[WorkflowDefinition]:
        """
        Latest active non-draft definitions with an enabled trigger of the type.

        When ``match`` is given, the trigger's key config value (cron, path or
        eventName) must equal it.
        """


class InstanceStore(LockProvider):
    """Workflow instance state, history and lock storage."""

    @abstractmethod
    async def get(self, instance_id: UUID) -> Optional[WorkflowInstanceState]:
        """Get instance state by ID."""

    @abstractmethod
    async def save(self, state: WorkflowInstanceState) -> None:
        """Insert or replace instance state."""

    @abstractmethod
    async def delete(self, instance_id: UUID) -> bool:
        """Delete an instance and its history."""

    @abstractmethod
    async def query(self, query: InstanceQuery) -> InstanceQueryResult:
        """Filtered, paginated instance query."""

    @abstractmethod
    async def add_history(self, record: WorkflowExecutionRecord) -> None:
        """Append one execution record."""

    @abstractmethod
    async def get_history(self, instance_id: UUID) -> list[WorkflowExecutionRecord]:
        """Execution records in insertion order."""

    @abstractmethod
    async def get_by_bookmark(
        self,
        bookmark_name: str,
        workflow_id: Optional[str] = None,
    ) -> list[WorkflowInstanceState]:
        """Instances currently holding a bookmark with this name."""

    @abstractmethod
    async def get_scheduled(self, until: datetime, limit: int = 100) -> list[WorkflowInstanceState]:
        """Pending instances whose scheduled start time is at or before until."""


class TimerStore(ABC):
    """Timer storage consumed by the dispatch loop."""

    @abstractmethod
    async def schedule(self, timer: WorkflowTimer) -> None:
        """Store a timer."""

    @abstractmethod
    async def get_due(self, until: datetime, limit: int = 100) -> list[WorkflowTimer]:
        """Untriggered timers with fire_at at or before until, earliest first."""

    @abstractmethod
    async def mark_triggered(self, timer_id: UUID) -> bool:
        """Mark a timer triggered. Returns False if it was already triggered or is unknown."""

    @abstractmethod
    async def cancel(self, instance_id: UUID, bookmark_name: Optional[str] = None) -> int:
        """Remove pending timers of an instance, optionally for one bookmark."""

    @abstractmethod
    async def get_for_instance(self, instance_id: UUID) -> list[WorkflowTimer]:
        """Every timer of an instance, fired or not."""


def paginate(items: list, page: int, page_size: int) -> list:
    """Slice one page (1-based) out of items."""
    start = (page - 1) * page_size
    return items[start:start + page_size]


def definition_matches(definition: WorkflowDefinition, query: DefinitionQuery) -> bool:
    """Whether a definition passes the filters of a definition query."""
    if not query.include_drafts and definition.is_draft:
        return False
    if not query.include_inactive and not definition.is_active:
        return False
    if query.category and (definition.category or "").lower() != query.category.lower():
        return False
    if query.tag and query.tag not in definition.tags:
        return False
    if query.tenant_id is not None and definition.tenant_id != query.tenant_id:
        return False
    if query.search:
        needle = query.search.lower()
        haystack = f"{definition.name} {definition.description or ''}".lower()
        if needle not in haystack:
            return False
    return True
