"""
In-memory reference implementations of the persistence contracts.

Every read returns a deep copy so callers never share mutable state with
the store. Intended for tests and single-process embedding.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Optional
from uuid import UUID

from workflow_runtime.core.clock import utc_now
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
from workflow_runtime.core.state_machine import WorkflowStatus
from workflow_runtime.storage.base import (
    DefinitionStore,
    InstanceStore,
    LockProvider,
    TimerStore,
    definition_matches,
    paginate,
)


def _copy(model):
    return model.model_copy(deep=True)


class InMemoryDefinitionStore(DefinitionStore):
    """Definitions keyed by (id, version)."""

    def __init__(self):
        self._definitions: dict[tuple[str, int], WorkflowDefinition] = {}

    def _versions(self, workflow_id: str) -> list[WorkflowDefinition]:
        return sorted(
            (d for (wid, _), d in self._definitions.items() if wid == workflow_id),
            key=lambda d: d.version,
        )

    def _latest_published(self, workflow_id: str) -> Optional[WorkflowDefinition]:
        candidates = [d for d in self._versions(workflow_id) if d.is_active and not d.is_draft]
        return candidates[-1] if candidates else None

    async def get(self, workflow_id: str, version: Optional[int] = None) -> Optional[WorkflowDefinition]:
        if version is not None:
            definition = self._definitions.get((workflow_id, version))
        else:
            definition = self._latest_published(workflow_id)
        return _copy(definition) if definition else None

    async def get_versions(self, workflow_id: str) -> list[WorkflowDefinition]:
        return [_copy(d) for d in self._versions(workflow_id)]

    async def save(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        stored = _copy(definition)
        if (definition.id, definition.version) in self._definitions:
            stored.modified_at = utc_now()
        self._definitions[(definition.id, definition.version)] = stored
        return _copy(stored)

    async def delete(self, workflow_id: str) -> bool:
        versions = self._versions(workflow_id)
        for definition in versions:
            definition.is_active = False
            definition.modified_at = utc_now()
        return bool(versions)

    async def publish(self, workflow_id: str, version: int) -> bool:
        return self._set_draft(workflow_id, version, False)

    async def unpublish(self, workflow_id: str, version: int) -> bool:
        return self._set_draft(workflow_id, version, True)

    def _set_draft(self, workflow_id: str, version: int, is_draft: bool) -> bool:
        definition = self._definitions.get((workflow_id, version))
        if definition is None:
            return False
        definition.is_draft = is_draft
        definition.modified_at = utc_now()
        return True

    async def list_definitions(self, query: Optional[DefinitionQuery] = None) -> DefinitionListResult:
        query = query or DefinitionQuery()

        latest: dict[str, WorkflowDefinition] = {}
        for definition in sorted(self._definitions.values(), key=lambda d: d.version):
            if definition_matches(definition, query):
                latest[definition.id] = definition

        items = sorted(latest.values(), key=lambda d: d.name.lower())
        return DefinitionListResult(
            items=[_copy(d) for d in paginate(items, query.page, query.page_size)],
            total_count=len(items),
            page=query.page,
            page_size=query.page_size,
        )

    async def get_by_trigger(
        self,
        trigger_type: TriggerType,
        match: Optional[str] = None,
    ) -> list[WorkflowDefinition]:
        workflow_ids = {wid for wid, _ in self._definitions}
        results = []
        for workflow_id in sorted(workflow_ids):
            definition = self._latest_published(workflow_id)
            if definition is None:
                continue
            for trigger in definition.find_triggers(trigger_type):
                if match is None or trigger.match_value == match:
                    results.append(_copy(definition))
                    break
        return results


class InMemoryLockProvider(LockProvider):
    """Holder id + expiry per instance, guarded by an asyncio lock."""

    def __init__(self):
        self._locks: dict[UUID, tuple[str, datetime]] = {}
        self._guard = asyncio.Lock()

    async def try_acquire_lock(
        self,
        instance_id: UUID,
        holder_id: str,
        duration: timedelta,
    ) -> bool:
        async with self._guard:
            now = utc_now()
            current = self._locks.get(instance_id)
            if current is not None:
                holder, expires_at = current
                if holder != holder_id and expires_at > now:
                    return False
            self._locks[instance_id] = (holder_id, now + duration)
            return True

    async def release_lock(self, instance_id: UUID, holder_id: str) -> None:
        async with self._guard:
            current = self._locks.get(instance_id)
            if current is not None and current[0] == holder_id:
                del self._locks[instance_id]


class InMemoryInstanceStore(InMemoryLockProvider, InstanceStore):
    """Instances, their history and their advisory locks."""

    def __init__(self):
        super().__init__()
        self._instances: dict[UUID, WorkflowInstanceState] = {}
        self._history: dict[UUID, list[WorkflowExecutionRecord]] = {}

    async def get(self, instance_id: UUID) -> Optional[WorkflowInstanceState]:
        state = self._instances.get(instance_id)
        return _copy(state) if state else None

    async def save(self, state: WorkflowInstanceState) -> None:
        self._instances[state.id] = _copy(state)

    async def delete(self, instance_id: UUID) -> bool:
        self._history.pop(instance_id, None)
        return self._instances.pop(instance_id, None) is not None

    async def query(self, query: InstanceQuery) -> InstanceQueryResult:
        items = [s for s in self._instances.values() if self._matches(s, query)]
        items.sort(key=lambda s: s.created_at, reverse=query.descending)
        return InstanceQueryResult(
            items=[_copy(s) for s in paginate(items, query.page, query.page_size)],
            total_count=len(items),
            page=query.page,
            page_size=query.page_size,
        )

    @staticmethod
    def _matches(state: WorkflowInstanceState, query: InstanceQuery) -> bool:
        if query.workflow_id and state.workflow_id != query.workflow_id:
            return False
        if query.statuses and state.status not in query.statuses:
            return False
        if query.correlation_id and state.correlation_id != query.correlation_id:
            return False
        if query.tenant_id is not None and state.tenant_id != query.tenant_id:
            return False
        if query.created_after and state.created_at < query.created_after:
            return False
        if query.created_before and state.created_at > query.created_before:
            return False
        return True

    async def add_history(self, record: WorkflowExecutionRecord) -> None:
        self._history.setdefault(record.instance_id, []).append(_copy(record))

    async def get_history(self, instance_id: UUID) -> list[WorkflowExecutionRecord]:
        return [_copy(r) for r in self._history.get(instance_id, [])]

    async def get_by_bookmark(
        self,
        bookmark_name: str,
        workflow_id: Optional[str] = None,
    ) -> list[WorkflowInstanceState]:
        return [
            _copy(s)
            for s in self._instances.values()
            if s.get_bookmark(bookmark_name) is not None
            and (workflow_id is None or s.workflow_id == workflow_id)
        ]

    async def get_scheduled(self, until: datetime, limit: int = 100) -> list[WorkflowInstanceState]:
        due = [
            s
            for s in self._instances.values()
            if s.status == WorkflowStatus.PENDING
            and s.scheduled_start_time is not None
            and s.scheduled_start_time <= until
        ]
        due.sort(key=lambda s: s.scheduled_start_time)
        return [_copy(s) for s in due[:limit]]


class InMemoryTimerStore(TimerStore):
    """Timers keyed by id."""

    def __init__(self):
        self._timers: dict[UUID, WorkflowTimer] = {}

    async def schedule(self, timer: WorkflowTimer) -> None:
        self._timers[timer.id] = _copy(timer)

    async def get_due(self, until: datetime, limit: int = 100) -> list[WorkflowTimer]:
        due = [t for t in self._timers.values() if not t.is_triggered and t.fire_at <= until]
        due.sort(key=lambda t: t.fire_at)
        return [_copy(t) for t in due[:limit]]

    async def mark_triggered(self, timer_id: UUID) -> bool:
        timer = self._timers.get(timer_id)
        if timer is None or timer.is_triggered:
            return False
        timer.is_triggered = True
        timer.triggered_at = utc_now()
        return True

    async def cancel(self, instance_id: UUID, bookmark_name: Optional[str] = None) -> int:
        doomed = [
            timer_id
            for timer_id, timer in self._timers.items()
            if timer.instance_id == instance_id
            and not timer.is_triggered
            and (bookmark_name is None or timer.bookmark_name == bookmark_name)
        ]
        for timer_id in doomed:
            del self._timers[timer_id]
        return len(doomed)

    async def get_for_instance(self, instance_id: UUID) -> list[WorkflowTimer]:
        return [_copy(t) for t in self._timers.values() if t.instance_id == instance_id]
