"""
SQL implementations of the persistence contracts.

Each store method runs in its own session from ``Database.session()``, so
every call commits on its own. Works against PostgreSQL (asyncpg) and SQLite
(aiosqlite).
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import and_, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

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
    TimerStore,
    definition_matches,
    paginate,
)
from workflow_runtime.storage.postgres.database import Database
from workflow_runtime.storage.postgres.models import (
    WorkflowBookmarkModel,
    WorkflowDefinitionModel,
    WorkflowHistoryModel,
    WorkflowInstanceModel,
    WorkflowTimerModel,
)

logger = logging.getLogger(__name__)


class SqlDefinitionStore(DefinitionStore):
    """Versioned definitions in ``workflow_definitions``."""

    def __init__(self, database: Database):
        self.database = database

    @staticmethod
    def _to_definition(model: WorkflowDefinitionModel) -> WorkflowDefinition:
        # Flag columns are authoritative; delete/publish only touch them
        return WorkflowDefinition.model_validate(
            {
                **model.document,
                "is_active": model.is_active,
                "is_draft": model.is_draft,
                "modified_at": model.modified_at,
            }
        )

    @staticmethod
    def _published():
        return and_(
            WorkflowDefinitionModel.is_active.is_(True),
            WorkflowDefinitionModel.is_draft.is_(False),
        )

    # ==================== Reads ====================

    async def get(self, workflow_id: str, version: Optional[int] = None) -> Optional[WorkflowDefinition]:
        async with self.database.session() as session:
            if version is not None:
                model = await session.get(WorkflowDefinitionModel, (workflow_id, version))
            else:
                result = await session.execute(
                    select(WorkflowDefinitionModel)
                    .where(and_(WorkflowDefinitionModel.id == workflow_id, self._published()))
                    .order_by(WorkflowDefinitionModel.version.desc())
                    .limit(1)
                )
                model = result.scalar_one_or_none()

            return self._to_definition(model) if model else None

    async def get_versions(self, workflow_id: str) -> list[WorkflowDefinition]:
        async with self.database.session() as session:
            result = await session.execute(
                select(WorkflowDefinitionModel)
                .where(WorkflowDefinitionModel.id == workflow_id)
                .order_by(WorkflowDefinitionModel.version)
            )
            return [self._to_definition(m) for m in result.scalars().all()]

    async def list_definitions(self, query: Optional[DefinitionQuery] = None) -> DefinitionListResult:
        query = query or DefinitionQuery()

        conditions = []
        if not query.include_drafts:
            conditions.append(WorkflowDefinitionModel.is_draft.is_(False))
        if not query.include_inactive:
            conditions.append(WorkflowDefinitionModel.is_active.is_(True))
        if query.tenant_id is not None:
            conditions.append(WorkflowDefinitionModel.tenant_id == query.tenant_id)

        async with self.database.session() as session:
            result = await session.execute(
                select(WorkflowDefinitionModel)
                .where(*conditions)
                .order_by(WorkflowDefinitionModel.id, WorkflowDefinitionModel.version)
            )
            models = list(result.scalars().all())

        # Tags live in a JSON column, so the remaining filters run here
        latest: dict[str, WorkflowDefinition] = {}
        for model in models:
            definition = self._to_definition(model)
            if definition_matches(definition, query):
                latest[definition.id] = definition

        items = sorted(latest.values(), key=lambda d: d.name.lower())
        return DefinitionListResult(
            items=paginate(items, query.page, query.page_size),
            total_count=len(items),
            page=query.page,
            page_size=query.page_size,
        )

    async def get_by_trigger(
        self,
        trigger_type: TriggerType,
        match: Optional[str] = None,
    ) -> list[WorkflowDefinition]:
        async with self.database.session() as session:
            result = await session.execute(
                select(WorkflowDefinitionModel)
                .where(self._published())
                .order_by(WorkflowDefinitionModel.id, WorkflowDefinitionModel.version.desc())
            )
            models = list(result.scalars().all())

        results = []
        seen: set[str] = set()
        for model in models:
            if model.id in seen:
                continue
            seen.add(model.id)

            definition = self._to_definition(model)
            for trigger in definition.find_triggers(trigger_type):
                if match is None or trigger.match_value == match:
                    results.append(definition)
                    break

        return results

    # ==================== Writes ====================

    async def save(self, definition: WorkflowDefinition) -> WorkflowDefinition:
        async with self.database.session() as session:
            model = await session.get(WorkflowDefinitionModel, (definition.id, definition.version))
            if model is not None:
                definition = definition.model_copy(update={"modified_at": utc_now()})

            values: dict[str, Any] = {
                "name": definition.name,
                "description": definition.description,
                "category": definition.category,
                "tags": list(definition.tags),
                "tenant_id": definition.tenant_id,
                "is_active": definition.is_active,
                "is_draft": definition.is_draft,
                "document": definition.model_dump(mode="json"),
                "created_at": definition.created_at,
                "modified_at": definition.modified_at,
            }

            if model is None:
                session.add(WorkflowDefinitionModel(id=definition.id, version=definition.version, **values))
            else:
                for key, value in values.items():
                    setattr(model, key, value)

        logger.debug(f"Saved workflow definition {definition.id} v{definition.version}")
        return definition

    async def delete(self, workflow_id: str) -> bool:
        async with self.database.session() as session:
            result = await session.execute(
                update(WorkflowDefinitionModel)
                .where(WorkflowDefinitionModel.id == workflow_id)
                .values(is_active=False, modified_at=utc_now())
            )
            return result.rowcount > 0

    async def publish(self, workflow_id: str, version: int) -> bool:
        return await self._set_draft(workflow_id, version, False)

    async def unpublish(self, workflow_id: str, version: int) -> bool:
        return await self._set_draft(workflow_id, version, True)

    async def _set_draft(self, workflow_id: str, version: int, is_draft: bool) -> bool:
        async with self.database.session() as session:
            result = await session.execute(
                update(WorkflowDefinitionModel)
                .where(
                    and_(
                        WorkflowDefinitionModel.id == workflow_id,
                        WorkflowDefinitionModel.version == version,
                    )
                )
                .values(is_draft=is_draft, modified_at=utc_now())
            )
            return result.rowcount > 0


class SqlInstanceStore(InstanceStore):
    """
    Instances in ``workflow_instances``, their bookmark index and history.

    The advisory lock is a conditional UPDATE on the instance row, so it
    holds across every engine process sharing the database.
    """

    def __init__(self, database: Database):
        self.database = database

    @staticmethod
    def _to_state(model: WorkflowInstanceModel) -> WorkflowInstanceState:
        return WorkflowInstanceState.model_validate(model.state)

    # ==================== Instance State ====================

    async def get(self, instance_id: UUID) -> Optional[WorkflowInstanceState]:
        async with self.database.session() as session:
            model = await session.get(WorkflowInstanceModel, instance_id)
            return self._to_state(model) if model else None

    async def save(self, state: WorkflowInstanceState) -> None:
        values: dict[str, Any] = {
            "workflow_id": state.workflow_id,
            "version": state.version,
            "status": state.status.value,
            "name": state.name,
            "correlation_id": state.correlation_id,
            "tenant_id": state.tenant_id,
            "state": state.model_dump(mode="json"),
            "created_at": state.created_at,
            "scheduled_start_time": state.scheduled_start_time,
            "last_updated_at": state.last_updated_at,
        }

        async with self.database.session() as session:
            model = await session.get(WorkflowInstanceModel, state.id)
            if model is None:
                session.add(WorkflowInstanceModel(id=state.id, **values))
            else:
                for key, value in values.items():
                    setattr(model, key, value)
            await session.flush()

            await self._replace_bookmarks(session, state)

    async def _replace_bookmarks(self, session: AsyncSession, state: WorkflowInstanceState) -> None:
        await session.execute(
            delete(WorkflowBookmarkModel).where(WorkflowBookmarkModel.instance_id == state.id)
        )
        for bookmark in state.bookmarks:
            session.add(
                WorkflowBookmarkModel(
                    instance_id=state.id,
                    name=bookmark.name,
                    activity_id=bookmark.activity_id,
                    workflow_id=state.workflow_id,
                    created_at=bookmark.created_at,
                )
            )

    async def delete(self, instance_id: UUID) -> bool:
        async with self.database.session() as session:
            await session.execute(
                delete(WorkflowBookmarkModel).where(WorkflowBookmarkModel.instance_id == instance_id)
            )
            await session.execute(
                delete(WorkflowHistoryModel).where(WorkflowHistoryModel.instance_id == instance_id)
            )
            result = await session.execute(
                delete(WorkflowInstanceModel).where(WorkflowInstanceModel.id == instance_id)
            )
            return result.rowcount > 0

    async def query(self, query: InstanceQuery) -> InstanceQueryResult:
        conditions = []
        if query.workflow_id:
            conditions.append(WorkflowInstanceModel.workflow_id == query.workflow_id)
        if query.statuses:
            conditions.append(WorkflowInstanceModel.status.in_([s.value for s in query.statuses]))
        if query.correlation_id:
            conditions.append(WorkflowInstanceModel.correlation_id == query.correlation_id)
        if query.tenant_id is not None:
            conditions.append(WorkflowInstanceModel.tenant_id == query.tenant_id)
        if query.created_after:
            conditions.append(WorkflowInstanceModel.created_at >= query.created_after)
        if query.created_before:
            conditions.append(WorkflowInstanceModel.created_at <= query.created_before)

        order = (
            WorkflowInstanceModel.created_at.desc()
            if query.descending
            else WorkflowInstanceModel.created_at.asc()
        )

        async with self.database.session() as session:
            total = await session.scalar(
                select(func.count()).select_from(WorkflowInstanceModel).where(*conditions)
            )
            result = await session.execute(
                select(WorkflowInstanceModel)
                .where(*conditions)
                .order_by(order)
                .offset((query.page - 1) * query.page_size)
                .limit(query.page_size)
            )
            items = [self._to_state(m) for m in result.scalars().all()]

        return InstanceQueryResult(
            items=items,
            total_count=total or 0,
            page=query.page,
            page_size=query.page_size,
        )

    async def get_by_bookmark(
        self,
        bookmark_name: str,
        workflow_id: Optional[str] = None,
    ) -> list[WorkflowInstanceState]:
        conditions = [WorkflowBookmarkModel.name == bookmark_name]
        if workflow_id is not None:
            conditions.append(WorkflowBookmarkModel.workflow_id == workflow_id)

        async with self.database.session() as session:
            result = await session.execute(
                select(WorkflowInstanceModel)
                .join(WorkflowBookmarkModel, WorkflowBookmarkModel.instance_id == WorkflowInstanceModel.id)
                .where(*conditions)
                .order_by(WorkflowInstanceModel.created_at)
            )
            return [self._to_state(m) for m in result.scalars().all()]

    async def get_scheduled(self, until: datetime, limit: int = 100) -> list[WorkflowInstanceState]:
        async with self.database.session() as session:
            result = await session.execute(
                select(WorkflowInstanceModel)
                .where(
                    and_(
                        WorkflowInstanceModel.status == WorkflowStatus.PENDING.value,
                        WorkflowInstanceModel.scheduled_start_time.is_not(None),
                        WorkflowInstanceModel.scheduled_start_time <= until,
                    )
                )
                .order_by(WorkflowInstanceModel.scheduled_start_time)
                .limit(limit)
            )
            return [self._to_state(m) for m in result.scalars().all()]

    # ==================== History ====================

    async def add_history(self, record: WorkflowExecutionRecord) -> None:
        async with self.database.session() as session:
            session.add(
                WorkflowHistoryModel(
                    record_id=record.id,
                    instance_id=record.instance_id,
                    activity_id=record.activity_id,
                    activity_type=record.activity_type,
                    outcome=record.outcome.value,
                    timestamp=record.timestamp,
                    record=record.model_dump(mode="json"),
                )
            )

    async def get_history(self, instance_id: UUID) -> list[WorkflowExecutionRecord]:
        async with self.database.session() as session:
            result = await session.execute(
                select(WorkflowHistoryModel)
                .where(WorkflowHistoryModel.instance_id == instance_id)
                .order_by(WorkflowHistoryModel.seq)
            )
            return [WorkflowExecutionRecord.model_validate(m.record) for m in result.scalars().all()]

    # ==================== Advisory Lock ====================

    async def try_acquire_lock(
        self,
        instance_id: UUID,
        holder_id: str,
        duration: timedelta,
    ) -> bool:
        now = utc_now()
        async with self.database.session() as session:
            result = await session.execute(
                update(WorkflowInstanceModel)
                .where(
                    and_(
                        WorkflowInstanceModel.id == instance_id,
                        or_(
                            WorkflowInstanceModel.lock_holder.is_(None),
                            WorkflowInstanceModel.lock_holder == holder_id,
                            WorkflowInstanceModel.lock_expires_at < now,
                        ),
                    )
                )
                .values(lock_holder=holder_id, lock_expires_at=now + duration)
            )
            return result.rowcount == 1

    async def release_lock(self, instance_id: UUID, holder_id: str) -> None:
        async with self.database.session() as session:
            await session.execute(
                update(WorkflowInstanceModel)
                .where(
                    and_(
                        WorkflowInstanceModel.id == instance_id,
                        WorkflowInstanceModel.lock_holder == holder_id,
                    )
                )
                .values(lock_holder=None, lock_expires_at=None)
            )


class SqlTimerStore(TimerStore):
    """Timers in ``workflow_timers``."""

    def __init__(self, database: Database):
        self.database = database

    @staticmethod
    def _to_timer(model: WorkflowTimerModel) -> WorkflowTimer:
        return WorkflowTimer(
            id=model.id,
            instance_id=model.instance_id,
            bookmark_name=model.bookmark_name,
            activity_id=model.activity_id,
            fire_at=model.fire_at,
            is_triggered=model.is_triggered,
            triggered_at=model.triggered_at,
            created_at=model.created_at,
        )

    async def schedule(self, timer: WorkflowTimer) -> None:
        async with self.database.session() as session:
            session.add(
                WorkflowTimerModel(
                    id=timer.id,
                    instance_id=timer.instance_id,
                    bookmark_name=timer.bookmark_name,
                    activity_id=timer.activity_id,
                    fire_at=timer.fire_at,
                    is_triggered=timer.is_triggered,
                    triggered_at=timer.triggered_at,
                    created_at=timer.created_at,
                )
            )

    async def get_due(self, until: datetime, limit: int = 100) -> list[WorkflowTimer]:
        async with self.database.session() as session:
            result = await session.execute(
                select(WorkflowTimerModel)
                .where(
                    and_(
                        WorkflowTimerModel.is_triggered.is_(False),
                        WorkflowTimerModel.fire_at <= until,
                    )
                )
                .order_by(WorkflowTimerModel.fire_at)
                .limit(limit)
            )
            return [self._to_timer(m) for m in result.scalars().all()]

    async def mark_triggered(self, timer_id: UUID) -> bool:
        async with self.database.session() as session:
            result = await session.execute(
                update(WorkflowTimerModel)
                .where(
                    and_(
                        WorkflowTimerModel.id == timer_id,
                        WorkflowTimerModel.is_triggered.is_(False),
                    )
                )
                .values(is_triggered=True, triggered_at=utc_now())
            )
            return result.rowcount == 1

    async def cancel(self, instance_id: UUID, bookmark_name: Optional[str] = None) -> int:
        conditions = [
            WorkflowTimerModel.instance_id == instance_id,
            WorkflowTimerModel.is_triggered.is_(False),
        ]
        if bookmark_name is not None:
            conditions.append(WorkflowTimerModel.bookmark_name == bookmark_name)

        async with self.database.session() as session:
            result = await session.execute(delete(WorkflowTimerModel).where(*conditions))
            return result.rowcount

    async def get_for_instance(self, instance_id: UUID) -> list[WorkflowTimer]:
        async with self.database.session() as session:
            result = await session.execute(
                select(WorkflowTimerModel)
                .where(WorkflowTimerModel.instance_id == instance_id)
                .order_by(WorkflowTimerModel.fire_at)
            )
            return [self._to_timer(m) for m in result.scalars().all()]
