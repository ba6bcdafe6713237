"""SQL storage layer (PostgreSQL in production, SQLite in tests)."""

from workflow_runtime.storage.postgres.database import Database
from workflow_runtime.storage.postgres.models import (
    Base,
    WorkflowBookmarkModel,
    WorkflowDefinitionModel,
    WorkflowHistoryModel,
    WorkflowInstanceModel,
    WorkflowTimerModel,
)
from workflow_runtime.storage.postgres.repository import (
    SqlDefinitionStore,
    SqlInstanceStore,
    SqlTimerStore,
)

__all__ = [
    "Base",
    "Database",
    "SqlDefinitionStore",
    "SqlInstanceStore",
    "SqlTimerStore",
    "WorkflowBookmarkModel",
    "WorkflowDefinitionModel",
    "WorkflowHistoryModel",
    "WorkflowInstanceModel",
    "WorkflowTimerModel",
]
