"""
Domain models for the workflow runtime.

All models use Pydantic for validation and serialization. Definitions are
immutable once published; instance state is mutated only by the engine
while it holds the instance's advisory lock.
"""

import logging
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field, field_validator, model_validator

from workflow_runtime.core.activities import Activity, BaseActivity, StartActivity
from workflow_runtime.core.clock import utc_now
from workflow_runtime.core.state_machine import WorkflowStatus

logger = logging.getLogger(__name__)


class VariableScope(str, Enum):
    """Visibility of a declared variable."""

    WORKFLOW = "workflow"
    ACTIVITY = "activity"


class TriggerType(str, Enum):
    """Ways a definition can be instantiated without an explicit call."""

    MANUAL = "manual"
    SCHEDULED = "scheduled"
    WEBHOOK = "webhook"
    EVENT = "event"


class ExecutionOutcome(str, Enum):
    """Outcome recorded for one activity execution."""

    COMPLETED = "COMPLETED"
    SUSPENDED = "SUSPENDED"
    FAULTED = "FAULTED"
    RESUMED = "RESUMED"
    COMPENSATED = "COMPENSATED"


# ==================== Definition ====================


class RetryPolicy(BaseModel):
    """Retry behaviour attached to an error handler."""

    max_retries: int = Field(default=3, ge=0, le=100, description="Maximum retry attempts")
    initial_delay: float = Field(default=1.0, ge=0.0, description="Initial delay in seconds")
    max_delay: float = Field(default=300.0, ge=0.0, description="Maximum delay in seconds")
    backoff_multiplier: float = Field(default=2.0, ge=1.0, le=10.0, description="Backoff base")

    @model_validator(mode="after")
    def validate_delays(self) -> "RetryPolicy":
        """Ensure max_delay is greater than initial_delay."""
        if self.max_delay < self.initial_delay:
            raise ValueError("max_delay must be >= initial_delay")
        return self

    def delay_for(self, attempt: int) -> float:
        """Backoff delay before retry number ``attempt`` (1-based)."""
        delay = self.initial_delay * (self.backoff_multiplier ** max(attempt - 1, 0))
        return min(delay, self.max_delay)


class ErrorHandler(BaseModel):
    """Routes activity failures with matching codes."""

    error_codes: list[str] = Field(
        default_factory=list,
        description="Codes handled; empty handles every code",
    )
    handler_activity_id: Optional[str] = None
    compensate: bool = False
    terminate: bool = False
    retry: Optional[RetryPolicy] = None

    def matches(self, error_code: str) -> bool:
        return not self.error_codes or error_code in self.error_codes


class Transition(BaseModel):
    """Directed, optionally conditional edge between two activities."""

    source: str = Field(..., min_length=1)
    target: str = Field(..., min_length=1)
    condition: Optional[str] = None
    is_default: bool = False
    priority: int = 0
    name: Optional[str] = None


class WorkflowParameter(BaseModel):
    """Declared input or output parameter."""

    name: str = Field(..., min_length=1)
    type: str = Field(default="string")
    description: Optional[str] = None
    is_required: bool = False
    default_value: Any = None


class WorkflowVariable(BaseModel):
    """Declared instance variable with an optional default."""

    name: str = Field(..., min_length=1)
    type: str = Field(default="string")
    default_value: Any = None
    scope: VariableScope = VariableScope.WORKFLOW


class WorkflowTrigger(BaseModel):
    """Trigger declaration (schedule, webhook or named event)."""

    type: TriggerType = TriggerType.MANUAL
    name: str = ""
    is_enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)

    # Config key carrying the value a trigger is matched on
    MATCH_KEYS: ClassVar[dict[TriggerType, str]] = {
        TriggerType.SCHEDULED: "cron",
        TriggerType.WEBHOOK: "path",
        TriggerType.EVENT: "eventName",
    }

    @property
    def match_value(self) -> Optional[str]:
        key = self.MATCH_KEYS.get(self.type)
        value = self.config.get(key) if key else None
        return str(value) if value is not None else None


class WorkflowDefinition(BaseModel):
    """
    Versioned, immutable description of a process graph.

    Activities are keyed by id; transitions reference them by id.
    """

    id: str = Field(..., min_length=1, max_length=255, description="Stable across versions")
    version: int = Field(default=1, ge=1)
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    is_active: bool = True
    is_draft: bool = False
    tenant_id: Optional[str] = None

    start_activity_id: str = Field(..., min_length=1)
    activities: dict[str, Activity] = Field(default_factory=dict)
    transitions: list[Transition] = Field(default_factory=list)

    input_parameters: list[WorkflowParameter] = Field(default_factory=list)
    output_parameters: list[WorkflowParameter] = Field(default_factory=list)
    variables: list[WorkflowVariable] = Field(default_factory=list)
    triggers: list[WorkflowTrigger] = Field(default_factory=list)
    error_handlers: list[ErrorHandler] = Field(default_factory=list)

    created_at: datetime = Field(default_factory=utc_now)
    modified_at: Optional[datetime] = None

    @field_validator("activities", mode="before")
    @classmethod
    def key_activities_by_id(cls, v: Any) -> Any:
        """Accept a list of activities and key it by id."""
        if isinstance(v, list):
            keyed: dict[str, Any] = {}
            for activity in v:
                activity_id = activity.id if isinstance(activity, BaseActivity) else activity["id"]
                if activity_id in keyed:
                    raise ValueError(f"Duplicate activity id: {activity_id}")
                keyed[activity_id] = activity
            return keyed
        return v

    @model_validator(mode="after")
    def validate_graph(self) -> "WorkflowDefinition":
        """Check the start activity and every transition endpoint exist."""
        for key, activity in self.activities.items():
            if key != activity.id:
                raise ValueError(f"Activity key '{key}' does not match activity id '{activity.id}'")

        if self.start_activity_id not in self.activities:
            raise ValueError(f"Start activity '{self.start_activity_id}' is not defined")

        for transition in self.transitions:
            if transition.source not in self.activities:
                raise ValueError(f"Transition source '{transition.source}' is not defined")
            if transition.target not in self.activities:
                raise ValueError(f"Transition target '{transition.target}' is not defined")

        starts = [a.id for a in self.activities.values() if isinstance(a, StartActivity)]
        if len(starts) > 1:
            raise ValueError(f"Only one start activity allowed, found: {starts}")
        return self

    def get_activity(self, activity_id: str) -> Optional[BaseActivity]:
        """Get activity by ID."""
        return self.activities.get(activity_id)

    def outgoing_transitions(self, activity_id: str) -> list[Transition]:
        """Transitions leaving an activity, lowest priority value first."""
        outgoing = [t for t in self.transitions if t.source == activity_id]
        return sorted(outgoing, key=lambda t: t.priority)

    def incoming_transitions(self, activity_id: str) -> list[Transition]:
        return [t for t in self.transitions if t.target == activity_id]

    def successors(self, activity_id: str) -> list[str]:
        """Every target reachable in one step, including gateway-chosen paths."""
        targets = [t.target for t in self.outgoing_transitions(activity_id)]
        activity = self.activities.get(activity_id)
        for attr in ("conditions", "outgoing_paths"):
            for target in getattr(activity, attr, None) or []:
                if target not in targets:
                    targets.append(target)
        default_path = getattr(activity, "default_path", None)
        if default_path and default_path not in targets:
            targets.append(default_path)
        return targets

    def required_inputs(self) -> list[str]:
        return [p.name for p in self.input_parameters if p.is_required]

    def find_triggers(self, trigger_type: TriggerType) -> list[WorkflowTrigger]:
        return [t for t in self.triggers if t.type == trigger_type and t.is_enabled]


# ==================== Instance State ====================


class Bookmark(BaseModel):
    """A pending suspension point of an instance."""

    name: str
    activity_id: str
    created_at: datetime = Field(default_factory=utc_now)
    payload: dict[str, Any] = Field(default_factory=dict)
    # Joins the suspended path still owes an arrival to, innermost last
    join_path: list[str] = Field(default_factory=list)


class WorkflowErrorInfo(BaseModel):
    """Last error recorded on a faulted instance."""

    code: str
    message: str
    activity_id: Optional[str] = None
    occurred_at: datetime = Field(default_factory=utc_now)


class JoinCounter(BaseModel):
    """Branch arrivals expected and seen at a join activity."""

    expected: int = 0
    arrived: int = 0


class WorkflowInstanceState(BaseModel):
    """Mutable record of one execution of a definition."""

    id: UUID = Field(default_factory=uuid4)
    workflow_id: str
    version: int
    status: WorkflowStatus = WorkflowStatus.PENDING
    name: str = ""
    correlation_id: Optional[str] = None
    priority: int = 0
    tenant_id: Optional[str] = None
    started_by: Optional[str] = None

    created_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    last_updated_at: Optional[datetime] = None
    scheduled_start_time: Optional[datetime] = None

    current_activity_id: Optional[str] = None
    input: dict[str, Any] = Field(default_factory=dict)
    output: dict[str, Any] = Field(default_factory=dict)
    variables: dict[str, Any] = Field(default_factory=dict)
    bookmarks: list[Bookmark] = Field(default_factory=list)

    fault_count: int = 0
    error: Optional[WorkflowErrorInfo] = None

    completed_activity_ids: list[str] = Field(default_factory=list)
    compensation_stack: list[str] = Field(default_factory=list)
    activity_attempts: dict[str, int] = Field(default_factory=dict)
    join_counters: dict[str, JoinCounter] = Field(default_factory=dict)

    parent_instance_id: Optional[UUID] = None
    parent_activity_id: Optional[str] = None

    def get_bookmark(self, name: str) -> Optional[Bookmark]:
        for bookmark in self.bookmarks:
            if bookmark.name == name:
                return bookmark
        return None

    def add_bookmark(
        self,
        name: str,
        activity_id: str,
        payload: Optional[dict[str, Any]] = None,
        join_path: Optional[list[str]] = None,
    ) -> Bookmark:
        """
        Add a bookmark, replacing any bookmark with the same name.

        Two activities waiting under one name (e.g. parallel branches receiving
        the same signal) cannot both be held; the later one wins and a warning
        is logged.
        """
        replaced = self.remove_bookmark(name)
        if replaced is not None and replaced.activity_id != activity_id:
            logger.warning(
                f"Instance {self.id}: bookmark {name} of activity '{replaced.activity_id}' "
                f"replaced by activity '{activity_id}'"
            )
        bookmark = Bookmark(
            name=name,
            activity_id=activity_id,
            payload=payload or {},
            join_path=list(join_path or []),
        )
        self.bookmarks.append(bookmark)
        return bookmark

    def remove_bookmark(self, name: str) -> Optional[Bookmark]:
        bookmark = self.get_bookmark(name)
        if bookmark is not None:
            self.bookmarks.remove(bookmark)
        return bookmark

    def mark_completed(self, activity_id: str) -> None:
        if activity_id not in self.completed_activity_ids:
            self.completed_activity_ids.append(activity_id)


class WorkflowExecutionRecord(BaseModel):
    """Append-only history entry for one activity execution."""

    id: UUID = Field(default_factory=uuid4)
    instance_id: UUID
    activity_id: str
    activity_type: str
    activity_name: str = ""
    outcome: ExecutionOutcome
    timestamp: datetime = Field(default_factory=utc_now)
    duration_ms: int = Field(default=0, ge=0)
    output: dict[str, Any] = Field(default_factory=dict)
    error: Optional[WorkflowErrorInfo] = None


class WorkflowTimer(BaseModel):
    """A scheduled wake-up for a suspended timer bookmark."""

    id: UUID = Field(default_factory=uuid4)
    instance_id: UUID
    bookmark_name: str
    activity_id: Optional[str] = None
    fire_at: datetime
    is_triggered: bool = False
    triggered_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)


# ==================== Operation Records ====================


class InstanceOptions(BaseModel):
    """Optional settings when creating an instance."""

    version: Optional[int] = None
    name: Optional[str] = None
    correlation_id: Optional[str] = None
    priority: int = 0
    tenant_id: Optional[str] = None
    started_by: Optional[str] = None
    scheduled_start_time: Optional[datetime] = None
    variables: dict[str, Any] = Field(default_factory=dict)
    parent_instance_id: Optional[UUID] = None
    parent_activity_id: Optional[str] = None


class InstanceQuery(BaseModel):
    """Filters and paging for instance queries."""

    workflow_id: Optional[str] = None
    statuses: list[WorkflowStatus] = Field(default_factory=list)
    correlation_id: Optional[str] = None
    tenant_id: Optional[str] = None
    created_after: Optional[datetime] = None
    created_before: Optional[datetime] = None
    descending: bool = True
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=50, ge=1, le=1000)


class InstanceQueryResult(BaseModel):
    items: list[WorkflowInstanceState] = Field(default_factory=list)
    total_count: int = 0
    page: int = 1
    page_size: int = 50


class DefinitionQuery(BaseModel):
    """Filters and paging for definition listings."""

    category: Optional[str] = None
    search: Optional[str] = None
    tag: Optional[str] = None
    tenant_id: Optional[str] = None
    include_drafts: bool = False
    include_inactive: bool = False
    page: int = Field(default=1, ge=1)
    page_size: int = Field(default=50, ge=1, le=1000)


class DefinitionListResult(BaseModel):
    items: list[WorkflowDefinition] = Field(default_factory=list)
    total_count: int = 0
    page: int = 1
    page_size: int = 50


class ExecutionResult(BaseModel):
    """Plain result returned by lifecycle operations."""

    instance_id: UUID
    status: WorkflowStatus
    output: dict[str, Any] = Field(default_factory=dict)
    error: Optional[WorkflowErrorInfo] = None
    bookmarks: list[str] = Field(default_factory=list)

    @classmethod
    def from_state(cls, state: WorkflowInstanceState) -> "ExecutionResult":
        return cls(
            instance_id=state.id,
            status=state.status,
            output=dict(state.output),
            error=state.error,
            bookmarks=[b.name for b in state.bookmarks],
        )
