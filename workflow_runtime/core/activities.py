"""
Activity variants of a workflow graph.

Activities form a closed tagged union discriminated by ``type``. The models
here are pure data; execution behaviour lives in the dispatch table in
``workflow_runtime.core.execution``.
"""

from datetime import datetime, timedelta
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator


class ActivityType(str, Enum):
    """Type tags of the supported activity variants."""

    START = "start"
    END = "end"
    TASK = "task"
    SERVICE_TASK = "serviceTask"
    USER_TASK = "userTask"
    SCRIPT = "script"
    TIMER = "timer"
    SIGNAL_RECEIVE = "signalReceive"
    SIGNAL_THROW = "signalThrow"
    EXCLUSIVE_GATEWAY = "exclusiveGateway"
    PARALLEL_GATEWAY = "parallelGateway"
    INCLUSIVE_GATEWAY = "inclusiveGateway"
    SUB_PROCESS = "subProcess"


class GatewayDirection(str, Enum):
    """Whether a gateway fans paths out or merges them back."""

    SPLIT = "split"
    JOIN = "join"


# ==================== Activity Results ====================


class ActivityError(BaseModel):
    """Activity-level failure captured as data."""

    code: str
    message: str


class ActivityResult(BaseModel):
    """Outcome of executing or resuming one activity."""

    success: bool = True
    error: Optional[ActivityError] = None
    suspend: bool = False
    bookmark_name: Optional[str] = None
    next_activity_id: Optional[str] = None
    parallel_next_activity_ids: list[str] = Field(default_factory=list)
    output: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, output: Optional[dict[str, Any]] = None) -> "ActivityResult":
        return cls(output=output or {})

    @classmethod
    def fail(cls, code: str, message: str) -> "ActivityResult":
        return cls(success=False, error=ActivityError(code=code, message=message))

    @classmethod
    def suspended(
        cls,
        bookmark_name: str,
        output: Optional[dict[str, Any]] = None,
    ) -> "ActivityResult":
        return cls(suspend=True, bookmark_name=bookmark_name, output=output or {})

    @classmethod
    def goto(
        cls,
        next_activity_id: str,
        output: Optional[dict[str, Any]] = None,
    ) -> "ActivityResult":
        return cls(next_activity_id=next_activity_id, output=output or {})

    @classmethod
    def fork(
        cls,
        next_activity_ids: list[str],
        output: Optional[dict[str, Any]] = None,
    ) -> "ActivityResult":
        return cls(parallel_next_activity_ids=list(next_activity_ids), output=output or {})


# ==================== Activity Variants ====================


class BaseActivity(BaseModel):
    """Fields shared by every activity variant."""

    id: str = Field(..., min_length=1, max_length=255, description="Unique activity identifier")
    name: str = Field(default="", description="Display name")
    description: Optional[str] = Field(default=None)
    input_mappings: dict[str, str] = Field(
        default_factory=dict,
        description="Parameter name -> expression resolved before execution",
    )
    output_mappings: dict[str, str] = Field(
        default_factory=dict,
        description="Result key -> instance variable receiving the value",
    )

    @property
    def can_suspend(self) -> bool:
        return False

    @property
    def can_compensate(self) -> bool:
        return False


class StartActivity(BaseActivity):
    type: Literal["start"] = "start"


class EndActivity(BaseActivity):
    type: Literal["end"] = "end"
    final_output_mappings: dict[str, str] = Field(
        default_factory=dict,
        description="Instance output key -> expression",
    )


class TaskActivity(BaseActivity):
    type: Literal["task"] = "task"
    task_handler: Optional[str] = Field(default=None, description="Registered task handler name")
    parameters: dict[str, Any] = Field(default_factory=dict, description="Static handler parameters")


class ServiceTaskActivity(BaseActivity):
    type: Literal["serviceTask"] = "serviceTask"
    service_type: Optional[str] = None
    method_name: Optional[str] = None
    method_parameters: list[Any] = Field(
        default_factory=list,
        description="Positional arguments; strings are resolved as expressions",
    )
    compensation_method: Optional[str] = None

    @property
    def can_compensate(self) -> bool:
        return bool(self.compensation_method)


class UserTaskActivity(BaseActivity):
    type: Literal["userTask"] = "userTask"
    assignee: Optional[str] = None
    candidate_groups: list[str] = Field(default_factory=list)
    priority: int = Field(default=3, ge=1, le=5)
    form_key: Optional[str] = None
    due_in: Optional[timedelta] = None

    @property
    def can_suspend(self) -> bool:
        return True

    @property
    def bookmark_name(self) -> str:
        return f"userTask_{self.id}"


class ScriptActivity(BaseActivity):
    type: Literal["script"] = "script"
    language: str = Field(default="expression")
    script: str = Field(default="")


class TimerActivity(BaseActivity):
    type: Literal["timer"] = "timer"
    duration: Optional[timedelta] = Field(default=None, description="ISO-8601 duration or seconds")
    date_time: Optional[datetime] = Field(default=None, description="Absolute fire time")
    cron: Optional[str] = Field(default=None, description="Fire at the next cron occurrence")

    @property
    def can_suspend(self) -> bool:
        return True

    @property
    def bookmark_name(self) -> str:
        return f"timer_{self.id}"


class SignalReceiveActivity(BaseActivity):
    type: Literal["signalReceive"] = "signalReceive"
    signal_name: str = Field(default="")

    @property
    def can_suspend(self) -> bool:
        return True

    @property
    def bookmark_name(self) -> str:
        return signal_bookmark(self.signal_name)


class SignalThrowActivity(BaseActivity):
    type: Literal["signalThrow"] = "signalThrow"
    signal_name: str = Field(default="")
    payload: Optional[str] = Field(default=None, description="Expression evaluated into the payload")


class ExclusiveGatewayActivity(BaseActivity):
    type: Literal["exclusiveGateway"] = "exclusiveGateway"
    conditions: dict[str, str] = Field(
        default_factory=dict,
        description="Target activity id -> condition, evaluated in declaration order",
    )
    default_path: Optional[str] = None


class ParallelGatewayActivity(BaseActivity):
    type: Literal["parallelGateway"] = "parallelGateway"
    direction: GatewayDirection = GatewayDirection.SPLIT
    outgoing_paths: list[str] = Field(default_factory=list)

    @field_validator("direction", mode="before")
    @classmethod
    def normalize_direction(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


class InclusiveGatewayActivity(BaseActivity):
    type: Literal["inclusiveGateway"] = "inclusiveGateway"
    direction: GatewayDirection = GatewayDirection.SPLIT
    conditions: dict[str, str] = Field(default_factory=dict)
    default_path: Optional[str] = None

    @field_validator("direction", mode="before")
    @classmethod
    def normalize_direction(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v


class SubProcessActivity(BaseActivity):
    type: Literal["subProcess"] = "subProcess"
    sub_workflow_id: str = Field(default="")
    sub_workflow_version: Optional[int] = None
    wait_for_completion: bool = True

    @property
    def can_suspend(self) -> bool:
        return self.wait_for_completion

    @property
    def can_compensate(self) -> bool:
        return True

    @property
    def bookmark_name(self) -> str:
        return f"subProcess_{self.id}"

    @property
    def instance_variable(self) -> str:
        return f"_subprocess_{self.id}_instanceId"


Activity = Annotated[
    Union[
        StartActivity,
        EndActivity,
        TaskActivity,
        ServiceTaskActivity,
        UserTaskActivity,
        ScriptActivity,
        TimerActivity,
        SignalReceiveActivity,
        SignalThrowActivity,
        ExclusiveGatewayActivity,
        ParallelGatewayActivity,
        InclusiveGatewayActivity,
        SubProcessActivity,
    ],
    Field(discriminator="type"),
]

JOIN_ACTIVITY_TYPES = (ParallelGatewayActivity, InclusiveGatewayActivity)


def signal_bookmark(signal_name: str) -> str:
    """Bookmark name an instance holds while waiting for a signal."""
    return f"signal_{signal_name}"


def is_join(activity: BaseActivity) -> bool:
    """Check if an activity merges concurrent branches."""
    return isinstance(activity, JOIN_ACTIVITY_TYPES) and activity.direction == GatewayDirection.JOIN
