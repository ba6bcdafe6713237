"""
Execution behaviour of the activity variants.

Each activity type tag maps to an ``ActivityHandler`` holding its execute,
resume and compensate functions. Handlers never raise for business
failures; they return ``ActivityResult.fail`` with an error code.
"""

import inspect
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional
from uuid import UUID

from croniter import croniter

from workflow_runtime.core.activities import (
    ActivityResult,
    ActivityType,
    BaseActivity,
    EndActivity,
    ExclusiveGatewayActivity,
    GatewayDirection,
    InclusiveGatewayActivity,
    ParallelGatewayActivity,
    ScriptActivity,
    ServiceTaskActivity,
    SignalReceiveActivity,
    SignalThrowActivity,
    SubProcessActivity,
    TaskActivity,
    TimerActivity,
    UserTaskActivity,
)
from workflow_runtime.core.clock import to_naive_utc, utc_now
from workflow_runtime.core.exceptions import WorkflowError
from workflow_runtime.core.models import WorkflowDefinition, WorkflowInstanceState, WorkflowTimer
from workflow_runtime.core.state_machine import WorkflowStatus
from workflow_runtime.expressions import ValueResolver, assign_path, evaluate
from workflow_runtime.expressions.conditions import find_operator

if TYPE_CHECKING:
    from workflow_runtime.storage.base import TimerStore

logger = logging.getLogger(__name__)


# ==================== Pluggable Collaborators ====================


TaskHandler = Callable[[dict[str, Any], "ActivityContext"], Any]


class TaskHandlerRegistry:
    """
    Named task handlers invoked by Task activities.

    A handler receives the resolved inputs and the activity context and
    returns a dict (the activity output), an ActivityResult, or None.
    Handlers may be sync or async.
    """

    def __init__(self, handlers: Optional[dict[str, TaskHandler]] = None):
        self._handlers: dict[str, TaskHandler] = dict(handlers or {})

    def register(self, name: str, handler: Optional[TaskHandler] = None):
        """Register a handler; usable as a decorator when handler is omitted."""
        if handler is not None:
            self._handlers[name] = handler
            return handler

        def decorator(func: TaskHandler) -> TaskHandler:
            self._handlers[name] = func
            return func

        return decorator

    def get(self, name: str) -> Optional[TaskHandler]:
        return self._handlers.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._handlers


class ServiceRegistry:
    """Service objects invoked by ServiceTask activities, keyed by service type."""

    def __init__(self, services: Optional[dict[str, Any]] = None):
        self._services: dict[str, Any] = dict(services or {})

    def register(self, service_type: str, service: Any) -> None:
        self._services[service_type] = service

    def get(self, service_type: str) -> Any:
        return self._services.get(service_type)


class ScriptEvaluator(ABC):
    """Evaluator for a non-default script language."""

    @abstractmethod
    async def run(self, script: str, context: "ActivityContext") -> dict[str, Any]:
        """
        Run a script.

        Returns:
            Variables to assign into the instance variable bag
        """


class SubProcessLauncher(ABC):
    """Creates and cancels child instances on behalf of SubProcess activities."""

    @abstractmethod
    async def launch(
        self,
        parent: WorkflowInstanceState,
        activity: SubProcessActivity,
        input_data: dict[str, Any],
    ) -> WorkflowInstanceState:
        """Create and start the child instance; return its state after the first run."""

    @abstractmethod
    async def cancel(self, instance_id: UUID, reason: str) -> None:
        """Cancel a child instance."""


@dataclass
class ActivityContext:
    """Everything an activity may read or touch while it executes."""

    instance: WorkflowInstanceState
    definition: WorkflowDefinition
    input: dict[str, Any] = field(default_factory=dict)
    task_handlers: TaskHandlerRegistry = field(default_factory=TaskHandlerRegistry)
    services: ServiceRegistry = field(default_factory=ServiceRegistry)
    script_evaluators: dict[str, ScriptEvaluator] = field(default_factory=dict)
    timers: Optional["TimerStore"] = None
    sub_processes: Optional[SubProcessLauncher] = None
    now: datetime = field(default_factory=utc_now)

    @property
    def variables(self) -> dict[str, Any]:
        return self.instance.variables

    def resolver(self, output: Optional[dict[str, Any]] = None) -> ValueResolver:
        return ValueResolver(
            variables=self.instance.variables,
            input_params=self.input or self.instance.input,
            output=output,
        )

    def evaluate(self, expression: Optional[str]) -> bool:
        return evaluate(expression, resolver=self.resolver())

    def resolve_inputs(self, activity: BaseActivity) -> dict[str, Any]:
        return self.resolver().resolve_mapping(activity.input_mappings)

    def apply_output_mappings(self, activity: BaseActivity, output: dict[str, Any]) -> None:
        """Copy result values into variables as declared by the activity."""
        resolver = self.resolver(output=output)
        for key, variable in activity.output_mappings.items():
            value = output[key] if key in output else resolver.resolve(f"output.{key}")
            assign_path(self.instance.variables, variable, value)


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# ==================== Start / End ====================


async def _execute_start(activity: BaseActivity, ctx: ActivityContext) -> ActivityResult:
    return ActivityResult.ok()


async def _execute_end(activity: EndActivity, ctx: ActivityContext) -> ActivityResult:
    output = ctx.resolver().resolve_mapping(activity.final_output_mappings)
    ctx.instance.output.update(output)
    return ActivityResult.ok(output)


# ==================== Tasks ====================


async def _execute_task(activity: TaskActivity, ctx: ActivityContext) -> ActivityResult:
    if not activity.task_handler:
        return ActivityResult.fail("MISSING_HANDLER", f"Task '{activity.id}' has no task handler")

    handler = ctx.task_handlers.get(activity.task_handler)
    if handler is None:
        return ActivityResult.fail(
            "HANDLER_NOT_REGISTERED",
            f"Task handler '{activity.task_handler}' is not registered",
        )
    if not callable(handler):
        return ActivityResult.fail(
            "INVALID_HANDLER",
            f"Task handler '{activity.task_handler}' is not callable",
        )

    inputs = {**activity.parameters, **ctx.resolve_inputs(activity)}

    try:
        result = await _maybe_await(handler(inputs, ctx))
    except Exception as e:
        logger.error(
            f"Task handler '{activity.task_handler}' failed in activity '{activity.id}': {e}",
            exc_info=True,
        )
        return ActivityResult.fail("TASK_ERROR", str(e))

    if isinstance(result, ActivityResult):
        if result.success:
            ctx.apply_output_mappings(activity, result.output)
        return result

    if result is None:
        output: dict[str, Any] = {}
    elif isinstance(result, dict):
        output = result
    else:
        output = {"result": result}

    ctx.apply_output_mappings(activity, output)
    return ActivityResult.ok(output)


def _service_method(
    activity: ServiceTaskActivity,
    ctx: ActivityContext,
    method_name: Optional[str],
) -> tuple[Optional[Callable[..., Any]], Optional[ActivityResult]]:
    if not activity.service_type:
        return None, ActivityResult.fail("SERVICE_NOT_FOUND", f"Service task '{activity.id}' has no service type")

    service = ctx.services.get(activity.service_type)
    if service is None:
        return None, ActivityResult.fail(
            "SERVICE_NOT_FOUND",
            f"Service '{activity.service_type}' is not registered",
        )

    # Private attributes are never reachable from a definition
    method = getattr(service, method_name, None) if method_name and not method_name.startswith("_") else None
    if method is None or not callable(method):
        return None, ActivityResult.fail(
            "METHOD_NOT_FOUND",
            f"Method '{method_name}' not found on service '{activity.service_type}'",
        )

    return method, None


async def _execute_service_task(activity: ServiceTaskActivity, ctx: ActivityContext) -> ActivityResult:
    method, failure = _service_method(activity, ctx, activity.method_name)
    if failure is not None:
        return failure

    resolver = ctx.resolver()
    args = [resolver.resolve(p) for p in activity.method_parameters]
    kwargs = ctx.resolve_inputs(activity)

    try:
        value = await _maybe_await(method(*args, **kwargs))
    except Exception as e:
        logger.error(
            f"Service call {activity.service_type}.{activity.method_name} failed "
            f"in activity '{activity.id}': {e}",
            exc_info=True,
        )
        return ActivityResult.fail("SERVICE_ERROR", str(e))

    output = {"result": value}
    ctx.apply_output_mappings(activity, output)
    return ActivityResult.ok(output)


async def _compensate_service_task(activity: ServiceTaskActivity, ctx: ActivityContext) -> ActivityResult:
    if not activity.compensation_method:
        return ActivityResult.ok()

    method, failure = _service_method(activity, ctx, activity.compensation_method)
    if failure is not None:
        return ActivityResult.fail("COMPENSATION_ERROR", failure.error.message)

    resolver = ctx.resolver()
    args = [resolver.resolve(p) for p in activity.method_parameters]

    try:
        await _maybe_await(method(*args, **ctx.resolve_inputs(activity)))
    except Exception as e:
        logger.error(f"Compensation of activity '{activity.id}' failed: {e}", exc_info=True)
        return ActivityResult.fail("COMPENSATION_ERROR", str(e))

    return ActivityResult.ok()


async def _execute_user_task(activity: UserTaskActivity, ctx: ActivityContext) -> ActivityResult:
    resolver = ctx.resolver()
    due_date = ctx.now + activity.due_in if activity.due_in else None

    assignment = {
        "assignee": resolver.resolve(activity.assignee) if activity.assignee else None,
        "candidateGroups": list(activity.candidate_groups),
        "priority": activity.priority,
        "formKey": activity.form_key,
        "dueDate": due_date.isoformat() if due_date else None,
        "inputs": ctx.resolve_inputs(activity),
    }
    return ActivityResult.suspended(activity.bookmark_name, output=assignment)


async def _resume_with_mappings(
    activity: BaseActivity,
    ctx: ActivityContext,
    input_data: dict[str, Any],
) -> ActivityResult:
    ctx.apply_output_mappings(activity, input_data)
    return ActivityResult.ok(dict(input_data))


# ==================== Script ====================


ASSIGNMENT_PATTERN = re.compile(r"^\s*([A-Za-z_][\w.]*)\s*=(?!=)\s*(.+?)\s*$")

EXPRESSION_LANGUAGES = {"expression", "expr"}


def run_expression_script(script: str, ctx: ActivityContext) -> dict[str, Any]:
    """
    Execute ``name = expression`` statements in order.

    Statements are separated by newlines or semicolons; lines starting with
    ``#`` or ``//`` are comments. A right-hand side containing a comparison
    operator evaluates to a boolean, anything else is resolved as an operand.

    Raises:
        ValueError: On a statement that is not an assignment
    """
    assigned: dict[str, Any] = {}

    for raw in re.split(r"[;\n]", script):
        statement = raw.strip()
        if not statement or statement.startswith("#") or statement.startswith("//"):
            continue

        match = ASSIGNMENT_PATTERN.match(statement)
        if not match:
            raise ValueError(f"Invalid statement: {statement}")

        name, expression = match.group(1), match.group(2)
        resolver = ctx.resolver()
        if find_operator(expression) is not None:
            value: Any = evaluate(expression, resolver=resolver)
        else:
            value = resolver.resolve(expression)

        assign_path(ctx.instance.variables, name, value)
        assigned[name] = value

    return assigned


async def _execute_script(activity: ScriptActivity, ctx: ActivityContext) -> ActivityResult:
    if not activity.script.strip():
        return ActivityResult.fail("SCRIPT_ERROR", f"Script activity '{activity.id}' has no script")

    language = activity.language.lower()

    if language in EXPRESSION_LANGUAGES:
        try:
            assigned = run_expression_script(activity.script, ctx)
        except ValueError as e:
            return ActivityResult.fail("SCRIPT_ERROR", str(e))
        return ActivityResult.ok(assigned)

    evaluator = ctx.script_evaluators.get(language)
    if evaluator is None:
        return ActivityResult.fail(
            "UNSUPPORTED_LANGUAGE",
            f"No script evaluator registered for language '{activity.language}'",
        )

    try:
        assigned = await evaluator.run(activity.script, ctx) or {}
    except Exception as e:
        logger.error(f"Script in activity '{activity.id}' failed: {e}", exc_info=True)
        return ActivityResult.fail("SCRIPT_ERROR", str(e))

    for name, value in assigned.items():
        assign_path(ctx.instance.variables, name, value)
    ctx.apply_output_mappings(activity, assigned)
    return ActivityResult.ok(assigned)


# ==================== Timer / Signals ====================


def compute_fire_time(activity: TimerActivity, now: datetime) -> datetime:
    """
    Compute when a timer fires.

    Precedence: duration, then absolute time, then cron.

    Raises:
        ValueError: If no schedule is set or the cron expression is invalid
    """
    if activity.duration is not None:
        return now + activity.duration
    if activity.date_time is not None:
        return to_naive_utc(activity.date_time)
    if activity.cron:
        if not croniter.is_valid(activity.cron):
            raise ValueError(f"Invalid cron expression: {activity.cron}")
        return croniter(activity.cron, now).get_next(datetime)
    raise ValueError(f"Timer '{activity.id}' has no duration, date/time or cron")


async def _execute_timer(activity: TimerActivity, ctx: ActivityContext) -> ActivityResult:
    try:
        fire_at = compute_fire_time(activity, ctx.now)
    except ValueError as e:
        return ActivityResult.fail("INVALID_TIMER", str(e))

    if ctx.timers is None:
        return ActivityResult.fail("INVALID_TIMER", "No timer store configured")

    timer = WorkflowTimer(
        instance_id=ctx.instance.id,
        bookmark_name=activity.bookmark_name,
        activity_id=activity.id,
        fire_at=fire_at,
    )
    await ctx.timers.schedule(timer)

    ctx.instance.variables[f"_timer_{activity.id}_fireTime"] = fire_at.isoformat()
    return ActivityResult.suspended(
        activity.bookmark_name,
        output={"fireAt": fire_at.isoformat(), "timerId": str(timer.id)},
    )


async def _resume_timer(activity: TimerActivity, ctx: ActivityContext, input_data: dict[str, Any]) -> ActivityResult:
    return ActivityResult.ok()


async def _execute_signal_receive(activity: SignalReceiveActivity, ctx: ActivityContext) -> ActivityResult:
    if not activity.signal_name:
        return ActivityResult.fail("MISSING_SIGNAL_NAME", f"Activity '{activity.id}' has no signal name")
    return ActivityResult.suspended(activity.bookmark_name, output={"signalName": activity.signal_name})


async def _execute_signal_throw(activity: SignalThrowActivity, ctx: ActivityContext) -> ActivityResult:
    if not activity.signal_name:
        return ActivityResult.fail("MISSING_SIGNAL_NAME", f"Activity '{activity.id}' has no signal name")

    payload = ctx.resolver().resolve(activity.payload) if activity.payload else None
    return ActivityResult.ok({"signalName": activity.signal_name, "payload": payload})


# ==================== Gateways ====================


async def _execute_exclusive_gateway(activity: ExclusiveGatewayActivity, ctx: ActivityContext) -> ActivityResult:
    for target, condition in activity.conditions.items():
        if ctx.evaluate(condition):
            return ActivityResult.goto(target)

    if activity.default_path:
        return ActivityResult.goto(activity.default_path)

    return ActivityResult.fail("NO_PATH", f"No condition matched in gateway '{activity.id}' and no default path")


async def _execute_parallel_gateway(activity: ParallelGatewayActivity, ctx: ActivityContext) -> ActivityResult:
    if activity.direction == GatewayDirection.JOIN:
        return ActivityResult.ok()

    paths = activity.outgoing_paths or [t.target for t in ctx.definition.outgoing_transitions(activity.id)]
    return ActivityResult.fork(paths)


async def _execute_inclusive_gateway(activity: InclusiveGatewayActivity, ctx: ActivityContext) -> ActivityResult:
    if activity.direction == GatewayDirection.JOIN:
        return ActivityResult.ok()

    matched = [target for target, condition in activity.conditions.items() if ctx.evaluate(condition)]

    if len(matched) == 1:
        return ActivityResult.goto(matched[0])
    if matched:
        return ActivityResult.fork(matched)
    if activity.default_path:
        return ActivityResult.goto(activity.default_path)

    return ActivityResult.fail("NO_PATH", f"No condition matched in gateway '{activity.id}' and no default path")


# ==================== Sub-process ====================


_FAILED_CHILD_STATES = {WorkflowStatus.FAULTED.value, WorkflowStatus.CANCELLED.value}


async def _execute_sub_process(activity: SubProcessActivity, ctx: ActivityContext) -> ActivityResult:
    if not activity.sub_workflow_id:
        return ActivityResult.fail("MISSING_SUBPROCESS_ID", f"Sub-process '{activity.id}' has no workflow id")
    if ctx.sub_processes is None:
        return ActivityResult.fail("SUBPROCESS_FAILED", "No sub-process launcher configured")

    try:
        child = await ctx.sub_processes.launch(ctx.instance, activity, ctx.resolve_inputs(activity))
    except WorkflowError as e:
        return ActivityResult.fail("SUBPROCESS_FAILED", str(e))

    ctx.instance.variables[activity.instance_variable] = str(child.id)
    output: dict[str, Any] = {"instanceId": str(child.id), "status": child.status.value}

    if not activity.wait_for_completion:
        return ActivityResult.ok(output)

    if child.status.value in _FAILED_CHILD_STATES:
        message = child.error.message if child.error else f"Sub-process ended {child.status.value}"
        return ActivityResult.fail("SUBPROCESS_FAILED", message)

    if child.status == WorkflowStatus.COMPLETED:
        output["output"] = dict(child.output)
        ctx.apply_output_mappings(activity, child.output)
        return ActivityResult.ok(output)

    return ActivityResult.suspended(activity.bookmark_name, output=output)


async def _resume_sub_process(
    activity: SubProcessActivity,
    ctx: ActivityContext,
    input_data: dict[str, Any],
) -> ActivityResult:
    if input_data.get("status") in _FAILED_CHILD_STATES:
        error = input_data.get("error") or {}
        return ActivityResult.fail("SUBPROCESS_FAILED", error.get("message", "Sub-process did not complete"))

    child_output = input_data.get("output") or {}
    ctx.apply_output_mappings(activity, child_output)
    return ActivityResult.ok(dict(input_data))


async def _compensate_sub_process(activity: SubProcessActivity, ctx: ActivityContext) -> ActivityResult:
    child_id = ctx.instance.variables.get(activity.instance_variable)
    if not child_id or ctx.sub_processes is None:
        return ActivityResult.ok()

    try:
        await ctx.sub_processes.cancel(UUID(str(child_id)), "Compensation of parent activity")
    except WorkflowError as e:
        return ActivityResult.fail("COMPENSATION_ERROR", str(e))
    return ActivityResult.ok()


# ==================== Dispatch Table ====================


ExecuteFn = Callable[[Any, ActivityContext], Awaitable[ActivityResult]]
ResumeFn = Callable[[Any, ActivityContext, dict[str, Any]], Awaitable[ActivityResult]]
CompensateFn = Callable[[Any, ActivityContext], Awaitable[ActivityResult]]


@dataclass(frozen=True)
class ActivityHandler:
    """Behaviour registered for one activity type tag."""

    execute: ExecuteFn
    resume: Optional[ResumeFn] = None
    compensate: Optional[CompensateFn] = None


ACTIVITY_HANDLERS: dict[str, ActivityHandler] = {
    ActivityType.START.value: ActivityHandler(_execute_start),
    ActivityType.END.value: ActivityHandler(_execute_end),
    ActivityType.TASK.value: ActivityHandler(_execute_task),
    ActivityType.SERVICE_TASK.value: ActivityHandler(_execute_service_task, compensate=_compensate_service_task),
    ActivityType.USER_TASK.value: ActivityHandler(_execute_user_task, resume=_resume_with_mappings),
    ActivityType.SCRIPT.value: ActivityHandler(_execute_script),
    ActivityType.TIMER.value: ActivityHandler(_execute_timer, resume=_resume_timer),
    ActivityType.SIGNAL_RECEIVE.value: ActivityHandler(_execute_signal_receive, resume=_resume_with_mappings),
    ActivityType.SIGNAL_THROW.value: ActivityHandler(_execute_signal_throw),
    ActivityType.EXCLUSIVE_GATEWAY.value: ActivityHandler(_execute_exclusive_gateway),
    ActivityType.PARALLEL_GATEWAY.value: ActivityHandler(_execute_parallel_gateway),
    ActivityType.INCLUSIVE_GATEWAY.value: ActivityHandler(_execute_inclusive_gateway),
    ActivityType.SUB_PROCESS.value: ActivityHandler(
        _execute_sub_process,
        resume=_resume_sub_process,
        compensate=_compensate_sub_process,
    ),
}


def _handler_for(activity: BaseActivity) -> ActivityHandler:
    handler = ACTIVITY_HANDLERS.get(activity.type)
    if handler is None:
        raise KeyError(f"No handler registered for activity type '{activity.type}'")
    return handler


async def execute_activity(activity: BaseActivity, ctx: ActivityContext) -> ActivityResult:
    """Execute an activity through the dispatch table."""
    return await _handler_for(activity).execute(activity, ctx)


async def resume_activity(
    activity: BaseActivity,
    ctx: ActivityContext,
    input_data: Optional[dict[str, Any]] = None,
) -> ActivityResult:
    """Resume a suspended activity; variants without resume simply succeed."""
    handler = _handler_for(activity)
    if handler.resume is None:
        return ActivityResult.ok()
    return await handler.resume(activity, ctx, input_data or {})


async def compensate_activity(activity: BaseActivity, ctx: ActivityContext) -> ActivityResult:
    """Undo a completed activity; variants without compensation succeed."""
    handler = _handler_for(activity)
    if handler.compensate is None:
        return ActivityResult.ok()
    return await handler.compensate(activity, ctx)
