"""
Workflow engine.

Drives instances through their definition graph: lifecycle operations,
the execution loop, forks and joins, error handlers, signal fan-out and
sub-process completion.
"""

import asyncio
import logging
import socket
import time
from contextlib import asynccontextmanager
from contextvars import ContextVar
from copy import deepcopy
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, AsyncGenerator, Awaitable, Callable, Optional
from uuid import UUID, uuid4

from workflow_runtime.config import Settings, get_settings
from workflow_runtime.core.activities import (
    ActivityResult,
    BaseActivity,
    SignalThrowActivity,
    SubProcessActivity,
    is_join,
    signal_bookmark,
)
from workflow_runtime.core.clock import utc_now
from workflow_runtime.core.exceptions import (
    WorkflowActivityNotFoundError,
    WorkflowBookmarkNotFoundError,
    WorkflowError,
    WorkflowExecutionError,
    WorkflowInvalidStateError,
    WorkflowLockError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from workflow_runtime.core.execution import (
    ActivityContext,
    ScriptEvaluator,
    ServiceRegistry,
    SubProcessLauncher,
    TaskHandlerRegistry,
    compensate_activity,
    execute_activity,
    resume_activity,
)
from workflow_runtime.core.models import (
    ErrorHandler,
    ExecutionOutcome,
    ExecutionResult,
    InstanceOptions,
    InstanceQuery,
    InstanceQueryResult,
    TriggerType,
    WorkflowDefinition,
    WorkflowErrorInfo,
    WorkflowExecutionRecord,
    WorkflowInstanceState,
)
from workflow_runtime.core.state_machine import (
    WorkflowStateMachine,
    WorkflowStatus,
    transition_instance,
)
from workflow_runtime.engine.joins import JoinCoordinator, find_join
from workflow_runtime.storage.base import DefinitionStore, InstanceStore, LockProvider, TimerStore

logger = logging.getLogger(__name__)

# Instances whose lock is held further up the current call chain
_active_instances: ContextVar[frozenset] = ContextVar("active_instances", default=frozenset())


@dataclass
class _Run:
    """Working set of one locked execution of an instance."""

    state: WorkflowInstanceState
    definition: WorkflowDefinition
    joins: JoinCoordinator
    activity_count: int = 0
    signals: list[tuple[str, Any]] = field(default_factory=list)
    # Signals aimed at this instance while it was locked further up the call chain
    deferred_signals: list[tuple[str, Any]] = field(default_factory=list)

    @property
    def is_running(self) -> bool:
        return self.state.status == WorkflowStatus.RUNNING


class _EngineSubProcessLauncher(SubProcessLauncher):
    """Launches child instances through the owning engine."""

    def __init__(self, engine: "WorkflowEngine"):
        self._engine = engine

    async def launch(
        self,
        parent: WorkflowInstanceState,
        activity: SubProcessActivity,
        input_data: dict[str, Any],
    ) -> WorkflowInstanceState:
        options = InstanceOptions(
            version=activity.sub_workflow_version,
            correlation_id=parent.correlation_id,
            tenant_id=parent.tenant_id,
            priority=parent.priority,
            started_by=f"instance:{parent.id}",
            parent_instance_id=parent.id,
            parent_activity_id=activity.id,
        )
        child = await self._engine.create_instance(activity.sub_workflow_id, input_data, options)
        await self._engine.start(child.id)
        return await self._engine.get_instance(child.id)

    async def cancel(self, instance_id: UUID, reason: str) -> None:
        child = await self._engine.get_instance(instance_id)
        if child.status in WorkflowStateMachine.CANCELLABLE_STATES:
            await self._engine.cancel(instance_id, reason)


class WorkflowEngine:
    """
    Executes workflow instances against versioned definitions.

    Every mutating operation runs under the instance's advisory lock and an
    in-process lock, so one instance is only ever mutated by one coroutine.
    Activity failures fault the instance; they never escape as exceptions.
    """

    def __init__(
        self,
        definitions: DefinitionStore,
        instances: InstanceStore,
        timers: TimerStore,
        lock_provider: Optional[LockProvider] = None,
        task_handlers: Optional[TaskHandlerRegistry] = None,
        services: Optional[ServiceRegistry] = None,
        script_evaluators: Optional[dict[str, ScriptEvaluator]] = None,
        settings: Optional[Settings] = None,
    ):
        self.definitions = definitions
        self.instances = instances
        self.timers = timers
        self.lock_provider = lock_provider or instances
        self.task_handlers = task_handlers or TaskHandlerRegistry()
        self.services = services or ServiceRegistry()
        self.script_evaluators = {k.lower(): v for k, v in (script_evaluators or {}).items()}
        self.settings = settings or get_settings()

        self.holder_id = f"{self.settings.engine.holder_prefix}-{socket.gethostname()}-{uuid4().hex[:8]}"

        self._local_locks: dict[UUID, asyncio.Lock] = {}
        self._local_lock_refs: dict[UUID, int] = {}
        self._launcher = _EngineSubProcessLauncher(self)
        self._runs: dict[UUID, _Run] = {}

    # ==================== Instance Creation ====================

    async def get_definition(
        self,
        workflow_id: str,
        version: Optional[int] = None,
    ) -> WorkflowDefinition:
        """
        Resolve a definition.

        Raises:
            WorkflowNotFoundError: If no matching definition exists
        """
        definition = await self.definitions.get(workflow_id, version)
        if definition is None:
            raise WorkflowNotFoundError.for_definition(workflow_id, version)
        return definition

    async def create_instance(
        self,
        workflow_id: str,
        input_data: Optional[dict[str, Any]] = None,
        options: Optional[InstanceOptions] = None,
    ) -> WorkflowInstanceState:
        """
        Create a Pending instance of a definition.

        Args:
            workflow_id: Definition id; the latest active non-draft version
                is used unless options.version is set
            input_data: Instance input, also copied into the variable bag
            options: Name, correlation, scheduling and parent settings

        Returns:
            The persisted instance state

        Raises:
            WorkflowNotFoundError: If the definition does not exist
            WorkflowValidationError: If required input parameters are missing
        """
        options = options or InstanceOptions()
        definition = await self.get_definition(workflow_id, options.version)
        data = dict(input_data or {})

        missing = [name for name in definition.required_inputs() if name not in data]
        if missing:
            raise WorkflowValidationError(
                "Missing required input parameters",
                errors=[f"Missing required input parameter: {name}" for name in missing],
                workflow_id=workflow_id,
            )

        for parameter in definition.input_parameters:
            if parameter.name not in data and parameter.default_value is not None:
                data[parameter.name] = deepcopy(parameter.default_value)

        variables: dict[str, Any] = {}
        for variable in definition.variables:
            if variable.default_value is not None:
                variables[variable.name] = deepcopy(variable.default_value)
        variables.update(deepcopy(data))
        variables.update(deepcopy(options.variables))

        now = utc_now()
        state = WorkflowInstanceState(
            workflow_id=definition.id,
            version=definition.version,
            name=options.name or f"{definition.name} - {now:%Y-%m-%d %H:%M}",
            correlation_id=options.correlation_id,
            priority=options.priority,
            tenant_id=options.tenant_id or definition.tenant_id,
            started_by=options.started_by,
            created_at=now,
            scheduled_start_time=options.scheduled_start_time,
            input=data,
            variables=variables,
            parent_instance_id=options.parent_instance_id,
            parent_activity_id=options.parent_activity_id,
        )

        await self._save_state(state)

        logger.info(
            f"Created instance {state.id} of workflow {definition.id} v{definition.version}"
        )
        return state

    async def create_and_start(
        self,
        workflow_id: str,
        input_data: Optional[dict[str, Any]] = None,
        options: Optional[InstanceOptions] = None,
    ) -> ExecutionResult:
        """Create an instance and run it to its first suspension or end."""
        state = await self.create_instance(workflow_id, input_data, options)
        return await self.start(state.id)

    # ==================== Lifecycle Operations ====================

    async def start(self, instance_id: UUID) -> ExecutionResult:
        """
        Start a Pending instance at its start activity.

        Raises:
            WorkflowNotFoundError: If the instance does not exist
            WorkflowInvalidStateError: If the instance is not Pending
        """
        async with self._locked(instance_id):
            state = await self._load(instance_id)
            if state.status != WorkflowStatus.PENDING:
                raise WorkflowInvalidStateError(instance_id, state.status, "start")

            definition = await self._definition_for(state)
            transition_instance(state, WorkflowStatus.RUNNING, "Started")
            state.current_activity_id = definition.start_activity_id

            logger.info(f"Starting instance {instance_id} of workflow {state.workflow_id}")

            run = self._new_run(state, definition)
            await self._run_paths(run, [definition.start_activity_id])
            await self._finish(run)

        await self._after_run(run)
        return ExecutionResult.from_state(run.state)

    async def resume(
        self,
        instance_id: UUID,
        bookmark_name: str,
        input_data: Optional[dict[str, Any]] = None,
    ) -> ExecutionResult:
        """
        Resume a Suspended instance at one of its bookmarks.

        The bookmark is consumed, the owning activity's resume runs with
        ``input_data``, and execution continues from that activity.

        Raises:
            WorkflowNotFoundError: If the instance does not exist
            WorkflowBookmarkNotFoundError: If the instance holds no such bookmark
            WorkflowInvalidStateError: If the instance is not Suspended
        """
        async with self._locked(instance_id):
            state = await self._load(instance_id)
            bookmark = state.get_bookmark(bookmark_name)
            if bookmark is None:
                raise WorkflowBookmarkNotFoundError(instance_id, bookmark_name)
            if state.status != WorkflowStatus.SUSPENDED:
                raise WorkflowInvalidStateError(instance_id, state.status, "resume")

            definition = await self._definition_for(state)
            activity = definition.get_activity(bookmark.activity_id)
            if activity is None:
                raise WorkflowActivityNotFoundError(bookmark.activity_id, definition.id)

            state.remove_bookmark(bookmark_name)
            await self.timers.cancel(instance_id, bookmark_name)
            transition_instance(state, WorkflowStatus.RUNNING, f"Resumed at {bookmark_name}")
            state.current_activity_id = activity.id

            logger.info(f"Resuming instance {instance_id} at bookmark {bookmark_name}")

            run = self._new_run(state, definition)
            data = dict(input_data or {})
            joins = tuple(bookmark.join_path)
            result = await self._resume_once(run, activity, data)
            next_id = await self._complete_step(
                run,
                activity,
                result,
                rerun=lambda: self._resume_once(run, activity, data),
                joins=joins,
            )
            if next_id is not None:
                await self._run_paths(run, [next_id], joins)
            await self._finish(run)

        await self._after_run(run)
        return ExecutionResult.from_state(run.state)

    async def cancel(self, instance_id: UUID, reason: Optional[str] = None) -> ExecutionResult:
        """
        Cancel a non-terminal instance.

        Raises:
            WorkflowNotFoundError: If the instance does not exist
            WorkflowInvalidStateError: If the instance is already terminal
        """
        async with self._locked(instance_id):
            state = await self._load(instance_id)
            if state.status not in WorkflowStateMachine.CANCELLABLE_STATES:
                raise WorkflowInvalidStateError(instance_id, state.status, "cancel")

            children = self._waiting_children(state, await self._definition_for(state))
            await self._clear_waits(state)
            transition_instance(state, WorkflowStatus.CANCELLED, reason or "Cancelled")
            await self._save_state(state)

            logger.info(f"Cancelled instance {instance_id}: {reason or 'no reason given'}")

        for child_id in children:
            try:
                await self._launcher.cancel(child_id, f"Parent instance {instance_id} cancelled")
            except WorkflowError as e:
                logger.error(f"Failed to cancel child instance {child_id}: {e}", exc_info=True)

        await self._notify_parent(state)
        return ExecutionResult.from_state(state)

    async def terminate(self, instance_id: UUID, reason: Optional[str] = None) -> ExecutionResult:
        """
        Force a non-terminal instance to Faulted with error TERMINATED.

        Terminating an instance that already ended is a no-op.

        Raises:
            WorkflowNotFoundError: If the instance does not exist
        """
        async with self._locked(instance_id):
            state = await self._load(instance_id)
            if state.status in WorkflowStateMachine.TERMINAL_STATES:
                logger.info(
                    f"Terminate ignored for instance {instance_id} in status {state.status.value}"
                )
                return ExecutionResult.from_state(state)

            await self._clear_waits(state)
            state.error = WorkflowErrorInfo(
                code="TERMINATED",
                message=reason or "Workflow terminated",
                activity_id=state.current_activity_id,
            )
            transition_instance(state, WorkflowStatus.FAULTED, reason or "Terminated")
            await self._save_state(state)

            logger.info(f"Terminated instance {instance_id}: {reason or 'no reason given'}")

        await self._notify_parent(state)
        return ExecutionResult.from_state(state)

    async def retry(self, instance_id: UUID) -> ExecutionResult:
        """
        Re-run a Faulted instance from the activity that faulted.

        Raises:
            WorkflowNotFoundError: If the instance does not exist
            WorkflowInvalidStateError: If the instance is not Faulted
        """
        async with self._locked(instance_id):
            state = await self._load(instance_id)
            if state.status != WorkflowStatus.FAULTED:
                raise WorkflowInvalidStateError(instance_id, state.status, "retry")

            definition = await self._definition_for(state)
            activity_id = (
                (state.error.activity_id if state.error else None)
                or state.current_activity_id
                or definition.start_activity_id
            )

            state.fault_count += 1
            if state.fault_count > self.settings.retry.max_retries:
                logger.warning(
                    f"Instance {instance_id} retried {state.fault_count} times "
                    f"(configured maximum {self.settings.retry.max_retries})"
                )

            state.error = None
            state.activity_attempts.pop(activity_id, None)
            transition_instance(state, WorkflowStatus.RUNNING, f"Retry #{state.fault_count}")

            logger.info(f"Retrying instance {instance_id} at activity {activity_id}")

            run = self._new_run(state, definition)
            await self._run_paths(run, [activity_id])
            await self._finish(run)

        await self._after_run(run)
        return ExecutionResult.from_state(run.state)

    # ==================== Signals & Events ====================

    async def signal(
        self,
        instance_id: UUID,
        signal_name: str,
        data: Any = None,
    ) -> ExecutionResult:
        """
        Deliver a signal to one instance waiting on ``signal_{signal_name}``.

        An instance whose lock is held further up the current call chain (a
        parent whose child threw the signal) gets it once that lock is released.

        Raises:
            WorkflowNotFoundError: If the instance does not exist
            WorkflowBookmarkNotFoundError: If it is not waiting for the signal
        """
        if instance_id in _active_instances.get():
            return self._defer_signal(instance_id, signal_name, data)

        payload: dict[str, Any] = dict(data) if isinstance(data, dict) else {}
        payload.update({"signalName": signal_name, "signalData": data})
        return await self.resume(instance_id, signal_bookmark(signal_name), payload)

    def _defer_signal(self, instance_id: UUID, signal_name: str, data: Any) -> ExecutionResult:
        run = self._runs.get(instance_id)
        if run is None:
            raise WorkflowLockError(instance_id, self.holder_id)

        run.deferred_signals.append((signal_name, data))
        logger.info(
            f"Signal '{signal_name}' for instance {instance_id} deferred until its current run ends"
        )
        return ExecutionResult.from_state(run.state)

    async def broadcast_signal(
        self,
        signal_name: str,
        data: Any = None,
        workflow_id: Optional[str] = None,
    ) -> list[UUID]:
        """
        Deliver a signal to every instance waiting on it.

        Per-instance failures are logged and skipped.

        Returns:
            Ids of the instances that were resumed
        """
        waiting = await self.instances.get_by_bookmark(signal_bookmark(signal_name), workflow_id)
        resumed: list[UUID] = []

        for state in waiting:
            try:
                await self.signal(state.id, signal_name, data)
                resumed.append(state.id)
            except WorkflowError as e:
                logger.error(
                    f"Failed to deliver signal '{signal_name}' to instance {state.id}: {e}",
                    exc_info=True,
                )

        logger.info(f"Signal '{signal_name}' resumed {len(resumed)} of {len(waiting)} waiting instances")
        return resumed

    async def trigger_event(self, event_name: str, data: Any = None) -> list[UUID]:
        """
        Start one instance of every definition with a matching Event trigger.

        Per-definition failures are logged and skipped.

        Returns:
            Ids of the started instances
        """
        definitions = await self.definitions.get_by_trigger(TriggerType.EVENT, event_name)
        started: list[UUID] = []

        for definition in definitions:
            try:
                state = await self.create_instance(
                    definition.id,
                    {"eventName": event_name, "eventData": data},
                    InstanceOptions(version=definition.version, started_by=f"event:{event_name}"),
                )
                await self.start(state.id)
                started.append(state.id)
            except WorkflowError as e:
                logger.error(
                    f"Event '{event_name}' failed to start workflow {definition.id}: {e}",
                    exc_info=True,
                )

        return started

    # ==================== Queries ====================

    async def get_instance(self, instance_id: UUID) -> WorkflowInstanceState:
        """
        Get instance state.

        Raises:
            WorkflowNotFoundError: If the instance does not exist
        """
        return await self._load(instance_id)

    async def query_instances(self, query: Optional[InstanceQuery] = None) -> InstanceQueryResult:
        return await self.instances.query(query or InstanceQuery())

    async def get_history(self, instance_id: UUID) -> list[WorkflowExecutionRecord]:
        """
        Get the execution history of an instance.

        Raises:
            WorkflowNotFoundError: If the instance does not exist
        """
        await self._load(instance_id)
        return await self.instances.get_history(instance_id)

    # ==================== Execution Loop ====================

    def _new_run(self, state: WorkflowInstanceState, definition: WorkflowDefinition) -> _Run:
        run = _Run(state=state, definition=definition, joins=JoinCoordinator(state))
        self._runs[state.id] = run
        return run

    async def _run_paths(self, run: _Run, activity_ids: list[str], joins: tuple[str, ...] = ()) -> None:
        """Run one or more paths concurrently until each stops."""
        if len(activity_ids) == 1:
            await self._run_path(run, activity_ids[0], joins)
            return
        await asyncio.gather(*(self._run_path(run, activity_id, joins) for activity_id in activity_ids))

    async def _run_path(self, run: _Run, activity_id: str, joins: tuple[str, ...] = ()) -> None:
        """
        Execute activities along one path.

        A path stops when it suspends, faults, forks, waits at a join or
        runs out of transitions. ``joins`` lists the joins this path owes an
        arrival to, innermost last.
        """
        current: Optional[str] = activity_id
        limit = self.settings.engine.max_activities_per_execution

        while current is not None and run.is_running:
            activity = run.definition.get_activity(current)
            if activity is None:
                self._fault(
                    run,
                    current,
                    "ACTIVITY_NOT_FOUND",
                    f"Activity '{current}' not found in workflow '{run.definition.id}'",
                )
                return

            if is_join(activity):
                if not run.joins.arrive(activity.id):
                    return
                if joins and joins[-1] == activity.id:
                    joins = joins[:-1]

            run.activity_count += 1
            if run.activity_count > limit:
                self._fault(
                    run,
                    activity.id,
                    "MAX_ACTIVITIES_EXCEEDED",
                    f"Exceeded {limit} activities in one execution; possible infinite loop",
                )
                return

            run.state.current_activity_id = activity.id
            result = await self._execute_once(run, activity)
            current = await self._complete_step(
                run,
                activity,
                result,
                rerun=lambda a=activity: self._execute_once(run, a),
                joins=joins,
            )

    async def _complete_step(
        self,
        run: _Run,
        activity: BaseActivity,
        result: ActivityResult,
        rerun: Callable[[], Awaitable[ActivityResult]],
        joins: tuple[str, ...] = (),
    ) -> Optional[str]:
        """
        Apply an activity result to the instance.

        Returns:
            The next activity on this path, or None when the path stops
        """
        state = run.state

        while not result.success:
            handled, next_id, result = await self._handle_failure(run, activity, result, rerun)
            if not handled:
                return None
            if next_id is not None:
                return next_id

        state.activity_attempts.pop(activity.id, None)

        if result.suspend:
            bookmark_name = result.bookmark_name or f"{activity.type}_{activity.id}"
            state.add_bookmark(bookmark_name, activity.id, payload=result.output, join_path=list(joins))
            logger.debug(f"Instance {state.id} waiting at bookmark {bookmark_name}")
            return None

        state.mark_completed(activity.id)
        if activity.can_compensate:
            state.compensation_stack.append(activity.id)
        if isinstance(activity, SignalThrowActivity):
            run.signals.append((result.output.get("signalName"), result.output.get("payload")))

        if result.next_activity_id:
            return result.next_activity_id

        if result.parallel_next_activity_ids:
            await self._fork(run, activity, result.parallel_next_activity_ids, joins)
            return None

        return self._next_from_transitions(run, activity)

    async def _fork(
        self,
        run: _Run,
        activity: BaseActivity,
        targets: list[str],
        joins: tuple[str, ...] = (),
    ) -> None:
        join_id = find_join(run.definition, targets)
        branch_joins = joins
        if join_id is not None:
            counted = bool(joins) and joins[-1] == join_id
            run.joins.register_fork(join_id, len(targets), forking_path_counted=counted)
            if not counted:
                branch_joins = joins + (join_id,)

        logger.debug(
            f"Instance {run.state.id}: {activity.id} forked {len(targets)} branches"
            + (f" joining at {join_id}" if join_id else "")
        )
        await self._run_paths(run, targets, branch_joins)

    def _next_from_transitions(self, run: _Run, activity: BaseActivity) -> Optional[str]:
        """
        Choose the next activity from outgoing transitions.

        The first non-default transition whose condition holds (or that has
        no condition) wins, in priority order; then the default transition.
        An activity without outgoing transitions ends its path.
        """
        outgoing = run.definition.outgoing_transitions(activity.id)
        if not outgoing:
            return None

        ctx = self._context(run)
        for transition in outgoing:
            if transition.is_default:
                continue
            if not transition.condition or ctx.evaluate(transition.condition):
                return transition.target

        for transition in outgoing:
            if transition.is_default:
                return transition.target

        self._fault(
            run,
            activity.id,
            "NO_TRANSITION",
            f"No outgoing transition of '{activity.id}' matched and none is marked default",
        )
        return None

    # ==================== Activity Invocation ====================

    def _context(self, run: _Run, input_data: Optional[dict[str, Any]] = None) -> ActivityContext:
        return ActivityContext(
            instance=run.state,
            definition=run.definition,
            input=input_data or {},
            task_handlers=self.task_handlers,
            services=self.services,
            script_evaluators=self.script_evaluators,
            timers=self.timers,
            sub_processes=self._launcher,
        )

    async def _execute_once(self, run: _Run, activity: BaseActivity) -> ActivityResult:
        return await self._invoke(
            run,
            activity,
            lambda ctx: execute_activity(activity, ctx),
            None,
        )

    async def _resume_once(
        self,
        run: _Run,
        activity: BaseActivity,
        input_data: dict[str, Any],
    ) -> ActivityResult:
        return await self._invoke(
            run,
            activity,
            lambda ctx: resume_activity(activity, ctx, input_data),
            input_data,
        )

    async def _invoke(
        self,
        run: _Run,
        activity: BaseActivity,
        call: Callable[[ActivityContext], Awaitable[ActivityResult]],
        input_data: Optional[dict[str, Any]],
    ) -> ActivityResult:
        """Run an activity call, convert escaping exceptions and record history."""
        ctx = self._context(run, input_data)
        started = time.perf_counter()

        try:
            result = await call(ctx)
        except Exception as e:
            logger.error(
                f"Activity '{activity.id}' raised in instance {run.state.id}: {e}",
                exc_info=True,
            )
            result = ActivityResult.fail("EXECUTION_ERROR", str(e))

        duration_ms = int((time.perf_counter() - started) * 1000)

        if not result.success:
            outcome = ExecutionOutcome.FAULTED
        elif result.suspend:
            outcome = ExecutionOutcome.SUSPENDED
        elif input_data is not None:
            outcome = ExecutionOutcome.RESUMED
        else:
            outcome = ExecutionOutcome.COMPLETED

        await self._record(run, activity, outcome, duration_ms, result)
        return result

    async def _record(
        self,
        run: _Run,
        activity: BaseActivity,
        outcome: ExecutionOutcome,
        duration_ms: int,
        result: ActivityResult,
    ) -> None:
        error = None
        if result.error is not None:
            error = WorkflowErrorInfo(
                code=result.error.code,
                message=result.error.message,
                activity_id=activity.id,
            )

        await self.instances.add_history(
            WorkflowExecutionRecord(
                instance_id=run.state.id,
                activity_id=activity.id,
                activity_type=activity.type,
                activity_name=activity.name,
                outcome=outcome,
                duration_ms=duration_ms,
                output=result.output,
                error=error,
            )
        )

    # ==================== Error Handling ====================

    def _find_error_handler(self, definition: WorkflowDefinition, error_code: str) -> Optional[ErrorHandler]:
        for handler in definition.error_handlers:
            if handler.matches(error_code):
                return handler
        return None

    async def _handle_failure(
        self,
        run: _Run,
        activity: BaseActivity,
        result: ActivityResult,
        rerun: Callable[[], Awaitable[ActivityResult]],
    ) -> tuple[bool, Optional[str], ActivityResult]:
        """
        Route a failed result through the definition's error handlers.

        Returns:
            (handled, next_activity_id, result). A retried result is returned
            with handled=True and no next activity so the caller re-inspects it.
        """
        state = run.state
        error = result.error
        handler = self._find_error_handler(run.definition, error.code)

        if handler is None:
            self._fault(run, activity.id, error.code, error.message)
            return False, None, result

        if handler.retry is not None and not handler.terminate:
            attempt = state.activity_attempts.get(activity.id, 0) + 1
            if attempt <= handler.retry.max_retries:
                state.activity_attempts[activity.id] = attempt
                delay = handler.retry.delay_for(attempt)
                logger.warning(
                    f"Activity '{activity.id}' failed with {error.code}, "
                    f"retry {attempt}/{handler.retry.max_retries} in {delay:.2f}s"
                )
                await asyncio.sleep(delay)
                return True, None, await rerun()

        if handler.compensate:
            await self._compensate(run)

        if handler.terminate or not handler.handler_activity_id:
            self._fault(run, activity.id, error.code, error.message)
            return False, None, result

        state.activity_attempts.pop(activity.id, None)
        state.variables["_lastError"] = {
            "code": error.code,
            "message": error.message,
            "activityId": activity.id,
        }
        logger.info(
            f"Instance {state.id}: {error.code} in '{activity.id}' handled by "
            f"'{handler.handler_activity_id}'"
        )
        return True, handler.handler_activity_id, result

    async def _compensate(self, run: _Run) -> None:
        """Undo completed compensable activities, most recent first."""
        state = run.state

        while state.compensation_stack:
            activity_id = state.compensation_stack.pop()
            activity = run.definition.get_activity(activity_id)
            if activity is None:
                continue

            started = time.perf_counter()
            try:
                result = await compensate_activity(activity, self._context(run))
            except Exception as e:
                logger.error(f"Compensation of '{activity_id}' raised: {e}", exc_info=True)
                result = ActivityResult.fail("COMPENSATION_ERROR", str(e))

            if not result.success:
                logger.error(
                    f"Compensation of '{activity_id}' in instance {state.id} failed: "
                    f"{result.error.message}"
                )

            outcome = ExecutionOutcome.COMPENSATED if result.success else ExecutionOutcome.FAULTED
            await self._record(run, activity, outcome, int((time.perf_counter() - started) * 1000), result)

    def _fault(self, run: _Run, activity_id: Optional[str], code: str, message: str) -> None:
        state = run.state
        state.error = WorkflowErrorInfo(code=code, message=message, activity_id=activity_id)
        if activity_id:
            state.current_activity_id = activity_id
        if state.status == WorkflowStatus.RUNNING:
            transition_instance(state, WorkflowStatus.FAULTED, f"{code}: {message}")

        logger.warning(f"Instance {state.id} faulted at '{activity_id}': {code} - {message}")

    # ==================== Completion ====================

    async def _finish(self, run: _Run) -> None:
        """Settle the instance status once every path has stopped, then save."""
        state = run.state

        if state.status == WorkflowStatus.RUNNING:
            if state.bookmarks:
                transition_instance(state, WorkflowStatus.SUSPENDED, "Waiting on bookmarks")
                logger.info(
                    f"Instance {state.id} suspended at {[b.name for b in state.bookmarks]}"
                )
            elif run.joins.pending():
                pending = run.joins.pending()
                # Cleared so a retry at the join passes straight through
                state.join_counters.clear()
                self._fault(
                    run,
                    pending[0],
                    "JOIN_INCOMPLETE",
                    f"Every path ended but joins {pending} never received all forked branches",
                )
            else:
                transition_instance(state, WorkflowStatus.COMPLETED, "All paths completed")
                logger.info(f"Instance {state.id} completed")

        await self._save_state(state)

    async def _after_run(self, run: _Run) -> None:
        """Work that must happen after the instance lock is released."""
        for signal_name, payload in run.signals:
            await self.broadcast_signal(signal_name, payload)

        for signal_name, data in run.deferred_signals:
            try:
                await self.signal(run.state.id, signal_name, data)
            except WorkflowError as e:
                logger.error(
                    f"Failed to deliver deferred signal '{signal_name}' to instance {run.state.id}: {e}",
                    exc_info=True,
                )

        await self._notify_parent(run.state)

    async def _notify_parent(self, state: WorkflowInstanceState) -> None:
        """Resume a parent waiting on this child once the child has ended."""
        if state.parent_instance_id is None or state.parent_activity_id is None:
            return
        if state.status not in WorkflowStateMachine.TERMINAL_STATES:
            return
        # The parent is mid-execution further up this call chain and reads the
        # child's status directly.
        if state.parent_instance_id in _active_instances.get():
            return

        parent = await self.instances.get(state.parent_instance_id)
        bookmark_name = f"subProcess_{state.parent_activity_id}"
        if (
            parent is None
            or parent.status != WorkflowStatus.SUSPENDED
            or parent.get_bookmark(bookmark_name) is None
            or parent.variables.get(f"_subprocess_{state.parent_activity_id}_instanceId") != str(state.id)
        ):
            return

        payload = {
            "instanceId": str(state.id),
            "status": state.status.value,
            "output": dict(state.output),
            "error": state.error.model_dump(mode="json") if state.error else None,
        }
        try:
            await self.resume(parent.id, bookmark_name, payload)
        except WorkflowError as e:
            logger.error(
                f"Failed to resume parent {parent.id} after child {state.id} ended: {e}",
                exc_info=True,
            )

    def _waiting_children(self, state: WorkflowInstanceState, definition: WorkflowDefinition) -> list[UUID]:
        children = []
        for bookmark in state.bookmarks:
            activity = definition.get_activity(bookmark.activity_id)
            if isinstance(activity, SubProcessActivity):
                child_id = state.variables.get(activity.instance_variable)
                if child_id:
                    children.append(UUID(str(child_id)))
        return children

    async def _clear_waits(self, state: WorkflowInstanceState) -> None:
        """Drop bookmarks and pending timers so nothing resumes the instance."""
        state.bookmarks.clear()
        state.join_counters.clear()
        await self.timers.cancel(state.id)

    # ==================== Persistence & Locking ====================

    async def _load(self, instance_id: UUID) -> WorkflowInstanceState:
        state = await self.instances.get(instance_id)
        if state is None:
            raise WorkflowNotFoundError.for_instance(instance_id)
        return state

    async def _definition_for(self, state: WorkflowInstanceState) -> WorkflowDefinition:
        return await self.get_definition(state.workflow_id, state.version)

    async def _save_state(self, state: WorkflowInstanceState) -> None:
        """
        Persist instance state, retrying with exponential backoff.

        Raises:
            WorkflowExecutionError: If every attempt fails
        """
        state.last_updated_at = utc_now()
        attempts = self.settings.engine.max_persistence_retries
        delay = self.settings.engine.persistence_retry_delay

        for attempt in range(1, attempts + 1):
            try:
                await self.instances.save(state)
                return
            except Exception as e:
                if attempt == attempts:
                    raise WorkflowExecutionError(
                        f"Failed to save instance {state.id} after {attempts} attempts: {e}",
                        instance_id=state.id,
                    ) from e
                logger.warning(
                    f"Saving instance {state.id} failed (attempt {attempt}/{attempts}): {e}"
                )
                await asyncio.sleep(delay * (2 ** (attempt - 1)))

    @asynccontextmanager
    async def _locked(self, instance_id: UUID) -> AsyncGenerator[None, None]:
        """
        Hold the in-process and advisory locks of an instance.

        Raises:
            WorkflowNotFoundError: If the instance does not exist
            WorkflowLockError: If another holder owns the advisory lock
        """
        await self._load(instance_id)

        local = self._local_locks.setdefault(instance_id, asyncio.Lock())
        self._local_lock_refs[instance_id] = self._local_lock_refs.get(instance_id, 0) + 1
        token = _active_instances.set(_active_instances.get() | {instance_id})

        try:
            async with local:
                use_lock = self.settings.engine.enable_locking
                if use_lock:
                    acquired = await self.lock_provider.try_acquire_lock(
                        instance_id,
                        self.holder_id,
                        timedelta(seconds=self.settings.engine.lock_duration),
                    )
                    if not acquired:
                        logger.warning(f"Lock for instance {instance_id} is held by another engine")
                        raise WorkflowLockError(instance_id, self.holder_id)
                try:
                    yield
                finally:
                    self._runs.pop(instance_id, None)
                    if use_lock:
                        await self.lock_provider.release_lock(instance_id, self.holder_id)
        finally:
            _active_instances.reset(token)
            self._local_lock_refs[instance_id] -= 1
            if self._local_lock_refs[instance_id] == 0:
                del self._local_lock_refs[instance_id]
                self._local_locks.pop(instance_id, None)
