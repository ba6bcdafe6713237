"""
Unit tests for activity execution behaviour.
"""

from datetime import datetime, timedelta

import pytest

from workflow_runtime.core.activities import (
    ActivityResult,
    EndActivity,
    ExclusiveGatewayActivity,
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
from workflow_runtime.core.execution import (
    ActivityContext,
    ScriptEvaluator,
    ServiceRegistry,
    TaskHandlerRegistry,
    compensate_activity,
    compute_fire_time,
    execute_activity,
    resume_activity,
)
from workflow_runtime.core.models import WorkflowInstanceState
from workflow_runtime.storage import InMemoryTimerStore


@pytest.fixture
def state() -> WorkflowInstanceState:
    return WorkflowInstanceState(
        workflow_id="parallel",
        version=1,
        input={"orderId": "o-1"},
        variables={"amount": 150, "manager": "alice"},
    )


@pytest.fixture
def ctx(state, parallel_workflow, payment_service) -> ActivityContext:
    return ActivityContext(
        instance=state,
        definition=parallel_workflow,
        services=ServiceRegistry({"payments": payment_service}),
        timers=InMemoryTimerStore(),
        now=datetime(2024, 1, 1, 12, 0, 0),
    )


class TestTaskActivity:
    """Tests for Task activities and the handler registry."""

    @pytest.mark.asyncio
    async def test_handler_output_mapped(self, ctx):
        """Test handler output is mapped into variables."""
        ctx.task_handlers = TaskHandlerRegistry({"double": lambda inputs, c: {"result": inputs["value"] * 2}})
        activity = TaskActivity(
            id="t",
            task_handler="double",
            input_mappings={"value": "var.amount"},
            output_mappings={"result": "doubled"},
        )

        result = await execute_activity(activity, ctx)

        assert result.success
        assert result.output == {"result": 300}
        assert ctx.variables["doubled"] == 300

    @pytest.mark.asyncio
    async def test_static_parameters_merged(self, ctx):
        """Test static parameters are passed alongside mapped inputs."""
        seen = {}

        async def handler(inputs, c):
            seen.update(inputs)

        ctx.task_handlers = TaskHandlerRegistry({"h": handler})
        activity = TaskActivity(id="t", task_handler="h", parameters={"mode": "fast"}, input_mappings={"id": "input.orderId"})

        result = await execute_activity(activity, ctx)

        assert result.success
        assert seen == {"mode": "fast", "id": "o-1"}

    @pytest.mark.asyncio
    async def test_scalar_result_wrapped(self, ctx):
        """Test a non-dict return value becomes output.result."""
        ctx.task_handlers = TaskHandlerRegistry({"h": lambda inputs, c: 5})

        result = await execute_activity(TaskActivity(id="t", task_handler="h"), ctx)

        assert result.output == {"result": 5}

    @pytest.mark.asyncio
    async def test_missing_handler_name(self, ctx):
        """Test a task without a handler name fails."""
        result = await execute_activity(TaskActivity(id="t"), ctx)
        assert result.error.code == "MISSING_HANDLER"

    @pytest.mark.asyncio
    async def test_unregistered_handler(self, ctx):
        """Test an unknown handler name fails."""
        result = await execute_activity(TaskActivity(id="t", task_handler="nope"), ctx)
        assert result.error.code == "HANDLER_NOT_REGISTERED"

    @pytest.mark.asyncio
    async def test_handler_exception_becomes_failure(self, ctx):
        """Test exceptions from handlers are captured as TASK_ERROR."""

        def boom(inputs, c):
            raise ValueError("bad input")

        ctx.task_handlers = TaskHandlerRegistry({"boom": boom})

        result = await execute_activity(TaskActivity(id="t", task_handler="boom"), ctx)

        assert not result.success
        assert result.error.code == "TASK_ERROR"
        assert result.error.message == "bad input"

    @pytest.mark.asyncio
    async def test_handler_may_return_activity_result(self, ctx):
        """Test handlers can steer routing with an ActivityResult."""
        ctx.task_handlers = TaskHandlerRegistry({"h": lambda inputs, c: ActivityResult.goto("end")})

        result = await execute_activity(TaskActivity(id="t", task_handler="h"), ctx)

        assert result.next_activity_id == "end"


class TestServiceTaskActivity:
    """Tests for ServiceTask activities."""

    @pytest.mark.asyncio
    async def test_method_called_with_resolved_arguments(self, ctx, payment_service):
        """Test method parameters are resolved as expressions."""
        activity = ServiceTaskActivity(
            id="charge",
            service_type="payments",
            method_name="charge",
            method_parameters=["var.amount"],
            output_mappings={"result": "receipt"},
        )

        result = await execute_activity(activity, ctx)

        assert result.success
        assert payment_service.charged == [150]
        assert ctx.variables["receipt"] == {"charged": 150}

    @pytest.mark.asyncio
    async def test_unknown_service(self, ctx):
        """Test an unregistered service type fails."""
        activity = ServiceTaskActivity(id="s", service_type="shipping", method_name="ship")
        result = await execute_activity(activity, ctx)
        assert result.error.code == "SERVICE_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_private_method_not_reachable(self, ctx):
        """Test underscore methods cannot be invoked."""
        activity = ServiceTaskActivity(id="s", service_type="payments", method_name="__init__")
        result = await execute_activity(activity, ctx)
        assert result.error.code == "METHOD_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_compensation_calls_compensation_method(self, ctx, payment_service):
        """Test compensation invokes the configured method."""
        activity = ServiceTaskActivity(
            id="charge",
            service_type="payments",
            method_name="charge",
            method_parameters=["var.amount"],
            compensation_method="refund",
        )

        result = await compensate_activity(activity, ctx)

        assert result.success
        assert payment_service.refunded == [150]


class TestSuspendingActivities:
    """Tests for activities that suspend on a bookmark."""

    @pytest.mark.asyncio
    async def test_user_task_suspends_with_assignment(self, ctx):
        """Test user tasks suspend and describe the assignment."""
        activity = UserTaskActivity(
            id="review",
            assignee="var.manager",
            candidate_groups=["managers"],
            due_in=timedelta(days=1),
        )

        result = await execute_activity(activity, ctx)

        assert result.suspend
        assert result.bookmark_name == "userTask_review"
        assert result.output["assignee"] == "alice"
        assert result.output["dueDate"] == "2024-01-02T12:00:00"

    @pytest.mark.asyncio
    async def test_user_task_resume_maps_input(self, ctx):
        """Test resume data is mapped into variables."""
        activity = UserTaskActivity(id="review", output_mappings={"approved": "approved"})

        result = await resume_activity(activity, ctx, {"approved": True})

        assert result.success
        assert ctx.variables["approved"] is True

    @pytest.mark.asyncio
    async def test_timer_schedules_and_suspends(self, ctx):
        """Test a timer stores a WorkflowTimer and suspends."""
        activity = TimerActivity(id="wait", duration=timedelta(minutes=5))

        result = await execute_activity(activity, ctx)

        assert result.suspend
        assert result.bookmark_name == "timer_wait"
        timers = await ctx.timers.get_for_instance(ctx.instance.id)
        assert len(timers) == 1
        assert timers[0].fire_at == datetime(2024, 1, 1, 12, 5, 0)

    @pytest.mark.asyncio
    async def test_timer_without_schedule_fails(self, ctx):
        """Test a timer with nothing to fire on fails."""
        result = await execute_activity(TimerActivity(id="wait"), ctx)
        assert result.error.code == "INVALID_TIMER"

    @pytest.mark.asyncio
    async def test_signal_receive_bookmark(self, ctx):
        """Test signal receive suspends on signal_{name}."""
        result = await execute_activity(SignalReceiveActivity(id="w", signal_name="paid"), ctx)

        assert result.suspend
        assert result.bookmark_name == "signal_paid"

    @pytest.mark.asyncio
    async def test_signal_receive_requires_name(self, ctx):
        """Test signal receive without a name fails."""
        result = await execute_activity(SignalReceiveActivity(id="w"), ctx)
        assert result.error.code == "MISSING_SIGNAL_NAME"


class TestComputeFireTime:
    """Tests for timer schedule precedence."""

    NOW = datetime(2024, 1, 1, 12, 0, 0)

    def test_duration_wins(self):
        """Test duration takes precedence over date and cron."""
        activity = TimerActivity(id="t", duration=60, date_time=datetime(2030, 1, 1), cron="0 0 * * *")
        assert compute_fire_time(activity, self.NOW) == datetime(2024, 1, 1, 12, 1, 0)

    def test_absolute_time(self):
        """Test an absolute fire time is used as-is."""
        activity = TimerActivity(id="t", date_time=datetime(2030, 1, 1))
        assert compute_fire_time(activity, self.NOW) == datetime(2030, 1, 1)

    def test_cron_next_occurrence(self):
        """Test cron schedules fire at the next occurrence."""
        activity = TimerActivity(id="t", cron="30 * * * *")
        assert compute_fire_time(activity, self.NOW) == datetime(2024, 1, 1, 12, 30, 0)

    def test_invalid_cron(self):
        """Test invalid cron expressions are rejected."""
        with pytest.raises(ValueError, match="Invalid cron"):
            compute_fire_time(TimerActivity(id="t", cron="not a cron"), self.NOW)


class TestScriptActivity:
    """Tests for expression scripts."""

    @pytest.mark.asyncio
    async def test_assignments_in_order(self, ctx):
        """Test statements run in order and see earlier assignments."""
        activity = ScriptActivity(
            id="s",
            script="# compute\ntotal = var.amount; big = total > 100\norder.id = input.orderId",
        )

        result = await execute_activity(activity, ctx)

        assert result.success
        assert ctx.variables["total"] == 150
        assert ctx.variables["big"] is True
        assert ctx.variables["order"] == {"id": "o-1"}

    @pytest.mark.asyncio
    async def test_invalid_statement(self, ctx):
        """Test a statement that is not an assignment fails."""
        result = await execute_activity(ScriptActivity(id="s", script="print(1)"), ctx)
        assert result.error.code == "SCRIPT_ERROR"

    @pytest.mark.asyncio
    async def test_unsupported_language(self, ctx):
        """Test unknown languages without an evaluator fail."""
        result = await execute_activity(ScriptActivity(id="s", language="lua", script="x = 1"), ctx)
        assert result.error.code == "UNSUPPORTED_LANGUAGE"

    @pytest.mark.asyncio
    async def test_registered_evaluator(self, ctx):
        """Test a registered evaluator runs other languages."""

        class Upper(ScriptEvaluator):
            async def run(self, script, context):
                return {"shout": script.upper()}

        ctx.script_evaluators = {"upper": Upper()}

        result = await execute_activity(ScriptActivity(id="s", language="upper", script="hi"), ctx)

        assert result.success
        assert ctx.variables["shout"] == "HI"


class TestGateways:
    """Tests for gateway routing."""

    @pytest.mark.asyncio
    async def test_exclusive_first_match(self, ctx):
        """Test the first matching condition wins."""
        activity = ExclusiveGatewayActivity(
            id="gw",
            conditions={"big": "var.amount > 100", "huge": "var.amount > 0"},
            default_path="small",
        )

        result = await execute_activity(activity, ctx)

        assert result.next_activity_id == "big"

    @pytest.mark.asyncio
    async def test_exclusive_default_path(self, ctx):
        """Test the default path when nothing matches."""
        activity = ExclusiveGatewayActivity(id="gw", conditions={"big": "var.amount > 1000"}, default_path="small")
        result = await execute_activity(activity, ctx)
        assert result.next_activity_id == "small"

    @pytest.mark.asyncio
    async def test_exclusive_no_path(self, ctx):
        """Test failure when nothing matches and there is no default."""
        result = await execute_activity(ExclusiveGatewayActivity(id="gw"), ctx)
        assert result.error.code == "NO_PATH"

    @pytest.mark.asyncio
    async def test_parallel_split_uses_transitions(self, ctx):
        """Test a split without explicit paths forks along its transitions."""
        result = await execute_activity(ParallelGatewayActivity(id="fork"), ctx)
        assert result.parallel_next_activity_ids == ["branch_a", "branch_b"]

    @pytest.mark.asyncio
    async def test_parallel_join_passes_through(self, ctx):
        """Test a join simply succeeds."""
        result = await execute_activity(ParallelGatewayActivity(id="join", direction="join"), ctx)
        assert result.success
        assert not result.parallel_next_activity_ids

    @pytest.mark.asyncio
    async def test_inclusive_multiple_matches_fork(self, ctx):
        """Test every matching inclusive path is taken."""
        activity = InclusiveGatewayActivity(
            id="gw",
            conditions={"a": "var.amount > 100", "b": "var.amount > 10", "c": "var.amount > 1000"},
        )

        result = await execute_activity(activity, ctx)

        assert result.parallel_next_activity_ids == ["a", "b"]

    @pytest.mark.asyncio
    async def test_inclusive_single_match_goes_directly(self, ctx):
        """Test a single inclusive match behaves like a goto."""
        activity = InclusiveGatewayActivity(id="gw", conditions={"a": "var.amount > 100", "b": "var.amount > 500"})
        result = await execute_activity(activity, ctx)
        assert result.next_activity_id == "a"

    @pytest.mark.asyncio
    async def test_inclusive_default_path(self, ctx):
        """Test the default is taken as a single path when nothing matches."""
        activity = InclusiveGatewayActivity(
            id="gw",
            conditions={"a": "var.amount > 1000", "b": "var.amount > 5000"},
            default_path="fallback",
        )

        result = await execute_activity(activity, ctx)

        assert result.next_activity_id == "fallback"
        assert not result.parallel_next_activity_ids

    @pytest.mark.asyncio
    async def test_inclusive_no_path(self, ctx):
        """Test failure when nothing matches and there is no default."""
        activity = InclusiveGatewayActivity(id="gw", conditions={"a": "var.amount > 1000"})
        result = await execute_activity(activity, ctx)
        assert result.error.code == "NO_PATH"

    @pytest.mark.asyncio
    async def test_inclusive_join_passes_through(self, ctx):
        """Test an inclusive join simply succeeds."""
        result = await execute_activity(InclusiveGatewayActivity(id="merge", direction="join"), ctx)
        assert result.success
        assert result.next_activity_id is None


class TestOtherActivities:
    """Tests for end, signal throw and sub-process edge cases."""

    @pytest.mark.asyncio
    async def test_end_sets_instance_output(self, ctx):
        """Test final output mappings populate the instance output."""
        activity = EndActivity(id="end", final_output_mappings={"total": "var.amount", "order": "input.orderId"})

        await execute_activity(activity, ctx)

        assert ctx.instance.output == {"total": 150, "order": "o-1"}

    @pytest.mark.asyncio
    async def test_signal_throw_payload(self, ctx):
        """Test signal throw evaluates its payload."""
        result = await execute_activity(SignalThrowActivity(id="t", signal_name="paid", payload="var.amount"), ctx)
        assert result.output == {"signalName": "paid", "payload": 150}

    @pytest.mark.asyncio
    async def test_sub_process_without_launcher(self, ctx):
        """Test a sub-process cannot run without a launcher."""
        result = await execute_activity(SubProcessActivity(id="call", sub_workflow_id="child"), ctx)
        assert result.error.code == "SUBPROCESS_FAILED"

    @pytest.mark.asyncio
    async def test_sub_process_resume_with_failed_child(self, ctx):
        """Test resuming with a faulted child fails the activity."""
        result = await resume_activity(
            SubProcessActivity(id="call", sub_workflow_id="child"),
            ctx,
            {"status": "FAULTED", "error": {"message": "child broke"}},
        )

        assert result.error.code == "SUBPROCESS_FAILED"
        assert result.error.message == "child broke"

    @pytest.mark.asyncio
    async def test_resume_without_resume_behaviour_succeeds(self, ctx):
        """Test variants without resume behaviour just succeed."""
        result = await resume_activity(EndActivity(id="end"), ctx, {"x": 1})
        assert result.success
