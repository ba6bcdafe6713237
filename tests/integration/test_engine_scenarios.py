"""
Integration tests for workflow engine scenarios over in-memory stores.
"""

import asyncio
from datetime import timedelta

import pytest

from workflow_runtime.config import EngineSettings, Environment, Settings
from workflow_runtime.core.exceptions import (
    WorkflowBookmarkNotFoundError,
    WorkflowInvalidStateError,
    WorkflowLockError,
    WorkflowNotFoundError,
    WorkflowValidationError,
)
from workflow_runtime.core.models import (
    ErrorHandler,
    ExecutionOutcome,
    InstanceOptions,
    InstanceQuery,
)
from workflow_runtime.core.state_machine import WorkflowStatus
from workflow_runtime.engine import WorkflowEngine


class TestLinearExecution:
    """Tests for straight-through workflows."""

    @pytest.mark.asyncio
    async def test_linear_workflow_completes(self, engine, deploy, linear_workflow):
        """Test start -> work -> end completes with output and history."""
        await deploy(linear_workflow)

        result = await engine.create_and_start("linear")

        assert result.status == WorkflowStatus.COMPLETED
        assert result.output == {"processed": True}
        assert result.bookmarks == []

        history = await engine.get_history(result.instance_id)
        assert [r.activity_id for r in history] == ["start", "work", "end"]
        assert all(r.outcome == ExecutionOutcome.COMPLETED for r in history)

        state = await engine.get_instance(result.instance_id)
        assert state.completed_activity_ids == ["start", "work", "end"]
        assert state.started_at is not None
        assert state.completed_at is not None

    @pytest.mark.asyncio
    async def test_create_instance_is_pending(self, engine, deploy, linear_workflow):
        """Test a created instance waits in PENDING with input copied to variables."""
        await deploy(linear_workflow)

        state = await engine.create_instance("linear", {"orderId": "o-1"}, InstanceOptions(correlation_id="c-1"))

        assert state.status == WorkflowStatus.PENDING
        assert state.variables["orderId"] == "o-1"
        assert state.correlation_id == "c-1"
        assert state.name.startswith("Linear - ")

    @pytest.mark.asyncio
    async def test_unknown_definition(self, engine):
        """Test creating an instance of an unknown definition."""
        with pytest.raises(WorkflowNotFoundError):
            await engine.create_instance("missing")

    @pytest.mark.asyncio
    async def test_missing_required_input(self, engine, deploy, approval_workflow):
        """Test required inputs are enforced at creation."""
        await deploy(approval_workflow)

        with pytest.raises(WorkflowValidationError) as exc_info:
            await engine.create_instance("approval", {})

        assert "amount" in exc_info.value.errors[0]

    @pytest.mark.asyncio
    async def test_start_twice_rejected(self, engine, deploy, linear_workflow):
        """Test only PENDING instances can be started."""
        await deploy(linear_workflow)
        result = await engine.create_and_start("linear")

        with pytest.raises(WorkflowInvalidStateError):
            await engine.start(result.instance_id)

    @pytest.mark.asyncio
    async def test_pinned_version(self, engine, deploy, linear_workflow):
        """Test running instances keep the version they were created with."""
        await deploy(linear_workflow)
        state = await engine.create_instance("linear")
        await deploy(linear_workflow.model_copy(update={"version": 2}))

        await engine.start(state.id)
        newer = await engine.create_instance("linear")

        assert (await engine.get_instance(state.id)).version == 1
        assert newer.version == 2

    @pytest.mark.asyncio
    async def test_task_and_variables_defaults(self, engine, deploy, make_definition):
        """Test declared variable defaults and task handler outputs."""
        await deploy(
            make_definition(
                "calc",
                [
                    {"id": "start", "type": "start"},
                    {
                        "id": "calc",
                        "type": "task",
                        "task_handler": "double",
                        "input_mappings": {"value": "var.base"},
                        "output_mappings": {"result": "doubled"},
                    },
                    {"id": "end", "type": "end", "final_output_mappings": {"doubled": "var.doubled"}},
                ],
                [("start", "calc"), ("calc", "end")],
                variables=[{"name": "base", "type": "number", "default_value": 21}],
            )
        )

        result = await engine.create_and_start("calc")

        assert result.output == {"doubled": 42}


class TestGatewayRouting:
    """Tests for gateway and transition routing."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount,route", [(150, "manual"), (50, "auto")])
    async def test_exclusive_gateway(self, engine, deploy, approval_workflow, amount, route):
        """Test the gateway condition selects the branch."""
        await deploy(approval_workflow)

        result = await engine.create_and_start("approval", {"amount": amount})

        assert result.status == WorkflowStatus.COMPLETED
        assert result.output == {"route": route}
        history = [r.activity_id for r in await engine.get_history(result.instance_id)]
        assert ("manual_review" in history) == (route == "manual")

    @pytest.mark.asyncio
    async def test_conditional_transitions(self, engine, deploy, make_definition):
        """Test conditional transitions with a default fallback."""
        await deploy(
            make_definition(
                "transitions",
                [
                    {"id": "start", "type": "start"},
                    {"id": "big", "type": "end", "final_output_mappings": {"size": "'big'"}},
                    {"id": "small", "type": "end", "final_output_mappings": {"size": "'small'"}},
                ],
                [
                    {"source": "start", "target": "big", "condition": "var.n > 10"},
                    {"source": "start", "target": "small", "is_default": True},
                ],
            )
        )

        big = await engine.create_and_start("transitions", {"n": 11})
        small = await engine.create_and_start("transitions", {"n": 3})

        assert big.output == {"size": "big"}
        assert small.output == {"size": "small"}

    @pytest.mark.asyncio
    async def test_no_matching_transition_faults(self, engine, deploy, make_definition):
        """Test an instance faults when no transition applies."""
        await deploy(
            make_definition(
                "dead-end",
                [{"id": "start", "type": "start"}, {"id": "end", "type": "end"}],
                [("start", "end", "var.n > 10")],
            )
        )

        result = await engine.create_and_start("dead-end", {"n": 1})

        assert result.status == WorkflowStatus.FAULTED
        assert result.error.code == "NO_TRANSITION"

    @pytest.mark.asyncio
    async def test_parallel_branches_join(self, engine, deploy, parallel_workflow):
        """Test both branches run and the join fires once."""
        await deploy(parallel_workflow)

        result = await engine.create_and_start("parallel")

        assert result.status == WorkflowStatus.COMPLETED
        state = await engine.get_instance(result.instance_id)
        assert state.variables["a_done"] is True
        assert state.variables["b_done"] is True
        assert state.join_counters == {}

        history = [r.activity_id for r in await engine.get_history(result.instance_id)]
        assert history.count("join") == 1
        assert history.count("end") == 1

    @pytest.mark.asyncio
    async def test_parallel_branch_suspension_holds_join(self, engine, deploy, make_definition):
        """Test a join waits for a suspended branch and fires after its resume."""
        await deploy(
            make_definition(
                "wait-join",
                [
                    {"id": "start", "type": "start"},
                    {"id": "fork", "type": "parallelGateway"},
                    {"id": "auto", "type": "script", "script": "auto = true"},
                    {"id": "approve", "type": "userTask"},
                    {"id": "join", "type": "parallelGateway", "direction": "join"},
                    {"id": "end", "type": "end"},
                ],
                [
                    ("start", "fork"),
                    ("fork", "auto"),
                    ("fork", "approve"),
                    ("auto", "join"),
                    ("approve", "join"),
                    ("join", "end"),
                ],
            )
        )

        started = await engine.create_and_start("wait-join")
        state = await engine.get_instance(started.instance_id)

        assert started.status == WorkflowStatus.SUSPENDED
        assert state.join_counters["join"].arrived == 1

        resumed = await engine.resume(started.instance_id, "userTask_approve")

        assert resumed.status == WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_nested_fork_into_same_join(self, engine, deploy, make_definition):
        """Test a branch that forks again is replaced by its branches at the shared join."""
        await deploy(
            make_definition(
                "nested-fork",
                [
                    {"id": "start", "type": "start"},
                    {"id": "outer", "type": "parallelGateway"},
                    {"id": "inner", "type": "parallelGateway"},
                    {"id": "c", "type": "script", "script": "c_done = true"},
                    {"id": "d", "type": "script", "script": "d_done = true"},
                    {"id": "e", "type": "script", "script": "e_done = true"},
                    {"id": "join", "type": "parallelGateway", "direction": "join"},
                    {"id": "end", "type": "end"},
                ],
                [
                    ("start", "outer"),
                    ("outer", "inner"),
                    ("outer", "c"),
                    ("inner", "d"),
                    ("inner", "e"),
                    ("c", "join"),
                    ("d", "join"),
                    ("e", "join"),
                    ("join", "end"),
                ],
            )
        )

        result = await engine.create_and_start("nested-fork")

        assert result.status == WorkflowStatus.COMPLETED
        state = await engine.get_instance(result.instance_id)
        assert {"c", "d", "e", "join", "end"} <= set(state.completed_activity_ids)
        assert state.join_counters == {}

        history = [r.activity_id for r in await engine.get_history(result.instance_id)]
        assert history.count("join") == 1
        assert history.count("end") == 1

    @pytest.mark.asyncio
    async def test_nested_fork_with_suspended_branch(self, engine, deploy, make_definition):
        """Test a suspended inner branch still completes the shared join after resume."""
        await deploy(
            make_definition(
                "nested-wait",
                [
                    {"id": "start", "type": "start"},
                    {"id": "outer", "type": "parallelGateway"},
                    {"id": "inner", "type": "parallelGateway"},
                    {"id": "c", "type": "script", "script": "c_done = true"},
                    {"id": "d", "type": "script", "script": "d_done = true"},
                    {"id": "approve", "type": "userTask"},
                    {"id": "join", "type": "parallelGateway", "direction": "join"},
                    {"id": "end", "type": "end"},
                ],
                [
                    ("start", "outer"),
                    ("outer", "inner"),
                    ("outer", "c"),
                    ("inner", "d"),
                    ("inner", "approve"),
                    ("c", "join"),
                    ("d", "join"),
                    ("approve", "join"),
                    ("join", "end"),
                ],
            )
        )

        started = await engine.create_and_start("nested-wait")
        state = await engine.get_instance(started.instance_id)

        assert started.status == WorkflowStatus.SUSPENDED
        assert state.join_counters["join"].expected == 3
        assert state.join_counters["join"].arrived == 2
        assert state.get_bookmark("userTask_approve").join_path == ["join"]

        resumed = await engine.resume(started.instance_id, "userTask_approve")

        assert resumed.status == WorkflowStatus.COMPLETED
        history = [r.activity_id for r in await engine.get_history(started.instance_id)]
        assert history.count("end") == 1

    @pytest.mark.asyncio
    async def test_inclusive_subset_join(self, engine, deploy, make_definition):
        """Test the join expects only the inclusive branches actually taken."""
        await deploy(
            make_definition(
                "inclusive",
                [
                    {"id": "start", "type": "start"},
                    {
                        "id": "gw",
                        "type": "inclusiveGateway",
                        "conditions": {
                            "a": "var.amount > 10",
                            "b": "var.amount > 100",
                            "c": "var.amount > 1000",
                        },
                    },
                    {"id": "a", "type": "script", "script": "a_done = true"},
                    {"id": "b", "type": "script", "script": "b_done = true"},
                    {"id": "c", "type": "script", "script": "c_done = true"},
                    {"id": "merge", "type": "inclusiveGateway", "direction": "join"},
                    {"id": "end", "type": "end"},
                ],
                [
                    ("start", "gw"),
                    ("gw", "a"),
                    ("gw", "b"),
                    ("gw", "c"),
                    ("a", "merge"),
                    ("b", "merge"),
                    ("c", "merge"),
                    ("merge", "end"),
                ],
            )
        )

        result = await engine.create_and_start("inclusive", {"amount": 150})

        assert result.status == WorkflowStatus.COMPLETED
        state = await engine.get_instance(result.instance_id)
        assert state.variables["a_done"] is True
        assert state.variables["b_done"] is True
        assert "c_done" not in state.variables

        history = [r.activity_id for r in await engine.get_history(result.instance_id)]
        assert history.count("merge") == 1
        assert history.count("end") == 1

    @pytest.mark.asyncio
    async def test_branch_bypassing_join_faults(self, engine, deploy, make_definition):
        """Test an instance never completes with a join still waiting for branches."""
        await deploy(
            make_definition(
                "bypass",
                [
                    {"id": "start", "type": "start"},
                    {"id": "fork", "type": "parallelGateway"},
                    {"id": "a", "type": "script", "script": "a_done = true"},
                    {
                        "id": "route",
                        "type": "exclusiveGateway",
                        "conditions": {"join": "var.never"},
                        "default_path": "side",
                    },
                    {"id": "side", "type": "end"},
                    {"id": "join", "type": "parallelGateway", "direction": "join"},
                    {"id": "end", "type": "end"},
                ],
                [
                    ("start", "fork"),
                    ("fork", "a"),
                    ("fork", "route"),
                    ("a", "join"),
                    ("route", "join"),
                    ("route", "side"),
                    ("join", "end"),
                ],
            )
        )

        result = await engine.create_and_start("bypass")

        assert result.status == WorkflowStatus.FAULTED
        assert result.error.code == "JOIN_INCOMPLETE"
        assert "end" not in (await engine.get_instance(result.instance_id)).completed_activity_ids

    @pytest.mark.asyncio
    async def test_loop_guard(self, deploy, make_definition, definition_store, instance_store, timer_store):
        """Test runaway loops fault with MAX_ACTIVITIES_EXCEEDED."""
        settings = Settings(
            environment=Environment.TEST,
            engine=EngineSettings(max_activities_per_execution=10, persistence_retry_delay=0.0),
        )
        engine = WorkflowEngine(definition_store, instance_store, timer_store, settings=settings)
        await deploy(
            make_definition(
                "loop",
                [
                    {"id": "start", "type": "start"},
                    {"id": "a", "type": "script", "script": "n = 1"},
                    {"id": "b", "type": "script", "script": "n = 2"},
                ],
                [("start", "a"), ("a", "b"), ("b", "a")],
            )
        )

        result = await engine.create_and_start("loop")

        assert result.status == WorkflowStatus.FAULTED
        assert result.error.code == "MAX_ACTIVITIES_EXCEEDED"


class TestSuspendResume:
    """Tests for bookmarks, resume, cancel and terminate."""

    @pytest.mark.asyncio
    async def test_user_task_resume(self, engine, deploy, user_task_workflow):
        """Test a user task suspends and resumes with data."""
        await deploy(user_task_workflow)

        started = await engine.create_and_start("user-task", {"manager": "alice"})

        assert started.status == WorkflowStatus.SUSPENDED
        assert started.bookmarks == ["userTask_approve"]
        state = await engine.get_instance(started.instance_id)
        assert state.get_bookmark("userTask_approve").payload["assignee"] == "alice"

        resumed = await engine.resume(started.instance_id, "userTask_approve", {"approved": True})

        assert resumed.status == WorkflowStatus.COMPLETED
        assert resumed.output == {"approved": True}
        outcomes = [r.outcome for r in await engine.get_history(started.instance_id)]
        assert outcomes == [
            ExecutionOutcome.COMPLETED,
            ExecutionOutcome.SUSPENDED,
            ExecutionOutcome.RESUMED,
            ExecutionOutcome.COMPLETED,
        ]

    @pytest.mark.asyncio
    async def test_bookmark_consumed_once(self, engine, deploy, user_task_workflow):
        """Test the same bookmark cannot be resumed twice."""
        await deploy(user_task_workflow)
        started = await engine.create_and_start("user-task")
        await engine.resume(started.instance_id, "userTask_approve", {"approved": False})

        with pytest.raises(WorkflowBookmarkNotFoundError):
            await engine.resume(started.instance_id, "userTask_approve", {"approved": True})

    @pytest.mark.asyncio
    async def test_unknown_bookmark(self, engine, deploy, user_task_workflow):
        """Test resuming a bookmark the instance does not hold."""
        await deploy(user_task_workflow)
        started = await engine.create_and_start("user-task")

        with pytest.raises(WorkflowBookmarkNotFoundError):
            await engine.resume(started.instance_id, "userTask_other")

    @pytest.mark.asyncio
    async def test_cancel_suspended(self, engine, deploy, user_task_workflow):
        """Test cancelling drops bookmarks and rejects a second cancel."""
        await deploy(user_task_workflow)
        started = await engine.create_and_start("user-task")

        cancelled = await engine.cancel(started.instance_id, "No longer needed")

        assert cancelled.status == WorkflowStatus.CANCELLED
        assert cancelled.bookmarks == []
        with pytest.raises(WorkflowInvalidStateError):
            await engine.cancel(started.instance_id)
        with pytest.raises(WorkflowBookmarkNotFoundError):
            await engine.resume(started.instance_id, "userTask_approve")

    @pytest.mark.asyncio
    async def test_cancel_pending(self, engine, deploy, linear_workflow):
        """Test a never-started instance can be cancelled."""
        await deploy(linear_workflow)
        state = await engine.create_instance("linear")

        result = await engine.cancel(state.id)

        assert result.status == WorkflowStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_terminate(self, engine, deploy, user_task_workflow):
        """Test terminate faults the instance with TERMINATED."""
        await deploy(user_task_workflow)
        started = await engine.create_and_start("user-task")

        result = await engine.terminate(started.instance_id, "Operator stop")

        assert result.status == WorkflowStatus.FAULTED
        assert result.error.code == "TERMINATED"
        assert result.error.message == "Operator stop"
        assert result.bookmarks == []

    @pytest.mark.asyncio
    async def test_terminate_finished_is_noop(self, engine, deploy, linear_workflow):
        """Test terminating a completed instance changes nothing."""
        await deploy(linear_workflow)
        started = await engine.create_and_start("linear")

        result = await engine.terminate(started.instance_id)

        assert result.status == WorkflowStatus.COMPLETED
        assert result.error is None

    @pytest.mark.asyncio
    async def test_unknown_instance(self, engine):
        """Test operations on unknown instances."""
        from uuid import uuid4

        with pytest.raises(WorkflowNotFoundError):
            await engine.get_instance(uuid4())
        with pytest.raises(WorkflowNotFoundError):
            await engine.resume(uuid4(), "anything")


class TestSignalsAndEvents:
    """Tests for signal delivery and event triggers."""

    @pytest.mark.asyncio
    async def test_signal_one_instance(self, engine, deploy, signal_workflow):
        """Test a signal resumes the waiting instance with its data."""
        await deploy(signal_workflow)
        started = await engine.create_and_start("signal-wait")

        assert started.bookmarks == ["signal_payment"]

        result = await engine.signal(started.instance_id, "payment", {"amount": 5})

        assert result.status == WorkflowStatus.COMPLETED
        state = await engine.get_instance(started.instance_id)
        assert state.variables["payment"] == {"amount": 5}

    @pytest.mark.asyncio
    async def test_signal_not_waiting(self, engine, deploy, signal_workflow):
        """Test signalling an instance that waits for another signal."""
        await deploy(signal_workflow)
        started = await engine.create_and_start("signal-wait")

        with pytest.raises(WorkflowBookmarkNotFoundError):
            await engine.signal(started.instance_id, "refund")

    @pytest.mark.asyncio
    async def test_broadcast_signal(self, engine, deploy, signal_workflow, linear_workflow):
        """Test broadcast resumes every waiting instance and nothing else."""
        await deploy(signal_workflow, linear_workflow)
        first = await engine.create_and_start("signal-wait")
        second = await engine.create_and_start("signal-wait")
        bystander = await engine.create_and_start("linear")

        resumed = await engine.broadcast_signal("payment", "paid")

        assert set(resumed) == {first.instance_id, second.instance_id}
        assert bystander.instance_id not in resumed
        for instance_id in resumed:
            assert (await engine.get_instance(instance_id)).status == WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_broadcast_without_waiters(self, engine):
        """Test broadcasting to nobody resumes nothing."""
        assert await engine.broadcast_signal("nobody-listens") == []

    @pytest.mark.asyncio
    async def test_signal_throw_resumes_receivers(self, engine, deploy, signal_workflow, signal_throw_workflow):
        """Test a thrown signal reaches waiting instances with its payload."""
        await deploy(signal_workflow, signal_throw_workflow)
        waiting = await engine.create_and_start("signal-wait")

        thrower = await engine.create_and_start("signal-throw", {"amount": 99})

        assert thrower.status == WorkflowStatus.COMPLETED
        state = await engine.get_instance(waiting.instance_id)
        assert state.status == WorkflowStatus.COMPLETED
        assert state.variables["payment"] == 99

    @pytest.mark.asyncio
    async def test_trigger_event(self, engine, deploy, event_workflow, linear_workflow):
        """Test an event starts every definition with a matching trigger."""
        await deploy(event_workflow, linear_workflow)

        started = await engine.trigger_event("order.created", {"orderId": "o-9"})

        assert len(started) == 1
        state = await engine.get_instance(started[0])
        assert state.workflow_id == "on-order"
        assert state.status == WorkflowStatus.COMPLETED
        assert state.input == {"eventName": "order.created", "eventData": {"orderId": "o-9"}}
        assert state.started_by == "event:order.created"

    @pytest.mark.asyncio
    async def test_trigger_unknown_event(self, engine, deploy, event_workflow):
        """Test events without subscribers start nothing."""
        await deploy(event_workflow)
        assert await engine.trigger_event("order.deleted") == []


class TestErrorHandling:
    """Tests for faults, retries and error handlers."""

    @pytest.mark.asyncio
    async def test_unhandled_failure_faults(self, engine, deploy, failing_task_workflow):
        """Test an activity failure faults the instance with the error."""
        await deploy(failing_task_workflow)

        result = await engine.create_and_start("failing")

        assert result.status == WorkflowStatus.FAULTED
        assert result.error.code == "TASK_ERROR"
        assert result.error.activity_id == "boom"
        history = await engine.get_history(result.instance_id)
        assert history[-1].outcome == ExecutionOutcome.FAULTED

    @pytest.mark.asyncio
    async def test_retry_faulted_instance(self, engine, deploy, failing_task_workflow, task_handlers):
        """Test retry re-runs the faulted activity and counts faults."""
        await deploy(failing_task_workflow)
        faulted = await engine.create_and_start("failing")

        task_handlers.register("explode", lambda inputs, ctx: {"fixed": True})
        result = await engine.retry(faulted.instance_id)

        assert result.status == WorkflowStatus.COMPLETED
        state = await engine.get_instance(faulted.instance_id)
        assert state.fault_count == 1
        assert state.error is None

    @pytest.mark.asyncio
    async def test_retry_requires_faulted(self, engine, deploy, linear_workflow):
        """Test only FAULTED instances can be retried."""
        await deploy(linear_workflow)
        completed = await engine.create_and_start("linear")

        with pytest.raises(WorkflowInvalidStateError):
            await engine.retry(completed.instance_id)

    @pytest.mark.asyncio
    async def test_handler_redirects(self, engine, deploy, redirect_workflow):
        """Test a matching error handler redirects to its activity."""
        await deploy(redirect_workflow)

        result = await engine.create_and_start("redirect")

        assert result.status == WorkflowStatus.COMPLETED
        state = await engine.get_instance(result.instance_id)
        assert state.variables["recovered"] is True
        assert state.variables["_lastError"]["code"] == "TASK_ERROR"
        assert state.variables["_lastError"]["activityId"] == "boom"

    @pytest.mark.asyncio
    async def test_handler_retries_activity(self, engine, deploy, retrying_workflow, task_handlers):
        """Test a retry policy re-executes the activity until it succeeds."""
        calls = []

        def flaky(inputs, ctx):
            calls.append(1)
            if len(calls) < 3:
                raise RuntimeError("temporary outage")
            return {"ok": True}

        task_handlers.register("flaky", flaky)
        await deploy(retrying_workflow)

        result = await engine.create_and_start("retrying")

        assert result.status == WorkflowStatus.COMPLETED
        assert len(calls) == 3
        state = await engine.get_instance(result.instance_id)
        assert state.activity_attempts == {}

    @pytest.mark.asyncio
    async def test_handler_retries_exhausted(self, engine, deploy, retrying_workflow, task_handlers):
        """Test an instance faults once retries are exhausted."""
        def always_down(inputs, ctx):
            raise RuntimeError("down")

        task_handlers.register("flaky", always_down)
        await deploy(retrying_workflow)

        result = await engine.create_and_start("retrying")

        assert result.status == WorkflowStatus.FAULTED
        history = [r for r in await engine.get_history(result.instance_id) if r.activity_id == "flaky"]
        assert len(history) == 3

    @pytest.mark.asyncio
    async def test_compensation(self, engine, deploy, make_definition, payment_service):
        """Test compensable activities are undone before faulting."""
        await deploy(
            make_definition(
                "compensate",
                [
                    {"id": "start", "type": "start"},
                    {
                        "id": "charge",
                        "type": "serviceTask",
                        "service_type": "payments",
                        "method_name": "charge",
                        "method_parameters": ["var.amount"],
                        "compensation_method": "refund",
                    },
                    {"id": "boom", "type": "task", "task_handler": "explode"},
                    {"id": "end", "type": "end"},
                ],
                [("start", "charge"), ("charge", "boom"), ("boom", "end")],
                error_handlers=[ErrorHandler(error_codes=["TASK_ERROR"], compensate=True)],
            )
        )

        result = await engine.create_and_start("compensate", {"amount": 30})

        assert result.status == WorkflowStatus.FAULTED
        assert payment_service.charged == [30]
        assert payment_service.refunded == [30]
        outcomes = {r.activity_id: r.outcome for r in await engine.get_history(result.instance_id)}
        assert outcomes["charge"] == ExecutionOutcome.COMPENSATED


class TestSubProcess:
    """Tests for parent/child instances."""

    @pytest.mark.asyncio
    async def test_parent_waits_for_child(self, engine, deploy, parent_workflow, child_workflow):
        """Test the parent resumes with the child's output once it completes."""
        await deploy(parent_workflow, child_workflow)

        parent = await engine.create_and_start("parent", {"orderId": "o-7"})

        assert parent.status == WorkflowStatus.SUSPENDED
        assert parent.bookmarks == ["subProcess_call"]
        parent_state = await engine.get_instance(parent.instance_id)
        child_id = parent_state.variables["_subprocess_call_instanceId"]

        children = await engine.query_instances(InstanceQuery(workflow_id="child"))
        child = children.items[0]
        assert str(child.id) == child_id
        assert child.parent_instance_id == parent.instance_id
        assert child.input == {"orderId": "o-7"}

        await engine.resume(child.id, "userTask_approve", {"approved": True})

        parent_state = await engine.get_instance(parent.instance_id)
        assert parent_state.status == WorkflowStatus.COMPLETED
        assert parent_state.output == {"approved": True}

    @pytest.mark.asyncio
    async def test_child_completing_immediately(self, engine, deploy, parent_workflow, linear_workflow):
        """Test a child that finishes during launch does not suspend the parent."""
        await deploy(parent_workflow, linear_workflow.model_copy(update={"id": "child"}))

        parent = await engine.create_and_start("parent", {"orderId": "o-8"})

        assert parent.status == WorkflowStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_failed_child_faults_parent(self, engine, deploy, parent_workflow, child_workflow):
        """Test a terminated child faults the waiting parent."""
        await deploy(parent_workflow, child_workflow)
        parent = await engine.create_and_start("parent", {"orderId": "o-9"})
        child = (await engine.query_instances(InstanceQuery(workflow_id="child"))).items[0]

        await engine.terminate(child.id, "Rejected upstream")

        parent_state = await engine.get_instance(parent.instance_id)
        assert parent_state.status == WorkflowStatus.FAULTED
        assert parent_state.error.code == "SUBPROCESS_FAILED"

    @pytest.mark.asyncio
    async def test_cancel_parent_cancels_child(self, engine, deploy, parent_workflow, child_workflow):
        """Test cancelling a parent cancels the child it waits on."""
        await deploy(parent_workflow, child_workflow)
        parent = await engine.create_and_start("parent", {"orderId": "o-10"})
        child = (await engine.query_instances(InstanceQuery(workflow_id="child"))).items[0]

        await engine.cancel(parent.instance_id)

        assert (await engine.get_instance(child.id)).status == WorkflowStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_child_signal_reaches_waiting_parent(self, engine, deploy, make_definition):
        """Test a signal thrown by a child is delivered to its parent once the parent's run ends."""
        await deploy(
            make_definition(
                "thrower",
                [
                    {"id": "start", "type": "start"},
                    {"id": "throw", "type": "signalThrow", "signal_name": "release"},
                    {"id": "end", "type": "end"},
                ],
                [("start", "throw"), ("throw", "end")],
            ),
            make_definition(
                "listener",
                [
                    {"id": "start", "type": "start"},
                    {"id": "fork", "type": "parallelGateway"},
                    {"id": "recv", "type": "signalReceive", "signal_name": "release"},
                    {"id": "ut", "type": "userTask"},
                    {"id": "call", "type": "subProcess", "sub_workflow_id": "thrower"},
                    {"id": "join", "type": "parallelGateway", "direction": "join"},
                    {"id": "end", "type": "end"},
                ],
                [
                    ("start", "fork"),
                    ("fork", "recv"),
                    ("fork", "ut"),
                    ("ut", "call"),
                    ("recv", "join"),
                    ("call", "join"),
                    ("join", "end"),
                ],
            ),
        )
        started = await engine.create_and_start("listener")
        assert started.status == WorkflowStatus.SUSPENDED

        await asyncio.wait_for(engine.resume(started.instance_id, "userTask_ut"), timeout=5)

        state = await engine.get_instance(started.instance_id)
        assert state.status == WorkflowStatus.COMPLETED
        assert state.bookmarks == []
        history = [r.activity_id for r in await engine.get_history(started.instance_id)]
        assert history.count("join") == 1


class TestLockingAndQueries:
    """Tests for advisory locking and instance queries."""

    @pytest.mark.asyncio
    async def test_lock_held_elsewhere(self, engine, deploy, linear_workflow, instance_store):
        """Test an instance locked by another engine cannot be started."""
        await deploy(linear_workflow)
        state = await engine.create_instance("linear")
        await instance_store.try_acquire_lock(state.id, "other-engine", timedelta(minutes=5))

        with pytest.raises(WorkflowLockError):
            await engine.start(state.id)

        assert (await engine.get_instance(state.id)).status == WorkflowStatus.PENDING

    @pytest.mark.asyncio
    async def test_lock_released_after_run(self, engine, deploy, user_task_workflow, instance_store):
        """Test the engine releases its lock when an operation ends."""
        await deploy(user_task_workflow)
        started = await engine.create_and_start("user-task")

        assert await instance_store.try_acquire_lock(started.instance_id, "other-engine", timedelta(minutes=5))

    @pytest.mark.asyncio
    async def test_query_instances(self, engine, deploy, linear_workflow, user_task_workflow):
        """Test querying by workflow and status."""
        await deploy(linear_workflow, user_task_workflow)
        await engine.create_and_start("linear")
        await engine.create_and_start("linear")
        waiting = await engine.create_and_start("user-task")

        suspended = await engine.query_instances(InstanceQuery(statuses=[WorkflowStatus.SUSPENDED]))
        linear = await engine.query_instances(InstanceQuery(workflow_id="linear"))

        assert [s.id for s in suspended.items] == [waiting.instance_id]
        assert linear.total_count == 2
