"""
Pytest fixtures and configuration for tests.
"""

from typing import Any

import pytest

from workflow_runtime.config import EngineSettings, Environment, Settings
from workflow_runtime.core.execution import ServiceRegistry, TaskHandlerRegistry
from workflow_runtime.core.models import (
    ErrorHandler,
    RetryPolicy,
    TriggerType,
    WorkflowDefinition,
    WorkflowParameter,
    WorkflowTrigger,
)
from workflow_runtime.engine import WorkflowEngine
from workflow_runtime.storage import (
    InMemoryDefinitionStore,
    InMemoryInstanceStore,
    InMemoryTimerStore,
)


def build_definition(
    workflow_id: str,
    activities: list[dict[str, Any]],
    transitions: list[tuple],
    **extra: Any,
) -> WorkflowDefinition:
    """Build a definition from activity dicts and (source, target[, condition]) tuples."""
    edges = []
    for edge in transitions:
        if isinstance(edge, dict):
            edges.append(edge)
            continue
        source, target = edge[0], edge[1]
        condition = edge[2] if len(edge) > 2 else None
        edges.append({"source": source, "target": target, "condition": condition})

    return WorkflowDefinition(
        id=workflow_id,
        name=extra.pop("name", workflow_id.replace("-", " ").title()),
        start_activity_id=extra.pop("start_activity_id", "start"),
        activities=activities,
        transitions=edges,
        **extra,
    )


class PaymentService:
    """Service used by ServiceTask tests; records calls."""

    def __init__(self):
        self.charged: list[Any] = []
        self.refunded: list[Any] = []

    def charge(self, amount):
        self.charged.append(amount)
        return {"charged": amount}

    async def refund(self, amount):
        self.refunded.append(amount)


@pytest.fixture
def test_settings() -> Settings:
    """Create test settings."""
    return Settings(
        environment=Environment.TEST,
        debug=True,
        log_level="DEBUG",
        engine=EngineSettings(persistence_retry_delay=0.0),
    )


@pytest.fixture
def definition_store() -> InMemoryDefinitionStore:
    """In-memory definition store."""
    return InMemoryDefinitionStore()


@pytest.fixture
def instance_store() -> InMemoryInstanceStore:
    """In-memory instance store (also the lock provider)."""
    return InMemoryInstanceStore()


@pytest.fixture
def timer_store() -> InMemoryTimerStore:
    """In-memory timer store."""
    return InMemoryTimerStore()


@pytest.fixture
def payment_service() -> PaymentService:
    return PaymentService()


@pytest.fixture
def task_handlers() -> TaskHandlerRegistry:
    """Task handlers shared by the engine tests."""
    registry = TaskHandlerRegistry()

    @registry.register("double")
    def double(inputs, ctx):
        return {"result": inputs["value"] * 2}

    @registry.register("explode")
    async def explode(inputs, ctx):
        raise RuntimeError("handler exploded")

    return registry


@pytest.fixture
def engine(
    definition_store,
    instance_store,
    timer_store,
    task_handlers,
    payment_service,
    test_settings,
) -> WorkflowEngine:
    """Workflow engine over in-memory stores."""
    return WorkflowEngine(
        definitions=definition_store,
        instances=instance_store,
        timers=timer_store,
        task_handlers=task_handlers,
        services=ServiceRegistry({"payments": payment_service}),
        settings=test_settings,
    )


# ==================== Sample Definitions ====================


@pytest.fixture
def linear_workflow() -> WorkflowDefinition:
    """Linear workflow: start -> work -> end."""
    return build_definition(
        "linear",
        [
            {"id": "start", "type": "start"},
            {"id": "work", "type": "script", "script": "processed = true"},
            {"id": "end", "type": "end", "final_output_mappings": {"processed": "var.processed"}},
        ],
        [("start", "work"), ("work", "end")],
    )


@pytest.fixture
def approval_workflow() -> WorkflowDefinition:
    """Exclusive gateway routing on the order amount."""
    return build_definition(
        "approval",
        [
            {"id": "start", "type": "start"},
            {
                "id": "check",
                "type": "exclusiveGateway",
                "conditions": {"manual_review": "var.amount > 100"},
                "default_path": "auto_approve",
            },
            {"id": "manual_review", "type": "script", "script": "route = 'manual'"},
            {"id": "auto_approve", "type": "script", "script": "route = 'auto'"},
            {"id": "end", "type": "end", "final_output_mappings": {"route": "var.route"}},
        ],
        [
            ("start", "check"),
            ("check", "manual_review"),
            ("check", "auto_approve"),
            ("manual_review", "end"),
            ("auto_approve", "end"),
        ],
        input_parameters=[WorkflowParameter(name="amount", type="number", is_required=True)],
    )


@pytest.fixture
def parallel_workflow() -> WorkflowDefinition:
    """Parallel split into two branches merged by a join."""
    return build_definition(
        "parallel",
        [
            {"id": "start", "type": "start"},
            {"id": "fork", "type": "parallelGateway", "direction": "split"},
            {"id": "branch_a", "type": "script", "script": "a_done = true"},
            {"id": "branch_b", "type": "script", "script": "b_done = true"},
            {"id": "join", "type": "parallelGateway", "direction": "join"},
            {"id": "end", "type": "end"},
        ],
        [
            ("start", "fork"),
            ("fork", "branch_a"),
            ("fork", "branch_b"),
            ("branch_a", "join"),
            ("branch_b", "join"),
            ("join", "end"),
        ],
    )


@pytest.fixture
def user_task_workflow() -> WorkflowDefinition:
    """Single user task waiting for approval."""
    return build_definition(
        "user-task",
        [
            {"id": "start", "type": "start"},
            {
                "id": "approve",
                "type": "userTask",
                "assignee": "var.manager",
                "candidate_groups": ["managers"],
                "output_mappings": {"approved": "approved"},
            },
            {"id": "end", "type": "end", "final_output_mappings": {"approved": "var.approved"}},
        ],
        [("start", "approve"), ("approve", "end")],
    )


@pytest.fixture
def timer_workflow() -> WorkflowDefinition:
    """Waits one hour before finishing."""
    return build_definition(
        "timer",
        [
            {"id": "start", "type": "start"},
            {"id": "wait", "type": "timer", "duration": 3600},
            {"id": "end", "type": "end"},
        ],
        [("start", "wait"), ("wait", "end")],
    )


@pytest.fixture
def signal_workflow() -> WorkflowDefinition:
    """Waits for the 'payment' signal."""
    return build_definition(
        "signal-wait",
        [
            {"id": "start", "type": "start"},
            {
                "id": "wait",
                "type": "signalReceive",
                "signal_name": "payment",
                "output_mappings": {"signalData": "payment"},
            },
            {"id": "end", "type": "end"},
        ],
        [("start", "wait"), ("wait", "end")],
    )


@pytest.fixture
def signal_throw_workflow() -> WorkflowDefinition:
    """Throws the 'payment' signal with the amount as payload."""
    return build_definition(
        "signal-throw",
        [
            {"id": "start", "type": "start"},
            {"id": "throw", "type": "signalThrow", "signal_name": "payment", "payload": "var.amount"},
            {"id": "end", "type": "end"},
        ],
        [("start", "throw"), ("throw", "end")],
    )


@pytest.fixture
def child_workflow(user_task_workflow) -> WorkflowDefinition:
    """Child process: a user task whose decision becomes the output."""
    return user_task_workflow.model_copy(update={"id": "child", "name": "Child"})


@pytest.fixture
def parent_workflow() -> WorkflowDefinition:
    """Calls the child workflow and maps its result."""
    return build_definition(
        "parent",
        [
            {"id": "start", "type": "start"},
            {
                "id": "call",
                "type": "subProcess",
                "sub_workflow_id": "child",
                "input_mappings": {"orderId": "var.orderId"},
                "output_mappings": {"approved": "childApproved"},
            },
            {"id": "end", "type": "end", "final_output_mappings": {"approved": "var.childApproved"}},
        ],
        [("start", "call"), ("call", "end")],
    )


@pytest.fixture
def failing_task_workflow() -> WorkflowDefinition:
    """Task whose handler raises, without any error handler."""
    return build_definition(
        "failing",
        [
            {"id": "start", "type": "start"},
            {"id": "boom", "type": "task", "task_handler": "explode"},
            {"id": "end", "type": "end"},
        ],
        [("start", "boom"), ("boom", "end")],
    )


@pytest.fixture
def redirect_workflow() -> WorkflowDefinition:
    """TASK_ERROR is routed to a recovery activity."""
    return build_definition(
        "redirect",
        [
            {"id": "start", "type": "start"},
            {"id": "boom", "type": "task", "task_handler": "explode"},
            {"id": "recover", "type": "script", "script": "recovered = true"},
            {"id": "end", "type": "end"},
        ],
        [("start", "boom"), ("boom", "end"), ("recover", "end")],
        error_handlers=[ErrorHandler(error_codes=["TASK_ERROR"], handler_activity_id="recover")],
    )


@pytest.fixture
def retrying_workflow() -> WorkflowDefinition:
    """Flaky task retried by an error handler with no backoff."""
    return build_definition(
        "retrying",
        [
            {"id": "start", "type": "start"},
            {"id": "flaky", "type": "task", "task_handler": "flaky"},
            {"id": "end", "type": "end"},
        ],
        [("start", "flaky"), ("flaky", "end")],
        error_handlers=[
            ErrorHandler(
                error_codes=["TASK_ERROR"],
                retry=RetryPolicy(max_retries=2, initial_delay=0.0, max_delay=0.0),
            )
        ],
    )


@pytest.fixture
def event_workflow(linear_workflow) -> WorkflowDefinition:
    """Linear workflow started by the 'order.created' event."""
    return linear_workflow.model_copy(
        update={
            "id": "on-order",
            "triggers": [
                WorkflowTrigger(type=TriggerType.EVENT, name="orders", config={"eventName": "order.created"})
            ],
        }
    )


@pytest.fixture
def deploy(definition_store):
    """Save definitions into the definition store."""

    async def _deploy(*definitions: WorkflowDefinition) -> None:
        for definition in definitions:
            await definition_store.save(definition)

    return _deploy


@pytest.fixture
def make_definition():
    """Factory building definitions from activity dicts and transition tuples."""
    return build_definition
