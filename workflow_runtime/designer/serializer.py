"""
Conversion between designer documents and executable definitions.

Each node type tag has one entry in ``NODE_CODECS`` pairing a decoder
(designer node to activity) with an encoder (activity to node config).
Supporting a new activity type means registering one codec.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from pydantic import ValidationError

from workflow_runtime.core.activities import (
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
    StartActivity,
    SubProcessActivity,
    TaskActivity,
    TimerActivity,
    UserTaskActivity,
)
from workflow_runtime.core.exceptions import WorkflowValidationError
from workflow_runtime.core.models import (
    ErrorHandler,
    RetryPolicy,
    Transition,
    TriggerType,
    VariableScope,
    WorkflowDefinition,
    WorkflowParameter,
    WorkflowTrigger,
    WorkflowVariable,
)
from workflow_runtime.designer.models import (
    DesignerEdge,
    DesignerNode,
    ErrorHandlerDefinition,
    NodePosition,
    ParameterDefinition,
    RetryConfigDefinition,
    TriggerDefinition,
    VariableDefinition,
    WorkflowDesign,
)
from workflow_runtime.designer.validator import WorkflowValidator

logger = logging.getLogger(__name__)


@dataclass
class GatewayRouting:
    """Routing a gateway derives from the edges leaving it."""

    conditions: dict[str, str]
    default_path: Optional[str]
    paths: list[str]

    @classmethod
    def from_edges(cls, edges: list[DesignerEdge]) -> "GatewayRouting":
        conditions: dict[str, str] = {}
        default_path = None
        for edge in edges:
            if edge.condition:
                conditions[edge.target] = edge.condition
            if edge.is_default:
                default_path = edge.target
        return cls(conditions=conditions, default_path=default_path, paths=[e.target for e in edges])


Decoder = Callable[[DesignerNode, GatewayRouting], BaseActivity]
Encoder = Callable[[Any], dict[str, Any]]


@dataclass(frozen=True)
class NodeCodec:
    """Decode/encode pair for one node type tag."""

    decode: Decoder
    encode: Encoder


def _text(config: dict[str, Any], key: str) -> Optional[str]:
    value = config.get(key)
    return None if value is None else str(value)


def _common(node: DesignerNode) -> dict[str, Any]:
    return {
        "id": node.id,
        "name": node.name,
        "description": node.description,
        "input_mappings": dict(node.input_mappings),
        "output_mappings": dict(node.output_mappings),
    }


def _compact(config: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in config.items() if v is not None and v != [] and v != {}}


# ==================== Codecs ====================


def _decode_start(node: DesignerNode, routing: GatewayRouting) -> BaseActivity:
    return StartActivity(id=node.id, name=node.name, description=node.description)


def _decode_end(node: DesignerNode, routing: GatewayRouting) -> BaseActivity:
    return EndActivity(
        id=node.id,
        name=node.name,
        description=node.description,
        final_output_mappings=dict(node.output_mappings),
    )


def _decode_task(node: DesignerNode, routing: GatewayRouting) -> BaseActivity:
    return TaskActivity(
        **_common(node),
        task_handler=_text(node.config, "taskHandler"),
        parameters=dict(node.config.get("parameters") or {}),
    )


def _encode_task(activity: TaskActivity) -> dict[str, Any]:
    return _compact({"taskHandler": activity.task_handler, "parameters": dict(activity.parameters)})


def _decode_service_task(node: DesignerNode, routing: GatewayRouting) -> BaseActivity:
    return ServiceTaskActivity(
        **_common(node),
        service_type=_text(node.config, "serviceType"),
        method_name=_text(node.config, "methodName"),
        method_parameters=list(node.config.get("methodParameters") or []),
        compensation_method=_text(node.config, "compensationMethod"),
    )


def _encode_service_task(activity: ServiceTaskActivity) -> dict[str, Any]:
    return _compact(
        {
            "serviceType": activity.service_type,
            "methodName": activity.method_name,
            "methodParameters": list(activity.method_parameters),
            "compensationMethod": activity.compensation_method,
        }
    )


def _decode_user_task(node: DesignerNode, routing: GatewayRouting) -> BaseActivity:
    return UserTaskActivity(
        **_common(node),
        assignee=_text(node.config, "assignee"),
        candidate_groups=list(node.config.get("candidateGroups") or []),
        priority=node.config.get("priority", 3),
        form_key=_text(node.config, "formKey"),
        due_in=node.config.get("dueIn"),
    )


def _encode_user_task(activity: UserTaskActivity) -> dict[str, Any]:
    dumped = activity.model_dump(mode="json")
    return _compact(
        {
            "assignee": activity.assignee,
            "candidateGroups": list(activity.candidate_groups),
            "priority": activity.priority,
            "formKey": activity.form_key,
            "dueIn": dumped["due_in"],
        }
    )


def _decode_script(node: DesignerNode, routing: GatewayRouting) -> BaseActivity:
    return ScriptActivity(
        **_common(node),
        language=_text(node.config, "language") or "expression",
        script=_text(node.config, "script") or "",
    )


def _encode_script(activity: ScriptActivity) -> dict[str, Any]:
    return {"language": activity.language, "script": activity.script}


def _decode_timer(node: DesignerNode, routing: GatewayRouting) -> BaseActivity:
    return TimerActivity(
        **_common(node),
        duration=node.config.get("duration"),
        date_time=node.config.get("dateTime"),
        cron=_text(node.config, "cron"),
    )


def _encode_timer(activity: TimerActivity) -> dict[str, Any]:
    dumped = activity.model_dump(mode="json")
    return _compact({"duration": dumped["duration"], "dateTime": dumped["date_time"], "cron": activity.cron})


def _decode_signal_receive(node: DesignerNode, routing: GatewayRouting) -> BaseActivity:
    return SignalReceiveActivity(**_common(node), signal_name=_text(node.config, "signalName") or "")


def _decode_signal_throw(node: DesignerNode, routing: GatewayRouting) -> BaseActivity:
    return SignalThrowActivity(
        **_common(node),
        signal_name=_text(node.config, "signalName") or "",
        payload=_text(node.config, "payload"),
    )


def _encode_signal(activity: SignalReceiveActivity | SignalThrowActivity) -> dict[str, Any]:
    return _compact({"signalName": activity.signal_name, "payload": getattr(activity, "payload", None)})


def _decode_exclusive_gateway(node: DesignerNode, routing: GatewayRouting) -> BaseActivity:
    return ExclusiveGatewayActivity(
        **_common(node),
        conditions=routing.conditions,
        default_path=routing.default_path or _text(node.config, "defaultPath"),
    )


def _decode_parallel_gateway(node: DesignerNode, routing: GatewayRouting) -> BaseActivity:
    return ParallelGatewayActivity(
        **_common(node),
        direction=_text(node.config, "direction") or GatewayDirection.SPLIT,
        outgoing_paths=routing.paths,
    )


def _decode_inclusive_gateway(node: DesignerNode, routing: GatewayRouting) -> BaseActivity:
    return InclusiveGatewayActivity(
        **_common(node),
        direction=_text(node.config, "direction") or GatewayDirection.SPLIT,
        conditions=routing.conditions,
        default_path=routing.default_path or _text(node.config, "defaultPath"),
    )


def _encode_gateway(activity: BaseActivity) -> dict[str, Any]:
    # Conditions and paths travel on the edges
    direction = getattr(activity, "direction", None)
    return {"direction": direction.value} if direction is not None else {}


def _decode_sub_process(node: DesignerNode, routing: GatewayRouting) -> BaseActivity:
    return SubProcessActivity(
        **_common(node),
        sub_workflow_id=_text(node.config, "subWorkflowId") or "",
        sub_workflow_version=node.config.get("subWorkflowVersion"),
        wait_for_completion=node.config.get("waitForCompletion") is not False,
    )


def _encode_sub_process(activity: SubProcessActivity) -> dict[str, Any]:
    return _compact(
        {
            "subWorkflowId": activity.sub_workflow_id,
            "subWorkflowVersion": activity.sub_workflow_version,
            "waitForCompletion": activity.wait_for_completion,
        }
    )


def _encode_nothing(activity: BaseActivity) -> dict[str, Any]:
    return {}


NODE_CODECS: dict[str, NodeCodec] = {
    "start": NodeCodec(_decode_start, _encode_nothing),
    "end": NodeCodec(_decode_end, _encode_nothing),
    "task": NodeCodec(_decode_task, _encode_task),
    "servicetask": NodeCodec(_decode_service_task, _encode_service_task),
    "usertask": NodeCodec(_decode_user_task, _encode_user_task),
    "script": NodeCodec(_decode_script, _encode_script),
    "timer": NodeCodec(_decode_timer, _encode_timer),
    "signalreceive": NodeCodec(_decode_signal_receive, _encode_signal),
    "signalthrow": NodeCodec(_decode_signal_throw, _encode_signal),
    "exclusivegateway": NodeCodec(_decode_exclusive_gateway, _encode_gateway),
    "parallelgateway": NodeCodec(_decode_parallel_gateway, _encode_gateway),
    "inclusivegateway": NodeCodec(_decode_inclusive_gateway, _encode_gateway),
    "subprocess": NodeCodec(_decode_sub_process, _encode_sub_process),
}

GATEWAY_TAGS = {"exclusivegateway", "parallelgateway", "inclusivegateway"}


def codec_for(type_tag: Optional[str]) -> NodeCodec:
    """Codec for a node type tag; unknown tags are treated as plain tasks."""
    return NODE_CODECS.get((type_tag or "task").lower(), NODE_CODECS["task"])


# ==================== Designer -> Definition ====================


def _retry_policy(retry: Optional[RetryConfigDefinition]) -> Optional[RetryPolicy]:
    if retry is None:
        return None
    return RetryPolicy(
        max_retries=retry.max_retries,
        initial_delay=retry.initial_delay_ms / 1000,
        max_delay=retry.max_delay_ms / 1000,
        backoff_multiplier=retry.backoff_multiplier,
    )


def _trigger_type(value: Optional[str]) -> TriggerType:
    try:
        return TriggerType((value or "manual").lower())
    except ValueError:
        return TriggerType.MANUAL


def _parameter(p: ParameterDefinition) -> WorkflowParameter:
    return WorkflowParameter(
        name=p.name,
        type=p.type,
        description=p.description,
        is_required=p.is_required,
        default_value=p.default_value,
    )


def to_definition(design: WorkflowDesign, validator: Optional[WorkflowValidator] = None) -> WorkflowDefinition:
    """
    Convert a designer document into an executable definition.

    Raises:
        WorkflowValidationError: If the design has validation errors or a
            node config cannot be converted to a typed activity
    """
    result = (validator or WorkflowValidator()).validate(design)
    if not result.is_valid:
        raise WorkflowValidationError(
            f"Workflow design '{design.name or design.id}' is invalid",
            errors=[f"{f.code}: {f.message}" for f in result.errors],
            workflow_id=design.id,
        )

    start = next(n for n in design.nodes if n.starts_flow)

    try:
        activities = []
        for node in design.nodes:
            routing = GatewayRouting.from_edges(
                design.outgoing_edges(node.id) if node.type_key in GATEWAY_TAGS else []
            )
            activities.append(codec_for(node.type).decode(node, routing))

        return WorkflowDefinition(
            id=design.id,
            version=design.version,
            name=design.name,
            description=design.description,
            category=design.category,
            tags=list(design.tags),
            is_active=design.is_active,
            is_draft=design.is_draft,
            tenant_id=design.tenant_id,
            start_activity_id=start.id,
            activities=activities,
            transitions=[
                Transition(
                    source=e.source,
                    target=e.target,
                    name=e.label,
                    condition=e.condition,
                    is_default=e.is_default,
                    priority=e.priority,
                )
                for e in design.edges
            ],
            input_parameters=[_parameter(p) for p in design.input_parameters],
            output_parameters=[_parameter(p) for p in design.output_parameters],
            variables=[
                WorkflowVariable(
                    name=v.name,
                    type=v.type,
                    default_value=v.default_value,
                    scope=VariableScope.ACTIVITY if v.scope == "local" else VariableScope.WORKFLOW,
                )
                for v in design.variables
            ],
            triggers=[
                WorkflowTrigger(
                    type=_trigger_type(t.type),
                    name=t.name,
                    is_enabled=t.is_enabled,
                    config=dict(t.config),
                )
                for t in design.triggers
            ],
            error_handlers=[
                ErrorHandler(
                    error_codes=list(h.error_codes),
                    handler_activity_id=h.handler_node_id,
                    compensate=h.compensate,
                    terminate=h.terminate,
                    retry=_retry_policy(h.retry),
                )
                for h in design.error_handlers
            ],
            created_at=design.created_at,
            modified_at=design.modified_at,
        )
    except ValidationError as e:
        raise WorkflowValidationError(
            f"Workflow design '{design.name or design.id}' cannot be converted",
            errors=[f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()],
            workflow_id=design.id,
        ) from e


# ==================== Definition -> Designer ====================


def _edges_for(definition: WorkflowDefinition) -> list[DesignerEdge]:
    """Transitions as edges, with gateway routing folded onto them."""
    edges: list[DesignerEdge] = []
    for index, t in enumerate(definition.transitions, start=1):
        edges.append(
            DesignerEdge(
                id=f"edge-{index}",
                source=t.source,
                target=t.target,
                label=t.name,
                condition=t.condition,
                is_default=t.is_default,
                priority=t.priority,
            )
        )

    for activity in definition.activities.values():
        conditions: dict[str, str] = getattr(activity, "conditions", {}) or {}
        default_path: Optional[str] = getattr(activity, "default_path", None)
        if not conditions and not default_path:
            continue

        for target in list(conditions) + ([default_path] if default_path else []):
            edge = next((e for e in edges if e.source == activity.id and e.target == target), None)
            if edge is None:
                edge = DesignerEdge(id=f"edge-{len(edges) + 1}", source=activity.id, target=target)
                edges.append(edge)
            if target in conditions and not edge.condition:
                edge.condition = conditions[target]
            if target == default_path:
                edge.is_default = True

    return edges


def to_design(
    definition: WorkflowDefinition,
    positions: Optional[dict[str, NodePosition]] = None,
) -> WorkflowDesign:
    """
    Convert an executable definition back into a designer document.

    Nodes without a known position are stacked in one column.
    """
    positions = positions or {}
    nodes: list[DesignerNode] = []

    for row, (activity_id, activity) in enumerate(definition.activities.items()):
        position = positions.get(activity_id) or NodePosition(x=250, y=100 + row * 100)

        if isinstance(activity, EndActivity):
            output_mappings = dict(activity.final_output_mappings)
        else:
            output_mappings = dict(activity.output_mappings)

        nodes.append(
            DesignerNode(
                id=activity_id,
                type=activity.type,
                name=activity.name,
                description=activity.description,
                position=position,
                config=codec_for(activity.type).encode(activity),
                input_mappings=dict(activity.input_mappings),
                output_mappings=output_mappings,
                is_start=activity_id == definition.start_activity_id,
                is_end=isinstance(activity, EndActivity),
            )
        )

    return WorkflowDesign(
        id=definition.id,
        name=definition.name,
        description=definition.description,
        version=definition.version,
        category=definition.category,
        tags=list(definition.tags),
        is_draft=definition.is_draft,
        is_active=definition.is_active,
        tenant_id=definition.tenant_id,
        nodes=nodes,
        edges=_edges_for(definition),
        input_parameters=[
            ParameterDefinition(
                name=p.name,
                type=p.type,
                description=p.description,
                is_required=p.is_required,
                default_value=p.default_value,
            )
            for p in definition.input_parameters
        ],
        output_parameters=[
            ParameterDefinition(
                name=p.name,
                type=p.type,
                description=p.description,
                is_required=p.is_required,
                default_value=p.default_value,
            )
            for p in definition.output_parameters
        ],
        variables=[
            VariableDefinition(
                name=v.name,
                type=v.type,
                default_value=v.default_value,
                scope="local" if v.scope == VariableScope.ACTIVITY else "workflow",
            )
            for v in definition.variables
        ],
        triggers=[
            TriggerDefinition(type=t.type.value, name=t.name, is_enabled=t.is_enabled, config=dict(t.config))
            for t in definition.triggers
        ],
        error_handlers=[
            ErrorHandlerDefinition(
                error_codes=list(h.error_codes),
                handler_node_id=h.handler_activity_id,
                compensate=h.compensate,
                terminate=h.terminate,
                retry=RetryConfigDefinition(
                    max_retries=h.retry.max_retries,
                    initial_delay_ms=int(h.retry.initial_delay * 1000),
                    max_delay_ms=int(h.retry.max_delay * 1000),
                    backoff_multiplier=h.retry.backoff_multiplier,
                )
                if h.retry
                else None,
            )
            for h in definition.error_handlers
        ],
        created_at=definition.created_at,
        modified_at=definition.modified_at,
    )


# ==================== JSON ====================


def from_json(text: str) -> WorkflowDesign:
    """
    Parse a designer JSON document.

    Raises:
        WorkflowValidationError: If the text is not a valid design document
    """
    if not text or not text.strip():
        raise WorkflowValidationError("Workflow design document is empty")

    try:
        return WorkflowDesign.model_validate_json(text)
    except ValidationError as e:
        logger.debug(f"Rejected design document: {e}")
        raise WorkflowValidationError(
            "Workflow design document is malformed",
            errors=[err["msg"] for err in e.errors()],
        ) from e


def to_json(design: WorkflowDesign) -> str:
    """Serialize a design with camelCase keys, omitting nulls."""
    return design.model_dump_json(by_alias=True, exclude_none=True, indent=2)
