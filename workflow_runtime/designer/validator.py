"""
Structural validation of designer documents.

Validation never mutates the design; it classifies findings as warnings,
errors or critical errors so callers can render them all at once.
"""

from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from workflow_runtime.designer.models import DesignerNode, WorkflowDesign


class ValidationSeverity(str, Enum):
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


@dataclass
class ValidationFinding:
    """A single validation finding."""

    code: str
    message: str
    severity: ValidationSeverity = ValidationSeverity.ERROR
    node_id: Optional[str] = None
    edge_id: Optional[str] = None
    property_path: Optional[str] = None


@dataclass
class DesignValidationResult:
    """Result of design validation."""

    findings: list[ValidationFinding] = field(default_factory=list)

    @property
    def errors(self) -> list[ValidationFinding]:
        """Error and critical findings."""
        return [f for f in self.findings if f.severity != ValidationSeverity.WARNING]

    @property
    def warnings(self) -> list[ValidationFinding]:
        return [f for f in self.findings if f.severity == ValidationSeverity.WARNING]

    @property
    def is_valid(self) -> bool:
        return not self.errors

    def codes(self) -> list[str]:
        return [f.code for f in self.findings]

    def add_error(
        self,
        code: str,
        message: str,
        severity: ValidationSeverity = ValidationSeverity.ERROR,
        **location: Optional[str],
    ) -> None:
        """Add an error (or critical) finding."""
        self.findings.append(ValidationFinding(code, message, severity, **location))

    def add_warning(self, code: str, message: str, **location: Optional[str]) -> None:
        """Add a warning finding."""
        self.findings.append(ValidationFinding(code, message, ValidationSeverity.WARNING, **location))


# Node types and the config keys they cannot run without
REQUIRED_NODE_CONFIG: dict[str, list[tuple[str, str, str]]] = {
    "servicetask": [
        ("serviceType", "MISSING_SERVICE_TYPE", "Service task requires a service type"),
        ("methodName", "MISSING_METHOD_NAME", "Service task requires a method name"),
    ],
    "subprocess": [
        ("subWorkflowId", "MISSING_SUBPROCESS_ID", "Sub-process requires a workflow ID"),
    ],
    "signalreceive": [
        ("signalName", "MISSING_SIGNAL_NAME", "Signal activity requires a signal name"),
    ],
    "signalthrow": [
        ("signalName", "MISSING_SIGNAL_NAME", "Signal activity requires a signal name"),
    ],
    "script": [
        ("script", "MISSING_SCRIPT", "Script task requires script content"),
    ],
}

# Trigger types and the config key each one is matched on
REQUIRED_TRIGGER_CONFIG: dict[str, tuple[str, str, str]] = {
    "scheduled": ("cron", "MISSING_CRON", "Scheduled trigger requires a cron expression"),
    "webhook": ("path", "MISSING_WEBHOOK_PATH", "Webhook trigger requires a path"),
    "event": ("eventName", "MISSING_EVENT_NAME", "Event trigger requires an event name"),
}


def _is_blank(value: object) -> bool:
    return value is None or str(value).strip() == ""


class WorkflowValidator:
    """
    Validates designer documents before they become executable definitions.

    Usage:
        result = WorkflowValidator().validate(design)
        if not result.is_valid:
            for finding in result.errors:
                ...
    """

    def validate(self, design: WorkflowDesign) -> DesignValidationResult:
        """
        Perform full validation of a design.

        Returns:
            DesignValidationResult with every finding
        """
        result = DesignValidationResult()

        if _is_blank(design.name):
            result.add_error("MISSING_NAME", "Workflow name is required", property_path="name")

        self._validate_nodes(design, result)
        self._validate_edges(design, result)
        self._validate_flow_structure(design, result)
        self._validate_parameters(design, result)
        self._validate_triggers(design, result)

        return result

    def _validate_nodes(self, design: WorkflowDesign, result: DesignValidationResult) -> None:
        start_nodes = [n for n in design.nodes if n.starts_flow]
        if not start_nodes:
            result.add_error(
                "MISSING_START_NODE",
                "Workflow must have exactly one start node",
                ValidationSeverity.CRITICAL,
            )
        elif len(start_nodes) > 1:
            result.add_error(
                "MULTIPLE_START_NODES",
                "Workflow can only have one start node",
                ValidationSeverity.CRITICAL,
            )

        if not any(n.ends_flow for n in design.nodes):
            result.add_warning("NO_END_NODE", "Workflow has no explicit end node")

        seen: set[str] = set()
        for node in design.nodes:
            if node.id in seen:
                result.add_error("DUPLICATE_NODE_ID", f"Duplicate node ID: {node.id}", node_id=node.id)
            seen.add(node.id)

            if _is_blank(node.name):
                result.add_warning("MISSING_NODE_NAME", f"Node '{node.id}' has no name", node_id=node.id)

            self._validate_node_config(node, result)

    def _validate_node_config(self, node: DesignerNode, result: DesignValidationResult) -> None:
        for key, code, message in REQUIRED_NODE_CONFIG.get(node.type_key, []):
            if _is_blank(node.config.get(key)):
                result.add_error(code, message, node_id=node.id, property_path=f"config.{key}")

    def _validate_edges(self, design: WorkflowDesign, result: DesignValidationResult) -> None:
        node_ids = {n.id for n in design.nodes}
        seen: set[str] = set()

        for edge in design.edges:
            if edge.id in seen:
                result.add_error("DUPLICATE_EDGE_ID", f"Duplicate edge ID: {edge.id}", edge_id=edge.id)
            seen.add(edge.id)

            if edge.source not in node_ids:
                result.add_error(
                    "INVALID_EDGE_SOURCE",
                    f"Edge source node not found: {edge.source}",
                    edge_id=edge.id,
                    property_path="source",
                )
            if edge.target not in node_ids:
                result.add_error(
                    "INVALID_EDGE_TARGET",
                    f"Edge target node not found: {edge.target}",
                    edge_id=edge.id,
                    property_path="target",
                )
            if edge.source == edge.target:
                result.add_warning(
                    "SELF_LOOP",
                    f"Edge creates a self-loop on node {edge.source}",
                    edge_id=edge.id,
                )

    def _validate_flow_structure(self, design: WorkflowDesign, result: DesignValidationResult) -> None:
        start = next((n for n in design.nodes if n.starts_flow), None)
        if start is None:
            return

        outgoing: dict[str, list] = {}
        for edge in design.edges:
            outgoing.setdefault(edge.source, []).append(edge)

        # Breadth-first reachability from the start node
        reachable = {start.id}
        queue = deque([start.id])
        while queue:
            current = queue.popleft()
            for edge in outgoing.get(current, []):
                if edge.target not in reachable:
                    reachable.add(edge.target)
                    queue.append(edge.target)

        for node in design.nodes:
            if node.id not in reachable and not node.starts_flow:
                result.add_warning(
                    "UNREACHABLE_NODE",
                    f"Node '{node.name}' ({node.id}) is not reachable from start",
                    node_id=node.id,
                )

        for node in design.nodes:
            if not node.ends_flow and not outgoing.get(node.id):
                result.add_warning(
                    "DEAD_END_NODE",
                    f"Node '{node.name}' ({node.id}) has no outgoing connections",
                    node_id=node.id,
                )

        for node in design.nodes:
            if node.type_key != "exclusivegateway":
                continue
            edges = outgoing.get(node.id, [])
            has_default = any(e.is_default for e in edges)
            has_conditions = any(not _is_blank(e.condition) for e in edges)
            if len(edges) > 1 and not has_conditions and not has_default:
                result.add_warning(
                    "GATEWAY_NO_CONDITIONS",
                    f"Exclusive gateway '{node.name}' has multiple outputs but no conditions defined",
                    node_id=node.id,
                )

    def _validate_parameters(self, design: WorkflowDesign, result: DesignValidationResult) -> None:
        for path, parameters in (
            ("inputParameters", design.input_parameters),
            ("outputParameters", design.output_parameters),
        ):
            names: set[str] = set()
            for parameter in parameters:
                if _is_blank(parameter.name):
                    result.add_error(
                        "INVALID_PARAMETER_NAME",
                        "Parameter name cannot be empty",
                        property_path=path,
                    )
                elif parameter.name in names:
                    result.add_error(
                        "DUPLICATE_PARAMETER_NAME",
                        f"Duplicate parameter name: {parameter.name}",
                        property_path=f"{path}[{parameter.name}]",
                    )
                else:
                    names.add(parameter.name)

    def _validate_triggers(self, design: WorkflowDesign, result: DesignValidationResult) -> None:
        for trigger in design.triggers:
            if _is_blank(trigger.name):
                result.add_warning("MISSING_TRIGGER_NAME", "Trigger has no name")

            required = REQUIRED_TRIGGER_CONFIG.get((trigger.type or "").lower())
            if required is None:
                continue
            key, code, message = required
            if _is_blank(trigger.config.get(key)):
                result.add_error(code, message, property_path=f"triggers[{trigger.name}].config.{key}")
