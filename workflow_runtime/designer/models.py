"""
Designer document models.

The import/export shape produced by the visual designer: nodes with a
free-form ``config`` map and edges carrying conditions. JSON uses camelCase
keys; Python code may use either form.
"""

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from workflow_runtime.core.clock import utc_now


class DesignerModel(BaseModel):
    """Base for designer models: camelCase aliases, snake_case attributes."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _new_id() -> str:
    return str(uuid4())


class NodePosition(DesignerModel):
    x: float = 0.0
    y: float = 0.0


class DesignerNode(DesignerModel):
    """A node on the canvas: an activity, gateway or event."""

    id: str = Field(default_factory=_new_id)
    type: str = "task"
    name: str = ""
    description: Optional[str] = None
    position: NodePosition = Field(default_factory=NodePosition)
    config: dict[str, Any] = Field(default_factory=dict, description="Type-specific configuration")
    input_mappings: dict[str, str] = Field(default_factory=dict)
    output_mappings: dict[str, str] = Field(default_factory=dict)
    is_start: bool = False
    is_end: bool = False
    data: dict[str, Any] = Field(default_factory=dict, description="Extension data, ignored by the runtime")

    @property
    def type_key(self) -> str:
        return (self.type or "task").lower()

    @property
    def starts_flow(self) -> bool:
        return self.is_start or self.type_key == "start"

    @property
    def ends_flow(self) -> bool:
        return self.is_end or self.type_key == "end"


class DesignerEdge(DesignerModel):
    """A connection between two nodes."""

    id: str = Field(default_factory=_new_id)
    source: str = ""
    target: str = ""
    label: Optional[str] = None
    condition: Optional[str] = None
    is_default: bool = False
    priority: int = 0
    type: str = "default"


class ParameterDefinition(DesignerModel):
    name: str = ""
    display_name: Optional[str] = None
    description: Optional[str] = None
    type: str = "string"
    is_required: bool = False
    default_value: Any = None
    validation_schema: Optional[str] = None


class VariableDefinition(DesignerModel):
    name: str = ""
    type: str = "string"
    default_value: Any = None
    scope: str = Field(default="workflow", description="workflow or local")


class TriggerDefinition(DesignerModel):
    type: str = Field(default="manual", description="manual, scheduled, webhook or event")
    name: str = ""
    is_enabled: bool = True
    config: dict[str, Any] = Field(default_factory=dict)


class RetryConfigDefinition(DesignerModel):
    max_retries: int = 3
    initial_delay_ms: int = 1000
    max_delay_ms: int = 300_000
    backoff_multiplier: float = 2.0


class ErrorHandlerDefinition(DesignerModel):
    error_codes: list[str] = Field(default_factory=list)
    handler_node_id: Optional[str] = None
    compensate: bool = False
    terminate: bool = False
    retry: Optional[RetryConfigDefinition] = None


class WorkflowDesign(DesignerModel):
    """Complete designer document for one workflow version."""

    id: str = Field(default_factory=_new_id)
    name: str = ""
    description: Optional[str] = None
    version: int = 1
    category: Optional[str] = None
    tags: list[str] = Field(default_factory=list)
    is_draft: bool = True
    is_active: bool = True
    tenant_id: Optional[str] = None

    nodes: list[DesignerNode] = Field(default_factory=list)
    edges: list[DesignerEdge] = Field(default_factory=list)

    input_parameters: list[ParameterDefinition] = Field(default_factory=list)
    output_parameters: list[ParameterDefinition] = Field(default_factory=list)
    variables: list[VariableDefinition] = Field(default_factory=list)
    triggers: list[TriggerDefinition] = Field(default_factory=list)
    error_handlers: list[ErrorHandlerDefinition] = Field(default_factory=list)

    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
    modified_at: Optional[datetime] = None
    created_by: Optional[str] = None
    modified_by: Optional[str] = None

    def get_node(self, node_id: str) -> Optional[DesignerNode]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing_edges(self, node_id: str) -> list[DesignerEdge]:
        return [e for e in self.edges if e.source == node_id]
