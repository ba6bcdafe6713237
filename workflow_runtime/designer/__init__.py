"""Designer document models, validation and conversion."""

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
from workflow_runtime.designer.serializer import (
    NODE_CODECS,
    NodeCodec,
    from_json,
    to_definition,
    to_design,
    to_json,
)
from workflow_runtime.designer.validator import (
    DesignValidationResult,
    ValidationFinding,
    ValidationSeverity,
    WorkflowValidator,
)

__all__ = [
    "DesignValidationResult",
    "DesignerEdge",
    "DesignerNode",
    "ErrorHandlerDefinition",
    "NODE_CODECS",
    "NodeCodec",
    "NodePosition",
    "ParameterDefinition",
    "RetryConfigDefinition",
    "TriggerDefinition",
    "ValidationFinding",
    "ValidationSeverity",
    "VariableDefinition",
    "WorkflowDesign",
    "WorkflowValidator",
    "from_json",
    "to_definition",
    "to_design",
    "to_json",
]
