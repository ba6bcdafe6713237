"""Expression resolution and condition evaluation."""

from workflow_runtime.expressions.conditions import OPERATORS, compare, evaluate
from workflow_runtime.expressions.resolver import ValueResolver, assign_path

__all__ = ["OPERATORS", "ValueResolver", "assign_path", "compare", "evaluate"]
