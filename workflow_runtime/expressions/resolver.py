"""
Sandboxed value resolution for gateway conditions, mappings and scripts.

Resolves operands such as ``var.amount`` or ``input.customer.id`` safely
without eval/exec.
"""

import re
from typing import Any, Optional


class ValueResolver:
    """
    Resolves expression operands against an instance's data.

    Supports:
    - var.name / variables.name - instance variables
    - input.name - instance input
    - output.name - output of the activity being mapped
    - nested paths and list indices (var.order.items[0].sku)
    - bare identifiers naming a variable (amount)
    - literals: null, true/false, int/float, 'single' or "double" quoted strings

    Anything else resolves to the raw text, so ``status == approved``
    compares against the string "approved".

    Security:
    - No eval/exec
    - Path traversal only through dict keys and list indices
    """

    # Pattern to validate reference format
    REFERENCE_PATTERN = re.compile(r"^([a-zA-Z_][a-zA-Z0-9_\-]*)((?:\.[a-zA-Z_][a-zA-Z0-9_\-]*|\[\d+\])*)$")

    # Path segment: .key or [index]
    SEGMENT_PATTERN = re.compile(r"\.([a-zA-Z_][a-zA-Z0-9_\-]*)|\[(\d+)\]")

    NUMBER_PATTERN = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")

    # Root references
    VARIABLE_ROOTS = {"var", "variables"}

    def __init__(
        self,
        variables: Optional[dict[str, Any]] = None,
        input_params: Optional[dict[str, Any]] = None,
        output: Optional[dict[str, Any]] = None,
    ):
        """
        Initialize resolver.

        Args:
            variables: Instance variable bag
            input_params: Instance input (or resume input)
            output: Output of the activity whose mappings are being applied
        """
        self.variables = variables if variables is not None else {}
        self.input_params = input_params or {}
        self.output = output or {}

    def __call__(self, expression: Any) -> Any:
        return self.resolve(expression)

    def resolve(self, expression: Any) -> Any:
        """Resolve one operand or literal. Non-string values pass through."""
        if not isinstance(expression, str):
            return expression

        text = expression.strip()
        if not text:
            return ""

        literal, matched = self._parse_literal(text)
        if matched:
            return literal

        parsed = self._parse_reference(text)
        if parsed is None:
            return text

        root, path = parsed
        if root in self.VARIABLE_ROOTS and path:
            return self._navigate_path(self.variables, path)
        if root == "input" and path:
            return self._navigate_path(self.input_params, path)
        if root == "output" and path:
            return self._navigate_path(self.output, path)
        if root in self.variables:
            return self._navigate_path(self.variables[root], path)

        return text

    def resolve_mapping(self, mapping: dict[str, str]) -> dict[str, Any]:
        """Resolve every expression in a name -> expression mapping."""
        return {key: self.resolve(value) for key, value in mapping.items()}

    def _parse_literal(self, text: str) -> tuple[Any, bool]:
        """Return (value, True) when text is a literal."""
        lowered = text.lower()
        if lowered == "null" or lowered == "none":
            return None, True
        if lowered == "true":
            return True, True
        if lowered == "false":
            return False, True

        if len(text) >= 2 and text[0] == text[-1] and text[0] in ("'", '"'):
            return text[1:-1], True

        if self.NUMBER_PATTERN.match(text):
            if re.match(r"^[+-]?\d+$", text):
                return int(text), True
            return float(text), True

        return None, False

    def _parse_reference(self, reference: str) -> Optional[tuple[str, list]]:
        """
        Parse a reference string into (root, path).

        Examples:
            "var.amount" -> ("var", ["amount"])
            "input.items[0].sku" -> ("input", ["items", 0, "sku"])
        """
        match = self.REFERENCE_PATTERN.match(reference)
        if not match:
            return None

        root = match.group(1)
        path: list = []
        for key, index in self.SEGMENT_PATTERN.findall(match.group(2) or ""):
            path.append(int(index) if index else key)

        return root, path

    def _navigate_path(self, value: Any, path: list) -> Any:
        """
        Navigate a path through nested data structures.

        Only dict-based navigation and list indexing are allowed; no
        attribute access.
        """
        current = value

        for key in path:
            if current is None:
                return None

            if isinstance(key, int):
                if isinstance(current, list) and 0 <= key < len(current):
                    current = current[key]
                else:
                    return None
            elif isinstance(current, dict):
                current = current.get(key)
            else:
                return None

        return current


def assign_path(target: dict[str, Any], name: str, value: Any) -> None:
    """
    Assign ``value`` under a dotted variable name, creating nested dicts.

    A leading ``var.`` or ``variables.`` prefix is ignored.
    """
    parts = name.strip().split(".")
    if len(parts) > 1 and parts[0] in ValueResolver.VARIABLE_ROOTS:
        parts = parts[1:]

    current = target
    for part in parts[:-1]:
        nested = current.get(part)
        if not isinstance(nested, dict):
            nested = {}
            current[part] = nested
        current = nested
    current[parts[-1]] = value
