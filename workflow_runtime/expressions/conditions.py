"""
Condition evaluation for gateways, transitions and script assignments.

Supports a single binary comparison (``==, !=, >=, <=, >, <``) over
resolved operands, or a lone operand interpreted as a boolean.
"""

from typing import Any, Callable, Optional

from workflow_runtime.expressions.resolver import ValueResolver

Resolver = Callable[[str], Any]

# Two-character operators first so ">=" is never read as ">" followed by "=".
OPERATORS: tuple[str, ...] = ("==", "!=", ">=", "<=", ">", "<")

_QUOTES = "\"'"


def find_operator(expression: str) -> Optional[tuple[str, str, str]]:
    """
    Split an expression on its comparison operator.

    Operators inside quoted literals are skipped, so ``var.x == 'a>b'``
    splits on ``==``. An expression with an unbalanced quote falls back to
    the first occurrence anywhere.

    Returns:
        (left, operator, right) or None when no operator is present
    """
    for find in (_find_unquoted, str.find):
        for operator in OPERATORS:
            index = find(expression, operator)
            if index >= 0:
                left = expression[:index].strip()
                right = expression[index + len(operator):].strip()
                return left, operator, right
    return None


def _find_unquoted(text: str, token: str) -> int:
    quote: Optional[str] = None
    for index, char in enumerate(text):
        if quote is not None:
            if char == quote:
                quote = None
        elif char in _QUOTES:
            quote = char
        elif text.startswith(token, index):
            return index
    return -1


def evaluate(
    expression: Optional[str],
    context: Optional[dict[str, Any]] = None,
    resolver: Optional[Resolver] = None,
) -> bool:
    """
    Evaluate a condition expression to a boolean.

    Args:
        expression: Condition text, e.g. ``var.amount >= 100``
        context: Variable bag used when no resolver is supplied
        resolver: Operand resolver; defaults to a ValueResolver over context

    Returns:
        The boolean outcome. Empty or whitespace-only expressions are False.
    """
    if expression is None or not expression.strip():
        return False

    if resolver is None:
        resolver = ValueResolver(variables=context or {})

    text = expression.strip()

    parts = find_operator(text)
    if parts is None:
        # A lone operand: boolean values and "true"/"false" are used as-is
        whole = resolver(text)
        as_bool = _as_bool(whole)
        return as_bool if as_bool is not None else _truthy(whole)

    left_text, operator, right_text = parts
    left = resolver(left_text)
    right = right_text[1:-1] if _is_quoted(right_text) else resolver(right_text)

    return compare(left, operator, right)


def compare(left: Any, operator: str, right: Any) -> bool:
    """
    Compare two resolved operands.

    Numbers compare numerically; everything else compares as
    case-insensitive strings. ``None`` only equals ``None``.
    """
    left_number = _as_number(left)
    right_number = _as_number(right)

    if left_number is not None and right_number is not None:
        return _apply(left_number, operator, right_number)

    if left is None or right is None:
        if operator == "==":
            return left is None and right is None
        if operator == "!=":
            return not (left is None and right is None)
        return False

    left_text = _as_text(left).lower()
    right_text = _as_text(right).lower()
    return _apply(left_text, operator, right_text)


def _apply(left: Any, operator: str, right: Any) -> bool:
    if operator == "==":
        return left == right
    if operator == "!=":
        return left != right
    if operator == ">=":
        return left >= right
    if operator == "<=":
        return left <= right
    if operator == ">":
        return left > right
    if operator == "<":
        return left < right
    raise ValueError(f"Unsupported operator: {operator}")


def _is_quoted(text: str) -> bool:
    return len(text) >= 2 and text[0] == text[-1] and text[0] in _QUOTES


def _as_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "false"):
        return value.strip().lower() == "true"
    return None


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return bool(value.strip()) and value.strip().lower() not in ("0", "false", "null")
    return bool(value)
