"""Condition evaluation against an execution context.

All conditions in a list are ANDed; an empty list holds. Missing context
fields resolve to ``None`` and are treated as empty, never as errors.

Comparison rules:

- ``equals`` / ``not_equals``: with a declared ``value_type`` both sides are
  coerced to that type first (a failed coercion makes ``equals`` false).
  With ``auto``, numbers compare numerically, booleans and strings compare
  directly, and values of different kinds fall back to comparing their
  string forms (``"5" == 5`` holds).
- ``contains`` / ``not_contains``: sequences test membership of the
  stringified value; anything else is a substring test on ``str(actual)``.
- ``greater_than`` / ``less_than``: both sides coerced with :func:`float`;
  non-numeric operands fail the predicate.
- ``is_empty`` / ``is_not_empty``: ``None``, blank strings, empty
  collections and ``False`` are empty.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from typing import Any

from careflow.core.constants import ConditionOperator
from careflow.core.types import Condition, ExecutionContext
from careflow.utils.paths import resolve_path

_MISSING = object()
_TRUE_STRINGS = {"true", "1", "yes", "y", "on"}
_FALSE_STRINGS = {"false", "0", "no", "n", "off", ""}


def evaluate(
    conditions: Sequence[Condition],
    context: ExecutionContext | Mapping[str, Any],
) -> bool:
    """Return ``True`` when every condition holds against *context*."""
    data = context.data if isinstance(context, ExecutionContext) else context
    return all(evaluate_one(condition, data) for condition in conditions)


def evaluate_one(condition: Condition, data: Mapping[str, Any]) -> bool:
    actual = resolve_path(data, condition.field)
    operator = condition.operator
    expected = condition.value

    if operator == ConditionOperator.EQUALS:
        return _equals(actual, expected, condition.value_type)
    if operator == ConditionOperator.NOT_EQUALS:
        return not _equals(actual, expected, condition.value_type)
    if operator == ConditionOperator.CONTAINS:
        return _contains(actual, expected)
    if operator == ConditionOperator.NOT_CONTAINS:
        return not _contains(actual, expected)
    if operator == ConditionOperator.GREATER_THAN:
        return _compare(actual, expected, greater=True)
    if operator == ConditionOperator.LESS_THAN:
        return _compare(actual, expected, greater=False)
    if operator == ConditionOperator.IS_EMPTY:
        return is_empty(actual)
    if operator == ConditionOperator.IS_NOT_EMPTY:
        return not is_empty(actual)
    raise ValueError(f"Unsupported condition operator: {operator}")


def is_empty(value: Any) -> bool:
    if value is None or value is False:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (Mapping, list, tuple, set, frozenset)):
        return len(value) == 0
    return False


def _coerce(value: Any, value_type: str) -> Any:
    if value is None:
        return _MISSING
    try:
        if value_type == "number":
            if isinstance(value, bool):
                return _MISSING
            return float(value)
        if value_type == "boolean":
            if isinstance(value, bool):
                return value
            text = str(value).strip().lower()
            if text in _TRUE_STRINGS:
                return True
            if text in _FALSE_STRINGS:
                return False
            return _MISSING
        return str(value)
    except (TypeError, ValueError):
        return _MISSING


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _equals(actual: Any, expected: Any, value_type: str) -> bool:
    if value_type != "auto":
        left = _coerce(actual, value_type)
        right = _coerce(expected, value_type)
        if left is _MISSING or right is _MISSING:
            return actual is None and expected is None
        return bool(left == right)

    if actual is None or expected is None:
        return actual is None and expected is None
    if _is_number(actual) and _is_number(expected):
        return float(actual) == float(expected)
    if type(actual) is type(expected):
        return bool(actual == expected)
    return str(actual) == str(expected)


def _contains(actual: Any, expected: Any) -> bool:
    if actual is None or expected is None:
        return False
    needle = str(expected)
    if isinstance(actual, (list, tuple, set, frozenset)):
        return any(str(item) == needle for item in actual)
    return needle in str(actual)


def _to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _compare(actual: Any, expected: Any, *, greater: bool) -> bool:
    left = _to_float(actual)
    right = _to_float(expected)
    if left is None or right is None:
        return False
    return left > right if greater else left < right
