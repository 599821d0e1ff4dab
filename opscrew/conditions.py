"""Boolean predicates over a workflow's variable bag.

Conditions are evaluated left to right. The combinator applied to a
condition's result is the ``logical_operator`` of the *previous* condition
(AND for the first one), so ``[a (OR), b (AND), c]`` evaluates as
``((True and a) or b) and c``.
"""

from __future__ import annotations

import logging
import math
from typing import Any, Iterable, Mapping

from .models import ConditionOperator, LogicalOperator, WorkflowCondition

logger = logging.getLogger(__name__)


class _Undefined:
    """Marker for a dot path that does not resolve."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


def get_nested_value(obj: Any, path: str) -> Any:
    """Resolve ``path`` (``a.b.0.c``) against nested mappings and lists."""
    current = obj
    for key in path.split("."):
        if current is None or current is UNDEFINED:
            return UNDEFINED
        if isinstance(current, Mapping):
            current = current.get(key, UNDEFINED)
        elif isinstance(current, (list, tuple)) and key.isdigit():
            index = int(key)
            current = current[index] if index < len(current) else UNDEFINED
        else:
            return UNDEFINED
    return current


def _to_number(value: Any) -> float:
    if value is UNDEFINED:
        return math.nan
    if value is None:
        return 0.0
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        stripped = value.strip()
        if not stripped:
            return 0.0
        try:
            return float(stripped)
        except ValueError:
            return math.nan
    return math.nan


def _to_string(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join("" if v is None else _to_string(v) for v in value)
    if isinstance(value, Mapping):
        return "[object Object]"
    return str(value)


def _strict_equals(left: Any, right: Any) -> bool:
    if left is UNDEFINED or right is UNDEFINED:
        return left is right
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


def evaluate_condition(condition: WorkflowCondition, variables: Mapping[str, Any]) -> bool:
    """Evaluate a single condition against ``variables``."""
    field_value = get_nested_value(variables, condition.field)
    expected = condition.value
    operator = condition.operator

    if operator == ConditionOperator.EQUALS:
        return _strict_equals(field_value, expected)
    if operator == ConditionOperator.NOT_EQUALS:
        return not _strict_equals(field_value, expected)
    if operator == ConditionOperator.GREATER_THAN:
        return _to_number(field_value) > _to_number(expected)
    if operator == ConditionOperator.LESS_THAN:
        return _to_number(field_value) < _to_number(expected)
    if operator == ConditionOperator.CONTAINS:
        return _to_string(expected) in _to_string(field_value)
    if operator == ConditionOperator.EXISTS:
        return field_value is not UNDEFINED and field_value is not None

    logger.warning(f"Unknown condition operator {operator!r} on field {condition.field}")
    return False


def evaluate_conditions(
    conditions: Iterable[WorkflowCondition] | None, variables: Mapping[str, Any]
) -> bool:
    """Fold ``conditions`` into one boolean; an empty list is true."""
    if not conditions:
        return True

    result = True
    combinator = LogicalOperator.AND
    for condition in conditions:
        outcome = evaluate_condition(condition, variables)
        if combinator == LogicalOperator.AND:
            result = result and outcome
        else:
            result = result or outcome
        combinator = condition.logical_operator or LogicalOperator.AND
    return result
