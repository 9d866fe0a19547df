"""Safe predicate evaluation over node inputs.

Used by CONDITION nodes and by while/until LOOP nodes. Type mismatches and
invalid comparisons evaluate to False instead of raising.
"""

import logging
from typing import Any

from agentflow.core.graph_schema import Predicate

logger = logging.getLogger(__name__)

_MISSING = object()


def resolve_path(data: Any, path: str | None) -> Any:
    """Look up a dotted key path, returning ``_MISSING`` when absent.

    Dict keys are matched first; numeric segments index into lists.
    An empty path returns ``data`` itself.
    """
    if not path:
        return data
    current = data
    for part in path.split("."):
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return _MISSING
        else:
            return _MISSING
    return current


def lookup(data: Any, path: str | None, default: Any = None) -> Any:
    """Public form of :func:`resolve_path` with a default for missing keys."""
    value = resolve_path(data, path)
    return default if value is _MISSING else value


def _as_number(value: Any) -> float | None:
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


def _is_empty(value: Any) -> bool:
    if value is _MISSING or value is None:
        return True
    if isinstance(value, str):
        return value.strip() == ""
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


def _equals(value: Any, expected: Any) -> bool:
    if value == expected:
        return True
    # Authors often write numbers and booleans as strings
    left, right = _as_number(value), _as_number(expected)
    if left is not None and right is not None:
        return left == right
    if isinstance(value, bool) or isinstance(expected, bool):
        return str(value).lower() == str(expected).lower()
    return False


def evaluate_predicate(predicate: Predicate, data: Any) -> bool:
    """Evaluate one predicate against ``data``."""
    value = resolve_path(data, predicate.field)
    operator = predicate.operator

    if operator == "is_empty":
        return _is_empty(value)
    if operator == "is_not_empty":
        return not _is_empty(value)

    # A missing field never satisfies a comparison, not even not_equals
    if value is _MISSING:
        return False

    try:
        if operator == "equals":
            return _equals(value, predicate.value)
        elif operator == "not_equals":
            return not _equals(value, predicate.value)
        elif operator == "contains":
            if isinstance(value, str):
                return str(predicate.value).lower() in value.lower()
            if isinstance(value, (list, tuple, set)):
                return predicate.value in value
            if isinstance(value, dict):
                return predicate.value in value
            return False
        elif operator in ("greater_than", "less_than"):
            left, right = _as_number(value), _as_number(predicate.value)
            if left is None or right is None:
                return False
            return left > right if operator == "greater_than" else left < right
        else:
            return False
    except TypeError:
        return False


def evaluate_all(predicates: list[Predicate], data: Any) -> bool:
    """AND-combine predicates. An empty list is vacuously true."""
    for predicate in predicates:
        if not evaluate_predicate(predicate, data):
            logger.debug(f"Predicate {predicate.field} {predicate.operator} failed")
            return False
    return True
