"""Operator semantics shared by the condition evaluator and the trigger matcher."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from backend.models.enums import EDGE_OPERATORS, Operator


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def strict_equals(left: Any, right: Any) -> bool:
    """Equality without cross-type coercion (``True != 1``, ``"1" != 1``)."""

    if isinstance(left, bool) or isinstance(right, bool):
        return isinstance(left, bool) and isinstance(right, bool) and left == right
    if _is_number(left) and _is_number(right):
        return left == right
    if _is_number(left) or _is_number(right):
        return False
    return bool(left == right)


def compare(operator: Operator, actual: Any, value: Any, second_value: Any = None) -> bool:
    """Evaluate a state-level operator against a single observed value.

    Edge operators (``changes*``) need two observations and are always false here.
    """

    if operator == Operator.equals:
        return strict_equals(actual, value)
    if operator == Operator.not_equals:
        return not strict_equals(actual, value)
    if operator == Operator.greater_than:
        return _is_number(actual) and _is_number(value) and actual > value
    if operator == Operator.less_than:
        return _is_number(actual) and _is_number(value) and actual < value
    if operator == Operator.between:
        if not (_is_number(actual) and _is_number(value) and _is_number(second_value)):
            return False
        return value <= actual <= second_value
    return False


def transition_matches(
    operator: Operator, old: Any, new: Any, value: Any, second_value: Any = None
) -> bool:
    """Evaluate an operator against an ``old -> new`` transition.

    Edge operators require an actual change; state operators look at the new value.
    """

    changed = not strict_equals(old, new)
    if operator == Operator.changes:
        return changed
    if operator == Operator.changes_to:
        return changed and strict_equals(new, value)
    if operator == Operator.changes_from:
        return changed and strict_equals(old, value)
    return compare(operator, new, value, second_value)


def crossed(operator: Operator, old: Any, new: Any, value: Any, second_value: Any = None) -> bool:
    """True when the threshold holds for ``new`` but did not hold for ``old``."""

    if operator in EDGE_OPERATORS:
        return transition_matches(operator, old, new, value, second_value)
    return compare(operator, new, value, second_value) and not compare(
        operator, old, value, second_value
    )


def resolve_path(state: Mapping[str, Any] | None, path: str) -> Any:
    """Walk a dotted path (``settings.brightness``) into a nested mapping; ``None`` if absent."""

    current: Any = state
    for part in path.split("."):
        if not isinstance(current, Mapping):
            return None
        current = current.get(part)
    return current


def minutes_since_midnight(hhmm: str) -> int:
    hour, minute = hhmm.split(":")
    return int(hour) * 60 + int(minute)


__all__ = [
    "compare",
    "crossed",
    "minutes_since_midnight",
    "resolve_path",
    "strict_equals",
    "transition_matches",
]
