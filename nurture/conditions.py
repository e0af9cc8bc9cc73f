"""Predicate evaluation for Condition steps and trigger conditions."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from .contracts import FieldRef, FieldScope, LogicalOperator, Operator, Predicate


@dataclass(frozen=True)
class EvaluationScope:
    """Values visible to predicates, one mapping per :class:`FieldScope`."""

    contact: Mapping[str, Any] = field(default_factory=dict)
    context: Mapping[str, Any] = field(default_factory=dict)
    trigger: Mapping[str, Any] = field(default_factory=dict)

    @classmethod
    def from_context(cls, context: Mapping[str, Any]) -> "EvaluationScope":
        """Build a scope from an execution context map."""
        return cls(
            contact=context.get("contact") or {},
            context=context,
            trigger=context.get("trigger") or {},
        )


def _walk(source: Any, path: str) -> Any:
    current = source
    for part in path.split("."):
        if isinstance(current, Mapping):
            current = current.get(part)
        elif isinstance(current, (list, tuple)) and part.isdigit():
            index = int(part)
            current = current[index] if index < len(current) else None
        else:
            return None
        if current is None:
            return None
    return current


def resolve_field(ref: FieldRef, scope: EvaluationScope) -> Any:
    """Return the value ``ref`` points at, or None when absent."""
    if ref.scope is FieldScope.CONTACT:
        return _walk(scope.contact, ref.name)
    if ref.scope is FieldScope.ATTRIBUTE:
        return _walk(scope.contact.get("attributes") or {}, ref.name)
    if ref.scope is FieldScope.CONTEXT:
        return _walk(scope.context, ref.name)
    return _walk(scope.trigger, ref.name)


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, tuple)):
        return ",".join(_to_text(v) for v in value)
    return str(value)


def _to_number(value: Any) -> float:
    if value is None:
        return math.nan
    if isinstance(value, bool):
        return 1.0 if value else 0.0
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        text = value.strip()
        if not text:
            return 0.0
        try:
            return float(text)
        except ValueError:
            return math.nan
    return math.nan


def _strict_equals(left: Any, right: Any) -> bool:
    # True must not equal 1 and "1" must not equal 1
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    if isinstance(left, (int, float)) and isinstance(right, (int, float)):
        return left == right
    if type(left) is not type(right) and not (left is None or right is None):
        return False
    return left == right


def evaluate_predicate(predicate: Predicate, value: Any) -> bool:
    """Apply one predicate's operator to an already resolved ``value``."""
    op = predicate.operator
    expected = predicate.value
    if op is Operator.EQUALS:
        return _strict_equals(value, expected)
    if op is Operator.NOT_EQUALS:
        return not _strict_equals(value, expected)
    if op is Operator.CONTAINS:
        return _to_text(expected) in _to_text(value)
    if op is Operator.NOT_CONTAINS:
        return _to_text(expected) not in _to_text(value)
    if op is Operator.GREATER_THAN:
        return _to_number(value) > _to_number(expected)
    if op is Operator.LESS_THAN:
        return _to_number(value) < _to_number(expected)
    if op is Operator.EXISTS:
        return value is not None
    if op is Operator.NOT_EXISTS:
        return value is None
    return False


def evaluate_predicates(predicates: Iterable[Predicate], scope: EvaluationScope) -> bool:
    """Evaluate predicates in order.

    An ``OR`` predicate that matches short-circuits to True; any other
    predicate that fails short-circuits to False. An empty list is True.
    """
    for predicate in predicates:
        result = evaluate_predicate(predicate, resolve_field(predicate.field, scope))
        is_or = predicate.logical_operator is LogicalOperator.OR
        if not result and not is_or:
            return False
        if result and is_or:
            return True
    return True
