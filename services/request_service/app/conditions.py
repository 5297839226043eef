"""Routing rule predicates and their evaluation.

A stored predicate is JSON. ``parse_condition`` turns it into a closed tree
of three node kinds:

* ``{"field": "category", "operator": "equals", "value": "medical"}``
* ``{"all": [<node>, ...]}`` (conjunction)
* ``{"any": [<node>, ...]}`` (disjunction)

``{}`` (or ``None``) is the empty conjunction and matches every request. A
flat mapping of field names to scalars, ``{"category": "medical"}``, is
accepted as shorthand for a conjunction of ``equals`` leaves (a list value
becomes an ``in`` leaf).

``evaluate`` is pure: it never touches persisted state and never raises for
request data it cannot compare; such leaves are simply false.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Mapping, Union

from .errors import MalformedCondition


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    IN = "in"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"


_OPERATOR_ALIASES = {
    "eq": Operator.EQUALS,
    "==": Operator.EQUALS,
    "ne": Operator.NOT_EQUALS,
    "!=": Operator.NOT_EQUALS,
    "in_set": Operator.IN,
    ">": Operator.GT,
    ">=": Operator.GTE,
    "<": Operator.LT,
    "<=": Operator.LTE,
}

_NUMERIC_OPERATORS = frozenset({Operator.GT, Operator.GTE, Operator.LT, Operator.LTE})
_LEAF_KEYS = frozenset({"field", "operator", "value"})
_SCALAR_TYPES = (str, int, float, bool)


@dataclass(frozen=True)
class FieldCondition:
    field: str
    operator: Operator
    value: Any


@dataclass(frozen=True)
class AllOf:
    conditions: tuple[Condition, ...]


@dataclass(frozen=True)
class AnyOf:
    conditions: tuple[Condition, ...]


Condition = Union[FieldCondition, AllOf, AnyOf]

MATCH_ALL: Condition = AllOf(())


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _as_number(value: Any) -> float | None:
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            parsed = float(value.strip())
        except ValueError:
            return None
        return parsed if math.isfinite(parsed) else None
    return None


def _resolve_operator(raw: Any) -> Operator:
    if not isinstance(raw, str):
        raise MalformedCondition(f"operator must be a string, got {raw!r}")
    key = raw.strip().lower()
    if key in _OPERATOR_ALIASES:
        return _OPERATOR_ALIASES[key]
    try:
        return Operator(key)
    except ValueError:
        raise MalformedCondition(f"unknown operator {raw!r}") from None


def _parse_leaf(node: Mapping[str, Any]) -> FieldCondition:
    unknown = set(node) - _LEAF_KEYS
    if unknown:
        raise MalformedCondition(f"unexpected keys in field condition: {sorted(unknown)}")
    field = node.get("field")
    if not isinstance(field, str) or not field.strip():
        raise MalformedCondition("field condition requires a non-empty 'field'")
    if "operator" not in node:
        raise MalformedCondition(f"field condition on {field!r} requires an 'operator'")
    if "value" not in node:
        raise MalformedCondition(f"field condition on {field!r} requires a 'value'")
    operator = _resolve_operator(node["operator"])
    value = node["value"]

    if operator is Operator.IN:
        if not isinstance(value, list) or not all(isinstance(item, _SCALAR_TYPES) for item in value):
            raise MalformedCondition(f"'in' on {field!r} requires a list of scalars")
        value = tuple(value)
    elif operator in _NUMERIC_OPERATORS:
        number = _as_number(value)
        if number is None:
            raise MalformedCondition(f"{operator.value!r} on {field!r} requires a numeric value")
        value = number
    elif not isinstance(value, _SCALAR_TYPES):
        raise MalformedCondition(f"{operator.value!r} on {field!r} requires a scalar value")

    return FieldCondition(field=field.strip(), operator=operator, value=value)


def _parse_children(raw: Any, key: str) -> tuple[Condition, ...]:
    if not isinstance(raw, list):
        raise MalformedCondition(f"'{key}' must be a list of conditions")
    return tuple(_parse_node(child) for child in raw)


def _parse_shorthand(node: Mapping[str, Any]) -> AllOf:
    leaves: list[Condition] = []
    for field, value in node.items():
        if isinstance(value, list):
            leaves.append(_parse_leaf({"field": field, "operator": "in", "value": value}))
        else:
            leaves.append(_parse_leaf({"field": field, "operator": "equals", "value": value}))
    return AllOf(tuple(leaves))


def _parse_node(node: Any) -> Condition:
    if not isinstance(node, Mapping):
        raise MalformedCondition(f"condition nodes must be objects, got {type(node).__name__}")
    if not node:
        return MATCH_ALL
    if "all" in node or "any" in node:
        if len(node) != 1:
            raise MalformedCondition("a composite condition takes exactly one of 'all' or 'any'")
        if "all" in node:
            return AllOf(_parse_children(node["all"], "all"))
        return AnyOf(_parse_children(node["any"], "any"))
    if _LEAF_KEYS & set(node):
        return _parse_leaf(node)
    return _parse_shorthand(node)


def parse_condition(raw: Any) -> Condition:
    """Build a condition tree from its stored JSON form.

    Raises ``MalformedCondition`` for any shape the evaluator cannot represent.
    """

    if raw is None:
        return MATCH_ALL
    return _parse_node(raw)


def _equals(actual: Any, expected: Any) -> bool:
    if isinstance(actual, bool) or isinstance(expected, bool):
        return isinstance(actual, bool) and isinstance(expected, bool) and actual is expected
    if isinstance(actual, str) and isinstance(expected, str):
        return actual.strip().casefold() == expected.strip().casefold()
    if _is_number(actual) or _is_number(expected):
        left, right = _as_number(actual), _as_number(expected)
        return left is not None and right is not None and left == right
    return actual == expected


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str) and isinstance(expected, str):
        return expected.casefold() in actual.casefold()
    if isinstance(actual, (list, tuple)):
        return any(_equals(element, expected) for element in actual)
    return False


def _compare(operator: Operator, actual: Any, expected: float) -> bool:
    number = _as_number(actual)
    if number is None:
        return False
    if operator is Operator.GT:
        return number > expected
    if operator is Operator.GTE:
        return number >= expected
    if operator is Operator.LT:
        return number < expected
    return number <= expected


def _matches_leaf(leaf: FieldCondition, fields: Mapping[str, Any]) -> bool:
    actual = fields.get(leaf.field)
    if actual is None:
        return False
    operator = leaf.operator
    if operator is Operator.EQUALS:
        return _equals(actual, leaf.value)
    if operator is Operator.NOT_EQUALS:
        return not _equals(actual, leaf.value)
    if operator is Operator.CONTAINS:
        return _contains(actual, leaf.value)
    if operator is Operator.IN:
        return any(_equals(actual, candidate) for candidate in leaf.value)
    return _compare(operator, actual, leaf.value)


def evaluate(condition: Condition, fields: Mapping[str, Any]) -> bool:
    """Return True when ``fields`` satisfies ``condition``.

    Missing (or null) fields make a leaf false. ``AllOf`` stops at the first
    false child and ``AnyOf`` at the first true one.
    """

    if isinstance(condition, FieldCondition):
        return _matches_leaf(condition, fields)
    if isinstance(condition, AllOf):
        return all(evaluate(child, fields) for child in condition.conditions)
    if isinstance(condition, AnyOf):
        return any(evaluate(child, fields) for child in condition.conditions)
    raise MalformedCondition(f"unsupported condition node {condition!r}")
