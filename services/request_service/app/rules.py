"""Routing rule store: ordering, validation and administration."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Iterable, Protocol, Sequence

from .conditions import Condition, parse_condition
from .errors import MalformedCondition, RuleNotFound
from .models import RoutingRule
from .repository import RuleRepository, dump_json


class RuleLike(Protocol):
    id: int
    name: str
    applies_to_type: str | None
    priority: int
    is_active: bool
    condition_json: str
    assign_to_role: str | None
    assign_to_principal: str | None
    auto_approve: bool
    escalation_hours: float | None
    created_at: datetime


def _ensure_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def rule_sort_key(rule: RuleLike) -> tuple[int, datetime, int]:
    """Priority descending, then oldest first, then lowest id: a total order over distinct rules."""

    return (-rule.priority, _ensure_utc(rule.created_at), rule.id)


def applies_to(rule: RuleLike, request_type: str) -> bool:
    return rule.applies_to_type is None or rule.applies_to_type == request_type


def ordered_active_rules(rules: Iterable[RuleLike], request_type: str) -> list[RuleLike]:
    """Active rules for ``request_type`` in evaluation order."""

    return sorted(
        (rule for rule in rules if rule.is_active and applies_to(rule, request_type)),
        key=rule_sort_key,
    )


def _validate_assignment(role: str | None, principal: str | None) -> None:
    if role and principal:
        raise ValueError("a rule assigns either a role or a principal, not both")


def _validate_escalation(hours: float | None) -> None:
    if hours is not None and hours < 0:
        raise ValueError("escalation_hours must be non-negative")


class RuleStore:
    """Administration of routing rules; edits never touch existing requests."""

    def __init__(self, repository: RuleRepository) -> None:
        self.repository = repository

    async def create_rule(
        self,
        *,
        name: str,
        applies_to_type: str | None,
        priority: int,
        is_active: bool,
        condition: dict[str, Any] | None,
        assign_to_role: str | None,
        assign_to_principal: str | None,
        auto_approve: bool,
        escalation_hours: float | None,
    ) -> RoutingRule:
        parse_condition(condition)
        _validate_assignment(assign_to_role, assign_to_principal)
        _validate_escalation(escalation_hours)
        return await self.repository.create_rule(
            name=name,
            applies_to_type=applies_to_type,
            priority=priority,
            is_active=is_active,
            condition_json=dump_json(condition or {}),
            assign_to_role=assign_to_role or None,
            assign_to_principal=assign_to_principal or None,
            auto_approve=auto_approve,
            escalation_hours=escalation_hours,
        )

    async def get_rule(self, rule_id: int) -> RoutingRule:
        rule = await self.repository.get_rule(rule_id)
        if rule is None:
            raise RuleNotFound(rule_id)
        return rule

    async def list_rules(self, *, applies_to_type: str | None = None, include_inactive: bool = True) -> list[RoutingRule]:
        return await self.repository.list_rules(applies_to_type=applies_to_type, include_inactive=include_inactive)

    async def active_rules_for(self, request_type: str) -> Sequence[RoutingRule]:
        return await self.repository.active_rules_for(request_type)

    async def update_rule(self, rule_id: int, changes: dict[str, Any]) -> RoutingRule:
        rule = await self.get_rule(rule_id)
        values = dict(changes)
        if "condition" in values:
            condition = values.pop("condition")
            parse_condition(condition)
            values["condition_json"] = dump_json(condition or {})
        role = values.get("assign_to_role", rule.assign_to_role)
        principal = values.get("assign_to_principal", rule.assign_to_principal)
        _validate_assignment(role, principal)
        _validate_escalation(values.get("escalation_hours", rule.escalation_hours))
        return await self.repository.update_rule(rule, values)

    async def deactivate_rule(self, rule_id: int) -> RoutingRule:
        rule = await self.get_rule(rule_id)
        if not rule.is_active:
            return rule
        return await self.repository.update_rule(rule, {"is_active": False})


def rule_condition(rule: RuleLike) -> Condition:
    """Parse the stored predicate of ``rule``; raises ``MalformedCondition`` when it is unusable."""

    if not rule.condition_json:
        return parse_condition(None)
    try:
        raw = json.loads(rule.condition_json)
    except json.JSONDecodeError as exc:
        raise MalformedCondition(f"rule {rule.id} condition is not valid JSON") from exc
    return parse_condition(raw)
