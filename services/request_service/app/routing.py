"""Pick the owner and approval policy for a new request from the routing rules."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Iterable, Mapping

from .conditions import evaluate
from .errors import MalformedCondition
from .metrics import ROUTING_MALFORMED_RULES_TOTAL
from .rules import RuleLike, ordered_active_rules, rule_condition

_LOGGER = logging.getLogger(__name__)


class AssignmentKind(str, Enum):
    ROLE = "role"
    PRINCIPAL = "principal"


@dataclass(frozen=True)
class Assignment:
    kind: AssignmentKind
    value: str

    @classmethod
    def from_rule(cls, rule: RuleLike) -> Assignment | None:
        if rule.assign_to_role:
            return cls(AssignmentKind.ROLE, rule.assign_to_role)
        if rule.assign_to_principal:
            return cls(AssignmentKind.PRINCIPAL, rule.assign_to_principal)
        return None

    @property
    def role(self) -> str | None:
        return self.value if self.kind is AssignmentKind.ROLE else None

    @property
    def principal(self) -> str | None:
        return self.value if self.kind is AssignmentKind.PRINCIPAL else None


@dataclass(frozen=True)
class RoutingDecision:
    assignment: Assignment | None
    auto_approve: bool
    escalation_deadline: datetime | None
    matched_rule_id: int | None

    @classmethod
    def unassigned(cls) -> RoutingDecision:
        """Outcome when no rule matches; not an error."""

        return cls(assignment=None, auto_approve=False, escalation_deadline=None, matched_rule_id=None)

    @property
    def matched(self) -> bool:
        return self.matched_rule_id is not None


def _decision_for(rule: RuleLike, now: datetime) -> RoutingDecision:
    deadline = None
    if rule.escalation_hours is not None:
        deadline = now + timedelta(hours=rule.escalation_hours)
    return RoutingDecision(
        assignment=Assignment.from_rule(rule),
        auto_approve=bool(rule.auto_approve),
        escalation_deadline=deadline,
        matched_rule_id=rule.id,
    )


def route(
    request_type: str,
    fields: Mapping[str, Any],
    rules: Iterable[RuleLike],
    *,
    now: datetime,
) -> RoutingDecision:
    """Return the decision of the first active rule, in evaluation order, whose condition matches.

    Rules whose stored condition cannot be parsed are logged and skipped.
    The result depends only on the arguments.
    """

    for rule in ordered_active_rules(rules, request_type):
        try:
            condition = rule_condition(rule)
        except MalformedCondition as exc:
            ROUTING_MALFORMED_RULES_TOTAL.inc()
            _LOGGER.warning("Skipping routing rule %s (%s): %s", rule.id, rule.name, exc)
            continue
        if evaluate(condition, fields):
            return _decision_for(rule, now)
    return RoutingDecision.unassigned()
