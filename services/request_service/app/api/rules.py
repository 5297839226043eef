"""Routing rule administration endpoints."""

from __future__ import annotations

from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..dependencies import get_rule_store
from ..errors import MalformedCondition, RuleNotFound
from ..repository import load_json
from ..routing import route
from ..schemas import (
    RoutingDecisionResponse,
    RuleCreate,
    RuleEvaluateRequest,
    RuleResponse,
    RuleUpdate,
)
from ..rules import RuleStore

router = APIRouter(prefix="/rules", tags=["rules"])


def _serialize_rule(rule) -> dict[str, object]:
    return {
        "id": rule.id,
        "name": rule.name,
        "appliesToType": rule.applies_to_type,
        "priority": rule.priority,
        "isActive": rule.is_active,
        "condition": load_json(rule.condition_json),
        "assignToRole": rule.assign_to_role,
        "assignToPrincipal": rule.assign_to_principal,
        "autoApprove": rule.auto_approve,
        "escalationHours": rule.escalation_hours,
        "createdAt": rule.created_at,
        "updatedAt": rule.updated_at,
    }


@router.post("", response_model=RuleResponse, status_code=status.HTTP_201_CREATED)
async def create_rule(payload: RuleCreate, store: RuleStore = Depends(get_rule_store)) -> RuleResponse:
    try:
        rule = await store.create_rule(
            name=payload.name,
            applies_to_type=payload.applies_to_type.value if payload.applies_to_type else None,
            priority=payload.priority,
            is_active=payload.is_active,
            condition=payload.condition,
            assign_to_role=payload.assign_to_role,
            assign_to_principal=payload.assign_to_principal,
            auto_approve=payload.auto_approve,
            escalation_hours=payload.escalation_hours,
        )
    except (MalformedCondition, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return RuleResponse.model_validate(_serialize_rule(rule))


@router.get("", response_model=list[RuleResponse])
async def list_rules(
    applies_to_type: str | None = Query(default=None, alias="type"),
    include_inactive: bool = Query(default=True, alias="includeInactive"),
    store: RuleStore = Depends(get_rule_store),
) -> list[RuleResponse]:
    rules = await store.list_rules(applies_to_type=applies_to_type, include_inactive=include_inactive)
    return [RuleResponse.model_validate(_serialize_rule(rule)) for rule in rules]


@router.post("/evaluate", response_model=RoutingDecisionResponse)
async def evaluate_rules(
    payload: RuleEvaluateRequest,
    store: RuleStore = Depends(get_rule_store),
) -> RoutingDecisionResponse:
    """Dry-run routing against the active rules; nothing is written."""

    rules = await store.active_rules_for(payload.type.value)
    decision = route(payload.type.value, payload.fields, rules, now=datetime.now(timezone.utc))
    assignment = decision.assignment
    return RoutingDecisionResponse.model_validate(
        {
            "matched": decision.matched,
            "matchedRuleId": decision.matched_rule_id,
            "assignedRole": assignment.role if assignment else None,
            "assignedPrincipal": assignment.principal if assignment else None,
            "autoApprove": decision.auto_approve,
            "escalationDeadline": decision.escalation_deadline,
        }
    )


@router.get("/{rule_id}", response_model=RuleResponse)
async def get_rule(rule_id: int, store: RuleStore = Depends(get_rule_store)) -> RuleResponse:
    try:
        rule = await store.get_rule(rule_id)
    except RuleNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Routing rule not found") from exc
    return RuleResponse.model_validate(_serialize_rule(rule))


@router.patch("/{rule_id}", response_model=RuleResponse)
async def update_rule(
    rule_id: int,
    payload: RuleUpdate,
    store: RuleStore = Depends(get_rule_store),
) -> RuleResponse:
    try:
        rule = await store.update_rule(rule_id, payload.changes())
    except RuleNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Routing rule not found") from exc
    except (MalformedCondition, ValueError) as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return RuleResponse.model_validate(_serialize_rule(rule))


@router.delete("/{rule_id}", response_model=RuleResponse)
async def deactivate_rule(rule_id: int, store: RuleStore = Depends(get_rule_store)) -> RuleResponse:
    """Rules are deactivated rather than deleted so past routing decisions keep their reference."""

    try:
        rule = await store.deactivate_rule(rule_id)
    except RuleNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Routing rule not found") from exc
    return RuleResponse.model_validate(_serialize_rule(rule))
