"""Database helpers for requests, routing rules and the inventory ledger."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Select, and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .models import (
    InventoryItem,
    LedgerEntry,
    RequestLineItem,
    RequestStatusChange,
    RoutingRule,
    ServiceRequest,
)
from .state_machine import TERMINAL_STATUSES


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def dump_json(value: Any) -> str:
    return json.dumps(value, default=str)


def load_json(raw: str | None) -> Any:
    if not raw:
        return {}
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {}


class RequestRepository:
    """Persistence helpers for service requests, their line items and history."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_request(
        self,
        *,
        request_type: str,
        title: str,
        requester_id: str,
        fields: dict[str, Any],
        status: str,
        priority: str,
        assigned_role: str | None,
        assigned_principal: str | None,
        matched_rule_id: int | None,
        auto_approved: bool,
        escalation_deadline: datetime | None,
        escalation_status: str | None,
        line_items: list[tuple[int, int]],
        created_at: datetime,
    ) -> ServiceRequest:
        request = ServiceRequest(
            type=request_type,
            title=title,
            requester_id=requester_id,
            fields_json=dump_json(fields),
            status=status,
            priority=priority,
            assigned_role=assigned_role,
            assigned_principal=assigned_principal,
            matched_rule_id=matched_rule_id,
            auto_approved=auto_approved,
            escalation_deadline=escalation_deadline,
            escalation_status=escalation_status,
            version=1,
            created_at=created_at,
            updated_at=created_at,
        )
        self.session.add(request)
        await self.session.flush()

        for item_id, quantity in line_items:
            self.session.add(
                RequestLineItem(request_id=request.id, item_id=item_id, quantity_requested=quantity)
            )
        await self.session.flush()
        await self.session.refresh(request, attribute_names=["line_items"])
        return request

    async def get_request(self, request_id: str) -> ServiceRequest | None:
        result = await self.session.execute(
            select(ServiceRequest)
            .options(selectinload(ServiceRequest.line_items))
            .where(ServiceRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_line_item_ids(self, request_id: str) -> list[int]:
        result = await self.session.execute(
            select(RequestLineItem.item_id).where(RequestLineItem.request_id == request_id)
        )
        return sorted(set(result.scalars()))

    async def list_requests(
        self,
        *,
        request_type: str | None,
        status: str | None,
        requester_id: str | None,
        assigned_role: str | None,
        assigned_principal: str | None,
        include_archived: bool,
        limit: int,
        offset: int,
    ) -> tuple[list[ServiceRequest], int]:
        filters = []
        if request_type is not None:
            filters.append(ServiceRequest.type == request_type)
        if status is not None:
            filters.append(ServiceRequest.status == status)
        if requester_id is not None:
            filters.append(ServiceRequest.requester_id == requester_id)
        if assigned_role is not None:
            filters.append(ServiceRequest.assigned_role == assigned_role)
        if assigned_principal is not None:
            filters.append(ServiceRequest.assigned_principal == assigned_principal)
        if not include_archived:
            filters.append(ServiceRequest.archived.is_(False))

        base: Select[tuple[ServiceRequest]] = (
            select(ServiceRequest)
            .options(selectinload(ServiceRequest.line_items))
            .order_by(ServiceRequest.created_at.desc(), ServiceRequest.id.desc())
        )
        count: Select[tuple[int]] = select(func.count(ServiceRequest.id))

        if filters:
            clause = and_(*filters)
            base = base.where(clause)
            count = count.where(clause)

        total = (await self.session.execute(count)).scalar_one()
        result = await self.session.execute(base.offset(offset).limit(limit))
        return list(result.scalars().unique()), total

    async def compare_and_set(self, request_id: str, expected_version: int, values: dict[str, Any]) -> bool:
        """Apply ``values`` and bump the version only if it still equals ``expected_version``."""

        result = await self.session.execute(
            update(ServiceRequest)
            .where(ServiceRequest.id == request_id, ServiceRequest.version == expected_version)
            .values(version=ServiceRequest.version + 1, updated_at=_now_utc(), **values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_fulfilled_quantity(self, line_item: RequestLineItem, quantity: int) -> None:
        line_item.quantity_fulfilled = quantity
        await self.session.flush()

    async def add_status_change(
        self,
        *,
        request_id: str,
        from_status: str | None,
        to_status: str,
        actor_id: str,
        note: str | None,
        version: int,
    ) -> RequestStatusChange:
        change = RequestStatusChange(
            request_id=request_id,
            from_status=from_status,
            to_status=to_status,
            actor_id=actor_id,
            note=note,
            version=version,
        )
        self.session.add(change)
        await self.session.flush()
        return change

    async def list_history(self, request_id: str) -> list[RequestStatusChange]:
        result = await self.session.execute(
            select(RequestStatusChange)
            .where(RequestStatusChange.request_id == request_id)
            .order_by(RequestStatusChange.id)
        )
        return list(result.scalars())

    async def list_escalation_candidates(self, now: datetime, *, limit: int) -> list[ServiceRequest]:
        """Open, unescalated requests past their deadline that never left the status the deadline was armed in."""

        result = await self.session.execute(
            select(ServiceRequest)
            .where(
                ServiceRequest.escalation_deadline.is_not(None),
                ServiceRequest.escalation_deadline <= now,
                ServiceRequest.escalated_at.is_(None),
                ServiceRequest.status == ServiceRequest.escalation_status,
                ServiceRequest.status.not_in([status.value for status in TERMINAL_STATUSES]),
            )
            .order_by(ServiceRequest.escalation_deadline, ServiceRequest.id)
            .limit(limit)
        )
        return list(result.scalars())

    async def claim_escalation(self, request_id: str, *, observed_status: str, escalated_at: datetime) -> bool:
        """Set the escalation marker unless it is already set or the status has moved on.

        Leaves ``version`` and ``updated_at`` alone: the marker is not a state mutation.
        """

        result = await self.session.execute(
            update(ServiceRequest)
            .where(
                ServiceRequest.id == request_id,
                ServiceRequest.escalated_at.is_(None),
                ServiceRequest.status == observed_status,
                ServiceRequest.escalation_status == observed_status,
            )
            .values(escalated_at=escalated_at)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def release_escalation(self, request_id: str, *, escalated_at: datetime) -> bool:
        """Clear a marker written by ``claim_escalation`` so the next sweep retries it."""

        result = await self.session.execute(
            update(ServiceRequest)
            .where(ServiceRequest.id == request_id, ServiceRequest.escalated_at == escalated_at)
            .values(escalated_at=None)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class RuleRepository:
    """Persistence helpers for routing rules."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_rule(self, **values: Any) -> RoutingRule:
        rule = RoutingRule(**values)
        self.session.add(rule)
        await self.session.flush()
        await self.session.refresh(rule)
        return rule

    async def get_rule(self, rule_id: int) -> RoutingRule | None:
        return await self.session.get(RoutingRule, rule_id)

    async def list_rules(
        self,
        *,
        applies_to_type: str | None,
        include_inactive: bool,
    ) -> list[RoutingRule]:
        stmt = select(RoutingRule).order_by(
            RoutingRule.priority.desc(), RoutingRule.created_at.asc(), RoutingRule.id.asc()
        )
        if applies_to_type is not None:
            stmt = stmt.where(RoutingRule.applies_to_type == applies_to_type)
        if not include_inactive:
            stmt = stmt.where(RoutingRule.is_active.is_(True))
        result = await self.session.execute(stmt)
        return list(result.scalars())

    async def active_rules_for(self, request_type: str) -> list[RoutingRule]:
        result = await self.session.execute(
            select(RoutingRule)
            .where(
                RoutingRule.is_active.is_(True),
                or_(RoutingRule.applies_to_type.is_(None), RoutingRule.applies_to_type == request_type),
            )
            .order_by(RoutingRule.priority.desc(), RoutingRule.created_at.asc(), RoutingRule.id.asc())
        )
        return list(result.scalars())

    async def update_rule(self, rule: RoutingRule, values: dict[str, Any]) -> RoutingRule:
        for key, value in values.items():
            setattr(rule, key, value)
        rule.updated_at = _now_utc()
        await self.session.flush()
        await self.session.refresh(rule)
        return rule


class InventoryRepository:
    """Persistence helpers for inventory items and their ledger entries."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def create_item(self, *, name: str, minimum_quantity: int) -> InventoryItem:
        item = InventoryItem(name=name, minimum_quantity=minimum_quantity, current_quantity=0)
        self.session.add(item)
        await self.session.flush()
        await self.session.refresh(item)
        return item

    async def get_item(self, item_id: int, *, for_update: bool = False) -> InventoryItem | None:
        stmt = select(InventoryItem).where(InventoryItem.id == item_id).execution_options(populate_existing=True)
        if for_update:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_items(self, item_ids: list[int]) -> dict[int, InventoryItem]:
        if not item_ids:
            return {}
        result = await self.session.execute(select(InventoryItem).where(InventoryItem.id.in_(item_ids)))
        return {item.id: item for item in result.scalars()}

    async def find_by_name(self, name: str) -> InventoryItem | None:
        result = await self.session.execute(select(InventoryItem).where(InventoryItem.name == name))
        return result.scalar_one_or_none()

    async def list_items(self, *, below_minimum: bool, limit: int, offset: int) -> tuple[list[InventoryItem], int]:
        base: Select[tuple[InventoryItem]] = select(InventoryItem).order_by(InventoryItem.name, InventoryItem.id)
        count: Select[tuple[int]] = select(func.count(InventoryItem.id))
        if below_minimum:
            clause = InventoryItem.current_quantity < InventoryItem.minimum_quantity
            base = base.where(clause)
            count = count.where(clause)
        total = (await self.session.execute(count)).scalar_one()
        result = await self.session.execute(base.offset(offset).limit(limit))
        return list(result.scalars()), total

    async def latest_entry(self, item_id: int) -> LedgerEntry | None:
        result = await self.session.execute(
            select(LedgerEntry)
            .where(LedgerEntry.item_id == item_id)
            .order_by(LedgerEntry.sequence.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def add_entry(
        self,
        *,
        item_id: int,
        sequence: int,
        delta: int,
        resulting_quantity: int,
        transaction_type: str,
        reference_id: str | None,
        performed_by: str,
        notes: str | None,
    ) -> LedgerEntry:
        entry = LedgerEntry(
            item_id=item_id,
            sequence=sequence,
            delta=delta,
            resulting_quantity=resulting_quantity,
            transaction_type=transaction_type,
            reference_id=reference_id,
            performed_by=performed_by,
            notes=notes,
        )
        self.session.add(entry)
        await self.session.flush()
        await self.session.refresh(entry)
        return entry

    async def set_cached_quantity(self, item: InventoryItem, quantity: int) -> InventoryItem:
        item.current_quantity = quantity
        item.updated_at = _now_utc()
        await self.session.flush()
        return item

    async def list_entries(
        self,
        item_id: int,
        *,
        reference_id: str | None = None,
        limit: int | None = None,
        offset: int = 0,
    ) -> list[LedgerEntry]:
        stmt = select(LedgerEntry).where(LedgerEntry.item_id == item_id).order_by(LedgerEntry.sequence)
        if reference_id is not None:
            stmt = stmt.where(LedgerEntry.reference_id == reference_id)
        stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        result = await self.session.execute(stmt)
        return list(result.scalars())

    async def ledger_sum(self, item_id: int) -> int:
        result = await self.session.execute(
            select(func.coalesce(func.sum(LedgerEntry.delta), 0)).where(LedgerEntry.item_id == item_id)
        )
        return int(result.scalar_one())
