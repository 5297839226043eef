from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common import create_tables, dispose_engines, get_session_factory, lifespan_session
from services.request_service.app.escalation import EscalationScheduler
from services.request_service.app.ledger import InventoryLedger
from services.request_service.app.locks import KeyedLock
from services.request_service.app.models import Base, InventoryItem, RoutingRule
from services.request_service.app.repository import RuleRepository
from services.request_service.app.rules import RuleStore
from services.request_service.app.schemas import LineItemCreate, RequestCreate
from services.request_service.app.services import RequestService
from services.request_service.app.state_machine import Actor

START = datetime(2024, 3, 4, 9, 0, tzinfo=timezone.utc)

REQUESTER = Actor("alice", frozenset({"staff"}))
CLERK = Actor("bob", frozenset({"stockroom"}))
OTHER = Actor("carol", frozenset({"staff"}))


class FakeClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class StubEventPublisher:
    def __init__(self) -> None:
        self.events: list[dict[str, Any]] = []
        self.failing: set[str] = set()
        self.escalation_delay = 0.0
        self.escalation_started = asyncio.Event()

    def _record(self, event: str, **payload: Any) -> None:
        if event in self.failing:
            raise RuntimeError(f"{event} delivery failed")
        self.events.append({"event": event, **payload})

    def of_type(self, event: str) -> list[dict[str, Any]]:
        return [item for item in self.events if item["event"] == event]

    async def assigned(self, request) -> None:
        self._record(
            "assigned",
            requestId=request.id,
            assignedRole=request.assigned_role,
            assignedPrincipal=request.assigned_principal,
        )

    async def status_changed(self, request, previous_status: str, actor_id: str) -> None:
        self._record(
            "status_changed",
            requestId=request.id,
            previousStatus=previous_status,
            currentStatus=request.status,
            actorId=actor_id,
        )

    async def escalated(self, request, escalated_at: datetime) -> None:
        self.escalation_started.set()
        if self.escalation_delay:
            await asyncio.sleep(self.escalation_delay)
        self._record("escalated", requestId=request.id, status=request.status)


@dataclass
class EngineHarness:
    start: ClassVar[datetime] = START
    requester: ClassVar[Actor] = REQUESTER
    clerk: ClassVar[Actor] = CLERK
    other: ClassVar[Actor] = OTHER

    session_factory: async_sessionmaker[AsyncSession]
    ledger: InventoryLedger
    service: RequestService
    scheduler: EscalationScheduler
    publisher: StubEventPublisher
    clock: FakeClock
    created_rules: list[RoutingRule] = field(default_factory=list)

    async def add_rule(self, **overrides: Any) -> RoutingRule:
        values: dict[str, Any] = {
            "name": "rule",
            "applies_to_type": None,
            "priority": 0,
            "is_active": True,
            "condition": None,
            "assign_to_role": None,
            "assign_to_principal": None,
            "auto_approve": False,
            "escalation_hours": None,
        }
        values.update(overrides)
        async with lifespan_session(self.session_factory) as session:
            rule = await RuleStore(RuleRepository(session)).create_rule(**values)
        self.created_rules.append(rule)
        return rule

    async def add_item(self, name: str, quantity: int, minimum: int = 0) -> InventoryItem:
        return await self.ledger.create_item(
            name=name,
            minimum_quantity=minimum,
            initial_quantity=quantity,
            actor_id="stock-admin",
        )

    async def submit(
        self,
        request_type: str = "supply-order",
        *,
        fields: dict[str, Any] | None = None,
        items: list[tuple[int, int]] | None = None,
        actor: Actor = REQUESTER,
        title: str = "Test request",
    ):
        payload = RequestCreate(
            type=request_type,
            title=title,
            fields=fields or {},
            line_items=[LineItemCreate(item_id=item_id, quantity=quantity) for item_id, quantity in items or []],
        )
        return await self.service.create_request(payload, actor)

    async def walk(self, request, *targets: str, actor: Actor = CLERK):
        """Apply ``targets`` in order, each with the version the previous step returned."""

        for target in targets:
            request = await self.service.apply(request.id, target, actor, request.version)
        return request


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'requests.db'}"


@pytest.fixture
def engine_env(database_url):
    @asynccontextmanager
    async def _open():
        await create_tables(database_url, Base.metadata)
        session_factory = get_session_factory(database_url)
        clock = FakeClock()
        publisher = StubEventPublisher()
        ledger = InventoryLedger(session_factory, KeyedLock())
        service = RequestService(
            session_factory,
            ledger,
            locks=KeyedLock(),
            event_publisher=publisher,  # type: ignore[arg-type]
            clock=clock,
        )
        scheduler = EscalationScheduler(
            session_factory,
            publisher,  # type: ignore[arg-type]
            interval_seconds=0.05,
            batch_size=50,
            clock=clock,
        )
        try:
            yield EngineHarness(session_factory, ledger, service, scheduler, publisher, clock)
        finally:
            await scheduler.stop()
            await dispose_engines()

    return _open
