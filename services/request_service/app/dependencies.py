"""Dependency helpers for the request service."""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import cast

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common import lifespan_session

from .escalation import EscalationScheduler
from .ledger import InventoryLedger
from .repository import InventoryRepository, RequestRepository, RuleRepository
from .rules import RuleStore
from .services import RequestService
from .state_machine import SYSTEM_PRINCIPAL, Actor


async def get_session(request: Request) -> AsyncIterator[AsyncSession]:
    session_factory: async_sessionmaker[AsyncSession] = request.app.state.session_factory
    async with lifespan_session(session_factory) as session:
        yield session


def get_request_repository(session: AsyncSession = Depends(get_session)) -> RequestRepository:
    return RequestRepository(session)


def get_inventory_repository(session: AsyncSession = Depends(get_session)) -> InventoryRepository:
    return InventoryRepository(session)


def get_rule_store(session: AsyncSession = Depends(get_session)) -> RuleStore:
    return RuleStore(RuleRepository(session))


def _service_unavailable(component: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail=f"{component} is not configured",
    )


def get_request_service(request: Request) -> RequestService:
    service = getattr(request.app.state, "request_service", None)
    if service is None:
        raise _service_unavailable("Request service")
    return cast(RequestService, service)


def get_ledger(request: Request) -> InventoryLedger:
    ledger = getattr(request.app.state, "ledger", None)
    if ledger is None:
        raise _service_unavailable("Inventory ledger")
    return cast(InventoryLedger, ledger)


def get_scheduler(request: Request) -> EscalationScheduler:
    scheduler = getattr(request.app.state, "escalation_scheduler", None)
    if scheduler is None:
        raise _service_unavailable("Escalation scheduler")
    return cast(EscalationScheduler, scheduler)


def get_actor(
    actor_id: str | None = Header(default=None, alias="X-Actor-Id"),
    actor_roles: str | None = Header(default=None, alias="X-Actor-Roles"),
) -> Actor:
    """Identity of the caller, taken as-is from the request headers."""

    principal = (actor_id or "").strip()
    if not principal:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Actor-Id header is required")
    if principal == SYSTEM_PRINCIPAL:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="The system principal is reserved")
    roles = frozenset(role.strip().lower() for role in (actor_roles or "").split(",") if role.strip())
    return Actor(principal_id=principal, roles=roles)
