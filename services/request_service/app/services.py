"""Domain services for the request lifecycle."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common import get_tracer, lifespan_session, record_refusal

from .errors import (
    ConcurrentModification,
    InsufficientStock,
    InvalidTransition,
    ItemNotFound,
    RequestNotFound,
)
from .events import RequestEventPublisher
from .ledger import InventoryLedger, TransactionType
from .locks import KeyedLock
from .metrics import (
    EVENT_DELIVERY_FAILURES_TOTAL,
    LEDGER_ADJUSTMENTS_TOTAL,
    REQUEST_TRANSITION_REJECTIONS_TOTAL,
    REQUEST_TRANSITIONS_TOTAL,
    REQUESTS_CREATED_TOTAL,
    REQUESTS_ROUTED_TOTAL,
)
from .models import RequestStatusChange, ServiceRequest
from .repository import InventoryRepository, RequestRepository, RuleRepository
from .routing import RoutingDecision, route
from .schemas import RequestCreate
from .state_machine import (
    SYSTEM_ACTOR,
    Actor,
    RequestStatus,
    check_archive,
    check_transition,
)

_LOGGER = logging.getLogger(__name__)
_TRACER = get_tracer(__name__)

_NOTE_STATUSES = frozenset({RequestStatus.REJECTED, RequestStatus.CANCELLED, RequestStatus.COMPLETED})

Clock = Callable[[], datetime]


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _rejection_reason(exc: Exception) -> str:
    if isinstance(exc, ConcurrentModification):
        return "stale_version"
    if isinstance(exc, InsufficientStock):
        return "insufficient_stock"
    if isinstance(exc, InvalidTransition):
        return "invalid_transition"
    return "invalid_request"


class RequestService:
    """Creates requests and moves them through their fulfillment states.

    Each public mutation is one transactional unit. Mutations of the same
    request are serialised by an in-process lock and by the version guard;
    the ledger's item locks are taken inside the request lock, in item id
    order, and held until the unit commits.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        ledger: InventoryLedger,
        *,
        locks: KeyedLock | None = None,
        event_publisher: RequestEventPublisher | None = None,
        clock: Clock = _now_utc,
    ) -> None:
        self._session_factory = session_factory
        self.ledger = ledger
        self.locks = locks or KeyedLock()
        self.event_publisher = event_publisher
        self._clock = clock

    async def create_request(self, payload: RequestCreate, actor: Actor) -> ServiceRequest:
        """Route, persist in ``submitted`` and auto-approve when the matched rule says so."""

        now = self._clock()
        request_type = payload.type.value
        with _TRACER.start_as_current_span("requests.create") as span:
            span.set_attribute("request.type", request_type)
            async with lifespan_session(self._session_factory) as session:
                rules = await RuleRepository(session).active_rules_for(request_type)
                decision = route(request_type, payload.fields, rules, now=now)
                await self._check_items(session, [line.item_id for line in payload.line_items])

                repository = RequestRepository(session)
                initial_status = RequestStatus.APPROVED if decision.auto_approve else RequestStatus.SUBMITTED
                assignment = decision.assignment
                request = await repository.create_request(
                    request_type=request_type,
                    title=payload.title,
                    requester_id=actor.principal_id,
                    fields=dict(payload.fields),
                    status=RequestStatus.SUBMITTED.value,
                    priority=payload.priority,
                    assigned_role=assignment.role if assignment else None,
                    assigned_principal=assignment.principal if assignment else None,
                    matched_rule_id=decision.matched_rule_id,
                    auto_approved=decision.auto_approve,
                    escalation_deadline=decision.escalation_deadline,
                    escalation_status=initial_status.value if decision.escalation_deadline else None,
                    line_items=[(line.item_id, line.quantity) for line in payload.line_items],
                    created_at=now,
                )
                await repository.add_status_change(
                    request_id=request.id,
                    from_status=None,
                    to_status=RequestStatus.SUBMITTED.value,
                    actor_id=actor.principal_id,
                    note=None,
                    version=request.version,
                )
                if decision.auto_approve:
                    request = await self._auto_approve(repository, request, decision)
            span.set_attribute("request.id", request.id)

        REQUESTS_CREATED_TOTAL.labels(type=request_type, auto_approved=str(request.auto_approved).lower()).inc()
        REQUESTS_ROUTED_TOTAL.labels(outcome="matched" if decision.matched else "unmatched").inc()
        _LOGGER.info(
            "Created %s request %s (rule=%s, status=%s)",
            request_type,
            request.id,
            decision.matched_rule_id,
            request.status,
        )

        if decision.assignment is not None:
            await self._publish("assigned", request.id, lambda publisher: publisher.assigned(request))
        if request.status != RequestStatus.SUBMITTED.value:
            await self._publish(
                "status_changed",
                request.id,
                lambda publisher: publisher.status_changed(request, RequestStatus.SUBMITTED.value, SYSTEM_ACTOR.principal_id),
            )
        return request

    async def _check_items(self, session: AsyncSession, item_ids: list[int]) -> None:
        if len(item_ids) != len(set(item_ids)):
            raise ValueError("Each inventory item may appear only once per request")
        found = await InventoryRepository(session).get_items(item_ids)
        missing = sorted(set(item_ids) - set(found))
        if missing:
            raise ItemNotFound(missing[0])

    async def _auto_approve(
        self,
        repository: RequestRepository,
        request: ServiceRequest,
        decision: RoutingDecision,
    ) -> ServiceRequest:
        target = check_transition(request, RequestStatus.APPROVED, SYSTEM_ACTOR)
        expected_version = request.version
        if not await repository.compare_and_set(request.id, expected_version, {"status": target.value}):
            raise ConcurrentModification("Request", request.id, expected_version=expected_version)
        await repository.add_status_change(
            request_id=request.id,
            from_status=RequestStatus.SUBMITTED.value,
            to_status=target.value,
            actor_id=SYSTEM_ACTOR.principal_id,
            note=f"Auto-approved by routing rule {decision.matched_rule_id}",
            version=expected_version + 1,
        )
        refreshed = await repository.get_request(request.id)
        if refreshed is None:
            raise RequestNotFound(request.id)
        return refreshed

    async def apply(
        self,
        request_id: str,
        target: RequestStatus | str,
        actor: Actor,
        expected_version: int,
        *,
        note: str | None = None,
        fulfilled_quantities: Mapping[int, int] | None = None,
    ) -> ServiceRequest:
        """Move ``request_id`` to ``target`` if ``expected_version`` is current and the edge is allowed.

        Raises ``ConcurrentModification`` for a stale version, ``InvalidTransition``
        for an edge the actor may not take and ``InsufficientStock`` when a
        ``ready`` deduction would overdraw an item. Any failure leaves the
        request, its history and the ledger untouched.
        """

        target_value = target.value if isinstance(target, RequestStatus) else str(target).strip().lower()
        with _TRACER.start_as_current_span("requests.apply") as span:
            span.set_attribute("request.id", request_id)
            span.set_attribute("request.target_status", target_value)
            try:
                request, previous_status = await self._apply_locked(
                    request_id,
                    target_value,
                    actor,
                    expected_version,
                    note=note,
                    fulfilled_quantities=fulfilled_quantities,
                )
            except (ConcurrentModification, InvalidTransition, InsufficientStock, ValueError) as exc:
                reason = _rejection_reason(exc)
                record_refusal(span, exc, reason)
                REQUEST_TRANSITION_REJECTIONS_TOTAL.labels(reason=reason).inc()
                _LOGGER.info("Transition of request %s to %s refused: %s", request_id, target_value, exc)
                raise

        REQUEST_TRANSITIONS_TOTAL.labels(type=request.type, status=request.status).inc()
        if request.status == RequestStatus.READY.value:
            for line in request.line_items:
                if line.quantity_fulfilled:
                    LEDGER_ADJUSTMENTS_TOTAL.labels(transaction_type=TransactionType.FULFILLMENT.value).inc()
        _LOGGER.info(
            "Request %s moved %s -> %s by %s (version %s)",
            request.id,
            previous_status,
            request.status,
            actor.principal_id,
            request.version,
        )
        await self._publish(
            "status_changed",
            request.id,
            lambda publisher: publisher.status_changed(request, previous_status, actor.principal_id),
        )
        return request

    async def _apply_locked(
        self,
        request_id: str,
        target: str,
        actor: Actor,
        expected_version: int,
        *,
        note: str | None,
        fulfilled_quantities: Mapping[int, int] | None,
    ) -> tuple[ServiceRequest, str]:
        async with self.locks.hold(request_id):
            item_ids: list[int] = []
            if target == RequestStatus.READY.value:
                async with lifespan_session(self._session_factory) as session:
                    item_ids = await RequestRepository(session).get_line_item_ids(request_id)

            async with self.ledger.locks.hold_many(item_ids):
                try:
                    async with lifespan_session(self._session_factory) as session:
                        return await self._apply_in_session(
                            session,
                            request_id,
                            target,
                            actor,
                            expected_version,
                            note=note,
                            fulfilled_quantities=fulfilled_quantities,
                        )
                except IntegrityError as exc:
                    raise ConcurrentModification("Request", request_id) from exc

    async def _apply_in_session(
        self,
        session: AsyncSession,
        request_id: str,
        target: str,
        actor: Actor,
        expected_version: int,
        *,
        note: str | None,
        fulfilled_quantities: Mapping[int, int] | None,
    ) -> tuple[ServiceRequest, str]:
        repository = RequestRepository(session)
        request = await repository.get_request(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        if request.version != expected_version:
            raise ConcurrentModification(
                "Request",
                request_id,
                expected_version=expected_version,
                actual_version=request.version,
            )

        wanted = check_transition(request, target, actor)
        if fulfilled_quantities and wanted is not RequestStatus.READY:
            raise ValueError("Fulfilled quantities only apply when a request becomes ready")

        previous_status = request.status
        values: dict[str, Any] = {"status": wanted.value}
        if wanted is RequestStatus.RECEIVED:
            values["fulfiller_id"] = actor.principal_id
        if wanted in _NOTE_STATUSES and note is not None:
            values["resolution_note"] = note

        if not await repository.compare_and_set(request.id, expected_version, values):
            raise ConcurrentModification("Request", request_id, expected_version=expected_version)
        if wanted is RequestStatus.READY:
            await self._fulfil(session, repository, request, actor, fulfilled_quantities or {})
        await repository.add_status_change(
            request_id=request.id,
            from_status=previous_status,
            to_status=wanted.value,
            actor_id=actor.principal_id,
            note=note,
            version=expected_version + 1,
        )

        refreshed = await repository.get_request(request.id)
        if refreshed is None:
            raise RequestNotFound(request_id)
        return refreshed, previous_status

    async def _fulfil(
        self,
        session: AsyncSession,
        repository: RequestRepository,
        request: ServiceRequest,
        actor: Actor,
        quantities: Mapping[int, int],
    ) -> None:
        """Deduct every line item from the ledger; the caller holds the item locks."""

        requested = {line.item_id for line in request.line_items}
        unknown = sorted(set(quantities) - requested)
        if unknown:
            raise ValueError(f"Items {unknown} are not on request {request.id}")

        for line in request.line_items:
            quantity = quantities.get(line.item_id, line.quantity_requested)
            if quantity < 0 or quantity > line.quantity_requested:
                raise ValueError(
                    f"Fulfilled quantity for item {line.item_id} must be between 0 and {line.quantity_requested}"
                )
            await repository.set_fulfilled_quantity(line, quantity)
            if quantity == 0:
                continue
            await self.ledger.append(
                session,
                line.item_id,
                -quantity,
                TransactionType.FULFILLMENT,
                actor_id=actor.principal_id,
                reference_id=request.id,
                notes=f"Fulfilled for request {request.id}",
            )

    async def archive(self, request_id: str, actor: Actor, expected_version: int) -> ServiceRequest:
        async with self.locks.hold(request_id):
            async with lifespan_session(self._session_factory) as session:
                repository = RequestRepository(session)
                request = await repository.get_request(request_id)
                if request is None:
                    raise RequestNotFound(request_id)
                if request.version != expected_version:
                    raise ConcurrentModification(
                        "Request",
                        request_id,
                        expected_version=expected_version,
                        actual_version=request.version,
                    )
                check_archive(request, actor)
                if not await repository.compare_and_set(request_id, expected_version, {"archived": True}):
                    raise ConcurrentModification("Request", request_id, expected_version=expected_version)
                archived = await repository.get_request(request_id)
        if archived is None:
            raise RequestNotFound(request_id)
        _LOGGER.info("Request %s archived by %s", request_id, actor.principal_id)
        return archived

    async def get_request(self, request_id: str) -> ServiceRequest:
        async with lifespan_session(self._session_factory) as session:
            request = await RequestRepository(session).get_request(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    async def list_history(self, request_id: str) -> list[RequestStatusChange]:
        async with lifespan_session(self._session_factory) as session:
            repository = RequestRepository(session)
            if await repository.get_request(request_id) is None:
                raise RequestNotFound(request_id)
            return await repository.list_history(request_id)

    async def _publish(
        self,
        event: str,
        request_id: str,
        send: Callable[[RequestEventPublisher], Awaitable[None]],
    ) -> None:
        """Deliver a notification after commit; a failed delivery is logged, never raised."""

        if self.event_publisher is None:
            return
        try:
            await send(self.event_publisher)
        except Exception:
            EVENT_DELIVERY_FAILURES_TOTAL.labels(event=event).inc()
            _LOGGER.exception("Failed to publish %s event for request %s", event, request_id)
