"""Background sweep that raises an escalation for requests stuck past their deadline."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.common import get_tracer, lifespan_session

from .events import RequestEventPublisher
from .metrics import ESCALATION_FAILURES_TOTAL, ESCALATIONS_FIRED_TOTAL
from .models import ServiceRequest
from .repository import RequestRepository

_LOGGER = logging.getLogger(__name__)
_TRACER = get_tracer(__name__)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class EscalationScheduler:
    """Finds overdue requests and emits one ``escalated`` event per request.

    The scheduler never changes a request's status, version or the ledger. It
    commits the ``escalated_at`` marker in its own short transaction and emits
    afterwards, outside any transaction. A failed emit clears the marker again
    so the request stays eligible for the next sweep.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        event_publisher: RequestEventPublisher | None,
        *,
        interval_seconds: float = 300.0,
        batch_size: int = 100,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        self._session_factory = session_factory
        self.event_publisher = event_publisher
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self._clock = clock
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def sweep(self, now: datetime | None = None) -> list[str]:
        """Escalate every eligible request; return the ids escalated by this call."""

        moment = now or self._clock()
        with _TRACER.start_as_current_span("requests.escalation_sweep"):
            async with lifespan_session(self._session_factory) as session:
                candidates = await RequestRepository(session).list_escalation_candidates(
                    moment, limit=self.batch_size
                )

            escalated: list[str] = []
            for candidate in candidates:
                if await self._escalate_one(candidate, moment):
                    escalated.append(candidate.id)

        if escalated:
            _LOGGER.info("Escalation sweep raised %d request(s)", len(escalated))
        return escalated

    async def _escalate_one(self, request: ServiceRequest, now: datetime) -> bool:
        try:
            async with lifespan_session(self._session_factory) as session:
                claimed = await RequestRepository(session).claim_escalation(
                    request.id,
                    observed_status=request.status,
                    escalated_at=now,
                )
        except Exception:
            ESCALATION_FAILURES_TOTAL.labels(stage="claim").inc()
            _LOGGER.exception("Failed to claim escalation of request %s", request.id)
            return False
        if not claimed:
            return False

        if self.event_publisher is not None:
            try:
                await self.event_publisher.escalated(request, now)
            except Exception:
                ESCALATION_FAILURES_TOTAL.labels(stage="emit").inc()
                _LOGGER.exception("Failed to emit escalation of request %s; releasing it", request.id)
                await self._release(request.id, now)
                return False

        ESCALATIONS_FIRED_TOTAL.labels(type=request.type).inc()
        _LOGGER.warning(
            "Request %s escalated: still %s after deadline %s",
            request.id,
            request.status,
            request.escalation_deadline,
        )
        return True

    async def _release(self, request_id: str, escalated_at: datetime) -> None:
        try:
            async with lifespan_session(self._session_factory) as session:
                await RequestRepository(session).release_escalation(request_id, escalated_at=escalated_at)
        except Exception:
            ESCALATION_FAILURES_TOTAL.labels(stage="release").inc()
            _LOGGER.exception("Failed to release escalation marker of request %s", request_id)

    async def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="escalation-sweep")

    async def stop(self) -> None:
        if self._task is None:
            return
        self._stopping.set()
        try:
            await self._task
        finally:
            self._task = None

    async def _run(self) -> None:
        while not self._stopping.is_set():
            try:
                await self.sweep()
            except Exception:
                ESCALATION_FAILURES_TOTAL.labels(stage="sweep").inc()
                _LOGGER.exception("Escalation sweep failed")
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
