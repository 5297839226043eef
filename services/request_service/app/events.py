"""Event publishing helpers for the request service."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from services.common.events import EventProducer

from .models import ServiceRequest
from .repository import load_json

ASSIGNED_TOPIC = "requests.request.assigned.v1"
STATUS_CHANGED_TOPIC = "requests.request.status_changed.v1"
ESCALATED_TOPIC = "requests.request.escalated.v1"


def _iso(dt: datetime | None) -> str | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    else:
        dt = dt.astimezone(timezone.utc)
    return dt.isoformat()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _request_payload(request: ServiceRequest) -> dict[str, Any]:
    return {
        "id": request.id,
        "type": request.type,
        "title": request.title,
        "requesterId": request.requester_id,
        "status": request.status,
        "priority": request.priority,
        "assignedRole": request.assigned_role,
        "assignedPrincipal": request.assigned_principal,
        "autoApproved": request.auto_approved,
        "fields": load_json(request.fields_json),
        "escalationDeadline": _iso(request.escalation_deadline),
        "version": request.version,
        "createdAt": _iso(request.created_at),
        "updatedAt": _iso(request.updated_at),
    }


class RequestEventPublisher:
    """Publishes request lifecycle events via the configured event producer."""

    def __init__(self, producer: EventProducer | None) -> None:
        self._producer = producer

    async def _emit(self, topic: str, payload: dict[str, Any]) -> None:
        if self._producer is None:
            return
        envelope = {
            "eventType": topic,
            "occurredAt": _now_iso(),
            **payload,
        }
        await self._producer.send(topic, envelope)

    async def assigned(self, request: ServiceRequest) -> None:
        await self._emit(ASSIGNED_TOPIC, {"request": _request_payload(request)})

    async def status_changed(
        self,
        request: ServiceRequest,
        previous_status: str,
        actor_id: str,
    ) -> None:
        await self._emit(
            STATUS_CHANGED_TOPIC,
            {
                "request": _request_payload(request),
                "previousStatus": previous_status,
                "currentStatus": request.status,
                "actorId": actor_id,
            },
        )

    async def escalated(self, request: ServiceRequest, escalated_at: datetime) -> None:
        await self._emit(
            ESCALATED_TOPIC,
            {
                "request": _request_payload(request),
                "escalatedAt": _iso(escalated_at),
                "overdueSince": _iso(request.escalation_deadline),
            },
        )
