"""Per-type transition tables for service requests.

This module is the only place that knows which status edges exist. The
request service consults ``check_transition`` before every status write, so
no other code path can move a request along an edge that is not listed here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Protocol

from .errors import InvalidTransition


class RequestType(str, Enum):
    SUPPLY_ORDER = "supply-order"
    KEY_REQUEST = "key-request"
    ROUTED_FORM = "routed-form"


class RequestStatus(str, Enum):
    SUBMITTED = "submitted"
    UNDER_REVIEW = "under_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    RECEIVED = "received"
    PICKING = "picking"
    READY = "ready"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({RequestStatus.COMPLETED, RequestStatus.CANCELLED, RequestStatus.REJECTED})
CANCELLABLE_STATUSES = frozenset({RequestStatus.SUBMITTED, RequestStatus.UNDER_REVIEW, RequestStatus.RECEIVED})

SYSTEM_PRINCIPAL = "system"


@dataclass(frozen=True)
class Actor:
    """Opaque identity of whoever performs a mutation."""

    principal_id: str
    roles: frozenset[str] = field(default_factory=frozenset)

    @property
    def is_system(self) -> bool:
        return self.principal_id == SYSTEM_PRINCIPAL


SYSTEM_ACTOR = Actor(SYSTEM_PRINCIPAL, frozenset({SYSTEM_PRINCIPAL}))


class TransitionSubject(Protocol):
    id: str
    type: str
    status: str
    requester_id: str
    archived: bool


_S = RequestStatus

_REVIEW_EDGES: dict[RequestStatus, frozenset[RequestStatus]] = {
    _S.SUBMITTED: frozenset({_S.UNDER_REVIEW}),
    _S.UNDER_REVIEW: frozenset({_S.APPROVED, _S.REJECTED}),
}

_STAFF_EDGES: dict[RequestType, dict[RequestStatus, frozenset[RequestStatus]]] = {
    RequestType.SUPPLY_ORDER: {
        **_REVIEW_EDGES,
        _S.APPROVED: frozenset({_S.RECEIVED}),
        _S.RECEIVED: frozenset({_S.PICKING}),
        _S.PICKING: frozenset({_S.READY}),
        _S.READY: frozenset({_S.COMPLETED}),
    },
    RequestType.KEY_REQUEST: {
        **_REVIEW_EDGES,
        _S.APPROVED: frozenset({_S.READY}),
        _S.READY: frozenset({_S.COMPLETED}),
    },
    RequestType.ROUTED_FORM: {
        **_REVIEW_EDGES,
        _S.APPROVED: frozenset({_S.COMPLETED}),
    },
}

# Taken only by the system actor when a routing rule auto-approves at creation.
_SYSTEM_EDGES = frozenset({(_S.SUBMITTED, _S.APPROVED)})


def statuses_for(request_type: RequestType) -> frozenset[RequestStatus]:
    """Every status a request of this type can ever be in."""

    edges = _STAFF_EDGES[request_type]
    reachable = set(edges)
    for targets in edges.values():
        reachable.update(targets)
    reachable.add(_S.CANCELLED)
    return frozenset(reachable)


def is_terminal(status: RequestStatus | str) -> bool:
    return RequestStatus(status) in TERMINAL_STATUSES


def allowed_targets(
    request_type: RequestType | str,
    status: RequestStatus | str,
    actor: Actor,
    requester_id: str,
) -> frozenset[RequestStatus]:
    """Targets ``actor`` may move a request to from ``status``."""

    kind = RequestType(request_type)
    current = RequestStatus(status)
    targets = set(_STAFF_EDGES[kind].get(current, frozenset()))
    if actor.is_system:
        targets.update(target for source, target in _SYSTEM_EDGES if source is current)
    if current in CANCELLABLE_STATUSES and current in statuses_for(kind) and actor.principal_id == requester_id:
        targets.add(_S.CANCELLED)
    return frozenset(targets)


def check_transition(subject: TransitionSubject, target: RequestStatus | str, actor: Actor) -> RequestStatus:
    """Validate ``subject.status -> target`` for ``actor``; return the target status.

    Raises ``InvalidTransition`` without side effects when the edge is not allowed.
    """

    current = RequestStatus(subject.status)
    try:
        wanted = RequestStatus(target)
    except ValueError:
        raise InvalidTransition(subject.id, current.value, str(target), "unknown status") from None

    if current in TERMINAL_STATUSES:
        raise InvalidTransition(subject.id, current.value, wanted.value, "request is closed")

    if wanted is _S.CANCELLED:
        if current not in CANCELLABLE_STATUSES:
            raise InvalidTransition(subject.id, current.value, wanted.value, "request can no longer be cancelled")
        if actor.principal_id != subject.requester_id:
            raise InvalidTransition(subject.id, current.value, wanted.value, "only the requester may cancel")

    if wanted not in allowed_targets(subject.type, current, actor, subject.requester_id):
        raise InvalidTransition(subject.id, current.value, wanted.value)
    return wanted


def check_archive(subject: TransitionSubject, actor: Actor) -> None:
    """Archiving is a flag on completed requests, set once, by the requester only."""

    current = RequestStatus(subject.status)
    if current is not _S.COMPLETED:
        raise InvalidTransition(subject.id, current.value, "archived", "only completed requests can be archived")
    if subject.archived:
        raise InvalidTransition(subject.id, current.value, "archived", "request is already archived")
    if actor.principal_id != subject.requester_id:
        raise InvalidTransition(subject.id, current.value, "archived", "only the requester may archive")
