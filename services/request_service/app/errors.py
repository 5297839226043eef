"""Typed failures raised by the request lifecycle engine.

Every guard failure is raised straight to the immediate caller; nothing in
the engine retries or swallows these. A failed mutation leaves persisted
state exactly as it was before the call.
"""

from __future__ import annotations


class RequestEngineError(Exception):
    """Base class for request engine failures."""


class RequestNotFound(RequestEngineError):
    def __init__(self, request_id: str) -> None:
        super().__init__(f"Request {request_id} not found")
        self.request_id = request_id


class ItemNotFound(RequestEngineError):
    def __init__(self, item_id: int) -> None:
        super().__init__(f"Inventory item {item_id} not found")
        self.item_id = item_id


class RuleNotFound(RequestEngineError):
    def __init__(self, rule_id: int) -> None:
        super().__init__(f"Routing rule {rule_id} not found")
        self.rule_id = rule_id


class InvalidTransition(RequestEngineError):
    """The requested edge is not in the request type's transition table, or the actor may not take it."""

    def __init__(self, request_id: str, current: str, target: str, reason: str | None = None) -> None:
        message = f"Cannot move request {request_id} from {current} to {target}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.request_id = request_id
        self.current = current
        self.target = target
        self.reason = reason


class ConcurrentModification(RequestEngineError):
    """The caller's version is stale; re-read and retry."""

    def __init__(
        self,
        entity: str,
        entity_id: object,
        *,
        expected_version: int | None = None,
        actual_version: int | None = None,
    ) -> None:
        message = f"{entity} {entity_id} was modified concurrently"
        if expected_version is not None and actual_version is not None:
            message = f"{message} (expected version {expected_version}, found {actual_version})"
        super().__init__(message)
        self.entity = entity
        self.entity_id = entity_id
        self.expected_version = expected_version
        self.actual_version = actual_version


class InsufficientStock(RequestEngineError):
    def __init__(self, item_id: int, *, available: int, delta: int) -> None:
        super().__init__(
            f"Insufficient stock for item {item_id}: {available} on hand, adjustment of {delta} requested"
        )
        self.item_id = item_id
        self.available = available
        self.delta = delta


class MalformedCondition(RequestEngineError):
    """A stored rule predicate cannot be turned into a condition tree."""
