"""Prometheus metrics for the request service."""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter


REQUESTS_CREATED_TOTAL: Final = Counter(
    "requests_created_total",
    "Number of service requests created.",
    labelnames=("type", "auto_approved"),
)

REQUESTS_ROUTED_TOTAL: Final = Counter(
    "requests_routed_total",
    "Routing outcomes at request creation.",
    labelnames=("outcome",),
)

ROUTING_MALFORMED_RULES_TOTAL: Final = Counter(
    "requests_routing_malformed_rules_total",
    "Routing rules skipped because their condition could not be parsed.",
)

REQUEST_TRANSITIONS_TOTAL: Final = Counter(
    "requests_transitions_total",
    "Number of applied request status transitions.",
    labelnames=("type", "status"),
)

REQUEST_TRANSITION_REJECTIONS_TOTAL: Final = Counter(
    "requests_transition_rejections_total",
    "Number of transitions refused by a guard.",
    labelnames=("reason",),
)

LEDGER_ADJUSTMENTS_TOTAL: Final = Counter(
    "inventory_ledger_adjustments_total",
    "Number of ledger entries appended.",
    labelnames=("transaction_type",),
)

LEDGER_INSUFFICIENT_STOCK_TOTAL: Final = Counter(
    "inventory_ledger_insufficient_stock_total",
    "Number of adjustments refused because stock would go negative.",
)

ESCALATIONS_FIRED_TOTAL: Final = Counter(
    "requests_escalations_fired_total",
    "Number of escalation events emitted.",
    labelnames=("type",),
)

ESCALATION_FAILURES_TOTAL: Final = Counter(
    "requests_escalation_failures_total",
    "Escalation attempts or sweeps that failed.",
    labelnames=("stage",),
)

EVENT_DELIVERY_FAILURES_TOTAL: Final = Counter(
    "requests_event_delivery_failures_total",
    "Notification events that could not be delivered.",
    labelnames=("event",),
)
