"""SQLAlchemy models for the request service."""

from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def _new_request_id() -> str:
    return str(uuid4())


class Base(DeclarativeBase):
    """Base class for request service ORM models."""


class RoutingRule(Base):
    __tablename__ = "routing_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    applies_to_type: Mapped[str | None] = mapped_column(String(32), nullable=True, index=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    condition_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    assign_to_role: Mapped[str | None] = mapped_column(String(64), nullable=True)
    assign_to_principal: Mapped[str | None] = mapped_column(String(64), nullable=True)
    auto_approve: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalation_hours: Mapped[float | None] = mapped_column(Float, nullable=True)
    # Python-side timestamps keep microsecond resolution for the tie-break order.
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now_utc)

    __table_args__ = (
        CheckConstraint(
            "NOT (assign_to_role IS NOT NULL AND assign_to_principal IS NOT NULL)",
            name="ck_routing_rules_single_assignment",
        ),
        CheckConstraint(
            "escalation_hours IS NULL OR escalation_hours >= 0",
            name="ck_routing_rules_escalation_hours",
        ),
    )


class ServiceRequest(Base):
    __tablename__ = "service_requests"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_request_id)
    type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    requester_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    fields_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    status: Mapped[str] = mapped_column(String(24), nullable=False, index=True)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    assigned_role: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    assigned_principal: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)
    matched_rule_id: Mapped[int | None] = mapped_column(
        ForeignKey("routing_rules.id", ondelete="SET NULL"), nullable=True
    )
    auto_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalation_deadline: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    escalation_status: Mapped[str | None] = mapped_column(String(24), nullable=True)
    escalated_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    fulfiller_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    resolution_note: Mapped[str | None] = mapped_column(Text, nullable=True)
    archived: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now_utc)

    line_items: Mapped[list[RequestLineItem]] = relationship(
        back_populates="request",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="RequestLineItem.id",
    )

    __table_args__ = (
        CheckConstraint(
            "NOT (assigned_role IS NOT NULL AND assigned_principal IS NOT NULL)",
            name="ck_service_requests_single_assignment",
        ),
        CheckConstraint("version >= 1", name="ck_service_requests_version"),
    )


class RequestLineItem(Base):
    __tablename__ = "request_line_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(
        ForeignKey("service_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    item_id: Mapped[int] = mapped_column(ForeignKey("inventory_items.id"), nullable=False, index=True)
    quantity_requested: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_fulfilled: Mapped[int | None] = mapped_column(Integer, nullable=True)

    request: Mapped[ServiceRequest] = relationship(back_populates="line_items")

    __table_args__ = (
        CheckConstraint("quantity_requested > 0", name="ck_request_line_items_requested"),
        CheckConstraint(
            "quantity_fulfilled IS NULL OR (quantity_fulfilled >= 0 AND quantity_fulfilled <= quantity_requested)",
            name="ck_request_line_items_fulfilled",
        ),
    )


class RequestStatusChange(Base):
    __tablename__ = "request_status_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(
        ForeignKey("service_requests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_status: Mapped[str | None] = mapped_column(String(24), nullable=True)
    to_status: Mapped[str] = mapped_column(String(24), nullable=False)
    actor_id: Mapped[str] = mapped_column(String(64), nullable=False)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now_utc)


class InventoryItem(Base):
    __tablename__ = "inventory_items"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    # Cache of the ledger tail; the ledger is the source of truth.
    current_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    minimum_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now_utc)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now_utc)

    __table_args__ = (
        CheckConstraint("current_quantity >= 0", name="ck_inventory_items_quantity"),
        CheckConstraint("minimum_quantity >= 0", name="ck_inventory_items_minimum"),
    )


class LedgerEntry(Base):
    __tablename__ = "inventory_ledger"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    item_id: Mapped[int] = mapped_column(
        ForeignKey("inventory_items.id", ondelete="RESTRICT"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    delta: Mapped[int] = mapped_column(Integer, nullable=False)
    resulting_quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False)
    reference_id: Mapped[str | None] = mapped_column(String(36), nullable=True, index=True)
    performed_by: Mapped[str] = mapped_column(String(64), nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_now_utc)

    __table_args__ = (
        UniqueConstraint("item_id", "sequence", name="uq_inventory_ledger_item_sequence"),
        CheckConstraint("delta <> 0", name="ck_inventory_ledger_delta"),
        CheckConstraint("resulting_quantity >= 0", name="ck_inventory_ledger_resulting"),
    )
