"""Pydantic schemas for the request service."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .ledger import TransactionType
from .state_machine import RequestType

Priority = Literal["low", "normal", "high", "urgent"]
FieldValue = str | int | float | bool | None | list[str | int | float | bool]


class LineItemCreate(BaseModel):
    item_id: int = Field(alias="itemId", ge=1)
    quantity: int = Field(ge=1)

    model_config = ConfigDict(populate_by_name=True)


class RequestCreate(BaseModel):
    type: RequestType
    title: str = Field(min_length=1, max_length=255)
    fields: dict[str, FieldValue] = Field(default_factory=dict)
    priority: Priority = "normal"
    line_items: list[LineItemCreate] = Field(default_factory=list, alias="lineItems")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("title")
    @classmethod
    def _strip_title(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("title must not be blank")
        return cleaned

    @field_validator("fields")
    @classmethod
    def _check_field_names(cls, value: dict[str, Any]) -> dict[str, Any]:
        if any(not name.strip() for name in value):
            raise ValueError("field names must not be blank")
        return value

    @model_validator(mode="after")
    def _check_line_items(self) -> RequestCreate:
        item_ids = [line.item_id for line in self.line_items]
        if len(item_ids) != len(set(item_ids)):
            raise ValueError("each inventory item may appear only once per request")
        if item_ids and self.type is RequestType.ROUTED_FORM:
            raise ValueError("routed forms do not carry line items")
        return self


class LineItemResponse(BaseModel):
    id: int
    item_id: int = Field(alias="itemId")
    quantity_requested: int = Field(alias="quantityRequested")
    quantity_fulfilled: int | None = Field(default=None, alias="quantityFulfilled")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class RequestResponse(BaseModel):
    id: str
    type: str
    title: str
    requester_id: str = Field(alias="requesterId")
    fields: dict[str, Any]
    status: str
    priority: str
    assigned_role: str | None = Field(default=None, alias="assignedRole")
    assigned_principal: str | None = Field(default=None, alias="assignedPrincipal")
    matched_rule_id: int | None = Field(default=None, alias="matchedRuleId")
    auto_approved: bool = Field(alias="autoApproved")
    escalation_deadline: datetime | None = Field(default=None, alias="escalationDeadline")
    escalated_at: datetime | None = Field(default=None, alias="escalatedAt")
    fulfiller_id: str | None = Field(default=None, alias="fulfillerId")
    resolution_note: str | None = Field(default=None, alias="resolutionNote")
    archived: bool
    version: int
    line_items: list[LineItemResponse] = Field(default_factory=list, alias="lineItems")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class RequestListResponse(BaseModel):
    items: list[RequestResponse]
    total: int


class StatusChangeResponse(BaseModel):
    id: int
    from_status: str | None = Field(default=None, alias="fromStatus")
    to_status: str = Field(alias="toStatus")
    actor_id: str = Field(alias="actorId")
    note: str | None = None
    version: int
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class FulfilledQuantity(BaseModel):
    item_id: int = Field(alias="itemId", ge=1)
    quantity: int = Field(ge=0)

    model_config = ConfigDict(populate_by_name=True)


class TransitionRequest(BaseModel):
    status: str = Field(min_length=1, max_length=24)
    expected_version: int = Field(alias="expectedVersion", ge=1)
    note: str | None = Field(default=None, max_length=2000)
    fulfilled_quantities: list[FulfilledQuantity] | None = Field(default=None, alias="fulfilledQuantities")

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("status")
    @classmethod
    def _normalize_status(cls, value: str) -> str:
        return value.strip().lower()

    def quantities_by_item(self) -> dict[int, int] | None:
        if self.fulfilled_quantities is None:
            return None
        return {entry.item_id: entry.quantity for entry in self.fulfilled_quantities}


class ArchiveRequest(BaseModel):
    expected_version: int = Field(alias="expectedVersion", ge=1)

    model_config = ConfigDict(populate_by_name=True)


class RuleCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    applies_to_type: RequestType | None = Field(default=None, alias="appliesToType")
    priority: int = 0
    is_active: bool = Field(default=True, alias="isActive")
    condition: dict[str, Any] | None = None
    assign_to_role: str | None = Field(default=None, alias="assignToRole", max_length=64)
    assign_to_principal: str | None = Field(default=None, alias="assignToPrincipal", max_length=64)
    auto_approve: bool = Field(default=False, alias="autoApprove")
    escalation_hours: float | None = Field(default=None, alias="escalationHours", ge=0)

    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="after")
    def _single_assignment(self) -> RuleCreate:
        if self.assign_to_role and self.assign_to_principal:
            raise ValueError("a rule assigns either a role or a principal, not both")
        return self


class RuleUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=128)
    applies_to_type: RequestType | None = Field(default=None, alias="appliesToType")
    priority: int | None = None
    is_active: bool | None = Field(default=None, alias="isActive")
    condition: dict[str, Any] | None = None
    assign_to_role: str | None = Field(default=None, alias="assignToRole", max_length=64)
    assign_to_principal: str | None = Field(default=None, alias="assignToPrincipal", max_length=64)
    auto_approve: bool | None = Field(default=None, alias="autoApprove")
    escalation_hours: float | None = Field(default=None, alias="escalationHours", ge=0)

    model_config = ConfigDict(populate_by_name=True)

    def changes(self) -> dict[str, Any]:
        values = self.model_dump(exclude_unset=True)
        if "applies_to_type" in values and values["applies_to_type"] is not None:
            values["applies_to_type"] = RequestType(values["applies_to_type"]).value
        for key in ("name", "priority", "is_active", "auto_approve"):
            if key in values and values[key] is None:
                values.pop(key)
        return values


class RuleResponse(BaseModel):
    id: int
    name: str
    applies_to_type: str | None = Field(default=None, alias="appliesToType")
    priority: int
    is_active: bool = Field(alias="isActive")
    condition: dict[str, Any]
    assign_to_role: str | None = Field(default=None, alias="assignToRole")
    assign_to_principal: str | None = Field(default=None, alias="assignToPrincipal")
    auto_approve: bool = Field(alias="autoApprove")
    escalation_hours: float | None = Field(default=None, alias="escalationHours")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class RuleEvaluateRequest(BaseModel):
    type: RequestType
    fields: dict[str, FieldValue] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)


class RoutingDecisionResponse(BaseModel):
    matched: bool
    matched_rule_id: int | None = Field(default=None, alias="matchedRuleId")
    assigned_role: str | None = Field(default=None, alias="assignedRole")
    assigned_principal: str | None = Field(default=None, alias="assignedPrincipal")
    auto_approve: bool = Field(alias="autoApprove")
    escalation_deadline: datetime | None = Field(default=None, alias="escalationDeadline")

    model_config = ConfigDict(populate_by_name=True)


class InventoryItemCreate(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    minimum_quantity: int = Field(default=0, alias="minimumQuantity", ge=0)
    initial_quantity: int = Field(default=0, alias="initialQuantity", ge=0)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("name")
    @classmethod
    def _strip_name(cls, value: str) -> str:
        cleaned = value.strip()
        if not cleaned:
            raise ValueError("name must not be blank")
        return cleaned


class InventoryItemResponse(BaseModel):
    id: int
    name: str
    current_quantity: int = Field(alias="currentQuantity")
    minimum_quantity: int = Field(alias="minimumQuantity")
    stock_status: str = Field(alias="stockStatus")
    created_at: datetime = Field(alias="createdAt")
    updated_at: datetime = Field(alias="updatedAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class InventoryListResponse(BaseModel):
    items: list[InventoryItemResponse]
    total: int


class AdjustmentCreate(BaseModel):
    delta: int
    transaction_type: TransactionType = Field(alias="transactionType")
    reference_id: str | None = Field(default=None, alias="referenceId", max_length=36)
    notes: str | None = Field(default=None, max_length=2000)

    model_config = ConfigDict(populate_by_name=True)


class LedgerEntryResponse(BaseModel):
    id: int
    item_id: int = Field(alias="itemId")
    sequence: int
    delta: int
    resulting_quantity: int = Field(alias="resultingQuantity")
    transaction_type: str = Field(alias="transactionType")
    reference_id: str | None = Field(default=None, alias="referenceId")
    performed_by: str = Field(alias="performedBy")
    notes: str | None = None
    created_at: datetime = Field(alias="createdAt")

    model_config = ConfigDict(populate_by_name=True, from_attributes=True)


class ReconciliationResponse(BaseModel):
    item_id: int = Field(alias="itemId")
    cached_quantity: int = Field(alias="cachedQuantity")
    tail_quantity: int = Field(alias="tailQuantity")
    ledger_sum: int = Field(alias="ledgerSum")
    entry_count: int = Field(alias="entryCount")
    broken_sequences: list[int] = Field(default_factory=list, alias="brokenSequences")
    consistent: bool

    model_config = ConfigDict(populate_by_name=True)


class SweepResponse(BaseModel):
    escalated: list[str]
    count: int
