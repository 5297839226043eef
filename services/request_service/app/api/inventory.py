"""Inventory items and their ledger."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..dependencies import get_actor, get_inventory_repository, get_ledger
from ..errors import ConcurrentModification, InsufficientStock, ItemNotFound
from ..ledger import InventoryLedger, stock_status
from ..repository import InventoryRepository
from ..schemas import (
    AdjustmentCreate,
    InventoryItemCreate,
    InventoryItemResponse,
    InventoryListResponse,
    LedgerEntryResponse,
    ReconciliationResponse,
)
from ..state_machine import Actor

router = APIRouter(prefix="/inventory", tags=["inventory"])


def _serialize_item(item) -> dict[str, object]:
    return {
        "id": item.id,
        "name": item.name,
        "currentQuantity": item.current_quantity,
        "minimumQuantity": item.minimum_quantity,
        "stockStatus": stock_status(item.current_quantity, item.minimum_quantity).value,
        "createdAt": item.created_at,
        "updatedAt": item.updated_at,
    }


def _serialize_entry(entry) -> dict[str, object]:
    return {
        "id": entry.id,
        "itemId": entry.item_id,
        "sequence": entry.sequence,
        "delta": entry.delta,
        "resultingQuantity": entry.resulting_quantity,
        "transactionType": entry.transaction_type,
        "referenceId": entry.reference_id,
        "performedBy": entry.performed_by,
        "notes": entry.notes,
        "createdAt": entry.created_at,
    }


@router.post("", response_model=InventoryItemResponse, status_code=status.HTTP_201_CREATED)
async def create_inventory_item(
    payload: InventoryItemCreate,
    actor: Actor = Depends(get_actor),
    ledger: InventoryLedger = Depends(get_ledger),
) -> InventoryItemResponse:
    try:
        item = await ledger.create_item(
            name=payload.name,
            minimum_quantity=payload.minimum_quantity,
            initial_quantity=payload.initial_quantity,
            actor_id=actor.principal_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return InventoryItemResponse.model_validate(_serialize_item(item))


@router.get("", response_model=InventoryListResponse)
async def list_inventory_items(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    below_minimum: bool = Query(default=False, alias="belowMinimum"),
    repository: InventoryRepository = Depends(get_inventory_repository),
) -> InventoryListResponse:
    items, total = await repository.list_items(below_minimum=below_minimum, limit=limit, offset=offset)
    responses = [InventoryItemResponse.model_validate(_serialize_item(item)) for item in items]
    return InventoryListResponse(items=responses, total=total)


@router.get("/{item_id}", response_model=InventoryItemResponse)
async def get_inventory_item(item_id: int, ledger: InventoryLedger = Depends(get_ledger)) -> InventoryItemResponse:
    try:
        item = await ledger.get_item(item_id)
    except ItemNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Inventory item not found") from exc
    return InventoryItemResponse.model_validate(_serialize_item(item))


@router.post("/{item_id}/adjustments", response_model=LedgerEntryResponse, status_code=status.HTTP_201_CREATED)
async def adjust_inventory_item(
    item_id: int,
    payload: AdjustmentCreate,
    actor: Actor = Depends(get_actor),
    ledger: InventoryLedger = Depends(get_ledger),
) -> LedgerEntryResponse:
    try:
        entry = await ledger.adjust(
            item_id,
            payload.delta,
            payload.transaction_type,
            actor_id=actor.principal_id,
            reference_id=payload.reference_id,
            notes=payload.notes,
        )
    except ItemNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Inventory item not found") from exc
    except (InsufficientStock, ConcurrentModification) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return LedgerEntryResponse.model_validate(_serialize_entry(entry))


@router.get("/{item_id}/ledger", response_model=list[LedgerEntryResponse])
async def list_ledger_entries(
    item_id: int,
    limit: int = Query(default=100, ge=1, le=500),
    offset: int = Query(default=0, ge=0),
    reference_id: str | None = Query(default=None, alias="referenceId"),
    ledger: InventoryLedger = Depends(get_ledger),
) -> list[LedgerEntryResponse]:
    try:
        entries = await ledger.entries(item_id, reference_id=reference_id, limit=limit, offset=offset)
    except ItemNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Inventory item not found") from exc
    return [LedgerEntryResponse.model_validate(_serialize_entry(entry)) for entry in entries]


@router.get("/{item_id}/reconciliation", response_model=ReconciliationResponse)
async def reconcile_inventory_item(
    item_id: int,
    ledger: InventoryLedger = Depends(get_ledger),
) -> ReconciliationResponse:
    try:
        reconciliation = await ledger.verify(item_id)
    except ItemNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Inventory item not found") from exc
    return ReconciliationResponse.model_validate(
        {
            "itemId": reconciliation.item_id,
            "cachedQuantity": reconciliation.cached_quantity,
            "tailQuantity": reconciliation.tail_quantity,
            "ledgerSum": reconciliation.ledger_sum,
            "entryCount": reconciliation.entry_count,
            "brokenSequences": list(reconciliation.broken_sequences),
            "consistent": reconciliation.consistent,
        }
    )
