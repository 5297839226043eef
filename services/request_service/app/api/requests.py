"""HTTP routes for service request intake and lifecycle."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..dependencies import get_actor, get_request_repository, get_request_service
from ..errors import (
    ConcurrentModification,
    InsufficientStock,
    InvalidTransition,
    ItemNotFound,
    RequestNotFound,
)
from ..repository import RequestRepository, load_json
from ..schemas import (
    ArchiveRequest,
    RequestCreate,
    RequestListResponse,
    RequestResponse,
    StatusChangeResponse,
    TransitionRequest,
)
from ..services import RequestService
from ..state_machine import Actor

router = APIRouter(prefix="/requests", tags=["requests"])


def _serialize_request(request) -> dict[str, object]:
    return {
        "id": request.id,
        "type": request.type,
        "title": request.title,
        "requesterId": request.requester_id,
        "fields": load_json(request.fields_json),
        "status": request.status,
        "priority": request.priority,
        "assignedRole": request.assigned_role,
        "assignedPrincipal": request.assigned_principal,
        "matchedRuleId": request.matched_rule_id,
        "autoApproved": request.auto_approved,
        "escalationDeadline": request.escalation_deadline,
        "escalatedAt": request.escalated_at,
        "fulfillerId": request.fulfiller_id,
        "resolutionNote": request.resolution_note,
        "archived": request.archived,
        "version": request.version,
        "lineItems": [
            {
                "id": line.id,
                "itemId": line.item_id,
                "quantityRequested": line.quantity_requested,
                "quantityFulfilled": line.quantity_fulfilled,
            }
            for line in request.line_items
        ],
        "createdAt": request.created_at,
        "updatedAt": request.updated_at,
    }


def _serialize_change(change) -> dict[str, object]:
    return {
        "id": change.id,
        "fromStatus": change.from_status,
        "toStatus": change.to_status,
        "actorId": change.actor_id,
        "note": change.note,
        "version": change.version,
        "createdAt": change.created_at,
    }


@router.post("", response_model=RequestResponse, status_code=status.HTTP_201_CREATED)
async def create_request(
    payload: RequestCreate,
    actor: Actor = Depends(get_actor),
    service: RequestService = Depends(get_request_service),
) -> RequestResponse:
    try:
        request = await service.create_request(payload, actor)
    except ItemNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return RequestResponse.model_validate(_serialize_request(request))


@router.get("", response_model=RequestListResponse)
async def list_requests(
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    request_type: str | None = Query(default=None, alias="type"),
    status_value: str | None = Query(default=None, alias="status"),
    requester_id: str | None = Query(default=None, alias="requesterId"),
    assigned_role: str | None = Query(default=None, alias="assignedRole"),
    assigned_principal: str | None = Query(default=None, alias="assignedPrincipal"),
    include_archived: bool = Query(default=False, alias="includeArchived"),
    repository: RequestRepository = Depends(get_request_repository),
) -> RequestListResponse:
    items, total = await repository.list_requests(
        request_type=request_type,
        status=status_value,
        requester_id=requester_id,
        assigned_role=assigned_role,
        assigned_principal=assigned_principal,
        include_archived=include_archived,
        limit=limit,
        offset=offset,
    )
    responses = [RequestResponse.model_validate(_serialize_request(item)) for item in items]
    return RequestListResponse(items=responses, total=total)


@router.get("/{request_id}", response_model=RequestResponse)
async def get_request(
    request_id: str,
    service: RequestService = Depends(get_request_service),
) -> RequestResponse:
    try:
        request = await service.get_request(request_id)
    except RequestNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Request not found") from exc
    return RequestResponse.model_validate(_serialize_request(request))


@router.get("/{request_id}/history", response_model=list[StatusChangeResponse])
async def get_request_history(
    request_id: str,
    service: RequestService = Depends(get_request_service),
) -> list[StatusChangeResponse]:
    try:
        changes = await service.list_history(request_id)
    except RequestNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Request not found") from exc
    return [StatusChangeResponse.model_validate(_serialize_change(change)) for change in changes]


@router.post("/{request_id}/transitions", response_model=RequestResponse)
async def transition_request(
    request_id: str,
    payload: TransitionRequest,
    actor: Actor = Depends(get_actor),
    service: RequestService = Depends(get_request_service),
) -> RequestResponse:
    try:
        request = await service.apply(
            request_id,
            payload.status,
            actor,
            payload.expected_version,
            note=payload.note,
            fulfilled_quantities=payload.quantities_by_item(),
        )
    except (RequestNotFound, ItemNotFound) as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    except (ConcurrentModification, InvalidTransition, InsufficientStock) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    return RequestResponse.model_validate(_serialize_request(request))


@router.post("/{request_id}/archive", response_model=RequestResponse)
async def archive_request(
    request_id: str,
    payload: ArchiveRequest,
    actor: Actor = Depends(get_actor),
    service: RequestService = Depends(get_request_service),
) -> RequestResponse:
    try:
        request = await service.archive(request_id, actor, payload.expected_version)
    except RequestNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Request not found") from exc
    except (ConcurrentModification, InvalidTransition) as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc
    return RequestResponse.model_validate(_serialize_request(request))
