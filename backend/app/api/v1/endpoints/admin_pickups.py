"""
Admin Review API Endpoints.

The approval gate: admins review pending pickups and approve or reject them.
"""

from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Path
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.guards import require_role, actor_from_user
from backend.app.db.session import get_db
from backend.app.domain.pickups.approval import ApprovalGate
from backend.app.domain.pickups.requests import RequesterService
from backend.app.models.enums import UserRole
from backend.app.models.pickup_enums import PickupStatus, PickupPriority, WasteType
from backend.app.schemas.pickup import (
    PickupResponse,
    PickupDetailResponse,
    ReviewQueueResponse,
    RejectRequest,
    AuditLogResponse,
    AuditTrailResponse,
)
from backend.app.services.audit import log_user_action, AuditAction, get_audit_trail
from backend.app.api.v1.endpoints.pickups import detail_response

router = APIRouter(prefix="/admin/pickups", tags=["Admin - Pickup Review"])


@router.get("", response_model=ReviewQueueResponse)
async def list_review_queue(
    status_filter: Optional[PickupStatus] = Query(PickupStatus.PENDING_REVIEW, alias="status"),
    created_from: Optional[date] = Query(None),
    created_to: Optional[date] = Query(None),
    waste_type: Optional[WasteType] = Query(None),
    priority: Optional[PickupPriority] = Query(None),
    search: Optional[str] = Query(None, max_length=100, description="Requester name, username or address"),
    cursor: Optional[int] = Query(None, description="next_cursor from the previous page"),
    limit: int = Query(20, ge=1, le=100),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """
    List pickups for review, newest first.

    Defaults to pending_review. Pass next_cursor back as cursor for the next page.
    """
    pickups, next_cursor = await ApprovalGate.list_for_review(
        db,
        status=status_filter,
        created_from=created_from,
        created_to=created_to,
        waste_type=waste_type,
        priority=priority,
        search=search,
        cursor=cursor,
        limit=limit,
    )
    return ReviewQueueResponse(
        pickups=[PickupResponse.model_validate(p) for p in pickups],
        next_cursor=next_cursor
    )


@router.get("/{pickup_id}", response_model=PickupDetailResponse)
async def get_pickup(
    pickup_id: int = Path(..., description="Pickup ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    pickup, timeline = await RequesterService.get(db, pickup_id, actor_from_user(current_user))
    return detail_response(pickup, timeline)


@router.post("/{pickup_id}/approve", response_model=PickupResponse)
async def approve_pickup(
    pickup_id: int = Path(..., description="Pickup ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Approve a pending pickup; it is queued for delivery agents straight away."""
    pickup = await ApprovalGate.approve(db, pickup_id, actor_from_user(current_user))

    await log_user_action(db, current_user, AuditAction.PICKUP_APPROVED, pickup_id=pickup_id)

    return PickupResponse.model_validate(pickup)


@router.post("/{pickup_id}/reject", response_model=PickupResponse)
async def reject_pickup(
    body: RejectRequest,
    pickup_id: int = Path(..., description="Pickup ID"),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Reject a pending pickup with a reason."""
    pickup = await ApprovalGate.reject(db, pickup_id, actor_from_user(current_user), body.reason)

    await log_user_action(
        db, current_user, AuditAction.PICKUP_REJECTED,
        pickup_id=pickup_id,
        metadata={"reason": pickup.rejection_reason}
    )

    return PickupResponse.model_validate(pickup)


@router.get("/{pickup_id}/audit", response_model=AuditTrailResponse)
async def get_pickup_audit_trail(
    pickup_id: int = Path(..., description="Pickup ID"),
    action: Optional[str] = Query(None, description="Filter by action type"),
    limit: int = Query(100, ge=1, le=500),
    current_user: dict = Depends(require_role([UserRole.ADMIN])),
    db: AsyncSession = Depends(get_db)
):
    """Audit trail of one pickup, most recent first."""
    logs = await get_audit_trail(db=db, pickup_id=pickup_id, action=action, limit=limit)

    return AuditTrailResponse(
        logs=[AuditLogResponse.model_validate(log) for log in logs],
        total=len(logs)
    )
