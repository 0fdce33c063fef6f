"""
Requester Pickup API Endpoints.

Requesters create pickups, follow them, cancel them and rate them once
completed.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, status, Query, Path
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.guards import require_role, actor_from_user
from backend.app.db.session import get_db
from backend.app.domain.pickups.intake import PickupIntake
from backend.app.domain.pickups.requests import RequesterService
from backend.app.models.enums import UserRole
from backend.app.models.pickup import Pickup
from backend.app.models.pickup_enums import PickupStatus
from backend.app.models.pickup_timeline import PickupTimelineEntry
from backend.app.schemas.pickup import (
    PickupCreate,
    PickupResponse,
    PickupDetailResponse,
    PickupListResponse,
    NoteRequest,
    RatingRequest,
    TimelineEntryResponse,
)
from backend.app.services.audit import log_user_action, AuditAction

router = APIRouter(prefix="/pickups", tags=["Requester - Pickups"])


def detail_response(pickup: Pickup, timeline: List[PickupTimelineEntry]) -> PickupDetailResponse:
    return PickupDetailResponse(
        **PickupResponse.model_validate(pickup).model_dump(),
        timeline=[TimelineEntryResponse.model_validate(entry) for entry in timeline],
    )


@router.post("", response_model=PickupResponse, status_code=status.HTTP_201_CREATED)
async def create_pickup(
    pickup_data: PickupCreate,
    current_user: dict = Depends(require_role([UserRole.REQUESTER])),
    db: AsyncSession = Depends(get_db)
):
    """
    Request a pickup.

    The pickup starts in pending_review and waits for an admin decision.
    """
    pickup = await PickupIntake.create_pickup(
        db,
        requester_id=current_user["user_id"],
        waste_type=pickup_data.waste_type,
        images=pickup_data.images,
        priority=pickup_data.priority,
        food_boxes=pickup_data.food_boxes,
        bottles=pickup_data.bottles,
        other_items=pickup_data.other_items,
        scheduled_date=pickup_data.scheduled_date,
        scheduled_time_slot=pickup_data.scheduled_time_slot,
        estimated_weight_kg=pickup_data.estimated_weight_kg,
        pickup_location=pickup_data.pickup_location.as_tuple() if pickup_data.pickup_location else None,
        pickup_address=pickup_data.pickup_address,
    )

    await log_user_action(
        db, current_user, AuditAction.PICKUP_CREATED,
        pickup_id=pickup.id,
        metadata={"waste_type": pickup.waste_type.value, "priority": pickup.priority.value}
    )

    return PickupResponse.model_validate(pickup)


@router.get("", response_model=PickupListResponse)
async def list_my_pickups(
    status_filter: Optional[PickupStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1, description="Page number"),
    page_size: int = Query(20, ge=1, le=100, description="Items per page"),
    current_user: dict = Depends(require_role([UserRole.REQUESTER])),
    db: AsyncSession = Depends(get_db)
):
    """List the current requester's pickups, newest first."""
    pickups, total = await RequesterService.list_mine(
        db, current_user["user_id"], status=status_filter, page=page, page_size=page_size
    )
    return PickupListResponse(
        pickups=[PickupResponse.model_validate(p) for p in pickups],
        total=total,
        page=page,
        page_size=page_size
    )


@router.get("/{pickup_id}", response_model=PickupDetailResponse)
async def get_pickup(
    pickup_id: int = Path(..., description="Pickup ID"),
    current_user: dict = Depends(require_role([UserRole.REQUESTER])),
    db: AsyncSession = Depends(get_db)
):
    """Get one of the requester's pickups with its timeline."""
    pickup, timeline = await RequesterService.get(db, pickup_id, actor_from_user(current_user))
    return detail_response(pickup, timeline)


@router.post("/{pickup_id}/cancel", response_model=PickupResponse)
async def cancel_pickup(
    body: NoteRequest,
    pickup_id: int = Path(..., description="Pickup ID"),
    current_user: dict = Depends(require_role([UserRole.REQUESTER])),
    db: AsyncSession = Depends(get_db)
):
    """Cancel a pickup that is awaiting an agent, assigned or in transit."""
    pickup = await RequesterService.cancel(db, pickup_id, actor_from_user(current_user), body.note)

    await log_user_action(
        db, current_user, AuditAction.PICKUP_CANCELLED,
        pickup_id=pickup_id,
        metadata={"note": body.note, "agent_id": pickup.agent_id}
    )

    return PickupResponse.model_validate(pickup)


@router.post("/{pickup_id}/rating", response_model=PickupResponse)
async def rate_pickup(
    body: RatingRequest,
    pickup_id: int = Path(..., description="Pickup ID"),
    current_user: dict = Depends(require_role([UserRole.REQUESTER])),
    db: AsyncSession = Depends(get_db)
):
    """Rate a completed pickup. Allowed once."""
    pickup = await RequesterService.rate(
        db, pickup_id, current_user["user_id"], body.score, body.review
    )

    await log_user_action(
        db, current_user, AuditAction.PICKUP_RATED,
        pickup_id=pickup_id,
        metadata={"score": body.score}
    )

    return PickupResponse.model_validate(pickup)
