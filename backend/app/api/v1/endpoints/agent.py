"""
Delivery Agent API Endpoints.

Availability, offers and the delivery workflow for agents.
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import ResourceNotFoundError
from backend.app.core.guards import require_role, actor_from_user
from backend.app.db.session import get_db
from backend.app.domain.pickups.broker import AssignmentBroker
from backend.app.domain.pickups.delivery import DeliveryService
from backend.app.domain.pickups.requests import RequesterService
from backend.app.models.enums import UserRole
from backend.app.models.pickup_enums import PickupStatus
from backend.app.schemas.agent import AvailabilityUpdate, AvailabilityResponse, OfferResponse, EarningsSummaryResponse
from backend.app.schemas.pickup import (
    PickupResponse,
    PickupDetailResponse,
    AdvanceRequest,
    CompleteRequest,
    AgentCancelRequest,
)
from backend.app.services.audit import log_event, log_user_action, AuditAction
from backend.app.api.v1.endpoints.pickups import detail_response

router = APIRouter(prefix="/agent", tags=["Delivery Agent"])

agent_only = require_role([UserRole.AGENT])


async def audit_completion(db: AsyncSession, current_user: dict, pickup) -> None:
    await log_user_action(
        db, current_user, AuditAction.PICKUP_COMPLETED,
        pickup_id=pickup.id,
        metadata={"points": pickup.points, "earnings": pickup.earnings}
    )
    # Reward issuance is a system action on the requester's behalf
    await log_event(
        db, AuditAction.REWARD_ISSUED,
        pickup_id=pickup.id,
        metadata={"requester_id": pickup.requester_id, "points": pickup.points}
    )


@router.put("/availability", response_model=AvailabilityResponse)
async def update_availability(
    body: AvailabilityUpdate,
    current_user: dict = Depends(agent_only),
    db: AsyncSession = Depends(get_db)
):
    """
    Go online or offline.

    Going online makes the agent eligible for offers; going offline declines
    any offers still pending.
    """
    availability = await AssignmentBroker.set_availability(
        db,
        current_user["user_id"],
        body.is_online,
        body.location.as_tuple() if body.location else None
    )

    await log_user_action(
        db, current_user, AuditAction.AGENT_AVAILABILITY_CHANGED,
        metadata={"is_online": body.is_online}
    )

    return AvailabilityResponse.model_validate(availability)


@router.get("/availability", response_model=AvailabilityResponse)
async def get_availability(
    current_user: dict = Depends(agent_only),
    db: AsyncSession = Depends(get_db)
):
    availability = await AssignmentBroker.get_availability(db, current_user["user_id"])
    if availability is None:
        raise ResourceNotFoundError("Availability", current_user["user_id"])
    return AvailabilityResponse.model_validate(availability)


@router.get("/offers", response_model=List[OfferResponse])
async def list_offers(
    current_user: dict = Depends(agent_only),
    db: AsyncSession = Depends(get_db)
):
    """Live offers for the agent, soonest expiry first."""
    offers = await AssignmentBroker.list_offers(db, current_user["user_id"])
    return [OfferResponse.model_validate(o) for o in offers]


@router.get("/pickups/available", response_model=List[PickupResponse])
async def list_available(
    current_user: dict = Depends(agent_only),
    db: AsyncSession = Depends(get_db)
):
    """Pickups the agent can accept right now. Requires being online."""
    pickups = await AssignmentBroker.list_available(db, current_user["user_id"])
    return [PickupResponse.model_validate(p) for p in pickups]


@router.get("/pickups", response_model=List[PickupResponse])
async def list_my_pickups(
    status_filter: Optional[PickupStatus] = Query(None, alias="status"),
    current_user: dict = Depends(agent_only),
    db: AsyncSession = Depends(get_db)
):
    """Pickups assigned to the agent, newest first."""
    pickups = await DeliveryService.list_assigned(db, current_user["user_id"], status_filter)
    return [PickupResponse.model_validate(p) for p in pickups]


@router.get("/pickups/{pickup_id}", response_model=PickupDetailResponse)
async def get_pickup(
    pickup_id: int = Path(..., description="Pickup ID"),
    current_user: dict = Depends(agent_only),
    db: AsyncSession = Depends(get_db)
):
    pickup, timeline = await RequesterService.get(db, pickup_id, actor_from_user(current_user))
    return detail_response(pickup, timeline)


@router.post("/pickups/{pickup_id}/accept", response_model=PickupResponse)
async def accept_pickup(
    pickup_id: int = Path(..., description="Pickup ID"),
    current_user: dict = Depends(agent_only),
    db: AsyncSession = Depends(get_db)
):
    """
    Accept a pickup.

    Returns 409 if another agent got there first.
    """
    pickup = await AssignmentBroker.accept(db, pickup_id, actor_from_user(current_user))

    await log_user_action(
        db, current_user, AuditAction.PICKUP_ASSIGNED,
        pickup_id=pickup_id,
        metadata={"distance_km": pickup.distance_km}
    )

    return PickupResponse.model_validate(pickup)


@router.post("/pickups/{pickup_id}/reject", response_model=PickupResponse)
async def reject_pickup(
    pickup_id: int = Path(..., description="Pickup ID"),
    current_user: dict = Depends(agent_only),
    db: AsyncSession = Depends(get_db)
):
    """Decline an offer; the pickup moves on to the next agent immediately."""
    pickup = await AssignmentBroker.reject(db, pickup_id, current_user["user_id"])
    return PickupResponse.model_validate(pickup)


@router.post("/pickups/{pickup_id}/advance", response_model=PickupResponse)
async def advance_pickup(
    body: AdvanceRequest,
    pickup_id: int = Path(..., description="Pickup ID"),
    current_user: dict = Depends(agent_only),
    db: AsyncSession = Depends(get_db)
):
    """Record the next delivery step: reached, collected, then delivered."""
    pickup = await DeliveryService.advance(
        db, pickup_id, actor_from_user(current_user),
        note=body.note,
        location=body.location.as_tuple() if body.location else None
    )

    if pickup.status == PickupStatus.COMPLETED:
        await audit_completion(db, current_user, pickup)
    else:
        await log_user_action(
            db, current_user, AuditAction.PICKUP_ADVANCED,
            pickup_id=pickup_id, metadata={"status": pickup.status.value}
        )

    return PickupResponse.model_validate(pickup)


@router.post("/pickups/{pickup_id}/complete", response_model=PickupResponse)
async def complete_pickup(
    body: CompleteRequest,
    pickup_id: int = Path(..., description="Pickup ID"),
    current_user: dict = Depends(agent_only),
    db: AsyncSession = Depends(get_db)
):
    """Deliver to the warehouse. Points, earnings and the reward are fixed here."""
    pickup = await DeliveryService.complete(
        db, pickup_id, actor_from_user(current_user),
        note=body.note,
        location=body.location.as_tuple() if body.location else None,
        distance_km=body.distance_km
    )

    await audit_completion(db, current_user, pickup)

    return PickupResponse.model_validate(pickup)


@router.post("/pickups/{pickup_id}/cancel", response_model=PickupResponse)
async def cancel_pickup(
    body: AgentCancelRequest,
    pickup_id: int = Path(..., description="Pickup ID"),
    current_user: dict = Depends(agent_only),
    db: AsyncSession = Depends(get_db)
):
    """
    Back out of a pickup.

    Before collection the pickup goes back on offer; after collection it is cancelled.
    """
    pickup = await DeliveryService.cancel(
        db, pickup_id, actor_from_user(current_user), body.note,
        location=body.location.as_tuple() if body.location else None
    )

    action = AuditAction.PICKUP_CANCELLED if pickup.status == PickupStatus.CANCELLED else AuditAction.PICKUP_RELEASED
    await log_user_action(db, current_user, action, pickup_id=pickup_id, metadata={"note": body.note})

    return PickupResponse.model_validate(pickup)


@router.get("/earnings", response_model=EarningsSummaryResponse)
async def get_earnings(
    current_user: dict = Depends(agent_only),
    db: AsyncSession = Depends(get_db)
):
    summary = await DeliveryService.earnings_summary(db, current_user["user_id"])
    return EarningsSummaryResponse(**summary)
