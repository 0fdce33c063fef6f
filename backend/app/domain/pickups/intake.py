"""
Pickup intake.

Validates a requester's pickup request and stores it in pending_review with
its first timeline entry. Admins are not notified individually; they poll
the review queue.
"""

import logging
from datetime import date, datetime
from typing import List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.core.exceptions import ForbiddenError, InvalidArgumentError, ResourceNotFoundError
from backend.app.domain.pickups.state_machine import PickupStateMachine
from backend.app.models.enums import UserRole
from backend.app.models.pickup import Pickup
from backend.app.models.pickup_enums import PickupPriority, PickupStatus, WasteType
from backend.app.models.pickup_timeline import PickupTimelineEntry
from backend.app.models.user import User

logger = logging.getLogger(__name__)

INITIAL_NOTE = "Pickup requested"


def validate_waste_details(
    waste_type: WasteType,
    food_boxes: int,
    bottles: int,
    other_items: Optional[str]
) -> None:
    """Waste details must be consistent with the declared waste type."""
    if food_boxes < 0 or bottles < 0:
        raise InvalidArgumentError("Waste counts cannot be negative")

    has_other = bool(other_items and other_items.strip())
    if waste_type == WasteType.FOOD and food_boxes <= 0:
        raise InvalidArgumentError("Food pickups need at least one food box")
    if waste_type == WasteType.BOTTLES and bottles <= 0:
        raise InvalidArgumentError("Bottle pickups need at least one bottle")
    if waste_type == WasteType.OTHER and not has_other:
        raise InvalidArgumentError("Describe the items for an 'other' pickup")
    if waste_type == WasteType.MIXED and not (food_boxes > 0 or bottles > 0 or has_other):
        raise InvalidArgumentError("Mixed pickups need at least one waste detail")


def validate_location(location: Optional[Tuple[float, float]]) -> None:
    if location is None:
        return
    latitude, longitude = location
    if not (-90 <= latitude <= 90) or not (-180 <= longitude <= 180):
        raise InvalidArgumentError("Coordinates out of range", details={"location": list(location)})


class PickupIntake:

    @staticmethod
    async def create_pickup(
        db: AsyncSession,
        requester_id: int,
        waste_type: WasteType,
        images: List[str],
        priority: PickupPriority,
        food_boxes: int = 0,
        bottles: int = 0,
        other_items: Optional[str] = None,
        scheduled_date: Optional[date] = None,
        scheduled_time_slot: Optional[str] = None,
        estimated_weight_kg: Optional[float] = None,
        pickup_location: Optional[Tuple[float, float]] = None,
        pickup_address: Optional[str] = None,
    ) -> Pickup:
        """
        Create a pickup in pending_review.

        Raises:
            ResourceNotFoundError: requester does not exist
            ForbiddenError: user is not an active requester
            InvalidArgumentError: images, waste details or schedule invalid
        """
        requester = await db.get(User, requester_id)
        if not requester:
            raise ResourceNotFoundError("User", requester_id)
        if requester.role != UserRole.REQUESTER or not requester.is_active:
            raise ForbiddenError("Only active requesters can create pickups")

        images = [image.strip() for image in images or [] if image and image.strip()]
        if not images:
            raise InvalidArgumentError("At least one image is required")

        waste_type = WasteType(waste_type)
        food_boxes = food_boxes or 0
        bottles = bottles or 0
        validate_waste_details(waste_type, food_boxes, bottles, other_items)

        priority = PickupPriority(priority)
        if priority == PickupPriority.SCHEDULED:
            slot = (scheduled_time_slot or "").strip()
            if not scheduled_date or not slot:
                raise InvalidArgumentError("Scheduled pickups need both a date and a time slot")
            if scheduled_date < datetime.utcnow().date():
                raise InvalidArgumentError("Scheduled date cannot be in the past")
            scheduled_time_slot = slot
        else:
            scheduled_date = None
            scheduled_time_slot = None

        estimated_weight_kg = estimated_weight_kg or 0.0
        if estimated_weight_kg < 0:
            raise InvalidArgumentError("Estimated weight cannot be negative")

        validate_location(pickup_location)
        latitude, longitude = pickup_location if pickup_location else (None, None)

        now = datetime.utcnow()
        pickup = Pickup(
            requester_id=requester_id,
            waste_type=waste_type,
            food_boxes=food_boxes,
            bottles=bottles,
            other_items=(other_items or "").strip() or None,
            images=images,
            priority=priority,
            scheduled_date=scheduled_date,
            scheduled_time_slot=scheduled_time_slot,
            status=PickupStatus.PENDING_REVIEW,
            revision=1,
            estimated_weight_kg=estimated_weight_kg,
            pickup_address=pickup_address,
            pickup_latitude=latitude,
            pickup_longitude=longitude,
            warehouse_latitude=settings.warehouse_latitude,
            warehouse_longitude=settings.warehouse_longitude,
            created_at=now,
            updated_at=now,
        )
        db.add(pickup)
        await db.flush()  # To get pickup.id

        db.add(PickupTimelineEntry(
            pickup_id=pickup.id,
            sequence=1,
            status=PickupStatus.PENDING_REVIEW,
            timestamp=now,
            latitude=latitude,
            longitude=longitude,
            note=INITIAL_NOTE,
            actor_id=requester_id,
        ))
        await db.commit()

        logger.info("Pickup %s created by requester %s (%s, %s)", pickup.id, requester_id, waste_type.value, priority.value)
        return await PickupStateMachine.get_pickup(db, pickup.id)
