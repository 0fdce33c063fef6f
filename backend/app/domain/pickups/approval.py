"""
Admin approval gate.

Two state machine edges out of pending_review plus the admins' review queue.
"""

import logging
from datetime import date, datetime, time, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import select, or_, desc
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import InvalidArgumentError, StaleStateError
from backend.app.domain.pickups.broker import AssignmentBroker
from backend.app.domain.pickups.notices import inbox, push
from backend.app.domain.pickups.state_machine import PickupStateMachine
from backend.app.domain.pickups.transitions import Actor
from backend.app.models.notification import NotificationType
from backend.app.models.pickup import Pickup
from backend.app.models.pickup_enums import PickupPriority, PickupStatus, WasteType
from backend.app.models.user import User

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100


class ApprovalGate:

    @staticmethod
    async def approve(db: AsyncSession, pickup_id: int, admin: Actor) -> Pickup:
        """
        Approve a pending pickup and hand it to the assignment broker.

        The automatic admin_approved -> awaiting_agent step runs right after
        the approval commits; if it is lost the offer sweeper completes it.
        """
        pickup = await PickupStateMachine.get_pickup(db, pickup_id)
        pickup = await PickupStateMachine.transition(
            db, pickup_id,
            expected=PickupStatus.PENDING_REVIEW,
            target=PickupStatus.ADMIN_APPROVED,
            actor=admin,
            side_effect=inbox(
                pickup.requester_id, NotificationType.PICKUP_APPROVED,
                "Pickup approved",
                "Your pickup was approved and is being offered to delivery agents."
            ),
        )
        push(pickup.requester_id, NotificationType.PICKUP_APPROVED, pickup)

        try:
            await AssignmentBroker.queue_for_agents(db, pickup_id)
        except StaleStateError:
            logger.info("Pickup %s already queued by the sweeper", pickup_id)
        return await PickupStateMachine.get_pickup(db, pickup_id)

    @staticmethod
    async def reject(db: AsyncSession, pickup_id: int, admin: Actor, reason: str) -> Pickup:
        """Reject a pending pickup. The reason is required and shown to the requester."""
        pickup = await PickupStateMachine.get_pickup(db, pickup_id)
        pickup = await PickupStateMachine.transition(
            db, pickup_id,
            expected=PickupStatus.PENDING_REVIEW,
            target=PickupStatus.ADMIN_REJECTED,
            actor=admin,
            reason=reason,
            side_effect=inbox(
                pickup.requester_id, NotificationType.PICKUP_REJECTED,
                "Pickup rejected",
                f"Your pickup was rejected: {(reason or '').strip()}",
                {"reason": (reason or "").strip()}
            ),
        )
        push(pickup.requester_id, NotificationType.PICKUP_REJECTED, pickup, reason=pickup.rejection_reason)
        return pickup

    @staticmethod
    async def list_for_review(
        db: AsyncSession,
        status: Optional[PickupStatus] = PickupStatus.PENDING_REVIEW,
        created_from: Optional[date] = None,
        created_to: Optional[date] = None,
        waste_type: Optional[WasteType] = None,
        priority: Optional[PickupPriority] = None,
        search: Optional[str] = None,
        cursor: Optional[int] = None,
        limit: int = 20,
    ) -> Tuple[List[Pickup], Optional[int]]:
        """
        Review queue, newest first.

        Keyset pagination on the pickup id: pass the returned cursor to get
        the next page. Pages never repeat or skip rows when pickups change
        status between calls.

        Returns:
            (pickups, next_cursor) with next_cursor None on the last page
        """
        if limit < 1 or limit > MAX_PAGE_SIZE:
            raise InvalidArgumentError(f"limit must be between 1 and {MAX_PAGE_SIZE}")
        if created_from and created_to and created_from > created_to:
            raise InvalidArgumentError("created_from must not be after created_to")

        query = select(Pickup)
        if status is not None:
            query = query.where(Pickup.status == status)
        if created_from:
            query = query.where(Pickup.created_at >= datetime.combine(created_from, time.min))
        if created_to:
            query = query.where(Pickup.created_at < datetime.combine(created_to + timedelta(days=1), time.min))
        if waste_type:
            query = query.where(Pickup.waste_type == waste_type)
        if priority:
            query = query.where(Pickup.priority == priority)
        if search and search.strip():
            pattern = f"%{search.strip()}%"
            query = query.join(User, User.id == Pickup.requester_id).where(
                or_(
                    User.full_name.ilike(pattern),
                    User.username.ilike(pattern),
                    Pickup.pickup_address.ilike(pattern),
                )
            )
        if cursor is not None:
            query = query.where(Pickup.id < cursor)

        result = await db.execute(query.order_by(desc(Pickup.id)).limit(limit + 1))
        pickups = list(result.scalars().all())

        next_cursor = None
        if len(pickups) > limit:
            pickups = pickups[:limit]
            next_cursor = pickups[-1].id
        return pickups, next_cursor
