"""
Requester operations: cancel, rate and read their own pickups.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, update, func, desc
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import ConflictError, ForbiddenError, InvalidArgumentError
from backend.app.domain.pickups.broker import AssignmentBroker
from backend.app.domain.pickups.notices import push
from backend.app.domain.pickups.state_machine import PickupStateMachine
from backend.app.domain.pickups.transitions import Actor, ActorRole
from backend.app.models.notification import NotificationType
from backend.app.models.pickup import Pickup
from backend.app.models.pickup_enums import PickupStatus
from backend.app.models.pickup_timeline import PickupTimelineEntry

logger = logging.getLogger(__name__)

MIN_SCORE = 1
MAX_SCORE = 5


class RequesterService:

    @staticmethod
    async def cancel(db: AsyncSession, pickup_id: int, requester: Actor, note: str) -> Pickup:
        """
        Cancel an in-flight pickup (awaiting_agent, assigned or in_transit).

        Pending offers are withdrawn and the assigned agent, if any, is told.
        """
        pickup = await PickupStateMachine.get_pickup(db, pickup_id)
        withdrawn: List[int] = []

        async def withdraw_offers(db: AsyncSession, pickup: Pickup, written: Dict[str, Any]) -> None:
            withdrawn.extend(await AssignmentBroker.withdraw_pending(db, pickup.id, datetime.utcnow()))

        pickup = await PickupStateMachine.transition(
            db, pickup_id,
            expected=pickup.status,
            target=PickupStatus.CANCELLED,
            actor=requester,
            note=note,
            side_effect=withdraw_offers,
        )

        push(pickup.agent_id, NotificationType.PICKUP_CANCELLED, pickup, cancelled_by="requester")
        for agent_id in withdrawn:
            push(agent_id, NotificationType.OFFER_WITHDRAWN, pickup, reason="cancelled")
        return pickup

    @staticmethod
    async def rate(
        db: AsyncSession,
        pickup_id: int,
        requester_id: int,
        score: int,
        review: Optional[str] = None
    ) -> Pickup:
        """
        Rate a completed pickup, once.

        Raises:
            InvalidArgumentError: score outside 1-5
            ForbiddenError: caller does not own the pickup
            ConflictError: pickup not completed, or already rated
        """
        if isinstance(score, bool) or not isinstance(score, int) or not MIN_SCORE <= score <= MAX_SCORE:
            raise InvalidArgumentError(f"Rating must be a whole number from {MIN_SCORE} to {MAX_SCORE}")

        pickup = await PickupStateMachine.get_pickup(db, pickup_id)
        if pickup.requester_id != requester_id:
            raise ForbiddenError("Only the requester can rate this pickup")
        if pickup.status != PickupStatus.COMPLETED:
            raise ConflictError(
                "Only completed pickups can be rated",
                details={"pickup_id": pickup_id, "status": pickup.status.value}
            )

        result = await db.execute(
            update(Pickup)
            .where(
                Pickup.id == pickup_id,
                Pickup.requester_id == requester_id,
                Pickup.status == PickupStatus.COMPLETED,
                Pickup.rating_score.is_(None)
            )
            .values(
                rating_score=score,
                rating_review=(review or "").strip() or None,
                rated_at=datetime.utcnow()
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            raise ConflictError("Pickup has already been rated", details={"pickup_id": pickup_id})

        await db.commit()
        logger.info("Pickup %s rated %s by requester %s", pickup_id, score, requester_id)

        pickup = await PickupStateMachine.get_pickup(db, pickup_id)
        push(pickup.agent_id, NotificationType.PICKUP_STATUS, pickup, rating=score)
        return pickup

    @staticmethod
    async def list_mine(
        db: AsyncSession,
        requester_id: int,
        status: Optional[PickupStatus] = None,
        page: int = 1,
        page_size: int = 20
    ) -> Tuple[List[Pickup], int]:
        if page < 1 or page_size < 1 or page_size > 100:
            raise InvalidArgumentError("page must be >= 1 and page_size between 1 and 100")

        query = select(Pickup).where(Pickup.requester_id == requester_id)
        count_query = select(func.count(Pickup.id)).where(Pickup.requester_id == requester_id)
        if status is not None:
            query = query.where(Pickup.status == status)
            count_query = count_query.where(Pickup.status == status)

        total = (await db.execute(count_query)).scalar()
        result = await db.execute(
            query.order_by(desc(Pickup.id)).offset((page - 1) * page_size).limit(page_size)
        )
        return list(result.scalars().all()), total

    @staticmethod
    async def get(db: AsyncSession, pickup_id: int, viewer: Actor) -> Tuple[Pickup, List[PickupTimelineEntry]]:
        """
        A pickup with its timeline.

        Visible to admins, its requester, its assigned agent, and any agent
        while it is still awaiting one.
        """
        pickup = await PickupStateMachine.get_pickup(db, pickup_id)

        allowed = (
            viewer.role == ActorRole.ADMIN
            or (viewer.role == ActorRole.REQUESTER and viewer.user_id == pickup.requester_id)
            or (viewer.role == ActorRole.AGENT and (
                viewer.user_id == pickup.agent_id or pickup.status == PickupStatus.AWAITING_AGENT
            ))
        )
        if not allowed:
            raise ForbiddenError("You cannot view this pickup", details={"pickup_id": pickup_id})

        return pickup, await PickupStateMachine.get_timeline(db, pickup_id)
