"""
Delivery agent operations.

Walks an assigned pickup through its tracked phases:

    assigned --"Reached pickup location"--> in_transit
    in_transit --"Waste collected, en route to warehouse"--> in_transit
    in_transit --> completed

Completion fixes points and earnings and issues the requester's reward in
the same transaction as the status write.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select, func, desc
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import ConflictError, InvalidArgumentError, StaleStateError
from backend.app.domain.pickups.broker import AssignmentBroker
from backend.app.domain.pickups.calculator import completion_economics
from backend.app.domain.pickups.notices import chain, inbox, push
from backend.app.domain.pickups.state_machine import PickupStateMachine
from backend.app.domain.pickups.transitions import Actor, find_edge
from backend.app.domain.rewards.reward_service import RewardService
from backend.app.models.notification import NotificationType
from backend.app.models.pickup import Pickup
from backend.app.models.pickup_enums import OfferStatus, PickupStatus
from backend.app.models.pickup_offer import PickupOffer
from backend.app.models.reward import Reward

logger = logging.getLogger(__name__)

Location = Optional[Tuple[float, float]]

EARNINGS_HISTORY_DAYS = 30


def collected_step_limit() -> int:
    return find_edge(PickupStatus.IN_TRANSIT, PickupStatus.IN_TRANSIT).max_entries


class DeliveryService:

    @staticmethod
    async def advance(
        db: AsyncSession,
        pickup_id: int,
        agent: Actor,
        note: Optional[str] = None,
        location: Location = None
    ) -> Pickup:
        """
        Move the pickup one step forward.

        Raises:
            ConflictError: pickup is not in a phase the agent can advance
            ForbiddenError: agent is not the assigned agent
        """
        pickup = await PickupStateMachine.get_pickup(db, pickup_id)

        if pickup.status == PickupStatus.IN_TRANSIT:
            collected = await PickupStateMachine.count_entries(db, pickup_id, PickupStatus.IN_TRANSIT)
            if collected >= collected_step_limit():
                return await DeliveryService.complete(db, pickup_id, agent, note=note, location=location)
        elif pickup.status != PickupStatus.ASSIGNED:
            raise ConflictError(
                f"Pickup cannot be advanced from {pickup.status.value}",
                details={"pickup_id": pickup_id, "status": pickup.status.value}
            )

        pickup = await PickupStateMachine.transition(
            db, pickup_id,
            expected=pickup.status,
            target=PickupStatus.IN_TRANSIT,
            actor=agent,
            note=note,
            location=location,
        )
        timeline = await PickupStateMachine.get_timeline(db, pickup_id)
        push(pickup.requester_id, NotificationType.PICKUP_STATUS, pickup, note=timeline[-1].note)
        return pickup

    @staticmethod
    async def complete(
        db: AsyncSession,
        pickup_id: int,
        agent: Actor,
        note: Optional[str] = None,
        location: Location = None,
        distance_km: Optional[float] = None
    ) -> Pickup:
        """
        Deliver to the warehouse.

        Raises:
            StaleStateError: pickup is not in_transit
            ConflictError: the collected step has not been recorded yet
            InvalidArgumentError: negative reported distance
        """
        pickup = await PickupStateMachine.get_pickup(db, pickup_id)
        if pickup.status != PickupStatus.IN_TRANSIT:
            raise StaleStateError(pickup_id, PickupStatus.IN_TRANSIT, pickup.status)

        collected = await PickupStateMachine.count_entries(db, pickup_id, PickupStatus.IN_TRANSIT)
        if collected < collected_step_limit():
            raise ConflictError(
                "Record the waste collection before completing",
                details={"pickup_id": pickup_id}
            )

        if distance_km is not None and distance_km < 0:
            raise InvalidArgumentError("Distance cannot be negative")
        economics = completion_economics(pickup, distance_km)

        issued: List[Reward] = []

        async def issue_reward(db: AsyncSession, pickup: Pickup, written: Dict[str, Any]) -> None:
            issued.append(await RewardService.issue_for_pickup(
                db, pickup.id, pickup.requester_id, written["points"]
            ))

        pickup = await PickupStateMachine.transition(
            db, pickup_id,
            expected=PickupStatus.IN_TRANSIT,
            target=PickupStatus.COMPLETED,
            actor=agent,
            note=note,
            location=location,
            values=economics,
            side_effect=chain(
                issue_reward,
                inbox(
                    pickup.requester_id, NotificationType.PICKUP_COMPLETED,
                    "Pickup completed",
                    f"Your waste reached the warehouse. You earned {economics['points']} points."
                ),
            ),
        )

        push(
            pickup.requester_id, NotificationType.PICKUP_COMPLETED, pickup,
            points=pickup.points, earnings=pickup.earnings
        )
        for reward in issued:
            push(
                pickup.requester_id, NotificationType.REWARD_ISSUED, pickup,
                reward_id=reward.id, coupon_code=reward.coupon_code, points=reward.points_earned
            )
        return pickup

    @staticmethod
    async def cancel(
        db: AsyncSession,
        pickup_id: int,
        agent: Actor,
        note: str,
        location: Location = None
    ) -> Pickup:
        """
        Agent backs out.

        Before collection (assigned) the job is released back to awaiting_agent
        and offered to other agents; after collection (in_transit) the pickup
        is cancelled.
        """
        pickup = await PickupStateMachine.get_pickup(db, pickup_id)
        if pickup.status == PickupStatus.ASSIGNED:
            return await DeliveryService._release(db, pickup, agent, note, location)

        pickup = await PickupStateMachine.transition(
            db, pickup_id,
            expected=pickup.status,
            target=PickupStatus.CANCELLED,
            actor=agent,
            note=note,
            location=location,
            side_effect=inbox(
                pickup.requester_id, NotificationType.PICKUP_CANCELLED,
                "Pickup cancelled",
                f"The delivery agent cancelled your pickup: {(note or '').strip()}"
            ),
        )
        push(pickup.requester_id, NotificationType.PICKUP_CANCELLED, pickup, cancelled_by="agent")
        return pickup

    @staticmethod
    async def _release(
        db: AsyncSession,
        pickup: Pickup,
        agent: Actor,
        note: str,
        location: Location
    ) -> Pickup:
        pickup_id = pickup.id

        async def skip_releasing_agent(db: AsyncSession, pickup: Pickup, written: Dict[str, Any]) -> None:
            # New round; the agent who released the job is not offered it again
            now = datetime.utcnow()
            db.add(PickupOffer(
                pickup_id=pickup.id,
                agent_id=agent.user_id,
                round=pickup.offer_round + 1,
                status=OfferStatus.REJECTED,
                offered_at=now,
                expires_at=now,
                responded_at=now,
            ))

        pickup = await PickupStateMachine.transition(
            db, pickup_id,
            expected=PickupStatus.ASSIGNED,
            target=PickupStatus.AWAITING_AGENT,
            actor=agent,
            note=note,
            location=location,
            values={"offer_round": Pickup.offer_round + 1},
            side_effect=chain(
                skip_releasing_agent,
                inbox(
                    pickup.requester_id, NotificationType.PICKUP_STATUS,
                    "Finding another agent",
                    "Your delivery agent had to drop the pickup. We are finding another agent."
                ),
            ),
        )
        logger.info("Agent %s released pickup %s", agent.user_id, pickup_id)
        push(pickup.requester_id, NotificationType.PICKUP_STATUS, pickup, note="Agent released the pickup")

        await AssignmentBroker.offer(db, pickup_id)
        return await PickupStateMachine.get_pickup(db, pickup_id)

    @staticmethod
    async def list_assigned(
        db: AsyncSession,
        agent_id: int,
        status: Optional[PickupStatus] = None
    ) -> List[Pickup]:
        query = select(Pickup).where(Pickup.agent_id == agent_id)
        if status is not None:
            query = query.where(Pickup.status == status)
        result = await db.execute(query.order_by(desc(Pickup.created_at), desc(Pickup.id)))
        return list(result.scalars().all())

    @staticmethod
    async def earnings_summary(db: AsyncSession, agent_id: int) -> Dict[str, Any]:
        """
        Totals over the agent's completed pickups plus a per-day breakdown for
        the most recent active days.
        """
        completed = (
            Pickup.agent_id == agent_id,
            Pickup.status == PickupStatus.COMPLETED,
        )

        totals = await db.execute(
            select(func.coalesce(func.sum(Pickup.earnings), 0), func.count(Pickup.id)).where(*completed)
        )
        total_earnings, completed_count = totals.one()

        last = await db.execute(
            select(Pickup.earnings)
            .where(*completed)
            .order_by(desc(Pickup.completed_at), desc(Pickup.id))
            .limit(1)
        )
        last_earnings = last.scalar_one_or_none() or 0

        day = func.date(Pickup.completed_at)
        daily = await db.execute(
            select(day, func.sum(Pickup.earnings), func.count(Pickup.id))
            .where(*completed)
            .group_by(day)
            .order_by(desc(day))
            .limit(EARNINGS_HISTORY_DAYS)
        )

        return {
            "total_earnings": float(total_earnings),
            "completed_pickups": completed_count,
            "last_pickup_earnings": float(last_earnings),
            "daily": [
                {"date": str(row[0]), "earnings": float(row[1] or 0), "pickups": row[2]}
                for row in daily.all()
            ],
        }
