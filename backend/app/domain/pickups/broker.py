"""
Assignment Broker (Domain Logic).

Turns one awaiting_agent pickup into exactly one assigned pickup.

Offers are rows in pickup_offers, each with a fixed decision window. The
broker offers a pickup to the top `offer_fanout` online agents, ranked by
distance to the pickup when coordinates exist and by least-recently-offered
otherwise. Accepting is the state machine's compare-and-swap
(awaiting_agent -> assigned); the broker adds no locking of its own, so
any number of agents may race and exactly one wins.

Expiry is never a blocking wait: the offer sweeper periodically expires
overdue offers and re-offers to the next candidate. When every online agent
has been tried in the current round the pickup stays awaiting_agent and a
fresh round starts after `offer_retry_cooldown_seconds`, or as soon as a new
agent comes online.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from sqlalchemy import select, update, func, case, or_, and_, desc
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.core.exceptions import ForbiddenError, ResourceNotFoundError, StaleStateError
from backend.app.domain.pickups.notices import chain, inbox, push
from backend.app.domain.pickups.state_machine import PickupStateMachine
from backend.app.domain.pickups.transitions import Actor, ActorRole
from backend.app.models.agent_availability import AgentAvailability
from backend.app.models.enums import UserRole
from backend.app.models.notification import NotificationType
from backend.app.models.pickup import Pickup
from backend.app.models.pickup_enums import OfferStatus, PickupPriority, PickupStatus
from backend.app.models.pickup_offer import PickupOffer
from backend.app.models.user import User
from backend.app.services.routing import haversine_distance, routing_service

logger = logging.getLogger(__name__)


def scheduled_horizon(now: datetime):
    """Latest scheduled date that is already offerable."""
    return (now + timedelta(hours=settings.scheduled_offer_lead_hours)).date()


def offerable_clause(now: datetime):
    """Immediate pickups always; scheduled ones once inside the lead window."""
    return or_(
        Pickup.priority == PickupPriority.IMMEDIATE,
        and_(
            Pickup.priority == PickupPriority.SCHEDULED,
            Pickup.scheduled_date <= scheduled_horizon(now),
        ),
    )


def rank_candidates(pickup: Pickup, candidates: List[AgentAvailability]) -> List[AgentAvailability]:
    """
    Nearest agents first when the pickup has coordinates, otherwise the agents
    who were offered something least recently. Ties fall back to agent id.
    """
    if pickup.pickup_latitude is not None and pickup.pickup_longitude is not None:
        def by_distance(agent: AgentAvailability):
            if agent.latitude is None or agent.longitude is None:
                return (1, 0.0, agent.agent_id)
            distance = haversine_distance(
                pickup.pickup_latitude, pickup.pickup_longitude,
                agent.latitude, agent.longitude
            )
            return (0, distance, agent.agent_id)
        return sorted(candidates, key=by_distance)

    def by_last_offered(agent: AgentAvailability):
        if agent.last_offered_at is None:
            return (0, "", agent.agent_id)
        return (1, agent.last_offered_at.isoformat(), agent.agent_id)
    return sorted(candidates, key=by_last_offered)


class AssignmentBroker:

    # --- Offering ---

    @staticmethod
    async def offer(db: AsyncSession, pickup_id: int, now: Optional[datetime] = None) -> List[PickupOffer]:
        """
        Offer a pickup to the next candidates of its current round.

        Returns the offers created (empty when nothing was offered: pickup not
        awaiting, not yet offerable, offers still live, or no candidates).
        """
        now = now or datetime.utcnow()
        pickup = await PickupStateMachine.get_pickup(db, pickup_id)
        if pickup.status != PickupStatus.AWAITING_AGENT:
            return []

        if pickup.priority == PickupPriority.SCHEDULED and pickup.scheduled_date > scheduled_horizon(now):
            logger.debug("Pickup %s scheduled for %s, not offerable yet", pickup_id, pickup.scheduled_date)
            return []

        round_number = pickup.offer_round or 1
        live = await AssignmentBroker._count_live_offers(db, pickup_id, now)
        slots = settings.offer_fanout - live
        if slots <= 0:
            return []

        candidates = await AssignmentBroker._candidates(db, pickup_id, round_number)
        if not candidates:
            if await AssignmentBroker._online_agent_count(db) == 0:
                logger.info("Pickup %s awaiting agent: no agents online", pickup_id)
            else:
                logger.info("Pickup %s exhausted candidates in round %s", pickup_id, round_number)
            return []

        if pickup.offer_round != round_number:
            await db.execute(
                update(Pickup)
                .where(Pickup.id == pickup_id, Pickup.status == PickupStatus.AWAITING_AGENT)
                .values(offer_round=round_number)
                .execution_options(synchronize_session=False)
            )

        offers = []
        expires_at = now + timedelta(seconds=settings.offer_window_seconds)
        for agent in rank_candidates(pickup, candidates)[:slots]:
            offer = PickupOffer(
                pickup_id=pickup_id,
                agent_id=agent.agent_id,
                round=round_number,
                status=OfferStatus.PENDING,
                offered_at=now,
                expires_at=expires_at,
            )
            db.add(offer)
            agent.last_offered_at = now
            offers.append(offer)
        await db.commit()

        for offer in offers:
            logger.info("Pickup %s offered to agent %s (round %s)", pickup_id, offer.agent_id, round_number)
            push(
                offer.agent_id, NotificationType.PICKUP_OFFER, pickup,
                offer_id=offer.id,
                expires_at=expires_at.isoformat(),
                window_seconds=settings.offer_window_seconds,
            )
        return offers

    @staticmethod
    async def start_new_round(db: AsyncSession, pickup_id: int, now: Optional[datetime] = None) -> List[PickupOffer]:
        """Forget the previous round's declines and offer again from the top."""
        result = await db.execute(
            update(Pickup)
            .where(Pickup.id == pickup_id, Pickup.status == PickupStatus.AWAITING_AGENT)
            .values(offer_round=Pickup.offer_round + 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount != 1:
            return []
        logger.info("Pickup %s starting a new offer round", pickup_id)
        return await AssignmentBroker.offer(db, pickup_id, now)

    # --- Agent responses ---

    @staticmethod
    async def accept(db: AsyncSession, pickup_id: int, agent: Actor) -> Pickup:
        """
        Claim a pickup for `agent`.

        Safe under concurrent calls: the awaiting_agent -> assigned
        compare-and-swap admits one winner and every loser gets StaleStateError.
        Only agents who are online may accept (ForbiddenError otherwise).
        """
        pickup = await PickupStateMachine.get_pickup(db, pickup_id)
        if pickup.status != PickupStatus.AWAITING_AGENT:
            raise StaleStateError(
                pickup_id, PickupStatus.AWAITING_AGENT, pickup.status,
                message="Pickup is no longer available"
            )
        if agent.role == ActorRole.AGENT:
            availability = await db.get(AgentAvailability, agent.user_id, populate_existing=True)
            if availability is None or not availability.is_online:
                raise ForbiddenError("Go online to accept pickups")

        values = {}
        if pickup.pickup_latitude is not None and pickup.warehouse_latitude is not None:
            route = await routing_service.get_route(
                (pickup.pickup_latitude, pickup.pickup_longitude),
                (pickup.warehouse_latitude, pickup.warehouse_longitude),
            )
            values = {"distance_km": round(route.distance_km, 3), "route_summary": route.as_dict()}

        withdrawn: List[int] = []

        async def settle_offers(db: AsyncSession, pickup: Pickup, written: Dict) -> None:
            now = datetime.utcnow()
            await db.execute(
                update(PickupOffer)
                .where(
                    PickupOffer.pickup_id == pickup_id,
                    PickupOffer.agent_id == agent.user_id,
                    PickupOffer.status == OfferStatus.PENDING
                )
                .values(status=OfferStatus.ACCEPTED, responded_at=now)
                .execution_options(synchronize_session=False)
            )
            withdrawn.extend(await AssignmentBroker.withdraw_pending(db, pickup_id, now))

        try:
            pickup = await PickupStateMachine.transition(
                db, pickup_id,
                expected=PickupStatus.AWAITING_AGENT,
                target=PickupStatus.ASSIGNED,
                actor=agent,
                values=values,
                side_effect=chain(
                    settle_offers,
                    inbox(
                        pickup.requester_id, NotificationType.PICKUP_ACCEPTED,
                        "Pickup accepted",
                        "A delivery agent accepted your pickup and is on the way."
                    ),
                ),
            )
        except StaleStateError as e:
            raise StaleStateError(
                pickup_id, PickupStatus.AWAITING_AGENT, e.details.get("actual"),
                message="Pickup is no longer available"
            )

        push(pickup.requester_id, NotificationType.PICKUP_ACCEPTED, pickup, agent_id=agent.user_id)
        for agent_id in withdrawn:
            push(agent_id, NotificationType.OFFER_WITHDRAWN, pickup, reason="taken")
        return pickup

    @staticmethod
    async def reject(db: AsyncSession, pickup_id: int, agent_id: int) -> Pickup:
        """
        Explicit decline. The agent is left out of the rest of this round and
        the pickup moves straight on to the next candidate.
        """
        pickup = await PickupStateMachine.get_pickup(db, pickup_id)
        if pickup.status != PickupStatus.AWAITING_AGENT:
            raise StaleStateError(
                pickup_id, PickupStatus.AWAITING_AGENT, pickup.status,
                message="Pickup is no longer available"
            )

        now = datetime.utcnow()
        result = await db.execute(
            update(PickupOffer)
            .where(
                PickupOffer.pickup_id == pickup_id,
                PickupOffer.agent_id == agent_id,
                PickupOffer.status == OfferStatus.PENDING
            )
            .values(status=OfferStatus.REJECTED, responded_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            # Declined from the available list without a live offer
            db.add(PickupOffer(
                pickup_id=pickup_id,
                agent_id=agent_id,
                round=pickup.offer_round or 1,
                status=OfferStatus.REJECTED,
                offered_at=now,
                expires_at=now,
                responded_at=now,
            ))
        await db.commit()
        logger.info("Agent %s declined pickup %s", agent_id, pickup_id)

        await AssignmentBroker.offer(db, pickup_id)
        return await PickupStateMachine.get_pickup(db, pickup_id)

    @staticmethod
    async def expire(db: AsyncSession, pickup_id: int, now: Optional[datetime] = None) -> List[PickupOffer]:
        """
        Expire the pickup's overdue offers and re-offer to the next candidate.

        Returns the new offers, if any.
        """
        now = now or datetime.utcnow()
        result = await db.execute(
            select(PickupOffer.agent_id).where(
                PickupOffer.pickup_id == pickup_id,
                PickupOffer.status == OfferStatus.PENDING,
                PickupOffer.expires_at <= now
            )
        )
        overdue = [row[0] for row in result.all()]
        if overdue:
            await db.execute(
                update(PickupOffer)
                .where(
                    PickupOffer.pickup_id == pickup_id,
                    PickupOffer.status == OfferStatus.PENDING,
                    PickupOffer.expires_at <= now
                )
                .values(status=OfferStatus.EXPIRED, responded_at=now)
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            logger.info("Pickup %s offer expired for agents %s", pickup_id, overdue)

        offers = await AssignmentBroker.offer(db, pickup_id, now)
        if overdue:
            pickup = await PickupStateMachine.get_pickup(db, pickup_id)
            for agent_id in overdue:
                push(agent_id, NotificationType.OFFER_WITHDRAWN, pickup, reason="expired")
        return offers

    # --- Periodic sweep ---

    @staticmethod
    async def sweep(db: AsyncSession, now: Optional[datetime] = None) -> Dict[str, int]:
        """
        One pass of the offer sweeper.

        1. Queue approved pickups whose automatic move to awaiting_agent was lost.
        2. Expire overdue offers and re-offer those pickups.
        3. Offer awaiting pickups with no live offer (new agents, scheduled
           pickups entering their lead window, rounds past their cooldown).
        """
        now = now or datetime.utcnow()
        stats = {"queued": 0, "expired": 0, "offered": 0, "new_rounds": 0}

        result = await db.execute(select(Pickup.id).where(Pickup.status == PickupStatus.ADMIN_APPROVED))
        for pickup_id in result.scalars().all():
            try:
                await AssignmentBroker.queue_for_agents(db, pickup_id)
                stats["queued"] += 1
            except StaleStateError:
                continue

        result = await db.execute(
            select(PickupOffer.pickup_id)
            .where(PickupOffer.status == OfferStatus.PENDING, PickupOffer.expires_at <= now)
            .distinct()
        )
        for pickup_id in result.scalars().all():
            stats["expired"] += 1
            stats["offered"] += len(await AssignmentBroker.expire(db, pickup_id, now))

        live_offers = (
            select(PickupOffer.id)
            .where(
                PickupOffer.pickup_id == Pickup.id,
                PickupOffer.status == OfferStatus.PENDING,
                PickupOffer.expires_at > now
            )
            .exists()
        )
        result = await db.execute(
            select(Pickup.id)
            .where(Pickup.status == PickupStatus.AWAITING_AGENT, offerable_clause(now), ~live_offers)
            .order_by(case((Pickup.priority == PickupPriority.IMMEDIATE, 0), else_=1), Pickup.id)
        )
        for pickup_id in result.scalars().all():
            offers = await AssignmentBroker.offer(db, pickup_id, now)
            if not offers and await AssignmentBroker._round_cooled_down(db, pickup_id, now):
                offers = await AssignmentBroker.start_new_round(db, pickup_id, now)
                if offers:
                    stats["new_rounds"] += 1
            stats["offered"] += len(offers)

        return stats

    @staticmethod
    async def queue_for_agents(db: AsyncSession, pickup_id: int) -> Pickup:
        """System edge admin_approved -> awaiting_agent, then the first offer."""
        pickup = await PickupStateMachine.transition(
            db, pickup_id,
            expected=PickupStatus.ADMIN_APPROVED,
            target=PickupStatus.AWAITING_AGENT,
            actor=Actor.system(),
            values={"offer_round": 1},
        )
        await AssignmentBroker.offer(db, pickup_id)
        return pickup

    # --- Agent availability ---

    @staticmethod
    async def set_availability(
        db: AsyncSession,
        agent_id: int,
        is_online: bool,
        location: Optional[Tuple[float, float]] = None
    ) -> AgentAvailability:
        """
        Record an agent going online or offline.

        Online: awaiting pickups without a live offer are offered again.
        Offline: the agent's pending offers count as declines and those
        pickups move on to their next candidates.
        """
        agent = await db.get(User, agent_id)
        if not agent:
            raise ResourceNotFoundError("Agent", agent_id)
        if agent.role != UserRole.AGENT:
            raise ForbiddenError("Only delivery agents have availability")

        availability = await db.get(AgentAvailability, agent_id)
        if availability is None:
            availability = AgentAvailability(agent_id=agent_id)
            db.add(availability)
        availability.is_online = is_online
        if location is not None:
            availability.latitude, availability.longitude = location
        availability.updated_at = datetime.utcnow()
        await db.commit()
        logger.info("Agent %s is now %s", agent_id, "online" if is_online else "offline")

        if is_online:
            await AssignmentBroker._offer_waiting(db)
        else:
            await AssignmentBroker._release_offers_of(db, agent_id)

        await db.refresh(availability)
        return availability

    @staticmethod
    async def get_availability(db: AsyncSession, agent_id: int) -> Optional[AgentAvailability]:
        return await db.get(AgentAvailability, agent_id)

    @staticmethod
    async def list_available(db: AsyncSession, agent_id: int, now: Optional[datetime] = None) -> List[Pickup]:
        """
        Awaiting pickups the agent can accept: immediate first, then newest.

        Raises:
            ForbiddenError: agent is offline
        """
        now = now or datetime.utcnow()
        availability = await db.get(AgentAvailability, agent_id)
        if availability is None or not availability.is_online:
            raise ForbiddenError("Go online to see available pickups")

        declined = (
            select(PickupOffer.id)
            .where(
                PickupOffer.pickup_id == Pickup.id,
                PickupOffer.agent_id == agent_id,
                PickupOffer.round == Pickup.offer_round,
                PickupOffer.status.in_([OfferStatus.REJECTED, OfferStatus.EXPIRED])
            )
            .exists()
        )
        result = await db.execute(
            select(Pickup)
            .where(Pickup.status == PickupStatus.AWAITING_AGENT, offerable_clause(now), ~declined)
            .order_by(case((Pickup.priority == PickupPriority.IMMEDIATE, 0), else_=1), desc(Pickup.id))
            .limit(settings.available_list_limit)
        )
        return list(result.scalars().all())

    @staticmethod
    async def list_offers(db: AsyncSession, agent_id: int, now: Optional[datetime] = None) -> List[PickupOffer]:
        """The agent's live offers, soonest expiry first."""
        now = now or datetime.utcnow()
        result = await db.execute(
            select(PickupOffer)
            .where(
                PickupOffer.agent_id == agent_id,
                PickupOffer.status == OfferStatus.PENDING,
                PickupOffer.expires_at > now
            )
            .order_by(PickupOffer.expires_at)
        )
        return list(result.scalars().all())

    # --- Internals ---

    @staticmethod
    async def _candidates(db: AsyncSession, pickup_id: int, round_number: int) -> List[AgentAvailability]:
        """Online active agents not yet offered this pickup in this round."""
        already_offered = select(PickupOffer.agent_id).where(
            PickupOffer.pickup_id == pickup_id,
            PickupOffer.round == round_number
        )
        result = await db.execute(
            select(AgentAvailability)
            .join(User, User.id == AgentAvailability.agent_id)
            .where(
                AgentAvailability.is_online == True,
                User.is_active == True,
                User.role == UserRole.AGENT,
                AgentAvailability.agent_id.not_in(already_offered)
            )
        )
        return list(result.scalars().all())

    @staticmethod
    async def _online_agent_count(db: AsyncSession) -> int:
        result = await db.execute(
            select(func.count(AgentAvailability.agent_id)).where(AgentAvailability.is_online == True)
        )
        return result.scalar()

    @staticmethod
    async def _count_live_offers(db: AsyncSession, pickup_id: int, now: datetime) -> int:
        result = await db.execute(
            select(func.count(PickupOffer.id)).where(
                PickupOffer.pickup_id == pickup_id,
                PickupOffer.status == OfferStatus.PENDING,
                PickupOffer.expires_at > now
            )
        )
        return result.scalar()

    @staticmethod
    async def _round_cooled_down(db: AsyncSession, pickup_id: int, now: datetime) -> bool:
        """True when the current round has offers and none settled within the cooldown."""
        pickup = await PickupStateMachine.get_pickup(db, pickup_id)
        settled_at = func.coalesce(PickupOffer.responded_at, PickupOffer.expires_at)
        cutoff = now - timedelta(seconds=settings.offer_retry_cooldown_seconds)
        result = await db.execute(
            select(
                func.count(PickupOffer.id),
                func.sum(case((settled_at > cutoff, 1), else_=0)),
            ).where(PickupOffer.pickup_id == pickup_id, PickupOffer.round == pickup.offer_round)
        )
        total, recent = result.one()
        return total > 0 and not recent

    @staticmethod
    async def withdraw_pending(db: AsyncSession, pickup_id: int, now: datetime) -> List[int]:
        """Withdraw every pending offer on a pickup; returns the affected agents."""
        result = await db.execute(
            select(PickupOffer.agent_id).where(
                PickupOffer.pickup_id == pickup_id,
                PickupOffer.status == OfferStatus.PENDING
            )
        )
        agent_ids = [row[0] for row in result.all()]
        if agent_ids:
            await db.execute(
                update(PickupOffer)
                .where(PickupOffer.pickup_id == pickup_id, PickupOffer.status == OfferStatus.PENDING)
                .values(status=OfferStatus.WITHDRAWN, responded_at=now)
                .execution_options(synchronize_session=False)
            )
        return agent_ids

    @staticmethod
    async def _offer_waiting(db: AsyncSession) -> None:
        now = datetime.utcnow()
        live_offers = (
            select(PickupOffer.id)
            .where(
                PickupOffer.pickup_id == Pickup.id,
                PickupOffer.status == OfferStatus.PENDING,
                PickupOffer.expires_at > now
            )
            .exists()
        )
        result = await db.execute(
            select(Pickup.id)
            .where(Pickup.status == PickupStatus.AWAITING_AGENT, offerable_clause(now), ~live_offers)
            .order_by(case((Pickup.priority == PickupPriority.IMMEDIATE, 0), else_=1), Pickup.id)
        )
        for pickup_id in result.scalars().all():
            await AssignmentBroker.offer(db, pickup_id, now)

    @staticmethod
    async def _release_offers_of(db: AsyncSession, agent_id: int) -> None:
        now = datetime.utcnow()
        result = await db.execute(
            select(PickupOffer.pickup_id).where(
                PickupOffer.agent_id == agent_id,
                PickupOffer.status == OfferStatus.PENDING
            )
        )
        pickup_ids = sorted(set(result.scalars().all()))
        if not pickup_ids:
            return

        await db.execute(
            update(PickupOffer)
            .where(PickupOffer.agent_id == agent_id, PickupOffer.status == OfferStatus.PENDING)
            .values(status=OfferStatus.REJECTED, responded_at=now)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        logger.info("Agent %s went offline; declined pending offers for pickups %s", agent_id, pickup_ids)

        for pickup_id in pickup_ids:
            await AssignmentBroker.offer(db, pickup_id, now)
