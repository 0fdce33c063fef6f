"""
Assignment broker tests.

Offering, declines, expiry, availability and the periodic sweep.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select

from backend.app.core.config import settings
from backend.app.core.exceptions import ForbiddenError, StaleStateError
from backend.app.domain.pickups.broker import AssignmentBroker
from backend.app.domain.pickups.state_machine import PickupStateMachine
from backend.app.domain.pickups.transitions import Actor
from backend.app.models.enums import UserRole
from backend.app.models.pickup_enums import OfferStatus, PickupPriority, PickupStatus
from backend.app.models.pickup_offer import PickupOffer
from backend.app.services.notification_fanout import fanout

MUMBAI = (19.0176, 72.8562)
NEARBY = (19.0200, 72.8600)
DELHI = (28.6139, 77.2090)


async def offers_for(db_session, pickup_id):
    result = await db_session.execute(
        select(PickupOffer)
        .where(PickupOffer.pickup_id == pickup_id)
        .order_by(PickupOffer.id)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_offer_goes_to_nearest_agent(db_session, online_agent, awaiting_pickup, mock_redis):
    far = await online_agent(DELHI)
    near = await online_agent(NEARBY)

    pickup = await awaiting_pickup(pickup_location=MUMBAI)
    await fanout.drain()

    assert pickup.status == PickupStatus.AWAITING_AGENT
    assert pickup.offer_round == 1
    offers = await AssignmentBroker.list_offers(db_session, near.id)
    assert [offer.pickup_id for offer in offers] == [pickup.id]
    assert await AssignmentBroker.list_offers(db_session, far.id) == []

    events = mock_redis.events_for(near.id)
    assert events[-1]["event"] == "pickup_offer"
    assert events[-1]["payload"]["pickup_id"] == pickup.id
    assert events[-1]["payload"]["window_seconds"] == settings.offer_window_seconds


@pytest.mark.asyncio
async def test_offer_window_is_twenty_seconds(db_session, online_agent, awaiting_pickup):
    await online_agent()
    pickup = await awaiting_pickup()

    [offer] = await offers_for(db_session, pickup.id)
    assert offer.status == OfferStatus.PENDING
    assert (offer.expires_at - offer.offered_at).total_seconds() == settings.offer_window_seconds


@pytest.mark.asyncio
async def test_expired_offer_moves_to_next_agent(db_session, online_agent, awaiting_pickup, as_actor, mock_redis):
    first = await online_agent()
    second = await online_agent()
    pickup = await awaiting_pickup()

    [offer] = await offers_for(db_session, pickup.id)
    assert offer.agent_id == first.id

    later = datetime.utcnow() + timedelta(seconds=settings.offer_window_seconds + 1)
    new_offers = await AssignmentBroker.expire(db_session, pickup.id, now=later)
    assert [o.agent_id for o in new_offers] == [second.id]

    offers = await offers_for(db_session, pickup.id)
    assert [(o.agent_id, o.status) for o in offers] == [
        (first.id, OfferStatus.EXPIRED),
        (second.id, OfferStatus.PENDING),
    ]

    pickup = await AssignmentBroker.accept(db_session, pickup.id, as_actor(second))
    assert pickup.status == PickupStatus.ASSIGNED
    assert pickup.agent_id == second.id

    await fanout.drain()
    withdrawn = [e for e in mock_redis.events_for(first.id) if e["event"] == "offer_withdrawn"]
    assert withdrawn[0]["payload"]["reason"] == "expired"


@pytest.mark.asyncio
async def test_offer_not_expired_inside_window(db_session, online_agent, awaiting_pickup):
    await online_agent()
    await online_agent()
    pickup = await awaiting_pickup()

    assert await AssignmentBroker.expire(db_session, pickup.id) == []
    offers = await offers_for(db_session, pickup.id)
    assert [o.status for o in offers] == [OfferStatus.PENDING]


@pytest.mark.asyncio
async def test_reject_offers_to_next_candidate(db_session, online_agent, awaiting_pickup):
    first = await online_agent()
    second = await online_agent()
    pickup = await awaiting_pickup()

    pickup = await AssignmentBroker.reject(db_session, pickup.id, first.id)

    assert pickup.status == PickupStatus.AWAITING_AGENT
    assert [o.pickup_id for o in await AssignmentBroker.list_offers(db_session, second.id)] == [pickup.id]
    assert pickup.id not in [p.id for p in await AssignmentBroker.list_available(db_session, first.id)]
    assert pickup.id in [p.id for p in await AssignmentBroker.list_available(db_session, second.id)]


@pytest.mark.asyncio
async def test_last_candidate_declining_leaves_pickup_waiting(db_session, online_agent, awaiting_pickup):
    only = await online_agent()
    pickup = await awaiting_pickup()

    pickup = await AssignmentBroker.reject(db_session, pickup.id, only.id)

    assert pickup.status == PickupStatus.AWAITING_AGENT
    assert await AssignmentBroker.list_offers(db_session, only.id) == []


@pytest.mark.asyncio
async def test_going_offline_declines_pending_offers(db_session, online_agent, awaiting_pickup):
    first = await online_agent()
    second = await online_agent()
    pickup = await awaiting_pickup()

    availability = await AssignmentBroker.set_availability(db_session, first.id, False)

    assert availability.is_online is False
    offers = await offers_for(db_session, pickup.id)
    assert [(o.agent_id, o.status) for o in offers] == [
        (first.id, OfferStatus.REJECTED),
        (second.id, OfferStatus.PENDING),
    ]


@pytest.mark.asyncio
async def test_no_agents_online_then_agent_arrives(db_session, make_user, awaiting_pickup):
    pickup = await awaiting_pickup()
    assert pickup.status == PickupStatus.AWAITING_AGENT
    assert await offers_for(db_session, pickup.id) == []

    agent = await make_user(UserRole.AGENT)
    await AssignmentBroker.set_availability(db_session, agent.id, True)

    assert [o.pickup_id for o in await AssignmentBroker.list_offers(db_session, agent.id)] == [pickup.id]


@pytest.mark.asyncio
async def test_fanout_offers_several_agents_and_withdraws_losers(
    db_session, online_agent, awaiting_pickup, as_actor, mock_redis, monkeypatch
):
    monkeypatch.setattr(settings, "offer_fanout", 2)
    first = await online_agent()
    second = await online_agent()
    third = await online_agent()
    pickup = await awaiting_pickup()

    offers = await offers_for(db_session, pickup.id)
    assert sorted(o.agent_id for o in offers) == [first.id, second.id]

    await AssignmentBroker.accept(db_session, pickup.id, as_actor(second))
    await fanout.drain()

    offers = {o.agent_id: o.status for o in await offers_for(db_session, pickup.id)}
    assert offers == {first.id: OfferStatus.WITHDRAWN, second.id: OfferStatus.ACCEPTED}
    taken = [e for e in mock_redis.events_for(first.id) if e["event"] == "offer_withdrawn"]
    assert taken[0]["payload"]["reason"] == "taken"
    assert mock_redis.events_for(third.id) == []


@pytest.mark.asyncio
async def test_accept_records_route_distance(db_session, online_agent, awaiting_pickup, as_actor):
    agent = await online_agent()
    pickup = await awaiting_pickup(pickup_location=MUMBAI)

    pickup = await AssignmentBroker.accept(db_session, pickup.id, as_actor(agent))

    assert pickup.distance_km > 0
    assert pickup.route_summary["source"] == "straight_line"


@pytest.mark.asyncio
async def test_accept_taken_pickup_is_stale(db_session, online_agent, awaiting_pickup, as_actor):
    winner = await online_agent()
    loser = await online_agent()
    pickup = await awaiting_pickup()
    await AssignmentBroker.accept(db_session, pickup.id, as_actor(winner))

    with pytest.raises(StaleStateError) as exc:
        await AssignmentBroker.accept(db_session, pickup.id, as_actor(loser))

    assert exc.value.message == "Pickup is no longer available"
    timeline = await PickupStateMachine.get_timeline(db_session, pickup.id)
    assert [e.status for e in timeline].count(PickupStatus.ASSIGNED) == 1


@pytest.mark.asyncio
async def test_offline_agent_cannot_accept(db_session, online_agent, awaiting_pickup, as_actor):
    agent = await online_agent()
    pickup = await awaiting_pickup()
    [offer] = await offers_for(db_session, pickup.id)
    assert offer.agent_id == agent.id

    # Going offline declines the offer; accepting it afterwards is refused
    await AssignmentBroker.set_availability(db_session, agent.id, False)

    with pytest.raises(ForbiddenError):
        await AssignmentBroker.accept(db_session, pickup.id, as_actor(agent))

    pickup = await PickupStateMachine.get_pickup(db_session, pickup.id)
    assert pickup.status == PickupStatus.AWAITING_AGENT
    assert pickup.agent_id is None


@pytest.mark.asyncio
async def test_agent_never_online_cannot_accept(db_session, make_user, awaiting_pickup, as_actor):
    agent = await make_user(UserRole.AGENT)
    pickup = await awaiting_pickup()

    with pytest.raises(ForbiddenError):
        await AssignmentBroker.accept(db_session, pickup.id, as_actor(agent))

    timeline = await PickupStateMachine.get_timeline(db_session, pickup.id)
    assert timeline[-1].status == PickupStatus.AWAITING_AGENT


@pytest.mark.asyncio
async def test_list_available_requires_online(db_session, make_user, awaiting_pickup):
    agent = await make_user(UserRole.AGENT)
    await awaiting_pickup()

    with pytest.raises(ForbiddenError):
        await AssignmentBroker.list_available(db_session, agent.id)


@pytest.mark.asyncio
async def test_list_available_orders_immediate_first(db_session, online_agent, awaiting_pickup, tomorrow):
    agent = await online_agent()
    scheduled = await awaiting_pickup(
        priority=PickupPriority.SCHEDULED, scheduled_date=tomorrow, scheduled_time_slot="09:00-11:00"
    )
    older = await awaiting_pickup()
    newer = await awaiting_pickup()

    available = await AssignmentBroker.list_available(db_session, agent.id)

    assert [p.id for p in available] == [newer.id, older.id, scheduled.id]


@pytest.mark.asyncio
async def test_scheduled_pickup_waits_for_lead_window(db_session, online_agent, awaiting_pickup):
    agent = await online_agent()
    far_date = datetime.utcnow().date() + timedelta(days=5)
    pickup = await awaiting_pickup(
        priority=PickupPriority.SCHEDULED, scheduled_date=far_date, scheduled_time_slot="14:00-16:00"
    )

    assert await offers_for(db_session, pickup.id) == []
    assert await AssignmentBroker.list_available(db_session, agent.id) == []

    stats = await AssignmentBroker.sweep(db_session, now=datetime.utcnow() + timedelta(days=5))
    assert stats["offered"] == 1
    [offer] = await offers_for(db_session, pickup.id)
    assert offer.agent_id == agent.id


@pytest.mark.asyncio
async def test_sweep_expires_and_reoffers(db_session, online_agent, awaiting_pickup):
    first = await online_agent()
    second = await online_agent()
    pickup = await awaiting_pickup()

    later = datetime.utcnow() + timedelta(seconds=settings.offer_window_seconds + 1)
    stats = await AssignmentBroker.sweep(db_session, now=later)

    assert stats["expired"] == 1
    assert stats["offered"] == 1
    offers = await offers_for(db_session, pickup.id)
    assert [(o.agent_id, o.status) for o in offers] == [
        (first.id, OfferStatus.EXPIRED),
        (second.id, OfferStatus.PENDING),
    ]


@pytest.mark.asyncio
async def test_sweep_starts_new_round_after_cooldown(db_session, online_agent, awaiting_pickup):
    agent = await online_agent()
    pickup = await awaiting_pickup()
    await AssignmentBroker.reject(db_session, pickup.id, agent.id)

    stats = await AssignmentBroker.sweep(db_session, now=datetime.utcnow())
    assert stats["new_rounds"] == 0

    later = datetime.utcnow() + timedelta(seconds=settings.offer_retry_cooldown_seconds + 1)
    stats = await AssignmentBroker.sweep(db_session, now=later)

    assert stats["new_rounds"] == 1
    pickup = await PickupStateMachine.get_pickup(db_session, pickup.id)
    assert pickup.offer_round == 2
    offers = await offers_for(db_session, pickup.id)
    assert [(o.round, o.status) for o in offers] == [
        (1, OfferStatus.REJECTED),
        (2, OfferStatus.PENDING),
    ]


@pytest.mark.asyncio
async def test_sweep_queues_stranded_approved_pickup(db_session, new_pickup, admin, as_actor):
    pickup = await new_pickup()
    await PickupStateMachine.transition(
        db_session, pickup.id,
        expected=PickupStatus.PENDING_REVIEW,
        target=PickupStatus.ADMIN_APPROVED,
        actor=as_actor(admin),
    )

    stats = await AssignmentBroker.sweep(db_session)

    assert stats["queued"] == 1
    pickup = await PickupStateMachine.get_pickup(db_session, pickup.id)
    assert pickup.status == PickupStatus.AWAITING_AGENT


@pytest.mark.asyncio
async def test_availability_only_for_agents(db_session, requester):
    with pytest.raises(ForbiddenError):
        await AssignmentBroker.set_availability(db_session, requester.id, True)


@pytest.mark.asyncio
async def test_system_actor_cannot_accept(db_session, awaiting_pickup):
    pickup = await awaiting_pickup()

    with pytest.raises(ForbiddenError):
        await AssignmentBroker.accept(db_session, pickup.id, Actor.system())
