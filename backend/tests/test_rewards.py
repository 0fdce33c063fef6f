"""
Reward issuance and redemption tests.
"""

from datetime import datetime, timedelta

import pytest
from sqlalchemy import select, update

from backend.app.core.exceptions import ConflictError, InvalidArgumentError, ResourceNotFoundError
from backend.app.domain.rewards.reward_service import RewardService
from backend.app.models.enums import UserRole
from backend.app.models.pickup_enums import WasteType
from backend.app.models.reward import Reward
from backend.app.models.user import User


async def only_reward(db_session, user_id):
    [reward] = await RewardService.list_rewards(db_session, user_id)
    return reward


@pytest.mark.asyncio
async def test_completion_issues_one_reward(db_session, completed_pickup, requester):
    pickup, _ = await completed_pickup()

    reward = await only_reward(db_session, requester.id)
    assert reward.pickup_id == pickup.id
    assert reward.points_earned == pickup.points == 85
    assert reward.title == "85 Green Points"
    assert reward.is_redeemed is False
    assert reward.expires_at > datetime.utcnow() + timedelta(days=29)

    user = await db_session.get(User, requester.id)
    await db_session.refresh(user)
    assert user.total_points == 85


@pytest.mark.asyncio
async def test_points_accumulate(db_session, completed_pickup, requester):
    await completed_pickup()
    await completed_pickup(waste_type=WasteType.BOTTLES, food_boxes=0, bottles=4)

    user = await db_session.get(User, requester.id)
    await db_session.refresh(user)
    assert user.total_points == 85 + 60
    assert len(await RewardService.list_rewards(db_session, requester.id)) == 2


@pytest.mark.asyncio
async def test_redeem_once(db_session, completed_pickup, requester):
    await completed_pickup()
    reward = await only_reward(db_session, requester.id)

    redeemed = await RewardService.redeem(db_session, reward.id, requester.id)
    assert redeemed.is_redeemed is True
    assert redeemed.redeemed_at is not None

    with pytest.raises(ConflictError):
        await RewardService.redeem(db_session, reward.id, requester.id)

    assert [r.id for r in await RewardService.list_rewards(db_session, requester.id, "redeemed")] == [reward.id]
    assert await RewardService.list_rewards(db_session, requester.id, "active") == []


@pytest.mark.asyncio
async def test_expired_reward_cannot_be_redeemed(db_session, completed_pickup, requester):
    await completed_pickup()
    reward = await only_reward(db_session, requester.id)
    await db_session.execute(
        update(Reward)
        .where(Reward.id == reward.id)
        .values(expires_at=datetime.utcnow() - timedelta(minutes=1))
    )
    await db_session.commit()

    with pytest.raises(InvalidArgumentError):
        await RewardService.redeem(db_session, reward.id, requester.id)

    assert [r.id for r in await RewardService.list_rewards(db_session, requester.id, "expired")] == [reward.id]


@pytest.mark.asyncio
async def test_cannot_redeem_someone_elses_reward(db_session, completed_pickup, make_user):
    await completed_pickup()
    stranger = await make_user(UserRole.REQUESTER)
    [reward] = (await db_session.execute(
        select(Reward)
    )).scalars().all()

    with pytest.raises(ResourceNotFoundError):
        await RewardService.redeem(db_session, reward.id, stranger.id)


@pytest.mark.asyncio
async def test_unknown_status_filter(db_session, requester):
    with pytest.raises(InvalidArgumentError):
        await RewardService.list_rewards(db_session, requester.id, "lost")


@pytest.mark.asyncio
async def test_redeem_api(client, headers, db_session, completed_pickup, requester):
    await completed_pickup()
    reward = await only_reward(db_session, requester.id)

    response = await client.post(f"/v1/rewards/{reward.id}/redeem", headers=headers(requester))
    assert response.status_code == 200
    assert response.json()["is_redeemed"] is True

    response = await client.post(f"/v1/rewards/{reward.id}/redeem", headers=headers(requester))
    assert response.status_code == 409

    response = await client.get("/v1/rewards", params={"status": "active"}, headers=headers(requester))
    assert response.json() == []

    response = await client.get("/v1/rewards", params={"status": "lost"}, headers=headers(requester))
    assert response.status_code == 422
