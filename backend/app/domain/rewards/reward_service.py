"""
Reward Service (Domain Logic).

Issues a coupon when a pickup completes and lets the requester redeem it
once. Issuance runs inside the completion transaction; redemption is a
single conditional update so that concurrent redeem calls cannot both win.
"""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select, update, desc
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.config import settings
from backend.app.core.exceptions import ConflictError, InvalidArgumentError, ResourceNotFoundError
from backend.app.models.reward import Reward
from backend.app.models.user import User

logger = logging.getLogger(__name__)

REWARD_STATUSES = ("all", "active", "redeemed", "expired")


def generate_coupon_code() -> str:
    return f"{settings.reward_code_prefix}-{secrets.token_hex(4).upper()}"


class RewardService:

    @staticmethod
    async def issue_for_pickup(
        db: AsyncSession,
        pickup_id: int,
        requester_id: int,
        points: int
    ) -> Reward:
        """
        Issue the completion reward and credit the requester's balance.

        Flushes only; the caller's transaction commits it together with the
        completion transition. The unique pickup_id column makes a second
        issue for the same pickup fail the whole transaction.
        """
        now = datetime.utcnow()
        reward = Reward(
            user_id=requester_id,
            pickup_id=pickup_id,
            title=f"{points} Green Points",
            description=f"Thanks for recycling with pickup #{pickup_id}",
            coupon_code=generate_coupon_code(),
            points_earned=points,
            issued_at=now,
            expires_at=now + timedelta(days=settings.reward_expiry_days),
            is_redeemed=False,
        )
        db.add(reward)

        # Atomic increment, no read-modify-write on the balance
        await db.execute(
            update(User)
            .where(User.id == requester_id)
            .values(total_points=User.total_points + points)
            .execution_options(synchronize_session=False)
        )
        await db.flush()

        logger.info("Reward %s issued to user %s for pickup %s", reward.coupon_code, requester_id, pickup_id)
        return reward

    @staticmethod
    async def list_rewards(db: AsyncSession, user_id: int, status: str = "all") -> list[Reward]:
        if status not in REWARD_STATUSES:
            raise InvalidArgumentError(
                f"Unknown reward status '{status}'",
                details={"allowed": list(REWARD_STATUSES)}
            )

        now = datetime.utcnow()
        query = select(Reward).where(Reward.user_id == user_id)
        if status == "active":
            query = query.where(Reward.is_redeemed == False, Reward.expires_at > now)
        elif status == "redeemed":
            query = query.where(Reward.is_redeemed == True)
        elif status == "expired":
            query = query.where(Reward.is_redeemed == False, Reward.expires_at <= now)

        result = await db.execute(query.order_by(desc(Reward.issued_at), desc(Reward.id)))
        return list(result.scalars().all())

    @staticmethod
    async def get_reward(db: AsyncSession, reward_id: int, user_id: Optional[int] = None) -> Reward:
        result = await db.execute(
            select(Reward)
            .where(Reward.id == reward_id)
            .execution_options(populate_existing=True)
        )
        reward = result.scalar_one_or_none()
        if not reward or (user_id is not None and reward.user_id != user_id):
            raise ResourceNotFoundError("Reward", reward_id)
        return reward

    @staticmethod
    async def redeem(db: AsyncSession, reward_id: int, user_id: int) -> Reward:
        """
        Redeem a reward exactly once.

        Raises:
            ResourceNotFoundError: reward missing or owned by someone else
            ConflictError: already redeemed
            InvalidArgumentError: coupon expired
        """
        now = datetime.utcnow()
        result = await db.execute(
            update(Reward)
            .where(
                Reward.id == reward_id,
                Reward.user_id == user_id,
                Reward.is_redeemed == False,
                Reward.expires_at > now
            )
            .values(is_redeemed=True, redeemed_at=now)
            .execution_options(synchronize_session=False)
        )

        if result.rowcount != 1:
            await db.rollback()
            reward = await RewardService.get_reward(db, reward_id, user_id)
            if reward.is_redeemed:
                raise ConflictError("Reward already redeemed", details={"reward_id": reward_id})
            raise InvalidArgumentError("Reward has expired", details={"reward_id": reward_id})

        await db.commit()
        logger.info("Reward %s redeemed by user %s", reward_id, user_id)
        return await RewardService.get_reward(db, reward_id, user_id)
