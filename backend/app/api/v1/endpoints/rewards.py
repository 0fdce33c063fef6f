"""
Rewards API Endpoints.
"""

from typing import List

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import ResourceNotFoundError
from backend.app.core.guards import require_role
from backend.app.db.session import get_db
from backend.app.domain.rewards.reward_service import RewardService
from backend.app.models.enums import UserRole
from backend.app.models.user import User
from backend.app.schemas.reward import RewardResponse, PointsBalanceResponse
from backend.app.services.audit import log_user_action, AuditAction

router = APIRouter(prefix="/rewards", tags=["Requester - Rewards"])


@router.get("", response_model=List[RewardResponse])
async def list_rewards(
    status_filter: str = Query("all", alias="status", pattern="^(all|active|redeemed|expired)$"),
    current_user: dict = Depends(require_role([UserRole.REQUESTER])),
    db: AsyncSession = Depends(get_db)
):
    rewards = await RewardService.list_rewards(db, current_user["user_id"], status_filter)
    return [RewardResponse.model_validate(r) for r in rewards]


@router.get("/balance", response_model=PointsBalanceResponse)
async def get_points_balance(
    current_user: dict = Depends(require_role([UserRole.REQUESTER])),
    db: AsyncSession = Depends(get_db)
):
    user = await db.get(User, current_user["user_id"])
    if not user:
        raise ResourceNotFoundError("User", current_user["user_id"])
    await db.refresh(user)
    return PointsBalanceResponse(user_id=user.id, total_points=user.total_points)


@router.post("/{reward_id}/redeem", response_model=RewardResponse)
async def redeem_reward(
    reward_id: int = Path(..., description="Reward ID"),
    current_user: dict = Depends(require_role([UserRole.REQUESTER])),
    db: AsyncSession = Depends(get_db)
):
    """Redeem a coupon. Each coupon can be redeemed once, before it expires."""
    reward = await RewardService.redeem(db, reward_id, current_user["user_id"])

    await log_user_action(
        db, current_user, AuditAction.REWARD_REDEEMED,
        pickup_id=reward.pickup_id,
        metadata={"reward_id": reward.id, "coupon_code": reward.coupon_code}
    )

    return RewardResponse.model_validate(reward)
