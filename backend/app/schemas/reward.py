"""
Reward schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Optional


class RewardResponse(BaseModel):
    id: int
    user_id: int
    pickup_id: Optional[int]
    title: str
    description: str
    coupon_code: str
    points_earned: int
    issued_at: datetime
    expires_at: datetime
    is_redeemed: bool
    redeemed_at: Optional[datetime]

    class Config:
        from_attributes = True


class PointsBalanceResponse(BaseModel):
    user_id: int
    total_points: int
