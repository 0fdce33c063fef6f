"""
Reward database model.

A coupon issued to the requester when their pickup completes.
"""

from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Index
from backend.app.db.session import Base


class Reward(Base):
    """
    Reward model.

    One reward per completed pickup; redeemable exactly once before expiry.
    """
    __tablename__ = "rewards"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    pickup_id = Column(Integer, ForeignKey('pickups.id'), nullable=True, unique=True)

    title = Column(String(255), nullable=False)
    description = Column(String(500), nullable=False)
    coupon_code = Column(String(50), unique=True, nullable=False, index=True)
    points_earned = Column(Integer, default=0, nullable=False)

    issued_at = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    is_redeemed = Column(Boolean, default=False, nullable=False)
    redeemed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_rewards_user_redeemed', 'user_id', 'is_redeemed'),
    )

    def __repr__(self):
        return f"<Reward(id={self.id}, code='{self.coupon_code}', redeemed={self.is_redeemed})>"
