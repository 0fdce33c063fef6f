"""
Pickup offer database model.

Records every offer the assignment broker makes to an agent.
"""

from sqlalchemy import Column, Integer, DateTime, ForeignKey, Enum, Index
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.pickup_enums import OfferStatus


class PickupOffer(Base):
    """
    Pickup offer model.

    An offer is pending until the agent accepts or declines, the decision
    window elapses, or the pickup is taken by someone else.
    """
    __tablename__ = "pickup_offers"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    pickup_id = Column(Integer, ForeignKey('pickups.id'), nullable=False)
    agent_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    round = Column(Integer, nullable=False)

    status = Column(Enum(OfferStatus), default=OfferStatus.PENDING, nullable=False)
    offered_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    responded_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_pickup_offers_pickup_status', 'pickup_id', 'status'),
    )

    def __repr__(self):
        return f"<PickupOffer(pickup_id={self.pickup_id}, agent_id={self.agent_id}, status='{self.status.value}')>"
