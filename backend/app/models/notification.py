"""
Notification database model.

In-app inbox rows for pickup events, kept so that a recipient who missed
the real-time push can still see what happened.
"""

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, ForeignKey, JSON, Enum
from sqlalchemy.sql import func
from backend.app.db.session import Base
import enum


class NotificationType(str, enum.Enum):
    PICKUP_OFFER = "pickup_offer"
    OFFER_WITHDRAWN = "offer_withdrawn"
    PICKUP_APPROVED = "pickup_approved"
    PICKUP_REJECTED = "pickup_rejected"
    PICKUP_ACCEPTED = "pickup_accepted"
    PICKUP_STATUS = "pickup_status"
    PICKUP_CANCELLED = "pickup_cancelled"
    PICKUP_COMPLETED = "pickup_completed"
    REWARD_ISSUED = "reward_issued"


class Notification(Base):
    """
    In-App Notification.
    Stores messages for users.
    """
    __tablename__ = "notifications"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Recipient
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)

    # Content
    type = Column(Enum(NotificationType), nullable=False)
    title = Column(String(255), nullable=False)
    message = Column(Text, nullable=False)
    metadata_payload = Column(JSON, nullable=True)

    # State
    is_read = Column(Boolean, default=False, nullable=False, index=True)
    read_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Notification(id={self.id}, user={self.user_id}, type='{self.type.value}')>"
