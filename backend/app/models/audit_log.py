"""
Audit Log Database Model.

Tracks admin decisions and pickup lifecycle actions for accountability.
"""

from sqlalchemy import Column, Integer, String, DateTime, JSON
from sqlalchemy.sql import func
from backend.app.db.session import Base


class AuditLog(Base):
    """
    Audit log model.

    Events logged:
    - PICKUP_CREATED / PICKUP_CANCELLED / PICKUP_RATED
    - PICKUP_APPROVED / PICKUP_REJECTED (admin decisions)
    - PICKUP_ASSIGNED / PICKUP_RELEASED / PICKUP_ADVANCED / PICKUP_COMPLETED
    - REWARD_REDEEMED
    - AGENT_AVAILABILITY_CHANGED
    """
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Who performed the action (None for system actions)
    actor_id = Column(Integer, index=True, nullable=True)
    actor_username = Column(String(100), nullable=True)

    # What action was performed
    action = Column(String(100), nullable=False, index=True)

    # Which pickup the action concerned (if any)
    pickup_id = Column(Integer, index=True, nullable=True)

    # Additional context (JSON for flexibility)
    meta_data = Column(JSON, nullable=True)

    # Timestamp
    timestamp = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)

    def __repr__(self):
        return f"<AuditLog(id={self.id}, action='{self.action}', actor={self.actor_username}, pickup={self.pickup_id})>"
