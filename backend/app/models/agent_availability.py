"""
Agent availability database model.

Queried by the assignment broker at offer time. Independent of whether the
agent currently holds a live notification connection.
"""

from sqlalchemy import Column, Integer, Float, Boolean, DateTime, ForeignKey
from sqlalchemy.sql import func
from backend.app.db.session import Base


class AgentAvailability(Base):
    """Online flag and last known position of a delivery agent."""
    __tablename__ = "agent_availability"

    agent_id = Column(Integer, ForeignKey('users.id'), primary_key=True)
    is_online = Column(Boolean, default=False, nullable=False, index=True)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)

    # Used to rank agents when pickup coordinates are unknown
    last_offered_at = Column(DateTime(timezone=True), nullable=True)

    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    def __repr__(self):
        return f"<AgentAvailability(agent_id={self.agent_id}, online={self.is_online})>"
