"""
Pickup timeline database model.

Append-only audit trail: one entry per successful transition.
"""

from sqlalchemy import Column, Integer, Float, Text, DateTime, ForeignKey, Enum, UniqueConstraint
from backend.app.db.session import Base
from backend.app.models.pickup_enums import PickupStatus


class PickupTimelineEntry(Base):
    """
    Pickup timeline entry.

    sequence is 1-based and mirrors the pickup revision the entry produced,
    so the unique constraint rejects a second writer for the same revision.
    """
    __tablename__ = "pickup_timeline"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    pickup_id = Column(Integer, ForeignKey('pickups.id'), nullable=False, index=True)
    sequence = Column(Integer, nullable=False)

    status = Column(Enum(PickupStatus), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    latitude = Column(Float, nullable=True)
    longitude = Column(Float, nullable=True)
    note = Column(Text, nullable=True)
    actor_id = Column(Integer, ForeignKey('users.id'), nullable=True)  # None for system transitions

    __table_args__ = (
        UniqueConstraint('pickup_id', 'sequence', name='uq_pickup_timeline_sequence'),
    )

    def __repr__(self):
        return f"<PickupTimelineEntry(pickup_id={self.pickup_id}, seq={self.sequence}, status='{self.status.value}')>"
