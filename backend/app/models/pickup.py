"""
Pickup database model.

One row per pickup request. Lifecycle columns are written only through the
pickup state machine's conditional updates.
"""

from sqlalchemy import Column, Integer, String, Float, Text, DateTime, Date, ForeignKey, Enum, JSON, Index
from sqlalchemy.sql import func
from backend.app.db.session import Base
from backend.app.models.pickup_enums import PickupStatus, WasteType, PickupPriority


class Pickup(Base):
    """
    Pickup model.

    A waste pickup requested by a requester, reviewed by an admin and
    collected by a delivery agent.
    """
    __tablename__ = "pickups"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)

    # Parties
    requester_id = Column(Integer, ForeignKey('users.id'), nullable=False)
    agent_id = Column(Integer, ForeignKey('users.id'), nullable=True)

    # Classification
    waste_type = Column(Enum(WasteType), nullable=False)
    food_boxes = Column(Integer, default=0, nullable=False)
    bottles = Column(Integer, default=0, nullable=False)
    other_items = Column(String(500), nullable=True)

    # Media
    images = Column(JSON, nullable=False)

    # Scheduling
    priority = Column(Enum(PickupPriority), nullable=False)
    scheduled_date = Column(Date, nullable=True)
    scheduled_time_slot = Column(String(50), nullable=True)

    # Lifecycle
    status = Column(Enum(PickupStatus), default=PickupStatus.PENDING_REVIEW, nullable=False)
    revision = Column(Integer, default=1, nullable=False)  # equals number of timeline entries

    # Admin approval (approved_* and rejected_* are mutually exclusive)
    approved_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    approved_at = Column(DateTime(timezone=True), nullable=True)
    rejected_by = Column(Integer, ForeignKey('users.id'), nullable=True)
    rejected_at = Column(DateTime(timezone=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)

    # Economics (points/earnings immutable once economics_computed_at is set)
    estimated_weight_kg = Column(Float, default=0.0, nullable=False)
    points = Column(Integer, default=0, nullable=False)
    earnings = Column(Float, default=0.0, nullable=False)
    distance_km = Column(Float, default=0.0, nullable=False)
    economics_computed_at = Column(DateTime(timezone=True), nullable=True)

    # Geodata
    pickup_address = Column(String(500), nullable=True)
    pickup_latitude = Column(Float, nullable=True)
    pickup_longitude = Column(Float, nullable=True)
    warehouse_latitude = Column(Float, nullable=True)
    warehouse_longitude = Column(Float, nullable=True)
    route_summary = Column(JSON, nullable=True)

    # Broker bookkeeping
    offer_round = Column(Integer, default=0, nullable=False)

    # Rating (set once, by the requester, after completion)
    rating_score = Column(Integer, nullable=True)
    rating_review = Column(Text, nullable=True)
    rated_at = Column(DateTime(timezone=True), nullable=True)

    # Timestamps
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index('ix_pickups_status_priority', 'status', 'priority'),
        Index('ix_pickups_requester_status', 'requester_id', 'status'),
        Index('ix_pickups_agent_status', 'agent_id', 'status'),
    )

    def __repr__(self):
        return f"<Pickup(id={self.id}, requester_id={self.requester_id}, status='{self.status.value}')>"
