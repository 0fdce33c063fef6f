"""
Delivery agent schemas.
"""

from pydantic import BaseModel, Field
from datetime import datetime
from typing import Optional, List
from backend.app.models.pickup_enums import OfferStatus
from backend.app.schemas.pickup import Location


class AvailabilityUpdate(BaseModel):
    is_online: bool
    location: Optional[Location] = None


class AvailabilityResponse(BaseModel):
    agent_id: int
    is_online: bool
    latitude: Optional[float]
    longitude: Optional[float]
    last_offered_at: Optional[datetime]
    updated_at: datetime

    class Config:
        from_attributes = True


class OfferResponse(BaseModel):
    id: int
    pickup_id: int
    agent_id: int
    round: int
    status: OfferStatus
    offered_at: datetime
    expires_at: datetime
    responded_at: Optional[datetime]

    class Config:
        from_attributes = True


class DailyEarnings(BaseModel):
    date: str
    earnings: float
    pickups: int


class EarningsSummaryResponse(BaseModel):
    total_earnings: float
    completed_pickups: int
    last_pickup_earnings: float
    daily: List[DailyEarnings] = Field(default_factory=list)
