"""
Pickup Pydantic schemas.

Defines request and response models for pickup requests, review and delivery.
"""

from pydantic import BaseModel, Field
from datetime import datetime, date
from typing import Optional, List, Dict, Any
from backend.app.models.pickup_enums import PickupStatus, PickupPriority, WasteType


class Location(BaseModel):
    """GPS coordinates."""
    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)

    def as_tuple(self) -> tuple:
        return (self.latitude, self.longitude)


class PickupCreate(BaseModel):
    """Schema for requesting a pickup."""
    waste_type: WasteType
    food_boxes: int = Field(default=0, ge=0, description="Number of food boxes")
    bottles: int = Field(default=0, ge=0, description="Number of bottles")
    other_items: Optional[str] = Field(None, max_length=500, description="Description of other items")
    images: List[str] = Field(..., description="Image URLs from the upload service")
    priority: PickupPriority = PickupPriority.IMMEDIATE
    scheduled_date: Optional[date] = None
    scheduled_time_slot: Optional[str] = Field(None, max_length=50)
    estimated_weight_kg: Optional[float] = Field(None, ge=0, description="Estimated weight in kilograms")
    pickup_location: Optional[Location] = None
    pickup_address: Optional[str] = Field(None, max_length=500)


class NoteRequest(BaseModel):
    """Cancellation or release note."""
    note: str = Field(..., min_length=1, max_length=500)


class RejectRequest(BaseModel):
    """Admin rejection."""
    reason: str = Field(..., min_length=1, max_length=1000)


class RatingRequest(BaseModel):
    score: int = Field(..., description="Stars from 1 to 5")
    review: Optional[str] = Field(None, max_length=1000)


class AdvanceRequest(BaseModel):
    """Agent progress update."""
    note: Optional[str] = Field(None, max_length=500)
    location: Optional[Location] = None


class CompleteRequest(AdvanceRequest):
    distance_km: Optional[float] = Field(None, ge=0, description="Distance actually travelled")


class AgentCancelRequest(NoteRequest):
    location: Optional[Location] = None


class TimelineEntryResponse(BaseModel):
    sequence: int
    status: PickupStatus
    timestamp: datetime
    latitude: Optional[float]
    longitude: Optional[float]
    note: Optional[str]
    actor_id: Optional[int]

    class Config:
        from_attributes = True


class PickupResponse(BaseModel):
    """Schema for pickup response."""
    id: int
    requester_id: int
    agent_id: Optional[int]
    waste_type: WasteType
    food_boxes: int
    bottles: int
    other_items: Optional[str]
    images: List[str]
    priority: PickupPriority
    scheduled_date: Optional[date]
    scheduled_time_slot: Optional[str]
    status: PickupStatus
    revision: int
    approved_by: Optional[int]
    approved_at: Optional[datetime]
    rejected_by: Optional[int]
    rejected_at: Optional[datetime]
    rejection_reason: Optional[str]
    estimated_weight_kg: float
    points: int
    earnings: float
    distance_km: float
    pickup_address: Optional[str]
    pickup_latitude: Optional[float]
    pickup_longitude: Optional[float]
    warehouse_latitude: Optional[float]
    warehouse_longitude: Optional[float]
    route_summary: Optional[Dict[str, Any]]
    rating_score: Optional[int]
    rating_review: Optional[str]
    rated_at: Optional[datetime]
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime]

    class Config:
        from_attributes = True


class PickupDetailResponse(PickupResponse):
    timeline: List[TimelineEntryResponse]


class PickupListResponse(BaseModel):
    """Schema for paginated pickup list."""
    pickups: List[PickupResponse]
    total: int
    page: int
    page_size: int


class ReviewQueueResponse(BaseModel):
    """Keyset page of the admin review queue."""
    pickups: List[PickupResponse]
    next_cursor: Optional[int]


class AuditLogResponse(BaseModel):
    """Schema for audit log entry."""
    id: int
    actor_id: Optional[int]
    actor_username: Optional[str]
    action: str
    pickup_id: Optional[int]
    meta_data: Optional[dict]
    timestamp: datetime

    class Config:
        from_attributes = True


class AuditTrailResponse(BaseModel):
    logs: List[AuditLogResponse]
    total: int
