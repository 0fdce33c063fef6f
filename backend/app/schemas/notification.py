"""
Notification inbox schemas.
"""

from pydantic import BaseModel
from datetime import datetime
from typing import Optional, Dict, Any
from backend.app.models.notification import NotificationType


class NotificationResponse(BaseModel):
    id: int
    type: NotificationType
    title: str
    message: str
    metadata_payload: Optional[Dict[str, Any]]
    is_read: bool
    created_at: datetime
    read_at: Optional[datetime]

    class Config:
        from_attributes = True
