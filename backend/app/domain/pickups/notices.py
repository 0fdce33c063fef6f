"""
Pickup notices.

Helpers that turn pickup state changes into inbox rows (written inside the
transition's transaction) and real-time pushes (sent after commit).
"""

from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.domain.pickups.state_machine import SideEffect
from backend.app.models.notification import NotificationType
from backend.app.models.pickup import Pickup
from backend.app.services.notification_fanout import fanout
from backend.app.services.notification_service import NotificationService


def pickup_payload(pickup: Pickup, **extra: Any) -> Dict[str, Any]:
    """Compact pickup summary carried by pushes and inbox rows."""
    payload = {
        "pickup_id": pickup.id,
        "status": pickup.status.value,
        "waste_type": pickup.waste_type.value,
        "priority": pickup.priority.value,
        "pickup_address": pickup.pickup_address,
        "pickup_latitude": pickup.pickup_latitude,
        "pickup_longitude": pickup.pickup_longitude,
    }
    payload.update(extra)
    return payload


def inbox(
    recipient_id: int,
    event_type: NotificationType,
    title: str,
    message: str,
    payload: Optional[Dict[str, Any]] = None
) -> SideEffect:
    """Side effect that records an inbox row for the recipient."""
    async def write(db: AsyncSession, pickup: Pickup, written: Dict[str, Any]) -> None:
        await NotificationService.create_notification(
            db,
            user_id=recipient_id,
            title=title,
            message=message,
            type=event_type,
            metadata={"pickup_id": pickup.id, **(payload or {})},
        )
    return write


def chain(*effects: Optional[SideEffect]) -> SideEffect:
    """Run several side effects in order within one transaction."""
    async def run(db: AsyncSession, pickup: Pickup, written: Dict[str, Any]) -> None:
        for effect in effects:
            if effect is not None:
                await effect(db, pickup, written)
    return run


def push(recipient_id: Optional[int], event_type: NotificationType, pickup: Pickup, **extra: Any) -> None:
    if recipient_id is not None:
        fanout.notify(recipient_id, event_type, pickup_payload(pickup, **extra))
