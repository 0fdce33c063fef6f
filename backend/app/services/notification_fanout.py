"""
Notification fan-out.

Best-effort, fire-and-forget delivery of pickup events to connected
recipients over Redis pub/sub. `notify` never blocks the caller and never
raises: a recipient who is not connected simply misses the push, and the
broker's expiry path is the recovery mechanism for missed offers.
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional, Set

from backend.app.core import redis_client as redis_client_module
from backend.app.core.config import settings
from backend.app.models.notification import NotificationType

logger = logging.getLogger(__name__)


def channel_for(recipient_id: int) -> str:
    return f"{settings.notification_channel_prefix}:{recipient_id}"


class NotificationFanout:
    """Schedules pushes as background tasks on the running event loop."""

    def __init__(self):
        self._tasks: Set[asyncio.Task] = set()

    def notify(
        self,
        recipient_id: int,
        event_type: NotificationType,
        payload: Optional[Dict[str, Any]] = None
    ) -> None:
        """Queue a push to one recipient and return immediately."""
        envelope = {
            "event": NotificationType(event_type).value,
            "recipient_id": recipient_id,
            "payload": payload or {},
            "sent_at": datetime.utcnow().isoformat(),
        }
        try:
            task = asyncio.get_running_loop().create_task(self._deliver(recipient_id, envelope))
        except RuntimeError:
            logger.warning("No running event loop; dropping %s for user %s", envelope["event"], recipient_id)
            return
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver(self, recipient_id: int, envelope: Dict[str, Any]) -> None:
        try:
            receivers = await redis_client_module.redis_client.publish(
                channel_for(recipient_id),
                json.dumps(envelope, default=str)
            )
        except Exception as e:
            logger.warning("Push of %s to user %s failed: %s", envelope["event"], recipient_id, e)
            return

        if not receivers:
            logger.debug("User %s not connected; %s not delivered", recipient_id, envelope["event"])

    async def drain(self) -> None:
        """Wait for queued pushes (shutdown and tests)."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


fanout = NotificationFanout()
