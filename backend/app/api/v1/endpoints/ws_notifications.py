"""
Real-time notification WebSocket.

Relays the recipient's Redis channel to the socket. Delivery is best effort:
nothing here affects offer eligibility or pickup state.
"""

import asyncio
import logging

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect, status
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core import redis_client as redis_client_module
from backend.app.core.dependencies import resolve_token_user
from backend.app.db.session import get_db
from backend.app.services.notification_fanout import channel_for

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ws", tags=["Notifications"])


@router.websocket("/notifications")
async def notifications_socket(
    websocket: WebSocket,
    token: str = Query(...),
    db: AsyncSession = Depends(get_db)
):
    user = await resolve_token_user(token, db)
    # The socket outlives the lookup; hand the connection back to the pool now
    await db.close()
    if user is None:
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    await websocket.accept()
    user_id = user["user_id"]
    pubsub = redis_client_module.redis_client.pubsub()
    await pubsub.subscribe(channel_for(user_id))
    logger.info("User %s connected for notifications", user_id)

    async def relay():
        while True:
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=1.0)
            if message is not None:
                await websocket.send_text(message["data"])

    async def watch_client():
        # Clients never send anything we act on; this only detects disconnects
        try:
            while True:
                await websocket.receive_text()
        except WebSocketDisconnect:
            return

    tasks = [asyncio.create_task(relay()), asyncio.create_task(watch_client())]
    try:
        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in pending:
            task.cancel()
        for task in done:
            if task.exception() is not None:
                logger.warning("Notification socket for user %s closed: %s", user_id, task.exception())
    finally:
        await pubsub.unsubscribe(channel_for(user_id))
        await pubsub.aclose()
        logger.info("User %s disconnected from notifications", user_id)
