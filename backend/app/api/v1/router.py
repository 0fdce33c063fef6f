"""
API v1 Router.

Aggregates all v1 API endpoints.
"""

from fastapi import APIRouter
from backend.app.api.v1.endpoints import (
    pickups, admin_pickups, agent, rewards,
    notifications, ws_notifications
)

router = APIRouter()

# Requester endpoints
router.include_router(pickups.router)
router.include_router(rewards.router)

# Admin approval gate
router.include_router(admin_pickups.router)

# Delivery agent endpoints
router.include_router(agent.router)

# Notifications (inbox + real-time socket)
router.include_router(notifications.router)
router.include_router(ws_notifications.router)
