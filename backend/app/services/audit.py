"""
Audit logging service for pickup lifecycle actions and admin decisions.

Provides centralized logging for accountability.
"""

from typing import Optional, Dict, Any
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, desc
from backend.app.models.audit_log import AuditLog


# Audit event constants
class AuditAction:
    """Standardized audit action constants."""
    PICKUP_CREATED = "PICKUP_CREATED"
    PICKUP_CANCELLED = "PICKUP_CANCELLED"
    PICKUP_RATED = "PICKUP_RATED"

    # Admin approval gate
    PICKUP_APPROVED = "PICKUP_APPROVED"
    PICKUP_REJECTED = "PICKUP_REJECTED"

    # Delivery
    PICKUP_ASSIGNED = "PICKUP_ASSIGNED"
    PICKUP_RELEASED = "PICKUP_RELEASED"
    PICKUP_ADVANCED = "PICKUP_ADVANCED"
    PICKUP_COMPLETED = "PICKUP_COMPLETED"
    AGENT_AVAILABILITY_CHANGED = "AGENT_AVAILABILITY_CHANGED"

    # Rewards
    REWARD_ISSUED = "REWARD_ISSUED"
    REWARD_REDEEMED = "REWARD_REDEEMED"


async def log_event(
    db: AsyncSession,
    action: str,
    actor_id: Optional[int] = None,
    actor_username: Optional[str] = None,
    pickup_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """
    Log a pickup or admin event to the audit log.

    Args:
        db: Database session
        action: Action being performed (use AuditAction constants)
        actor_id: ID of user performing the action (None for system)
        actor_username: Username of actor
        pickup_id: Pickup the action concerned (if applicable)
        metadata: Additional context as JSON

    Returns:
        Created AuditLog instance
    """
    audit_log = AuditLog(
        actor_id=actor_id,
        actor_username=actor_username,
        action=action,
        pickup_id=pickup_id,
        meta_data=metadata
    )

    db.add(audit_log)
    await db.commit()
    await db.refresh(audit_log)

    return audit_log


async def log_user_action(
    db: AsyncSession,
    current_user: dict,
    action: str,
    pickup_id: Optional[int] = None,
    metadata: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """Log an action taken by the authenticated user of a request."""
    return await log_event(
        db=db,
        action=action,
        actor_id=current_user.get("user_id"),
        actor_username=current_user.get("sub"),
        pickup_id=pickup_id,
        metadata=metadata
    )


async def get_audit_trail(
    db: AsyncSession,
    pickup_id: Optional[int] = None,
    action: Optional[str] = None,
    limit: int = 100
) -> list[AuditLog]:
    """
    Retrieve audit trail with optional filtering.

    Returns:
        List of AuditLog instances, most recent first
    """
    query = select(AuditLog).order_by(desc(AuditLog.timestamp), desc(AuditLog.id))

    if pickup_id:
        query = query.where(AuditLog.pickup_id == pickup_id)

    if action:
        query = query.where(AuditLog.action == action)

    query = query.limit(limit)

    result = await db.execute(query)
    return result.scalars().all()
