"""
Security guards for role-based access control.

Provides dependencies for protecting endpoints and for turning the
authenticated user into a pickup actor.
"""

from typing import List
from fastapi import Depends, HTTPException, status
from backend.app.models.enums import UserRole
from backend.app.core.dependencies import get_current_user
from backend.app.domain.pickups.transitions import Actor, ActorRole


def require_role(allowed_roles: List[UserRole]):
    """
    Dependency factory for role-based access control.

    Usage:
        @router.get("/admin/pickups")
        async def list_pickups(current_user: dict = Depends(require_role([UserRole.ADMIN]))):
            ...

    Args:
        allowed_roles: List of UserRole enums that are allowed to access the endpoint

    Returns:
        FastAPI dependency function that validates user role

    Raises:
        HTTPException 403 if user role is not in allowed_roles
    """
    async def role_checker(current_user: dict = Depends(get_current_user)) -> dict:
        user_role_str = current_user.get("role")

        if not user_role_str:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Role information missing from token"
            )

        # Convert string role to UserRole enum
        try:
            user_role = UserRole(user_role_str)
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Invalid role in token"
            )

        # Check if user role is in allowed roles
        if user_role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required role: {', '.join([r.value for r in allowed_roles])}"
            )

        return current_user

    return role_checker


_ACTOR_ROLES = {
    UserRole.ADMIN: ActorRole.ADMIN,
    UserRole.REQUESTER: ActorRole.REQUESTER,
    UserRole.AGENT: ActorRole.AGENT,
}


def actor_from_user(current_user: dict) -> Actor:
    """Build the state machine actor for an authenticated user."""
    return Actor(
        user_id=current_user["user_id"],
        role=_ACTOR_ROLES[UserRole(current_user["role"])],
    )
