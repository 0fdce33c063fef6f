"""
User roles enumeration.

Defines the role types for the pickup marketplace.
"""

import enum


class UserRole(str, enum.Enum):
    """
    User role enumeration.

    Roles:
        ADMIN: Reviews and approves pickup requests
        REQUESTER: Requests waste pickups (default role)
        AGENT: Mobile delivery agent who collects pickups
    """
    ADMIN = "ADMIN"
    REQUESTER = "REQUESTER"
    AGENT = "AGENT"
