"""
Pickup-related enumerations.
"""

import enum


class PickupStatus(str, enum.Enum):
    """Pickup lifecycle status."""
    PENDING_REVIEW = "pending_review"  # Created, waiting for an admin decision
    ADMIN_APPROVED = "admin_approved"  # Approved, about to be queued for agents
    ADMIN_REJECTED = "admin_rejected"  # Rejected by admin (terminal)
    AWAITING_AGENT = "awaiting_agent"  # Being offered to online agents
    ASSIGNED = "assigned"  # Accepted by an agent
    IN_TRANSIT = "in_transit"  # Agent reached pickup / collected, heading to warehouse
    COMPLETED = "completed"  # Delivered to warehouse (terminal)
    CANCELLED = "cancelled"  # Cancelled by requester or agent (terminal)


TERMINAL_STATUSES = frozenset({
    PickupStatus.ADMIN_REJECTED,
    PickupStatus.COMPLETED,
    PickupStatus.CANCELLED,
})


class WasteType(str, enum.Enum):
    """Kind of waste in a pickup."""
    FOOD = "food"
    BOTTLES = "bottles"
    OTHER = "other"
    MIXED = "mixed"


class PickupPriority(str, enum.Enum):
    """When the requester wants the pickup."""
    IMMEDIATE = "immediate"
    SCHEDULED = "scheduled"


class OfferStatus(str, enum.Enum):
    """State of a single offer made to an agent."""
    PENDING = "pending"
    ACCEPTED = "accepted"
    REJECTED = "rejected"  # Declined explicitly or implicitly (agent went offline)
    EXPIRED = "expired"  # Decision window elapsed
    WITHDRAWN = "withdrawn"  # Another agent won, or the pickup left awaiting_agent
