"""
Pickup transition table.

The single source of truth for which status changes are legal and who may
make them. The state machine enforces it; callers never re-validate it.
"""

import enum
from dataclasses import dataclass
from typing import Dict, FrozenSet, Optional, Tuple

from backend.app.models.pickup_enums import PickupStatus


class ActorRole(str, enum.Enum):
    """Who is driving a transition."""
    ADMIN = "ADMIN"
    REQUESTER = "REQUESTER"
    AGENT = "AGENT"
    SYSTEM = "SYSTEM"


@dataclass(frozen=True)
class Actor:
    user_id: Optional[int]
    role: ActorRole

    @classmethod
    def system(cls) -> "Actor":
        return cls(user_id=None, role=ActorRole.SYSTEM)


class Party(str, enum.Enum):
    """Parties an edge can be opened to."""
    ADMIN = "admin"
    SYSTEM = "system"
    ANY_AGENT = "any_agent"
    ASSIGNED_AGENT = "assigned_agent"
    OWNING_REQUESTER = "owning_requester"


@dataclass(frozen=True)
class Edge:
    source: PickupStatus
    target: PickupStatus
    parties: FrozenSet[Party]
    requires_reason: bool = False
    requires_note: bool = False
    default_note: Optional[str] = None
    # Maximum timeline entries with the target status (self-loops)
    max_entries: Optional[int] = None


_S = PickupStatus

_EDGES = [
    Edge(_S.PENDING_REVIEW, _S.ADMIN_APPROVED, frozenset({Party.ADMIN}),
         default_note="Approved by admin"),
    Edge(_S.PENDING_REVIEW, _S.ADMIN_REJECTED, frozenset({Party.ADMIN}),
         requires_reason=True),
    Edge(_S.ADMIN_APPROVED, _S.AWAITING_AGENT, frozenset({Party.SYSTEM}),
         default_note="Queued for delivery agents"),
    Edge(_S.AWAITING_AGENT, _S.ASSIGNED, frozenset({Party.ANY_AGENT}),
         default_note="Pickup accepted by delivery agent"),
    # Agent backs out before collecting: job goes back on offer
    Edge(_S.ASSIGNED, _S.AWAITING_AGENT, frozenset({Party.ASSIGNED_AGENT}),
         requires_note=True),
    Edge(_S.ASSIGNED, _S.IN_TRANSIT, frozenset({Party.ASSIGNED_AGENT}),
         default_note="Reached pickup location"),
    Edge(_S.IN_TRANSIT, _S.IN_TRANSIT, frozenset({Party.ASSIGNED_AGENT}),
         default_note="Waste collected, en route to warehouse", max_entries=2),
    Edge(_S.IN_TRANSIT, _S.COMPLETED, frozenset({Party.ASSIGNED_AGENT}),
         default_note="Delivered to warehouse"),
    Edge(_S.AWAITING_AGENT, _S.CANCELLED, frozenset({Party.OWNING_REQUESTER}),
         requires_note=True),
    Edge(_S.ASSIGNED, _S.CANCELLED, frozenset({Party.OWNING_REQUESTER}),
         requires_note=True),
    Edge(_S.IN_TRANSIT, _S.CANCELLED, frozenset({Party.OWNING_REQUESTER, Party.ASSIGNED_AGENT}),
         requires_note=True),
]

TRANSITIONS: Dict[Tuple[PickupStatus, PickupStatus], Edge] = {
    (edge.source, edge.target): edge for edge in _EDGES
}


def find_edge(source: PickupStatus, target: PickupStatus) -> Optional[Edge]:
    return TRANSITIONS.get((source, target))


def targets_from(source: PickupStatus) -> FrozenSet[PickupStatus]:
    return frozenset(target for (src, target) in TRANSITIONS if src == source)


def actor_matches(party: Party, actor: Actor, requester_id: int, agent_id: Optional[int]) -> bool:
    if party == Party.ADMIN:
        return actor.role == ActorRole.ADMIN
    if party == Party.SYSTEM:
        return actor.role == ActorRole.SYSTEM
    if party == Party.ANY_AGENT:
        return actor.role == ActorRole.AGENT
    if party == Party.ASSIGNED_AGENT:
        return actor.role == ActorRole.AGENT and agent_id is not None and actor.user_id == agent_id
    if party == Party.OWNING_REQUESTER:
        return actor.role == ActorRole.REQUESTER and actor.user_id == requester_id
    return False


def is_permitted(edge: Edge, actor: Actor, requester_id: int, agent_id: Optional[int]) -> bool:
    """Check whether the actor may take this edge for a pickup with the given parties."""
    return any(actor_matches(party, actor, requester_id, agent_id) for party in edge.parties)
