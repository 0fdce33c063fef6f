"""
Pickup State Machine (Domain Logic).

Every lifecycle change goes through PickupStateMachine.transition, which is
a single compare-and-swap write:

    UPDATE pickups SET status = <target>, revision = revision + 1, ...
    WHERE id = <pickup_id> AND status = <expected> AND revision = <seen>

followed by exactly one timeline append and any side effect, committed
together. The datastore's row atomicity is the only synchronization used;
concurrent callers racing for the same edge get one winner and
StaleStateError for everyone else.
"""

import logging
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from backend.app.core.exceptions import (
    ConflictError,
    ForbiddenError,
    InvalidArgumentError,
    ResourceNotFoundError,
    StaleStateError,
)
from backend.app.domain.pickups.transitions import Actor, Edge, find_edge, is_permitted
from backend.app.models.pickup import Pickup
from backend.app.models.pickup_enums import PickupStatus
from backend.app.models.pickup_timeline import PickupTimelineEntry

logger = logging.getLogger(__name__)

Location = Optional[Tuple[float, float]]
SideEffect = Callable[[AsyncSession, Pickup, Dict[str, Any]], Awaitable[None]]


class PickupStateMachine:

    @staticmethod
    async def get_pickup(db: AsyncSession, pickup_id: int) -> Pickup:
        """Load a pickup, always re-reading the row from the database."""
        result = await db.execute(
            select(Pickup)
            .where(Pickup.id == pickup_id)
            .execution_options(populate_existing=True)
        )
        pickup = result.scalar_one_or_none()
        if not pickup:
            raise ResourceNotFoundError("Pickup", pickup_id)
        return pickup

    @staticmethod
    async def get_timeline(db: AsyncSession, pickup_id: int) -> list[PickupTimelineEntry]:
        result = await db.execute(
            select(PickupTimelineEntry)
            .where(PickupTimelineEntry.pickup_id == pickup_id)
            .order_by(PickupTimelineEntry.sequence)
        )
        return list(result.scalars().all())

    @staticmethod
    async def count_entries(db: AsyncSession, pickup_id: int, status: PickupStatus) -> int:
        result = await db.execute(
            select(func.count(PickupTimelineEntry.id)).where(
                PickupTimelineEntry.pickup_id == pickup_id,
                PickupTimelineEntry.status == status
            )
        )
        return result.scalar()

    @staticmethod
    async def transition(
        db: AsyncSession,
        pickup_id: int,
        *,
        expected: PickupStatus,
        target: PickupStatus,
        actor: Actor,
        note: Optional[str] = None,
        reason: Optional[str] = None,
        location: Location = None,
        values: Optional[Dict[str, Any]] = None,
        side_effect: Optional[SideEffect] = None,
    ) -> Pickup:
        """
        Move a pickup from `expected` to `target` on behalf of `actor`.

        Args:
            db: Database session (committed here on success, rolled back on CAS loss)
            pickup_id: Pickup to move
            expected: Status the caller believes the pickup is in
            target: Status to move to
            actor: Who is making the change
            note: Timeline note (edge default used when omitted)
            reason: Rejection reason (admin_rejected only)
            location: Optional (latitude, longitude) for the timeline entry
            values: Extra column values written in the same conditional update
            side_effect: Coroutine run after the write and before commit; receives
                the pre-transition pickup and the written values

        Returns:
            The refreshed pickup

        Raises:
            ResourceNotFoundError: pickup does not exist
            StaleStateError: pickup is not in `expected`, or another writer won
            ConflictError: the (expected, target) pair is not a legal edge or its
                repeat limit is reached
            ForbiddenError: actor may not take this edge
            InvalidArgumentError: required reason/note missing
        """
        pickup = await PickupStateMachine.get_pickup(db, pickup_id)

        if pickup.status != expected:
            raise StaleStateError(pickup_id, expected, pickup.status)

        edge = find_edge(expected, target)
        if edge is None:
            raise ConflictError(
                f"Pickup cannot move from {expected.value} to {target.value}",
                details={"pickup_id": pickup_id, "from": expected.value, "to": target.value}
            )

        if not is_permitted(edge, actor, pickup.requester_id, pickup.agent_id):
            raise ForbiddenError(
                f"{actor.role.value.lower()} may not move pickup from {expected.value} to {target.value}",
                details={"pickup_id": pickup_id}
            )

        note = (note or "").strip() or None
        reason = (reason or "").strip() or None
        if edge.requires_reason and not reason:
            raise InvalidArgumentError("A reason is required", details={"pickup_id": pickup_id})
        if edge.requires_note and not note:
            raise InvalidArgumentError("A note is required", details={"pickup_id": pickup_id})

        if edge.max_entries is not None:
            seen = await PickupStateMachine.count_entries(db, pickup_id, target)
            if seen >= edge.max_entries:
                raise ConflictError(
                    f"Pickup has already recorded every {target.value} step",
                    details={"pickup_id": pickup_id}
                )

        now = datetime.utcnow()
        revision = pickup.revision
        written = dict(values or {})
        written.update(_edge_values(edge, actor, reason, now))
        written.update(status=target, revision=revision + 1, updated_at=now)

        result = await db.execute(
            update(Pickup)
            .where(
                Pickup.id == pickup_id,
                Pickup.status == expected,
                Pickup.revision == revision
            )
            .values(**written)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await db.rollback()
            logger.info("Pickup %s CAS lost moving %s -> %s", pickup_id, expected.value, target.value)
            raise StaleStateError(pickup_id, expected)

        latitude, longitude = location if location else (None, None)
        db.add(PickupTimelineEntry(
            pickup_id=pickup_id,
            sequence=revision + 1,
            status=target,
            timestamp=now,
            latitude=latitude,
            longitude=longitude,
            note=reason if edge.requires_reason and not note else (note or edge.default_note),
            actor_id=actor.user_id,
        ))

        try:
            await db.flush()
        except IntegrityError:
            await db.rollback()
            logger.info("Pickup %s timeline sequence %s already taken", pickup_id, revision + 1)
            raise StaleStateError(pickup_id, expected)

        try:
            if side_effect is not None:
                await side_effect(db, pickup, written)
            await db.commit()
        except Exception:
            await db.rollback()
            raise

        logger.info(
            "Pickup %s moved %s -> %s by %s %s",
            pickup_id, expected.value, target.value, actor.role.value, actor.user_id
        )
        return await PickupStateMachine.get_pickup(db, pickup_id)


def _edge_values(edge: Edge, actor: Actor, reason: Optional[str], now: datetime) -> Dict[str, Any]:
    """Columns owned by specific edges."""
    target = edge.target
    if target == PickupStatus.ADMIN_APPROVED:
        return {"approved_by": actor.user_id, "approved_at": now}
    if target == PickupStatus.ADMIN_REJECTED:
        return {"rejected_by": actor.user_id, "rejected_at": now, "rejection_reason": reason}
    if target == PickupStatus.ASSIGNED:
        return {"agent_id": actor.user_id}
    if edge.source == PickupStatus.ASSIGNED and target == PickupStatus.AWAITING_AGENT:
        return {"agent_id": None}
    if target == PickupStatus.COMPLETED:
        return {"completed_at": now}
    return {}
