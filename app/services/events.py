from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.outbox import OutboxEvent


def emit(
    db: AsyncSession,
    *,
    event_type: str,
    listing_id: str,
    payload: dict[str, Any],
    actor_id: str | None = None,
) -> OutboxEvent:
    """
    Domain event hook. Written to the outbox in the caller's transaction so the
    event exists iff the state change that produced it was committed; delivery to
    notification/analytics consumers is at-least-once via the worker.
    """
    ev = OutboxEvent(
        aggregate_type="listing",
        aggregate_id=listing_id,
        event_type=event_type,
        payload={"listing_id": listing_id, **payload},
        status="pending",
        created_by=actor_id,
    )
    db.add(ev)
    return ev
