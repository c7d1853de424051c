"""
Outbox dispatcher: leases pending domain events and hands them to the Celery
delivery task. Leases expire so a crashed worker never strands an event.
"""
from __future__ import annotations

import logging
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.models.outbox import OutboxEvent


log = logging.getLogger(__name__)

DELIVER_TASK = "worker.tasks.deliver_event"


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def requeue_expired_leases(db: AsyncSession) -> int:
    result = await db.execute(
        update(OutboxEvent)
        .where(
            OutboxEvent.status == "processing",
            OutboxEvent.lease_expires_at.is_not(None),
            OutboxEvent.lease_expires_at < _now(),
        )
        .values(
            status="pending",
            lease_id=None,
            lease_expires_at=None,
            processing_started_at=None,
            last_error="requeued: lease expired",
        )
    )
    return int(result.rowcount or 0)


async def claim_outbox_event_ids(db: AsyncSession, batch_size: int = 100, lease_minutes: int = 10) -> tuple[str, list[str]]:
    lease_id = uuid.uuid4().hex
    now = _now()

    # SKIP LOCKED lets several dispatchers run side by side (ignored where unsupported)
    stmt = (
        select(OutboxEvent.id)
        .where(OutboxEvent.status == "pending")
        .order_by(OutboxEvent.created_at.asc(), OutboxEvent.id.asc())
        .with_for_update(skip_locked=True)
        .limit(batch_size)
    )
    ids = list((await db.execute(stmt)).scalars().all())
    if not ids:
        return lease_id, []

    await db.execute(
        update(OutboxEvent)
        .where(OutboxEvent.id.in_(ids), OutboxEvent.status == "pending")
        .values(
            status="processing",
            processing_started_at=now,
            attempts=OutboxEvent.attempts + 1,
            last_error=None,
            lease_id=lease_id,
            lease_expires_at=now + timedelta(minutes=lease_minutes),
        )
    )
    await db.flush()
    return lease_id, ids


def _send(outbox_id: str, lease_id: str) -> None:
    from worker.celery_app import celery

    celery.send_task(DELIVER_TASK, args=[outbox_id, lease_id], queue="outbox")


async def dispatch_outbox(db: AsyncSession, batch_size: int | None = None, lease_minutes: int | None = None) -> int:
    batch_size = batch_size or settings.outbox_batch_size
    lease_minutes = lease_minutes or settings.outbox_lease_minutes

    await requeue_expired_leases(db)
    lease_id, ids = await claim_outbox_event_ids(db, batch_size=batch_size, lease_minutes=lease_minutes)

    # commit before enqueue so workers see the lease
    await db.commit()

    if not ids:
        return 0

    failed: list[tuple[str, str]] = []
    dispatched = 0
    for outbox_id in ids:
        try:
            _send(outbox_id, lease_id)
            dispatched += 1
        except Exception as e:
            failed.append((outbox_id, f"{type(e).__name__}: {e}"))

    # broker refused: hand those events back to the next dispatch
    if failed:
        log.warning("outbox: %d of %d events could not be enqueued", len(failed), len(ids))
        for outbox_id, msg in failed:
            await db.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == outbox_id, OutboxEvent.lease_id == lease_id)
                .values(status="pending", lease_id=None, lease_expires_at=None, processing_started_at=None, last_error=f"enqueue failed: {msg}")
            )
        await db.commit()

    log.info("outbox: dispatched %d events (lease %s)", dispatched, lease_id)
    return dispatched
