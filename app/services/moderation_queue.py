"""
Moderation queue manager.

The queue is a persisted task table; every operation is an explicit row mutation
inside the caller's transaction, so queue changes commit atomically with the
listing transition that triggered them.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError, InvalidStateError, NotFoundError, ValidationError
from app.models.moderation_queue import ModerationQueueEntry
from app.services.listing_state import PRIORITY_RANK, QueuePriority, SubmissionType


log = logging.getLogger(__name__)

QUEUE_PENDING = "pending"
QUEUE_IN_REVIEW = "in_review"
QUEUE_RESOLVED = "resolved"
QUEUE_STATUSES = (QUEUE_PENDING, QUEUE_IN_REVIEW, QUEUE_RESOLVED)
OPEN_STATUSES = (QUEUE_PENDING, QUEUE_IN_REVIEW)

MAX_PAGE_SIZE = 200


@dataclass(frozen=True)
class QueueFilter:
    status: str | None = None
    priority: str | None = None
    assigned_to: str | None = None
    escalated: bool | None = None


async def get_entry(db: AsyncSession, queue_id: str) -> ModerationQueueEntry:
    entry = (await db.execute(select(ModerationQueueEntry).where(ModerationQueueEntry.id == queue_id))).scalar_one_or_none()
    if entry is None:
        raise NotFoundError("Queue entry not found")
    return entry


async def get_open_entry(db: AsyncSession, listing_id: str) -> ModerationQueueEntry | None:
    stmt = (
        select(ModerationQueueEntry)
        .where(
            ModerationQueueEntry.listing_id == listing_id,
            ModerationQueueEntry.status.in_(OPEN_STATUSES),
        )
        .order_by(ModerationQueueEntry.submitted_at.asc())
    )
    return (await db.execute(stmt)).scalars().first()


async def enqueue(
    db: AsyncSession,
    *,
    listing_id: str,
    priority: QueuePriority,
    submitted_by: str,
    submission_type: SubmissionType,
    now: datetime,
    escalated: bool = False,
    flags: list[dict] | None = None,
) -> ModerationQueueEntry:
    """
    Open a work item for the listing. If one is already open it is reused (an
    owner nudging a pending update must not create a second item); its priority
    can only go up and its submitted_at is kept for FIFO fairness.
    """
    existing = await get_open_entry(db, listing_id)
    if existing is not None:
        if PRIORITY_RANK[priority] < existing.priority_rank:
            existing.priority = priority.value
            existing.priority_rank = PRIORITY_RANK[priority]
        if escalated and not existing.escalated:
            existing.escalated = True
        if flags:
            existing.flags = list(flags)
        existing.updated_by = submitted_by
        return existing

    entry = ModerationQueueEntry(
        listing_id=listing_id,
        submitted_by=submitted_by,
        priority=priority.value,
        priority_rank=PRIORITY_RANK[priority],
        status=QUEUE_PENDING,
        submission_type=submission_type.value,
        submitted_at=now,
        escalated=escalated,
        escalation_reason="high content risk" if escalated else None,
        flags=list(flags or []),
        created_by=submitted_by,
        updated_by=submitted_by,
    )
    db.add(entry)
    await db.flush()
    log.info("queue: enqueued %s for listing %s priority=%s type=%s", entry.id, listing_id, priority.value, submission_type.value)
    return entry


async def assign(db: AsyncSession, *, queue_id: str, moderator_id: str, now: datetime) -> ModerationQueueEntry:
    """Explicit claim by a moderator. Claiming an item someone else holds is a conflict."""
    entry = await get_entry(db, queue_id)
    if entry.status == QUEUE_RESOLVED:
        raise InvalidStateError("Queue entry is already resolved", current_state=entry.status)
    if entry.assigned_to and entry.assigned_to != moderator_id:
        raise ConflictError("Queue entry is already assigned to another moderator")
    if entry.assigned_to == moderator_id and entry.status == QUEUE_IN_REVIEW:
        return entry

    # conditional write: only claim if nobody else did since we read it
    result = await db.execute(
        update(ModerationQueueEntry)
        .where(
            ModerationQueueEntry.id == queue_id,
            ModerationQueueEntry.status == QUEUE_PENDING,
            ModerationQueueEntry.assigned_to.is_(None),
        )
        .values(status=QUEUE_IN_REVIEW, assigned_to=moderator_id, assigned_at=now, updated_by=moderator_id)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount == 0:
        raise ConflictError("Queue entry was claimed concurrently; refresh and retry")
    await db.refresh(entry)
    log.info("queue: %s assigned to %s", queue_id, moderator_id)
    return entry


async def resolve(
    db: AsyncSession,
    *,
    queue_id: str,
    resolution: str,
    resolved_by: str,
    now: datetime,
) -> ModerationQueueEntry:
    entry = await get_entry(db, queue_id)
    if entry.status == QUEUE_RESOLVED:
        # idempotent for the same outcome, retries must not fail
        if entry.resolution == resolution:
            return entry
        raise InvalidStateError("Queue entry is already resolved", current_state=entry.status)
    entry.status = QUEUE_RESOLVED
    entry.resolution = resolution
    entry.resolved_at = now
    entry.updated_by = resolved_by
    log.info("queue: %s resolved as %s by %s", queue_id, resolution, resolved_by)
    return entry


async def escalate(
    db: AsyncSession,
    *,
    queue_id: str,
    reason: str,
    actor_id: str,
) -> ModerationQueueEntry:
    entry = await get_entry(db, queue_id)
    if entry.status == QUEUE_RESOLVED:
        raise InvalidStateError("Queue entry is already resolved", current_state=entry.status)
    entry.escalated = True
    entry.escalation_reason = reason
    entry.priority = QueuePriority.URGENT.value
    entry.priority_rank = PRIORITY_RANK[QueuePriority.URGENT]
    entry.updated_by = actor_id
    return entry


async def escalate_stale(db: AsyncSession, *, older_than: datetime, actor_id: str = "system") -> int:
    result = await db.execute(
        update(ModerationQueueEntry)
        .where(
            ModerationQueueEntry.status == QUEUE_PENDING,
            ModerationQueueEntry.escalated.is_(False),
            ModerationQueueEntry.submitted_at < older_than,
        )
        .values(
            escalated=True,
            escalation_reason="waiting beyond review SLA",
            priority=QueuePriority.URGENT.value,
            priority_rank=PRIORITY_RANK[QueuePriority.URGENT],
            updated_by=actor_id,
        )
    )
    return int(result.rowcount or 0)


def _apply_filter(stmt, flt: QueueFilter):
    if flt.status:
        if flt.status not in QUEUE_STATUSES:
            raise ValidationError(f"Unknown queue status: {flt.status}")
        stmt = stmt.where(ModerationQueueEntry.status == flt.status)
    if flt.priority:
        try:
            rank = PRIORITY_RANK[QueuePriority(flt.priority)]
        except ValueError as e:
            raise ValidationError(f"Unknown priority: {flt.priority}") from e
        stmt = stmt.where(ModerationQueueEntry.priority_rank == rank)
    if flt.assigned_to:
        stmt = stmt.where(ModerationQueueEntry.assigned_to == flt.assigned_to)
    if flt.escalated is not None:
        stmt = stmt.where(ModerationQueueEntry.escalated.is_(flt.escalated))
    return stmt


async def list_entries(
    db: AsyncSession,
    *,
    flt: QueueFilter = QueueFilter(),
    limit: int = 50,
    offset: int = 0,
) -> tuple[list[ModerationQueueEntry], int]:
    """Priority band first (urgent..low), FIFO by submission time inside a band."""
    if limit < 1 or limit > MAX_PAGE_SIZE or offset < 0:
        raise ValidationError("Invalid pagination parameters")

    stmt = _apply_filter(select(ModerationQueueEntry), flt).order_by(
        ModerationQueueEntry.priority_rank.asc(),
        ModerationQueueEntry.submitted_at.asc(),
        ModerationQueueEntry.id.asc(),
    )
    rows = (await db.execute(stmt.limit(limit).offset(offset))).scalars().all()

    count_stmt = _apply_filter(select(func.count()).select_from(ModerationQueueEntry), flt)
    total = (await db.execute(count_stmt)).scalar_one()
    return list(rows), int(total)


async def open_counts(db: AsyncSession) -> dict[str, int]:
    """Open entries per queue status, plus how many of them are escalated."""
    rows = (await db.execute(
        select(ModerationQueueEntry.status, func.count())
        .where(ModerationQueueEntry.status.in_(OPEN_STATUSES))
        .group_by(ModerationQueueEntry.status)
    )).all()
    counts = {s: 0 for s in OPEN_STATUSES}
    counts.update({status: int(n) for status, n in rows})

    escalated = (await db.execute(
        select(func.count()).select_from(ModerationQueueEntry).where(
            ModerationQueueEntry.status.in_(OPEN_STATUSES),
            ModerationQueueEntry.escalated.is_(True),
        )
    )).scalar_one()
    counts["escalated"] = int(escalated)
    return counts
