from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.core.errors import AuthorizationError
from app.models.moderation_queue import ModerationQueueEntry
from app.schemas.common import PageMeta
from app.schemas.moderation import EscalateIn, ModerationStatsOut, QueueEntryOut, QueuePage
from app.services.auth import Actor, get_actor
from app.services.collaborators import ACTION_MODERATE, CapabilityChecker, get_capability_checker
from app.services.listings import assign_review, escalate_review, moderation_stats
from app.services.moderation_queue import QueueFilter, list_entries

router = APIRouter()


def queue_entry_out(e: ModerationQueueEntry) -> QueueEntryOut:
    return QueueEntryOut(
        id=e.id,
        listing_id=e.listing_id,
        submitted_by=e.submitted_by,
        priority=e.priority,
        status=e.status,
        submission_type=e.submission_type,
        assigned_to=e.assigned_to,
        submitted_at=str(e.submitted_at),
        escalated=e.escalated,
        escalation_reason=e.escalation_reason,
        resolution=e.resolution,
        flags=list(e.flags or []),
    )


@router.get("/moderation/queue", response_model=QueuePage)
async def list_queue(
    status: str | None = Query(default="pending"),
    priority: str | None = Query(default=None),
    assigned_to: str | None = Query(default=None),
    escalated: bool | None = Query(default=None),
    limit: int = Query(default=50),
    offset: int = Query(default=0),
    actor: Actor = Depends(get_actor),
    capabilities: CapabilityChecker = Depends(get_capability_checker),
    db: AsyncSession = Depends(get_db),
) -> QueuePage:
    if not await capabilities.can_perform(actor, ACTION_MODERATE, None):
        raise AuthorizationError("Only moderators can read the moderation queue")

    # "all" lists every status
    flt = QueueFilter(status=None if status in (None, "", "all") else status, priority=priority, assigned_to=assigned_to, escalated=escalated)
    rows, total = await list_entries(db, flt=flt, limit=limit, offset=offset)
    return QueuePage(
        items=[queue_entry_out(r) for r in rows],
        page=PageMeta(limit=limit, offset=offset, total=total),
    )


@router.post("/moderation/queue/{queue_id}/assign", response_model=QueueEntryOut)
async def assign_queue_entry(
    queue_id: str,
    actor: Actor = Depends(get_actor),
    capabilities: CapabilityChecker = Depends(get_capability_checker),
    db: AsyncSession = Depends(get_db),
) -> QueueEntryOut:
    entry = await assign_review(db=db, actor=actor, queue_id=queue_id, capabilities=capabilities)
    return queue_entry_out(entry)


@router.post("/moderation/queue/{queue_id}/escalate", response_model=QueueEntryOut)
async def escalate_queue_entry(
    queue_id: str,
    payload: EscalateIn,
    actor: Actor = Depends(get_actor),
    capabilities: CapabilityChecker = Depends(get_capability_checker),
    db: AsyncSession = Depends(get_db),
) -> QueueEntryOut:
    entry = await escalate_review(db=db, actor=actor, queue_id=queue_id, reason=payload.reason, capabilities=capabilities)
    return queue_entry_out(entry)


@router.get("/moderation/stats", response_model=ModerationStatsOut)
async def get_moderation_stats(
    actor: Actor = Depends(get_actor),
    capabilities: CapabilityChecker = Depends(get_capability_checker),
    db: AsyncSession = Depends(get_db),
) -> ModerationStatsOut:
    return ModerationStatsOut(**await moderation_stats(db=db, actor=actor, capabilities=capabilities))
