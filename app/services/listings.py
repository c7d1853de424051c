"""
Listing service: composes scanner -> state machine -> queue manager -> persistence.

Every public operation is one unit of work: read the listing, let the pure state
machine decide, then persist the listing, queue mutation, slug redirect, outbox
event and audit row in a single commit. Validation and authorization are checked
before anything is written.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.config import settings
from app.core.errors import AuthorizationError, ConflictError, NotFoundError, ValidationError
from app.core.ids import gen_id
from app.core.telemetry import tracer
from app.models.listing import Listing
from app.models.moderation_queue import ModerationQueueEntry
from app.models.slug_redirect import SlugRedirect
from app.services import moderation_queue as queue
from app.services.audit import audit, audit_moderation_decision
from app.services.auth import ROLE_ADMIN, Actor
from app.services.collaborators import (
    ACTION_CREATE,
    ACTION_EDIT,
    ACTION_MODERATE,
    CapabilityChecker,
    ImageUrlValidator,
)
from app.services.content_scanner import assess_risk, scan
from app.services.events import emit
from app.services import idempotency
from app.services.listing_state import (
    PUBLISHED_FIELDS,
    Claim,
    Create,
    Decision,
    Delete,
    Edit,
    Expire,
    ListingSnapshot,
    ListingStatus,
    MarkSold,
    ModeratorDecision,
    Transition,
    decide,
    decide_create,
)
from app.services.retry import run_unit_of_work
from app.services.revisions import PendingUpdate
from app.services.slugs import generate_slug


log = logging.getLogger(__name__)

# statuses that count against the per-owner quota
OPEN_LISTING_STATUSES = (
    ListingStatus.PENDING_REVIEW.value,
    ListingStatus.ACTIVE.value,
    ListingStatus.UNDER_REVIEW.value,
    ListingStatus.CHANGES_REQUESTED.value,
)
PUBLIC_STATUSES = (ListingStatus.ACTIVE.value, ListingStatus.SOLD.value)
BROWSE_MAX_LIMIT = 100


@dataclass(frozen=True)
class UpdateOutcome:
    listing: Listing
    status: str
    pending_review: bool
    changes_count: int


@dataclass(frozen=True)
class ListingLookup:
    listing: Listing
    privileged: bool
    redirected_from: str | None = None


@dataclass(frozen=True)
class ListingBrowse:
    listings: list[Listing]
    total: int
    privileged: bool


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def snapshot_of(listing: Listing) -> ListingSnapshot:
    return ListingSnapshot(
        listing_id=listing.id,
        owner_id=listing.owner_id,
        status=ListingStatus(listing.status),
        published={f: getattr(listing, f) for f in PUBLISHED_FIELDS},
        workflow=dict(listing.moderation_workflow or {}),
        pending_update=PendingUpdate.from_dict(listing.pending_update),
        price_history=list(listing.price_history or []),
        moderation_history=list(listing.moderation_history or []),
        flags=list(listing.flags or []),
    )


async def load_listing(db: AsyncSession, listing_id: str) -> Listing:
    listing = (await db.execute(select(Listing).where(Listing.id == listing_id))).scalar_one_or_none()
    if listing is None:
        raise NotFoundError("Listing not found")
    return listing


async def _require_capability(capabilities: CapabilityChecker, actor: Actor, action: str, listing_id: str | None) -> None:
    if not await capabilities.can_perform(actor, action, listing_id):
        raise AuthorizationError(f"Actor is not allowed to perform {action}")


def _require_owner(actor: Actor, listing: Listing) -> None:
    if listing.owner_id != actor.actor_id and ROLE_ADMIN not in actor.roles:
        raise AuthorizationError("Only the listing owner can modify this listing")


async def _require_assignee(db: AsyncSession, actor: Actor, listing: Listing) -> None:
    # a claimed review belongs to its moderator; admins may still decide it
    entry = await queue.get_open_entry(db, listing.id)
    if entry is None or entry.status != queue.QUEUE_IN_REVIEW or not entry.assigned_to:
        return
    if entry.assigned_to != actor.actor_id and ROLE_ADMIN not in actor.roles:
        raise ConflictError(
            "Listing is under review by another moderator",
            details=[{"queue_id": entry.id, "assigned_to": entry.assigned_to}],
        )


def _check_version(listing: Listing, expected_version: int | None) -> None:
    if expected_version is not None and listing.version != expected_version:
        raise ConflictError(
            "Listing was modified since it was read; refresh and retry",
            details=[{"expected_version": expected_version, "current_version": listing.version}],
        )


# -- persistence of a decided transition -------------------------------------

async def _replace_slug(db: AsyncSession, listing: Listing, title: str) -> None:
    new_slug = generate_slug(title, listing.id)
    old_slug = listing.slug
    if new_slug == old_slug:
        return

    # the new slug is live again if the title went back to an earlier one
    await db.execute(delete(SlugRedirect).where(SlugRedirect.old_slug == new_slug))
    # keep every redirect one hop away from the live slug
    await db.execute(
        update(SlugRedirect)
        .where(SlugRedirect.new_slug == old_slug)
        .values(new_slug=new_slug)
        .execution_options(synchronize_session=False)
    )
    db.add(SlugRedirect(old_slug=old_slug, new_slug=new_slug, listing_id=listing.id))
    listing.slug = new_slug
    log.info("listing %s: slug %s -> %s", listing.id, old_slug, new_slug)


async def _apply_queue_action(db: AsyncSession, listing: Listing, t: Transition, actor_id: str, now: datetime) -> ModerationQueueEntry | None:
    action = t.queue
    if action.kind in ("enqueue", "ensure"):
        return await queue.enqueue(
            db,
            listing_id=listing.id,
            priority=action.priority,
            submitted_by=actor_id,
            submission_type=action.submission_type,
            now=now,
            escalated=action.escalated,
            flags=list(action.flags),
        )
    if action.kind == "resolve":
        entry = await queue.get_open_entry(db, listing.id)
        if entry is not None:
            return await queue.resolve(db, queue_id=entry.id, resolution=action.resolution, resolved_by=actor_id, now=now)
        log.warning("listing %s: no open queue entry to resolve (%s)", listing.id, action.resolution)
    return None


async def _persist_transition(
    db: AsyncSession,
    listing: Listing,
    t: Transition,
    *,
    actor_id: str,
    now: datetime,
) -> ModerationQueueEntry | None:
    # slug first, so the listing row is written once per request
    if t.title_changed_from is not None:
        await _replace_slug(db, listing, t.published["title"])

    # JSON columns are reassigned wholesale so the ORM sees the change
    listing.status = t.status.value
    for f in PUBLISHED_FIELDS:
        setattr(listing, f, t.published.get(f))
    listing.moderation_workflow = dict(t.workflow)
    listing.pending_update = t.pending_update.to_dict() if t.pending_update is not None else None
    listing.price_history = list(t.price_history)
    listing.moderation_history = list(t.moderation_history)
    listing.flags = list(t.flags)
    listing.updated_by = actor_id

    entry = await _apply_queue_action(db, listing, t, actor_id, now)

    if t.event_type:
        emit(db, event_type=t.event_type, listing_id=listing.id, payload=t.event_payload, actor_id=actor_id)

    # version_id_col turns a concurrent write into StaleDataError here
    await db.flush()

    log.info(
        "listing %s: %s -> %s by %s (%s)",
        listing.id,
        t.from_status.value if t.from_status else None,
        t.status.value,
        actor_id,
        t.event_type,
    )
    return entry


# -- operations --------------------------------------------------------------

async def create_listing(
    *,
    db: AsyncSession,
    actor: Actor,
    fields: dict[str, Any],
    capabilities: CapabilityChecker,
    image_validator: ImageUrlValidator,
    idempotency_key: str,
    request_path: str,
) -> dict[str, Any]:
    """
    createListing. Returns the response body (also stored against the idempotency key,
    so a retry with the same key and body gets the identical response).
    """
    await _require_capability(capabilities, actor, ACTION_CREATE, None)
    await image_validator.validate(actor.actor_id, list(fields.get("images") or []))

    async def work() -> dict[str, Any]:
        with tracer.start_as_current_span("listings.create"):
            replay = await idempotency.reserve_or_replay(
                db=db,
                actor=actor,
                idempotency_key=idempotency_key,
                request_path=request_path,
                request_body=fields,
            )
            if replay is not None:
                return replay

            open_count = (await db.execute(
                select(func.count()).select_from(Listing).where(
                    Listing.owner_id == actor.actor_id,
                    Listing.status.in_(OPEN_LISTING_STATUSES),
                )
            )).scalar_one()
            if open_count >= settings.max_open_listings_per_owner:
                raise AuthorizationError(
                    "Listing quota exceeded",
                    details=[{"limit": settings.max_open_listings_per_owner, "open_listings": open_count}],
                )

            now = utcnow()
            now_iso = now.isoformat()
            risk = assess_risk(scan(fields["title"], fields["description"]), raised_at=now_iso)

            listing_id = gen_id("lst")
            t = decide_create(listing_id, Create(owner_id=actor.actor_id, fields=fields, risk=risk), now=now_iso)

            listing = Listing(
                id=listing_id,
                owner_id=actor.actor_id,
                slug=generate_slug(t.published["title"], listing_id),
                status=t.status.value,
                created_by=actor.actor_id,
                updated_by=actor.actor_id,
                **t.published,
                moderation_workflow=t.workflow,
                pending_update=None,
                price_history=t.price_history,
                moderation_history=t.moderation_history,
                flags=t.flags,
            )
            db.add(listing)
            await db.flush()

            entry = await _apply_queue_action(db, listing, t, actor.actor_id, now)
            emit(db, event_type=t.event_type, listing_id=listing_id, payload=t.event_payload, actor_id=actor.actor_id)

            response = {
                "listing_id": listing.id,
                "slug": listing.slug,
                "status": listing.status,
                "version": listing.version,
                "queue_id": entry.id if entry else None,
                "queue_priority": entry.priority if entry else None,
                "flags": list(t.flags),
            }
            await idempotency.complete(
                db=db, actor=actor, idempotency_key=idempotency_key, listing_id=listing_id, response=response
            )
            await db.commit()
            log.info("listing %s: created by %s risk=%s score=%d", listing_id, actor.actor_id, risk.severity, risk.score)
            return response

    return await run_unit_of_work(db, work, op="create_listing")


async def update_listing(
    *,
    db: AsyncSession,
    actor: Actor,
    listing_id: str,
    changes: dict[str, Any],
    expected_version: int | None,
    capabilities: CapabilityChecker,
    image_validator: ImageUrlValidator,
) -> UpdateOutcome:
    """updateListing: direct edit, pending update or resubmission depending on status."""
    await _require_capability(capabilities, actor, ACTION_EDIT, listing_id)

    async def work() -> UpdateOutcome:
        with tracer.start_as_current_span("listings.update"):
            listing = await load_listing(db, listing_id)
            _require_owner(actor, listing)
            if "images" in changes:
                await image_validator.validate(listing.owner_id, list(changes["images"]))
            _check_version(listing, expected_version)

            snap = snapshot_of(listing)
            now = utcnow()
            now_iso = now.isoformat()

            risk = None
            if snap.awaiting_resubmission:
                after = {**snap.published, **changes}
                risk = assess_risk(scan(after["title"], after["description"]), raised_at=now_iso)

            t = decide(snap, Edit(actor_id=actor.actor_id, changes=changes, risk=risk), now=now_iso)
            if not t.changed:
                # nothing new to record; report what is already waiting
                return UpdateOutcome(
                    listing=listing,
                    status=listing.status,
                    pending_review=snap.pending_update is not None or snap.status == ListingStatus.PENDING_REVIEW,
                    changes_count=len(snap.pending_update.changes) if snap.pending_update else 0,
                )

            await _persist_transition(db, listing, t, actor_id=actor.actor_id, now=now)
            await db.commit()
            return UpdateOutcome(
                listing=listing,
                status=t.status.value,
                pending_review=t.pending_update is not None or t.status == ListingStatus.PENDING_REVIEW,
                changes_count=t.changes_count,
            )

    return await run_unit_of_work(db, work, op="update_listing")


async def moderate_listing(
    *,
    db: AsyncSession,
    actor: Actor,
    listing_id: str,
    decision: Decision,
    notes: str | None,
    required_changes: list[str],
    expected_version: int | None,
    capabilities: CapabilityChecker,
) -> Listing:
    """moderateListing: approve / reject / request changes, for initial reviews and pending updates."""
    await _require_capability(capabilities, actor, ACTION_MODERATE, listing_id)

    async def work() -> Listing:
        with tracer.start_as_current_span("listings.moderate"):
            listing = await load_listing(db, listing_id)
            _check_version(listing, expected_version)
            await _require_assignee(db, actor, listing)

            now = utcnow()
            event = ModeratorDecision(
                moderator_id=actor.actor_id,
                decision=decision,
                notes=(notes or "").strip() or None,
                required_changes=tuple(required_changes or ()),
            )
            t = decide(snapshot_of(listing), event, now=now.isoformat())
            await _persist_transition(db, listing, t, actor_id=actor.actor_id, now=now)
            await audit_moderation_decision(
                db,
                moderator_id=actor.actor_id,
                listing_id=listing.id,
                decision=decision.value,
                from_status=t.from_status.value if t.from_status else None,
                to_status=t.status.value,
                notes=event.notes,
                required_changes=list(event.required_changes),
            )
            await db.commit()
            return listing

    return await run_unit_of_work(db, work, op="moderate_listing")


async def assign_review(
    *,
    db: AsyncSession,
    actor: Actor,
    queue_id: str,
    capabilities: CapabilityChecker,
) -> ModerationQueueEntry:
    """Moderator claims a queue entry; an initial/resubmission review moves the listing to under_review."""
    await _require_capability(capabilities, actor, ACTION_MODERATE, None)

    async def work() -> ModerationQueueEntry:
        with tracer.start_as_current_span("moderation.assign"):
            entry = await queue.get_entry(db, queue_id)
            listing = await load_listing(db, entry.listing_id)
            now = utcnow()

            # decide first: an illegal claim must fail before the queue row is touched
            t = decide(snapshot_of(listing), Claim(moderator_id=actor.actor_id), now=now.isoformat())
            entry = await queue.assign(db, queue_id=queue_id, moderator_id=actor.actor_id, now=now)
            if t.changed:
                await _persist_transition(db, listing, t, actor_id=actor.actor_id, now=now)
            await audit(
                db,
                actor_id=actor.actor_id,
                action="moderation.assign",
                target_type="moderation_queue",
                target_id=queue_id,
                detail={"listing_id": listing.id},
            )
            await db.commit()
            return entry

    return await run_unit_of_work(db, work, op="assign_review")


async def escalate_review(
    *,
    db: AsyncSession,
    actor: Actor,
    queue_id: str,
    reason: str,
    capabilities: CapabilityChecker,
) -> ModerationQueueEntry:
    await _require_capability(capabilities, actor, ACTION_MODERATE, None)

    async def work() -> ModerationQueueEntry:
        entry = await queue.escalate(db, queue_id=queue_id, reason=reason, actor_id=actor.actor_id)
        await audit(
            db,
            actor_id=actor.actor_id,
            action="moderation.escalate",
            target_type="moderation_queue",
            target_id=queue_id,
            detail={"listing_id": entry.listing_id, "reason": reason},
        )
        await db.commit()
        log.info("queue: %s escalated by %s", queue_id, actor.actor_id)
        return entry

    return await run_unit_of_work(db, work, op="escalate_review")


async def mark_sold(*, db: AsyncSession, actor: Actor, listing_id: str, capabilities: CapabilityChecker) -> Listing:
    await _require_capability(capabilities, actor, ACTION_EDIT, listing_id)

    async def work() -> Listing:
        listing = await load_listing(db, listing_id)
        _require_owner(actor, listing)
        now = utcnow()
        t = decide(snapshot_of(listing), MarkSold(actor_id=actor.actor_id), now=now.isoformat())
        await _persist_transition(db, listing, t, actor_id=actor.actor_id, now=now)
        await db.commit()
        return listing

    return await run_unit_of_work(db, work, op="mark_sold")


async def expire_stale_listings(db: AsyncSession, *, older_than: datetime, limit: int = 500) -> int:
    """Expire active listings not updated since `older_than`. Conflicting listings are skipped."""
    ids = (await db.execute(
        select(Listing.id)
        .where(Listing.status == ListingStatus.ACTIVE.value, Listing.updated_at < older_than)
        .order_by(Listing.updated_at.asc())
        .limit(limit)
    )).scalars().all()
    await db.rollback()

    expired = 0
    for listing_id in ids:
        async def work(listing_id: str = listing_id) -> bool:
            listing = await load_listing(db, listing_id)
            if listing.status != ListingStatus.ACTIVE.value:
                return False
            now = utcnow()
            t = decide(snapshot_of(listing), Expire(), now=now.isoformat())
            await _persist_transition(db, listing, t, actor_id="system", now=now)
            await db.commit()
            return True

        try:
            if await run_unit_of_work(db, work, op="expire_listing"):
                expired += 1
        except ConflictError:
            # touched by its owner meanwhile; the next sweep re-checks it
            log.info("expire: listing %s changed concurrently, skipped", listing_id)
    return expired


async def get_listing(*, db: AsyncSession, id_or_slug: str, actor: Actor | None) -> ListingLookup:
    """getListing: resolves id, then slug, then slug redirect."""
    listing = (await db.execute(
        select(Listing).where(or_(Listing.id == id_or_slug, Listing.slug == id_or_slug))
    )).scalars().first()

    redirected_from = None
    if listing is None:
        redirect = (await db.execute(
            select(SlugRedirect).where(SlugRedirect.old_slug == id_or_slug)
        )).scalar_one_or_none()
        if redirect is not None:
            listing = (await db.execute(select(Listing).where(Listing.id == redirect.listing_id))).scalar_one_or_none()
            redirected_from = id_or_slug

    if listing is None:
        raise NotFoundError("Listing not found")

    if listing.status == ListingStatus.DELETED.value and not (actor is not None and actor.is_moderator):
        raise NotFoundError("Listing not found")
    privileged = actor is not None and (actor.actor_id == listing.owner_id or actor.is_moderator)
    if not privileged and listing.status not in PUBLIC_STATUSES:
        raise NotFoundError("Listing not found")
    return ListingLookup(listing=listing, privileged=privileged, redirected_from=redirected_from)


async def list_listings(
    *,
    db: AsyncSession,
    actor: Actor | None,
    owner_id: str | None = None,
    status: str | None = None,
    limit: int = 20,
    offset: int = 0,
) -> ListingBrowse:
    """
    getListings: newest first. Anonymous browsing sees active listings; an owner
    filtering on their own id, or a moderator, may see every status.
    """
    if limit < 1 or limit > BROWSE_MAX_LIMIT or offset < 0:
        raise ValidationError("Invalid pagination parameters", details=[{"limit": limit, "offset": offset}])
    if status is not None and status not in {s.value for s in ListingStatus}:
        raise ValidationError(f"Unknown listing status: {status}", details=[{"field": "status"}])

    is_moderator = actor is not None and actor.is_moderator
    privileged = is_moderator or (actor is not None and owner_id is not None and owner_id == actor.actor_id)
    if status is None:
        statuses = [s.value for s in ListingStatus if s != ListingStatus.DELETED] if privileged else [ListingStatus.ACTIVE.value]
    elif status == ListingStatus.DELETED.value and not is_moderator:
        raise AuthorizationError("Only moderators can list deleted listings")
    elif privileged or status in PUBLIC_STATUSES:
        statuses = [status]
    else:
        raise AuthorizationError(f"Listings in status {status} are only visible to their owner")

    conditions = [Listing.status.in_(statuses)]
    if owner_id is not None:
        conditions.append(Listing.owner_id == owner_id)

    rows = (await db.execute(
        select(Listing)
        .where(*conditions)
        .order_by(Listing.created_at.desc(), Listing.id.desc())
        .limit(limit)
        .offset(offset)
    )).scalars().all()
    total = (await db.execute(select(func.count()).select_from(Listing).where(*conditions))).scalar_one()
    return ListingBrowse(listings=list(rows), total=int(total), privileged=privileged)


async def delete_listing(*, db: AsyncSession, actor: Actor, listing_id: str, capabilities: CapabilityChecker) -> Listing:
    """deleteListing: soft delete by the owner; an open review is withdrawn in the same commit."""
    await _require_capability(capabilities, actor, ACTION_EDIT, listing_id)

    async def work() -> Listing:
        with tracer.start_as_current_span("listings.delete"):
            listing = await load_listing(db, listing_id)
            _require_owner(actor, listing)
            now = utcnow()
            t = decide(snapshot_of(listing), Delete(actor_id=actor.actor_id), now=now.isoformat())
            await _persist_transition(db, listing, t, actor_id=actor.actor_id, now=now)
            await audit(
                db,
                actor_id=actor.actor_id,
                action="listing.delete",
                target_type="listing",
                target_id=listing.id,
                detail={"from": t.from_status.value if t.from_status else None},
            )
            await db.commit()
            return listing

    return await run_unit_of_work(db, work, op="delete_listing")


async def moderation_stats(*, db: AsyncSession, actor: Actor, capabilities: CapabilityChecker) -> dict[str, Any]:
    await _require_capability(capabilities, actor, ACTION_MODERATE, None)

    rows = (await db.execute(select(Listing.status, func.count()).group_by(Listing.status))).all()
    by_status = {s.value: 0 for s in ListingStatus}
    by_status.update({status: int(n) for status, n in rows})
    return {
        "listings": by_status,
        "total": sum(by_status.values()),
        "queue": await queue.open_counts(db),
    }
