"""
Listing moderation state machine.

`decide()` is pure: given a snapshot of the persisted listing and an incoming
event it returns the complete next state plus the queue mutation and domain
event the service must persist. Illegal (state, event) pairs raise
InvalidStateError before anything is written.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Mapping

from app.core.errors import InvalidStateError, ValidationError
from app.services.content_scanner import RISK_PRIORITY, SEVERITY_ORDER, RiskAssessment
from app.services.revisions import Accumulated, PendingUpdate, accumulate, effective_price, record_price_change


class ListingStatus(str, Enum):
    PENDING_REVIEW = "pending_review"
    ACTIVE = "active"
    UNDER_REVIEW = "under_review"
    CHANGES_REQUESTED = "changes_requested"
    REJECTED = "rejected"
    SOLD = "sold"
    EXPIRED = "expired"
    DELETED = "deleted"


class WorkflowStatus(str, Enum):
    PENDING = "pending"
    IN_REVIEW = "in_review"
    APPROVED = "approved"
    REJECTED = "rejected"
    CHANGES_REQUESTED = "changes_requested"


class SubmissionType(str, Enum):
    INITIAL = "initial"
    UPDATE = "update"
    RESUBMISSION = "resubmission"


class Decision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    REQUEST_CHANGES = "request_changes"


class QueuePriority(str, Enum):
    URGENT = "urgent"
    HIGH = "high"
    STANDARD = "standard"
    LOW = "low"


PRIORITY_RANK = {
    QueuePriority.URGENT: 0,
    QueuePriority.HIGH: 1,
    QueuePriority.STANDARD: 2,
    QueuePriority.LOW: 3,
}

PUBLISHED_FIELDS = ("title", "description", "price", "year", "location", "boat_details", "images", "features")

# statuses where edits land directly on published fields (not publicly visible)
DIRECT_EDIT_STATUSES = {ListingStatus.PENDING_REVIEW, ListingStatus.REJECTED}
REVIEWABLE_STATUSES = {ListingStatus.PENDING_REVIEW, ListingStatus.UNDER_REVIEW}


# -- events -----------------------------------------------------------------

@dataclass(frozen=True)
class Create:
    owner_id: str
    fields: dict[str, Any]
    risk: RiskAssessment


@dataclass(frozen=True)
class Edit:
    actor_id: str
    changes: dict[str, Any]
    # scanner output for the text as it would read after the edit; used on resubmission
    risk: RiskAssessment | None = None


@dataclass(frozen=True)
class Claim:
    moderator_id: str


@dataclass(frozen=True)
class ModeratorDecision:
    moderator_id: str
    decision: Decision
    notes: str | None = None
    required_changes: tuple[str, ...] = ()


@dataclass(frozen=True)
class MarkSold:
    actor_id: str


@dataclass(frozen=True)
class Expire:
    actor_id: str = "system"


@dataclass(frozen=True)
class Delete:
    actor_id: str


# -- state ------------------------------------------------------------------

@dataclass(frozen=True)
class ListingSnapshot:
    listing_id: str
    owner_id: str
    status: ListingStatus
    published: dict[str, Any]
    workflow: dict[str, Any]
    pending_update: PendingUpdate | None
    price_history: list[dict[str, Any]]
    moderation_history: list[dict[str, Any]]
    flags: list[dict[str, Any]]

    @property
    def workflow_status(self) -> str | None:
        return self.workflow.get("status")

    @property
    def awaiting_resubmission(self) -> bool:
        if self.status == ListingStatus.CHANGES_REQUESTED:
            return True
        return (
            self.status == ListingStatus.UNDER_REVIEW
            and self.workflow_status == WorkflowStatus.CHANGES_REQUESTED.value
        )


@dataclass(frozen=True)
class QueueAction:
    kind: str = "none"  # none | enqueue | ensure | resolve | claim
    priority: QueuePriority | None = None
    submission_type: SubmissionType | None = None
    escalated: bool = False
    resolution: str | None = None
    flags: tuple[dict[str, Any], ...] = ()


NO_QUEUE_ACTION = QueueAction()


@dataclass(frozen=True)
class Transition:
    from_status: ListingStatus | None
    status: ListingStatus
    published: dict[str, Any]
    workflow: dict[str, Any]
    pending_update: PendingUpdate | None
    price_history: list[dict[str, Any]]
    moderation_history: list[dict[str, Any]]
    flags: list[dict[str, Any]]
    queue: QueueAction = NO_QUEUE_ACTION
    event_type: str | None = None
    event_payload: dict[str, Any] = field(default_factory=dict)
    changed: bool = True

    @property
    def title_changed_from(self) -> str | None:
        return self.event_payload.get("previous_title")

    @property
    def changes_count(self) -> int:
        if self.pending_update is not None:
            return len(self.pending_update.changes)
        return int(self.event_payload.get("changes_count", 0))


# -- helpers ----------------------------------------------------------------

def _history_entry(action: str, actor: str, now: str, frm: ListingStatus | None, to: ListingStatus, notes: str | None = None) -> dict[str, Any]:
    return {
        "action": action,
        "actor": actor,
        "timestamp": now,
        "notes": notes,
        "from_status": frm.value if frm else None,
        "to_status": to.value,
    }


def _unchanged(snap: ListingSnapshot) -> Transition:
    return Transition(
        from_status=snap.status,
        status=snap.status,
        published=dict(snap.published),
        workflow=dict(snap.workflow),
        pending_update=snap.pending_update,
        price_history=list(snap.price_history),
        moderation_history=list(snap.moderation_history),
        flags=list(snap.flags),
        changed=False,
    )


def _invalid(snap: ListingSnapshot, what: str) -> InvalidStateError:
    state = snap.status.value
    if snap.workflow_status:
        state = f"{state}/{snap.workflow_status}"
    return InvalidStateError(f"Cannot {what} a listing in state {state}", current_state=snap.status.value)


def _flag_priority(flags: list[dict[str, Any]]) -> QueuePriority:
    open_sev = [f.get("severity", "low") for f in flags if f.get("status") == "open"]
    if not open_sev:
        return QueuePriority.STANDARD
    worst = max(open_sev, key=lambda s: SEVERITY_ORDER.get(s, 0))
    return QueuePriority(RISK_PRIORITY.get(worst, "standard"))


def _set_flag_status(flags: list[dict[str, Any]], status: str, now: str, *, source: str | None = None) -> list[dict[str, Any]]:
    out = []
    for f in flags:
        if f.get("status") == "open" and (source is None or f.get("source") == source):
            f = {**f, "status": status, "updated_at": now}
        out.append(f)
    return out


def _price_reverted(snap: ListingSnapshot, actor: str, now: str, reason: str) -> list[dict[str, Any]]:
    # a discarded pending price returns the effective price to the published one
    return record_price_change(
        snap.price_history,
        current_price=effective_price(snap.published, snap.pending_update),
        new_price=snap.published.get("price"),
        actor=actor,
        now=now,
        reason=reason,
    )


def _apply_direct(snap: ListingSnapshot, changes: Mapping[str, Any], actor: str, now: str) -> tuple[dict[str, Any], list[dict[str, Any]]]:
    published = {**snap.published, **changes}
    history = record_price_change(
        snap.price_history,
        current_price=snap.published.get("price"),
        new_price=changes.get("price"),
        actor=actor,
        now=now,
        reason="direct_edit",
    )
    return published, history


def _title_payload(before: Mapping[str, Any], after: Mapping[str, Any]) -> dict[str, Any]:
    if before.get("title") != after.get("title"):
        return {"previous_title": before.get("title")}
    return {}


# -- create -----------------------------------------------------------------

def decide_create(listing_id: str, event: Create, *, now: str) -> Transition:
    fields = {k: event.fields[k] for k in PUBLISHED_FIELDS if k in event.fields}
    status = ListingStatus.PENDING_REVIEW
    risk = event.risk

    workflow = {
        "status": WorkflowStatus.PENDING.value,
        "assigned_reviewer": None,
        "submission_type": SubmissionType.INITIAL.value,
        "previous_review_count": 0,
        "required_changes": [],
        "submitted_at": now,
        "risk_score": risk.score,
        "risk_severity": risk.severity,
    }
    price_history = record_price_change(
        [], current_price=None, new_price=fields.get("price"), actor=event.owner_id, now=now, reason="initial_listing"
    )

    return Transition(
        from_status=None,
        status=status,
        published=fields,
        workflow=workflow,
        pending_update=None,
        price_history=price_history,
        moderation_history=[_history_entry("submit", event.owner_id, now, None, status)],
        flags=list(risk.flags),
        queue=QueueAction(
            kind="enqueue",
            priority=QueuePriority(risk.priority),
            submission_type=SubmissionType.INITIAL,
            escalated=risk.escalate,
            flags=risk.flags,
        ),
        event_type="listing.submitted",
        event_payload={"listing_id": listing_id, "owner_id": event.owner_id, "risk_severity": risk.severity, "risk_score": risk.score},
    )


# -- transitions ------------------------------------------------------------

def _decide_edit(snap: ListingSnapshot, ev: Edit, now: str) -> Transition:
    if snap.status == ListingStatus.ACTIVE:
        return _edit_active(snap, ev, now)
    if snap.awaiting_resubmission:
        return _resubmit(snap, ev, now)
    if snap.status in DIRECT_EDIT_STATUSES:
        published, price_history = _apply_direct(snap, ev.changes, ev.actor_id, now)
        if published == snap.published:
            return _unchanged(snap)
        changed_fields = [k for k in ev.changes if snap.published.get(k) != ev.changes[k]]
        return replace(
            _unchanged(snap),
            published=published,
            price_history=price_history,
            event_type="listing.edited",
            event_payload={
                "listing_id": snap.listing_id,
                "fields": changed_fields,
                "changes_count": len(changed_fields),
                **_title_payload(snap.published, published),
            },
            changed=True,
        )
    raise _invalid(snap, "edit")


def _edit_active(snap: ListingSnapshot, ev: Edit, now: str) -> Transition:
    acc = accumulate(snap.pending_update, ev.changes, snap.published, actor=ev.actor_id, now=now)
    if not acc.new_entries:
        # identical edit (or no-op against the published version): nothing to queue
        return _unchanged(snap)

    if acc.pending_update is None:
        return _withdraw_update(snap, ev, acc, now)

    pu = acc.pending_update
    price_history = record_price_change(
        snap.price_history,
        current_price=effective_price(snap.published, snap.pending_update),
        new_price=ev.changes.get("price"),
        actor=ev.actor_id,
        now=now,
        reason="pending_update",
    )

    workflow = dict(snap.workflow)
    if snap.pending_update is None:
        workflow.update({
            "status": WorkflowStatus.PENDING.value,
            "assigned_reviewer": None,
            "submission_type": SubmissionType.UPDATE.value,
            "required_changes": [],
        })
    workflow["submitted_at"] = pu.submitted_at

    return replace(
        _unchanged(snap),
        workflow=workflow,
        pending_update=pu,
        price_history=price_history,
        queue=QueueAction(
            kind="ensure",
            priority=_flag_priority(snap.flags),
            submission_type=SubmissionType.UPDATE,
        ),
        event_type="listing.update_submitted",
        event_payload={
            "listing_id": snap.listing_id,
            "fields": [e.field for e in acc.new_entries],
            "changes_count": len(pu.changes),
        },
        changed=True,
    )


def _withdraw_update(snap: ListingSnapshot, ev: Edit, acc: Accumulated, now: str) -> Transition:
    # every pending field is back to its published value: the review request goes away
    workflow = {**snap.workflow, "status": WorkflowStatus.APPROVED.value, "assigned_reviewer": None, "required_changes": []}
    return replace(
        _unchanged(snap),
        workflow=workflow,
        pending_update=None,
        price_history=_price_reverted(snap, ev.actor_id, now, "pending_update_withdrawn"),
        queue=QueueAction(kind="resolve", resolution="withdrawn"),
        event_type="listing.update_withdrawn",
        event_payload={
            "listing_id": snap.listing_id,
            "fields": [e.field for e in acc.new_entries],
            "changes_count": 0,
        },
        changed=True,
    )


def _resubmit(snap: ListingSnapshot, ev: Edit, now: str) -> Transition:
    if ev.risk is None:
        raise ValueError("resubmission requires a risk assessment")

    published, price_history = _apply_direct(snap, ev.changes, ev.actor_id, now)
    changed_fields = [k for k in ev.changes if snap.published.get(k) != ev.changes[k]]
    status = ListingStatus.PENDING_REVIEW
    risk = ev.risk

    workflow = {
        **snap.workflow,
        "status": WorkflowStatus.PENDING.value,
        "assigned_reviewer": None,
        "submission_type": SubmissionType.RESUBMISSION.value,
        "previous_review_count": int(snap.workflow.get("previous_review_count", 0)) + 1,
        "last_required_changes": list(snap.workflow.get("required_changes") or []),
        "required_changes": [],
        "submitted_at": now,
        "risk_score": risk.score,
        "risk_severity": risk.severity,
    }
    flags = _set_flag_status(snap.flags, "superseded", now, source="content_scanner") + list(risk.flags)

    return Transition(
        from_status=snap.status,
        status=status,
        published=published,
        workflow=workflow,
        pending_update=None,
        price_history=price_history,
        moderation_history=[*snap.moderation_history, _history_entry("resubmit", ev.actor_id, now, snap.status, status)],
        flags=flags,
        queue=QueueAction(
            kind="enqueue",
            priority=QueuePriority(risk.priority),
            submission_type=SubmissionType.RESUBMISSION,
            escalated=risk.escalate,
            flags=risk.flags,
        ),
        event_type="listing.resubmitted",
        event_payload={
            "listing_id": snap.listing_id,
            "previous_review_count": workflow["previous_review_count"],
            "fields": changed_fields,
            "changes_count": len(changed_fields),
            "risk_severity": risk.severity,
            **_title_payload(snap.published, published),
        },
    )


def _decide_claim(snap: ListingSnapshot, ev: Claim, now: str) -> Transition:
    if snap.status == ListingStatus.PENDING_REVIEW:
        status = ListingStatus.UNDER_REVIEW
        workflow = {**snap.workflow, "status": WorkflowStatus.IN_REVIEW.value, "assigned_reviewer": ev.moderator_id}
        return replace(
            _unchanged(snap),
            status=status,
            workflow=workflow,
            moderation_history=[*snap.moderation_history, _history_entry("claim", ev.moderator_id, now, snap.status, status)],
            queue=QueueAction(kind="claim"),
            event_type="listing.review_started",
            event_payload={"listing_id": snap.listing_id, "moderator_id": ev.moderator_id},
            changed=True,
        )

    if snap.status == ListingStatus.ACTIVE and snap.pending_update is not None:
        # update review: listing stays live, only the reviewer is recorded
        workflow = {**snap.workflow, "status": WorkflowStatus.IN_REVIEW.value, "assigned_reviewer": ev.moderator_id}
        return replace(_unchanged(snap), workflow=workflow, queue=QueueAction(kind="claim"), changed=True)

    if (
        snap.status == ListingStatus.UNDER_REVIEW
        and snap.workflow_status == WorkflowStatus.IN_REVIEW.value
        and snap.workflow.get("assigned_reviewer") == ev.moderator_id
    ):
        return _unchanged(snap)

    raise _invalid(snap, "claim")


def _validate_decision(ev: ModeratorDecision) -> None:
    if ev.decision == Decision.REJECT and not (ev.notes or "").strip():
        raise ValidationError("A rejection reason is required", details=[{"field": "notes"}])
    if ev.decision == Decision.REQUEST_CHANGES and not [c for c in ev.required_changes if c.strip()]:
        raise ValidationError("At least one required change must be listed", details=[{"field": "required_changes"}])


def _reviewed_workflow(snap: ListingSnapshot, ev: ModeratorDecision, status: WorkflowStatus, now: str) -> dict[str, Any]:
    wf = {
        **snap.workflow,
        "status": status.value,
        "assigned_reviewer": snap.workflow.get("assigned_reviewer") or ev.moderator_id,
        "reviewed_by": ev.moderator_id,
        "reviewed_at": now,
        "notes": ev.notes,
    }
    if status == WorkflowStatus.CHANGES_REQUESTED:
        wf["required_changes"] = [c for c in ev.required_changes if c.strip()]
    else:
        wf["required_changes"] = []
    if status == WorkflowStatus.REJECTED:
        wf["rejection_reason"] = ev.notes
    return wf


def _decide_review(snap: ListingSnapshot, ev: ModeratorDecision, now: str) -> Transition:
    """Initial / resubmission review of a listing that is not yet public."""
    base = _unchanged(snap)
    history = list(snap.moderation_history)
    payload = {"listing_id": snap.listing_id, "owner_id": snap.owner_id, "moderator_id": ev.moderator_id, "notes": ev.notes}

    if ev.decision == Decision.APPROVE:
        status = ListingStatus.ACTIVE
        published = dict(snap.published)
        if snap.pending_update is not None:
            published.update(snap.pending_update.changes)
        return replace(
            base,
            status=status,
            published=published,
            pending_update=None,
            workflow=_reviewed_workflow(snap, ev, WorkflowStatus.APPROVED, now),
            moderation_history=[*history, _history_entry("approve", ev.moderator_id, now, snap.status, status, ev.notes)],
            flags=_set_flag_status(snap.flags, "cleared", now),
            queue=QueueAction(kind="resolve", resolution="approved"),
            event_type="listing.approved",
            event_payload={**payload, **_title_payload(snap.published, published)},
            changed=True,
        )

    if ev.decision == Decision.REJECT:
        status = ListingStatus.REJECTED
        return replace(
            base,
            status=status,
            pending_update=None,
            workflow=_reviewed_workflow(snap, ev, WorkflowStatus.REJECTED, now),
            moderation_history=[*history, _history_entry("reject", ev.moderator_id, now, snap.status, status, ev.notes)],
            flags=_set_flag_status(snap.flags, "confirmed", now),
            queue=QueueAction(kind="resolve", resolution="rejected"),
            event_type="listing.rejected",
            event_payload=payload,
            changed=True,
        )

    status = ListingStatus.UNDER_REVIEW
    workflow = _reviewed_workflow(snap, ev, WorkflowStatus.CHANGES_REQUESTED, now)
    return replace(
        base,
        status=status,
        workflow=workflow,
        moderation_history=[*history, _history_entry("request_changes", ev.moderator_id, now, snap.status, status, ev.notes)],
        queue=QueueAction(kind="resolve", resolution="changes_requested"),
        event_type="listing.changes_requested",
        event_payload={**payload, "required_changes": workflow["required_changes"]},
        changed=True,
    )


def _decide_update_review(snap: ListingSnapshot, ev: ModeratorDecision, now: str) -> Transition:
    """Review of a pending update on a live listing; the listing stays active."""
    if snap.pending_update is None:
        raise _invalid(snap, "review an update of")
    base = _unchanged(snap)
    status = ListingStatus.ACTIVE
    history = list(snap.moderation_history)
    payload = {
        "listing_id": snap.listing_id,
        "owner_id": snap.owner_id,
        "moderator_id": ev.moderator_id,
        "notes": ev.notes,
        "fields": sorted(snap.pending_update.changes),
    }

    if ev.decision == Decision.APPROVE:
        published = {**snap.published, **snap.pending_update.changes}
        return replace(
            base,
            published=published,
            pending_update=None,
            workflow=_reviewed_workflow(snap, ev, WorkflowStatus.APPROVED, now),
            moderation_history=[*history, _history_entry("approve_update", ev.moderator_id, now, snap.status, status, ev.notes)],
            queue=QueueAction(kind="resolve", resolution="approved"),
            event_type="listing.update_approved",
            event_payload={**payload, **_title_payload(snap.published, published)},
            changed=True,
        )

    if ev.decision == Decision.REJECT:
        return replace(
            base,
            pending_update=None,
            price_history=_price_reverted(snap, ev.moderator_id, now, "pending_update_rejected"),
            workflow=_reviewed_workflow(snap, ev, WorkflowStatus.REJECTED, now),
            moderation_history=[*history, _history_entry("reject_update", ev.moderator_id, now, snap.status, status, ev.notes)],
            queue=QueueAction(kind="resolve", resolution="rejected"),
            event_type="listing.update_rejected",
            event_payload=payload,
            changed=True,
        )

    workflow = _reviewed_workflow(snap, ev, WorkflowStatus.CHANGES_REQUESTED, now)
    return replace(
        base,
        pending_update=None,
        price_history=_price_reverted(snap, ev.moderator_id, now, "pending_update_returned"),
        workflow=workflow,
        moderation_history=[*history, _history_entry("request_update_changes", ev.moderator_id, now, snap.status, status, ev.notes)],
        queue=QueueAction(kind="resolve", resolution="changes_requested"),
        event_type="listing.update_changes_requested",
        event_payload={**payload, "required_changes": workflow["required_changes"]},
        changed=True,
    )


def _decide_moderation(snap: ListingSnapshot, ev: ModeratorDecision, now: str) -> Transition:
    if snap.status in REVIEWABLE_STATUSES:
        _validate_decision(ev)
        return _decide_review(snap, ev, now)
    if snap.status == ListingStatus.ACTIVE and snap.pending_update is not None:
        _validate_decision(ev)
        return _decide_update_review(snap, ev, now)
    raise _invalid(snap, f"{ev.decision.value.replace('_', ' ')}")


def _take_down(snap: ListingSnapshot, actor: str, now: str, status: ListingStatus, action: str, event_type: str) -> Transition:
    if snap.status != ListingStatus.ACTIVE:
        raise _invalid(snap, action.replace("_", " "))
    price_history = list(snap.price_history)
    queue = NO_QUEUE_ACTION
    if snap.pending_update is not None:
        price_history = _price_reverted(snap, actor, now, "pending_update_withdrawn")
        queue = QueueAction(kind="resolve", resolution="withdrawn")
    return replace(
        _unchanged(snap),
        status=status,
        pending_update=None,
        price_history=price_history,
        moderation_history=[*snap.moderation_history, _history_entry(action, actor, now, snap.status, status)],
        queue=queue,
        event_type=event_type,
        event_payload={"listing_id": snap.listing_id, "owner_id": snap.owner_id},
        changed=True,
    )


def _has_open_review(snap: ListingSnapshot) -> bool:
    if snap.status == ListingStatus.PENDING_REVIEW or snap.pending_update is not None:
        return True
    return snap.status == ListingStatus.UNDER_REVIEW and snap.workflow_status == WorkflowStatus.IN_REVIEW.value


def _delete(snap: ListingSnapshot, ev: Delete, now: str) -> Transition:
    if snap.status == ListingStatus.DELETED:
        raise _invalid(snap, "delete")
    status = ListingStatus.DELETED
    price_history = list(snap.price_history)
    if snap.pending_update is not None:
        price_history = _price_reverted(snap, ev.actor_id, now, "pending_update_withdrawn")
    queue = QueueAction(kind="resolve", resolution="withdrawn") if _has_open_review(snap) else NO_QUEUE_ACTION
    return replace(
        _unchanged(snap),
        status=status,
        pending_update=None,
        price_history=price_history,
        moderation_history=[*snap.moderation_history, _history_entry("delete", ev.actor_id, now, snap.status, status)],
        queue=queue,
        event_type="listing.deleted",
        event_payload={"listing_id": snap.listing_id, "owner_id": snap.owner_id, "previous_status": snap.status.value},
        changed=True,
    )


def decide(snap: ListingSnapshot, event: Any, *, now: str) -> Transition:
    if isinstance(event, Edit):
        return _decide_edit(snap, event, now)
    if isinstance(event, ModeratorDecision):
        return _decide_moderation(snap, event, now)
    if isinstance(event, Claim):
        return _decide_claim(snap, event, now)
    if isinstance(event, MarkSold):
        return _take_down(snap, event.actor_id, now, ListingStatus.SOLD, "mark_sold", "listing.sold")
    if isinstance(event, Expire):
        return _take_down(snap, event.actor_id, now, ListingStatus.EXPIRED, "expire", "listing.expired")
    if isinstance(event, Delete):
        return _delete(snap, event, now)
    if isinstance(event, Create):
        raise _invalid(snap, "create")
    raise TypeError(f"unsupported event: {type(event).__name__}")
