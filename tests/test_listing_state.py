import itertools

import pytest

from app.core.errors import InvalidStateError, ValidationError
from app.services.content_scanner import RiskAssessment
from app.services.listing_state import (
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
    PUBLISHED_FIELDS,
    QueuePriority,
    SubmissionType,
    WorkflowStatus,
    decide,
    decide_create,
)
from app.services.listing_state import _decide_update_review

NOW = "2026-05-01T12:00:00+00:00"
OWNER = "usr_owner"
MOD = "usr_mod"
CLEAN = RiskAssessment(severity="low", score=0, priority="standard", raise_flag=False, escalate=False)
RISKY = RiskAssessment(
    severity="high",
    score=80,
    priority="urgent",
    raise_flag=True,
    escalate=True,
    flags=({"type": "prohibited", "severity": "high", "status": "open", "source": "content_scanner"},),
)
FIELDS = {
    "title": "Catalina 30 Sailboat",
    "description": "Classic cruiser with new sails and a rebuilt diesel.",
    "price": 24000,
    "year": 1986,
    "location": {"city": "Annapolis", "state": "MD"},
    "boat_details": {"type": "sailboat"},
    "images": [],
    "features": ["Wheel steering"],
}


def apply(snap: ListingSnapshot | None, t) -> ListingSnapshot:
    return ListingSnapshot(
        listing_id=snap.listing_id if snap else "lst_1",
        owner_id=OWNER,
        status=t.status,
        published=t.published,
        workflow=t.workflow,
        pending_update=t.pending_update,
        price_history=t.price_history,
        moderation_history=t.moderation_history,
        flags=t.flags,
    )


def created(risk: RiskAssessment = CLEAN) -> ListingSnapshot:
    return apply(None, decide_create("lst_1", Create(owner_id=OWNER, fields=FIELDS, risk=risk), now=NOW))


def step(snap: ListingSnapshot, event) -> ListingSnapshot:
    return apply(snap, decide(snap, event, now=NOW))


def approve(moderator: str = MOD) -> ModeratorDecision:
    return ModeratorDecision(moderator_id=moderator, decision=Decision.APPROVE)


def reject(notes: str = "Photos do not match the boat") -> ModeratorDecision:
    return ModeratorDecision(moderator_id=MOD, decision=Decision.REJECT, notes=notes)


def request_changes(*changes: str) -> ModeratorDecision:
    return ModeratorDecision(
        moderator_id=MOD, decision=Decision.REQUEST_CHANGES, notes="fix", required_changes=changes or ("Add hull photos",)
    )


def active() -> ListingSnapshot:
    return step(created(), approve())


def test_create_enqueues_initial_review():
    t = decide_create("lst_1", Create(owner_id=OWNER, fields={**FIELDS, "junk": 1}, risk=CLEAN), now=NOW)
    assert t.status == ListingStatus.PENDING_REVIEW
    assert set(t.published) == set(PUBLISHED_FIELDS)
    assert t.workflow["status"] == WorkflowStatus.PENDING.value
    assert t.workflow["previous_review_count"] == 0
    assert t.queue.kind == "enqueue"
    assert t.queue.priority == QueuePriority.STANDARD
    assert t.queue.submission_type == SubmissionType.INITIAL
    assert t.event_type == "listing.submitted"
    assert t.price_history[0]["reason"] == "initial_listing"


def test_risky_create_is_queued_urgent_and_flagged():
    t = decide_create("lst_1", Create(owner_id=OWNER, fields=FIELDS, risk=RISKY), now=NOW)
    assert t.status == ListingStatus.PENDING_REVIEW
    assert t.queue.priority == QueuePriority.URGENT
    assert t.queue.escalated
    assert [f["type"] for f in t.flags] == ["prohibited"]


@pytest.mark.parametrize(
    "setup, event, status, workflow_status, queue_kind",
    [
        (created, Claim(MOD), ListingStatus.UNDER_REVIEW, "in_review", "claim"),
        (created, approve(), ListingStatus.ACTIVE, "approved", "resolve"),
        (created, reject(), ListingStatus.REJECTED, "rejected", "resolve"),
        (created, request_changes(), ListingStatus.UNDER_REVIEW, "changes_requested", "resolve"),
        (active, MarkSold(OWNER), ListingStatus.SOLD, "approved", "none"),
        (active, Expire(), ListingStatus.EXPIRED, "approved", "none"),
        (active, Edit(OWNER, {"price": 23000}), ListingStatus.ACTIVE, "pending", "ensure"),
        (created, Edit(OWNER, {"price": 23000}), ListingStatus.PENDING_REVIEW, "pending", "none"),
    ],
)
def test_transition_table(setup, event, status, workflow_status, queue_kind):
    t = decide(setup(), event, now=NOW)
    assert t.changed
    assert t.status == status
    assert t.workflow["status"] == workflow_status
    assert t.queue.kind == queue_kind


@pytest.mark.parametrize(
    "setup, event",
    [
        (lambda: step(created(), reject()), approve()),
        (lambda: step(created(), reject()), Claim(MOD)),
        (lambda: step(active(), MarkSold(OWNER)), Edit(OWNER, {"price": 1})),
        (lambda: step(active(), MarkSold(OWNER)), MarkSold(OWNER)),
        (lambda: step(active(), Expire()), approve()),
        (active, approve()),
        (active, Claim(MOD)),
        (created, MarkSold(OWNER)),
        (created, Expire()),
        (lambda: step(created(), Claim(MOD)), Claim("usr_other_mod")),
        (lambda: step(created(), request_changes()), Claim(MOD)),
        (active, Create(owner_id=OWNER, fields=FIELDS, risk=CLEAN)),
    ],
)
def test_illegal_transitions_raise(setup, event):
    snap = setup()
    with pytest.raises(InvalidStateError) as exc:
        decide(snap, event, now=NOW)
    assert exc.value.current_state == snap.status.value


def test_reclaim_by_same_moderator_is_a_noop():
    snap = step(created(), Claim(MOD))
    assert decide(snap, Claim(MOD), now=NOW).changed is False


def test_reject_requires_reason_and_request_changes_requires_items():
    with pytest.raises(ValidationError):
        decide(created(), reject(notes="  "), now=NOW)
    with pytest.raises(ValidationError):
        decide(created(), request_changes("   "), now=NOW)


def test_resubmission_bumps_review_count_and_requeues():
    snap = step(created(), request_changes("Add engine hours"))
    assert snap.awaiting_resubmission

    t = decide(snap, Edit(OWNER, {"description": "Engine hours: 1200. New sails."}, risk=CLEAN), now=NOW)
    assert t.status == ListingStatus.PENDING_REVIEW
    assert t.workflow["submission_type"] == SubmissionType.RESUBMISSION.value
    assert t.workflow["previous_review_count"] == 1
    assert t.workflow["last_required_changes"] == ["Add engine hours"]
    assert t.queue.kind == "enqueue"
    assert t.published["description"] == "Engine hours: 1200. New sails."


def test_resubmission_without_risk_is_a_programming_error():
    snap = step(created(), request_changes())
    with pytest.raises(ValueError):
        decide(snap, Edit(OWNER, {"price": 1}), now=NOW)


def test_resubmission_supersedes_old_scanner_flags():
    snap = step(created(RISKY), request_changes())
    t = decide(snap, Edit(OWNER, {"description": "All clean now, honest."}, risk=CLEAN), now=NOW)
    assert [f["status"] for f in t.flags] == ["superseded"]


def test_edit_on_active_listing_accumulates_without_touching_published():
    snap = active()
    snap = step(snap, Edit(OWNER, {"price": 22000}))
    snap = step(snap, Edit(OWNER, {"title": "Catalina 30 Tall Rig"}))
    assert snap.status == ListingStatus.ACTIVE
    assert snap.published == FIELDS
    assert snap.pending_update.changes == {"price": 22000, "title": "Catalina 30 Tall Rig"}
    assert [h["price"] for h in snap.price_history] == [24000, 22000]


def test_identical_edit_on_active_listing_does_not_change_state():
    snap = step(active(), Edit(OWNER, {"price": 22000}))
    t = decide(snap, Edit(OWNER, {"price": 22000}), now=NOW)
    assert t.changed is False
    assert t.queue.kind == "none"


def test_edit_matching_published_values_is_a_noop():
    t = decide(active(), Edit(OWNER, {"price": FIELDS["price"]}), now=NOW)
    assert t.changed is False
    assert t.pending_update is None


def test_reverting_pending_update_to_published_withdraws_it():
    snap = step(active(), Edit(OWNER, {"price": 22000}))
    t = decide(snap, Edit(OWNER, {"price": FIELDS["price"]}), now=NOW)
    assert t.changed is True
    assert t.status == ListingStatus.ACTIVE
    assert t.pending_update is None
    assert t.changes_count == 0
    assert t.queue.kind == "resolve"
    assert t.queue.resolution == "withdrawn"
    assert t.event_type == "listing.update_withdrawn"
    assert t.workflow["status"] == WorkflowStatus.APPROVED.value
    assert t.price_history[-1]["price"] == FIELDS["price"]
    assert t.price_history[-1]["previous_price"] == 22000


def test_partial_revert_keeps_remaining_pending_fields():
    snap = step(active(), Edit(OWNER, {"price": 22000, "title": "Catalina 30 Tall Rig"}))
    t = decide(snap, Edit(OWNER, {"price": FIELDS["price"]}), now=NOW)
    assert t.pending_update.changes == {"title": "Catalina 30 Tall Rig"}
    assert t.queue.kind == "ensure"
    assert t.event_type == "listing.update_submitted"


def test_update_review_without_pending_update_is_invalid_state():
    with pytest.raises(InvalidStateError):
        _decide_update_review(active(), approve(), NOW)


def test_approving_update_publishes_changes_and_reports_old_title():
    snap = step(active(), Edit(OWNER, {"title": "Catalina 30 Tall Rig", "price": 22000}))
    t = decide(snap, approve(), now=NOW)
    assert t.status == ListingStatus.ACTIVE
    assert t.pending_update is None
    assert t.published["title"] == "Catalina 30 Tall Rig"
    assert t.published["price"] == 22000
    assert t.title_changed_from == FIELDS["title"]
    assert t.event_type == "listing.update_approved"


@pytest.mark.parametrize("decision", [reject(), request_changes()])
def test_declined_update_discards_changes_and_reverts_price(decision):
    snap = step(active(), Edit(OWNER, {"price": 22000}))
    t = decide(snap, decision, now=NOW)
    assert t.status == ListingStatus.ACTIVE
    assert t.pending_update is None
    assert t.published == FIELDS
    assert t.price_history[-1]["price"] == FIELDS["price"]
    assert t.price_history[-1]["previous_price"] == 22000


def test_selling_with_pending_update_withdraws_it():
    snap = step(active(), Edit(OWNER, {"price": 22000}))
    t = decide(snap, MarkSold(OWNER), now=NOW)
    assert t.status == ListingStatus.SOLD
    assert t.pending_update is None
    assert t.queue.kind == "resolve"
    assert t.queue.resolution == "withdrawn"


@pytest.mark.parametrize(
    "setup, queue_kind",
    [
        (lambda: created(), "resolve"),
        (lambda: step(created(), Claim(MOD)), "resolve"),
        (lambda: step(active(), Edit(OWNER, {"price": 22000})), "resolve"),
        (lambda: active(), "none"),
        (lambda: step(created(), request_changes()), "none"),
        (lambda: step(created(), reject()), "none"),
        (lambda: step(active(), MarkSold(OWNER)), "none"),
    ],
)
def test_delete_withdraws_open_review_only(setup, queue_kind):
    snap = setup()
    t = decide(snap, Delete(OWNER), now=NOW)
    assert t.status == ListingStatus.DELETED
    assert t.pending_update is None
    assert t.queue.kind == queue_kind
    assert t.event_type == "listing.deleted"
    assert t.event_payload["previous_status"] == snap.status.value


def test_deleted_listing_accepts_no_further_events():
    snap = step(active(), Delete(OWNER))
    for event in (Delete(OWNER), Edit(OWNER, {"price": 1}), Claim(MOD), approve(), MarkSold(OWNER), Expire()):
        with pytest.raises(InvalidStateError):
            decide(snap, event, now=NOW)


def test_direct_edit_on_rejected_listing_stays_rejected():
    snap = step(created(), reject())
    t = decide(snap, Edit(OWNER, {"price": 20000}), now=NOW)
    assert t.status == ListingStatus.REJECTED
    assert t.published["price"] == 20000
    assert t.queue.kind == "none"


def _events():
    return [
        Edit(OWNER, {"price": 21000}, risk=CLEAN),
        Edit(OWNER, {"title": "Catalina 30 MkII"}, risk=CLEAN),
        Claim(MOD),
        approve(),
        reject(),
        request_changes(),
        MarkSold(OWNER),
        Expire(),
        Delete(OWNER),
    ]


@pytest.mark.parametrize("length", [1, 2, 3, 4])
def test_event_sequences_keep_core_properties(length):
    events = _events()
    for seq in itertools.product(range(len(events)), repeat=length):
        snap = created()
        review_count = 0
        for i in seq:
            event = events[i]
            try:
                t = decide(snap, event, now=NOW)
            except InvalidStateError:
                continue
            if snap.status == ListingStatus.ACTIVE and isinstance(event, Edit):
                assert t.published == snap.published
            snap = apply(snap, t)

            if snap.pending_update is not None:
                assert snap.status == ListingStatus.ACTIVE
            count = snap.workflow["previous_review_count"]
            assert count >= review_count
            review_count = count
            if snap.status in (ListingStatus.SOLD, ListingStatus.EXPIRED, ListingStatus.DELETED):
                assert snap.pending_update is None
