from datetime import datetime, timedelta, timezone

import httpx
import pytest
from sqlalchemy import select

from app.core.config import settings
from app.models.moderation_queue import ModerationQueueEntry
from app.models.outbox import OutboxEvent
from app.services import outbox_dispatcher
from app.services.event_sink import EventSinkClient
from worker.tasks import MAX_DELIVERY_ATTEMPTS, _deliver_event, _escalate_stale, _expire_stale

from fixtures_seed import moderator

SINKS = ["https://notify.example.com/events", "https://analytics.example.com/events"]


@pytest.fixture
def sent(monkeypatch):
    calls: list[tuple[str, str]] = []
    monkeypatch.setattr(outbox_dispatcher, "_send", lambda outbox_id, lease_id: calls.append((outbox_id, lease_id)))
    return calls


@pytest.fixture
def sinks(monkeypatch):
    monkeypatch.setattr(settings, "event_sink_urls", list(SINKS))


def sink_client(status_for_url: dict[str, int] | None = None, seen: list | None = None) -> EventSinkClient:
    def handler(request: httpx.Request) -> httpx.Response:
        if seen is not None:
            seen.append(request)
        return httpx.Response((status_for_url or {}).get(str(request.url), 200), text="nope")

    return EventSinkClient(transport=httpx.MockTransport(handler))


async def _add_events(session_factory, n: int, **values) -> list[str]:
    async with session_factory() as db:
        rows = [
            OutboxEvent(
                aggregate_type="listing",
                aggregate_id=f"lst_{i}",
                event_type="listing.approved",
                payload={"listing_id": f"lst_{i}"},
                created_by="usr_mod_1",
                **values,
            )
            for i in range(n)
        ]
        db.add_all(rows)
        await db.commit()
        return [r.id for r in rows]


async def _events(session_factory) -> dict[str, OutboxEvent]:
    async with session_factory() as db:
        rows = (await db.execute(select(OutboxEvent))).scalars().all()
        return {r.id: r for r in rows}


async def test_dispatch_leases_a_batch_and_enqueues_it(session_factory, sent):
    await _add_events(session_factory, 3)

    async with session_factory() as db:
        assert await outbox_dispatcher.dispatch_outbox(db, batch_size=2, lease_minutes=5) == 2

    events = await _events(session_factory)
    leased = [e for e in events.values() if e.status == "processing"]
    assert len(leased) == 2
    assert {e.id for e in leased} == {outbox_id for outbox_id, _ in sent}
    assert len({e.lease_id for e in leased}) == 1
    assert all(e.attempts == 1 for e in leased)
    assert [e.status for e in events.values()].count("pending") == 1


async def test_dispatch_with_nothing_pending(db_session, sent):
    assert await outbox_dispatcher.dispatch_outbox(db_session) == 0
    assert sent == []


async def test_enqueue_failure_returns_events_to_pending(session_factory, monkeypatch):
    await _add_events(session_factory, 2)

    def broker_down(outbox_id, lease_id):
        raise ConnectionError("broker unreachable")

    monkeypatch.setattr(outbox_dispatcher, "_send", broker_down)
    async with session_factory() as db:
        assert await outbox_dispatcher.dispatch_outbox(db) == 0

    for ev in (await _events(session_factory)).values():
        assert ev.status == "pending"
        assert ev.lease_id is None
        assert ev.last_error.startswith("enqueue failed: ConnectionError")


async def test_expired_lease_is_requeued_and_redispatched(session_factory, sent):
    past = datetime.now(timezone.utc) - timedelta(minutes=1)
    [stuck] = await _add_events(session_factory, 1, status="processing", lease_id="old-lease", lease_expires_at=past, attempts=1)

    async with session_factory() as db:
        assert await outbox_dispatcher.dispatch_outbox(db) == 1

    ev = (await _events(session_factory))[stuck]
    assert ev.status == "processing"
    assert ev.lease_id != "old-lease"
    assert ev.attempts == 2
    assert sent == [(stuck, ev.lease_id)]


async def test_deliver_marks_done_when_every_sink_accepts(session_factory, sinks):
    [oid] = await _add_events(session_factory, 1, status="processing", lease_id="L1", attempts=1)
    seen: list[httpx.Request] = []

    status = await _deliver_event(oid, "L1", session_factory=session_factory, client=sink_client(seen=seen))

    assert status == "done"
    assert [str(r.url) for r in seen] == SINKS
    assert seen[0].headers["X-Event-Type"] == "listing.approved"
    ev = (await _events(session_factory))[oid]
    assert ev.status == "done"
    assert ev.lease_id is None


async def test_deliver_retryable_failure_goes_back_to_pending(session_factory, sinks):
    [oid] = await _add_events(session_factory, 1, status="processing", lease_id="L1", attempts=1)

    status = await _deliver_event(oid, "L1", session_factory=session_factory, client=sink_client({SINKS[1]: 503}))

    assert status == "pending"
    ev = (await _events(session_factory))[oid]
    assert ev.status == "pending"
    assert SINKS[1] in ev.last_error
    assert "HTTP 503" in ev.last_error


@pytest.mark.parametrize(
    "code, attempts",
    [(400, 1), (503, MAX_DELIVERY_ATTEMPTS)],
)
async def test_deliver_gives_up_on_permanent_or_exhausted_failures(session_factory, sinks, code, attempts):
    [oid] = await _add_events(session_factory, 1, status="processing", lease_id="L1", attempts=attempts)

    status = await _deliver_event(oid, "L1", session_factory=session_factory, client=sink_client({SINKS[0]: code}))

    assert status == "failed"
    assert (await _events(session_factory))[oid].status == "failed"


async def test_deliver_skips_when_lease_was_lost(session_factory, sinks):
    [oid] = await _add_events(session_factory, 1, status="processing", lease_id="L2", attempts=1)
    seen: list[httpx.Request] = []

    status = await _deliver_event(oid, "L1", session_factory=session_factory, client=sink_client(seen=seen))

    assert status == "skipped"
    assert seen == []
    assert (await _events(session_factory))[oid].status == "processing"


async def test_internal_dispatch_requires_admin_key(client, api, sent):
    await api.created()

    r = await client.post("/internal/outbox/dispatch")
    assert r.status_code == 403
    r = await client.post("/internal/outbox/dispatch", headers={"X-Internal-Admin-Key": "wrong"})
    assert r.status_code == 403

    r = await client.post("/internal/outbox/dispatch", headers={"X-Internal-Admin-Key": "test-internal"})
    assert r.status_code == 200
    assert r.json()["dispatched"] == len(sent) >= 1


async def test_escalation_sweep_marks_old_queue_entries(api, session_factory):
    created = await api.created()

    assert await _escalate_stale(session_factory=session_factory) == 0
    later = datetime.now(timezone.utc) + timedelta(hours=settings.queue_escalation_hours + 1)
    assert await _escalate_stale(session_factory=session_factory, now=later) == 1

    async with session_factory() as db:
        entry = (await db.execute(
            select(ModerationQueueEntry).where(ModerationQueueEntry.listing_id == created["listing_id"])
        )).scalar_one()
    assert entry.escalated
    assert entry.priority == "urgent"


async def test_expiry_sweep_expires_old_active_listings(api, session_factory, active_listing):
    pending = await api.created(title="Grady White Freedom 255")

    assert await _expire_stale(session_factory=session_factory) == 0
    later = datetime.now(timezone.utc) + timedelta(days=settings.listing_ttl_days + 1)
    assert await _expire_stale(session_factory=session_factory, now=later) == 1

    detail = await api.detail(active_listing["listing_id"])
    assert detail["status"] == "expired"
    assert detail["moderation_history"][-1]["action"] == "expire"
    assert (await api.get(active_listing["listing_id"])).status_code == 404
    assert (await api.detail(pending["listing_id"], moderator()))["status"] == "pending_review"
