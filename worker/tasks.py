import asyncio
import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.sql import func

from worker.celery_app import celery
from app.core.config import settings
import app.models  # noqa: F401  # ensures Models are registered
from app.models.outbox import OutboxEvent
from app.services import listings as listing_service
from app.services import moderation_queue
from app.services.event_sink import EventSinkClient, event_envelope


log = logging.getLogger(__name__)

MAX_DELIVERY_ATTEMPTS = 8


async def _deliver_event(outbox_id: str, lease_id: str, *, session_factory=None, client: EventSinkClient | None = None) -> str:
    """
    Deliver one leased outbox event to every configured sink.
    Returns the resulting outbox status ("done", "pending", "failed") or "skipped"
    when the lease was lost.
    """
    engine = None
    if session_factory is None:
        engine = create_async_engine(settings.database_url, pool_pre_ping=True)
        session_factory = async_sessionmaker(engine, expire_on_commit=False)
    own_client = client is None
    client = client or EventSinkClient()

    try:
        async with session_factory() as db:
            ev = (await db.execute(select(OutboxEvent).where(OutboxEvent.id == outbox_id))).scalar_one_or_none()
            # another dispatcher reclaimed it, or it is already done
            if not ev or ev.lease_id != lease_id or ev.status != "processing":
                return "skipped"

            results = await client.deliver_all(list(settings.event_sink_urls), event_envelope(ev))
            failures = [r for r in results if not r.ok]

            if not failures:
                values = dict(status="done", processed_at=func.now(), lease_id=None, lease_expires_at=None, last_error=None)
            else:
                retry = any(r.retryable for r in failures) and ev.attempts < MAX_DELIVERY_ATTEMPTS
                values = dict(
                    status="pending" if retry else "failed",
                    lease_id=None,
                    lease_expires_at=None,
                    processing_started_at=None,
                    last_error="; ".join(f"{r.url}: {r.error}" for r in failures)[:2000],
                )
                log.warning("deliver_event: %s %s failed on %d sink(s)", outbox_id, ev.event_type, len(failures))

            # only the lease holder may settle the event
            result = await db.execute(
                update(OutboxEvent)
                .where(OutboxEvent.id == outbox_id, OutboxEvent.lease_id == lease_id)
                .values(**values)
            )
            if result.rowcount == 0:
                await db.rollback()
                return "skipped"
            await db.commit()
            return values["status"]
    finally:
        if own_client:
            await client.aclose()
        if engine is not None:
            await engine.dispose()


async def _escalate_stale(*, session_factory=None, now: datetime | None = None) -> int:
    engine = None
    if session_factory is None:
        engine = create_async_engine(settings.database_url, pool_pre_ping=True)
        session_factory = async_sessionmaker(engine, expire_on_commit=False)
    now = now or datetime.now(timezone.utc)
    try:
        async with session_factory() as db:
            n = await moderation_queue.escalate_stale(db, older_than=now - timedelta(hours=settings.queue_escalation_hours))
            await db.commit()
            log.info("escalate_stale: escalated %d queue entries", n)
            return n
    finally:
        if engine is not None:
            await engine.dispose()


async def _expire_stale(*, session_factory=None, now: datetime | None = None) -> int:
    engine = None
    if session_factory is None:
        engine = create_async_engine(settings.database_url, pool_pre_ping=True)
        session_factory = async_sessionmaker(engine, expire_on_commit=False)
    now = now or datetime.now(timezone.utc)
    try:
        async with session_factory() as db:
            n = await listing_service.expire_stale_listings(db, older_than=now - timedelta(days=settings.listing_ttl_days))
            log.info("expire_stale: expired %d listings", n)
            return n
    finally:
        if engine is not None:
            await engine.dispose()


@celery.task(name="worker.tasks.deliver_event", bind=True, max_retries=5)
def deliver_event(self, outbox_id: str, lease_id: str) -> str:
    try:
        return asyncio.run(_deliver_event(outbox_id, lease_id))
    except Exception:
        log.exception("deliver_event: %s crashed", outbox_id)
        raise


@celery.task(name="worker.tasks.escalate_stale_queue_entries")
def escalate_stale_queue_entries() -> int:
    return asyncio.run(_escalate_stale())


@celery.task(name="worker.tasks.expire_stale_listings")
def expire_stale_listings() -> int:
    return asyncio.run(_expire_stale())
