import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from app.core.config import settings
from app.core.logging import setup_logging
from app.services.outbox_dispatcher import dispatch_outbox
from worker.celery_app import celery


log = logging.getLogger(__name__)

POLL_SECONDS = 2


async def _tick(Session) -> int:
    async with Session() as db:
        return await dispatch_outbox(db, batch_size=settings.outbox_batch_size, lease_minutes=settings.outbox_lease_minutes)


async def main():
    setup_logging()
    celery.connection().ensure_connection(max_retries=3)

    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False)

    log.info("dispatcher: started")
    try:
        while True:
            try:
                n = await _tick(Session)
                if n:
                    log.info("dispatcher: enqueued %d events", n)
            except Exception:
                log.exception("dispatcher: tick crashed")
            await asyncio.sleep(POLL_SECONDS)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
