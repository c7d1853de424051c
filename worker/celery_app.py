from celery import Celery
from celery.signals import setup_logging as celery_setup_logging

from app.core.config import settings
from app.core.logging import setup_logging

celery = Celery(
    "listing-worker",
    broker=settings.rabbitmq_url,
    backend=settings.redis_url,
    include=["worker.tasks"],
)

celery.conf.update(
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_default_queue="default",
    task_routes={
        "worker.tasks.deliver_event": {"queue": "outbox"},
        "worker.tasks.escalate_stale_queue_entries": {"queue": "default"},
        "worker.tasks.expire_stale_listings": {"queue": "default"},
    },
    beat_schedule={
        "escalate-stale-queue-entries": {
            "task": "worker.tasks.escalate_stale_queue_entries",
            "schedule": 15 * 60.0,
        },
        "expire-stale-listings": {
            "task": "worker.tasks.expire_stale_listings",
            "schedule": 60 * 60.0,
        },
    },
)


@celery_setup_logging.connect
def _configure_worker_logging(**kwargs):
    # same format as the API instead of Celery's own handlers
    setup_logging()
