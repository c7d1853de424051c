from app.models.base import Base  # noqa: F401

from app.models.listing import Listing  # noqa: F401
from app.models.moderation_queue import ModerationQueueEntry  # noqa: F401
from app.models.slug_redirect import SlugRedirect  # noqa: F401
from app.models.outbox import OutboxEvent  # noqa: F401
from app.models.audit_log import AuditLog  # noqa: F401
from app.models.idempotency import IdempotencyKey  # noqa: F401
