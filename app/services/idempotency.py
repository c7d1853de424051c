"""
Idempotency keys for listing creation.

A key is reserved inside the creating transaction, so the reservation and the
listing commit (or roll back) together. A replay with the same key and body gets
the stored response; the same key with a different body is a conflict.
"""
import hashlib
import json
import re
from datetime import datetime, timezone

from fastapi import Header
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.errors import ConflictError, ValidationError
from app.models.idempotency import IdempotencyKey
from app.services.auth import Actor

KEY_MAX_LENGTH = 200
_KEY_RE = re.compile(r"^[\x21-\x7e]+$")

STATUS_IN_PROGRESS = "in_progress"
STATUS_COMPLETED = "completed"


def request_fingerprint(path: str, body: dict) -> str:
    raw = json.dumps({"path": path, "body": body}, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")
    return "sha256:" + hashlib.sha256(raw).hexdigest()


async def require_idempotency_key(idempotency_key: str | None = Header(default=None)) -> str:
    if not idempotency_key:
        raise ValidationError("Missing Idempotency-Key header", details=[{"field": "Idempotency-Key"}])
    if len(idempotency_key) > KEY_MAX_LENGTH or not _KEY_RE.match(idempotency_key):
        raise ValidationError("Idempotency-Key must be 1-200 printable characters", details=[{"field": "Idempotency-Key"}])
    return idempotency_key


async def _find(db: AsyncSession, actor: Actor, key: str) -> IdempotencyKey | None:
    stmt = select(IdempotencyKey).where(IdempotencyKey.actor_id == actor.actor_id, IdempotencyKey.key == key)
    return (await db.execute(stmt)).scalar_one_or_none()


async def reserve_or_replay(
    *,
    db: AsyncSession,
    actor: Actor,
    idempotency_key: str,
    request_path: str,
    request_body: dict,
) -> dict | None:
    """
    Stored response for a completed replay, or None once the key is reserved for
    this request. The unique (actor_id, key) constraint turns a concurrent
    reservation into an IntegrityError at flush.
    """
    fingerprint = request_fingerprint(request_path, request_body)

    existing = await _find(db, actor, idempotency_key)
    if existing is not None:
        if existing.request_hash != fingerprint:
            raise ConflictError("Idempotency-Key reuse with different request")
        if existing.status != STATUS_COMPLETED:
            raise ConflictError("A request with this Idempotency-Key is still in progress")
        return dict(existing.response)

    db.add(IdempotencyKey(
        actor_id=actor.actor_id,
        key=idempotency_key,
        request_hash=fingerprint,
        status=STATUS_IN_PROGRESS,
        response={},
    ))
    await db.flush()
    return None


async def complete(
    *,
    db: AsyncSession,
    actor: Actor,
    idempotency_key: str,
    listing_id: str,
    response: dict,
) -> None:
    row = await _find(db, actor, idempotency_key)
    if row is None:
        raise ConflictError("Idempotency-Key reservation disappeared")
    row.status = STATUS_COMPLETED
    row.listing_id = listing_id
    row.response = response
    row.completed_at = datetime.now(timezone.utc)
    await db.flush()
