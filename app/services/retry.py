from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from sqlalchemy.exc import IntegrityError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from app.core.config import settings
from app.core.errors import ConflictError, DomainError, StorageError


log = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff_seconds(attempt: int, base: float | None = None, cap: float | None = None) -> float:
    # exponential backoff with jitter
    base = settings.storage_retry_base_seconds if base is None else base
    cap = settings.storage_retry_cap_seconds if cap is None else cap
    exp = min(cap, base * (2 ** max(0, attempt - 1)))
    jitter = random.uniform(0, exp / 3)
    return exp + jitter


async def run_unit_of_work(
    db: AsyncSession,
    work: Callable[[], Awaitable[T]],
    *,
    op: str,
    attempts: int | None = None,
) -> T:
    """
    Run one read-decide-write unit. `work` must re-read what it mutates, because a
    retry starts over from a rolled back session.

    - domain errors propagate untouched (after rollback)
    - version mismatch / unique races -> ConflictError (never retried here)
    - transient storage failures -> retried with backoff, then StorageError
    """
    attempts = attempts or settings.storage_retry_attempts
    for attempt in range(1, attempts + 1):
        try:
            return await work()
        except DomainError:
            await db.rollback()
            raise
        except StaleDataError as e:
            await db.rollback()
            log.info("%s: version conflict: %s", op, e)
            raise ConflictError() from e
        except IntegrityError as e:
            await db.rollback()
            log.info("%s: integrity conflict: %s", op, e.orig)
            raise ConflictError("Conflicting write detected; refresh and retry") from e
        except (OperationalError, InterfaceError) as e:
            await db.rollback()
            if attempt >= attempts:
                log.exception("%s: storage failure after %d attempts", op, attempt)
                raise StorageError() from e
            delay = compute_backoff_seconds(attempt)
            log.warning("%s: transient storage failure (attempt %d/%d), retrying in %.3fs", op, attempt, attempts, delay)
            await asyncio.sleep(delay)

    raise StorageError()
