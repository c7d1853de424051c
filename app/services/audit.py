from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit_log import AuditLog


async def audit(
    db: AsyncSession,
    *,
    actor_id: str | None,
    action: str,
    target_type: str | None = None,
    target_id: str | None = None,
    detail: dict[str, Any] | None = None,
) -> AuditLog:
    """Append an audit row in the caller's transaction."""
    row = AuditLog(
        actor_id=actor_id,
        action=action,
        target_type=target_type,
        target_id=target_id,
        detail=detail or {},
    )
    db.add(row)
    return row


async def audit_moderation_decision(
    db: AsyncSession,
    *,
    moderator_id: str,
    listing_id: str,
    decision: str,
    from_status: str | None,
    to_status: str,
    notes: str | None,
    required_changes: list[str] | None = None,
) -> AuditLog:
    detail: dict[str, Any] = {"from": from_status, "to": to_status, "notes": notes}
    if required_changes:
        detail["required_changes"] = list(required_changes)
    return await audit(
        db,
        actor_id=moderator_id,
        action=f"listing.moderate.{decision}",
        target_type="listing",
        target_id=listing_id,
        detail=detail,
    )
