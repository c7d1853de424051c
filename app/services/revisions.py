"""
Revision accumulator: folds owner edits to a live listing into a single pending
update that waits for moderator approval.

All functions are pure; inputs are never mutated.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Mapping


@dataclass(frozen=True)
class FieldChange:
    field: str
    old_value: Any
    new_value: Any
    changed_at: str
    changed_by: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "changed_at": self.changed_at,
            "changed_by": self.changed_by,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "FieldChange":
        return cls(
            field=d["field"],
            old_value=d.get("old_value"),
            new_value=d.get("new_value"),
            changed_at=d["changed_at"],
            changed_by=d["changed_by"],
        )


@dataclass(frozen=True)
class PendingUpdate:
    changes: dict[str, Any]
    change_history: tuple[FieldChange, ...]
    submitted_at: str
    last_updated_at: str
    submitted_by: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "changes": dict(self.changes),
            "change_history": [c.to_dict() for c in self.change_history],
            "submitted_at": self.submitted_at,
            "last_updated_at": self.last_updated_at,
            "submitted_by": self.submitted_by,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any] | None) -> "PendingUpdate | None":
        if not d:
            return None
        return cls(
            changes=dict(d.get("changes") or {}),
            change_history=tuple(FieldChange.from_dict(c) for c in d.get("change_history") or []),
            submitted_at=d["submitted_at"],
            last_updated_at=d.get("last_updated_at") or d["submitted_at"],
            submitted_by=d.get("submitted_by") or "",
        )


@dataclass(frozen=True)
class PriceChange:
    price: float
    timestamp: str
    changed_by: str
    reason: str
    previous_price: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "price": self.price,
            "previous_price": self.previous_price,
            "timestamp": self.timestamp,
            "changed_by": self.changed_by,
            "reason": self.reason,
        }


@dataclass(frozen=True)
class Accumulated:
    # None once every pending change is back to its published value
    pending_update: PendingUpdate | None
    new_entries: tuple[FieldChange, ...] = field(default_factory=tuple)


def diff_fields(
    before: Mapping[str, Any],
    incoming: Mapping[str, Any],
    *,
    actor: str,
    now: str,
    fallback: Mapping[str, Any] | None = None,
) -> tuple[FieldChange, ...]:
    """
    One FieldChange per incoming field whose value differs from `before`.
    Fields absent from `before` are compared against `fallback` (the published value).
    """
    out: list[FieldChange] = []
    for name, new_value in incoming.items():
        if name in before:
            old_value = before[name]
        else:
            old_value = (fallback or {}).get(name)
        if old_value != new_value:
            out.append(FieldChange(field=name, old_value=old_value, new_value=new_value, changed_at=now, changed_by=actor))
    return tuple(out)


def accumulate(
    existing: PendingUpdate | None,
    incoming: Mapping[str, Any],
    published: Mapping[str, Any],
    *,
    actor: str,
    now: str,
) -> Accumulated:
    """
    Merge `incoming` into the pending update (last writer per field wins).
    Fields set back to their published value drop out of the pending update.

    The first submitted_at is kept so queue age reflects the oldest unresolved
    request. Re-applying an identical edit yields no new history entries.
    """
    if existing is None:
        entries = diff_fields(published, incoming, actor=actor, now=now)
        if not entries:
            return Accumulated(pending_update=None)
        pu = PendingUpdate(
            changes={e.field: e.new_value for e in entries},
            change_history=entries,
            submitted_at=now,
            last_updated_at=now,
            submitted_by=actor,
        )
        return Accumulated(pending_update=pu, new_entries=entries)

    entries = diff_fields(existing.changes, incoming, actor=actor, now=now, fallback=published)
    merged = {**existing.changes, **incoming}
    changes = {k: v for k, v in merged.items() if published.get(k) != v}
    if not changes:
        return Accumulated(pending_update=None, new_entries=entries)
    pu = PendingUpdate(
        changes=changes,
        change_history=existing.change_history + entries,
        submitted_at=existing.submitted_at,
        last_updated_at=now,
        submitted_by=existing.submitted_by,
    )
    return Accumulated(pending_update=pu, new_entries=entries)


def effective_price(published: Mapping[str, Any], pending: PendingUpdate | None) -> Any:
    if pending is not None and "price" in pending.changes:
        return pending.changes["price"]
    return published.get("price")


def record_price_change(
    price_history: list[dict[str, Any]],
    *,
    current_price: Any,
    new_price: Any,
    actor: str,
    now: str,
    reason: str,
) -> list[dict[str, Any]]:
    """Return price_history with one appended entry when the price actually moves."""
    if new_price is None or new_price == current_price:
        return list(price_history)
    entry = PriceChange(price=new_price, previous_price=current_price, timestamp=now, changed_by=actor, reason=reason)
    return [*price_history, entry.to_dict()]
