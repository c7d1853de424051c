from __future__ import annotations

import re

from app.core.ids import id_fragment


SLUG_MAX_BASE = 50
SLUG_MIN_BASE = 3
SLUG_FALLBACK = "listing"
SLUG_FRAGMENT_LEN = 8


def slug_base(title: str) -> str:
    s = (title or "").lower()
    s = re.sub(r"[\s_]+", "-", s)
    s = re.sub(r"[^a-z0-9-]", "", s)
    s = re.sub(r"-{2,}", "-", s).strip("-")

    if len(s) > SLUG_MAX_BASE:
        cut = s[:SLUG_MAX_BASE]
        # cutting inside a word -> back off to the previous word boundary
        if s[SLUG_MAX_BASE] != "-" and "-" in cut:
            cut = cut[: cut.rfind("-")]
        s = cut.strip("-")

    # also covers a word-boundary cut that leaves only a short prefix
    if len(s) < SLUG_MIN_BASE:
        return SLUG_FALLBACK
    return s


def generate_slug(title: str, entity_id: str) -> str:
    """URL-safe slug, unique through the entity id fragment (no storage round-trip)."""
    return f"{slug_base(title)}-{id_fragment(entity_id, SLUG_FRAGMENT_LEN)}"
