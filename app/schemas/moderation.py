from pydantic import BaseModel, Field

from app.schemas.common import PageMeta
from app.services.listing_state import Decision


class ModerationDecisionIn(BaseModel):
    decision: Decision
    notes: str | None = Field(default=None, max_length=2000)
    required_changes: list[str] = Field(default_factory=list, max_length=50)
    # version the moderator reviewed; a newer owner edit makes this a conflict
    expected_version: int = Field(ge=1)


class ModerationDecisionOut(BaseModel):
    listing_id: str
    status: str
    workflow_status: str | None
    version: int


class QueueEntryOut(BaseModel):
    id: str
    listing_id: str
    submitted_by: str
    priority: str
    status: str
    submission_type: str
    assigned_to: str | None
    submitted_at: str
    escalated: bool
    escalation_reason: str | None = None
    resolution: str | None = None
    flags: list[dict] = Field(default_factory=list)


class QueuePage(BaseModel):
    items: list[QueueEntryOut]
    page: PageMeta


class EscalateIn(BaseModel):
    reason: str = Field(min_length=3, max_length=500)


class QueueCounts(BaseModel):
    pending: int
    in_review: int
    escalated: int


class ModerationStatsOut(BaseModel):
    listings: dict[str, int]
    total: int
    queue: QueueCounts
