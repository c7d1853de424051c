from sqlalchemy import Boolean, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import DateTime

from app.core.ids import gen_id

from app.models.base import AuditMixin, Base, JSONType


class ModerationQueueEntry(AuditMixin, Base):
    __tablename__ = "moderation_queue"
    __table_args__ = (
        # reviewer dashboards: status + priority band, FIFO inside the band
        Index("ix_moderation_queue_status_priority", "status", "priority_rank", "submitted_at"),
        Index("ix_moderation_queue_assigned_to", "assigned_to", "status"),
        Index("ix_moderation_queue_listing", "listing_id", "status"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("mq"))
    listing_id: Mapped[str] = mapped_column(String, ForeignKey("listings.id"), nullable=False)
    submitted_by: Mapped[str] = mapped_column(String(120), nullable=False)

    # urgent | high | standard | low (rank 0..3 keeps SQL ordering trivial)
    priority: Mapped[str] = mapped_column(String(20), nullable=False, default="standard")
    priority_rank: Mapped[int] = mapped_column(Integer, nullable=False, default=2)

    # pending | in_review | resolved
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")

    # initial | update | resubmission
    submission_type: Mapped[str] = mapped_column(String(20), nullable=False, default="initial")

    assigned_to: Mapped[str | None] = mapped_column(String(120), nullable=True)
    submitted_at: Mapped[str] = mapped_column(DateTime(timezone=True), nullable=False)
    assigned_at: Mapped[str | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolved_at: Mapped[str | None] = mapped_column(DateTime(timezone=True), nullable=True)
    resolution: Mapped[str | None] = mapped_column(String(40), nullable=True)

    escalated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    escalation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    # snapshot of scanner flags at submission time
    flags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
