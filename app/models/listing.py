from sqlalchemy import Float, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from app.core.ids import gen_id

from app.models.base import AuditMixin, Base, JSONType


class Listing(AuditMixin, Base):
    __tablename__ = "listings"
    __table_args__ = (
        Index("ix_listings_owner_status", "owner_id", "status"),
        Index("ix_listings_status_updated_at", "status", "updated_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("lst"))
    owner_id: Mapped[str] = mapped_column(String(120), nullable=False)

    # second unique lookup besides id
    slug: Mapped[str] = mapped_column(String(80), nullable=False, unique=True)

    # pending_review | active | under_review | changes_requested | rejected | sold | expired
    status: Mapped[str] = mapped_column(String(30), nullable=False)

    # Published fields (what the public sees)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    price: Mapped[float] = mapped_column(Float, nullable=False)
    year: Mapped[int] = mapped_column(Integer, nullable=False)
    location: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    boat_details: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    images: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    features: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # Review metadata + held-back edits. JSON columns are always reassigned, never mutated in place.
    moderation_workflow: Mapped[dict] = mapped_column(JSONType, nullable=False, default=dict)
    pending_update: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    # append-only
    price_history: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    moderation_history: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    flags: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # compare-and-swap guard for every UPDATE
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version, "eager_defaults": True}
