from sqlalchemy import ForeignKey, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func
from sqlalchemy.types import DateTime

from app.models.base import Base


class SlugRedirect(Base):
    __tablename__ = "slug_redirects"

    old_slug: Mapped[str] = mapped_column(String(80), primary_key=True)
    new_slug: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    listing_id: Mapped[str] = mapped_column(String, ForeignKey("listings.id"), nullable=False)

    created_at: Mapped[str] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
