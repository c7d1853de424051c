from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

from app.schemas.common import PageMeta


TITLE_MIN, TITLE_MAX = 3, 100
DESCRIPTION_MIN, DESCRIPTION_MAX = 10, 5000
PRICE_MAX = 10_000_000
YEAR_MIN = 1900
MAX_IMAGES = 50
MAX_FEATURES = 50


def sanitize_text(value: str) -> str:
    return value.strip().replace("<", "").replace(">", "")


def _check_year(value: int) -> int:
    latest = datetime.now(timezone.utc).year + 1
    if value < YEAR_MIN or value > latest:
        raise ValueError(f"year must be between {YEAR_MIN} and {latest}")
    return value


class Location(BaseModel):
    city: str = Field(min_length=1, max_length=100)
    state: str = Field(min_length=1, max_length=100)
    zip_code: str | None = Field(default=None, max_length=20)

    @field_validator("city", "state", "zip_code")
    @classmethod
    def _clean(cls, v: str | None) -> str | None:
        return sanitize_text(v) if v is not None else v


class BoatDetails(BaseModel):
    type: str = Field(min_length=1, max_length=60)
    manufacturer: str | None = Field(default=None, max_length=100)
    model: str | None = Field(default=None, max_length=100)
    length: float = Field(gt=0, le=2000)
    beam: float | None = Field(default=None, gt=0)
    draft: float | None = Field(default=None, gt=0)
    engine: str | None = Field(default=None, max_length=200)
    hours: int | None = Field(default=None, ge=0)
    condition: str = Field(min_length=1, max_length=40)

    @field_validator("type", "manufacturer", "model", "engine", "condition")
    @classmethod
    def _clean(cls, v: str | None) -> str | None:
        return sanitize_text(v) if v is not None else v


class _ListingFields(BaseModel):
    @field_validator("title", "description", check_fields=False)
    @classmethod
    def _clean_text(cls, v: str | None) -> str | None:
        return sanitize_text(v) if v is not None else v

    @field_validator("features", check_fields=False)
    @classmethod
    def _clean_features(cls, v: list[str] | None) -> list[str] | None:
        if v is None:
            return v
        return [s for s in (sanitize_text(f) for f in v) if s]

    @field_validator("year", check_fields=False)
    @classmethod
    def _year(cls, v: int | None) -> int | None:
        return _check_year(v) if v is not None else v


class ListingCreate(_ListingFields):
    title: str = Field(min_length=TITLE_MIN, max_length=TITLE_MAX)
    description: str = Field(min_length=DESCRIPTION_MIN, max_length=DESCRIPTION_MAX)
    price: float = Field(gt=0, le=PRICE_MAX)
    year: int
    location: Location
    boat_details: BoatDetails
    images: list[str] = Field(default_factory=list, max_length=MAX_IMAGES)
    features: list[str] = Field(default_factory=list, max_length=MAX_FEATURES)

    @model_validator(mode="after")
    def _lengths_after_sanitize(self) -> "ListingCreate":
        if len(self.title) < TITLE_MIN:
            raise ValueError(f"title must be at least {TITLE_MIN} characters")
        if len(self.description) < DESCRIPTION_MIN:
            raise ValueError(f"description must be at least {DESCRIPTION_MIN} characters")
        return self

    def published_fields(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=False)


class ListingUpdate(_ListingFields):
    title: str | None = Field(default=None, min_length=TITLE_MIN, max_length=TITLE_MAX)
    description: str | None = Field(default=None, min_length=DESCRIPTION_MIN, max_length=DESCRIPTION_MAX)
    price: float | None = Field(default=None, gt=0, le=PRICE_MAX)
    year: int | None = None
    location: Location | None = None
    boat_details: BoatDetails | None = None
    images: list[str] | None = Field(default=None, max_length=MAX_IMAGES)
    features: list[str] | None = Field(default=None, max_length=MAX_FEATURES)

    # optimistic concurrency guard (version the client last read)
    expected_version: int | None = Field(default=None, ge=1)

    @model_validator(mode="after")
    def _not_empty(self) -> "ListingUpdate":
        if not self.changes():
            raise ValueError("at least one field must be provided")
        return self

    def changes(self) -> dict[str, Any]:
        data = self.model_dump(mode="json", exclude_unset=True, exclude={"expected_version"})
        return {k: v for k, v in data.items() if v is not None}


class ListingCreated(BaseModel):
    listing_id: str
    slug: str
    status: str
    version: int
    queue_id: str | None = None
    queue_priority: str | None = None
    flags: list[dict] = Field(default_factory=list)


class ListingUpdated(BaseModel):
    listing_id: str
    status: str
    pending_review: bool
    changes_count: int
    version: int
    slug: str


class ListingPublicOut(BaseModel):
    id: str
    slug: str
    status: str
    title: str
    description: str
    price: float
    year: int
    location: dict
    boat_details: dict
    images: list[str]
    features: list[str]
    created_at: str | None = None
    updated_at: str | None = None
    redirected_from: str | None = None


class ListingDetailOut(ListingPublicOut):
    owner_id: str
    version: int
    moderation_workflow: dict
    pending_update: dict | None = None
    moderation_history: list[dict] = Field(default_factory=list)
    price_history: list[dict] = Field(default_factory=list)
    flags: list[dict] = Field(default_factory=list)


class ListingPage(BaseModel):
    items: list[ListingDetailOut | ListingPublicOut]
    page: PageMeta


class ListingDeleted(BaseModel):
    listing_id: str
    status: str
    message: str = "Listing deleted"
