from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.db import get_db
from app.models.listing import Listing
from app.schemas.common import PageMeta
from app.schemas.listing import (
    ListingCreate,
    ListingCreated,
    ListingDeleted,
    ListingDetailOut,
    ListingPage,
    ListingPublicOut,
    ListingUpdate,
    ListingUpdated,
)
from app.schemas.moderation import ModerationDecisionIn, ModerationDecisionOut
from app.services.auth import Actor, get_actor, get_optional_actor
from app.services.collaborators import (
    CapabilityChecker,
    ImageUrlValidator,
    get_capability_checker,
    get_image_validator,
)
from app.services.idempotency import require_idempotency_key
from app.services.listings import (
    create_listing,
    delete_listing,
    get_listing,
    list_listings,
    mark_sold,
    moderate_listing,
    update_listing,
)

router = APIRouter()


def _iso(value) -> str | None:
    if value is None:
        return None
    return value.isoformat() if hasattr(value, "isoformat") else str(value)


def listing_view(listing: Listing, *, privileged: bool, redirected_from: str | None = None) -> ListingPublicOut:
    public = dict(
        id=listing.id,
        slug=listing.slug,
        status=listing.status,
        title=listing.title,
        description=listing.description,
        price=listing.price,
        year=listing.year,
        location=listing.location or {},
        boat_details=listing.boat_details or {},
        images=list(listing.images or []),
        features=list(listing.features or []),
        created_at=_iso(listing.created_at),
        updated_at=_iso(listing.updated_at),
        redirected_from=redirected_from,
    )
    if not privileged:
        return ListingPublicOut(**public)
    return ListingDetailOut(
        **public,
        owner_id=listing.owner_id,
        version=listing.version,
        moderation_workflow=listing.moderation_workflow or {},
        pending_update=listing.pending_update,
        moderation_history=list(listing.moderation_history or []),
        price_history=list(listing.price_history or []),
        flags=list(listing.flags or []),
    )


@router.post("/listings", response_model=ListingCreated, status_code=201)
async def create_listing_endpoint(
    payload: ListingCreate,
    request: Request,
    actor: Actor = Depends(get_actor),
    idempotency_key: str = Depends(require_idempotency_key),
    capabilities: CapabilityChecker = Depends(get_capability_checker),
    image_validator: ImageUrlValidator = Depends(get_image_validator),
    db: AsyncSession = Depends(get_db),
) -> ListingCreated:
    resp = await create_listing(
        db=db,
        actor=actor,
        fields=payload.published_fields(),
        capabilities=capabilities,
        image_validator=image_validator,
        idempotency_key=idempotency_key,
        request_path=str(request.url.path),
    )
    return ListingCreated(**resp)


@router.patch("/listings/{listing_id}", response_model=ListingUpdated)
async def update_listing_endpoint(
    listing_id: str,
    payload: ListingUpdate,
    actor: Actor = Depends(get_actor),
    capabilities: CapabilityChecker = Depends(get_capability_checker),
    image_validator: ImageUrlValidator = Depends(get_image_validator),
    db: AsyncSession = Depends(get_db),
) -> ListingUpdated:
    outcome = await update_listing(
        db=db,
        actor=actor,
        listing_id=listing_id,
        changes=payload.changes(),
        expected_version=payload.expected_version,
        capabilities=capabilities,
        image_validator=image_validator,
    )
    return ListingUpdated(
        listing_id=outcome.listing.id,
        status=outcome.status,
        pending_review=outcome.pending_review,
        changes_count=outcome.changes_count,
        version=outcome.listing.version,
        slug=outcome.listing.slug,
    )


@router.post("/listings/{listing_id}/sold", response_model=ListingDetailOut)
async def mark_sold_endpoint(
    listing_id: str,
    actor: Actor = Depends(get_actor),
    capabilities: CapabilityChecker = Depends(get_capability_checker),
    db: AsyncSession = Depends(get_db),
) -> ListingDetailOut:
    listing = await mark_sold(db=db, actor=actor, listing_id=listing_id, capabilities=capabilities)
    return listing_view(listing, privileged=True)


@router.get("/listings", response_model=ListingPage)
async def list_listings_endpoint(
    owner_id: str | None = Query(default=None),
    status: str | None = Query(default=None),
    limit: int = Query(default=20),
    offset: int = Query(default=0),
    actor: Actor | None = Depends(get_optional_actor),
    db: AsyncSession = Depends(get_db),
) -> ListingPage:
    found = await list_listings(db=db, actor=actor, owner_id=owner_id, status=status, limit=limit, offset=offset)
    return ListingPage(
        items=[listing_view(listing, privileged=found.privileged) for listing in found.listings],
        page=PageMeta(limit=limit, offset=offset, total=found.total),
    )


@router.delete("/listings/{listing_id}", response_model=ListingDeleted)
async def delete_listing_endpoint(
    listing_id: str,
    actor: Actor = Depends(get_actor),
    capabilities: CapabilityChecker = Depends(get_capability_checker),
    db: AsyncSession = Depends(get_db),
) -> ListingDeleted:
    listing = await delete_listing(db=db, actor=actor, listing_id=listing_id, capabilities=capabilities)
    return ListingDeleted(listing_id=listing.id, status=listing.status)


@router.get("/listings/{id_or_slug}", response_model=ListingDetailOut | ListingPublicOut)
async def get_listing_endpoint(
    id_or_slug: str,
    actor: Actor | None = Depends(get_optional_actor),
    db: AsyncSession = Depends(get_db),
) -> ListingDetailOut | ListingPublicOut:
    found = await get_listing(db=db, id_or_slug=id_or_slug, actor=actor)
    return listing_view(found.listing, privileged=found.privileged, redirected_from=found.redirected_from)


@router.post("/listings/{listing_id}/moderation", response_model=ModerationDecisionOut)
async def moderate_listing_endpoint(
    listing_id: str,
    payload: ModerationDecisionIn,
    actor: Actor = Depends(get_actor),
    capabilities: CapabilityChecker = Depends(get_capability_checker),
    db: AsyncSession = Depends(get_db),
) -> ModerationDecisionOut:
    listing = await moderate_listing(
        db=db,
        actor=actor,
        listing_id=listing_id,
        decision=payload.decision,
        notes=payload.notes,
        required_changes=payload.required_changes,
        expected_version=payload.expected_version,
        capabilities=capabilities,
    )
    return ModerationDecisionOut(
        listing_id=listing.id,
        status=listing.status,
        workflow_status=(listing.moderation_workflow or {}).get("status"),
        version=listing.version,
    )
