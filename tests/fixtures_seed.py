import itertools

import pytest
import pytest_asyncio

from app.core.config import settings

OWNER = "usr_owner_1"
OTHER_OWNER = "usr_owner_2"
MODERATOR = "usr_mod_1"
OTHER_MODERATOR = "usr_mod_2"
ADMIN = "usr_admin_1"

_keys = itertools.count(1)


def seller(actor_id: str = OWNER) -> dict:
    return {"X-Actor-Id": actor_id, "X-Actor-Roles": "seller"}


def moderator(actor_id: str = MODERATOR) -> dict:
    return {"X-Actor-Id": actor_id, "X-Actor-Roles": "moderator"}


def admin(actor_id: str = ADMIN) -> dict:
    return {"X-Actor-Id": actor_id, "X-Actor-Roles": "admin"}


def image_url(owner_id: str, name: str = "photo1.jpg") -> str:
    return f"{settings.media_base_url}/{owner_id}/{name}"


def listing_body(owner_id: str = OWNER, **overrides) -> dict:
    body = {
        "title": "2015 Boston Whaler Outrage 280",
        "description": "Well maintained center console with twin outboards, full electronics and a trailer included.",
        "price": 85000,
        "year": 2015,
        "location": {"city": "Fort Lauderdale", "state": "FL", "zip_code": "33301"},
        "boat_details": {
            "type": "center console",
            "manufacturer": "Boston Whaler",
            "model": "Outrage 280",
            "length": 28,
            "engine": "Twin Mercury 250",
            "hours": 420,
            "condition": "used",
        },
        "images": [image_url(owner_id)],
        "features": ["GPS", "Fish finder", "Trailer"],
    }
    body.update(overrides)
    return body


class Api:
    """Thin helpers over the HTTP surface so tests read like the workflow."""

    def __init__(self, client):
        self.client = client

    async def create(self, owner_id: str = OWNER, *, key: str | None = None, **overrides):
        headers = {**seller(owner_id), "Idempotency-Key": key or f"create-{next(_keys)}"}
        return await self.client.post("/v1/listings", json=listing_body(owner_id, **overrides), headers=headers)

    async def created(self, owner_id: str = OWNER, **overrides) -> dict:
        r = await self.create(owner_id, **overrides)
        assert r.status_code == 201, r.text
        return r.json()

    async def get(self, id_or_slug: str, headers: dict | None = None):
        return await self.client.get(f"/v1/listings/{id_or_slug}", headers=headers or {})

    async def detail(self, listing_id: str, headers: dict | None = None) -> dict:
        r = await self.get(listing_id, headers or moderator())
        assert r.status_code == 200, r.text
        return r.json()

    async def edit(self, listing_id: str, owner_id: str = OWNER, **changes):
        return await self.client.patch(f"/v1/listings/{listing_id}", json=changes, headers=seller(owner_id))

    async def moderate(self, listing_id: str, decision: str, *, moderator_id: str = MODERATOR, version: int | None = None, **extra):
        if version is None:
            version = (await self.detail(listing_id))["version"]
        body = {"decision": decision, "expected_version": version, **extra}
        return await self.client.post(f"/v1/listings/{listing_id}/moderation", json=body, headers=moderator(moderator_id))

    async def queue(self, headers: dict | None = None, **params):
        return await self.client.get("/v1/moderation/queue", params=params, headers=headers or moderator())

    async def assign(self, queue_id: str, moderator_id: str = MODERATOR):
        return await self.client.post(f"/v1/moderation/queue/{queue_id}/assign", headers=moderator(moderator_id))

    async def active(self, owner_id: str = OWNER, **overrides) -> dict:
        created = await self.created(owner_id, **overrides)
        r = await self.moderate(created["listing_id"], "approve")
        assert r.status_code == 200, r.text
        return created


@pytest.fixture
def api(client) -> Api:
    return Api(client)


@pytest_asyncio.fixture
async def active_listing(api) -> dict:
    """A published listing owned by OWNER, as returned by the create call."""
    return await api.active()
