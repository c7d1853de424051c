"""
Ports to the collaborators the listing service consumes: a capability check and an
object-storage image URL validator. Defaults are wired through FastAPI dependencies
and can be overridden (tests, other deployments).
"""
from __future__ import annotations

from typing import Protocol
from urllib.parse import urlparse

import httpx

from app.core.config import settings
from app.core.errors import ValidationError
from app.services.auth import ROLE_ADMIN, ROLE_MODERATOR, ROLE_SELLER, Actor


ACTION_CREATE = "listing:create"
ACTION_EDIT = "listing:edit"
ACTION_MODERATE = "listing:moderate"

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".gif")


class CapabilityChecker(Protocol):
    async def can_perform(self, actor: Actor, action: str, listing_id: str | None) -> bool: ...


class ImageUrlValidator(Protocol):
    async def validate(self, owner_id: str, urls: list[str]) -> None: ...


class RoleCapabilityChecker:
    """Role based rules; ownership is enforced by the listing service itself."""

    RULES = {
        ACTION_CREATE: {ROLE_SELLER, ROLE_ADMIN},
        ACTION_EDIT: {ROLE_SELLER, ROLE_ADMIN},
        ACTION_MODERATE: {ROLE_MODERATOR, ROLE_ADMIN},
    }

    async def can_perform(self, actor: Actor, action: str, listing_id: str | None) -> bool:
        allowed = self.RULES.get(action)
        if not allowed:
            return False
        return bool(actor.roles & allowed)


class ObjectStorageImageValidator:
    """
    Image URLs must point into the caller's own prefix of the media bucket.
    With verify_exists the object is also probed with a HEAD request.
    """

    def __init__(self, *, base_url: str | None = None, verify_exists: bool = False, timeout_seconds: float = 5.0):
        self.base_url = (base_url or settings.media_base_url).rstrip("/")
        self.verify_exists = verify_exists
        self.timeout_seconds = timeout_seconds

    def _problems(self, owner_id: str, urls: list[str]) -> list[dict]:
        prefix = f"{self.base_url}/{owner_id}/"
        problems = []
        for i, url in enumerate(urls):
            path = urlparse(url).path.lower()
            if not url.startswith(prefix):
                problems.append({"field": f"images[{i}]", "msg": "image must be uploaded by the listing owner"})
            elif not path.endswith(IMAGE_EXTENSIONS):
                problems.append({"field": f"images[{i}]", "msg": "unsupported image type"})
        return problems

    async def validate(self, owner_id: str, urls: list[str]) -> None:
        problems = self._problems(owner_id, urls)
        if not problems and self.verify_exists and urls:
            async with httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds)) as client:
                for i, url in enumerate(urls):
                    try:
                        resp = await client.head(url)
                    except httpx.RequestError:
                        problems.append({"field": f"images[{i}]", "msg": "image could not be verified"})
                        continue
                    if resp.status_code != 200:
                        problems.append({"field": f"images[{i}]", "msg": "image does not exist"})
        if problems:
            raise ValidationError("Invalid image URLs", details=problems)


_capabilities = RoleCapabilityChecker()
_image_validator = ObjectStorageImageValidator()


def get_capability_checker() -> CapabilityChecker:
    return _capabilities


def get_image_validator() -> ImageUrlValidator:
    return _image_validator
