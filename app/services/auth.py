from dataclasses import dataclass
from fastapi import Header

from app.core.errors import AuthenticationError


ROLE_SELLER = "seller"
ROLE_MODERATOR = "moderator"
ROLE_ADMIN = "admin"
KNOWN_ROLES = {ROLE_SELLER, ROLE_MODERATOR, ROLE_ADMIN}


@dataclass(frozen=True)
class Actor:
    actor_id: str
    roles: frozenset[str]

    @property
    def is_moderator(self) -> bool:
        return bool(self.roles & {ROLE_MODERATOR, ROLE_ADMIN})


async def get_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_roles: str | None = Header(default=None),
) -> Actor:
    # identity is resolved upstream by the gateway; we only read what it forwards
    if not x_actor_id or not x_actor_id.strip():
        raise AuthenticationError("Missing X-Actor-Id header")
    if len(x_actor_id) > 120:
        raise AuthenticationError("Invalid X-Actor-Id header")

    roles = {r.strip().lower() for r in (x_actor_roles or "").split(",") if r.strip()}
    return Actor(actor_id=x_actor_id.strip(), roles=frozenset(roles & KNOWN_ROLES))


async def get_optional_actor(
    x_actor_id: str | None = Header(default=None),
    x_actor_roles: str | None = Header(default=None),
) -> Actor | None:
    if not x_actor_id:
        return None
    return await get_actor(x_actor_id=x_actor_id, x_actor_roles=x_actor_roles)
