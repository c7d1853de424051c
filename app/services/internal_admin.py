import hmac

from fastapi import Header

from app.core.config import settings
from app.core.errors import AuthorizationError


async def require_internal_admin(x_internal_admin_key: str | None = Header(default=None)) -> None:
    # maintenance endpoints (outbox dispatch) are not reachable with actor headers
    if not x_internal_admin_key or not hmac.compare_digest(x_internal_admin_key, settings.internal_admin_key):
        raise AuthorizationError("Internal admin key required")
