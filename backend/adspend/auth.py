"""
Authentication — API-key auth for the budget endpoints.

- Programmatic/frontend: Authorization: Bearer <API_KEY>
- The acting user is passed by the upstream login layer in X-User-Id.

In development with no API_KEY set, auth is skipped for local dev.
"""

import logging
import uuid
from fastapi import Depends, Header, HTTPException
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from adspend.config import get_settings
from adspend.utils import parse_uuid

logger = logging.getLogger(__name__)

_bearer_scheme = HTTPBearer(auto_error=False)


async def require_auth(
    credentials: HTTPAuthorizationCredentials = Depends(_bearer_scheme),
) -> str:
    """Returns the API key if it matched, or "dev-no-auth" in keyless development."""
    settings = get_settings()
    api_key = settings.api_key

    # Dev convenience: skip auth when no key is configured
    if not api_key:
        if settings.is_production:
            raise HTTPException(
                status_code=500,
                detail="Server misconfiguration: API_KEY must be set in production.",
            )
        return "dev-no-auth"

    if not credentials:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Include header: Authorization: Bearer <token>",
        )

    if credentials.credentials == api_key:
        return credentials.credentials

    raise HTTPException(status_code=401, detail="Invalid API key.")


async def get_current_user_id(
    x_user_id: str | None = Header(None, alias="X-User-Id"),
    _: str = Depends(require_auth),
) -> uuid.UUID:
    """Require the acting user's id for user-scoped endpoints (profiles, audit actor)."""
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return parse_uuid(x_user_id, "X-User-Id")
