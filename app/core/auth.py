"""API key authentication for operational endpoints."""

import hmac

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from app.core.config import settings

api_key_header = APIKeyHeader(name="X-API-Key", auto_error=True)


def verify_api_key(request: Request, api_key: str = Security(api_key_header)) -> str:
    """Verify the X-API-Key header against the application's configured key."""
    expected = getattr(request.app.state, "api_secret_key", settings.api_secret_key)
    if not hmac.compare_digest(api_key.encode(), expected.encode()):
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid API key",
        )
    return api_key
