"""Bearer API-key authentication for the operator API."""

import hmac
import logging
from typing import Any, Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from feedsync.config import SyncConfig
from feedsync.dependencies import get_app_config

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def _matches_any(token: str, keys: set[str]) -> bool:
    return any(hmac.compare_digest(token, key) for key in keys)


async def verify_api_key(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    config: SyncConfig = Depends(get_app_config),
) -> dict[str, Any]:
    """Verify the bearer token against ``API_KEYS`` and return the caller identity."""
    if config.dev_bypass_api_key:
        return {"id": "dev-bypass", "auth": "bypass"}

    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing bearer token",
        )

    api_keys = config.get_api_keys()
    if not api_keys:
        logger.error("API request rejected: no API_KEYS configured")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication is not configured",
        )

    if not _matches_any(credentials.credentials, api_keys):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
    return {"id": "api-key-user", "auth": "api_key"}
