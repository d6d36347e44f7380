"""Authentication and rate limiting helpers for the admin API."""

import secrets
import logging

from fastapi import HTTPException, Request, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

security = HTTPBearer()


def create_limiter() -> Limiter:
    """Rate limiter keyed by client address, one per application instance."""
    return Limiter(key_func=get_remote_address)


async def verify_api_key(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Security(security),
) -> str:
    """Verify the admin API key from the Authorization header.

    Args:
        request: Incoming request; the expected key lives on the app settings.
        credentials: HTTP Bearer credentials from the request.

    Returns:
        The verified API key.

    Raises:
        HTTPException: If API key is invalid or not configured.
    """
    api_key = credentials.credentials
    expected_key = request.app.state.settings.admin_api_key
    if not expected_key:
        logger.error("API_KEY environment variable is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not secrets.compare_digest(api_key, expected_key):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return api_key
