"""Authentication and rate limiting helpers for the API."""

import os
import secrets
import logging

from fastapi import HTTPException, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from slowapi import Limiter
from slowapi.util import get_remote_address

logger = logging.getLogger(__name__)

security = HTTPBearer()

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


async def verify_api_key(credentials: HTTPAuthorizationCredentials = Security(security)) -> str:
    """Verify the admin API key from the Authorization header.

    Args:
        credentials: HTTP Bearer credentials from the request.

    Returns:
        The verified API key.

    Raises:
        HTTPException: If API key is invalid or not configured.
    """
    api_key = credentials.credentials
    expected_key = os.getenv("API_KEY")
    if not expected_key:
        logger.error("API_KEY environment variable is not configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if not secrets.compare_digest(api_key, expected_key):
        raise HTTPException(status_code=401, detail="Invalid API key")
    return api_key


async def verify_admin_or_cron(credentials: HTTPAuthorizationCredentials = Security(security)) -> str:
    """Accept either the admin API key or the recovery cron secret.

    Returns:
        "admin" or "cron", recorded as who triggered the sweep.

    Raises:
        HTTPException: If neither secret is configured or the token matches neither.
    """
    token = credentials.credentials
    admin_key = os.getenv("API_KEY")
    cron_secret = os.getenv("RECOVERY_CRON_SECRET")
    if not admin_key and not cron_secret:
        logger.error("Neither API_KEY nor RECOVERY_CRON_SECRET is configured")
        raise HTTPException(status_code=500, detail="Server configuration error")
    if admin_key and secrets.compare_digest(token, admin_key):
        return "admin"
    if cron_secret and secrets.compare_digest(token, cron_secret):
        return "cron"
    raise HTTPException(status_code=401, detail="Invalid API key")
