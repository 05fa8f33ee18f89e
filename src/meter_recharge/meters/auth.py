"""Admin token acquisition for the meter platform."""

import os
import asyncio
import logging
from typing import Optional

from .client import IotClient
from ..errors import MeterAuthError

logger = logging.getLogger(__name__)


class AdminTokenProvider:
    """Supplies the admin token used for credit calls.

    A static IOT_ADMIN_TOKEN wins until the platform rejects it; after that,
    and whenever no static token is configured, the provider logs in with the
    admin credentials and caches the result.
    """

    def __init__(
        self,
        client: IotClient,
        static_token: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
    ):
        self.client = client
        self._static_token = static_token if static_token is not None else os.getenv("IOT_ADMIN_TOKEN")
        self._username = username if username is not None else os.getenv("IOT_ADMIN_USERNAME")
        self._password = password if password is not None else os.getenv("IOT_ADMIN_PASSWORD")
        self._cached: Optional[str] = None
        self._lock = asyncio.Lock()
        self.refresh_count = 0

    async def get_token(self) -> str:
        if self._cached:
            return self._cached
        if self._static_token:
            return self._static_token
        async with self._lock:
            if not self._cached:
                self._cached = await self._login()
            return self._cached

    async def refresh(self) -> str:
        """Discard the current token and log in again."""
        async with self._lock:
            self.refresh_count += 1
            self._static_token = None
            self._cached = await self._login()
            logger.info("Meter platform admin token refreshed")
            return self._cached

    async def _login(self) -> str:
        if not self._username or not self._password:
            raise MeterAuthError("Admin credentials not configured")
        return await self.client.login(self._username, self._password, user_type=0)
