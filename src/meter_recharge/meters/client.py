"""HTTP client for the IoT meter platform."""

import os
import hashlib
import logging
from typing import Dict, Any, Optional

import httpx

from .results import CreditResult, normalize_response, translate_error_message
from ..errors import MeterAuthError, MeterCreditAmbiguous

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://iot.solarshare.africa"

LOGIN_PATH = "/basic/prepayment/app/appUserLogin"
METER_INFO_PATH = "/basic/prepayment/app/MeterInfo"
SALE_POWER_PATH = "/basic/prepayment/app/SalePower"


class IotClient:
    """
    Client for the meter platform's prepayment API.

    The credit call distinguishes a request that provably never reached the
    platform (returned as a failed CreditResult) from one whose outcome is
    unknown (raised as MeterCreditAmbiguous). The platform is never assumed
    to deduplicate repeated sale ids.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or os.getenv("IOT_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self.timeout = timeout if timeout is not None else float(os.getenv("METER_TIMEOUT_SECONDS", "30"))
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Content-Type": "application/json"},
        )

    @staticmethod
    def hash_password(password: str) -> str:
        return hashlib.md5(password.encode("utf-8")).hexdigest()

    async def login(self, username: str, password: str, user_type: int = 0) -> str:
        """Log in and return the platform token.

        Raises:
            MeterAuthError: If the platform cannot be reached or refuses the login.
        """
        payload = {"username": username, "password": self.hash_password(password), "type": user_type}
        try:
            async with self._client() as client:
                response = await client.post(LOGIN_PATH, json=payload)
        except httpx.HTTPError as e:
            raise MeterAuthError(f"Meter platform login failed: {e.__class__.__name__}") from e

        if response.status_code != 200:
            raise MeterAuthError(f"Meter platform login failed: HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError as e:
            raise MeterAuthError("Meter platform login returned a non-JSON body") from e

        result = normalize_response(body)
        if not result.ok or not result.data:
            raise MeterAuthError(f"Failed to get admin token: {result.message or 'Unknown error'}")
        return str(result.data)

    async def get_meter_info(self, meter_id: str, token: str) -> CreditResult:
        """Look up a meter. Read-only, so transport failures are reported as not ok."""
        try:
            async with self._client() as client:
                response = await client.post(METER_INFO_PATH, json={"meterId": meter_id}, headers={"token": token})
        except httpx.HTTPError as e:
            logger.warning(f"Meter info lookup for {meter_id} failed: {e!r}")
            return CreditResult(ok=False, message=f"Meter platform unavailable: {e.__class__.__name__}")

        if response.status_code == 401:
            return CreditResult(ok=False, message="Token expired", token_expired=True)
        if response.status_code != 200:
            return CreditResult(ok=False, message=f"HTTP {response.status_code}")
        try:
            return normalize_response(response.json())
        except ValueError:
            return CreditResult(ok=False, message="Unexpected response format")

    async def sale_power(
        self,
        meter_id: str,
        amount_minor: int,
        buy_type: int,
        sale_id: str,
        token: str,
    ) -> CreditResult:
        """Ask the platform to credit a meter.

        Args:
            meter_id: Meter to credit.
            amount_minor: Amount in minor units (kobo).
            buy_type: Origin tag of the sale.
            sale_id: Idempotency key for this attempt.
            token: Platform token.

        Returns:
            CreditResult. ok=False means the platform refused, or the request
            was never sent.

        Raises:
            MeterCreditAmbiguous: The request may have been processed but no
                confirmation was received.
        """
        payload: Dict[str, Any] = {
            "meterId": meter_id,
            "saleMoney": amount_minor,
            "buyType": buy_type,
            "saleId": sale_id,
        }
        try:
            async with self._client() as client:
                response = await client.post(SALE_POWER_PATH, json=payload, headers={"token": token})
        except (httpx.ConnectError, httpx.ConnectTimeout) as e:
            # No connection was established, so the platform never saw the request
            logger.warning(f"Meter platform unreachable for sale {sale_id}: {e!r}")
            return CreditResult(ok=False, message=f"Meter platform unreachable: {e.__class__.__name__}")
        except httpx.TransportError as e:
            logger.error(f"No confirmation for sale {sale_id} on meter {meter_id}: {e!r}")
            raise MeterCreditAmbiguous(
                f"No confirmation from meter platform: {e.__class__.__name__}",
                detail={"meter_id": meter_id},
                sale_id=sale_id,
            ) from e

        if response.status_code == 401:
            return CreditResult(ok=False, message="Token expired", token_expired=True)

        if response.status_code >= 500:
            logger.error(f"Meter platform answered HTTP {response.status_code} for sale {sale_id}")
            raise MeterCreditAmbiguous(
                f"Meter platform error: HTTP {response.status_code}",
                detail={"meter_id": meter_id, "status_code": response.status_code},
                sale_id=sale_id,
            )

        if response.status_code != 200:
            return CreditResult(
                ok=False,
                message=translate_error_message(f"HTTP {response.status_code}"),
                raw={"status_code": response.status_code, "body": response.text},
            )

        try:
            body = response.json()
        except ValueError as e:
            raise MeterCreditAmbiguous(
                "Meter platform returned an unreadable confirmation",
                detail={"meter_id": meter_id, "body": response.text[:500]},
                sale_id=sale_id,
            ) from e

        return normalize_response(body)

    # The reconciliation engine speaks of crediting; the platform of selling power
    credit = sale_power
