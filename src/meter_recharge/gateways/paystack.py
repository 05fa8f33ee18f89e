"""Paystack gateway adapter."""

import os
import logging
from typing import Dict, Any, Optional
from urllib.parse import quote

import httpx

from .base import (
    PaymentGatewayBase,
    InitializePaymentRequest,
    InitializedPayment,
    GatewayVerification,
    GatewayEvent,
    verify_signature,
    json_or_empty,
    parse_json_body,
    data_object,
)
from ..database.models import BuyType, GatewayStatus
from ..errors import VerificationUnavailable

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.paystack.co"


class PaystackGateway(PaymentGatewayBase):
    """
    Paystack adapter over the REST API.

    Amounts are exchanged in kobo. Webhooks carry a hex HMAC-SHA512 of the
    raw body keyed with the secret key in the x-paystack-signature header.
    """

    name = "paystack"
    reference_prefix = "AG"
    buy_type = BuyType.PAYSTACK.value
    signature_header = "x-paystack-signature"
    reconcile_events = frozenset({"charge.success"})

    SUCCESS_STATUSES = frozenset({"success"})
    FAILED_STATUSES = frozenset({"failed", "abandoned", "reversed"})

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else os.getenv("PAYSTACK_SECRET_KEY", "")
        self.base_url = (base_url or os.getenv("PAYSTACK_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self.timeout = timeout if timeout is not None else float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Authorization": f"Bearer {self.secret_key}"},
        )

    async def initialize(self, request: InitializePaymentRequest) -> InitializedPayment:
        payload = {
            "email": request.email,
            "amount": request.amount_minor,
            "reference": request.reference,
            "currency": "NGN",
            "metadata": {"meterId": request.meter_id, **request.metadata},
        }
        if request.callback_url:
            payload["callback_url"] = request.callback_url

        try:
            async with self._client() as client:
                response = await client.post("/transaction/initialize", json=payload)
        except httpx.HTTPError as e:
            raise RuntimeError(f"Paystack unreachable: {e.__class__.__name__}") from e

        body = json_or_empty(response)
        if response.status_code != 200 or not body.get("status"):
            message = body.get("message") or f"HTTP {response.status_code}"
            raise RuntimeError(f"Paystack initialization failed: {message}")

        data = data_object(body)
        return InitializedPayment(
            reference=data.get("reference", request.reference),
            authorization_url=data["authorization_url"],
            access_code=data.get("access_code"),
            raw=body,
        )

    async def verify(self, reference: str) -> GatewayVerification:
        try:
            async with self._client() as client:
                response = await client.get(f"/transaction/verify/{quote(reference, safe='')}")
        except httpx.HTTPError as e:
            logger.warning(f"Paystack verification for {reference} failed: {e!r}")
            raise VerificationUnavailable(
                f"Paystack unreachable: {e.__class__.__name__}", reference=reference
            ) from e

        body = json_or_empty(response)

        # Paystack answers an unknown reference with status false and a 400/404
        if response.status_code in (400, 404) and body.get("status") is False:
            logger.info(f"Paystack does not know reference {reference}: {body.get('message')}")
            return GatewayVerification(
                reference=reference,
                status=GatewayStatus.FAILED,
                gateway_status="not_found",
                raw=body,
            )

        if response.status_code != 200 or not body.get("status"):
            raise VerificationUnavailable(
                f"Paystack verification error: HTTP {response.status_code} {body.get('message', '')}".strip(),
                reference=reference,
                detail={"status_code": response.status_code, "body": body},
            )

        data = data_object(body)
        paystack_status = str(data.get("status", "")).lower()
        if paystack_status in self.SUCCESS_STATUSES:
            status = GatewayStatus.SUCCESS
        elif paystack_status in self.FAILED_STATUSES:
            status = GatewayStatus.FAILED
        else:
            status = GatewayStatus.PENDING

        amount = data.get("amount")
        return GatewayVerification(
            reference=reference,
            status=status,
            confirmed_amount_minor=int(amount) if amount is not None and status == GatewayStatus.SUCCESS else None,
            gateway_status=paystack_status,
            raw=data,
        )

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> GatewayEvent:
        verify_signature(self.secret_key, body, headers.get(self.signature_header))
        payload = parse_json_body(body)
        data = data_object(payload)
        return GatewayEvent(
            event_type=str(payload.get("event", "unknown")),
            reference=data.get("reference"),
            raw=payload,
        )
