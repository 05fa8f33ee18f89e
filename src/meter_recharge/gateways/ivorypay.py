"""IvoryPay gateway adapter."""

import os
import logging
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
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

DEFAULT_BASE_URL = "https://api.ivorypay.io/api/v1"
CHECKOUT_URL = "https://checkout.ivorypay.io/checkout"


def major_to_minor(value: Any) -> Optional[int]:
    """Convert a fiat amount in major units (number or decimal string) to minor units."""
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        return None
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class IvoryPayGateway(PaymentGatewayBase):
    """
    IvoryPay adapter. Payments are collected through payment links priced in
    NGN; the confirmed amount is the fiat amount received.
    """

    name = "ivorypay"
    reference_prefix = "IP"
    buy_type = BuyType.IVORYPAY.value
    signature_header = "x-ivorypay-signature"
    reconcile_events = frozenset({
        "transaction.success",
        "transaction.failed",
        "virtualAccountTransfer.success",
    })

    SUCCESS_STATUSES = frozenset({"success", "successful", "completed"})
    FAILED_STATUSES = frozenset({"failed", "expired", "cancelled"})

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.secret_key = secret_key if secret_key is not None else os.getenv("IVORYPAY_SECRET_KEY", "")
        self.base_url = (base_url or os.getenv("IVORYPAY_BASE_URL", DEFAULT_BASE_URL)).rstrip("/")
        self.timeout = timeout if timeout is not None else float(os.getenv("GATEWAY_TIMEOUT_SECONDS", "15"))
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={"Authorization": self.secret_key},
        )

    async def initialize(self, request: InitializePaymentRequest) -> InitializedPayment:
        amount_major = (Decimal(request.amount_minor) / 100).quantize(Decimal("0.01"))
        payload = {
            "name": f"Meter Recharge - {request.meter_id}",
            "description": f"Power recharge for meter {request.meter_id}",
            "baseFiat": "NGN",
            "amount": str(amount_major),
            "isAmountFixed": True,
            "reference": request.reference,
            "metadata": {"meterId": request.meter_id, **request.metadata},
        }
        if request.callback_url:
            payload["redirectLink"] = request.callback_url

        try:
            async with self._client() as client:
                response = await client.post("/payment-links", json=payload)
        except httpx.HTTPError as e:
            raise RuntimeError(f"IvoryPay unreachable: {e.__class__.__name__}") from e

        body = json_or_empty(response)
        if response.status_code not in (200, 201) or body.get("success") is False:
            message = body.get("message") or f"HTTP {response.status_code}"
            raise RuntimeError(f"IvoryPay payment link creation failed: {message}")

        data = data_object(body)
        link_reference = data.get("reference", request.reference)
        return InitializedPayment(
            reference=request.reference,
            authorization_url=data.get("url") or f"{CHECKOUT_URL}/{link_reference}",
            access_code=data.get("uuid"),
            raw=body,
        )

    async def verify(self, reference: str) -> GatewayVerification:
        try:
            async with self._client() as client:
                response = await client.get(f"/transactions/{quote(reference, safe='')}/verify")
        except httpx.HTTPError as e:
            logger.warning(f"IvoryPay verification for {reference} failed: {e!r}")
            raise VerificationUnavailable(
                f"IvoryPay unreachable: {e.__class__.__name__}", reference=reference
            ) from e

        body = json_or_empty(response)

        if response.status_code == 404:
            logger.info(f"IvoryPay does not know reference {reference}")
            return GatewayVerification(
                reference=reference,
                status=GatewayStatus.FAILED,
                gateway_status="not_found",
                raw=body,
            )

        if response.status_code != 200 or body.get("success") is False:
            raise VerificationUnavailable(
                f"IvoryPay verification error: HTTP {response.status_code} {body.get('message', '')}".strip(),
                reference=reference,
                detail={"status_code": response.status_code, "body": body},
            )

        data = data_object(body)
        ivorypay_status = str(data.get("status", "")).lower()
        if ivorypay_status in self.SUCCESS_STATUSES:
            status = GatewayStatus.SUCCESS
        elif ivorypay_status in self.FAILED_STATUSES:
            status = GatewayStatus.FAILED
        else:
            status = GatewayStatus.PENDING

        confirmed = None
        if status == GatewayStatus.SUCCESS:
            # Only the received amount counts; the expected amount is what was requested
            confirmed = major_to_minor(data.get("receivedAmountInBaseFiat"))

        return GatewayVerification(
            reference=reference,
            status=status,
            confirmed_amount_minor=confirmed,
            gateway_status=ivorypay_status,
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
