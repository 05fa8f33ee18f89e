import os
import asyncio
import logging
from typing import Dict, Any, Optional

import stripe

from .base import (
    PaymentGatewayBase,
    InitializePaymentRequest,
    InitializedPayment,
    GatewayVerification,
    GatewayEvent,
)
from ..database.models import BuyType, GatewayStatus
from ..errors import InvalidSignature, VerificationUnavailable

logger = logging.getLogger(__name__)


class StripeGateway(PaymentGatewayBase):
    """
    Card payments through Stripe Checkout. Our reference travels in the
    PaymentIntent metadata so a payment can be found again by reference.
    """

    name = "stripe"
    reference_prefix = "SC"
    buy_type = BuyType.CARD.value
    signature_header = "stripe-signature"
    reconcile_events = frozenset({"payment_intent.succeeded", "payment_intent.payment_failed"})

    # Fields that should not be persisted in the audit trail
    SENSITIVE_FIELDS = frozenset([
        'client_secret',
        'payment_method_details',
        'card',
        'bank_account',
    ])

    STATUS_MAP = {
        "succeeded": GatewayStatus.SUCCESS,
        "canceled": GatewayStatus.FAILED,
    }

    def __init__(self, api_key: Optional[str] = None, webhook_secret: Optional[str] = None):
        self._api_key = api_key if api_key is not None else os.getenv("STRIPE_API_KEY", "")
        self._webhook_secret = webhook_secret if webhook_secret is not None else os.getenv("STRIPE_WEBHOOK_SECRET", "")

    def _configure_stripe(self) -> None:
        stripe.api_key = self._api_key

    def _sanitize_response(self, raw_response: Dict[str, Any]) -> Dict[str, Any]:
        if not raw_response:
            return {}
        sanitized = {}
        for key, value in raw_response.items():
            if key in self.SENSITIVE_FIELDS:
                continue
            if isinstance(value, dict):
                sanitized[key] = self._sanitize_response(value)
            else:
                sanitized[key] = value
        return sanitized

    async def initialize(self, request: InitializePaymentRequest) -> InitializedPayment:
        self._configure_stripe()
        metadata = {"reference": request.reference, "meterId": request.meter_id}
        success_url = request.callback_url or f"{os.getenv('APP_URL', 'http://localhost:3000')}/payment/success"
        try:
            session = await asyncio.to_thread(
                stripe.checkout.Session.create,
                mode="payment",
                customer_email=request.email,
                client_reference_id=request.reference,
                line_items=[{
                    "price_data": {
                        "currency": "ngn",
                        "unit_amount": request.amount_minor,
                        "product_data": {"name": f"Meter Recharge - {request.meter_id}"},
                    },
                    "quantity": 1,
                }],
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                success_url=f"{success_url}?reference={request.reference}",
                cancel_url=f"{success_url}?reference={request.reference}&cancelled=1",
            )
        except stripe.StripeError as e:
            raise RuntimeError(f"Stripe checkout creation failed: {type(e).__name__}") from e
        return InitializedPayment(
            reference=request.reference,
            authorization_url=session.url,
            access_code=session.id,
            raw=self._sanitize_response(session.to_dict()),
        )

    async def verify(self, reference: str) -> GatewayVerification:
        self._configure_stripe()
        try:
            result = await asyncio.to_thread(
                stripe.PaymentIntent.search,
                query=f"metadata['reference']:'{reference}'",
                limit=1,
            )
        except stripe.AuthenticationError as e:
            logger.error("Stripe authentication failed")
            raise VerificationUnavailable("Invalid Stripe API key", reference=reference) from e
        except stripe.StripeError as e:
            logger.warning(f"Stripe verification for {reference} failed: {type(e).__name__}")
            raise VerificationUnavailable(f"Stripe API error: {type(e).__name__}", reference=reference) from e

        intents = list(result.data)
        if not intents:
            # Checkout creates the PaymentIntent lazily; nothing paid yet
            return GatewayVerification(
                reference=reference,
                status=GatewayStatus.PENDING,
                gateway_status="not_found",
            )

        pi = intents[0]
        status = self.STATUS_MAP.get(pi.status, GatewayStatus.PENDING)
        raw = pi.to_dict() if hasattr(pi, "to_dict") else {}
        return GatewayVerification(
            reference=reference,
            status=status,
            confirmed_amount_minor=pi.amount_received if status == GatewayStatus.SUCCESS else None,
            gateway_status=pi.status,
            raw=self._sanitize_response(raw),
        )

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> GatewayEvent:
        if not self._webhook_secret:
            raise InvalidSignature("STRIPE_WEBHOOK_SECRET is not configured")
        sig_header = headers.get(self.signature_header)
        if not sig_header:
            raise InvalidSignature("Missing webhook signature")
        try:
            event = stripe.Webhook.construct_event(payload=body, sig_header=sig_header, secret=self._webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise InvalidSignature("Invalid webhook signature") from e

        payload = event.to_dict()
        obj = payload.get("data", {}).get("object", {}) or {}
        reference = (obj.get("metadata") or {}).get("reference")
        return GatewayEvent(event_type=event.type, reference=reference, raw=self._sanitize_response(payload))
