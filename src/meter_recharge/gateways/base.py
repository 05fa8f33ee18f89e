import hmac
import json
import time
import hashlib
import secrets
from abc import ABC, abstractmethod
from typing import Optional, Dict, Any, FrozenSet

import httpx
from pydantic import BaseModel, Field

from ..database.models import GatewayStatus
from ..errors import InvalidSignature

# Canonical models
class InitializePaymentRequest(BaseModel):
    reference: str
    amount_minor: int  # minor units
    email: str
    meter_id: str
    callback_url: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

class InitializedPayment(BaseModel):
    reference: str
    authorization_url: str
    access_code: Optional[str] = None
    raw: Optional[Dict[str, Any]] = None

class GatewayVerification(BaseModel):
    reference: str
    status: GatewayStatus
    confirmed_amount_minor: Optional[int] = None
    gateway_status: Optional[str] = None  # the gateway's own status word, e.g. "abandoned"
    raw: Optional[Dict[str, Any]] = None

class GatewayEvent(BaseModel):
    event_type: str
    reference: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


def compute_signature(secret: str, body: bytes) -> str:
    """Hex HMAC-SHA512 of the raw request body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha512).hexdigest()


def verify_signature(secret: Optional[str], body: bytes, signature: Optional[str]) -> None:
    """Raise InvalidSignature unless signature matches body under secret.

    Fails closed: a missing secret or a missing header is a rejection.
    """
    if not secret:
        raise InvalidSignature("Webhook secret is not configured")
    if not signature:
        raise InvalidSignature("Missing webhook signature")
    expected = compute_signature(secret, body)
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise InvalidSignature("Invalid webhook signature")


class PaymentGatewayBase(ABC):
    """
    Minimal gateway interface. Implementations are side-effect free until a
    method makes a network call to the gateway.
    """

    name: str = ""
    reference_prefix: str = ""
    buy_type: int = 0
    signature_header: str = ""
    # Event types that trigger reconciliation of the referenced transaction
    reconcile_events: FrozenSet[str] = frozenset()

    def generate_reference(self) -> str:
        """Return a fresh reference of the form PREFIX_<ms>_<random>."""
        millis = int(time.time() * 1000)
        return f"{self.reference_prefix}_{millis}_{secrets.token_hex(4)}".upper()

    def owns_reference(self, reference: str) -> bool:
        return reference.upper().startswith(f"{self.reference_prefix}_")

    @abstractmethod
    async def initialize(self, request: InitializePaymentRequest) -> InitializedPayment:
        """
        Create a checkout session and return the URL the customer pays at.
        """
        raise NotImplementedError

    @abstractmethod
    async def verify(self, reference: str) -> GatewayVerification:
        """
        Ask the gateway for the authoritative status of a payment.

        Raises VerificationUnavailable when the gateway cannot be reached.
        """
        raise NotImplementedError

    @abstractmethod
    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> GatewayEvent:
        """
        Validate the signature over the raw body and canonicalize the event.

        Raises InvalidSignature on a missing or mismatched signature.
        """
        raise NotImplementedError


def json_or_empty(response: httpx.Response) -> Dict[str, Any]:
    """Decode a JSON object response body, or return {} for anything else."""
    try:
        body = response.json()
    except ValueError:
        return {}
    return body if isinstance(body, dict) else {}


def parse_json_body(body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(body)
    except ValueError as e:
        raise ValueError("Webhook body is not valid JSON") from e
    if not isinstance(payload, dict):
        raise ValueError("Webhook body is not a JSON object")
    return payload


def data_object(payload: Dict[str, Any]) -> Dict[str, Any]:
    """The payload's "data" member when it is a JSON object, otherwise {}."""
    data = payload.get("data")
    return data if isinstance(data, dict) else {}
