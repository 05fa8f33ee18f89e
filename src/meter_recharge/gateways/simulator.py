"""Simulator gateway for exercising reconciliation without real gateway calls."""

import json
import asyncio
import logging
from typing import Dict, Any, Optional
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .base import (
    PaymentGatewayBase,
    InitializePaymentRequest,
    InitializedPayment,
    GatewayVerification,
    GatewayEvent,
    compute_signature,
    verify_signature,
    parse_json_body,
    data_object,
)
from ..database.models import BuyType, GatewayStatus
from ..errors import VerificationUnavailable

logger = logging.getLogger(__name__)


class SimulatorScenario(str, Enum):
    """Predefined verification outcomes for the simulator."""
    SUCCESS = "success"
    PENDING = "pending"
    FAILED = "failed"
    ABANDONED = "abandoned"
    UNAVAILABLE = "unavailable"


@dataclass
class SimulatedPayment:
    """In-memory representation of a simulated payment."""
    reference: str
    amount_minor: int
    scenario: SimulatorScenario = SimulatorScenario.PENDING
    # Amount the simulated gateway reports as paid; defaults to amount_minor
    paid_amount_minor: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SimulatorConfig:
    """Configuration for simulator behavior."""
    name: str = "simulator"
    reference_prefix: str = "SIM"
    buy_type: int = BuyType.PAYSTACK.value
    secret: str = "sim_webhook_secret"
    delay_ms: int = 0  # Simulated response delay in ms
    default_scenario: SimulatorScenario = SimulatorScenario.PENDING


class SimulatorGateway(PaymentGatewayBase):
    """
    Simulator gateway for testing payment flows without real gateway calls.

    Features:
    - In-memory payment storage
    - Scriptable verification outcome per reference
    - Partial payment amounts
    - Call counting for asserting "no external calls"
    - Paystack-style webhook signing
    """

    signature_header = "x-simulator-signature"

    def __init__(self, config: Optional[SimulatorConfig] = None):
        """Initialize the simulator with optional configuration."""
        self.config = config or SimulatorConfig()
        self.name = self.config.name
        self.reference_prefix = self.config.reference_prefix
        self.buy_type = self.config.buy_type
        self.reconcile_events = frozenset({"charge.success", "charge.failed"})
        self._payments: Dict[str, SimulatedPayment] = {}
        self.verify_calls: Dict[str, int] = {}
        self.initialize_calls = 0
        logger.info(f"SimulatorGateway {self.name} initialized")

    async def _apply_delay(self) -> None:
        if self.config.delay_ms > 0:
            await asyncio.sleep(self.config.delay_ms / 1000.0)

    @property
    def total_verify_calls(self) -> int:
        return sum(self.verify_calls.values())

    def script(
        self,
        reference: str,
        scenario: SimulatorScenario,
        paid_amount_minor: Optional[int] = None,
        amount_minor: int = 0,
    ) -> SimulatedPayment:
        """Set the outcome verify() reports for a reference (simulator-specific method)."""
        payment = self._payments.get(reference)
        if payment is None:
            payment = SimulatedPayment(reference=reference, amount_minor=amount_minor)
            self._payments[reference] = payment
        payment.scenario = SimulatorScenario(scenario)
        if paid_amount_minor is not None:
            payment.paid_amount_minor = paid_amount_minor
        return payment

    async def initialize(self, request: InitializePaymentRequest) -> InitializedPayment:
        """Register a simulated checkout."""
        await self._apply_delay()
        self.initialize_calls += 1
        self._payments[request.reference] = SimulatedPayment(
            reference=request.reference,
            amount_minor=request.amount_minor,
            scenario=self.config.default_scenario,
            metadata=dict(request.metadata),
        )
        return InitializedPayment(
            reference=request.reference,
            authorization_url=f"https://simulator.local/checkout/{request.reference}",
            access_code=f"sim_{request.reference.lower()}",
            raw={"simulator": True},
        )

    async def verify(self, reference: str) -> GatewayVerification:
        """Report the scripted outcome for a reference."""
        await self._apply_delay()
        self.verify_calls[reference] = self.verify_calls.get(reference, 0) + 1

        payment = self._payments.get(reference)
        if payment is None:
            return GatewayVerification(
                reference=reference,
                status=GatewayStatus.FAILED,
                gateway_status="not_found",
                raw={"simulator": True},
            )

        scenario = payment.scenario
        if scenario == SimulatorScenario.UNAVAILABLE:
            raise VerificationUnavailable("Simulated gateway outage", reference=reference)

        if scenario == SimulatorScenario.SUCCESS:
            paid = payment.paid_amount_minor if payment.paid_amount_minor is not None else payment.amount_minor
            return GatewayVerification(
                reference=reference,
                status=GatewayStatus.SUCCESS,
                confirmed_amount_minor=paid,
                gateway_status="success",
                raw={"simulator": True, "amount": paid},
            )

        if scenario in (SimulatorScenario.FAILED, SimulatorScenario.ABANDONED):
            return GatewayVerification(
                reference=reference,
                status=GatewayStatus.FAILED,
                gateway_status=scenario.value,
                raw={"simulator": True},
            )

        return GatewayVerification(
            reference=reference,
            status=GatewayStatus.PENDING,
            gateway_status="ongoing",
            raw={"simulator": True},
        )

    def sign(self, body: bytes) -> str:
        """Sign a webhook body the way the simulated gateway would."""
        return compute_signature(self.config.secret, body)

    def build_webhook(self, event_type: str, reference: str, **data: Any) -> bytes:
        """Build a webhook body for a reference (simulator-specific method)."""
        return json.dumps({"event": event_type, "data": {"reference": reference, **data}}).encode("utf-8")

    def parse_webhook(self, headers: Dict[str, str], body: bytes) -> GatewayEvent:
        """Validate and parse a simulated webhook payload."""
        verify_signature(self.config.secret, body, headers.get(self.signature_header))
        payload = parse_json_body(body)
        data = data_object(payload)
        return GatewayEvent(
            event_type=str(payload.get("event", "unknown")),
            reference=data.get("reference"),
            raw=payload,
        )
