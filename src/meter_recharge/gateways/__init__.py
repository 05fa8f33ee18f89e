"""Payment gateway adapters."""

from .base import (
    PaymentGatewayBase,
    InitializePaymentRequest,
    InitializedPayment,
    GatewayVerification,
    GatewayEvent,
    compute_signature,
    verify_signature,
)
from .paystack import PaystackGateway
from .ivorypay import IvoryPayGateway, major_to_minor
from .stripe_gateway import StripeGateway
from .simulator import (
    SimulatorGateway,
    SimulatorConfig,
    SimulatorScenario,
    SimulatedPayment,
)
from .registry import GatewayRegistry, get_gateway, build_default_registry

__all__ = [
    # Base classes and models
    "PaymentGatewayBase",
    "InitializePaymentRequest",
    "InitializedPayment",
    "GatewayVerification",
    "GatewayEvent",
    "compute_signature",
    "verify_signature",
    # Gateways
    "PaystackGateway",
    "IvoryPayGateway",
    "major_to_minor",
    "StripeGateway",
    "SimulatorGateway",
    "SimulatorConfig",
    "SimulatorScenario",
    "SimulatedPayment",
    # Lookup
    "GatewayRegistry",
    "get_gateway",
    "build_default_registry",
]
