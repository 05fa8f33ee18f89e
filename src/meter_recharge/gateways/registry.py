"""Gateway lookup by name and by reference prefix."""

import logging
from typing import Dict, Iterable, List, Optional

from .base import PaymentGatewayBase
from ..errors import UnknownGateway

logger = logging.getLogger(__name__)


class GatewayRegistry:
    """Registered gateways, addressable by name or by the prefix of a reference."""

    def __init__(self, gateways: Optional[Iterable[PaymentGatewayBase]] = None):
        self._gateways: Dict[str, PaymentGatewayBase] = {}
        for gateway in gateways or []:
            self.register(gateway)

    def register(self, gateway: PaymentGatewayBase) -> None:
        self._gateways[gateway.name] = gateway

    def get(self, name: str) -> PaymentGatewayBase:
        gateway = self._gateways.get(name)
        if gateway is None:
            raise UnknownGateway(f"Payment gateway '{name}' is not supported")
        return gateway

    def for_reference(self, reference: str) -> Optional[PaymentGatewayBase]:
        """Return the gateway whose reference prefix the reference carries."""
        for gateway in self._gateways.values():
            if gateway.owns_reference(reference):
                return gateway
        return None

    def reference_prefixes(self) -> List[str]:
        return [f"{gateway.reference_prefix}_" for gateway in self._gateways.values()]

    def names(self) -> List[str]:
        return list(self._gateways)

    def __contains__(self, name: str) -> bool:
        return name in self._gateways


def get_gateway(name: str) -> PaymentGatewayBase:
    """Factory function to build a gateway configured from the environment.

    Args:
        name: Gateway name.

    Returns:
        PaymentGatewayBase implementation for the gateway.

    Raises:
        UnknownGateway: If the gateway is not supported.
    """
    if name == "paystack":
        from .paystack import PaystackGateway
        return PaystackGateway()
    if name == "ivorypay":
        from .ivorypay import IvoryPayGateway
        return IvoryPayGateway()
    if name == "stripe":
        from .stripe_gateway import StripeGateway
        return StripeGateway()
    if name == "simulator":
        from .simulator import SimulatorGateway
        return SimulatorGateway()
    raise UnknownGateway(f"Unsupported payment gateway: {name}")


def build_default_registry(names: Iterable[str] = ("paystack", "ivorypay", "stripe")) -> GatewayRegistry:
    """Build a registry holding the production gateways."""
    registry = GatewayRegistry(get_gateway(name) for name in names)
    logger.info(f"Registered payment gateways: {', '.join(registry.names())}")
    return registry
