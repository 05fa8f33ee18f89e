"""Meter platform client, token handling and simulator."""

from .results import (
    CreditResult,
    normalize_response,
    translate_error_message,
    is_token_expired_message,
)
from .client import IotClient
from .auth import AdminTokenProvider
from .simulator import (
    SimulatorMeterPlatform,
    MeterScenario,
    CreditCall,
    SimulatedMeter,
)

__all__ = [
    "CreditResult",
    "normalize_response",
    "translate_error_message",
    "is_token_expired_message",
    "IotClient",
    "AdminTokenProvider",
    "SimulatorMeterPlatform",
    "MeterScenario",
    "CreditCall",
    "SimulatedMeter",
]
