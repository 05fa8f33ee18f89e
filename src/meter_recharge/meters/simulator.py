"""In-memory meter platform for tests and local development."""

import asyncio
import logging
from typing import Dict, Any, List, Optional
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .results import CreditResult
from ..errors import MeterCreditAmbiguous

logger = logging.getLogger(__name__)


class MeterScenario(str, Enum):
    """Scripted behaviors for the next credit calls."""
    ACCEPT = "accept"
    REJECT = "reject"
    TIMEOUT = "timeout"
    # Platform applies the credit but the confirmation is lost
    TIMEOUT_AFTER_APPLY = "timeout_after_apply"
    TOKEN_EXPIRED = "token_expired"


@dataclass
class CreditCall:
    """One recorded sale_power call."""
    meter_id: str
    amount_minor: int
    buy_type: int
    sale_id: str
    token: str
    at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class SimulatedMeter:
    meter_id: str
    balance_minor: int = 0
    applied_sale_ids: List[str] = field(default_factory=list)


class SimulatorMeterPlatform:
    """
    Stand-in for IotClient.

    Features:
    - Meters with balances
    - A queue of scripted outcomes consumed one per credit call
    - Optional response delay to widen race windows in tests
    - Every credit call recorded
    """

    def __init__(
        self,
        meters: Optional[Dict[str, int]] = None,
        delay_ms: int = 0,
        valid_token: Optional[str] = None,
        dedupes_sale_ids: bool = False,
    ):
        self.meters: Dict[str, SimulatedMeter] = {
            meter_id: SimulatedMeter(meter_id=meter_id, balance_minor=balance)
            for meter_id, balance in (meters or {}).items()
        }
        self.delay_ms = delay_ms
        self.valid_token = valid_token
        self.dedupes_sale_ids = dedupes_sale_ids
        self.calls: List[CreditCall] = []
        self.info_calls = 0
        self._script: List[MeterScenario] = []
        self.reject_message = "Meter is offline"

    def add_meter(self, meter_id: str, balance_minor: int = 0) -> SimulatedMeter:
        meter = SimulatedMeter(meter_id=meter_id, balance_minor=balance_minor)
        self.meters[meter_id] = meter
        return meter

    def script(self, *scenarios: MeterScenario) -> None:
        """Queue outcomes for the next credit calls; afterwards calls are accepted."""
        self._script.extend(MeterScenario(s) for s in scenarios)

    def balance(self, meter_id: str) -> int:
        return self.meters[meter_id].balance_minor

    def credits_applied(self, meter_id: str) -> int:
        """Number of credits that actually landed on a meter."""
        return len(self.meters[meter_id].applied_sale_ids)

    async def login(self, username: str, password: str, user_type: int = 0) -> str:
        self.valid_token = f"sim-token-{len(self.calls)}"
        return self.valid_token

    async def get_meter_info(self, meter_id: str, token: str) -> CreditResult:
        self.info_calls += 1
        meter = self.meters.get(meter_id)
        if meter is None:
            return CreditResult(ok=False, message="Meter not found")
        return CreditResult(ok=True, data={"meterId": meter_id, "balance": meter.balance_minor})

    async def sale_power(
        self,
        meter_id: str,
        amount_minor: int,
        buy_type: int,
        sale_id: str,
        token: str,
    ) -> CreditResult:
        self.calls.append(CreditCall(meter_id, amount_minor, buy_type, sale_id, token))
        if self.delay_ms > 0:
            await asyncio.sleep(self.delay_ms / 1000.0)

        scenario = self._script.pop(0) if self._script else MeterScenario.ACCEPT

        if scenario == MeterScenario.TOKEN_EXPIRED or (self.valid_token and token != self.valid_token):
            return CreditResult(ok=False, message="Token expired", token_expired=True)
        if scenario == MeterScenario.REJECT:
            return CreditResult(ok=False, message=self.reject_message, error_code="500")
        if scenario == MeterScenario.TIMEOUT:
            raise MeterCreditAmbiguous("Simulated meter platform timeout", sale_id=sale_id)

        meter = self.meters.get(meter_id)
        if meter is None:
            return CreditResult(ok=False, message="Meter not found")

        if not (self.dedupes_sale_ids and sale_id in meter.applied_sale_ids):
            meter.balance_minor += amount_minor
            meter.applied_sale_ids.append(sale_id)

        if scenario == MeterScenario.TIMEOUT_AFTER_APPLY:
            raise MeterCreditAmbiguous("Simulated lost confirmation", sale_id=sale_id)

        return CreditResult(
            ok=True,
            data={"saleId": sale_id, "meterId": meter_id, "amount": amount_minor, "balance": meter.balance_minor},
            raw={"success": "1"},
        )

    credit = sale_power
