"""Strategies for minting meter platform sale ids."""

import time
import uuid
import secrets
from abc import ABC, abstractmethod


class SaleIdStrategy(ABC):
    """Mints the idempotency key for one credit attempt.

    The only hard requirement is that every call returns a value never
    returned before.
    """

    @abstractmethod
    def new_sale_id(self, reference: str) -> str:
        raise NotImplementedError


class TimestampSaleIdStrategy(SaleIdStrategy):
    """Millisecond timestamp followed by a random numeric suffix.

    Keeps the all-digit shape of historical sale ids on the platform.
    """

    def __init__(self, suffix_digits: int = 6):
        self.suffix_digits = suffix_digits

    def new_sale_id(self, reference: str) -> str:
        millis = int(time.time() * 1000)
        suffix = secrets.randbelow(10 ** self.suffix_digits)
        return f"{millis}{suffix:0{self.suffix_digits}d}"


class UuidSaleIdStrategy(SaleIdStrategy):
    def new_sale_id(self, reference: str) -> str:
        return uuid.uuid4().hex


def get_sale_id_strategy(name: str = "timestamp") -> SaleIdStrategy:
    """Factory function for sale id strategies.

    Raises:
        ValueError: If the strategy is not supported.
    """
    if name == "timestamp":
        return TimestampSaleIdStrategy()
    if name == "uuid":
        return UuidSaleIdStrategy()
    raise ValueError(f"Unsupported sale id strategy: {name}")
