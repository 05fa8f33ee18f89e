"""Database module for the recharge ledger."""

from .models import (
    Transaction,
    WebhookLog,
    RecoveryRun,
    Base,
    GatewayStatus,
    CreditStatus,
    BuyType,
    MANUAL_GATEWAY,
)
from .session import (
    get_db,
    get_session_factory,
    get_database_url,
    init_db,
    close_db,
    create_async_engine,
    get_async_session_factory,
)
from .repository import (
    TransactionRepository,
    WebhookLogRepository,
    RecoveryRunRepository,
    DEFAULT_CLAIM_TTL,
)

__all__ = [
    # Models
    "Transaction",
    "WebhookLog",
    "RecoveryRun",
    "Base",
    "GatewayStatus",
    "CreditStatus",
    "BuyType",
    "MANUAL_GATEWAY",
    # Session management
    "get_db",
    "get_session_factory",
    "get_database_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "get_async_session_factory",
    # Repositories
    "TransactionRepository",
    "WebhookLogRepository",
    "RecoveryRunRepository",
    "DEFAULT_CLAIM_TTL",
]
