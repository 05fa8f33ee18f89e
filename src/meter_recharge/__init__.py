# meter_recharge package
__version__ = "0.1.0"

from .database import (
    Transaction,
    WebhookLog,
    RecoveryRun,
    GatewayStatus,
    CreditStatus,
    BuyType,
    init_db,
    close_db,
    get_db,
)
from .errors import (
    ReconciliationError,
    TransactionNotFound,
    VerificationUnavailable,
    MeterCreditRejected,
    MeterCreditAmbiguous,
    InvalidSignature,
)

# Reconciliation exports
from .reconciliation import (
    ReconciliationEngine,
    ReconcileOutcome,
    ReconcileResult,
    RecoveryReport,
    RecoveryRequest,
    RecoveryReportGenerator,
    build_engine,
)
