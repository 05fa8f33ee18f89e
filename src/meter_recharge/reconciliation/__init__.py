"""Reconciliation module for meter recharges.

This module turns a confirmed gateway payment into exactly one meter credit.

Features:
- Reconcile a single reference against its gateway and the meter platform
- Compare-and-set credit claims so concurrent callers credit at most once
- Recovery sweeps over pending transactions, with dry runs
- JSON, CSV and text sweep reports
"""

from .models import (
    ReconcileOutcome,
    ReconcileResult,
    RecoveryAction,
    RecoveryItem,
    RecoveryReport,
    RecoveryRequest,
    TERMINAL_OUTCOMES,
)
from .sale_ids import (
    SaleIdStrategy,
    TimestampSaleIdStrategy,
    UuidSaleIdStrategy,
    get_sale_id_strategy,
)
from .engine import ReconciliationEngine, build_engine, RECOVERED_EVENT_TYPE
from .report import RecoveryReportGenerator, REPORT_FORMATS

__all__ = [
    # Models
    "ReconcileOutcome",
    "ReconcileResult",
    "RecoveryAction",
    "RecoveryItem",
    "RecoveryReport",
    "RecoveryRequest",
    "TERMINAL_OUTCOMES",
    # Sale ids
    "SaleIdStrategy",
    "TimestampSaleIdStrategy",
    "UuidSaleIdStrategy",
    "get_sale_id_strategy",
    # Core Components
    "ReconciliationEngine",
    "build_engine",
    "RECOVERED_EVENT_TYPE",
    "RecoveryReportGenerator",
    "REPORT_FORMATS",
]
