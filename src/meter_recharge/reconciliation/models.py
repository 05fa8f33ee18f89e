"""Models for payment reconciliation and recovery sweeps."""

import enum
from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..errors import (
    MeterCreditAmbiguous,
    MeterCreditRejected,
    PaymentAbandoned,
    PaymentFailed,
    PaymentStillPending,
    ReconciliationError,
)


def naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Ledger timestamps are naive UTC; convert aware datetimes to match."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


class ReconcileOutcome(str, enum.Enum):
    """Result of reconciling one reference."""
    CREDITED = "credited"
    ALREADY_CREDITED = "already_credited"
    IN_PROGRESS = "in_progress"
    MARKED_FAILED = "marked_failed"
    STILL_PENDING = "still_pending"
    CREDIT_REJECTED = "credit_rejected"
    CREDIT_AMBIGUOUS = "credit_ambiguous"


# Outcomes after which the reference needs no further processing
TERMINAL_OUTCOMES = frozenset({
    ReconcileOutcome.CREDITED,
    ReconcileOutcome.ALREADY_CREDITED,
    ReconcileOutcome.MARKED_FAILED,
})


class RecoveryAction(str, enum.Enum):
    """Operator-facing action recorded for each sweep candidate."""
    CREDITED = "credited"
    MARKED_FAILED = "marked failed"
    NOT_YET_PAID = "skipped - not yet paid"
    VERIFICATION_UNAVAILABLE = "skipped - verification unavailable"
    ALREADY_CREDITED = "skipped - already credited"
    IN_PROGRESS = "skipped - credit in progress"
    DRY_RUN = "dry run - not processed"
    CREDIT_FAILED = "failed to credit meter"
    ERROR = "error"


OUTCOME_ACTIONS = {
    ReconcileOutcome.CREDITED: RecoveryAction.CREDITED,
    ReconcileOutcome.ALREADY_CREDITED: RecoveryAction.ALREADY_CREDITED,
    ReconcileOutcome.IN_PROGRESS: RecoveryAction.IN_PROGRESS,
    ReconcileOutcome.MARKED_FAILED: RecoveryAction.MARKED_FAILED,
    ReconcileOutcome.STILL_PENDING: RecoveryAction.NOT_YET_PAID,
    ReconcileOutcome.CREDIT_REJECTED: RecoveryAction.CREDIT_FAILED,
    ReconcileOutcome.CREDIT_AMBIGUOUS: RecoveryAction.CREDIT_FAILED,
}


class ReconcileResult(BaseModel):
    """Outcome of reconcile() together with the ledger state it left behind."""
    reference: str = Field(..., description="Payment reference")
    outcome: ReconcileOutcome = Field(..., description="What reconciliation did")
    gateway_status: str = Field(..., description="Ledger gateway status after reconciliation")
    credit_status: str = Field(..., description="Ledger credit status after reconciliation")
    meter_id: str = Field(..., description="Meter the payment is for")
    sale_id: Optional[str] = Field(None, description="Sale id, set only once credited")
    amount_minor: int = Field(..., description="Amount credited or to be credited, minor units")
    message: Optional[str] = Field(None, description="Human-readable detail")

    @property
    def is_terminal(self) -> bool:
        return self.outcome in TERMINAL_OUTCOMES

    def to_error(self) -> Optional[ReconciliationError]:
        """The error describing why this reference is not credited, if any."""
        message = self.message or self.outcome.value
        if self.outcome == ReconcileOutcome.MARKED_FAILED:
            if self.message == "abandoned":
                return PaymentAbandoned(message, reference=self.reference)
            return PaymentFailed(message, reference=self.reference)
        if self.outcome == ReconcileOutcome.STILL_PENDING:
            return PaymentStillPending(message, reference=self.reference)
        if self.outcome == ReconcileOutcome.CREDIT_REJECTED:
            return MeterCreditRejected(message, reference=self.reference)
        if self.outcome == ReconcileOutcome.CREDIT_AMBIGUOUS:
            return MeterCreditAmbiguous(message, reference=self.reference)
        return None


class RecoveryItem(BaseModel):
    """One candidate's line in a recovery report."""
    reference: str
    meter_id: str
    amount_minor: int
    gateway_status: str
    created_at: Optional[datetime] = None
    outcome: Optional[ReconcileOutcome] = None
    action: RecoveryAction
    sale_id: Optional[str] = None
    error: Optional[str] = None

    def to_result_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "meterId": self.meter_id,
            "amount": self.amount_minor,
            "status": self.gateway_status,
            "action": self.action.value,
            "saleId": self.sale_id,
            "error": self.error,
        }


class RecoveryReport(BaseModel):
    """Aggregate result of a recovery sweep."""
    run_id: Optional[str] = Field(None, description="Persisted recovery run id; None for dry runs")
    dry_run: bool = False
    triggered_by: str = "admin"
    since: Optional[datetime] = None
    until: Optional[datetime] = None
    started_at: datetime = Field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None

    candidates: int = 0
    credited: int = 0
    failed: int = 0
    skipped: int = 0
    items: List[RecoveryItem] = Field(default_factory=list)
    message: str = ""

    @property
    def errors(self) -> int:
        return sum(1 for item in self.items if item.action == RecoveryAction.ERROR)

    def tally(self) -> None:
        """Recompute the aggregate counts from the items."""
        self.candidates = len(self.items)
        self.credited = sum(1 for item in self.items if item.action == RecoveryAction.CREDITED)
        self.failed = sum(1 for item in self.items if item.action == RecoveryAction.CREDIT_FAILED)
        self.skipped = self.candidates - self.credited - self.failed

    def to_summary_dict(self) -> Dict[str, Any]:
        """Return a summary of the report without itemized results."""
        return {
            "run_id": self.run_id,
            "dry_run": self.dry_run,
            "triggered_by": self.triggered_by,
            "since": self.since.isoformat() if self.since else None,
            "until": self.until.isoformat() if self.until else None,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "statistics": {
                "candidates": self.candidates,
                "credited": self.credited,
                "failed": self.failed,
                "skipped": self.skipped,
                "errors": self.errors,
            },
            "message": self.message,
        }

    def to_response_dict(self) -> Dict[str, Any]:
        """Return the admin endpoint's response body."""
        return {
            "message": self.message,
            "dryRun": self.dry_run,
            "credited": self.credited,
            "failed": self.failed,
            "skipped": self.skipped,
            "results": [item.to_result_dict() for item in self.items],
        }


class RecoveryRequest(BaseModel):
    """Request body for a recovery sweep."""
    model_config = ConfigDict(populate_by_name=True)

    since: Optional[datetime] = Field(None, description="Only transactions created at or after this time")
    until: Optional[datetime] = Field(None, description="Only transactions created at or before this time")
    dry_run: bool = Field(default=False, alias="dryRun", description="List candidates without processing them")
    concurrency: int = Field(default=1, ge=1, le=10, description="Candidates reconciled in parallel")

    @model_validator(mode="after")
    def check_window(self) -> "RecoveryRequest":
        self.since = naive_utc(self.since)
        self.until = naive_utc(self.until)
        if self.since and self.until and self.since > self.until:
            raise ValueError("since must not be after until")
        return self
