"""Error taxonomy for payment reconciliation and meter crediting."""

from typing import Optional, Dict, Any


class ReconciliationError(Exception):
    """Base class for every reconciliation failure.

    Attributes:
        reference: Payment reference the failure relates to, if known.
        detail: Extra structured context (raw responses, codes).
    """

    def __init__(
        self,
        message: str,
        reference: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.reference = reference
        self.detail = detail or {}


class TransactionNotFound(ReconciliationError):
    """No ledger transaction matches the reference. Not retryable."""


class UnknownGateway(ReconciliationError):
    """The named payment gateway is not registered."""


class VerificationUnavailable(ReconciliationError):
    """Gateway could not be reached. Retry later; nothing was mutated."""


class PaymentFailed(ReconciliationError):
    """Gateway confirms the payment did not succeed. Terminal."""


class PaymentAbandoned(PaymentFailed):
    """Customer never completed the checkout. Terminal."""


class PaymentStillPending(ReconciliationError):
    """Gateway has not settled the payment yet. Retry later."""


class MeterCreditRejected(ReconciliationError):
    """Meter platform explicitly refused the credit."""


class MeterCreditAmbiguous(ReconciliationError):
    """No confirmation was received from the meter platform.

    The credit may or may not have landed. The attempted sale id must never be
    resubmitted blindly.
    """

    def __init__(
        self,
        message: str,
        reference: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        sale_id: Optional[str] = None,
    ):
        super().__init__(message, reference=reference, detail=detail)
        self.sale_id = sale_id


class MeterTokenExpired(MeterCreditRejected):
    """Meter platform rejected the auth token before processing the request."""


class MeterAuthError(ReconciliationError):
    """Could not obtain a meter platform token."""


class InvalidSignature(ReconciliationError):
    """Webhook body does not carry a valid gateway signature."""
