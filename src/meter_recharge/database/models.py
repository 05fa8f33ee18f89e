"""SQLAlchemy models for the recharge ledger."""

import uuid
import json
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy import (
    String,
    Integer,
    Boolean,
    DateTime,
    Text,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
import enum


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class GatewayStatus(str, enum.Enum):
    """Payment status as confirmed by the gateway."""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class CreditStatus(str, enum.Enum):
    """Progress of the meter credit step for a transaction."""
    NOT_ATTEMPTED = "not_attempted"
    IN_FLIGHT = "in_flight"
    REJECTED = "rejected"
    AMBIGUOUS = "ambiguous"
    CREDITED = "credited"


class BuyType(int, enum.Enum):
    """Origin tag sent to the meter platform with every sale."""
    CASH = 0
    CARD = 1
    PAYSTACK = 3
    IVORYPAY = 4


MANUAL_GATEWAY = "manual"


def dump_json(value: Optional[Dict[str, Any]]) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, default=str)


class Transaction(Base):
    """One payment attempt for one meter recharge."""
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    reference: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)
    gateway: Mapped[str] = mapped_column(String(20), nullable=False)
    meter_id: Mapped[str] = mapped_column(String(50), nullable=False)

    # Amounts in minor units (kobo)
    amount_minor: Mapped[int] = mapped_column(Integer, nullable=False)
    confirmed_amount_minor: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    gateway_status: Mapped[str] = mapped_column(String(20), nullable=False, default=GatewayStatus.PENDING.value)
    buy_type: Mapped[int] = mapped_column(Integer, nullable=False, default=BuyType.PAYSTACK.value)

    # Proof of credit. Set once, only after the platform confirmed the sale.
    sale_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, unique=True)

    # Credit attempt bookkeeping
    credit_status: Mapped[str] = mapped_column(String(20), nullable=False, default=CreditStatus.NOT_ATTEMPTED.value)
    pending_sale_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    credit_claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    credit_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(30), nullable=True)

    # Audit trail: raw gateway responses, recovery timestamps, errors
    metadata_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("ix_transactions_gateway_status", "gateway_status"),
        Index("ix_transactions_created_at", "created_at"),
        Index("ix_transactions_meter_id", "meter_id"),
    )

    @property
    def audit(self) -> Dict[str, Any]:
        """Get the audit metadata as a dictionary."""
        if self.metadata_json:
            return json.loads(self.metadata_json)
        return {}

    @audit.setter
    def audit(self, value: Optional[Dict[str, Any]]) -> None:
        self.metadata_json = dump_json(value)

    @property
    def is_credited(self) -> bool:
        """True once the meter credit is durably recorded."""
        return self.gateway_status == GatewayStatus.SUCCESS.value and self.sale_id is not None

    @property
    def needs_attention(self) -> bool:
        """Payment confirmed by the gateway but the meter credit has not landed."""
        return (
            self.gateway_status == GatewayStatus.PENDING.value
            and self.credit_status in (CreditStatus.REJECTED.value, CreditStatus.AMBIGUOUS.value)
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert transaction to dictionary representation."""
        return {
            "id": self.id,
            "reference": self.reference,
            "gateway": self.gateway,
            "meter_id": self.meter_id,
            "amount_minor": self.amount_minor,
            "confirmed_amount_minor": self.confirmed_amount_minor,
            "gateway_status": self.gateway_status,
            "sale_id": self.sale_id,
            "buy_type": self.buy_type,
            "credit_status": self.credit_status,
            "credit_attempts": self.credit_attempts,
            "needs_attention": self.needs_attention,
            "metadata": self.audit,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class WebhookLog(Base):
    """Append-only audit record of every authentic inbound gateway event."""
    __tablename__ = "webhook_logs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    gateway: Mapped[str] = mapped_column(String(20), nullable=False)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False)
    reference: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)
    payload_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    processed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_webhook_logs_created_at", "created_at"),
    )

    @property
    def payload(self) -> Optional[Dict[str, Any]]:
        """Get payload as dictionary."""
        if self.payload_json:
            return json.loads(self.payload_json)
        return None

    @payload.setter
    def payload(self, value: Optional[Dict[str, Any]]) -> None:
        self.payload_json = dump_json(value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "gateway": self.gateway,
            "event_type": self.event_type,
            "reference": self.reference,
            "payload": self.payload,
            "processed": self.processed,
            "error": self.error,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class RecoveryRun(Base):
    """Persisted bookkeeping for one recovery sweep."""
    __tablename__ = "recovery_runs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    triggered_by: Mapped[str] = mapped_column(String(20), nullable=False, default="admin")
    since: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    candidates: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    credited: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    started_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)
    finished_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_recovery_runs_started_at", "started_at"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "triggered_by": self.triggered_by,
            "since": self.since.isoformat() if self.since else None,
            "until": self.until.isoformat() if self.until else None,
            "candidates": self.candidates,
            "credited": self.credited,
            "failed": self.failed,
            "skipped": self.skipped,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
