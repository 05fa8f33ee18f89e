"""Repository layer for ledger persistence operations.

Every state transition that guards meter crediting is a single conditional
UPDATE whose row count tells the caller whether it won. Callers never decide
from a previously read row alone.
"""

import logging
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Sequence

from sqlalchemy import select, update, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    Transaction,
    WebhookLog,
    RecoveryRun,
    GatewayStatus,
    CreditStatus,
    BuyType,
    MANUAL_GATEWAY,
    dump_json,
)

logger = logging.getLogger(__name__)

# A claim older than this is assumed to belong to a crashed worker
DEFAULT_CLAIM_TTL = timedelta(minutes=10)


class TransactionRepository:
    """Repository for Transaction reads and guarded state transitions."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def create_pending(
        self,
        reference: str,
        gateway: str,
        meter_id: str,
        amount_minor: int,
        buy_type: int,
        customer_email: Optional[str] = None,
        customer_phone: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """Create a pending transaction at payment-initialization time.

        Args:
            reference: Gateway reference, unique per payment attempt.
            gateway: Gateway name.
            meter_id: Meter to credit once paid.
            amount_minor: Requested amount in minor units.
            buy_type: Origin tag for the meter platform.
            customer_email: Optional customer email.
            customer_phone: Optional customer phone.
            metadata: Optional audit metadata.

        Returns:
            Created Transaction instance.
        """
        if amount_minor <= 0:
            raise ValueError("amount_minor must be positive")

        transaction = Transaction(
            reference=reference,
            gateway=gateway,
            meter_id=meter_id,
            amount_minor=amount_minor,
            buy_type=buy_type,
            gateway_status=GatewayStatus.PENDING.value,
            credit_status=CreditStatus.NOT_ATTEMPTED.value,
            credit_attempts=0,
            customer_email=customer_email,
            customer_phone=customer_phone,
        )
        transaction.audit = metadata or {}

        self.session.add(transaction)
        await self.session.flush()

        logger.info(f"Created pending transaction {reference} for meter {meter_id}")
        return transaction

    async def create_manual_credit(
        self,
        reference: str,
        meter_id: str,
        amount_minor: int,
        sale_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Transaction:
        """Record an admin cash credit the meter platform already confirmed."""
        transaction = Transaction(
            reference=reference,
            gateway=MANUAL_GATEWAY,
            meter_id=meter_id,
            amount_minor=amount_minor,
            confirmed_amount_minor=amount_minor,
            buy_type=BuyType.CASH.value,
            gateway_status=GatewayStatus.SUCCESS.value,
            sale_id=sale_id,
            credit_status=CreditStatus.CREDITED.value,
            credit_attempts=1,
        )
        transaction.audit = metadata or {}

        self.session.add(transaction)
        await self.session.flush()

        logger.info(f"Recorded manual credit {reference} for meter {meter_id}")
        return transaction

    async def get_by_reference(self, reference: str) -> Optional[Transaction]:
        """Get a transaction by its reference, bypassing the identity map.

        Args:
            reference: Payment reference.

        Returns:
            Transaction instance if found, None otherwise.
        """
        result = await self.session.execute(
            select(Transaction)
            .where(Transaction.reference == reference)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_recovery_candidates(
        self,
        reference_prefixes: Sequence[str],
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> List[Transaction]:
        """List gateway-originated transactions stuck in pending, oldest first.

        Manual admin credits never match: they are not gateway-originated and
        carry no gateway reference prefix.

        Args:
            reference_prefixes: Reference prefixes of registered gateways.
            since: Optional inclusive lower bound on created_at.
            until: Optional inclusive upper bound on created_at.
            limit: Optional maximum number of rows.

        Returns:
            List of Transaction instances.
        """
        if not reference_prefixes:
            return []

        conditions = [
            Transaction.gateway_status == GatewayStatus.PENDING.value,
            Transaction.sale_id.is_(None),
            Transaction.gateway != MANUAL_GATEWAY,
            or_(*[Transaction.reference.startswith(prefix, autoescape=True) for prefix in reference_prefixes]),
        ]
        if since is not None:
            conditions.append(Transaction.created_at >= since)
        if until is not None:
            conditions.append(Transaction.created_at <= until)

        query = select(Transaction).where(and_(*conditions)).order_by(Transaction.created_at.asc())
        if limit:
            query = query.limit(limit)

        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def list_needing_attention(self, limit: int = 100) -> List[Transaction]:
        """List transactions whose payment succeeded but whose credit has not landed."""
        result = await self.session.execute(
            select(Transaction)
            .where(
                and_(
                    Transaction.gateway_status == GatewayStatus.PENDING.value,
                    Transaction.credit_status.in_([
                        CreditStatus.REJECTED.value,
                        CreditStatus.AMBIGUOUS.value,
                    ]),
                )
            )
            .order_by(Transaction.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def append_metadata(
        self,
        transaction: Transaction,
        updates: Dict[str, Any],
    ) -> Transaction:
        """Merge updates into a transaction's audit metadata."""
        merged = transaction.audit
        merged.update(updates)
        transaction.audit = merged
        transaction.updated_at = datetime.utcnow()
        await self.session.flush()
        return transaction

    async def mark_failed(
        self,
        transaction: Transaction,
        metadata_updates: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Move a pending, uncredited transaction to failed.

        Returns:
            True if this call performed the transition.
        """
        merged = {**transaction.audit, **(metadata_updates or {})}
        result = await self.session.execute(
            update(Transaction)
            .where(
                and_(
                    Transaction.reference == transaction.reference,
                    Transaction.gateway_status == GatewayStatus.PENDING.value,
                    Transaction.sale_id.is_(None),
                    Transaction.credit_status != CreditStatus.IN_FLIGHT.value,
                )
            )
            .values(
                gateway_status=GatewayStatus.FAILED.value,
                metadata_json=dump_json(merged),
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        won = result.rowcount == 1
        if won:
            logger.info(f"Marked transaction {transaction.reference} failed")
        return won

    async def claim_credit(
        self,
        reference: str,
        sale_id: str,
        claim_ttl: timedelta = DEFAULT_CLAIM_TTL,
        allow_failed: bool = False,
    ) -> bool:
        """Atomically claim the right to call the meter platform.

        Succeeds only if no sale id is recorded and no live claim exists. A
        claim older than claim_ttl is treated as abandoned.

        Args:
            reference: Payment reference.
            sale_id: Idempotency key for this credit attempt.
            claim_ttl: Age after which an in-flight claim may be taken over.
            allow_failed: Permit claiming a transaction marked failed
                (explicit manual override only).

        Returns:
            True if this caller now holds the claim.
        """
        now = datetime.utcnow()
        statuses = [GatewayStatus.PENDING.value]
        if allow_failed:
            statuses.append(GatewayStatus.FAILED.value)

        result = await self.session.execute(
            update(Transaction)
            .where(
                and_(
                    Transaction.reference == reference,
                    Transaction.sale_id.is_(None),
                    Transaction.gateway_status.in_(statuses),
                    or_(
                        Transaction.credit_status != CreditStatus.IN_FLIGHT.value,
                        Transaction.credit_claimed_at.is_(None),
                        Transaction.credit_claimed_at < now - claim_ttl,
                    ),
                )
            )
            .values(
                credit_status=CreditStatus.IN_FLIGHT.value,
                pending_sale_id=sale_id,
                credit_claimed_at=now,
                credit_attempts=Transaction.credit_attempts + 1,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        won = result.rowcount == 1
        logger.debug(f"Credit claim for {reference} with sale id {sale_id}: {'won' if won else 'lost'}")
        return won

    async def record_credit_success(
        self,
        reference: str,
        sale_id: str,
        confirmed_amount_minor: int,
        metadata_updates: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Durably record a confirmed meter credit.

        This is the point after which the reference is never credited again.
        The write only lands if the caller still holds the claim for sale_id.

        Returns:
            True if the credit was recorded.
        """
        current = await self.get_by_reference(reference)
        if current is None:
            return False
        merged = {**current.audit, **(metadata_updates or {})}

        result = await self.session.execute(
            update(Transaction)
            .where(
                and_(
                    Transaction.reference == reference,
                    Transaction.sale_id.is_(None),
                    Transaction.pending_sale_id == sale_id,
                    Transaction.credit_status == CreditStatus.IN_FLIGHT.value,
                )
            )
            .values(
                gateway_status=GatewayStatus.SUCCESS.value,
                sale_id=sale_id,
                credit_status=CreditStatus.CREDITED.value,
                pending_sale_id=None,
                credit_claimed_at=None,
                confirmed_amount_minor=confirmed_amount_minor,
                metadata_json=dump_json(merged),
                updated_at=datetime.utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount == 1

    async def release_claim(
        self,
        reference: str,
        sale_id: str,
        credit_status: str,
        confirmed_amount_minor: Optional[int] = None,
        metadata_updates: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """Release a claim after a rejected or unconfirmed credit attempt.

        gateway_status is left untouched so the transaction stays visible as
        needing attention rather than failed.
        """
        if credit_status not in (CreditStatus.REJECTED.value, CreditStatus.AMBIGUOUS.value):
            raise ValueError(f"Cannot release a claim into status {credit_status}")

        current = await self.get_by_reference(reference)
        if current is None:
            return False
        merged = {**current.audit, **(metadata_updates or {})}

        values: Dict[str, Any] = {
            "credit_status": credit_status,
            "pending_sale_id": None,
            "credit_claimed_at": None,
            "metadata_json": dump_json(merged),
            "updated_at": datetime.utcnow(),
        }
        if confirmed_amount_minor is not None:
            values["confirmed_amount_minor"] = confirmed_amount_minor

        result = await self.session.execute(
            update(Transaction)
            .where(
                and_(
                    Transaction.reference == reference,
                    Transaction.pending_sale_id == sale_id,
                    Transaction.credit_status == CreditStatus.IN_FLIGHT.value,
                )
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self.session.flush()
        return result.rowcount == 1


class WebhookLogRepository:
    """Repository for the append-only webhook audit log."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        gateway: str,
        event_type: str,
        reference: Optional[str],
        payload: Optional[Dict[str, Any]],
        processed: bool = False,
        error: Optional[str] = None,
    ) -> WebhookLog:
        """Append a webhook log row."""
        log = WebhookLog(
            gateway=gateway,
            event_type=event_type,
            reference=reference,
            processed=processed,
            error=error,
        )
        log.payload = payload

        self.session.add(log)
        await self.session.flush()

        logger.debug(f"Logged {gateway} webhook {event_type} for {reference}")
        return log

    async def get_by_id(self, log_id: str) -> Optional[WebhookLog]:
        result = await self.session.execute(
            select(WebhookLog).where(WebhookLog.id == log_id)
        )
        return result.scalar_one_or_none()

    async def mark_processed(self, log: WebhookLog) -> WebhookLog:
        log.processed = True
        log.error = None
        await self.session.flush()
        return log

    async def mark_failed(self, log: WebhookLog, error: str) -> WebhookLog:
        log.processed = False
        log.error = error
        await self.session.flush()
        return log

    async def list_by_reference(self, reference: str) -> List[WebhookLog]:
        """Get log rows for a reference, oldest first."""
        result = await self.session.execute(
            select(WebhookLog)
            .where(WebhookLog.reference == reference)
            .order_by(WebhookLog.created_at.asc())
        )
        return list(result.scalars().all())


class RecoveryRunRepository:
    """Repository for persisted recovery sweep bookkeeping."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def start(
        self,
        triggered_by: str,
        candidates: int,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> RecoveryRun:
        run = RecoveryRun(
            triggered_by=triggered_by,
            since=since,
            until=until,
            candidates=candidates,
            credited=0,
            failed=0,
            skipped=0,
            started_at=datetime.utcnow(),
        )
        self.session.add(run)
        await self.session.flush()
        return run

    async def finish(
        self,
        run_id: str,
        credited: int,
        failed: int,
        skipped: int,
    ) -> Optional[RecoveryRun]:
        result = await self.session.execute(
            select(RecoveryRun).where(RecoveryRun.id == run_id)
        )
        run = result.scalar_one_or_none()
        if run is None:
            return None
        run.credited = credited
        run.failed = failed
        run.skipped = skipped
        run.finished_at = datetime.utcnow()
        await self.session.flush()
        return run

    async def latest(self) -> Optional[RecoveryRun]:
        """Get the most recently started sweep."""
        result = await self.session.execute(
            select(RecoveryRun).order_by(RecoveryRun.started_at.desc()).limit(1)
        )
        return result.scalar_one_or_none()
