"""Reconciliation engine: turns a verified payment into exactly one meter credit."""

import os
import asyncio
import secrets
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database import (
    Transaction,
    BuyType,
    GatewayStatus,
    CreditStatus,
    TransactionRepository,
    WebhookLogRepository,
    RecoveryRunRepository,
    DEFAULT_CLAIM_TTL,
)
from ..errors import (
    MeterAuthError,
    MeterCreditAmbiguous,
    MeterCreditRejected,
    MeterTokenExpired,
    ReconciliationError,
    TransactionNotFound,
    VerificationUnavailable,
)
from ..gateways import GatewayRegistry, GatewayVerification, build_default_registry
from ..meters import AdminTokenProvider, CreditResult, IotClient
from .models import (
    OUTCOME_ACTIONS,
    ReconcileOutcome,
    ReconcileResult,
    RecoveryAction,
    RecoveryItem,
    RecoveryReport,
    naive_utc,
)
from .sale_ids import SaleIdStrategy, TimestampSaleIdStrategy, get_sale_id_strategy

logger = logging.getLogger(__name__)

RECOVERED_EVENT_TYPE = "charge.success.recovered"

# Triggers allowed to retry a credit the meter platform never confirmed
FOLLOW_UP_TRIGGERS = frozenset({"recovery", "admin", "cli"})


def platform_idempotent_from_env() -> bool:
    return os.getenv("METER_PLATFORM_IDEMPOTENT", "false").strip().lower() in ("1", "true", "yes")


class ReconciliationEngine:
    """Reconciles payment references against the gateway and the meter platform.

    Every ledger transition runs in its own short transaction and is committed
    before the next external call. The compare-and-set claim on the
    transaction row, not any in-process lock, guarantees that at most one
    caller talks to the meter platform for a reference at a time.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        gateways: GatewayRegistry,
        meter_client: IotClient,
        token_provider: AdminTokenProvider,
        sale_ids: Optional[SaleIdStrategy] = None,
        claim_ttl: timedelta = DEFAULT_CLAIM_TTL,
        platform_idempotent: Optional[bool] = None,
    ):
        """Initialize the engine.

        Args:
            session_factory: Factory for ledger sessions.
            gateways: Registered payment gateways.
            meter_client: Meter platform client.
            token_provider: Source of meter platform admin tokens.
            sale_ids: Sale id strategy. Defaults to timestamp-based ids.
            claim_ttl: Age after which an unfinished credit claim may be taken over.
            platform_idempotent: Whether the meter platform is known to
                deduplicate a repeated sale id. Defaults to METER_PLATFORM_IDEMPOTENT.
        """
        self.session_factory = session_factory
        self.gateways = gateways
        self.meter_client = meter_client
        self.token_provider = token_provider
        self.sale_ids = sale_ids or TimestampSaleIdStrategy()
        self.claim_ttl = claim_ttl
        self.platform_idempotent = (
            platform_idempotent if platform_idempotent is not None else platform_idempotent_from_env()
        )

    async def _load(self, reference: str) -> Optional[Transaction]:
        async with self.session_factory() as session:
            return await TransactionRepository(session).get_by_reference(reference)

    def _result(
        self,
        transaction: Transaction,
        outcome: ReconcileOutcome,
        amount_minor: Optional[int] = None,
        message: Optional[str] = None,
    ) -> ReconcileResult:
        if amount_minor is None:
            amount_minor = transaction.confirmed_amount_minor or transaction.amount_minor
        return ReconcileResult(
            reference=transaction.reference,
            outcome=outcome,
            gateway_status=transaction.gateway_status,
            credit_status=transaction.credit_status,
            meter_id=transaction.meter_id,
            sale_id=transaction.sale_id,
            amount_minor=amount_minor,
            message=message,
        )

    def _result_from_state(self, transaction: Transaction) -> ReconcileResult:
        """Describe a transaction somebody else is working on or has finished."""
        if transaction.is_credited:
            return self._result(transaction, ReconcileOutcome.ALREADY_CREDITED)
        if transaction.gateway_status == GatewayStatus.FAILED.value:
            return self._result(transaction, ReconcileOutcome.MARKED_FAILED)
        return self._result(
            transaction,
            ReconcileOutcome.IN_PROGRESS,
            message="Another worker holds the credit claim",
        )

    async def reconcile(
        self,
        reference: str,
        allow_failed: bool = False,
        trigger: str = "webhook",
    ) -> ReconcileResult:
        """Reconcile one payment reference.

        Args:
            reference: Payment reference.
            allow_failed: Re-verify a transaction already marked failed. Only
                for an explicit operator override.
            trigger: What asked for reconciliation (webhook, recovery, verify, admin).

        Returns:
            ReconcileResult describing what happened.

        Raises:
            TransactionNotFound: No transaction has this reference.
            VerificationUnavailable: The gateway could not be asked. Nothing was changed.
            UnknownGateway: The transaction's gateway is not registered.
        """
        transaction = await self._load(reference)
        if transaction is None:
            raise TransactionNotFound(f"Transaction {reference} not found", reference=reference)

        if transaction.is_credited:
            logger.info(f"Transaction {reference} already credited with sale id {transaction.sale_id}")
            return self._result(transaction, ReconcileOutcome.ALREADY_CREDITED)

        if transaction.gateway_status == GatewayStatus.FAILED.value and not allow_failed:
            return self._result(transaction, ReconcileOutcome.MARKED_FAILED)

        if self._awaiting_follow_up(transaction, trigger):
            logger.warning(f"Credit for {reference} is unconfirmed; leaving it for recovery or an operator")
            return self._result(
                transaction, ReconcileOutcome.CREDIT_AMBIGUOUS, message="Meter credit unconfirmed; awaiting follow-up"
            )

        gateway = self.gateways.get(transaction.gateway)
        verification = await gateway.verify(reference)

        if verification.status == GatewayStatus.FAILED:
            return await self._mark_failed(transaction, verification)

        if verification.status == GatewayStatus.PENDING:
            logger.info(f"Transaction {reference} not yet paid (gateway status {verification.gateway_status})")
            return self._result(transaction, ReconcileOutcome.STILL_PENDING, message="Payment not yet completed")

        confirmed = verification.confirmed_amount_minor
        if confirmed is None or confirmed <= 0:
            raise VerificationUnavailable(
                f"Gateway confirmed {reference} without a usable amount",
                reference=reference,
                detail={"raw": verification.raw},
            )

        return await self._credit(transaction, verification, confirmed, allow_failed, trigger)

    async def _mark_failed(
        self,
        transaction: Transaction,
        verification: GatewayVerification,
    ) -> ReconcileResult:
        if transaction.gateway_status == GatewayStatus.FAILED.value:
            return self._result(transaction, ReconcileOutcome.MARKED_FAILED)

        async with self.session_factory() as session:
            won = await TransactionRepository(session).mark_failed(
                transaction,
                {
                    "failure_reason": verification.gateway_status,
                    "failed_at": datetime.utcnow().isoformat(),
                    "verification_response": verification.raw,
                },
            )
            await session.commit()

        current = await self._load(transaction.reference)
        if not won:
            return self._result_from_state(current)

        logger.info(f"Transaction {transaction.reference} marked failed ({verification.gateway_status})")
        return self._result(current, ReconcileOutcome.MARKED_FAILED, message=verification.gateway_status)

    def _next_sale_id(self, transaction: Transaction) -> str:
        """Mint a sale id, or reuse the last unconfirmed one on an idempotent platform."""
        if self.platform_idempotent and transaction.credit_status == CreditStatus.AMBIGUOUS.value:
            previous = transaction.audit.get("ambiguous_sale_ids") or []
            if previous:
                return previous[-1]
        return self.sale_ids.new_sale_id(transaction.reference)

    def _awaiting_follow_up(self, transaction: Transaction, trigger: str) -> bool:
        if transaction.credit_status != CreditStatus.AMBIGUOUS.value or trigger in FOLLOW_UP_TRIGGERS:
            return False
        # Resubmitting the same key is only safe where the platform dedupes it
        return not self.platform_idempotent

    async def _call_meter(self, transaction: Transaction, amount_minor: int, sale_id: str) -> CreditResult:
        """Credit the meter, refreshing the admin token and retrying once if it expired."""
        token = await self.token_provider.get_token()
        result = await self.meter_client.sale_power(
            transaction.meter_id, amount_minor, transaction.buy_type, sale_id, token
        )
        if not result.ok and result.token_expired:
            # The platform refused before processing, so the same sale id is safe
            logger.info(f"Meter platform token expired while crediting {transaction.reference}; refreshing")
            token = await self.token_provider.refresh()
            result = await self.meter_client.sale_power(
                transaction.meter_id, amount_minor, transaction.buy_type, sale_id, token
            )
        return result

    async def _credit(
        self,
        transaction: Transaction,
        verification: GatewayVerification,
        confirmed: int,
        allow_failed: bool,
        trigger: str,
    ) -> ReconcileResult:
        reference = transaction.reference
        sale_id = self._next_sale_id(transaction)

        async with self.session_factory() as session:
            claimed = await TransactionRepository(session).claim_credit(
                reference, sale_id, claim_ttl=self.claim_ttl, allow_failed=allow_failed
            )
            await session.commit()

        if not claimed:
            current = await self._load(reference)
            logger.info(f"Lost credit claim for {reference}; current credit status {current.credit_status}")
            return self._result_from_state(current)

        audit = {"last_credit_attempt_at": datetime.utcnow().isoformat(), "trigger": trigger}
        if confirmed != transaction.amount_minor:
            logger.warning(
                f"Amount mismatch for {reference}: requested {transaction.amount_minor}, confirmed {confirmed}"
            )
            audit["amount_mismatch"] = {"requested": transaction.amount_minor, "confirmed": confirmed}

        logger.info(f"Crediting meter {transaction.meter_id} with {confirmed} for {reference} (sale id {sale_id})")
        try:
            result = await self._call_meter(transaction, confirmed, sale_id)
        except MeterCreditAmbiguous as e:
            return await self._record_ambiguous(transaction, sale_id, confirmed, audit, e.message)
        except MeterAuthError as e:
            # No token means no request was sent
            result = CreditResult(ok=False, message=e.message)
        except Exception as e:
            logger.exception(f"Unexpected error crediting {reference}")
            await self._record_ambiguous(transaction, sale_id, confirmed, audit, str(e))
            raise

        if not result.ok:
            return await self._record_rejected(transaction, sale_id, confirmed, audit, result)

        return await self._record_success(transaction, verification, sale_id, confirmed, audit, result, trigger)

    async def _record_success(
        self,
        transaction: Transaction,
        verification: GatewayVerification,
        sale_id: str,
        confirmed: int,
        audit: dict,
        result: CreditResult,
        trigger: str,
    ) -> ReconcileResult:
        reference = transaction.reference
        now = datetime.utcnow().isoformat()
        audit.update({
            "credited_at": now,
            "credit_response": result.raw,
            "verification_response": verification.raw,
        })
        if trigger == "recovery":
            audit["recovered_at"] = now

        async with self.session_factory() as session:
            recorded = await TransactionRepository(session).record_credit_success(
                reference, sale_id, confirmed, metadata_updates=audit
            )
            if recorded and trigger == "recovery":
                await WebhookLogRepository(session).create(
                    gateway=transaction.gateway,
                    event_type=RECOVERED_EVENT_TYPE,
                    reference=reference,
                    payload={"reference": reference, "sale_id": sale_id, "amount": confirmed, "recovered_at": now},
                    processed=True,
                )
            await session.commit()

        current = await self._load(reference)
        if not recorded:
            # Our claim went stale and was taken over while the platform confirmed our sale
            logger.error(f"Credit {sale_id} for {reference} confirmed after its claim was lost")
            async with self.session_factory() as session:
                repo = TransactionRepository(session)
                orphaned = current.audit.get("orphaned_sale_ids") or []
                await repo.append_metadata(current, {"orphaned_sale_ids": orphaned + [sale_id]})
                await session.commit()
            return self._result_from_state(current)

        logger.info(f"Credited meter {transaction.meter_id} for {reference} with sale id {sale_id}")
        return self._result(current, ReconcileOutcome.CREDITED, amount_minor=confirmed)

    async def _record_rejected(
        self,
        transaction: Transaction,
        sale_id: str,
        confirmed: int,
        audit: dict,
        result: CreditResult,
    ) -> ReconcileResult:
        reference = transaction.reference
        logger.warning(f"Meter platform rejected credit for {reference}: {result.message}")
        audit.update({
            "credit_error": result.message,
            "credit_error_code": result.error_code,
            "rejected_sale_id": sale_id,
        })
        async with self.session_factory() as session:
            await TransactionRepository(session).release_claim(
                reference, sale_id, CreditStatus.REJECTED.value,
                confirmed_amount_minor=confirmed, metadata_updates=audit,
            )
            await session.commit()

        current = await self._load(reference)
        return self._result(current, ReconcileOutcome.CREDIT_REJECTED, amount_minor=confirmed, message=result.message)

    async def _record_ambiguous(
        self,
        transaction: Transaction,
        sale_id: str,
        confirmed: int,
        audit: dict,
        message: str,
    ) -> ReconcileResult:
        reference = transaction.reference
        logger.error(f"No confirmation for credit {sale_id} of {reference}: {message}")

        async with self.session_factory() as session:
            repo = TransactionRepository(session)
            current = await repo.get_by_reference(reference)
            attempted = current.audit.get("ambiguous_sale_ids") or []
            if sale_id not in attempted:
                attempted = attempted + [sale_id]
            audit.update({"credit_error": message, "ambiguous_sale_ids": attempted})
            await repo.release_claim(
                reference, sale_id, CreditStatus.AMBIGUOUS.value,
                confirmed_amount_minor=confirmed, metadata_updates=audit,
            )
            await session.commit()

        current = await self._load(reference)
        return self._result(current, ReconcileOutcome.CREDIT_AMBIGUOUS, amount_minor=confirmed, message=message)

    async def list_candidates(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[Transaction]:
        """Pending gateway-originated transactions, oldest first."""
        async with self.session_factory() as session:
            return await TransactionRepository(session).list_recovery_candidates(
                self.gateways.reference_prefixes(), since=naive_utc(since), until=naive_utc(until)
            )

    async def _recover_one(self, transaction: Transaction) -> RecoveryItem:
        item = RecoveryItem(
            reference=transaction.reference,
            meter_id=transaction.meter_id,
            amount_minor=transaction.amount_minor,
            gateway_status=transaction.gateway_status,
            created_at=transaction.created_at,
            action=RecoveryAction.ERROR,
        )
        try:
            result = await self.reconcile(transaction.reference, trigger="recovery")
        except VerificationUnavailable as e:
            item.action = RecoveryAction.VERIFICATION_UNAVAILABLE
            item.error = e.message
            return item
        except ReconciliationError as e:
            logger.error(f"Recovery of {transaction.reference} failed: {e.message}")
            item.error = e.message
            return item
        except Exception as e:
            logger.exception(f"Unexpected error recovering {transaction.reference}")
            item.error = str(e) or e.__class__.__name__
            return item

        item.outcome = result.outcome
        item.action = OUTCOME_ACTIONS[result.outcome]
        item.gateway_status = result.gateway_status
        item.amount_minor = result.amount_minor
        item.sale_id = result.sale_id
        if result.outcome in (ReconcileOutcome.CREDIT_REJECTED, ReconcileOutcome.CREDIT_AMBIGUOUS):
            item.error = result.message
        return item

    async def recover_pending(
        self,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        dry_run: bool = False,
        concurrency: int = 1,
        triggered_by: str = "admin",
    ) -> RecoveryReport:
        """Sweep pending transactions and reconcile each one.

        Args:
            since: Optional lower bound on creation time.
            until: Optional upper bound on creation time.
            dry_run: Only list the candidates. No writes and no external calls.
            concurrency: Maximum candidates reconciled at once.
            triggered_by: Who started the sweep (admin, cron, cli).

        Returns:
            RecoveryReport accounting for every candidate exactly once.
        """
        since, until = naive_utc(since), naive_utc(until)
        report = RecoveryReport(dry_run=dry_run, triggered_by=triggered_by, since=since, until=until)
        candidates = await self.list_candidates(since, until)

        if dry_run:
            report.items = [
                RecoveryItem(
                    reference=tx.reference,
                    meter_id=tx.meter_id,
                    amount_minor=tx.amount_minor,
                    gateway_status=tx.gateway_status,
                    created_at=tx.created_at,
                    action=RecoveryAction.DRY_RUN,
                )
                for tx in candidates
            ]
            report.tally()
            report.completed_at = datetime.utcnow()
            report.message = f"Dry run: {len(candidates)} pending transaction(s) would be reconciled"
            logger.info(report.message)
            return report

        async with self.session_factory() as session:
            run = await RecoveryRunRepository(session).start(
                triggered_by=triggered_by, candidates=len(candidates), since=since, until=until
            )
            await session.commit()
        report.run_id = run.id

        logger.info(f"Recovery run {run.id} started by {triggered_by} over {len(candidates)} candidate(s)")

        semaphore = asyncio.Semaphore(max(1, concurrency))

        async def process(tx: Transaction) -> RecoveryItem:
            async with semaphore:
                return await self._recover_one(tx)

        report.items = list(await asyncio.gather(*(process(tx) for tx in candidates)))
        report.tally()
        report.completed_at = datetime.utcnow()
        report.message = (
            f"Processed {report.candidates} pending transaction(s): "
            f"{report.credited} credited, {report.failed} failed, {report.skipped} skipped"
        )

        async with self.session_factory() as session:
            await RecoveryRunRepository(session).finish(
                run.id, credited=report.credited, failed=report.failed, skipped=report.skipped
            )
            await session.commit()

        logger.info(f"Recovery run {run.id}: {report.message}")
        return report

    async def manual_recharge(
        self,
        meter_id: str,
        amount_minor: int,
        note: Optional[str] = None,
        performed_by: str = "admin",
    ) -> Transaction:
        """Credit a meter for a cash payment and record it once the platform confirms.

        Raises:
            MeterCreditRejected: The platform refused the credit.
            MeterTokenExpired: The token was still refused after one refresh.
            MeterCreditAmbiguous: No confirmation was received; nothing was recorded.
        """
        if amount_minor <= 0:
            raise ValueError("amount_minor must be positive")

        reference = f"ADMIN-{int(datetime.utcnow().timestamp() * 1000)}-{secrets.token_hex(3)}".upper()
        sale_id = self.sale_ids.new_sale_id(reference)
        placeholder = Transaction(
            reference=reference,
            meter_id=meter_id,
            amount_minor=amount_minor,
            buy_type=BuyType.CASH.value,
        )
        result = await self._call_meter(placeholder, amount_minor, sale_id)
        if not result.ok and result.token_expired:
            raise MeterTokenExpired(result.message or "Meter platform rejected the admin token", reference=reference)
        if not result.ok:
            raise MeterCreditRejected(result.message or "Meter platform rejected the credit", reference=reference)

        async with self.session_factory() as session:
            transaction = await TransactionRepository(session).create_manual_credit(
                reference=reference,
                meter_id=meter_id,
                amount_minor=amount_minor,
                sale_id=sale_id,
                metadata={
                    "note": note,
                    "performed_by": performed_by,
                    "credited_at": datetime.utcnow().isoformat(),
                    "credit_response": result.raw,
                },
            )
            await session.commit()

        logger.info(f"Manual recharge {reference} of {amount_minor} credited to meter {meter_id}")
        return transaction


def build_engine(
    session_factory: async_sessionmaker[AsyncSession],
    gateways: Optional[GatewayRegistry] = None,
    meter_client: Optional[IotClient] = None,
    token_provider: Optional[AdminTokenProvider] = None,
) -> ReconciliationEngine:
    """Build an engine wired to the production collaborators configured in the environment."""
    if gateways is None:
        gateways = build_default_registry()
    if meter_client is None:
        meter_client = IotClient()
    if token_provider is None:
        token_provider = AdminTokenProvider(meter_client)
    return ReconciliationEngine(
        session_factory,
        gateways,
        meter_client,
        token_provider,
        sale_ids=get_sale_id_strategy(os.getenv("SALE_ID_STRATEGY", "timestamp")),
    )
