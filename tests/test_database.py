"""Tests for database models and repository layer."""

import pytest
from datetime import datetime, timedelta

from sqlalchemy import update

from meter_recharge.database import (
    Transaction,
    WebhookLog,
    GatewayStatus,
    CreditStatus,
    BuyType,
    MANUAL_GATEWAY,
    TransactionRepository,
    WebhookLogRepository,
    RecoveryRunRepository,
    get_database_url,
)


async def _pending(repo: TransactionRepository, reference: str = "AG_1700000000000_ABC123", **kwargs) -> Transaction:
    fields = dict(
        reference=reference,
        gateway="paystack",
        meter_id="47001234567",
        amount_minor=100000,
        buy_type=BuyType.PAYSTACK.value,
    )
    fields.update(kwargs)
    return await repo.create_pending(**fields)


class TestTransactionModel:
    """Tests for the Transaction model."""

    async def test_create_pending_defaults(self, db_session):
        """A new transaction is pending, uncredited and unattempted."""
        tx = await _pending(TransactionRepository(db_session))

        assert tx.id is not None
        assert tx.gateway_status == GatewayStatus.PENDING.value
        assert tx.credit_status == CreditStatus.NOT_ATTEMPTED.value
        assert tx.sale_id is None
        assert tx.credit_attempts == 0
        assert tx.is_credited is False
        assert tx.created_at is not None

    async def test_audit_property_round_trips_json(self, db_session):
        """Audit metadata is stored as JSON text."""
        tx = await _pending(TransactionRepository(db_session), metadata={"channel": "web"})

        assert tx.audit == {"channel": "web"}
        assert tx.metadata_json is not None

    async def test_to_dict(self, db_session):
        """to_dict exposes ledger fields and audit metadata."""
        tx = await _pending(TransactionRepository(db_session))
        data = tx.to_dict()

        assert data["reference"] == "AG_1700000000000_ABC123"
        assert data["amount_minor"] == 100000
        assert data["gateway_status"] == "pending"
        assert data["sale_id"] is None
        assert data["needs_attention"] is False

    async def test_create_pending_rejects_non_positive_amount(self, db_session):
        """Amounts must be positive."""
        with pytest.raises(ValueError):
            await _pending(TransactionRepository(db_session), amount_minor=0)


class TestCreditClaim:
    """Tests for the compare-and-set credit claim."""

    async def test_first_claim_wins_second_loses(self, db_session):
        """Only one live claim may exist for a reference."""
        repo = TransactionRepository(db_session)
        tx = await _pending(repo)

        assert await repo.claim_credit(tx.reference, "SALE-1") is True
        assert await repo.claim_credit(tx.reference, "SALE-2") is False

        current = await repo.get_by_reference(tx.reference)
        assert current.credit_status == CreditStatus.IN_FLIGHT.value
        assert current.pending_sale_id == "SALE-1"
        assert current.credit_attempts == 1

    async def test_stale_claim_can_be_taken_over(self, db_session):
        """A claim older than the TTL is treated as abandoned."""
        repo = TransactionRepository(db_session)
        tx = await _pending(repo)
        assert await repo.claim_credit(tx.reference, "SALE-1") is True

        await db_session.execute(
            update(Transaction)
            .where(Transaction.reference == tx.reference)
            .values(credit_claimed_at=datetime.utcnow() - timedelta(minutes=30))
        )

        assert await repo.claim_credit(tx.reference, "SALE-2", claim_ttl=timedelta(minutes=10)) is True
        current = await repo.get_by_reference(tx.reference)
        assert current.pending_sale_id == "SALE-2"
        assert current.credit_attempts == 2

    async def test_claim_refused_once_credited(self, db_session):
        """A recorded sale id closes the reference for good."""
        repo = TransactionRepository(db_session)
        tx = await _pending(repo)
        await repo.claim_credit(tx.reference, "SALE-1")
        assert await repo.record_credit_success(tx.reference, "SALE-1", 100000) is True

        assert await repo.claim_credit(tx.reference, "SALE-2") is False
        current = await repo.get_by_reference(tx.reference)
        assert current.is_credited
        assert current.sale_id == "SALE-1"
        assert current.gateway_status == GatewayStatus.SUCCESS.value

    async def test_claim_refused_for_failed_without_override(self, db_session):
        """Failed transactions are only claimable with allow_failed."""
        repo = TransactionRepository(db_session)
        tx = await _pending(repo)
        assert await repo.mark_failed(tx, {"failure_reason": "abandoned"}) is True

        assert await repo.claim_credit(tx.reference, "SALE-1") is False
        assert await repo.claim_credit(tx.reference, "SALE-1", allow_failed=True) is True

    async def test_success_requires_holding_the_claim(self, db_session):
        """A caller whose claim was taken over cannot record success."""
        repo = TransactionRepository(db_session)
        tx = await _pending(repo)
        await repo.claim_credit(tx.reference, "SALE-1")
        await db_session.execute(
            update(Transaction)
            .where(Transaction.reference == tx.reference)
            .values(credit_claimed_at=datetime.utcnow() - timedelta(hours=1))
        )
        await repo.claim_credit(tx.reference, "SALE-2")

        assert await repo.record_credit_success(tx.reference, "SALE-1", 100000) is False
        assert await repo.record_credit_success(tx.reference, "SALE-2", 100000) is True

    async def test_release_claim_keeps_gateway_status(self, db_session):
        """A rejected credit leaves the payment pending and visible for attention."""
        repo = TransactionRepository(db_session)
        tx = await _pending(repo)
        await repo.claim_credit(tx.reference, "SALE-1")

        released = await repo.release_claim(
            tx.reference, "SALE-1", CreditStatus.REJECTED.value,
            confirmed_amount_minor=100000, metadata_updates={"credit_error": "Meter is offline"},
        )

        assert released is True
        current = await repo.get_by_reference(tx.reference)
        assert current.gateway_status == GatewayStatus.PENDING.value
        assert current.credit_status == CreditStatus.REJECTED.value
        assert current.pending_sale_id is None
        assert current.needs_attention is True
        assert current.audit["credit_error"] == "Meter is offline"

    async def test_release_claim_rejects_other_statuses(self, db_session):
        """Claims can only be released into rejected or ambiguous."""
        repo = TransactionRepository(db_session)
        tx = await _pending(repo)
        await repo.claim_credit(tx.reference, "SALE-1")

        with pytest.raises(ValueError):
            await repo.release_claim(tx.reference, "SALE-1", CreditStatus.CREDITED.value)

    async def test_mark_failed_refused_while_in_flight(self, db_session):
        """A transaction being credited is never marked failed."""
        repo = TransactionRepository(db_session)
        tx = await _pending(repo)
        await repo.claim_credit(tx.reference, "SALE-1")

        assert await repo.mark_failed(tx) is False


class TestTransactionQueries:
    """Tests for candidate and attention listings."""

    async def test_recovery_candidates_filters(self, db_session):
        """Only pending, uncredited, gateway-originated rows in the window are listed."""
        repo = TransactionRepository(db_session)
        now = datetime.utcnow()
        old = await _pending(repo, reference="AG_OLD")
        old.created_at = now - timedelta(days=10)
        await _pending(repo, reference="AG_NEW")
        await _pending(repo, reference="IP_OTHER", gateway="ivorypay")
        failed = await _pending(repo, reference="AG_FAILED")
        await repo.mark_failed(failed)
        await repo.create_manual_credit(
            reference="ADMIN-1700000000000-ABC", meter_id="47001234567",
            amount_minor=50000, sale_id="SALE-MANUAL",
        )
        await db_session.flush()

        refs = [tx.reference for tx in await repo.list_recovery_candidates(["AG_"])]
        assert refs == ["AG_OLD", "AG_NEW"]

        windowed = await repo.list_recovery_candidates(["AG_", "IP_"], since=now - timedelta(days=1))
        assert sorted(tx.reference for tx in windowed) == ["AG_NEW", "IP_OTHER"]

    async def test_prefix_match_is_literal(self, db_session):
        """An underscore in a prefix is not a wildcard."""
        repo = TransactionRepository(db_session)
        await _pending(repo, reference="AGX123")

        assert await repo.list_recovery_candidates(["AG_"]) == []

    async def test_no_prefixes_no_candidates(self, db_session):
        repo = TransactionRepository(db_session)
        await _pending(repo)

        assert await repo.list_recovery_candidates([]) == []

    async def test_manual_credit_is_recorded_credited(self, db_session):
        """Manual credits are born credited under the manual gateway."""
        repo = TransactionRepository(db_session)
        tx = await repo.create_manual_credit(
            reference="ADMIN-1700000000000-ABC", meter_id="47001234567",
            amount_minor=50000, sale_id="SALE-MANUAL", metadata={"note": "cash at office"},
        )

        assert tx.gateway == MANUAL_GATEWAY
        assert tx.buy_type == BuyType.CASH.value
        assert tx.is_credited
        assert tx.audit["note"] == "cash at office"

    async def test_list_needing_attention(self, db_session):
        """Rejected and ambiguous credits are surfaced for operators."""
        repo = TransactionRepository(db_session)
        for ref, status in (("AG_R", CreditStatus.REJECTED), ("AG_A", CreditStatus.AMBIGUOUS)):
            tx = await _pending(repo, reference=ref)
            await repo.claim_credit(tx.reference, f"SALE-{ref}")
            await repo.release_claim(tx.reference, f"SALE-{ref}", status.value)
        await _pending(repo, reference="AG_FRESH")

        refs = sorted(tx.reference for tx in await repo.list_needing_attention())
        assert refs == ["AG_A", "AG_R"]


class TestWebhookLogRepository:
    """Tests for the webhook audit log."""

    async def test_create_and_mark(self, db_session):
        """Rows start unprocessed and can be marked either way."""
        repo = WebhookLogRepository(db_session)
        log = await repo.create("paystack", "charge.success", "AG_1", {"event": "charge.success"})

        assert log.processed is False
        assert log.payload == {"event": "charge.success"}

        await repo.mark_failed(log, "boom")
        fetched = await repo.get_by_id(log.id)
        assert fetched.processed is False
        assert fetched.error == "boom"

        await repo.mark_processed(log)
        assert (await repo.get_by_id(log.id)).processed is True
        assert (await repo.get_by_id(log.id)).error is None

    async def test_list_by_reference(self, db_session):
        repo = WebhookLogRepository(db_session)
        await repo.create("paystack", "charge.success", "AG_1", {})
        await repo.create("paystack", "charge.success", "AG_1", {})
        await repo.create("paystack", "charge.success", "AG_2", {})

        logs = await repo.list_by_reference("AG_1")
        assert len(logs) == 2
        assert all(isinstance(log, WebhookLog) for log in logs)


class TestRecoveryRunRepository:
    """Tests for persisted sweep bookkeeping."""

    async def test_start_finish_latest(self, db_session):
        """The latest run reflects the finished counts."""
        repo = RecoveryRunRepository(db_session)
        assert await repo.latest() is None

        run = await repo.start(triggered_by="cron", candidates=3)
        await repo.finish(run.id, credited=2, failed=1, skipped=0)

        latest = await repo.latest()
        assert latest.id == run.id
        assert latest.triggered_by == "cron"
        assert latest.credited == 2
        assert latest.failed == 1
        assert latest.finished_at is not None


class TestDatabaseUrl:
    """Tests for DATABASE_URL handling."""

    def test_postgres_urls_use_asyncpg(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://user:pw@db/ledger")
        assert get_database_url() == "postgresql+asyncpg://user:pw@db/ledger"

        monkeypatch.setenv("DATABASE_URL", "postgresql://user:pw@db/ledger")
        assert get_database_url() == "postgresql+asyncpg://user:pw@db/ledger"

    def test_default_is_local_sqlite(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert get_database_url().startswith("sqlite+aiosqlite:///")
