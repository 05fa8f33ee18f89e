"""Shared test fixtures and configuration."""

import os
import pytest
from unittest.mock import patch
from datetime import datetime
from typing import Optional

# Set up test environment variables before importing modules
os.environ.setdefault("STRIPE_API_KEY", "sk_test_dummy_key_for_testing")
os.environ.setdefault("STRIPE_WEBHOOK_SECRET", "whsec_test_secret")
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("RECOVERY_CRON_SECRET", "test_cron_secret_67890")
os.environ.setdefault("PAYSTACK_SECRET_KEY", "sk_test_paystack_secret")
os.environ.setdefault("IVORYPAY_SECRET_KEY", "sk_test_ivorypay_secret")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from meter_recharge.database import (
    Base,
    Transaction,
    TransactionRepository,
    create_async_engine,
    get_async_session_factory,
)
from meter_recharge.gateways import GatewayRegistry, SimulatorGateway, SimulatorConfig
from meter_recharge.meters import AdminTokenProvider, SimulatorMeterPlatform
from meter_recharge.reconciliation import ReconciliationEngine

METER_ID = "47001234567"
OTHER_METER_ID = "47009876543"


@pytest.fixture
def mock_api_key():
    """Set up mock API key for authentication."""
    with patch.dict(os.environ, {"API_KEY": "test_api_key_12345"}):
        yield "test_api_key_12345"


@pytest.fixture
def auth_headers(mock_api_key):
    """Return headers with admin authentication."""
    return {"Authorization": f"Bearer {mock_api_key}"}


# Database fixtures
@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Create a database session for testing."""
    session_factory = get_async_session_factory(db_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def ledger_engine(tmp_path):
    """File-backed SQLite so concurrent sessions get their own connections."""
    engine = create_async_engine(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(ledger_engine):
    return get_async_session_factory(ledger_engine)


# Simulated collaborators
@pytest.fixture
def gateway():
    """Simulator gateway; verify() reports pending until scripted."""
    return SimulatorGateway(SimulatorConfig())


@pytest.fixture
def meter_platform():
    return SimulatorMeterPlatform(meters={METER_ID: 0, OTHER_METER_ID: 0})


@pytest.fixture
def token_provider(meter_platform):
    return AdminTokenProvider(
        meter_platform,
        static_token="sim-static-token",
        username="admin",
        password="admin-password",
    )


@pytest.fixture
def engine(session_factory, gateway, meter_platform, token_provider):
    """Reconciliation engine wired to the simulators and a file-backed ledger."""
    return ReconciliationEngine(
        session_factory,
        GatewayRegistry([gateway]),
        meter_platform,
        token_provider,
        platform_idempotent=False,
    )


@pytest.fixture
def make_pending(session_factory, gateway):
    """Return a coroutine that stores a pending transaction for the simulator gateway."""
    counter = {"n": 0}

    async def _make(
        reference: Optional[str] = None,
        amount_minor: int = 100000,
        meter_id: str = METER_ID,
        created_at: Optional[datetime] = None,
    ) -> Transaction:
        counter["n"] += 1
        reference = reference or f"SIM_TEST_{counter['n']:04d}"
        async with session_factory() as session:
            repo = TransactionRepository(session)
            transaction = await repo.create_pending(
                reference=reference,
                gateway=gateway.name,
                meter_id=meter_id,
                amount_minor=amount_minor,
                buy_type=gateway.buy_type,
                customer_email="customer@example.com",
            )
            if created_at is not None:
                transaction.created_at = created_at
            await session.commit()
        return transaction

    return _make


async def load(session_factory, reference: str) -> Transaction:
    """Read a transaction in a fresh session."""
    async with session_factory() as session:
        return await TransactionRepository(session).get_by_reference(reference)
