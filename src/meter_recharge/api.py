import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, Depends, HTTPException
from pydantic import BaseModel, Field, field_validator
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .auth import limiter
from .database import (
    GatewayStatus,
    TransactionRepository,
    close_db,
    get_session_factory,
    init_db,
)
from .dependencies import get_engine, get_gateway_registry, get_meter_client, get_token_provider
from .errors import MeterAuthError, ReconciliationError, UnknownGateway
from .gateways import GatewayRegistry, InitializePaymentRequest
from .meters import AdminTokenProvider, IotClient
from .reconciliation.api import router as admin_router
from .reconciliation.engine import ReconciliationEngine
from .webhooks import router as webhook_router

logger = logging.getLogger(__name__)

MIN_AMOUNT_MINOR = 10_000  # 100 naira
MAX_AMOUNT_MINOR = 100_000_000  # 1,000,000 naira


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown events."""
    logger.info("Starting up Meter Recharge API...")
    await init_db()
    yield
    logger.info("Shutting down Meter Recharge API...")
    await close_db()


app = FastAPI(
    title="Meter Recharge API",
    description="Prepaid meter recharge: gateway payments reconciled into meter credits",
    version="0.1.0",
    lifespan=lifespan,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

app.include_router(webhook_router)
app.include_router(admin_router)


class InitializePaymentBody(BaseModel):
    meter_id: str = Field(..., min_length=1, max_length=50)
    amount_minor: int = Field(..., ge=MIN_AMOUNT_MINOR, le=MAX_AMOUNT_MINOR)
    email: str = Field(..., min_length=3, max_length=255)
    phone: Optional[str] = Field(None, max_length=30)
    gateway: str = "paystack"
    callback_url: Optional[str] = None

    @field_validator("meter_id")
    @classmethod
    def meter_id_digits(cls, v: str) -> str:
        v = v.strip()
        if not v.isdigit():
            raise ValueError("meter_id must contain only digits")
        return v


async def _meter_exists(meter_id: str, meter_client: IotClient, token_provider: AdminTokenProvider) -> bool:
    token = await token_provider.get_token()
    info = await meter_client.get_meter_info(meter_id, token)
    if not info.ok and info.token_expired:
        info = await meter_client.get_meter_info(meter_id, await token_provider.refresh())
    return info.ok


@app.post("/payments/initialize")
@limiter.limit("10/minute")
async def initialize_payment(
    request: Request,
    body: InitializePaymentBody,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    gateways: GatewayRegistry = Depends(get_gateway_registry),
    meter_client: IotClient = Depends(get_meter_client),
    token_provider: AdminTokenProvider = Depends(get_token_provider),
):
    """Start a recharge: record a pending transaction and open a gateway checkout."""
    try:
        gateway = gateways.get(body.gateway)
    except UnknownGateway:
        raise HTTPException(status_code=400, detail="Payment gateway not supported")

    try:
        exists = await _meter_exists(body.meter_id, meter_client, token_provider)
    except MeterAuthError as e:
        logger.error(f"Cannot check meter {body.meter_id}: {e.message}")
        raise HTTPException(status_code=503, detail="Meter platform unavailable")
    if not exists:
        raise HTTPException(status_code=404, detail="Meter not found")

    reference = gateway.generate_reference()
    async with session_factory() as session:
        await TransactionRepository(session).create_pending(
            reference=reference,
            gateway=gateway.name,
            meter_id=body.meter_id,
            amount_minor=body.amount_minor,
            buy_type=gateway.buy_type,
            customer_email=body.email,
            customer_phone=body.phone,
        )
        await session.commit()

    callback_url = body.callback_url or f"{os.getenv('APP_URL', 'http://localhost:3000')}/payment/callback"
    try:
        checkout = await gateway.initialize(
            InitializePaymentRequest(
                reference=reference,
                amount_minor=body.amount_minor,
                email=body.email,
                meter_id=body.meter_id,
                callback_url=callback_url,
                metadata={"meter_id": body.meter_id, "phone": body.phone},
            )
        )
    except (RuntimeError, ReconciliationError) as e:
        logger.error(f"Gateway {gateway.name} could not initialize {reference}: {e}")
        raise HTTPException(status_code=502, detail="Payment gateway unavailable")

    return {
        "reference": reference,
        "gateway": gateway.name,
        "authorization_url": checkout.authorization_url,
        "access_code": checkout.access_code,
    }


@app.get("/payments/verify/{reference}")
@limiter.limit("30/minute")
async def verify_payment(
    request: Request,
    reference: str,
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
    engine: ReconciliationEngine = Depends(get_engine),
):
    """Customer-facing status poll after the gateway redirect.

    Resolved transactions are answered from the ledger. Anything else is
    reconciled on demand; failures fall back to the last known state.
    """
    async with session_factory() as session:
        transaction = await TransactionRepository(session).get_by_reference(reference)
    if transaction is None:
        raise HTTPException(status_code=404, detail="Transaction not found")

    resolved = transaction.is_credited or transaction.gateway_status == GatewayStatus.FAILED.value
    if not resolved:
        try:
            await engine.reconcile(reference, trigger="verify")
        except Exception:
            logger.exception(f"On-demand reconciliation of {reference} failed")
        async with session_factory() as session:
            transaction = await TransactionRepository(session).get_by_reference(reference)

    return {
        "reference": transaction.reference,
        "status": transaction.gateway_status,
        "credited": transaction.is_credited,
        "meter_id": transaction.meter_id,
        "amount_minor": transaction.confirmed_amount_minor or transaction.amount_minor,
        "sale_id": transaction.sale_id,
    }


@app.get("/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "healthy", "service": "meter-recharge"}
