"""Admin API endpoints for recovery sweeps and manual crediting."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import verify_admin_or_cron, verify_api_key
from ..database import RecoveryRunRepository, TransactionRepository, get_db
from ..dependencies import get_engine
from ..errors import (
    MeterCreditAmbiguous,
    MeterCreditRejected,
    TransactionNotFound,
    UnknownGateway,
    VerificationUnavailable,
)
from .engine import ReconciliationEngine
from .models import RecoveryRequest
from .report import RecoveryReportGenerator, REPORT_FORMATS

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"])


class ManualRechargeBody(BaseModel):
    """Request body for a manual cash credit."""
    amount_minor: int = Field(..., gt=0, description="Amount to credit, minor units")
    note: Optional[str] = Field(None, max_length=500, description="Operator note")


@router.post("/recover-pending-payments")
async def recover_pending_payments(
    body: Optional[RecoveryRequest] = None,
    format: str = Query(default="json", description="Output format: json, csv, text, detailed_text"),
    engine: ReconciliationEngine = Depends(get_engine),
    caller: str = Depends(verify_admin_or_cron),
):
    """
    Sweep pending transactions and credit every meter whose payment succeeded.

    Accepts the admin API key or the recovery cron secret. Per-candidate
    errors are reported in the results while the sweep continues.
    """
    if format not in REPORT_FORMATS:
        raise HTTPException(
            status_code=400,
            detail="format must be one of: json, csv, text, detailed_text"
        )
    body = body or RecoveryRequest()

    logger.info(
        f"Recovery sweep requested by {caller} "
        f"(since={body.since}, until={body.until}, dry_run={body.dry_run})"
    )
    report = await engine.recover_pending(
        since=body.since,
        until=body.until,
        dry_run=body.dry_run,
        concurrency=body.concurrency,
        triggered_by=caller,
    )

    if format == "json":
        return report.to_response_dict()
    output = RecoveryReportGenerator(report).render(format)
    content_type = "text/csv" if format == "csv" else "text/plain"
    return PlainTextResponse(content=output, media_type=content_type)


@router.post("/transactions/{reference}/reconcile")
async def reconcile_transaction(
    reference: str,
    allow_failed: bool = Query(default=False, description="Re-verify a transaction already marked failed"),
    engine: ReconciliationEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    """Replay reconciliation for a single reference."""
    try:
        result = await engine.reconcile(reference, allow_failed=allow_failed, trigger="admin")
    except TransactionNotFound as e:
        raise HTTPException(status_code=404, detail=e.message)
    except VerificationUnavailable as e:
        raise HTTPException(status_code=503, detail=e.message)
    except UnknownGateway as e:
        raise HTTPException(status_code=422, detail=e.message)
    return result.model_dump(mode="json")


@router.post("/meters/{meter_id}/recharge", status_code=201)
async def manual_recharge(
    meter_id: str,
    body: ManualRechargeBody,
    engine: ReconciliationEngine = Depends(get_engine),
    api_key: str = Depends(verify_api_key),
):
    """Credit a meter for a cash payment taken in person."""
    if not meter_id.isdigit():
        raise HTTPException(status_code=400, detail="Meter id must be numeric")
    try:
        transaction = await engine.manual_recharge(meter_id, body.amount_minor, note=body.note)
    except MeterCreditRejected as e:
        raise HTTPException(status_code=422, detail=e.message)
    except MeterCreditAmbiguous as e:
        logger.error(f"Manual recharge of meter {meter_id} unconfirmed: {e.message}")
        raise HTTPException(
            status_code=504,
            detail="Meter platform did not confirm the credit; check the meter before retrying",
        )
    return transaction.to_dict()


@router.get("/transactions/attention")
async def transactions_needing_attention(
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Transactions whose payment succeeded but whose credit was rejected or unconfirmed."""
    transactions = await TransactionRepository(db).list_needing_attention(limit=limit)
    return {"count": len(transactions), "transactions": [tx.to_dict() for tx in transactions]}


@router.get("/recovery-runs/latest")
async def latest_recovery_run(
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """The most recent recovery sweep, as persisted."""
    run = await RecoveryRunRepository(db).latest()
    if run is None:
        raise HTTPException(status_code=404, detail="No recovery run recorded")
    return run.to_dict()
