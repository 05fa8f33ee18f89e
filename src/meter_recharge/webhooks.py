"""Webhook intake: authenticate gateway notifications and drive reconciliation."""

import logging
from typing import Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .database import WebhookLogRepository, get_session_factory
from .errors import InvalidSignature, UnknownGateway
from .dependencies import get_engine
from .reconciliation.engine import ReconciliationEngine

logger = logging.getLogger(__name__)


class WebhookAck(BaseModel):
    """What intake did with one delivery."""
    gateway: str
    event_type: str
    reference: Optional[str] = None
    log_id: Optional[str] = None
    reconciled: bool = False
    processed: bool = False
    outcome: Optional[str] = None
    error: Optional[str] = None


class WebhookIntake:
    """Turns authentic gateway notifications into reconcile() calls.

    Every authentic event is appended to the webhook log before anything else
    happens. Reconciliation errors are recorded on that row and never
    propagate, so the gateway always gets an acknowledgement and the recovery
    sweep stays the remediation path.
    """

    def __init__(
        self,
        engine: ReconciliationEngine,
        session_factory: async_sessionmaker[AsyncSession],
    ):
        self.engine = engine
        self.session_factory = session_factory

    async def handle(self, gateway_name: str, headers: Dict[str, str], raw_body: bytes) -> WebhookAck:
        """Handle one webhook delivery.

        Args:
            gateway_name: Registered gateway the delivery is addressed to.
            headers: Request headers, lower-cased.
            raw_body: Body exactly as received.

        Returns:
            WebhookAck describing the processing.

        Raises:
            UnknownGateway: No gateway is registered under gateway_name.
            InvalidSignature: The body is not signed by the gateway. Nothing is logged.
            ValueError: The signed body is not a JSON event.
        """
        gateway = self.engine.gateways.get(gateway_name)
        try:
            event = gateway.parse_webhook(headers, raw_body)
        except InvalidSignature as e:
            logger.warning(f"Rejected {gateway_name} webhook: {e.message}")
            raise

        async with self.session_factory() as session:
            log = await WebhookLogRepository(session).create(
                gateway=gateway.name,
                event_type=event.event_type,
                reference=event.reference,
                payload=event.raw,
            )
            await session.commit()

        ack = WebhookAck(
            gateway=gateway.name,
            event_type=event.event_type,
            reference=event.reference,
            log_id=log.id,
        )
        logger.info(f"Received {gateway.name} webhook {event.event_type} for {event.reference}")

        if event.event_type not in gateway.reconcile_events:
            logger.info(f"Ignoring {gateway.name} event {event.event_type}")
            return ack

        if not event.reference:
            await self._record(log.id, error="Event carries no reference")
            ack.error = "Event carries no reference"
            return ack

        ack.reconciled = True
        try:
            result = await self.engine.reconcile(event.reference, trigger="webhook")
        except Exception as e:
            # Swallowed so the gateway does not keep redelivering; the sweep picks it up
            message = getattr(e, "message", None) or str(e) or e.__class__.__name__
            logger.exception(f"Reconciling {event.reference} from {gateway.name} webhook failed")
            await self._record(log.id, error=message)
            ack.error = message
            return ack

        ack.outcome = result.outcome.value
        if result.is_terminal:
            await self._record(log.id)
            ack.processed = True
        else:
            error = result.to_error()
            ack.error = error.message
            await self._record(log.id, error=f"{error.__class__.__name__}: {error.message}")
        return ack

    async def _record(self, log_id: str, error: Optional[str] = None) -> None:
        async with self.session_factory() as session:
            repo = WebhookLogRepository(session)
            log = await repo.get_by_id(log_id)
            if error is None:
                await repo.mark_processed(log)
            else:
                await repo.mark_failed(log, error)
            await session.commit()


router = APIRouter(tags=["webhooks"])


def get_webhook_intake(
    engine: ReconciliationEngine = Depends(get_engine),
    session_factory: async_sessionmaker[AsyncSession] = Depends(get_session_factory),
) -> WebhookIntake:
    return WebhookIntake(engine, session_factory)


@router.post("/webhooks/{gateway}")
@router.post("/webhook/{gateway}", include_in_schema=False)
async def receive_webhook(
    gateway: str,
    request: Request,
    intake: WebhookIntake = Depends(get_webhook_intake),
):
    """Receive a gateway notification.

    Always acknowledges with 200 except on a bad signature (401), an
    unknown gateway (404) or a body that is not a JSON event (400).
    """
    body = await request.body()
    headers = {k.lower(): v for k, v in request.headers.items()}
    try:
        await intake.handle(gateway, headers, body)
    except UnknownGateway as e:
        raise HTTPException(status_code=404, detail=e.message)
    except InvalidSignature:
        raise HTTPException(status_code=401, detail="Invalid signature")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"received": True}
