"""
Payment gateway webhook receiver.

POST /payments/webhook
"""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from navdrishti.database import get_db
from navdrishti.deps import verify_gateway_webhook
from navdrishti.schemas import WebhookAck
from navdrishti.services.gateway import PaymentGateway, get_payment_gateway
from navdrishti.services.payment_events import decode_event, handle_event

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["webhooks"])


@router.post("/webhook", response_model=WebhookAck)
async def payment_webhook(
    body: bytes = Depends(verify_gateway_webhook),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
) -> WebhookAck:
    """
    Receive a gateway event.  Idempotent: re-delivering the same event is safe.
    Conflicts are recorded for reconciliation and still acknowledged, so the
    gateway stops retrying.
    """
    event = decode_event(body)
    result = await handle_event(db, gateway, event)
    logger.info(
        "Webhook %s -> %s%s",
        type(event).__name__,
        result.outcome.value,
        f" (order {result.order.order_number})" if result.order is not None else "",
    )
    return WebhookAck()
