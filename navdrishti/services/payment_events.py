"""
Payment confirmation from either side of the checkout:

  - the client's verify-payment call (after the in-browser checkout), and
  - the gateway's asynchronous webhook.

Both funnel into ``apply_capture`` so they converge on the same state no
matter which arrives first or how often either is repeated.  Gateway webhook
bodies are decoded once, at the boundary, into the ``GatewayEvent`` union.
"""
from __future__ import annotations

import enum
import logging
from dataclasses import dataclass
from typing import Optional, Union

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from navdrishti.errors import InsufficientStock, InvalidStateTransition, ValidationError
from navdrishti.models import Order, OrderStatus, Payment, PaymentStatus
from navdrishti.schemas import GatewayWebhookEnvelope
from navdrishti.services import orders, payments
from navdrishti.services.gateway import PaymentGateway
from navdrishti.services.state_machine import POST_CONFIRMATION, Actor

logger = logging.getLogger(__name__)


# ── Event union ──────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class PaymentCaptured:
    gateway_order_id: str
    gateway_payment_id: str
    amount: Optional[int] = None
    method: Optional[str] = None


@dataclass(frozen=True)
class PaymentFailed:
    gateway_order_id: str
    gateway_payment_id: str
    reason: Optional[str] = None


@dataclass(frozen=True)
class UnhandledEvent:
    raw_type: str


GatewayEvent = Union[PaymentCaptured, PaymentFailed, UnhandledEvent]


def decode_event(raw_body: bytes) -> GatewayEvent:
    """Parse a (signature-verified) webhook body."""
    try:
        envelope = GatewayWebhookEnvelope.model_validate_json(raw_body)
    except PydanticValidationError as exc:
        raise ValidationError("Malformed webhook payload", field="body") from exc

    if envelope.event not in ("payment.captured", "payment.failed"):
        return UnhandledEvent(raw_type=envelope.event)

    try:
        entity = envelope.payment_entity()
    except PydanticValidationError as exc:
        raise ValidationError("Malformed payment entity", field="payload.payment") from exc
    if entity is None:
        raise ValidationError("Webhook payload has no payment entity", field="payload.payment")

    if envelope.event == "payment.captured":
        return PaymentCaptured(
            gateway_order_id=entity.order_id,
            gateway_payment_id=entity.id,
            amount=entity.amount,
            method=entity.method,
        )
    return PaymentFailed(
        gateway_order_id=entity.order_id,
        gateway_payment_id=entity.id,
        reason=entity.error_description,
    )


# ── Outcomes ─────────────────────────────────────────────────────────────────

class Outcome(str, enum.Enum):
    CONFIRMED = "confirmed"
    ALREADY_CONFIRMED = "already_confirmed"
    RECONCILIATION_REQUIRED = "reconciliation_required"
    CANCELLED = "cancelled"
    STALE = "stale"
    IGNORED = "ignored"
    UNKNOWN_ORDER = "unknown_order"


@dataclass
class EventResult:
    outcome: Outcome
    order: Optional[Order] = None
    payment: Optional[Payment] = None
    detail: Optional[str] = None


# ── Capture ──────────────────────────────────────────────────────────────────

async def apply_capture(
    session: AsyncSession,
    gateway_order_id: str,
    gateway_payment_id: str,
    method: Optional[str] = None,
    actor: Optional[Actor] = None,
) -> EventResult:
    """
    Record a captured payment and confirm its order.

    Never raises for domain conflicts: a capture that cannot confirm its
    order flags it for reconciliation and reports that outcome instead, so
    the flag is committed with the payment record.
    """
    try:
        return await _apply_capture(session, gateway_order_id, gateway_payment_id, method, actor)
    except IntegrityError:
        # Lost a race on the payment row or on the order's single capture.
        # The winner has committed, so a second pass sees it.
        logger.warning(
            "Concurrent capture for gateway order %s; retrying %s",
            gateway_order_id, gateway_payment_id,
        )
        await session.rollback()
        return await _apply_capture(session, gateway_order_id, gateway_payment_id, method, actor)


async def _duplicate_capture(
    session: AsyncSession,
    order: Order,
    gateway_order_id: str,
    gateway_payment_id: str,
    holder: Optional[Payment],
) -> EventResult:
    # A second successful attempt on one order: money taken twice
    payment = await payments.mark_duplicate(session, gateway_order_id, gateway_payment_id)
    held_by = holder.gateway_payment_id if holder is not None else "another attempt"
    orders.flag_for_reconciliation(
        order, f"duplicate capture {gateway_payment_id} (already captured {held_by})"
    )
    return EventResult(Outcome.RECONCILIATION_REQUIRED, order, payment, "duplicate_capture")


async def _apply_capture(
    session: AsyncSession,
    gateway_order_id: str,
    gateway_payment_id: str,
    method: Optional[str],
    actor: Optional[Actor],
) -> EventResult:
    base = await payments.by_gateway_order_id(session, gateway_order_id)
    if base is None:
        logger.warning("Capture for unknown gateway order %s", gateway_order_id)
        return EventResult(Outcome.UNKNOWN_ORDER)

    order = await orders.load_order(session, base.order_id)

    holder = await payments.settled_payment_for(session, order.id)
    if holder is not None and holder.gateway_payment_id != gateway_payment_id:
        return await _duplicate_capture(
            session, order, gateway_order_id, gateway_payment_id, holder
        )

    payment = await payments.upsert_captured(session, gateway_order_id, gateway_payment_id, method)
    if payment.status == PaymentStatus.REFUNDED:
        # Already refunded; nothing left to confirm
        return EventResult(Outcome.IGNORED, order, payment)
    if payment.status != PaymentStatus.CAPTURED:
        # Another attempt took the capture after we looked
        return await _duplicate_capture(
            session, order, gateway_order_id, gateway_payment_id,
            await payments.settled_payment_for(session, order.id),
        )

    try:
        changed = await orders.confirm_payment(session, order, actor)
    except InsufficientStock as exc:
        orders.flag_for_reconciliation(order, f"insufficient_stock: {exc.detail}")
        return EventResult(Outcome.RECONCILIATION_REQUIRED, order, payment, "insufficient_stock")
    except InvalidStateTransition:
        orders.flag_for_reconciliation(
            order, f"payment {gateway_payment_id} captured for {order.status.value} order"
        )
        return EventResult(Outcome.RECONCILIATION_REQUIRED, order, payment, "order_not_payable")

    if changed and order.needs_reconciliation and (
        order.reconciliation_reason or ""
    ).startswith("insufficient_stock"):
        # Stock came back before anyone intervened
        order.needs_reconciliation = False
        order.reconciliation_reason = None

    return EventResult(
        Outcome.CONFIRMED if changed else Outcome.ALREADY_CONFIRMED, order, payment
    )


# ── Failure ──────────────────────────────────────────────────────────────────

async def apply_failure(
    session: AsyncSession,
    gateway: PaymentGateway,
    gateway_order_id: str,
    gateway_payment_id: str,
    reason: Optional[str] = None,
) -> EventResult:
    payment = await payments.upsert_failed(session, gateway_order_id, gateway_payment_id, reason)
    if payment is None:
        logger.warning("Failure for unknown gateway order %s", gateway_order_id)
        return EventResult(Outcome.UNKNOWN_ORDER)

    order = await orders.load_order(session, payment.order_id)

    if order.status in POST_CONFIRMATION:
        logger.warning(
            "Stale payment.failed for %s: order %s already %s – ignoring",
            gateway_payment_id, order.order_number, order.status.value,
        )
        return EventResult(Outcome.STALE, order, payment)

    if order.status not in (OrderStatus.PENDING, OrderStatus.PAYMENT_PENDING):
        return EventResult(Outcome.IGNORED, order, payment)

    if await payments.captured_payment_for(session, order.id) is not None:
        # Another attempt succeeded; the order is awaiting reconciliation, not payment
        logger.warning(
            "payment.failed for %s ignored: order %s holds a captured payment",
            gateway_payment_id, order.order_number,
        )
        return EventResult(Outcome.IGNORED, order, payment)

    await orders.cancel_order(session, gateway, order, None, "payment_failed")
    return EventResult(Outcome.CANCELLED, order, payment)


async def handle_event(
    session: AsyncSession, gateway: PaymentGateway, event: GatewayEvent
) -> EventResult:
    if isinstance(event, PaymentCaptured):
        return await apply_capture(
            session, event.gateway_order_id, event.gateway_payment_id, event.method
        )
    if isinstance(event, PaymentFailed):
        return await apply_failure(
            session, gateway, event.gateway_order_id, event.gateway_payment_id, event.reason
        )
    logger.info("Ignoring unhandled gateway event type %r", event.raw_type)
    return EventResult(Outcome.IGNORED, detail=event.raw_type)
