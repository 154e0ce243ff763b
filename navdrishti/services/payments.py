"""
Payment records: idempotent upsert keyed on the gateway payment id.

Payment status only moves forward:
    created -> captured -> refunded
    created -> failed   -> captured   (a retried attempt on the same gateway order)
A captured or refunded payment is never downgraded by a late ``failed`` event,
and an order has at most one payment in either of those states.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import exists, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from navdrishti.errors import PersistenceError
from navdrishti.models import Payment, PaymentStatus

logger = logging.getLogger(__name__)

# Statuses each target may be reached from
_ALLOWED_FROM = {
    PaymentStatus.CAPTURED: (PaymentStatus.CREATED, PaymentStatus.FAILED),
    PaymentStatus.FAILED: (PaymentStatus.CREATED,),
    PaymentStatus.REFUNDED: (PaymentStatus.CAPTURED,),
}

# Statuses that mean the order's money was taken by this row
SETTLED = (PaymentStatus.CAPTURED, PaymentStatus.REFUNDED)

DUPLICATE_CAPTURE = "duplicate_capture"


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _fresh(session: AsyncSession, payment_id: int) -> Payment:
    return (
        await session.execute(
            select(Payment)
            .where(Payment.id == payment_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one()


async def by_gateway_payment_id(session: AsyncSession, gateway_payment_id: str) -> Optional[Payment]:
    return (
        await session.execute(
            select(Payment)
            .where(Payment.gateway_payment_id == gateway_payment_id)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def by_gateway_order_id(session: AsyncSession, gateway_order_id: str) -> Optional[Payment]:
    """The first payment row issued for a gateway order (carries order id and amount)."""
    return (
        await session.execute(
            select(Payment)
            .where(Payment.gateway_order_id == gateway_order_id)
            .order_by(Payment.id)
            .limit(1)
        )
    ).scalar_one_or_none()


async def payments_for_order(session: AsyncSession, order_id: int) -> List[Payment]:
    return list(
        (
            await session.execute(
                select(Payment)
                .where(Payment.order_id == order_id)
                .order_by(Payment.id)
                .execution_options(populate_existing=True)
            )
        ).scalars().all()
    )


async def captured_payment_for(session: AsyncSession, order_id: int) -> Optional[Payment]:
    return (
        await session.execute(
            select(Payment)
            .where(Payment.order_id == order_id, Payment.status == PaymentStatus.CAPTURED)
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def settled_payment_for(session: AsyncSession, order_id: int) -> Optional[Payment]:
    """The payment holding the order's money, captured or already refunded."""
    return (
        await session.execute(
            select(Payment)
            .where(Payment.order_id == order_id, Payment.status.in_(SETTLED))
            .execution_options(populate_existing=True)
        )
    ).scalar_one_or_none()


async def _attach_attempt(
    session: AsyncSession, gateway_order_id: str, gateway_payment_id: str
) -> Optional[Payment]:
    """
    Find or create the row for *gateway_payment_id*.

    The first attempt claims the row issued at order creation (the one with no
    payment id yet); later attempts on the same gateway order get their own row.
    Returns None when the gateway order is unknown.
    """
    existing = await by_gateway_payment_id(session, gateway_payment_id)
    if existing is not None:
        return existing

    base = await by_gateway_order_id(session, gateway_order_id)
    if base is None:
        return None

    claimed = await session.execute(
        update(Payment)
        .where(
            Payment.gateway_order_id == gateway_order_id,
            Payment.gateway_payment_id.is_(None),
        )
        .values(gateway_payment_id=gateway_payment_id, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount:
        return await by_gateway_payment_id(session, gateway_payment_id)

    payment = Payment(
        order_id=base.order_id,
        gateway_order_id=gateway_order_id,
        gateway_payment_id=gateway_payment_id,
        amount=base.amount,
        currency=base.currency,
        status=PaymentStatus.CREATED,
    )
    session.add(payment)
    await session.flush()
    logger.info(
        "New payment attempt %s recorded for gateway order %s",
        gateway_payment_id, gateway_order_id,
    )
    return payment


async def _advance(
    session: AsyncSession, payment: Payment, target: PaymentStatus, *guards, **values
) -> bool:
    """Conditionally move *payment* to *target*; False when it is already past it."""
    result = await session.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status.in_(_ALLOWED_FROM[target]), *guards)
        .values(status=target, updated_at=_now(), **values)
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


async def upsert_captured(
    session: AsyncSession,
    gateway_order_id: str,
    gateway_payment_id: str,
    method: Optional[str] = None,
) -> Optional[Payment]:
    """
    Record *gateway_payment_id* as captured.

    The row stays where it is when another payment on the same order already
    holds the money, or when it was set aside as a duplicate capture; callers
    see that as a status other than captured/refunded.  Two attempts racing
    past that check are stopped by ``uq_payments_one_capture_per_order``,
    which surfaces here as ``IntegrityError``.
    """
    payment = await _attach_attempt(session, gateway_order_id, gateway_payment_id)
    if payment is None:
        return None

    other = aliased(Payment)
    if await _advance(
        session, payment, PaymentStatus.CAPTURED,
        ~exists().where(
            other.order_id == payment.order_id,
            other.id != payment.id,
            other.status.in_(SETTLED),
        ),
        or_(Payment.failure_reason.is_(None), Payment.failure_reason != DUPLICATE_CAPTURE),
        captured_at=_now(), method=method, failure_reason=None,
    ):
        logger.info("Payment %s captured (gateway order %s)", gateway_payment_id, gateway_order_id)
    elif method:
        await session.execute(
            update(Payment)
            .where(Payment.id == payment.id, Payment.method.is_(None))
            .values(method=method)
            .execution_options(synchronize_session=False)
        )
    return await _fresh(session, payment.id)


async def mark_duplicate(
    session: AsyncSession, gateway_order_id: str, gateway_payment_id: str
) -> Optional[Payment]:
    """Set aside a second successful attempt so it can never become the order's capture."""
    payment = await _attach_attempt(session, gateway_order_id, gateway_payment_id)
    if payment is None:
        return None
    await session.execute(
        update(Payment)
        .where(
            Payment.id == payment.id,
            Payment.status.in_((PaymentStatus.CREATED, PaymentStatus.FAILED)),
        )
        .values(status=PaymentStatus.FAILED, failure_reason=DUPLICATE_CAPTURE, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    logger.error(
        "Payment %s is a duplicate capture on gateway order %s",
        gateway_payment_id, gateway_order_id,
    )
    return await _fresh(session, payment.id)


async def upsert_failed(
    session: AsyncSession,
    gateway_order_id: str,
    gateway_payment_id: str,
    reason: Optional[str] = None,
) -> Optional[Payment]:
    payment = await _attach_attempt(session, gateway_order_id, gateway_payment_id)
    if payment is None:
        return None

    if await _advance(
        session, payment, PaymentStatus.FAILED,
        failure_reason=reason or "Payment failed",
    ):
        logger.info("Payment %s failed: %s", gateway_payment_id, reason)
    elif payment.status in (PaymentStatus.CAPTURED, PaymentStatus.REFUNDED):
        logger.warning(
            "Ignoring failure for payment %s already %s",
            gateway_payment_id, payment.status.value,
        )
    return await _fresh(session, payment.id)


async def mark_refunded(
    session: AsyncSession, payment: Payment, amount: Decimal, gateway_refund_id: Optional[str]
) -> Payment:
    if not await _advance(
        session, payment, PaymentStatus.REFUNDED,
        refunded_at=_now(), refund_amount=amount, gateway_refund_id=gateway_refund_id,
    ):
        # Caller already holds the order transition, so this is a real inconsistency
        logger.error("Payment %s is not captured; cannot refund", payment.id)
        raise PersistenceError()
    logger.info("Payment %s refunded: %s %s", payment.gateway_payment_id, amount, payment.currency)
    return await _fresh(session, payment.id)
