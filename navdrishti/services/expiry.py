"""
Reservation timeout: orders that never got paid are cancelled after
``stock_reservation_timeout_minutes``.

Runs from the background sweeper, ``POST /admin/expire-stale-orders`` and the
CLI.  An unpaid order never holds inventory, so expiring one only closes it;
an order that does hold a captured payment is flagged for a human instead.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from navdrishti.config import get_settings
from navdrishti.database import get_db_ctx
from navdrishti.errors import CommerceError, InvalidStateTransition
from navdrishti.models import Order, OrderStatus
from navdrishti.services import orders, payments, rate_limit

logger = logging.getLogger(__name__)
settings = get_settings()

REASON = "reservation_timeout"


@dataclass
class ExpiryReport:
    cancelled: List[str] = field(default_factory=list)
    flagged: List[str] = field(default_factory=list)


async def _expire_one(session: AsyncSession, order: Order) -> Optional[str]:
    if await payments.captured_payment_for(session, order.id) is not None:
        if order.needs_reconciliation:
            return None
        orders.flag_for_reconciliation(order, "reservation_timeout with captured payment")
        return "flagged"
    await orders.cancel_order(session, None, order, None, REASON)
    return "cancelled"


async def expire_stale_orders(
    session: AsyncSession,
    now: Optional[datetime] = None,
    timeout_minutes: Optional[int] = None,
) -> ExpiryReport:
    now = now or datetime.now(timezone.utc)
    if timeout_minutes is None:
        timeout_minutes = settings.stock_reservation_timeout_minutes
    cutoff = now - timedelta(minutes=timeout_minutes)

    stale = (
        await session.execute(
            select(Order)
            .where(
                Order.status.in_([OrderStatus.PENDING, OrderStatus.PAYMENT_PENDING]),
                Order.created_at < cutoff,
            )
            .order_by(Order.id)
        )
    ).scalars().all()

    report = ExpiryReport()
    for order in stale:
        number = order.order_number
        try:
            # One savepoint per order: a failure undoes only that order
            async with session.begin_nested():
                outcome = await _expire_one(session, order)
        except InvalidStateTransition:
            # Paid while we were looking
            logger.info("Order %s moved on before expiry; skipped", number)
            continue
        except CommerceError as exc:
            logger.error("Could not expire order %s: %s", number, exc.detail)
            continue
        if outcome == "cancelled":
            report.cancelled.append(number)
        elif outcome == "flagged":
            report.flagged.append(number)

    if report.cancelled or report.flagged:
        logger.info(
            "Expiry sweep: %d cancelled, %d flagged",
            len(report.cancelled), len(report.flagged),
        )
    return report


async def sweeper() -> None:
    """Long-lived background task: expire stale orders and old rate-limit windows."""
    interval = settings.expiry_sweep_interval_seconds
    logger.info("Expiry sweeper started (every %ss)", interval)
    while True:
        await asyncio.sleep(interval)
        try:
            async with get_db_ctx() as session:
                await expire_stale_orders(session)
                await rate_limit.purge_expired(session, settings.rate_limit_window_seconds)
        except Exception as exc:
            logger.exception("Expiry sweep failed: %s", exc)
