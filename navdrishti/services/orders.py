"""
Order aggregate: creation, payment confirmation, fulfilment transitions and
the refund / cancellation flow.

All status changes go through ``_claim`` – a conditional UPDATE on the current
status – so two requests racing for the same order cannot both win.  Callers
run each operation inside the request transaction; inventory, payment, status
and history writes commit or roll back together.
"""
from __future__ import annotations

import logging
import secrets
import string
import time
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from navdrishti.config import get_settings
from navdrishti.errors import (
    InsufficientStock,
    InvalidStateTransition,
    NotFoundError,
    PaymentGatewayError,
    ValidationError,
)
from navdrishti.models import (
    InventoryItem,
    ItemStatus,
    Order,
    OrderItem,
    OrderStatus,
    OrderStatusHistory,
    Payment,
    PaymentStatus,
    ShippingDetail,
)
from navdrishti.services import inventory, notifications, payments
from navdrishti.services.gateway import GatewayOrderRef, PaymentGateway, to_minor_units
from navdrishti.services.state_machine import (
    POST_CONFIRMATION,
    Actor,
    Transition,
    authorize,
    check_legal,
)

logger = logging.getLogger(__name__)
settings = get_settings()

_CENTS = Decimal("0.01")
_ORDER_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _money(value: Decimal) -> Decimal:
    return Decimal(value).quantize(_CENTS, rounding=ROUND_HALF_UP)


def new_order_number() -> str:
    suffix = "".join(secrets.choice(_ORDER_SUFFIX_ALPHABET) for _ in range(5))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def compute_amounts(unit_price: Decimal, quantity: int) -> Dict[str, Decimal]:
    subtotal = _money(Decimal(unit_price) * quantity)
    shipping = _money(settings.shipping_flat_fee)
    tax = _money(subtotal * settings.tax_rate)
    return {
        "subtotal": subtotal,
        "shipping_amount": shipping,
        "tax_amount": tax,
        "total_amount": subtotal + shipping + tax,
    }


def _action_url(order: Order) -> str:
    return f"/orders/{order.order_number}"


# ── Loading ──────────────────────────────────────────────────────────────────

async def load_order(session: AsyncSession, ref: str | int) -> Order:
    """Fetch an order by numeric id or order number, always re-reading its row."""
    stmt = select(Order).execution_options(populate_existing=True)
    if isinstance(ref, int) or str(ref).isdigit():
        stmt = stmt.where(Order.id == int(ref))
    else:
        stmt = stmt.where(Order.order_number == str(ref))
    order = (await session.execute(stmt)).scalar_one_or_none()
    if order is None:
        raise NotFoundError("Order not found")
    return order


async def list_orders(
    session: AsyncSession,
    user_id: int,
    role: str = "all",
    status: Optional[OrderStatus] = None,
) -> List[Order]:
    """Orders the user bought (``buyer``), sold (``seller``) or either (``all``)."""
    stmt = select(Order).order_by(Order.created_at.desc(), Order.id.desc())
    if role == "buyer":
        stmt = stmt.where(Order.buyer_id == user_id)
    elif role == "seller":
        stmt = stmt.where(Order.seller_id == user_id)
    else:
        stmt = stmt.where(or_(Order.buyer_id == user_id, Order.seller_id == user_id))
    if status is not None:
        stmt = stmt.where(Order.status == status)
    return list((await session.execute(stmt)).scalars().all())


async def status_history(session: AsyncSession, order_id: int) -> List[OrderStatusHistory]:
    return list(
        (
            await session.execute(
                select(OrderStatusHistory)
                .where(OrderStatusHistory.order_id == order_id)
                .order_by(OrderStatusHistory.id)
            )
        ).scalars().all()
    )


# ── Transition primitives ────────────────────────────────────────────────────

def _append_history(
    session: AsyncSession,
    order_id: int,
    previous: Optional[OrderStatus],
    new: OrderStatus,
    actor: Optional[Actor],
    reason: Optional[str],
) -> None:
    session.add(
        OrderStatusHistory(
            order_id=order_id,
            previous_status=previous,
            new_status=new,
            changed_by=actor.id if actor else None,
            reason=reason,
        )
    )


async def _current_status(session: AsyncSession, order_id: int) -> OrderStatus:
    return (
        await session.execute(select(Order.status).where(Order.id == order_id))
    ).scalar_one()


async def _set_status(session: AsyncSession, order: Order, status: OrderStatus) -> None:
    await session.execute(
        update(Order)
        .where(Order.id == order.id)
        .values(status=status, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    set_committed_value(order, "status", status)


async def _claim(session: AsyncSession, order: Order, t: Transition) -> bool:
    """
    Move *order* to ``t.target`` only if its stored status is still one of
    ``t.sources``.  On failure the in-memory status is synced with the row.
    """
    result = await session.execute(
        update(Order)
        .where(Order.id == order.id, Order.status.in_(list(t.sources)))
        .values(status=t.target, updated_at=_now())
        .execution_options(synchronize_session=False)
    )
    if result.rowcount == 0:
        set_committed_value(order, "status", await _current_status(session, order.id))
        return False
    set_committed_value(order, "status", t.target)
    return True


async def _transition(
    session: AsyncSession,
    order: Order,
    name: str,
    actor: Optional[Actor],
    reason: Optional[str],
) -> OrderStatus:
    """Guarded transition + history row.  Returns the previous status."""
    authorize(name, order, actor)
    t = check_legal(name, order.status)
    previous = order.status
    if not await _claim(session, order, t):
        raise InvalidStateTransition(current=order.status.value, target=t.target.value)
    _append_history(session, order.id, previous, t.target, actor, reason)
    logger.info(
        "Order %s: %s -> %s (%s)", order.order_number, previous.value, t.target.value, reason
    )
    return previous


def flag_for_reconciliation(order: Order, reason: str) -> None:
    order.needs_reconciliation = True
    order.reconciliation_reason = reason
    logger.error("Order %s flagged for reconciliation: %s", order.order_number, reason)


async def _restore_inventory(session: AsyncSession, order: Order) -> None:
    """Give every line item back to the ledger, once."""
    if not order.inventory_committed:
        return
    for line in order.items:
        await inventory.restore(session, line.inventory_item_id, line.quantity)
    order.inventory_committed = False


# ── Creation ─────────────────────────────────────────────────────────────────

async def create_order(
    session: AsyncSession,
    gateway: PaymentGateway,
    buyer: Actor,
    item_id: int,
    quantity: int,
    shipping_address: Dict[str, Any],
    billing_address: Optional[Dict[str, Any]] = None,
    notes: Optional[str] = None,
) -> Tuple[Order, Payment, GatewayOrderRef]:
    """
    Price the item, issue a gateway order and persist Order + OrderItem +
    Payment.  Stock is checked here but only taken at confirmation.
    """
    if quantity < 1:
        raise ValidationError("Quantity must be at least 1", field="quantity")

    item = await session.get(InventoryItem, item_id)
    if item is None or item.status != ItemStatus.ACTIVE:
        raise NotFoundError("Item not found or not available")
    if item.seller_id == buyer.id:
        raise ValidationError("Cannot buy your own item", field="itemId")
    if item.quantity < quantity:
        raise InsufficientStock(item_id=item.id, requested=quantity, available=item.quantity)

    amounts = compute_amounts(item.price, quantity)
    order_number = new_order_number()

    # Issue the gateway order first: a failure here must leave nothing behind
    ref = await gateway.create_order(
        amount_minor=to_minor_units(amounts["total_amount"]),
        currency=settings.currency,
        receipt=order_number,
        notes={
            "order_number": order_number,
            "user_id": str(buyer.id),
            "item_id": str(item.id),
        },
    )

    order = Order(
        order_number=order_number,
        buyer_id=buyer.id,
        seller_id=item.seller_id,
        status=OrderStatus.PENDING,
        currency=settings.currency,
        shipping_address=shipping_address,
        billing_address=billing_address or shipping_address,
        notes=notes,
        **amounts,
    )
    order.items.append(
        OrderItem(
            inventory_item_id=item.id,
            quantity=quantity,
            unit_price=item.price,
            total_price=amounts["subtotal"],
            item_snapshot={
                "id": item.id,
                "title": item.title,
                "description": item.description,
                "category": item.category,
                "price": str(item.price),
                "seller_id": item.seller_id,
            },
        )
    )
    session.add(order)
    await session.flush()
    _append_history(session, order.id, None, OrderStatus.PENDING, buyer, "Order placed")

    payment = Payment(
        order_id=order.id,
        gateway_order_id=ref.id,
        amount=amounts["total_amount"],
        currency=settings.currency,
        status=PaymentStatus.CREATED,
    )
    session.add(payment)
    await session.flush()

    await _transition(session, order, "await_payment", buyer, "Gateway order issued")
    logger.info(
        "Order %s created: buyer=%s item=%s qty=%d total=%s gateway_order=%s",
        order.order_number, buyer.id, item.id, quantity, amounts["total_amount"], ref.id,
    )
    return order, payment, ref


# ── Payment confirmation ─────────────────────────────────────────────────────

async def confirm_payment(
    session: AsyncSession,
    order: Order,
    actor: Optional[Actor] = None,
    reason: str = "Payment captured",
) -> bool:
    """
    Take the ordered units out of the ledger and mark the order confirmed.

    Returns False without touching inventory when the order was already
    confirmed (by the other confirmation path or a redelivered event).
    Raises ``InsufficientStock`` with no net change when a line item cannot
    be covered.
    """
    if order.status in POST_CONFIRMATION and order.inventory_committed:
        return False

    authorize("confirm", order, actor)
    t = check_legal("confirm", order.status)
    previous = order.status

    if not await _claim(session, order, t):
        if order.status in POST_CONFIRMATION:
            return False
        raise InvalidStateTransition(current=order.status.value, target=t.target.value)

    taken: List[OrderItem] = []
    try:
        for line in order.items:
            await inventory.reserve_if_available(session, line.inventory_item_id, line.quantity)
            taken.append(line)
    except InsufficientStock:
        # Undo this call's writes; nothing outside the transaction saw them
        for line in taken:
            await inventory.restore(session, line.inventory_item_id, line.quantity)
        await _set_status(session, order, previous)
        raise

    order.inventory_committed = True
    _append_history(session, order.id, previous, t.target, actor, reason)
    logger.info("Order %s confirmed (%s)", order.order_number, reason)

    notifications.notify(
        session, order.buyer_id, "Payment Successful",
        "Your payment has been processed. Order will be shipped soon.",
        kind="success", action_url=_action_url(order),
    )
    notifications.notify(
        session, order.seller_id, "New Order Received",
        "You have received a new order. Please prepare for shipping.",
        action_url=_action_url(order),
    )
    return True


# ── Fulfilment ───────────────────────────────────────────────────────────────

async def mark_processing(
    session: AsyncSession, order: Order, actor: Actor, reason: Optional[str] = None
) -> None:
    await _transition(session, order, "process", actor, reason or "Seller is preparing the order")
    notifications.notify(
        session, order.buyer_id, "Order Processing",
        "The seller is preparing your order.", action_url=_action_url(order),
    )


async def mark_shipped(
    session: AsyncSession, order: Order, actor: Optional[Actor], reason: str
) -> None:
    await _transition(session, order, "ship", actor, reason)


async def record_delivery(
    session: AsyncSession,
    order: Order,
    actor: Optional[Actor] = None,
    delivered_at: Optional[datetime] = None,
) -> None:
    await _transition(session, order, "deliver", actor, "Package delivered")

    delivered_at = delivered_at or _now()
    detail = (
        await session.execute(
            select(ShippingDetail).where(ShippingDetail.order_id == order.id)
        )
    ).scalar_one_or_none()
    if detail is not None:
        detail.actual_delivery = delivered_at
        detail.tracking_status = "Delivered"

    notifications.notify(
        session, order.buyer_id, "Order Delivered",
        "Your order has been delivered.", kind="success", action_url=_action_url(order),
    )


# ── Cancellation / refund ────────────────────────────────────────────────────

async def _refund_at_gateway(
    gateway: Optional[PaymentGateway], payment: Payment, amount: Decimal
) -> str:
    if gateway is None:
        raise PaymentGatewayError("Payment gateway required to refund a captured payment")
    return await gateway.refund_payment(payment.gateway_payment_id, to_minor_units(amount))


async def cancel_order(
    session: AsyncSession,
    gateway: Optional[PaymentGateway],
    order: Order,
    actor: Optional[Actor],
    reason: Optional[str] = None,
) -> Optional[Payment]:
    """
    Cancel an order that has not shipped.  A captured payment is refunded in
    full and committed inventory is given back.  Returns the refunded payment.
    """
    reason = reason or "Order cancelled"
    await _transition(session, order, "cancel", actor, reason)

    payment = await payments.captured_payment_for(session, order.id)
    if payment is not None:
        refund_id = await _refund_at_gateway(gateway, payment, payment.amount)
        await payments.mark_refunded(session, payment, payment.amount, refund_id)

    await _restore_inventory(session, order)
    order.notes = f"Cancelled: {reason}"

    for user_id in (order.buyer_id, order.seller_id):
        notifications.notify(
            session, user_id, "Order Cancelled",
            f"Order {order.order_number} was cancelled ({reason}).",
            kind="warning", action_url=_action_url(order),
        )
    return payment


async def refund_order(
    session: AsyncSession,
    gateway: PaymentGateway,
    order: Order,
    actor: Actor,
    amount: Optional[Decimal] = None,
    reason: Optional[str] = None,
) -> Payment:
    """Seller-initiated refund of a confirmed order; restores inventory."""
    authorize("refund", order, actor)
    check_legal("refund", order.status)

    payment = await payments.captured_payment_for(session, order.id)
    if payment is None:
        raise ValidationError("Payment not completed, cannot refund", field="payment")

    refund_amount = _money(amount) if amount is not None else payment.amount
    if refund_amount <= 0:
        raise ValidationError("Refund amount must be positive", field="amount")
    if refund_amount > payment.amount:
        raise ValidationError(f"Refund amount cannot exceed {payment.amount}", field="amount")

    reason = reason or "Order refunded by seller"
    await _transition(session, order, "refund", actor, reason)

    refund_id = await _refund_at_gateway(gateway, payment, refund_amount)
    await payments.mark_refunded(session, payment, refund_amount, refund_id)
    await _restore_inventory(session, order)
    order.notes = f"Refunded: {reason}"

    notifications.notify(
        session, order.buyer_id, "Order Refunded",
        f"A refund of {refund_amount} {payment.currency} has been initiated.",
        action_url=_action_url(order),
    )
    return payment


# ── PATCH entry point ────────────────────────────────────────────────────────

async def apply_status_update(
    session: AsyncSession,
    gateway: PaymentGateway,
    order: Order,
    actor: Actor,
    status: OrderStatus,
    reason: Optional[str] = None,
) -> None:
    """Route a requested status onto the operation that produces it."""
    if status == OrderStatus.PROCESSING:
        await mark_processing(session, order, actor, reason)
    elif status == OrderStatus.DELIVERED:
        await record_delivery(session, order, actor)
    elif status == OrderStatus.CANCELLED:
        await cancel_order(session, gateway, order, actor, reason)
    elif status == OrderStatus.REFUNDED:
        await refund_order(session, gateway, order, actor, reason=reason)
    elif status == OrderStatus.SHIPPED:
        raise ValidationError("Create a shipment to mark an order shipped", field="status")
    else:
        raise InvalidStateTransition(current=order.status.value, target=status.value)
