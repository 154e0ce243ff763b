"""
Service-level tests for the order aggregate: creation, confirmation,
fulfilment and the refund / cancellation flow.
"""
from __future__ import annotations

import re
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import func, select

from conftest import ADDRESS, ADMIN, BUYER, SELLER, STRANGER, make_item
from navdrishti.errors import (
    AuthorizationError,
    InsufficientStock,
    InvalidStateTransition,
    NotFoundError,
    PaymentGatewayError,
    PersistenceError,
    ValidationError,
)
from navdrishti.models import ItemStatus, Order, OrderStatus, PaymentStatus
from navdrishti.services import orders, payments
from navdrishti.services.inventory import get_quantity
from navdrishti.services.payment_events import apply_capture


@pytest_asyncio.fixture
async def item(db_session):
    item = await make_item(db_session, quantity=5, price=Decimal("100.00"))
    await db_session.commit()
    return item


async def place(db_session, gateway, item, quantity=2, buyer=BUYER):
    order, payment, ref = await orders.create_order(
        db_session, gateway, buyer, item.id, quantity, dict(ADDRESS)
    )
    await db_session.commit()
    return order, payment


async def pay(db_session, payment, payment_id="pay_1"):
    result = await apply_capture(db_session, payment.gateway_order_id, payment_id)
    await db_session.commit()
    return result


# ── Pricing ──────────────────────────────────────────────────────────────────

def test_compute_amounts():
    amounts = orders.compute_amounts(Decimal("100.00"), 2)
    assert amounts == {
        "subtotal": Decimal("200.00"),
        "shipping_amount": Decimal("50.00"),
        "tax_amount": Decimal("36.00"),
        "total_amount": Decimal("286.00"),
    }


def test_tax_rounds_half_up():
    amounts = orders.compute_amounts(Decimal("0.25"), 1)
    # 0.25 * 0.18 = 0.045 -> 0.05
    assert amounts["tax_amount"] == Decimal("0.05")


def test_order_number_format():
    assert re.fullmatch(r"ORD-\d{13}-[a-z0-9]{5}", orders.new_order_number())


# ── Creation ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_order_does_not_touch_inventory(db_session, gateway, item):
    order, payment = await place(db_session, gateway, item)

    assert order.status == OrderStatus.PAYMENT_PENDING
    assert order.total_amount == Decimal("286.00")
    assert order.seller_id == SELLER.id
    assert order.billing_address == ADDRESS
    assert order.items[0].item_snapshot["title"] == "Handloom saree"
    assert payment.status == PaymentStatus.CREATED
    assert payment.gateway_order_id == gateway.orders_created[0].id
    assert gateway.orders_created[0].amount == 28600
    assert gateway.orders_created[0].receipt == order.order_number
    assert await get_quantity(db_session, item.id) == 5

    history = await orders.status_history(db_session, order.id)
    assert [(h.previous_status, h.new_status) for h in history] == [
        (None, OrderStatus.PENDING),
        (OrderStatus.PENDING, OrderStatus.PAYMENT_PENDING),
    ]


@pytest.mark.asyncio
async def test_cannot_buy_own_item(db_session, gateway, item):
    with pytest.raises(ValidationError) as exc_info:
        await orders.create_order(db_session, gateway, SELLER, item.id, 1, dict(ADDRESS))
    assert exc_info.value.field == "itemId"


@pytest.mark.asyncio
async def test_cannot_order_more_than_stock(db_session, gateway, item):
    with pytest.raises(InsufficientStock):
        await orders.create_order(db_session, gateway, BUYER, item.id, 6, dict(ADDRESS))


@pytest.mark.asyncio
async def test_inactive_item_is_not_found(db_session, gateway, item):
    item.status = ItemStatus.INACTIVE
    await db_session.commit()
    with pytest.raises(NotFoundError):
        await orders.create_order(db_session, gateway, BUYER, item.id, 1, dict(ADDRESS))


@pytest.mark.asyncio
async def test_gateway_failure_persists_nothing(db_session, gateway, item):
    gateway.fail_create = True
    with pytest.raises(PaymentGatewayError):
        await orders.create_order(db_session, gateway, BUYER, item.id, 1, dict(ADDRESS))
    await db_session.rollback()

    count = (await db_session.execute(select(func.count()).select_from(Order))).scalar_one()
    assert count == 0


# ── Round trip ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_confirmation_decrements_once(db_session, gateway, item):
    order, payment = await place(db_session, gateway, item, quantity=2)
    await pay(db_session, payment)

    order = await orders.load_order(db_session, order.id)
    assert order.status == OrderStatus.CONFIRMED
    assert order.inventory_committed is True
    assert await get_quantity(db_session, item.id) == 3

    # Confirming again is a no-op
    assert await orders.confirm_payment(db_session, order) is False
    assert await get_quantity(db_session, item.id) == 3


@pytest.mark.asyncio
async def test_cancel_before_confirmation_leaves_stock(db_session, gateway, item):
    order, _ = await place(db_session, gateway, item, quantity=2)

    refunded = await orders.cancel_order(db_session, gateway, order, BUYER, "changed my mind")
    await db_session.commit()

    assert refunded is None
    assert gateway.refunds == []
    assert order.status == OrderStatus.CANCELLED
    assert await get_quantity(db_session, item.id) == 5


@pytest.mark.asyncio
async def test_refund_after_confirmation_restores_stock(db_session, gateway, item):
    order, payment = await place(db_session, gateway, item, quantity=2)
    await pay(db_session, payment)
    assert await get_quantity(db_session, item.id) == 3

    order = await orders.load_order(db_session, order.id)
    refunded = await orders.refund_order(db_session, gateway, order, SELLER, reason="damaged")
    await db_session.commit()

    assert order.status == OrderStatus.REFUNDED
    assert order.inventory_committed is False
    assert refunded.status == PaymentStatus.REFUNDED
    assert refunded.refund_amount == Decimal("286.00")
    assert refunded.gateway_refund_id == "rfnd_test_1"
    assert gateway.refunds == [("pay_1", 28600)]
    assert await get_quantity(db_session, item.id) == 5


@pytest.mark.asyncio
async def test_partial_refund(db_session, gateway, item):
    order, payment = await place(db_session, gateway, item, quantity=1)
    await pay(db_session, payment)
    order = await orders.load_order(db_session, order.id)

    refunded = await orders.refund_order(db_session, gateway, order, SELLER, Decimal("100"))

    assert refunded.refund_amount == Decimal("100.00")
    assert gateway.refunds == [("pay_1", 10000)]


@pytest.mark.asyncio
async def test_refund_amount_bounds(db_session, gateway, item):
    order, payment = await place(db_session, gateway, item, quantity=1)
    await pay(db_session, payment)
    order = await orders.load_order(db_session, order.id)

    with pytest.raises(ValidationError):
        await orders.refund_order(db_session, gateway, order, SELLER, Decimal("500.00"))
    with pytest.raises(ValidationError):
        await orders.refund_order(db_session, gateway, order, SELLER, Decimal("0"))
    assert order.status == OrderStatus.CONFIRMED


@pytest.mark.asyncio
async def test_refund_requires_captured_payment(db_session, gateway, item):
    order, _ = await place(db_session, gateway, item, quantity=1)
    await orders.confirm_payment(db_session, order, ADMIN, "manual confirmation")

    with pytest.raises(ValidationError) as exc_info:
        await orders.refund_order(db_session, gateway, order, SELLER)
    assert exc_info.value.field == "payment"


@pytest.mark.asyncio
async def test_refunding_uncaptured_payment_is_internal_error(db_session, gateway, item):
    _, payment = await place(db_session, gateway, item, quantity=1)

    with pytest.raises(PersistenceError) as exc_info:
        await payments.mark_refunded(db_session, payment, payment.amount, "rfnd_x")
    assert exc_info.value.status_code == 500
    assert exc_info.value.to_dict() == {"error": "internal_error", "detail": "Internal server error"}


@pytest.mark.asyncio
async def test_cancel_confirmed_order_refunds_in_full(db_session, gateway, item):
    order, payment = await place(db_session, gateway, item, quantity=2)
    await pay(db_session, payment)
    order = await orders.load_order(db_session, order.id)

    refunded = await orders.cancel_order(db_session, gateway, order, BUYER, "ordered twice")
    await db_session.commit()

    assert refunded.status == PaymentStatus.REFUNDED
    assert gateway.refunds == [("pay_1", 28600)]
    assert order.status == OrderStatus.CANCELLED
    assert await get_quantity(db_session, item.id) == 5


@pytest.mark.asyncio
async def test_gateway_refund_failure_rolls_back(db_session, gateway, item):
    order, payment = await place(db_session, gateway, item, quantity=2)
    await pay(db_session, payment)
    order = await orders.load_order(db_session, order.id)

    gateway.fail_refund = True
    with pytest.raises(PaymentGatewayError):
        await orders.refund_order(db_session, gateway, order, SELLER)
    await db_session.rollback()

    order = await orders.load_order(db_session, order.id)
    assert order.status == OrderStatus.CONFIRMED
    assert (await payments.captured_payment_for(db_session, order.id)) is not None
    assert await get_quantity(db_session, item.id) == 3


# ── Legality ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_delivery_on_pending_order_is_illegal(db_session, gateway, item):
    order, _ = await place(db_session, gateway, item)
    with pytest.raises(InvalidStateTransition):
        await orders.record_delivery(db_session, order)


@pytest.mark.asyncio
async def test_refund_on_delivered_order_is_illegal(db_session, gateway, item):
    order, payment = await place(db_session, gateway, item)
    await pay(db_session, payment)
    order = await orders.load_order(db_session, order.id)
    await orders.mark_shipped(db_session, order, SELLER, "handed to courier")
    await orders.record_delivery(db_session, order)
    await db_session.commit()

    with pytest.raises(InvalidStateTransition):
        await orders.refund_order(db_session, gateway, order, SELLER)
    assert await get_quantity(db_session, item.id) == 3


@pytest.mark.asyncio
async def test_cancel_after_shipping_is_illegal(db_session, gateway, item):
    order, payment = await place(db_session, gateway, item)
    await pay(db_session, payment)
    order = await orders.load_order(db_session, order.id)
    await orders.mark_shipped(db_session, order, SELLER, "handed to courier")

    with pytest.raises(InvalidStateTransition):
        await orders.cancel_order(db_session, gateway, order, BUYER)


@pytest.mark.asyncio
async def test_stale_instance_loses_claim(db_session, session_factory, gateway, item):
    order, _ = await place(db_session, gateway, item)

    async with session_factory() as other:
        fresh = await orders.load_order(other, order.id)
        await orders.cancel_order(other, gateway, fresh, SELLER, "out of stock")
        await other.commit()

    # ``order`` still believes it is payment_pending
    with pytest.raises(InvalidStateTransition):
        await orders.cancel_order(db_session, gateway, order, BUYER)
    assert order.status == OrderStatus.CANCELLED


@pytest.mark.asyncio
async def test_only_parties_may_act(db_session, gateway, item):
    order, payment = await place(db_session, gateway, item)
    await pay(db_session, payment)
    order = await orders.load_order(db_session, order.id)

    with pytest.raises(AuthorizationError):
        await orders.cancel_order(db_session, gateway, order, STRANGER)
    with pytest.raises(AuthorizationError):
        await orders.refund_order(db_session, gateway, order, BUYER)
    with pytest.raises(AuthorizationError):
        await orders.refund_order(db_session, gateway, order, ADMIN)
    with pytest.raises(AuthorizationError):
        await orders.mark_processing(db_session, order, BUYER)


# ── No negative inventory ────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_at_most_quantity_confirmations_succeed(db_session, gateway):
    item = await make_item(db_session, quantity=3)
    await db_session.commit()

    placed = [await place(db_session, gateway, item, quantity=1) for _ in range(5)]

    confirmed, short = 0, 0
    for order, _ in placed:
        try:
            await orders.confirm_payment(db_session, order)
            confirmed += 1
        except InsufficientStock:
            short += 1
            assert order.status == OrderStatus.PAYMENT_PENDING
    await db_session.commit()

    assert (confirmed, short) == (3, 2)
    assert await get_quantity(db_session, item.id) == 0


# ── PATCH routing ────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_status_update_routing(db_session, gateway, item):
    order, payment = await place(db_session, gateway, item)
    await pay(db_session, payment)
    order = await orders.load_order(db_session, order.id)

    with pytest.raises(ValidationError):
        await orders.apply_status_update(db_session, gateway, order, SELLER, OrderStatus.SHIPPED)
    with pytest.raises(InvalidStateTransition):
        await orders.apply_status_update(db_session, gateway, order, SELLER, OrderStatus.PENDING)

    await orders.apply_status_update(
        db_session, gateway, order, SELLER, OrderStatus.PROCESSING, "packing"
    )
    assert order.status == OrderStatus.PROCESSING
    history = await orders.status_history(db_session, order.id)
    assert history[-1].reason == "packing"
    assert history[-1].changed_by == SELLER.id


@pytest.mark.asyncio
async def test_list_orders_by_role(db_session, gateway, item):
    other_item = await make_item(db_session, seller_id=BUYER.id, title="Brass lamp")
    await db_session.commit()
    await place(db_session, gateway, item)
    await place(db_session, gateway, other_item, quantity=1, buyer=SELLER)

    as_buyer = await orders.list_orders(db_session, BUYER.id, role="buyer")
    as_seller = await orders.list_orders(db_session, BUYER.id, role="seller")
    everything = await orders.list_orders(db_session, BUYER.id)

    assert [o.buyer_id for o in as_buyer] == [BUYER.id]
    assert [o.seller_id for o in as_seller] == [BUYER.id]
    assert len(everything) == 2
    assert await orders.list_orders(db_session, BUYER.id, status=OrderStatus.CONFIRMED) == []


@pytest.mark.asyncio
async def test_load_order_by_number_or_id(db_session, gateway, item):
    order, _ = await place(db_session, gateway, item)
    assert (await orders.load_order(db_session, order.order_number)).id == order.id
    assert (await orders.load_order(db_session, str(order.id))).id == order.id
    with pytest.raises(NotFoundError):
        await orders.load_order(db_session, "ORD-0-nope0")
