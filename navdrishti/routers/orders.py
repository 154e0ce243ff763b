"""
Order endpoints.

POST  /orders
GET   /orders                  ?role=buyer|seller|all&status=
POST  /orders/verify-payment
GET   /orders/{ref}
PATCH /orders/{ref}
POST  /orders/{ref}/cancel
POST  /orders/{ref}/refund

``{ref}`` is the numeric order id or the order number.
"""
from __future__ import annotations

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from navdrishti.database import get_db
from navdrishti.deps import get_current_user, rate_limited
from navdrishti.errors import AuthorizationError, NotFoundError, PaymentGatewaySignatureError
from navdrishti.models import Order, OrderStatus
from navdrishti.schemas import (
    Amounts,
    CancelRequest,
    CreateOrderRequest,
    CreateOrderResponse,
    HistoryView,
    OrderDetail,
    OrderSummary,
    OrderView,
    PaymentView,
    RefundRequest,
    RefundResponse,
    ShipmentView,
    StatusUpdateRequest,
    TrackingEventView,
    VerifyPaymentRequest,
    VerifyPaymentResponse,
)
from navdrishti.services import orders, payments, shipping
from navdrishti.services.gateway import PaymentGateway, get_payment_gateway
from navdrishti.services.payment_events import Outcome, apply_capture
from navdrishti.services.state_machine import Actor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


def _ensure_party(order: Order, user: Actor) -> None:
    if user.is_admin or user.id in (order.buyer_id, order.seller_id):
        return
    raise AuthorizationError("Not a party to this order")


async def _detail(db: AsyncSession, order: Order) -> OrderDetail:
    detail = OrderDetail.model_validate(order)
    detail.reconciliation_reason = order.reconciliation_reason
    detail.payments = [PaymentView.model_validate(p) for p in await payments.payments_for_order(db, order.id)]
    detail.history = [HistoryView.model_validate(h) for h in await orders.status_history(db, order.id)]
    shipment = await shipping.get_for_order(db, order.id)
    if shipment is not None:
        detail.shipping = ShipmentView.model_validate(shipment)
        detail.tracking = [
            TrackingEventView.model_validate(e) for e in await shipping.list_events(db, shipment.id)
        ]
    return detail


# ── Create / list ────────────────────────────────────────────────────────────

@router.post(
    "",
    response_model=CreateOrderResponse,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(rate_limited("orders:create"))],
)
async def create_order(
    body: CreateOrderRequest,
    user: Actor = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
) -> CreateOrderResponse:
    order, payment, ref = await orders.create_order(
        db,
        gateway,
        user,
        item_id=body.item_id,
        quantity=body.quantity,
        shipping_address=body.shipping_address.model_dump(),
        billing_address=body.billing_address.model_dump() if body.billing_address else None,
        notes=body.notes,
    )
    return CreateOrderResponse(
        order_id=order.id,
        order_number=order.order_number,
        status=order.status,
        gateway_order_id=ref.id,
        gateway_key_id=gateway.key_id,
        amount=ref.amount,
        currency=ref.currency,
        amounts=Amounts(
            subtotal=order.subtotal,
            shipping_amount=order.shipping_amount,
            tax_amount=order.tax_amount,
            total_amount=order.total_amount,
            currency=order.currency,
        ),
    )


@router.get("", response_model=List[OrderSummary])
async def list_orders(
    role: str = Query(default="all", pattern="^(buyer|seller|all)$"),
    order_status: Optional[OrderStatus] = Query(default=None, alias="status"),
    user: Actor = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> List[OrderSummary]:
    rows = await orders.list_orders(db, user.id, role=role, status=order_status)
    result = []
    for order in rows:
        summary = OrderSummary.model_validate(order)
        attempts = await payments.payments_for_order(db, order.id)
        if attempts:
            summary.payment_status = attempts[-1].status
        shipment = await shipping.get_for_order(db, order.id)
        if shipment is not None:
            summary.tracking_status = shipment.tracking_status
            summary.waybill = shipment.waybill
        result.append(summary)
    return result


# ── Client-side payment confirmation ─────────────────────────────────────────

@router.post(
    "/verify-payment",
    response_model=VerifyPaymentResponse,
    dependencies=[Depends(rate_limited("orders:verify"))],
)
async def verify_payment(
    body: VerifyPaymentRequest,
    user: Actor = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
):
    """
    Called by the checkout page after the gateway widget succeeds.  Converges
    with the webhook: whichever arrives second is a no-op.
    """
    if not gateway.verify_client_signature(
        body.gateway_order_id, body.gateway_payment_id, body.signature
    ):
        logger.warning(
            "Client payment signature rejected user=%s gateway_order=%s",
            user.id, body.gateway_order_id,
        )
        raise PaymentGatewaySignatureError()

    base = await payments.by_gateway_order_id(db, body.gateway_order_id)
    if base is None:
        raise NotFoundError("Order not found")
    order = await orders.load_order(db, base.order_id)
    if not (user.is_admin or user.id == order.buyer_id):
        raise AuthorizationError("Only the buyer can confirm this payment")

    result = await apply_capture(
        db, body.gateway_order_id, body.gateway_payment_id, actor=user
    )

    if result.outcome in (Outcome.RECONCILIATION_REQUIRED, Outcome.IGNORED):
        # Returned, not raised: the payment record and flag must still commit
        return JSONResponse(
            status_code=status.HTTP_409_CONFLICT,
            content={
                "error": "reconciliation_required"
                if result.outcome == Outcome.RECONCILIATION_REQUIRED
                else "invalid_state_transition",
                "detail": "Payment received but the order could not be confirmed; "
                          "it has been flagged for review",
                "orderNumber": order.order_number,
                "reason": result.detail,
            },
        )

    return VerifyPaymentResponse(
        status="ok",
        order_id=order.id,
        order_number=order.order_number,
        order_status=order.status,
        payment_status=result.payment.status,
    )


# ── Single order ─────────────────────────────────────────────────────────────

@router.get("/{ref}", response_model=OrderDetail)
async def get_order(
    ref: str,
    user: Actor = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
) -> OrderDetail:
    order = await orders.load_order(db, ref)
    _ensure_party(order, user)
    return await _detail(db, order)


@router.patch("/{ref}", response_model=OrderView)
async def update_status(
    ref: str,
    body: StatusUpdateRequest,
    user: Actor = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
) -> OrderView:
    order = await orders.load_order(db, ref)
    _ensure_party(order, user)
    await orders.apply_status_update(db, gateway, order, user, body.status, body.reason)
    return OrderView.model_validate(order)


@router.post("/{ref}/cancel", response_model=OrderView)
async def cancel_order(
    ref: str,
    body: CancelRequest,
    user: Actor = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
) -> OrderView:
    order = await orders.load_order(db, ref)
    _ensure_party(order, user)
    await orders.cancel_order(db, gateway, order, user, body.reason)
    return OrderView.model_validate(order)


@router.post("/{ref}/refund", response_model=RefundResponse)
async def refund_order(
    ref: str,
    body: RefundRequest,
    user: Actor = Depends(get_current_user),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
) -> RefundResponse:
    order = await orders.load_order(db, ref)
    _ensure_party(order, user)
    payment = await orders.refund_order(db, gateway, order, user, body.amount, body.reason)
    return RefundResponse(
        order_number=order.order_number,
        order_status=order.status,
        refund_amount=payment.refund_amount,
        gateway_refund_id=payment.gateway_refund_id,
    )
