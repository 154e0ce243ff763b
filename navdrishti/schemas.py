"""
Pydantic schemas for request/response validation.

Client-facing bodies are camelCase on the wire and snake_case in Python.
Gateway webhook bodies keep the gateway's own (snake_case) field names.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from navdrishti.models import ItemStatus, OrderStatus, PaymentStatus


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


# ── Shared pieces ────────────────────────────────────────────────────────────

class Address(CamelModel):
    name: str = Field(..., min_length=1)
    address: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    pincode: str = Field(..., min_length=4, max_length=10)
    phone: str = Field(..., min_length=6)


class PackageDetails(CamelModel):
    weight: float = Field(..., gt=0)
    length: Optional[float] = Field(default=None, gt=0)
    breadth: Optional[float] = Field(default=None, gt=0)
    height: Optional[float] = Field(default=None, gt=0)


# ── Order requests ───────────────────────────────────────────────────────────

class CreateOrderRequest(CamelModel):
    item_id: int
    quantity: int = Field(default=1, ge=1)
    shipping_address: Address
    billing_address: Optional[Address] = None
    notes: Optional[str] = None


class VerifyPaymentRequest(CamelModel):
    gateway_order_id: str = Field(..., min_length=1)
    gateway_payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class StatusUpdateRequest(CamelModel):
    status: OrderStatus
    reason: Optional[str] = None


class CancelRequest(CamelModel):
    reason: Optional[str] = None


class RefundRequest(CamelModel):
    amount: Optional[Decimal] = None
    reason: Optional[str] = None


# ── Order responses ──────────────────────────────────────────────────────────

class Amounts(CamelModel):
    subtotal: Decimal
    shipping_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    currency: str


class CreateOrderResponse(CamelModel):
    order_id: int
    order_number: str
    status: OrderStatus
    gateway_order_id: str
    gateway_key_id: Optional[str]
    amount: int                 # minor units, what the checkout widget expects
    currency: str
    amounts: Amounts


class OrderItemView(CamelModel):
    id: int
    inventory_item_id: int
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    item_snapshot: Dict[str, Any]


class PaymentView(CamelModel):
    id: int
    gateway_order_id: str
    gateway_payment_id: Optional[str]
    amount: Decimal
    currency: str
    status: PaymentStatus
    method: Optional[str]
    captured_at: Optional[datetime]
    refunded_at: Optional[datetime]
    refund_amount: Optional[Decimal]
    failure_reason: Optional[str]


class HistoryView(CamelModel):
    previous_status: Optional[OrderStatus]
    new_status: OrderStatus
    changed_by: Optional[int]
    reason: Optional[str]
    created_at: datetime


class TrackingEventView(CamelModel):
    occurred_at: datetime
    status: str
    location: str
    activity: Optional[str]


class ShipmentView(CamelModel):
    order_id: int
    waybill: str
    carrier: str
    carrier_order_id: Optional[str]
    service_type: str
    tracking_status: str
    expected_delivery: Optional[datetime]
    actual_delivery: Optional[datetime]


class OrderView(CamelModel):
    id: int
    order_number: str
    buyer_id: int
    seller_id: int
    status: OrderStatus
    subtotal: Decimal
    shipping_amount: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    currency: str
    shipping_address: Dict[str, Any]
    billing_address: Dict[str, Any]
    notes: Optional[str]
    needs_reconciliation: bool
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemView] = []


class OrderSummary(OrderView):
    payment_status: Optional[PaymentStatus] = None
    tracking_status: Optional[str] = None
    waybill: Optional[str] = None


class OrderDetail(OrderView):
    reconciliation_reason: Optional[str] = None
    payments: List[PaymentView] = []
    shipping: Optional[ShipmentView] = None
    tracking: List[TrackingEventView] = []
    history: List[HistoryView] = []


class VerifyPaymentResponse(CamelModel):
    status: str
    order_id: int
    order_number: str
    order_status: OrderStatus
    payment_status: PaymentStatus


class RefundResponse(CamelModel):
    order_number: str
    order_status: OrderStatus
    refund_amount: Decimal
    gateway_refund_id: Optional[str]


# ── Shipping ─────────────────────────────────────────────────────────────────

class CreateShipmentRequest(CamelModel):
    order_id: str = Field(..., min_length=1)     # numeric id or order number
    service_type: str = Field(default="standard", pattern="^(standard|express)$")
    pickup_address: Address
    delivery_address: Optional[Address] = None
    package_details: PackageDetails


class TrackingPush(CamelModel):
    status: str = Field(..., min_length=1)
    location: str = ""
    activity: Optional[str] = None
    timestamp: Optional[datetime] = None


class TrackingView(CamelModel):
    waybill: str
    carrier: str
    tracking_status: str
    order_status: OrderStatus
    # True when the carrier could not be reached and only stored scans are shown
    stale: bool = False
    events: List[TrackingEventView] = []


# ── Gateway webhook body ─────────────────────────────────────────────────────

class GatewayPaymentEntity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: str
    order_id: str
    amount: Optional[int] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    method: Optional[str] = None
    error_description: Optional[str] = None


class GatewayWebhookEnvelope(BaseModel):
    model_config = ConfigDict(extra="ignore")

    event: str
    payload: Dict[str, Any] = {}

    def payment_entity(self) -> Optional[GatewayPaymentEntity]:
        """``payload.payment.entity``, or None when the event carries no payment."""
        payment = self.payload.get("payment")
        if not isinstance(payment, dict) or not isinstance(payment.get("entity"), dict):
            return None
        return GatewayPaymentEntity.model_validate(payment["entity"])


class WebhookAck(BaseModel):
    status: str = "ok"


# ── Admin / query responses ──────────────────────────────────────────────────

class InventoryRow(CamelModel):
    id: int
    seller_id: int
    title: str
    price: Decimal
    quantity: int
    status: ItemStatus
    updated_at: datetime


class ReconciliationRow(CamelModel):
    id: int
    order_number: str
    status: OrderStatus
    reconciliation_reason: Optional[str]
    updated_at: datetime


class ExpiryResult(CamelModel):
    cancelled: List[str] = []
    flagged: List[str] = []


class HealthResponse(BaseModel):
    status: str = "ok"
    db: str = "ok"
