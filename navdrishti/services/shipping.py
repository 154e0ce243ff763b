"""
Shipment records and tracking.

A shipment is created only for a confirmed (or processing) order: the order is
moved to ``shipped`` first, then the carrier is asked for a waybill.  A carrier
failure propagates and rolls the whole request back, status change included.

Tracking scans are append-only and deduplicated on
(shipment, time, status, location), so carrier replays are harmless.
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from navdrishti.errors import NotFoundError
from navdrishti.models import Order, OrderStatus, ShippingDetail, TrackingEvent
from navdrishti.services import notifications, orders
from navdrishti.services.carrier import CarrierScan, ShipmentRequest, ShippingProvider
from navdrishti.services.state_machine import Actor

logger = logging.getLogger(__name__)

DELIVERED = "delivered"


def _utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ── Lookups ──────────────────────────────────────────────────────────────────

async def get_by_waybill(session: AsyncSession, waybill: str) -> ShippingDetail:
    detail = (
        await session.execute(
            select(ShippingDetail).where(ShippingDetail.waybill == waybill)
        )
    ).scalar_one_or_none()
    if detail is None:
        raise NotFoundError("Shipment not found")
    return detail


async def get_for_order(session: AsyncSession, order_id: int) -> Optional[ShippingDetail]:
    return (
        await session.execute(
            select(ShippingDetail).where(ShippingDetail.order_id == order_id)
        )
    ).scalar_one_or_none()


async def list_events(session: AsyncSession, shipping_id: int) -> List[TrackingEvent]:
    return list(
        (
            await session.execute(
                select(TrackingEvent)
                .where(TrackingEvent.shipping_id == shipping_id)
                .order_by(TrackingEvent.occurred_at, TrackingEvent.id)
            )
        ).scalars().all()
    )


# ── Creation ─────────────────────────────────────────────────────────────────

async def create_shipment(
    session: AsyncSession,
    carrier: ShippingProvider,
    order: Order,
    actor: Actor,
    service_type: str,
    pickup_address: Dict[str, Any],
    delivery_address: Optional[Dict[str, Any]],
    package: Dict[str, Any],
) -> ShippingDetail:
    """Ship *order*: status first, then the carrier manifest, then the record."""
    await orders.mark_shipped(session, order, actor, f"Shipment created ({service_type})")

    delivery_address = delivery_address or order.shipping_address
    ref = await carrier.create_shipment(
        ShipmentRequest(
            order_number=order.order_number,
            service_type=service_type,
            pickup_address=pickup_address,
            delivery_address=delivery_address,
            package=package,
            total_amount=str(order.total_amount),
        )
    )

    now = datetime.now(timezone.utc)
    detail = ShippingDetail(
        order_id=order.id,
        waybill=ref.waybill,
        carrier=ref.carrier,
        carrier_order_id=ref.carrier_order_id,
        service_type=service_type,
        tracking_status=ref.status,
        pickup_date=now,
        expected_delivery=ref.expected_delivery,
        pickup_address=pickup_address,
        delivery_address=delivery_address,
        package_details=package,
    )
    session.add(detail)
    await session.flush()

    session.add(
        TrackingEvent(
            shipping_id=detail.id,
            occurred_at=now,
            status=ref.status,
            location=str(pickup_address.get("city") or ""),
            activity="Shipment manifested with carrier",
        )
    )
    await session.flush()

    logger.info(
        "Shipment %s created for order %s via %s",
        ref.waybill, order.order_number, ref.carrier,
    )
    notifications.notify(
        session, order.buyer_id, "Order Shipped",
        f"Your order has been shipped. Tracking ID: {ref.waybill}",
        action_url=f"/orders/{order.order_number}",
    )
    return detail


# ── Tracking ─────────────────────────────────────────────────────────────────

async def _latest_status(session: AsyncSession, shipping_id: int) -> Optional[str]:
    return (
        await session.execute(
            select(TrackingEvent.status)
            .where(TrackingEvent.shipping_id == shipping_id)
            .order_by(TrackingEvent.occurred_at.desc(), TrackingEvent.id.desc())
            .limit(1)
        )
    ).scalar_one_or_none()


async def _apply_delivery(
    session: AsyncSession, detail: ShippingDetail, occurred_at: datetime
) -> None:
    order = await orders.load_order(session, detail.order_id)
    if order.status == OrderStatus.SHIPPED:
        await orders.record_delivery(session, order, None, occurred_at)
    elif order.status == OrderStatus.DELIVERED:
        return
    else:
        logger.warning(
            "Delivery scan for %s ignored: order %s is %s",
            detail.waybill, order.order_number, order.status.value,
        )


async def record_tracking_event(
    session: AsyncSession, waybill: str, scan: CarrierScan
) -> bool:
    """
    Append one carrier scan.  Returns False for a scan already on record.
    A ``Delivered`` scan completes the order.
    """
    detail = await get_by_waybill(session, waybill)
    occurred_at = _utc(scan.occurred_at)
    location = scan.location or ""

    existing = (
        await session.execute(
            select(TrackingEvent.id).where(
                TrackingEvent.shipping_id == detail.id,
                TrackingEvent.occurred_at == occurred_at,
                TrackingEvent.status == scan.status,
                TrackingEvent.location == location,
            )
        )
    ).scalar_one_or_none()
    if existing is not None:
        logger.debug("Duplicate scan for %s at %s ignored", waybill, occurred_at)
        return False

    session.add(
        TrackingEvent(
            shipping_id=detail.id,
            occurred_at=occurred_at,
            status=scan.status,
            location=location,
            activity=scan.activity,
        )
    )
    await session.flush()

    latest = await _latest_status(session, detail.id)
    if latest is not None:
        detail.tracking_status = latest

    if scan.status.strip().lower() == DELIVERED:
        await _apply_delivery(session, detail, occurred_at)

    logger.info("Tracking %s: %s @ %s", waybill, scan.status, location or "-")
    return True


async def refresh_tracking(
    session: AsyncSession, carrier: ShippingProvider, waybill: str
) -> int:
    """Pull scans from the carrier; returns how many were new."""
    await get_by_waybill(session, waybill)
    scans = await carrier.track(waybill)
    added = 0
    for scan in scans:
        if await record_tracking_event(session, waybill, scan):
            added += 1
    return added
