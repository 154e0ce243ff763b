"""
Shipment endpoints.

POST /shipping/create
GET  /shipping/track/{waybill}    refresh from the carrier, return all scans
POST /shipping/track/{waybill}    carrier push (X-Carrier-Token)
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from navdrishti.database import get_db
from navdrishti.deps import get_current_user, verify_carrier_push
from navdrishti.errors import AuthorizationError, ShippingProviderError
from navdrishti.models import ShippingDetail
from navdrishti.schemas import (
    CreateShipmentRequest,
    ShipmentView,
    TrackingEventView,
    TrackingPush,
    TrackingView,
)
from navdrishti.services import orders, shipping
from navdrishti.services.carrier import CarrierScan, ShippingProvider, get_shipping_provider
from navdrishti.services.state_machine import Actor

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/shipping", tags=["shipping"])


async def _tracking_view(
    db: AsyncSession, detail: ShippingDetail, stale: bool = False
) -> TrackingView:
    order = await orders.load_order(db, detail.order_id)
    events = await shipping.list_events(db, detail.id)
    return TrackingView(
        waybill=detail.waybill,
        carrier=detail.carrier,
        tracking_status=detail.tracking_status,
        order_status=order.status,
        stale=stale,
        events=[TrackingEventView.model_validate(e) for e in events],
    )


@router.post("/create", response_model=ShipmentView, status_code=status.HTTP_201_CREATED)
async def create_shipment(
    body: CreateShipmentRequest,
    user: Actor = Depends(get_current_user),
    carrier: ShippingProvider = Depends(get_shipping_provider),
    db: AsyncSession = Depends(get_db),
) -> ShipmentView:
    order = await orders.load_order(db, body.order_id)
    detail = await shipping.create_shipment(
        db,
        carrier,
        order,
        user,
        service_type=body.service_type,
        pickup_address=body.pickup_address.model_dump(),
        delivery_address=body.delivery_address.model_dump() if body.delivery_address else None,
        package=body.package_details.model_dump(exclude_none=True),
    )
    return ShipmentView.model_validate(detail)


@router.get("/track/{waybill}", response_model=TrackingView)
async def track_shipment(
    waybill: str,
    user: Actor = Depends(get_current_user),
    carrier: ShippingProvider = Depends(get_shipping_provider),
    db: AsyncSession = Depends(get_db),
) -> TrackingView:
    detail = await shipping.get_by_waybill(db, waybill)
    order = await orders.load_order(db, detail.order_id)
    if not (user.is_admin or user.id in (order.buyer_id, order.seller_id)):
        raise AuthorizationError("Not a party to this shipment")

    stale = False
    try:
        await shipping.refresh_tracking(db, carrier, waybill)
    except ShippingProviderError as exc:
        # Serve what we already have
        logger.warning("Tracking refresh for %s failed: %s", waybill, exc.detail)
        stale = True
    return await _tracking_view(db, detail, stale=stale)


@router.post(
    "/track/{waybill}",
    response_model=TrackingView,
    dependencies=[Depends(verify_carrier_push)],
)
async def tracking_push(
    waybill: str,
    body: TrackingPush,
    db: AsyncSession = Depends(get_db),
) -> TrackingView:
    scan = CarrierScan(
        occurred_at=body.timestamp or datetime.now(timezone.utc),
        status=body.status,
        location=body.location,
        activity=body.activity,
    )
    await shipping.record_tracking_event(db, waybill, scan)
    return await _tracking_view(db, await shipping.get_by_waybill(db, waybill))
