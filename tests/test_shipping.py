"""
Shipment creation and tracking, at the service level and over HTTP.
"""
from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from conftest import ADDRESS, BUYER, SELLER, STRANGER, auth, make_item, scan
from navdrishti.errors import AuthorizationError, InvalidStateTransition, ShippingProviderError
from navdrishti.models import OrderStatus
from navdrishti.services import orders, shipping
from navdrishti.services.payment_events import apply_capture

PICKUP = {**ADDRESS, "name": "Weaver Co-op", "city": "Mysuru", "pincode": "570001"}
PACKAGE = {"weight": 0.8, "length": 30, "breadth": 20, "height": 5}
T0 = datetime.now(timezone.utc)


@pytest_asyncio.fixture
async def paid_order(session_factory, gateway):
    async with session_factory() as session:
        item = await make_item(session, quantity=5)
        await session.commit()
        order, payment, _ = await orders.create_order(
            session, gateway, BUYER, item.id, 1, dict(ADDRESS)
        )
        await session.commit()
        await apply_capture(session, payment.gateway_order_id, "pay_1")
        await session.commit()
        return order.id, order.order_number


async def _ship(session, carrier, order_id, actor=SELLER):
    order = await orders.load_order(session, order_id)
    return await shipping.create_shipment(
        session, carrier, order, actor, "standard", dict(PICKUP), None, dict(PACKAGE)
    )


# ── Service ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_create_shipment(session_factory, carrier, paid_order):
    order_id, order_number = paid_order
    async with session_factory() as session:
        detail = await _ship(session, carrier, order_id)
        await session.commit()

        assert detail.waybill == "WB1001"
        assert detail.delivery_address == ADDRESS
        assert detail.tracking_status == "Manifest Generated"
        assert carrier.shipments[0].order_number == order_number
        assert carrier.shipments[0].total_amount == "168.00"

        order = await orders.load_order(session, order_id)
        assert order.status == OrderStatus.SHIPPED
        events = await shipping.list_events(session, detail.id)
        assert [e.status for e in events] == ["Manifest Generated"]


@pytest.mark.asyncio
async def test_shipment_needs_confirmed_order(session_factory, gateway, carrier):
    async with session_factory() as session:
        item = await make_item(session)
        await session.commit()
        order, _, _ = await orders.create_order(session, gateway, BUYER, item.id, 1, dict(ADDRESS))
        await session.commit()

        with pytest.raises(InvalidStateTransition):
            await _ship(session, carrier, order.id)
    assert carrier.shipments == []


@pytest.mark.asyncio
async def test_only_seller_ships(session_factory, carrier, paid_order):
    order_id, _ = paid_order
    async with session_factory() as session:
        with pytest.raises(AuthorizationError):
            await _ship(session, carrier, order_id, actor=BUYER)


@pytest.mark.asyncio
async def test_carrier_failure_rolls_back_status(session_factory, carrier, paid_order):
    order_id, _ = paid_order
    carrier.fail = True
    async with session_factory() as session:
        with pytest.raises(ShippingProviderError):
            await _ship(session, carrier, order_id)
        await session.rollback()

        order = await orders.load_order(session, order_id)
        assert order.status == OrderStatus.CONFIRMED
        assert await shipping.get_for_order(session, order_id) is None


@pytest.mark.asyncio
async def test_tracking_dedupes_and_delivers(session_factory, carrier, paid_order):
    order_id, _ = paid_order
    async with session_factory() as session:
        detail = await _ship(session, carrier, order_id)
        await session.commit()

        transit = scan("In Transit", T0 + timedelta(hours=5), "Bengaluru Hub")
        assert await shipping.record_tracking_event(session, detail.waybill, transit) is True
        assert await shipping.record_tracking_event(session, detail.waybill, transit) is False
        await session.commit()
        assert detail.tracking_status == "In Transit"

        delivered = scan("Delivered", T0 + timedelta(days=1), "Bengaluru")
        assert await shipping.record_tracking_event(session, detail.waybill, delivered) is True
        await session.commit()

        order = await orders.load_order(session, order_id)
        assert order.status == OrderStatus.DELIVERED
        assert detail.tracking_status == "Delivered"
        assert detail.actual_delivery is not None

        # Replayed delivery scan is harmless
        assert await shipping.record_tracking_event(session, detail.waybill, delivered) is False


@pytest.mark.asyncio
async def test_tracking_status_follows_latest_scan(session_factory, carrier, paid_order):
    order_id, _ = paid_order
    async with session_factory() as session:
        detail = await _ship(session, carrier, order_id)
        later = scan("Out for Delivery", datetime.now(timezone.utc) + timedelta(hours=2))
        earlier = scan("In Transit", datetime.now(timezone.utc) + timedelta(hours=1))

        await shipping.record_tracking_event(session, detail.waybill, later)
        await shipping.record_tracking_event(session, detail.waybill, earlier)

        assert detail.tracking_status == "Out for Delivery"
        events = await shipping.list_events(session, detail.id)
        assert [e.status for e in events] == ["Manifest Generated", "In Transit", "Out for Delivery"]


@pytest.mark.asyncio
async def test_delivery_scan_for_refunded_order_is_skipped(session_factory, gateway, carrier, paid_order):
    order_id, _ = paid_order
    async with session_factory() as session:
        detail = await _ship(session, carrier, order_id)
        order = await orders.load_order(session, order_id)
        await orders.refund_order(session, gateway, order, SELLER, reason="lost")
        await session.commit()

        await shipping.record_tracking_event(
            session, detail.waybill, scan("Delivered", datetime.now(timezone.utc))
        )
        assert (await orders.load_order(session, order_id)).status == OrderStatus.REFUNDED


@pytest.mark.asyncio
async def test_refresh_tracking_pulls_carrier_scans(session_factory, carrier, paid_order):
    order_id, _ = paid_order
    async with session_factory() as session:
        detail = await _ship(session, carrier, order_id)
        carrier.scans = [
            scan("Picked Up", T0 + timedelta(hours=1), "Mysuru"),
            scan("In Transit", T0 + timedelta(hours=6), "Bengaluru Hub"),
        ]

        assert await shipping.refresh_tracking(session, carrier, detail.waybill) == 2
        assert await shipping.refresh_tracking(session, carrier, detail.waybill) == 0


# ── HTTP ─────────────────────────────────────────────────────────────────────

def _shipment_body(order_ref) -> dict:
    return {
        "orderId": str(order_ref),
        "serviceType": "express",
        "pickupAddress": PICKUP,
        "packageDetails": PACKAGE,
    }


@pytest.mark.asyncio
async def test_create_shipment_endpoint(client, carrier, paid_order):
    _, order_number = paid_order

    resp = await client.post("/shipping/create", json=_shipment_body(order_number), headers=auth(SELLER))

    assert resp.status_code == 201
    assert resp.json()["waybill"] == "WB1001"
    assert resp.json()["serviceType"] == "express"
    order = (await client.get(f"/orders/{order_number}", headers=auth(BUYER))).json()
    assert order["status"] == "shipped"
    assert order["shipping"]["waybill"] == "WB1001"


@pytest.mark.asyncio
async def test_create_shipment_carrier_down(client, carrier, paid_order):
    _, order_number = paid_order
    carrier.fail = True

    resp = await client.post("/shipping/create", json=_shipment_body(order_number), headers=auth(SELLER))

    assert resp.status_code == 502
    order = (await client.get(f"/orders/{order_number}", headers=auth(BUYER))).json()
    assert order["status"] == "confirmed"


@pytest.mark.asyncio
async def test_tracking_push_requires_token(client, paid_order):
    _, order_number = paid_order
    await client.post("/shipping/create", json=_shipment_body(order_number), headers=auth(SELLER))
    push = {"status": "Delivered", "location": "Bengaluru", "activity": "Handed to consignee"}

    resp = await client.post("/shipping/track/WB1001", json=push)
    assert resp.status_code == 401

    resp = await client.post(
        "/shipping/track/WB1001", json=push, headers={"X-Carrier-Token": "wrong"}
    )
    assert resp.status_code == 401

    resp = await client.post(
        "/shipping/track/WB1001", json=push, headers={"X-Carrier-Token": "test-carrier-token"}
    )
    assert resp.status_code == 200
    assert resp.json()["orderStatus"] == "delivered"
    assert resp.json()["trackingStatus"] == "Delivered"


@pytest.mark.asyncio
async def test_track_falls_back_to_stored_scans(client, carrier, paid_order):
    _, order_number = paid_order
    await client.post("/shipping/create", json=_shipment_body(order_number), headers=auth(SELLER))
    carrier.fail = True

    resp = await client.get("/shipping/track/WB1001", headers=auth(BUYER))

    assert resp.status_code == 200
    assert resp.json()["stale"] is True
    assert [e["status"] for e in resp.json()["events"]] == ["Manifest Generated"]

    resp = await client.get("/shipping/track/WB1001", headers=auth(STRANGER))
    assert resp.status_code == 403

    resp = await client.get("/shipping/track/NOPE", headers=auth(BUYER))
    assert resp.status_code == 404
