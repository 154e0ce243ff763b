"""
Shared pytest fixtures – in-memory SQLite for unit tests (no real Postgres needed).
"""
from __future__ import annotations

import hashlib
import hmac
import os
from datetime import datetime
from decimal import Decimal
from typing import AsyncGenerator, List, Optional

# Settings are read once, at first import of the app modules
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("GATEWAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("GATEWAY_KEY_SECRET", "test-key-secret")
os.environ.setdefault("GATEWAY_WEBHOOK_SECRET", "test-webhook-secret")
os.environ.setdefault("CARRIER_PUSH_TOKEN", "test-carrier-token")
os.environ.setdefault("RATE_LIMIT_REQUESTS", "1000")

import jwt
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from navdrishti.config import get_settings
from navdrishti.database import get_db
from navdrishti.errors import PaymentGatewayError, ShippingProviderError
from navdrishti.models import Base, InventoryItem, ItemStatus
from navdrishti.services.carrier import CarrierScan, ShipmentRequest, ShipmentRef, get_shipping_provider
from navdrishti.services.gateway import GatewayOrderRef, PaymentGateway, get_payment_gateway
from navdrishti.services.state_machine import Actor

# Use aiosqlite for tests (no Postgres needed)
TEST_DB_URL = "sqlite+aiosqlite://"

BUYER = Actor(id=1)
SELLER = Actor(id=2)
STRANGER = Actor(id=3)
ADMIN = Actor(id=99, role="admin")

ADDRESS = {
    "name": "Asha Rao",
    "address": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
    "phone": "9876543210",
}


# ── Fakes for the outbound collaborators ─────────────────────────────────────

class FakeGateway(PaymentGateway):
    """Real signature checks, canned order/refund calls."""

    def __init__(self) -> None:
        super().__init__(get_settings())
        self.orders_created: List[GatewayOrderRef] = []
        self.refunds: List[tuple] = []
        self.fail_create = False
        self.fail_refund = False

    async def create_order(self, amount_minor, currency, receipt, notes=None) -> GatewayOrderRef:
        if self.fail_create:
            raise PaymentGatewayError("Payment gateway unavailable")
        ref = GatewayOrderRef(
            id=f"order_test_{len(self.orders_created) + 1}",
            amount=amount_minor,
            currency=currency,
            receipt=receipt,
        )
        self.orders_created.append(ref)
        return ref

    async def refund_payment(self, gateway_payment_id: str, amount_minor: int) -> str:
        if self.fail_refund:
            raise PaymentGatewayError("Payment gateway unavailable")
        self.refunds.append((gateway_payment_id, amount_minor))
        return f"rfnd_test_{len(self.refunds)}"


class FakeCarrier:
    name = "TestCarrier"

    def __init__(self) -> None:
        self.shipments: List[ShipmentRequest] = []
        self.scans: List[CarrierScan] = []
        self.fail = False

    async def create_shipment(self, request: ShipmentRequest) -> ShipmentRef:
        if self.fail:
            raise ShippingProviderError("Carrier unavailable")
        self.shipments.append(request)
        return ShipmentRef(
            waybill=f"WB{1000 + len(self.shipments)}",
            carrier=self.name,
            carrier_order_id=request.order_number,
            status="Manifest Generated",
            expected_delivery=None,
        )

    async def track(self, waybill: str) -> List[CarrierScan]:
        if self.fail:
            raise ShippingProviderError("Carrier unavailable")
        return list(self.scans)


# ── Signing helpers ──────────────────────────────────────────────────────────

def client_signature(gateway_order_id: str, gateway_payment_id: str) -> str:
    secret = os.environ["GATEWAY_KEY_SECRET"].encode()
    msg = f"{gateway_order_id}|{gateway_payment_id}".encode()
    return hmac.new(secret, msg, hashlib.sha256).hexdigest()


def webhook_signature(body: bytes) -> str:
    secret = os.environ["GATEWAY_WEBHOOK_SECRET"].encode()
    return hmac.new(secret, body, hashlib.sha256).hexdigest()


def token_for(actor: Actor) -> str:
    return jwt.encode(
        {"id": actor.id, "user_type": actor.role}, os.environ["JWT_SECRET"], algorithm="HS256"
    )


def auth(actor: Actor) -> dict:
    return {"Authorization": f"Bearer {token_for(actor)}"}


def captured_event(gateway_order_id: str, payment_id: str, event: str = "payment.captured") -> dict:
    return {
        "entity": "event",
        "event": event,
        "payload": {
            "payment": {
                "entity": {
                    "id": payment_id,
                    "order_id": gateway_order_id,
                    "amount": 28500,
                    "currency": "INR",
                    "status": "captured" if event == "payment.captured" else "failed",
                    "method": "upi",
                    "error_description": None if event == "payment.captured" else "Card declined",
                }
            }
        },
    }


# ── Database ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(scope="function")
async def session_factory() -> AsyncGenerator[async_sessionmaker, None]:
    engine = create_async_engine(
        TEST_DB_URL,
        echo=False,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(
        engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session
        await session.rollback()


async def make_item(
    session: AsyncSession,
    quantity: int = 5,
    price: Decimal = Decimal("100.00"),
    seller_id: int = SELLER.id,
    title: str = "Handloom saree",
) -> InventoryItem:
    item = InventoryItem(
        seller_id=seller_id,
        title=title,
        description="Cotton, 6 yards",
        category="apparel",
        price=price,
        quantity=quantity,
        status=ItemStatus.ACTIVE,
    )
    session.add(item)
    await session.flush()
    return item


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def carrier() -> FakeCarrier:
    return FakeCarrier()


# ── HTTP ─────────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture(scope="function")
async def client(session_factory, gateway, carrier) -> AsyncGenerator[AsyncClient, None]:
    from navdrishti.main import app

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_shipping_provider] = lambda: carrier

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def scan(status: str, when: datetime, location: str = "Bengaluru Hub", activity: Optional[str] = None) -> CarrierScan:
    return CarrierScan(occurred_at=when, status=status, location=location, activity=activity)
