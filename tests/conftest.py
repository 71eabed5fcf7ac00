"""
Shared fixtures for the order engine test suite.

Each test gets a fresh in-memory SQLite database (aiosqlite) and a stub
Razorpay client, so nothing leaves the process.
"""

import os

# Settings are read at import time; configure before importing agrocycle
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("RAZORPAY_KEY_ID", "rzp_test_key")
os.environ.setdefault("RAZORPAY_KEY_SECRET", "rzp_test_secret")
os.environ.setdefault("RAZORPAY_WEBHOOK_SECRET", "whsec_test")

import json
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

from agrocycle.config import settings
from agrocycle.database import Base, build_engine, get_db
from agrocycle.api.deps import get_payment_service
from agrocycle.core.security import create_access_token, ROLE_BUYER, ROLE_HUB
from agrocycle.main import app
from agrocycle.models import Buyer, Hub, BuyerOrder
from agrocycle.models.buyer_order import (
    OrderStatus,
    compute_total_amount,
    derive_payment_status,
)
from agrocycle.services.payment_service import (
    PaymentService,
    compute_signature,
    client_signature_payload,
)


# ============================================================================
# Gateway stub
# ============================================================================


class StubOrderResource:
    """Stands in for razorpay.Client().order."""

    def __init__(self):
        self.created: List[Dict[str, Any]] = []
        self.payments_by_order: Dict[str, List[Dict[str, Any]]] = {}
        self.fail_with: Optional[Exception] = None

    def create(self, data=None, timeout=None, **kwargs):
        if self.fail_with is not None:
            raise self.fail_with
        self.created.append(data)
        return {
            "id": f"order_test{len(self.created):04d}",
            "entity": "order",
            "amount": data["amount"],
            "currency": data["currency"],
            "receipt": data["receipt"],
            "notes": data["notes"],
            "status": "created",
        }

    def payments(self, order_id, timeout=None, **kwargs):
        if self.fail_with is not None:
            raise self.fail_with
        return {"entity": "collection", "items": self.payments_by_order.get(order_id, [])}


class StubRazorpayClient:
    def __init__(self):
        self.order = StubOrderResource()


# ============================================================================
# Signing helpers
# ============================================================================


def sign_checkout(gateway_order_id: str, gateway_payment_id: str) -> str:
    return compute_signature(
        settings.RAZORPAY_KEY_SECRET,
        client_signature_payload(gateway_order_id, gateway_payment_id),
    )


def webhook_body(event: str, entity_name: str, entity: Dict[str, Any]) -> bytes:
    return json.dumps({
        "entity": "event",
        "event": event,
        "payload": {entity_name: {"entity": entity}},
    }).encode()


def sign_webhook(body: bytes) -> str:
    return compute_signature(settings.RAZORPAY_WEBHOOK_SECRET, body)


def payment_entity(
    order: BuyerOrder,
    payment_id: str,
    amount_in_paise: int,
    status: str = "captured",
) -> Dict[str, Any]:
    return {
        "id": payment_id,
        "entity": "payment",
        "amount": amount_in_paise,
        "currency": "INR",
        "status": status,
        "order_id": order.gateway_order_id,
        "notes": {"order_id": str(order.id), "order_number": order.order_number},
    }


# ============================================================================
# Database
# ============================================================================


@pytest_asyncio.fixture
async def engine():
    engine = build_engine("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def buyer(db) -> Buyer:
    buyer = Buyer(company_name="Green Boilers Pvt Ltd", company_code="GBPL", email="ops@greenboilers.in")
    db.add(buyer)
    await db.commit()
    return buyer


@pytest_asyncio.fixture
async def other_buyer(db) -> Buyer:
    buyer = Buyer(company_name="Sunrise Power", company_code="SUNP")
    db.add(buyer)
    await db.commit()
    return buyer


@pytest_asyncio.fixture
async def hub(db) -> Hub:
    hub = Hub(name="Karnal Collection Hub", code="HUB-KNL", city="Karnal")
    db.add(hub)
    await db.commit()
    return hub


@pytest_asyncio.fixture
async def other_hub(db) -> Hub:
    hub = Hub(name="Patiala Collection Hub", code="HUB-PTL", city="Patiala")
    db.add(hub)
    await db.commit()
    return hub


@pytest.fixture
def order_factory(db):
    """Insert an order directly in a given state."""
    counter = {"n": 0}

    async def make(
        buyer: Buyer,
        hub: Hub,
        status: str = OrderStatus.PENDING.value,
        quantity: Decimal = Decimal("10"),
        price: Decimal = Decimal("2500"),
        paid: Optional[Decimal] = None,
        **fields,
    ) -> BuyerOrder:
        counter["n"] += 1
        total = compute_total_amount(quantity, price)
        if paid is None:
            paid = Decimal("0") if status in (OrderStatus.PENDING.value, OrderStatus.CANCELLED.value) else total
        order = BuyerOrder(
            order_number=f"ORD-TEST-{counter['n']:04d}",
            buyer_id=buyer.id,
            hub_id=hub.id,
            quantity_tonnes=quantity,
            price_per_tonne=price,
            total_amount=total,
            status=status,
            paid_amount=paid,
            payment_status=derive_payment_status(paid, total),
            accepted_quantity_tonnes=Decimal("0"),
            requested_date=datetime.now(timezone.utc) + timedelta(days=7),
            **fields,
        )
        db.add(order)
        await db.commit()
        await db.refresh(order)
        return order

    return make


# ============================================================================
# Gateway
# ============================================================================


@pytest.fixture
def razorpay_client() -> StubRazorpayClient:
    return StubRazorpayClient()


@pytest.fixture
def gateway(razorpay_client) -> PaymentService:
    return PaymentService(client=razorpay_client)


# ============================================================================
# HTTP
# ============================================================================


@pytest_asyncio.fixture
async def client(session_factory, gateway):
    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_service] = lambda: gateway

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


def auth_headers(token: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def buyer_headers(buyer) -> Dict[str, str]:
    return auth_headers(create_access_token(buyer.id, ROLE_BUYER))


@pytest.fixture
def other_buyer_headers(other_buyer) -> Dict[str, str]:
    return auth_headers(create_access_token(other_buyer.id, ROLE_BUYER))


@pytest.fixture
def hub_staff_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def hub_headers(hub, hub_staff_id) -> Dict[str, str]:
    return auth_headers(create_access_token(
        hub_staff_id, ROLE_HUB, additional_claims={"hub_id": str(hub.id)}
    ))


@pytest.fixture
def other_hub_headers(other_hub) -> Dict[str, str]:
    return auth_headers(create_access_token(
        uuid.uuid4(), ROLE_HUB, additional_claims={"hub_id": str(other_hub.id)}
    ))
