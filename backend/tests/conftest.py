"""
Test Configuration: Fixtures for async DB, test client, provider fakes and seed data.

Each test gets its own SQLite file so code paths that open their own
sessions (the risk engine, workers) see the same rows as the test.
"""

import dataclasses
import uuid
from datetime import timedelta
from decimal import Decimal

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from api.deps import (
    get_app_settings,
    get_db,
    get_fulfillment_dispatcher,
    get_fulfillment_orchestrator,
    get_payment_gateway,
    get_session_factory,
)
from api.main import app
from core.config import Settings
from db.models import Customer, Order, OrderLineItem, Product, utcnow
from db.session import Base
from fulfillment.orchestrator import FulfillmentOrchestrator
from integrations.base import PaymentGatewayError, ShippingProviderError
from integrations.shippo import LabelTransaction, Shipment, ShippingRate
from integrations.stripe_gateway import CheckoutSession

WEBHOOK_SECRET = "whsec_test_secret"

SHIPPING_ADDRESS = {
    "name": "Dana Buyer",
    "street1": "215 Clayton St",
    "city": "San Francisco",
    "state": "CA",
    "zip": "94117",
    "country": "US",
    "email": "dana@example.com",
}


# ─── Database ───────────────────────────────────────────────────────────────


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'orderops.db'}"


@pytest.fixture
async def test_engine(db_url):
    """Create a per-test database file and build all tables."""
    engine = create_async_engine(db_url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def test_db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def fetch_order(session_factory):
    """Read an order through a fresh session so conditional UPDATEs are visible."""

    async def _fetch(order_id) -> Order:
        async with session_factory() as session:
            return await session.get(Order, order_id)

    return _fetch


@pytest.fixture
def fetch_product(session_factory):
    async def _fetch(product_id) -> Product:
        async with session_factory() as session:
            return await session.get(Product, product_id)

    return _fetch


# ─── Seed data ──────────────────────────────────────────────────────────────


@pytest.fixture
def shipping_address():
    return dict(SHIPPING_ADDRESS)


@pytest.fixture
def make_customer(test_db):
    async def _make(
        email: str = "shopper@example.com",
        is_verified: bool = True,
        age: timedelta = timedelta(days=730),
    ) -> Customer:
        customer = Customer(
            customer_id=uuid.uuid4(),
            email=email,
            name="Test Shopper",
            is_verified=is_verified,
            created_at=utcnow() - age,
        )
        test_db.add(customer)
        await test_db.commit()
        return customer

    return _make


@pytest.fixture
def make_product(test_db):
    async def _make(name: str = "Mango Chili Jerky", stock: int = 10, price: str = "12.50") -> Product:
        product = Product(product_id=uuid.uuid4(), name=name, stock_on_hand=stock, unit_price=Decimal(price))
        test_db.add(product)
        await test_db.commit()
        return product

    return _make


@pytest.fixture
def make_order(test_db):
    async def _make(
        customer: Customer,
        total: str = "30.00",
        payment_status: str = "pending",
        order_status: str = "pending",
        shipping_status: str = "none",
        age: timedelta = timedelta(0),
        line_items: list[dict] | None = None,
        **fields,
    ) -> Order:
        if line_items is None:
            line_items = [{"quantity": 1, "unit_price": Decimal(total)}]
        order = Order(
            order_id=uuid.uuid4(),
            customer_id=customer.customer_id,
            total=Decimal(total),
            payment_status=payment_status,
            order_status=order_status,
            shipping_status=shipping_status,
            created_at=utcnow() - age,
            updated_at=utcnow() - age,
            line_items=[OrderLineItem(**item) for item in line_items],
            **fields,
        )
        test_db.add(order)
        await test_db.commit()
        return order

    return _make


# ─── Provider fakes ─────────────────────────────────────────────────────────


class FakeGateway:
    """In-memory payment gateway holding checkout sessions."""

    def __init__(self):
        self.sessions: dict[str, CheckoutSession] = {}
        self.calls: list[tuple[str, str]] = []
        self.fail = False

    def add(self, session_id: str, order_id, payment_status: str = "unpaid", status: str = "open", **extra):
        session = CheckoutSession(
            session_id=session_id,
            payment_status=payment_status,
            status=status,
            order_id=str(order_id) if order_id else None,
            **extra,
        )
        self.sessions[session_id] = session
        return session

    def _check(self):
        if self.fail:
            raise PaymentGatewayError("gateway unavailable", status_code=503, retryable=True)

    async def retrieve_checkout_session(self, session_id):
        self.calls.append(("retrieve", session_id))
        self._check()
        return self.sessions.get(session_id)

    async def find_checkout_session_for_order(self, order_id):
        self.calls.append(("find", order_id))
        self._check()
        matches = [s for s in self.sessions.values() if s.order_id == order_id]
        paid = [s for s in matches if s.payment_status == "paid"]
        return (paid or matches or [None])[0]

    async def find_session_by_payment_intent(self, payment_intent):
        self.calls.append(("find_by_intent", payment_intent))
        self._check()
        for session in self.sessions.values():
            if session.payment_intent == payment_intent:
                return session
        return None


class FakeShippo:
    """Scripted shipping provider."""

    def __init__(self):
        self.shipment_id = "shp_test_1"
        self.rates = [
            ShippingRate("rate_priority", "USPS", "Priority Mail", Decimal("9.45"), estimated_days=2),
            ShippingRate("rate_ground", "UPS", "Ground", Decimal("7.10"), estimated_days=4),
            ShippingRate("rate_express", "FedEx", "2Day", Decimal("21.30"), estimated_days=2),
        ]
        self.transaction = LabelTransaction(
            transaction_id="txn_1",
            status="success",
            tracking_number="9400111899223856928499",
            tracking_url="https://tools.usps.com/go/TrackConfirmAction?tLabels=9400111899223856928499",
            label_url="https://shippo-delivery.s3.amazonaws.com/label.pdf",
            carrier="USPS",
            service_level="Priority Mail",
            amount=Decimal("9.45"),
        )
        self.recheck: LabelTransaction | None = None
        self.validation: dict | None = None
        self.fail_validation = False
        self.calls: list[tuple] = []

    async def validate_address(self, address):
        self.calls.append(("validate_address", address.street1))
        if self.fail_validation:
            raise ShippingProviderError("address service down", retryable=True)
        return self.validation or {**address.to_provider(), "validation_results": {"is_valid": True, "messages": []}}

    async def create_shipment(self, address, parcels, metadata=""):
        self.calls.append(("create_shipment", metadata))
        rates = tuple(dataclasses.replace(r, shipment_id=self.shipment_id) for r in self.rates)
        return Shipment(shipment_id=self.shipment_id, rates=rates)

    async def create_transaction(self, rate_id, metadata=""):
        self.calls.append(("create_transaction", rate_id))
        return dataclasses.replace(self.transaction)

    async def get_transaction(self, transaction_id):
        self.calls.append(("get_transaction", transaction_id))
        return self.recheck or self.transaction

    def called(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)


@pytest.fixture
def fake_gateway():
    return FakeGateway()


@pytest.fixture
def fake_shippo():
    return FakeShippo()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def orchestrator(fake_shippo, sleeps):
    async def _record_sleep(seconds):
        sleeps.append(seconds)

    return FulfillmentOrchestrator(fake_shippo, requeue_delay_seconds=3.0, sleep=_record_sleep)


# ─── API client ─────────────────────────────────────────────────────────────


@pytest.fixture
def test_settings():
    return Settings(stripe_webhook_secret=WEBHOOK_SECRET, stripe_secret_key="sk_test_123", shippo_webhook_token="")


@pytest.fixture
def dispatched():
    return []


@pytest.fixture
async def client(session_factory, test_settings, fake_gateway, orchestrator, dispatched):
    """Create an async test client with dependency overrides."""

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_app_settings] = lambda: test_settings
    app.dependency_overrides[get_payment_gateway] = lambda: fake_gateway
    app.dependency_overrides[get_fulfillment_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_fulfillment_dispatcher] = lambda: dispatched.append
    app.dependency_overrides[get_session_factory] = lambda: session_factory

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
