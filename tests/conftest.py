"""Pytest fixtures for the order service tests."""

import hashlib
import hmac
import os
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from order_service.app.config import Settings, get_settings
from order_service.app.database import Base, get_db
from order_service.app.dependencies import get_gateway, get_producer
from order_service.app.errors import GatewayRequestError
from order_service.app.gateway import GatewayResult, PaymentGatewayClient
from order_service.app.main import app
from order_service.app.models import Address, Cart, CartItem, Order, Product
from order_service.app.orders import OrderCreationTransaction

WEBHOOK_SECRET = "fe5283d0baef7ef048f9da58513fa7f3c92fc21d5c7cf190215a545bf45ebb72"
WEBHOOK_TS = "1745366822395"

# Card tokens understood by FakeGateway.
TOKEN_STATUSES = {
    "tok_approved": "approved",
    "tok_rejected": "rejected",
    "tok_pending": "pending",
    "tok_in_process": "in_process",
}


class FakeGateway(PaymentGatewayClient):
    """In-memory gateway: the card token decides the status of a new payment."""

    def __init__(self):
        self.configured = True
        self.payments = {}
        self.create_calls = []
        self.get_calls = []
        self.create_error = None
        self.get_error = None
        self.on_create = None
        self._next_id = 1323136738

    @property
    def is_configured(self) -> bool:
        return self.configured

    def create_payment(self, request, idempotency_key=None):
        self.create_calls.append((request, idempotency_key))
        if self.create_error is not None:
            raise self.create_error
        payment_id = self.add_payment(
            TOKEN_STATUSES.get(request.get("token"), "in_process"),
            request["external_reference"],
            payer_email=request["payer"]["email"],
            installments=request.get("installments", 1),
            payment_method_id=request.get("payment_method_id"),
        )
        if self.on_create is not None:
            self.on_create(payment_id)
        return GatewayResult.from_response(self.payments[payment_id])

    def get_payment(self, payment_id):
        self.get_calls.append(payment_id)
        if self.get_error is not None:
            raise self.get_error
        payment = self.payments.get(str(payment_id))
        if payment is None:
            raise GatewayRequestError("Payment not found", gateway_status=404)
        return GatewayResult.from_response(payment)

    def add_payment(self, status, external_reference, payer_email="buyer@example.com",
                    installments=1, payment_method_id="visa"):
        """Register a payment directly at the gateway; returns its id."""
        self._next_id += 1
        payment_id = str(self._next_id)
        self.payments[payment_id] = {
            "id": int(payment_id),
            "status": status,
            "external_reference": external_reference,
            "payment_method_id": payment_method_id,
            "card": {"last_four_digits": "4242"},
            "payer": {"email": payer_email},
            "date_last_updated": "2026-01-10T12:00:00.000-03:00",
            "installments": installments,
        }
        return payment_id

    def set_status(self, payment_id, status):
        self.payments[str(payment_id)]["status"] = status


class RecordingProducer:
    def __init__(self):
        self.events = []

    def publish(self, routing_key, message):
        self.events.append((routing_key, message))
        return True

    @property
    def routing_keys(self):
        return [key for key, _ in self.events]


class Shop:
    """Seeds catalog, carts and addresses; reads stock back with short-lived sessions."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    def add_product(self, name, price, stock, image=None):
        with self.session_factory() as session:
            product = Product(name=name, price=Decimal(str(price)), stock=stock, image=image)
            session.add(product)
            session.commit()
            return product.id

    def add_address(self, user_id, city="São Paulo"):
        with self.session_factory() as session:
            address = Address(
                user_id=user_id,
                label="Home",
                street="Rua das Flores",
                number="123",
                neighborhood="Centro",
                city=city,
                state="SP",
                postal_code="01001-000",
                country="Brasil",
            )
            session.add(address)
            session.commit()
            return address.id

    def fill_cart(self, user_id, lines):
        with self.session_factory() as session:
            cart = session.execute(select(Cart).where(Cart.user_id == user_id)).scalar_one_or_none()
            if cart is None:
                cart = Cart(user_id=user_id)
                session.add(cart)
            cart.items = [CartItem(product_id=pid, quantity=qty) for pid, qty in lines]
            session.commit()

    def stock(self, product_id):
        with self.session_factory() as session:
            return session.execute(select(Product.stock).where(Product.id == product_id)).scalar_one()

    def set_price(self, product_id, price):
        with self.session_factory() as session:
            session.get(Product, product_id).price = Decimal(str(price))
            session.commit()

    def cart_size(self, user_id):
        with self.session_factory() as session:
            cart = session.execute(select(Cart).where(Cart.user_id == user_id)).scalar_one_or_none()
            return None if cart is None else len(cart.items)

    def order(self, order_id):
        with self.session_factory() as session:
            order = session.execute(select(Order).where(Order.order_id == order_id)).scalar_one_or_none()
            if order is not None:
                session.expunge(order)
            return order

    def order_count(self):
        with self.session_factory() as session:
            return len(session.execute(select(Order.id)).all())


def sign_webhook(payment_id, ts=WEBHOOK_TS, secret=WEBHOOK_SECRET, request_id=None):
    """Build an x-signature header the way the gateway does."""
    manifest = f"id:{payment_id};"
    if request_id:
        manifest += f"request-id:{request_id};"
    manifest += f"ts:{ts}"
    digest = hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()
    return f"ts={ts},v1={digest}"


def as_user(user_id="user-1", role="user"):
    return {"X-User-Id": user_id, "X-User-Role": role}


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def settings():
    settings = Settings()
    settings.mp_access_token = "TEST-access-token"
    settings.mp_webhook_secret = WEBHOOK_SECRET
    settings.mp_notification_url = None
    settings.webhook_tolerance_seconds = 0
    settings.shipping_fee = Decimal("10.00")
    settings.free_shipping_threshold = Decimal("100")
    settings.rabbitmq_host = None
    return settings


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def producer():
    return RecordingProducer()


@pytest.fixture
def shop(session_factory):
    return Shop(session_factory)


@pytest.fixture
def catalog(shop):
    """The two products used by the end-to-end scenarios."""
    return {
        "keyboard": shop.add_product("Mechanical Keyboard", "25.00", 15, image="keyboard.png"),
        "monitor": shop.add_product("27in Monitor", "100.00", 3, image="monitor.png"),
    }


@pytest.fixture
def placed_order(shop, catalog, session_factory, settings, producer):
    """A pending order for 2 keyboards + 1 monitor placed by user-1; returns its order_id."""
    address_id = shop.add_address("user-1")
    shop.fill_cart("user-1", [(catalog["keyboard"], 2), (catalog["monitor"], 1)])
    with session_factory() as session:
        order = OrderCreationTransaction(session, settings, producer).create("user-1", address_id, "credit_card")
        return order.order_id


@pytest.fixture
def client(session_factory, gateway, producer, settings):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_producer] = lambda: producer
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()
