"""Shared fixtures: in-memory database, fake gateway and a frozen clock."""

import os

os.environ.setdefault("POSTGRES_DSN", "sqlite+pysqlite:///:memory:")
os.environ.setdefault("API_KEY", "test-key")
os.environ.setdefault("SERVICE_NAME", "checkout-test")
os.environ.setdefault("GATEWAY_WEBHOOK_SECRET", "whsec_test")
os.environ.setdefault("OTEL_EXPORTER_OTLP_ENDPOINT", "http://127.0.0.1:4318/v1/traces")

import asyncio
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from festpay.common.db import Base, make_session_factory
from festpay.services.checkout import models as checkout_models
from festpay.services.checkout.gateway import GatewayAttempt, PaymentGateway, RemoteSession
from festpay.services.checkout.schemas import CartItem, CreateOrderRequest, CustomerDetails
from festpay.services.checkout.service import OrderService
from festpay.services.notification import models as notification_models  # noqa: F401


class FrozenClock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class FakeGateway(PaymentGateway):
    """In-memory gateway: one session per order ID, scripted attempts and errors."""

    def __init__(self) -> None:
        self.sessions: dict[str, RemoteSession] = {}
        self.attempts: dict[str, list[GatewayAttempt]] = {}
        self.create_error: Exception | None = None
        self.fetch_error: Exception | None = None
        self.create_calls = 0
        self.fetch_calls = 0

    async def create_remote_session(self, order) -> RemoteSession:
        self.create_calls += 1
        await asyncio.sleep(0)
        if self.create_error is not None:
            raise self.create_error
        return self.sessions.setdefault(
            order.order_id, RemoteSession(order_id=order.order_id, gateway_session_id=f"session_{order.order_id}")
        )

    async def fetch_attempts(self, order_id: str) -> list[GatewayAttempt]:
        self.fetch_calls += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        return list(self.attempts.get(order_id, []))


@pytest.fixture
def clock():
    return FrozenClock(datetime(2026, 3, 1, 10, 0, tzinfo=timezone.utc))


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def order_service(session_factory, gateway, clock):
    return OrderService(session_factory, gateway, service_name="checkout-test", currency="INR", clock=clock)


@pytest.fixture
def add_coupon(session_factory):
    def _add(code: str, discount_type: str = "PERCENTAGE", discount_value: str = "5", **fields):
        with session_factory() as db:
            db.add(
                checkout_models.Coupon(
                    code=code,
                    discount_type=discount_type,
                    discount_value=Decimal(discount_value),
                    usage_count=fields.pop("usage_count", 0),
                    is_active=fields.pop("is_active", True),
                    **fields,
                )
            )
            db.commit()

    return _add


def make_request(idempotency_key: str = "key-00001", amount: int = 1000, coupon_code: str | None = None, items=None):
    cart = items if items is not None else [CartItem(item_id="evt-1", title="Battle of Bands", unit_price=amount)]
    return CreateOrderRequest(
        cart=cart,
        customer_details=CustomerDetails(name="Asha Rao", email="asha@example.com", phone="9876543210"),
        coupon_code=coupon_code,
        idempotency_key=idempotency_key,
    )


def make_attempt(order, payment_id: str, status: str, amount: int | None = None) -> GatewayAttempt:
    return GatewayAttempt(
        payment_id=payment_id,
        order_id=order.order_id,
        status=status,
        gateway_status=status,
        amount=order.final_amount if amount is None else amount,
        currency="INR",
    )
