"""
Shared fixtures: in-memory store, fake clock and a scripted payment provider.
"""
import itertools
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from rescuebag.core.errors import PaymentProviderUnavailable
from rescuebag.core.qr_token import QrTokenCodec
from rescuebag.core.session import Role, SessionContext
from rescuebag.db.order_store import InMemoryOrderStore
from rescuebag.models.order import FulfillmentStatus, PaymentOutcome
from rescuebag.services.order_service import OrderService
from rescuebag.services.payment_provider import Checkout
from rescuebag.services.payment_reconciler import PaymentReconciler
from rescuebag.services.redemption import RedemptionVerifier

QR_SECRET = "test-qr-secret"
BUSINESS_ID = "biz-1"
OTHER_BUSINESS_ID = "biz-2"
BASE_TIME = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, start: datetime = BASE_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    async def sleep(self, seconds: float) -> None:
        self.advance(seconds)


class FakePaymentProvider:
    def __init__(self):
        self._ids = itertools.count(1)
        self.statuses: dict[str, PaymentOutcome] = {}
        self.initiated: list[dict] = []
        self.status_calls = 0
        self.unavailable = False

    async def initiate_payment(self, order_id, amount, method, currency, customer_email):
        reference = f"ref-{next(self._ids)}"
        self.statuses[reference] = PaymentOutcome.PENDING
        self.initiated.append(
            {"order_id": order_id, "amount": amount, "method": method, "currency": currency}
        )
        return Checkout(provider_reference=reference, payment_url=f"https://pay.example/{reference}")

    async def get_payment_status(self, provider_reference):
        self.status_calls += 1
        if self.unavailable:
            raise PaymentProviderUnavailable("provider down")
        return self.statuses[provider_reference]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryOrderStore()


@pytest.fixture
def codec(clock):
    return QrTokenCodec(QR_SECRET, clock=clock)


@pytest.fixture
def provider():
    return FakePaymentProvider()


@pytest.fixture
def order_service(store, codec, clock):
    return OrderService(store, codec, qr_ttl_seconds=3600, clock=clock)


@pytest.fixture
def redemption(store, codec, clock):
    return RedemptionVerifier(store, codec, clock=clock, requires_ready=True)


@pytest.fixture
def reconciler(order_service, store, provider, clock):
    return PaymentReconciler(order_service, store, provider, clock=clock)


@pytest.fixture
def customer():
    return SessionContext(user_id="user-a")


@pytest.fixture
def other_customer():
    return SessionContext(user_id="user-b")


@pytest.fixture
def business():
    return SessionContext(user_id="owner-1", role=Role.BUSINESS, business_id=BUSINESS_ID)


@pytest.fixture
def other_business():
    return SessionContext(user_id="owner-2", role=Role.BUSINESS, business_id=OTHER_BUSINESS_ID)


@pytest_asyncio.fixture
async def pack(order_service, business):
    return await order_service.list_pack(
        business, title="Bakery bag", original_price=25000, discounted_price=10000, stock=5,
        pickup_start="18:00", pickup_end="20:00",
    )


@pytest_asyncio.fixture
async def order(order_service, customer, pack):
    return await order_service.create(customer, pack.id, 2)


@pytest_asyncio.fixture
async def paid_order(order_service, order):
    return await order_service.apply_payment_outcome(order.id, PaymentOutcome.SUCCESS)


@pytest_asyncio.fixture
async def ready_order(order_service, business, paid_order):
    await order_service.advance(business, paid_order.id, FulfillmentStatus.PREPARING)
    return await order_service.advance(business, paid_order.id, FulfillmentStatus.READY)
