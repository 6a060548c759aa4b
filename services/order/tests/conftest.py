import json
from decimal import Decimal

import pytest

from services.order.app.customers import CustomerDirectory
from services.order.app.db import create_engine, create_schema, create_session_factory
from services.order.app.errors import DeliveryFailure
from services.order.app.models import Customer, Product
from services.order.app.order_store import OrderStore
from services.order.app.orchestrator import OrderWorkflow, RetryPolicy
from services.order.app.publisher import NotificationPublisher
from services.order.app.stock_ledger import StockLedger


class RecordingTransport:
    """Stands in for the broker. Set ``fail`` to simulate an outage."""

    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, channel, message_id, body):
        if self.fail:
            raise DeliveryFailure(channel, message_id, "broker unavailable")
        self.sent.append((channel, message_id, json.loads(body)))

    def types(self, channel=None):
        return [msg["type"] for ch, _, msg in self.sent if channel in (None, ch)]


class RecordingSink:
    def __init__(self):
        self.failures = []

    async def record(self, failure):
        self.failures.append(failure)


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'orders.db'}",
        connect_args={"timeout": 30},
    )
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def sessions(engine):
    return create_session_factory(engine)


@pytest.fixture
def ledger(sessions):
    return StockLedger(sessions, max_attempts=5, backoff=0.001)


@pytest.fixture
def customers(sessions):
    return CustomerDirectory(sessions)


@pytest.fixture
def orders(sessions):
    return OrderStore(sessions)


@pytest.fixture
def transport():
    return RecordingTransport()


@pytest.fixture
def error_sink():
    return RecordingSink()


@pytest.fixture
def workflow(customers, ledger, orders, transport, error_sink):
    return OrderWorkflow(
        customers,
        ledger,
        orders,
        NotificationPublisher(transport, timeout=1.0),
        error_sink,
        retry=RetryPolicy(attempts=3, backoff=0),
    )


@pytest.fixture
async def customer(customers):
    return await customers.add(
        Customer(id="C-1", display_name="Thandi Mokoena", contact_info="thandi@example.com")
    )


@pytest.fixture
async def product(ledger):
    return await ledger.add_product(
        Product(id="P-1", name="Ceramic Mug", unit_price=Decimal("10.00"), stock_available=5)
    )
