import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import text

from services.order.app.errors import (
    CustomerNotFound,
    InsufficientStock,
    InvalidTransition,
    OperationTimeout,
    OrderNotFound,
    PersistError,
    ProductNotFound,
    StorageFailure,
    ValidationFailed,
)
from services.order.app.models import OrderStatus
from services.order.app.order_store import OrderFilter, OrderStore
from services.order.app.orchestrator import OrderWorkflow, RetryPolicy
from services.order.app.publisher import NotificationPublisher, RedisErrorSink
from services.order.app.stock_ledger import StockLedger


async def _stock(ledger, product_id="P-1"):
    return (await ledger.get_product(product_id)).stock_available


async def test_create_order_reserves_persists_and_notifies(
    workflow, ledger, orders, transport, customer, product
):
    order = await workflow.create_order("C-1", "P-1", 3)

    assert order.status is OrderStatus.SUBMITTED
    assert order.product_name == "Ceramic Mug"
    assert order.unit_price == Decimal("10.00")
    assert order.total_price == Decimal("30.00")
    assert await orders.get(order.id) == order
    assert await _stock(ledger) == 2

    assert transport.types("order-events") == ["OrderCreated"]
    assert transport.types("stock-events") == ["StockUpdated"]
    stock_msg = transport.sent[1][2]["payload"]
    assert stock_msg["previousStock"] == 5
    assert stock_msg["newStock"] == 2
    assert stock_msg["orderId"] == order.id


async def test_second_order_beyond_stock_is_rejected_and_stock_kept(
    workflow, ledger, transport, customer, product
):
    await workflow.create_order("C-1", "P-1", 3)

    with pytest.raises(InsufficientStock) as exc_info:
        await workflow.create_order("C-1", "P-1", 5)

    assert exc_info.value.available == 2
    assert await _stock(ledger) == 2
    assert len(transport.sent) == 2


async def test_order_created_is_published_before_stock_updated(workflow, transport, customer, product):
    await workflow.create_order("C-1", "P-1", 1)
    assert transport.types() == ["OrderCreated", "StockUpdated"]


async def test_unit_price_is_a_snapshot(workflow, sessions, customer, product):
    order = await workflow.create_order("C-1", "P-1", 1)

    async with sessions() as session:
        await session.execute(text("UPDATE products SET unit_price = '99.00' WHERE id = 'P-1'"))
        await session.commit()

    assert (await workflow.get_order(order.id)).unit_price == Decimal("10.00")


@pytest.mark.parametrize("quantity", [0, -3])
async def test_non_positive_quantity_rejected_before_stock_changes(
    workflow, ledger, transport, customer, product, quantity
):
    with pytest.raises(ValidationFailed):
        await workflow.create_order("C-1", "P-1", quantity)
    assert await _stock(ledger) == 5
    assert transport.sent == []


async def test_unknown_customer_is_an_invalid_reference(workflow, ledger, product):
    with pytest.raises(CustomerNotFound):
        await workflow.create_order("ghost", "P-1", 1)
    assert await _stock(ledger) == 5


async def test_unknown_product_is_an_invalid_reference(workflow, customer):
    with pytest.raises(ProductNotFound):
        await workflow.create_order("C-1", "ghost", 1)


async def test_notification_outage_does_not_fail_the_order(
    workflow, transport, error_sink, ledger, customer, product
):
    transport.fail = True

    order = await workflow.create_order("C-1", "P-1", 2)

    stored = await workflow.get_order(order.id)
    assert stored.status is OrderStatus.SUBMITTED
    assert await _stock(ledger) == 3
    assert [f.message_id for f in error_sink.failures] == [
        f"{order.id}:created",
        f"{order.id}:stock-reserved",
    ]
    assert {f.channel for f in error_sink.failures} == {"order-events", "stock-events"}


class _FlakyTransport:
    def __init__(self, inner, failures):
        self.inner = inner
        self.failures = failures
        self.calls = 0

    async def send(self, channel, message_id, body):
        self.calls += 1
        if self.failures > 0:
            self.failures -= 1
            raise OSError("connection reset")
        await self.inner.send(channel, message_id, body)


async def test_transient_publish_failure_is_retried(
    customers, ledger, orders, transport, error_sink, customer, product
):
    flaky = _FlakyTransport(transport, failures=2)
    workflow = OrderWorkflow(
        customers, ledger, orders, NotificationPublisher(flaky), error_sink,
        retry=RetryPolicy(attempts=3, backoff=0),
    )

    await workflow.create_order("C-1", "P-1", 1)

    assert transport.types() == ["OrderCreated", "StockUpdated"]
    assert flaky.calls == 4
    assert error_sink.failures == []


class _BrokenOrderStore(OrderStore):
    async def _create(self, order):
        raise StorageFailure("order insert")


async def test_persist_failure_releases_the_reservation(
    sessions, customers, ledger, transport, error_sink, customer, product
):
    workflow = OrderWorkflow(
        customers, ledger, _BrokenOrderStore(sessions), NotificationPublisher(transport), error_sink,
    )

    with pytest.raises(PersistError) as exc_info:
        await workflow.create_order("C-1", "P-1", 4)

    assert exc_info.value.compensated
    assert await _stock(ledger) == 5
    assert transport.sent == []


async def test_update_status_publishes_status_changed(workflow, transport, customer, product):
    order = await workflow.create_order("C-1", "P-1", 1)

    updated = await workflow.update_order_status(order.id, "Processing")

    assert updated.status is OrderStatus.PROCESSING
    assert updated.version == order.version + 1
    _, message_id, body = transport.sent[-1]
    assert message_id == f"{order.id}:status-Processing"
    assert body["payload"]["previousStatus"] == "Submitted"
    assert body["payload"]["newStatus"] == "Processing"


@pytest.mark.parametrize("terminal", [OrderStatus.COMPLETED, OrderStatus.CANCELLED])
@pytest.mark.parametrize("target", list(OrderStatus))
async def test_terminal_orders_cannot_transition(
    workflow, customer, product, terminal, target
):
    order = await workflow.create_order("C-1", "P-1", 1)
    await workflow.update_order_status(order.id, terminal)

    with pytest.raises(InvalidTransition):
        await workflow.update_order_status(order.id, target)
    assert (await workflow.get_order(order.id)).status is terminal


async def test_update_status_of_unknown_order(workflow):
    with pytest.raises(OrderNotFound):
        await workflow.update_order_status("missing", OrderStatus.CANCELLED)


async def test_update_status_rejects_unknown_status(workflow, customer, product):
    order = await workflow.create_order("C-1", "P-1", 1)
    with pytest.raises(ValidationFailed):
        await workflow.update_order_status(order.id, "Shipped")


async def test_list_orders_by_customer(workflow, customer, product):
    first = await workflow.create_order("C-1", "P-1", 1)
    second = await workflow.create_order("C-1", "P-1", 1)

    listed = [o async for o in workflow.list_orders(OrderFilter(customer_id="C-1"))]
    assert [o.id for o in listed] == [second.id, first.id]


class _SilentTransport:
    async def send(self, channel, message_id, body):
        await asyncio.sleep(10)


class _StuckRedis:
    async def lpush(self, key, value):
        await asyncio.sleep(10)


async def test_hung_broker_does_not_block_order_creation(
    customers, ledger, orders, customer, product
):
    workflow = OrderWorkflow(
        customers,
        ledger,
        orders,
        NotificationPublisher(_SilentTransport(), timeout=0.01),
        RedisErrorSink(_StuckRedis(), "dlq", timeout=0.01),
        retry=RetryPolicy(attempts=2, backoff=0),
    )

    order = await asyncio.wait_for(workflow.create_order("C-1", "P-1", 1), 3)

    assert (await orders.get(order.id)).status is OrderStatus.SUBMITTED


class _LateReserve(StockLedger):
    stalls = 1

    async def _try_adjust(self, product_id, delta):
        change = await super()._try_adjust(product_id, delta)
        if self.stalls:
            self.stalls -= 1
            await asyncio.sleep(0.3)
        return change


async def test_reserve_timeout_leaves_no_units_held(
    sessions, customers, orders, transport, error_sink, customer, product
):
    ledger = _LateReserve(sessions, timeout=0.1)
    workflow = OrderWorkflow(
        customers, ledger, orders, NotificationPublisher(transport), error_sink,
    )

    with pytest.raises(OperationTimeout):
        await workflow.create_order("C-1", "P-1", 2)

    await ledger.settle()
    assert await _stock(ledger) == 5
    assert [o async for o in orders.list_orders()] == []
    assert transport.sent == []


class _CommitThenStall(OrderStore):
    async def _create(self, order):
        await super()._create(order)
        await asyncio.sleep(1)


class _StallBeforeCommit(OrderStore):
    async def _create(self, order):
        await asyncio.sleep(1)


async def test_persist_timeout_after_commit_keeps_the_order(
    sessions, customers, ledger, transport, error_sink, customer, product
):
    orders = _CommitThenStall(sessions, timeout=0.1)
    workflow = OrderWorkflow(
        customers, ledger, orders, NotificationPublisher(transport), error_sink,
    )

    order = await workflow.create_order("C-1", "P-1", 2)

    assert await orders.get(order.id) == order
    assert await _stock(ledger) == 3
    assert transport.types() == ["OrderCreated", "StockUpdated"]


async def test_persist_timeout_without_commit_releases_stock(
    sessions, customers, ledger, transport, error_sink, customer, product
):
    workflow = OrderWorkflow(
        customers,
        ledger,
        _StallBeforeCommit(sessions, timeout=0.1),
        NotificationPublisher(transport),
        error_sink,
    )

    with pytest.raises(PersistError) as exc_info:
        await workflow.create_order("C-1", "P-1", 2)

    assert exc_info.value.compensated
    assert isinstance(exc_info.value.__cause__, OperationTimeout)
    assert await _stock(ledger) == 5
    assert transport.sent == []
