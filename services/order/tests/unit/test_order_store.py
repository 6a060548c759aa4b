from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from services.order.app.errors import (
    DuplicateId,
    InvalidTransition,
    OrderNotFound,
    StatusConflict,
)
from services.order.app.models import Order, OrderStatus
from services.order.app.order_store import OrderFilter

BASE = datetime(2024, 10, 1, 9, 0, tzinfo=timezone.utc)


def _order(order_id, *, minutes=0, customer_id="C-1", status=OrderStatus.SUBMITTED):
    ts = BASE + timedelta(minutes=minutes)
    return Order(
        id=order_id,
        customer_id=customer_id,
        product_id="P-1",
        product_name="Ceramic Mug",
        quantity=2,
        unit_price=Decimal("10.00"),
        status=status,
        created_at=ts,
        last_modified_at=ts,
    )


async def _collect(aiter):
    return [item async for item in aiter]


async def test_create_then_get_round_trips_every_field(orders):
    order = _order("o-1")
    await orders.create(order)
    stored = await orders.get("o-1")
    assert stored == order
    assert stored.total_price == Decimal("20.00")


async def test_get_missing_returns_none(orders):
    assert await orders.get("missing") is None


async def test_create_rejects_colliding_id(orders):
    await orders.create(_order("o-1"))
    with pytest.raises(DuplicateId):
        await orders.create(_order("o-1", minutes=5))


async def test_update_status_changes_only_status_timestamp_and_version(orders):
    original = await orders.create(_order("o-1"))
    updated = await orders.update_status("o-1", OrderStatus.PROCESSING, OrderStatus.SUBMITTED)

    assert updated.status is OrderStatus.PROCESSING
    assert updated.version == original.version + 1
    assert updated.last_modified_at > original.last_modified_at
    assert updated.created_at == original.created_at
    assert updated.unit_price == original.unit_price
    assert updated.quantity == original.quantity


async def test_update_status_with_stale_expectation_conflicts(orders):
    await orders.create(_order("o-1"))
    await orders.update_status("o-1", OrderStatus.PROCESSING, OrderStatus.SUBMITTED)

    with pytest.raises(StatusConflict) as exc_info:
        await orders.update_status("o-1", OrderStatus.CANCELLED, OrderStatus.SUBMITTED)
    assert exc_info.value.actual is OrderStatus.PROCESSING
    assert (await orders.get("o-1")).status is OrderStatus.PROCESSING


async def test_update_status_rejects_illegal_transition(orders):
    await orders.create(_order("o-1"))
    await orders.update_status("o-1", OrderStatus.COMPLETED, OrderStatus.SUBMITTED)

    with pytest.raises(InvalidTransition):
        await orders.update_status("o-1", OrderStatus.SUBMITTED, OrderStatus.COMPLETED)
    assert (await orders.get("o-1")).status is OrderStatus.COMPLETED


async def test_update_status_on_missing_order(orders):
    with pytest.raises(OrderNotFound):
        await orders.update_status("missing", OrderStatus.CANCELLED, OrderStatus.SUBMITTED)


async def test_history_is_appended_per_transition(orders):
    await orders.create(_order("o-1"))
    await orders.update_status("o-1", OrderStatus.PROCESSING, OrderStatus.SUBMITTED)
    await orders.update_status("o-1", OrderStatus.COMPLETED, OrderStatus.PROCESSING)

    history = await orders.history("o-1")
    assert [h.status for h in history] == [
        OrderStatus.SUBMITTED,
        OrderStatus.PROCESSING,
        OrderStatus.COMPLETED,
    ]
    assert [h.version for h in history] == [1, 2, 3]


async def test_list_is_newest_first_across_pages(orders):
    for i in range(7):
        await orders.create(_order(f"o-{i}", minutes=i))

    listed = await _collect(orders.list_orders(page_size=3))
    assert [o.id for o in listed] == [f"o-{i}" for i in reversed(range(7))]


async def test_list_breaks_timestamp_ties_without_duplicates(orders):
    for order_id in ("o-a", "o-b", "o-c"):
        await orders.create(_order(order_id))

    listed = await _collect(orders.list_orders(page_size=2))
    assert [o.id for o in listed] == ["o-c", "o-b", "o-a"]


async def test_list_filters(orders):
    await orders.create(_order("o-1", minutes=0, customer_id="C-1"))
    await orders.create(_order("o-2", minutes=10, customer_id="C-2"))
    await orders.create(_order("o-3", minutes=20, customer_id="C-1"))
    await orders.update_status("o-3", OrderStatus.CANCELLED, OrderStatus.SUBMITTED)

    by_customer = await _collect(orders.list_orders(OrderFilter(customer_id="C-1")))
    assert [o.id for o in by_customer] == ["o-3", "o-1"]

    by_status = await _collect(orders.list_orders(OrderFilter(status=OrderStatus.SUBMITTED)))
    assert [o.id for o in by_status] == ["o-2", "o-1"]

    window = OrderFilter(
        created_from=BASE + timedelta(minutes=5),
        created_to=BASE + timedelta(minutes=20),
    )
    assert [o.id for o in await _collect(orders.list_orders(window))] == ["o-3", "o-2"]


async def test_list_is_lazy(orders):
    for i in range(5):
        await orders.create(_order(f"o-{i}", minutes=i))

    iterator = orders.list_orders(page_size=2)
    first = await iterator.__anext__()
    assert first.id == "o-4"
    await iterator.aclose()
