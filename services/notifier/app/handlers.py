"""
Notifier Service: event handlers

One handler per event type. Handlers receive events that have already
been deduplicated by message id, but must still tolerate being run twice
for the same event (a crash between handling and acknowledging causes a
redelivery).
"""

import logging

from services.order.app.events import OrderCreated, OrderStatusChanged, StockUpdated

logger = logging.getLogger(__name__)


async def handle_event(event) -> None:
    """Call the handler registered for the event's type."""
    handler = {
        "OrderCreated": _on_order_created,
        "OrderStatusChanged": _on_order_status_changed,
        "StockUpdated": _on_stock_updated,
    }.get(event.type)
    if handler:
        await handler(event)


async def _on_order_created(event: OrderCreated) -> None:
    p = event.payload
    logger.info(
        "Order notification: order %s for customer %s, %d x %s, total %s",
        p.order_id, p.customer_id, p.quantity, p.product_name, p.total_price,
    )


async def _on_order_status_changed(event: OrderStatusChanged) -> None:
    p = event.payload
    logger.info(
        "Order notification: order %s for customer %s moved %s -> %s",
        p.order_id, p.customer_id, p.previous_status.value, p.new_status.value,
    )


async def _on_stock_updated(event: StockUpdated) -> None:
    p = event.payload
    logger.info(
        "Stock update: %s (%s) %d -> %d after order %s",
        p.product_name, p.product_id, p.previous_stock, p.new_stock, p.order_id,
    )
