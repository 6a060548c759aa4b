"""
Order Workflow Orchestrator

Composes the stock ledger, the order store and the notification
publisher. Stock and orders live in separate tables with no shared
transaction, so a failure after the reservation is undone with a
compensating ``release``.

  create_order:

  ┌──────────────────────────────────────────────────────────────┐
  │  Validating  quantity >= 1, customer and product exist        │
  │  Reserving   ledger.reserve                                   │
  │     └─ fails → Failed(InsufficientStock / ...)                │
  │  Persisting  orders.create                                    │
  │     └─ fails → ledger.release (compensation) → Failed(Persist)│
  │  Notifying   OrderCreated, then StockUpdated                  │
  │     └─ fails → retried, then dead-lettered; still Done        │
  │  Done        return the persisted order                       │
  └──────────────────────────────────────────────────────────────┘

The order is the record of truth: a notification that cannot be
delivered never undoes or fails an order.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import AsyncIterator
from uuid import uuid4

from .customers import CustomerDirectory
from .db import utcnow
from .errors import (
    CustomerNotFound,
    DeliveryFailure,
    DuplicateId,
    InvalidTransition,
    OperationTimeout,
    OrderNotFound,
    OrderWorkflowError,
    PersistError,
    ProductNotFound,
    StorageFailure,
    ValidationFailed,
)
from .events import OrderCreated, OrderStatusChanged, StockUpdated, StockUpdatedPayload
from .models import Order, OrderStatus, can_transition
from .order_store import OrderFilter, OrderStore
from .publisher import ErrorSink, FailedDelivery, NotificationPublisher
from .stock_ledger import StockChange, StockLedger

logger = logging.getLogger(__name__)


class CreateOrderState(str, Enum):
    VALIDATING = "Validating"
    RESERVING = "Reserving"
    PERSISTING = "Persisting"
    NOTIFYING = "Notifying"
    DONE = "Done"
    FAILED = "Failed"


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int = 3
    backoff: float = 0.1
    max_backoff: float = 2.0

    def delay(self, attempt: int) -> float:
        return min(self.backoff * 2 ** (attempt - 1), self.max_backoff)


class OrderWorkflow:
    def __init__(
        self,
        customers: CustomerDirectory,
        ledger: StockLedger,
        orders: OrderStore,
        publisher: NotificationPublisher,
        error_sink: ErrorSink,
        *,
        order_channel: str = "order-events",
        stock_channel: str = "stock-events",
        retry: RetryPolicy = RetryPolicy(),
    ) -> None:
        self.customers = customers
        self.ledger = ledger
        self.orders = orders
        self.publisher = publisher
        self.error_sink = error_sink
        self.order_channel = order_channel
        self.stock_channel = stock_channel
        self.retry = retry

    # ── create_order ─────────────────────────────────

    async def create_order(self, customer_id: str, product_id: str, quantity: int) -> Order:
        state = CreateOrderState.VALIDATING
        try:
            # ── Validating ───────────────────────────
            _log_state(state, customer_id, product_id, quantity)
            if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
                raise ValidationFailed(f"quantity must be at least 1, got {quantity!r}")
            customer = await self.customers.get(customer_id)
            if customer is None:
                raise CustomerNotFound(customer_id)
            product = await self.ledger.get_product(product_id)
            if product is None:
                raise ProductNotFound(product_id)

            # ── Reserving ────────────────────────────
            state = CreateOrderState.RESERVING
            _log_state(state, customer_id, product_id, quantity)
            change = await self.ledger.reserve(product_id, quantity)

            # ── Persisting ───────────────────────────
            state = CreateOrderState.PERSISTING
            _log_state(state, customer_id, product_id, quantity)
            now = utcnow()
            order = Order(
                id=str(uuid4()),
                customer_id=customer.id,
                product_id=product.id,
                product_name=change.product_name,
                quantity=quantity,
                unit_price=product.unit_price,
                status=OrderStatus.SUBMITTED,
                created_at=now,
                last_modified_at=now,
            )
            order = await self._persist(order, change)
        except OrderWorkflowError as e:
            logger.warning("create_order failed in %s: %s", state.value, e)
            raise

        # ── Notifying ────────────────────────────────
        _log_state(CreateOrderState.NOTIFYING, customer_id, product_id, quantity)
        await self._notify(self.order_channel, OrderCreated.from_order(order))
        await self._notify(
            self.stock_channel,
            StockUpdated(
                payload=StockUpdatedPayload(
                    product_id=change.product_id,
                    product_name=change.product_name,
                    previous_stock=change.previous_level,
                    new_stock=change.new_level,
                    order_id=order.id,
                )
            ),
        )

        logger.info("Order %s %s", order.id, CreateOrderState.DONE.value)
        return order

    async def _persist(self, order: Order, change: StockChange) -> Order:
        try:
            return await self.orders.create(order)
        except OperationTimeout as e:
            # the insert may have committed before the deadline hit
            stored = await self._lookup_after_timeout(order.id)
            if stored is not None:
                logger.info("Order %s was stored despite %s", order.id, e)
                return stored
            cause = e
        except (DuplicateId, StorageFailure) as e:
            cause = e

        compensated = await self._compensate(order)
        raise PersistError(order.id, compensated) from cause

    async def _lookup_after_timeout(self, order_id: str) -> Order | None:
        try:
            return await self.orders.get(order_id)
        except OrderWorkflowError:
            logger.warning("Could not verify whether order %s was stored", order_id)
            return None

    async def _compensate(self, order: Order) -> bool:
        try:
            await self.ledger.release(order.product_id, order.quantity)
        except OrderWorkflowError:
            logger.exception(
                "Compensation FAILED: %d units of product %s stay reserved for "
                "unpersisted order %s; correct stock manually",
                order.quantity, order.product_id, order.id,
            )
            return False
        logger.warning(
            "Compensated: released %d units of product %s for order %s",
            order.quantity, order.product_id, order.id,
        )
        return True

    # ── update_order_status ──────────────────────────

    async def update_order_status(self, order_id: str, new_status: OrderStatus | str) -> Order:
        try:
            target = OrderStatus(new_status)
        except ValueError:
            allowed = ", ".join(s.value for s in OrderStatus)
            raise ValidationFailed(
                f"status must be one of {allowed}, got {new_status!r}"
            ) from None

        current = await self.orders.get(order_id)
        if current is None:
            raise OrderNotFound(order_id)
        if not can_transition(current.status, target):
            raise InvalidTransition(order_id, current.status, target)

        updated = await self.orders.update_status(order_id, target, current.status)
        await self._notify(
            self.order_channel, OrderStatusChanged.from_transition(updated, current.status)
        )
        return updated

    # ── Reads ────────────────────────────────────────

    async def get_order(self, order_id: str) -> Order:
        order = await self.orders.get(order_id)
        if order is None:
            raise OrderNotFound(order_id)
        return order

    def list_orders(self, order_filter: OrderFilter | None = None) -> AsyncIterator[Order]:
        return self.orders.list_orders(order_filter)

    # ── Notification delivery ────────────────────────

    async def _notify(self, channel: str, event) -> bool:
        """Best effort: retry with backoff, then dead-letter. Never raises."""
        last_error: Exception | None = None
        for attempt in range(1, self.retry.attempts + 1):
            try:
                await self.publisher.publish(channel, event)
                return True
            except (DeliveryFailure, OperationTimeout) as e:
                last_error = e
                logger.warning(
                    "Publish %s to %s failed (attempt %d/%d): %s",
                    event.message_id, channel, attempt, self.retry.attempts, e,
                )
            if attempt < self.retry.attempts:
                await asyncio.sleep(self.retry.delay(attempt))

        await self.error_sink.record(FailedDelivery.from_event(channel, event, last_error))
        return False


def _log_state(state: CreateOrderState, customer_id: str, product_id: str, quantity) -> None:
    logger.info(
        "create_order %s customer=%s product=%s quantity=%s",
        state.value, customer_id, product_id, quantity,
    )
