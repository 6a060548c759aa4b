"""
Order Service: notification events

Events are named in the past tense and are immutable. Each one carries a
snapshot of the state it describes, never a live reference, so what a
consumer sees is exactly what was true when the event was emitted.

Wire format (JSON):

    {"type": "OrderCreated", "emittedAt": "...", "messageId": "...", "payload": {...}}

``messageId`` is ``<order id>:<transition>``; consumers deduplicate on it.
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, computed_field
from pydantic.alias_generators import to_camel

from .models import Order, OrderStatus


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class _Wire(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


# ── Payloads ─────────────────────────────────────


class OrderCreatedPayload(_Wire):
    order_id: str
    customer_id: str
    product_id: str
    product_name: str
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    status: OrderStatus
    created_at: datetime


class OrderStatusChangedPayload(_Wire):
    order_id: str
    customer_id: str
    product_name: str
    previous_status: OrderStatus
    new_status: OrderStatus
    changed_at: datetime


class StockUpdatedPayload(_Wire):
    product_id: str
    product_name: str
    previous_stock: int
    new_stock: int
    order_id: str


# ── Events ───────────────────────────────────────


class OrderCreated(_Wire):
    """An order was persisted."""

    type: Literal["OrderCreated"] = "OrderCreated"
    emitted_at: datetime = Field(default_factory=_utcnow)
    payload: OrderCreatedPayload

    @computed_field(alias="messageId")
    @property
    def message_id(self) -> str:
        return f"{self.payload.order_id}:created"

    @classmethod
    def from_order(cls, order: Order) -> "OrderCreated":
        return cls(
            payload=OrderCreatedPayload(
                order_id=order.id,
                customer_id=order.customer_id,
                product_id=order.product_id,
                product_name=order.product_name,
                quantity=order.quantity,
                unit_price=order.unit_price,
                total_price=order.total_price,
                status=order.status,
                created_at=order.created_at,
            )
        )


class OrderStatusChanged(_Wire):
    """An order moved to a new status."""

    type: Literal["OrderStatusChanged"] = "OrderStatusChanged"
    emitted_at: datetime = Field(default_factory=_utcnow)
    payload: OrderStatusChangedPayload

    @computed_field(alias="messageId")
    @property
    def message_id(self) -> str:
        return f"{self.payload.order_id}:status-{self.payload.new_status.value}"

    @classmethod
    def from_transition(cls, order: Order, previous: OrderStatus) -> "OrderStatusChanged":
        return cls(
            payload=OrderStatusChangedPayload(
                order_id=order.id,
                customer_id=order.customer_id,
                product_name=order.product_name,
                previous_status=previous,
                new_status=order.status,
                changed_at=order.last_modified_at,
            )
        )


class StockUpdated(_Wire):
    """Available stock of a product changed because of an order."""

    type: Literal["StockUpdated"] = "StockUpdated"
    emitted_at: datetime = Field(default_factory=_utcnow)
    payload: StockUpdatedPayload

    @computed_field(alias="messageId")
    @property
    def message_id(self) -> str:
        return f"{self.payload.order_id}:stock-reserved"


NotificationEvent = Annotated[
    Union[OrderCreated, OrderStatusChanged, StockUpdated],
    Field(discriminator="type"),
]

_adapter: TypeAdapter = TypeAdapter(NotificationEvent)


def to_message(event: OrderCreated | OrderStatusChanged | StockUpdated) -> str:
    return event.model_dump_json(by_alias=True)


def parse_event(raw: str | bytes) -> OrderCreated | OrderStatusChanged | StockUpdated:
    """Rebuild an event from its wire form. Raises ``pydantic.ValidationError``."""
    return _adapter.validate_json(raw)
