"""
Order Service: domain models

State transitions:
    Submitted  -> Processing | Completed | Cancelled
    Processing -> Completed | Cancelled
    Completed, Cancelled are terminal.

Models are immutable snapshots. A status change produces a new ``Order``
value; nothing is mutated in place.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field, computed_field
from pydantic.alias_generators import to_camel


class OrderStatus(str, Enum):
    SUBMITTED = "Submitted"
    PROCESSING = "Processing"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (OrderStatus.COMPLETED, OrderStatus.CANCELLED)


ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.SUBMITTED: frozenset(
        {OrderStatus.PROCESSING, OrderStatus.COMPLETED, OrderStatus.CANCELLED}
    ),
    OrderStatus.PROCESSING: frozenset({OrderStatus.COMPLETED, OrderStatus.CANCELLED}),
    OrderStatus.COMPLETED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


class _Snapshot(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class Product(_Snapshot):
    id: str = Field(min_length=1)
    name: str
    unit_price: Decimal = Field(gt=0)
    stock_available: int = Field(ge=0)
    version: int = 0


class Customer(_Snapshot):
    id: str = Field(min_length=1)
    display_name: str
    contact_info: str = ""


class Order(_Snapshot):
    id: str
    customer_id: str
    product_id: str
    product_name: str
    quantity: int = Field(ge=1)
    unit_price: Decimal
    status: OrderStatus = OrderStatus.SUBMITTED
    created_at: datetime
    last_modified_at: datetime
    version: int = 1

    @computed_field(alias="totalPrice")
    @property
    def total_price(self) -> Decimal:
        return self.unit_price * self.quantity


class StatusChange(_Snapshot):
    """One row of an order's append-only status history."""

    order_id: str
    version: int
    status: OrderStatus
    changed_at: datetime
