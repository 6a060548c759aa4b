"""
Order Service: Order Store

Orders are created once and then only change ``status``,
``last_modified_at`` and ``version``. Every status an order has held is
kept in ``order_status_history``; rows there are never updated or removed.
Orders are never deleted either: cancellation is a status.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import AsyncIterator

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .db import bounded, format_ts, parse_ts, utcnow
from .errors import (
    DuplicateId,
    InvalidTransition,
    OrderNotFound,
    StatusConflict,
    StorageFailure,
)
from .models import Order, OrderStatus, StatusChange, can_transition

logger = logging.getLogger(__name__)

_COLUMNS = (
    "id, customer_id, product_id, product_name, quantity, unit_price, "
    "status, created_at, last_modified_at, version"
)


@dataclass(frozen=True)
class OrderFilter:
    customer_id: str | None = None
    status: OrderStatus | None = None
    created_from: datetime | None = None
    created_to: datetime | None = None

    def to_sql(self) -> tuple[list[str], dict]:
        clauses: list[str] = []
        params: dict = {}
        if self.customer_id is not None:
            clauses.append("customer_id = :customer_id")
            params["customer_id"] = self.customer_id
        if self.status is not None:
            clauses.append("status = :status")
            params["status"] = OrderStatus(self.status).value
        if self.created_from is not None:
            clauses.append("created_at >= :created_from")
            params["created_from"] = format_ts(self.created_from)
        if self.created_to is not None:
            clauses.append("created_at <= :created_to")
            params["created_to"] = format_ts(self.created_to)
        return clauses, params


class OrderStore:
    def __init__(self, session_factory: sessionmaker, *, timeout: float = 5.0) -> None:
        self._sessions = session_factory
        self.timeout = timeout

    # ── Writes ───────────────────────────────────────

    async def create(self, order: Order) -> Order:
        await bounded(self._create(order), self.timeout, "order insert")
        return order

    async def _create(self, order: Order) -> None:
        try:
            async with self._sessions() as session:
                await session.execute(
                    text(f"""
                        INSERT INTO orders ({_COLUMNS})
                        VALUES
                            (:id, :customer_id, :product_id, :product_name, :quantity,
                             :unit_price, :status, :created_at, :last_modified_at, :version)
                    """),
                    {
                        "id": order.id,
                        "customer_id": order.customer_id,
                        "product_id": order.product_id,
                        "product_name": order.product_name,
                        "quantity": order.quantity,
                        "unit_price": str(order.unit_price),
                        "status": order.status.value,
                        "created_at": format_ts(order.created_at),
                        "last_modified_at": format_ts(order.last_modified_at),
                        "version": order.version,
                    },
                )
                await _append_history(
                    session, order.id, order.version, order.status, order.created_at
                )
                await session.commit()
        except IntegrityError as e:
            raise DuplicateId("order", order.id) from e
        except SQLAlchemyError as e:
            raise StorageFailure("order insert") from e

    async def update_status(
        self,
        order_id: str,
        new_status: OrderStatus,
        expected_current_status: OrderStatus,
    ) -> Order:
        """
        Conditional status change.

        Succeeds only if the stored status still equals
        ``expected_current_status``; otherwise another writer got there
        first and ``StatusConflict`` is raised.
        """
        new_status = OrderStatus(new_status)
        expected_current_status = OrderStatus(expected_current_status)
        if not can_transition(expected_current_status, new_status):
            raise InvalidTransition(order_id, expected_current_status, new_status)
        return await bounded(
            self._update_status(order_id, new_status, expected_current_status),
            self.timeout,
            "order status update",
        )

    async def _update_status(
        self, order_id: str, new_status: OrderStatus, expected: OrderStatus
    ) -> Order:
        now = utcnow()
        try:
            async with self._sessions() as session:
                result = await session.execute(
                    text("""
                        UPDATE orders
                        SET status = :new_status,
                            last_modified_at = :now,
                            version = version + 1
                        WHERE id = :id AND status = :expected
                    """),
                    {
                        "new_status": new_status.value,
                        "now": format_ts(now),
                        "id": order_id,
                        "expected": expected.value,
                    },
                )
                if result.rowcount != 1:
                    await session.rollback()
                    current = await _select_order(session, order_id)
                    if current is None:
                        raise OrderNotFound(order_id)
                    raise StatusConflict(order_id, expected, current.status)

                order = await _select_order(session, order_id)
                await _append_history(session, order_id, order.version, new_status, now)
                await session.commit()
        except IntegrityError as e:
            # two writers produced the same history version
            raise StatusConflict(order_id, expected, new_status) from e
        except SQLAlchemyError as e:
            raise StorageFailure("order status update") from e

        logger.info(
            "Order %s status %s -> %s (version %d)",
            order_id, expected.value, new_status.value, order.version,
        )
        return order

    # ── Reads ────────────────────────────────────────

    async def get(self, order_id: str) -> Order | None:
        return await bounded(self._get(order_id), self.timeout, "order lookup")

    async def _get(self, order_id: str) -> Order | None:
        try:
            async with self._sessions() as session:
                return await _select_order(session, order_id)
        except SQLAlchemyError as e:
            raise StorageFailure("order lookup") from e

    async def list_orders(
        self,
        order_filter: OrderFilter | None = None,
        *,
        page_size: int = 100,
    ) -> AsyncIterator[Order]:
        """
        Lazily yield matching orders, newest first.

        Pages are fetched on demand with keyset pagination on
        (created_at, id), so inserts during iteration never cause an
        order to be skipped or repeated.
        """
        clauses, params = (order_filter or OrderFilter()).to_sql()
        cursor: tuple[str, str] | None = None
        while True:
            page = await bounded(
                self._fetch_page(clauses, params, cursor, page_size),
                self.timeout,
                "order listing",
            )
            for order in page:
                yield order
            if len(page) < page_size:
                return
            last = page[-1]
            cursor = (format_ts(last.created_at), last.id)

    async def _fetch_page(
        self,
        clauses: list[str],
        params: dict,
        cursor: tuple[str, str] | None,
        page_size: int,
    ) -> list[Order]:
        where = list(clauses)
        args = {**params, "limit": page_size}
        if cursor is not None:
            where.append(
                "(created_at < :cursor_ts OR (created_at = :cursor_ts AND id < :cursor_id))"
            )
            args["cursor_ts"], args["cursor_id"] = cursor
        sql = f"SELECT {_COLUMNS} FROM orders"
        if where:
            sql += " WHERE " + " AND ".join(where)
        sql += " ORDER BY created_at DESC, id DESC LIMIT :limit"
        try:
            async with self._sessions() as session:
                result = await session.execute(text(sql), args)
                return [_to_order(row) for row in result.fetchall()]
        except SQLAlchemyError as e:
            raise StorageFailure("order listing") from e

    async def history(self, order_id: str) -> list[StatusChange]:
        return await bounded(self._history(order_id), self.timeout, "order history")

    async def _history(self, order_id: str) -> list[StatusChange]:
        try:
            async with self._sessions() as session:
                result = await session.execute(
                    text("""
                        SELECT order_id, version, status, changed_at
                        FROM order_status_history
                        WHERE order_id = :id
                        ORDER BY version ASC
                    """),
                    {"id": order_id},
                )
                rows = result.fetchall()
        except SQLAlchemyError as e:
            raise StorageFailure("order history") from e
        return [
            StatusChange(
                order_id=row.order_id,
                version=row.version,
                status=OrderStatus(row.status),
                changed_at=parse_ts(row.changed_at),
            )
            for row in rows
        ]


async def _select_order(session: AsyncSession, order_id: str) -> Order | None:
    result = await session.execute(
        text(f"SELECT {_COLUMNS} FROM orders WHERE id = :id"),
        {"id": order_id},
    )
    row = result.first()
    return _to_order(row) if row is not None else None


async def _append_history(
    session: AsyncSession,
    order_id: str,
    version: int,
    status: OrderStatus,
    changed_at: datetime,
) -> None:
    await session.execute(
        text("""
            INSERT INTO order_status_history (order_id, version, status, changed_at)
            VALUES (:order_id, :version, :status, :changed_at)
        """),
        {
            "order_id": order_id,
            "version": version,
            "status": status.value,
            "changed_at": format_ts(changed_at),
        },
    )


def _to_order(row) -> Order:
    return Order(
        id=row.id,
        customer_id=row.customer_id,
        product_id=row.product_id,
        product_name=row.product_name,
        quantity=row.quantity,
        unit_price=Decimal(row.unit_price),
        status=OrderStatus(row.status),
        created_at=parse_ts(row.created_at),
        last_modified_at=parse_ts(row.last_modified_at),
        version=row.version,
    )
