"""
Order Service: Stock Ledger

Single source of truth for the available quantity of each product.

Reservation and release use optimistic concurrency instead of a lock:

  1. read   stock_available, version
  2. check  the new level would not go below zero
  3. write  UPDATE ... WHERE version = :read_version
  4. retry  from 1 when another writer bumped the version first

Unrelated products never wait on each other. When the retry budget is
exhausted the call fails with ``ConcurrentModification``.
"""

import asyncio
import functools
import logging
import random
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .db import bounded
from .errors import (
    ConcurrentModification,
    DuplicateId,
    InsufficientStock,
    OperationTimeout,
    ProductNotFound,
    StorageFailure,
    ValidationFailed,
)
from .models import Product

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StockChange:
    """Outcome of a successful reserve / release."""

    product_id: str
    product_name: str
    previous_level: int
    new_level: int
    version: int


class StockLedger:
    def __init__(
        self,
        session_factory: sessionmaker,
        *,
        max_attempts: int = 5,
        timeout: float = 5.0,
        backoff: float = 0.01,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._sessions = session_factory
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.backoff = backoff
        self._late: set[asyncio.Future] = set()

    # ── Reads ────────────────────────────────────────

    async def get_product(self, product_id: str) -> Product | None:
        return await bounded(self._get(product_id), self.timeout, "product lookup")

    async def _get(self, product_id: str) -> Product | None:
        try:
            async with self._sessions() as session:
                result = await session.execute(
                    text(
                        "SELECT id, name, unit_price, stock_available, version "
                        "FROM products WHERE id = :id"
                    ),
                    {"id": product_id},
                )
                row = result.first()
        except SQLAlchemyError as e:
            raise StorageFailure("product lookup") from e
        if row is None:
            return None
        return Product(
            id=row.id,
            name=row.name,
            unit_price=Decimal(row.unit_price),
            stock_available=row.stock_available,
            version=row.version,
        )

    # ── Catalog seeding ──────────────────────────────

    async def add_product(self, product: Product) -> Product:
        await bounded(self._add(product), self.timeout, "product insert")
        return product

    async def _add(self, product: Product) -> None:
        try:
            async with self._sessions() as session:
                await session.execute(
                    text("""
                        INSERT INTO products (id, name, unit_price, stock_available, version)
                        VALUES (:id, :name, :unit_price, :stock, :version)
                    """),
                    {
                        "id": product.id,
                        "name": product.name,
                        "unit_price": str(product.unit_price),
                        "stock": product.stock_available,
                        "version": product.version,
                    },
                )
                await session.commit()
        except IntegrityError as e:
            raise DuplicateId("product", product.id) from e
        except SQLAlchemyError as e:
            raise StorageFailure("product insert") from e

    # ── Reservation ──────────────────────────────────

    async def reserve(self, product_id: str, quantity: int) -> StockChange:
        """Take ``quantity`` units out of available stock, or fail without mutation."""
        _check_quantity(quantity)
        return await self._adjust(product_id, -quantity, "reserve")

    async def release(self, product_id: str, quantity: int) -> StockChange:
        """Compensating operation: put ``quantity`` units back."""
        _check_quantity(quantity)
        return await self._adjust(product_id, quantity, "release")

    async def settle(self, timeout: float | None = None) -> None:
        """Wait for rounds that outlived their deadline, and any undo they triggered."""
        while self._late:
            done, _ = await asyncio.wait(set(self._late), timeout=timeout)
            if not done:
                logger.warning("%d stock rounds still running", len(self._late))
                return

    async def _adjust(self, product_id: str, delta: int, operation: str) -> StockChange:
        for attempt in range(1, self.max_attempts + 1):
            change = await self._bounded_round(product_id, delta, operation)
            if change is not None:
                logger.info(
                    "Stock %s product=%s %d -> %d",
                    operation, product_id, change.previous_level, change.new_level,
                )
                return change
            logger.debug(
                "Version conflict on product=%s (%s attempt %d/%d)",
                product_id, operation, attempt, self.max_attempts,
            )
            if attempt < self.max_attempts:
                await asyncio.sleep(self._delay(attempt))

        logger.warning(
            "Giving up stock %s on product=%s after %d attempts",
            operation, product_id, self.max_attempts,
        )
        raise ConcurrentModification("product", product_id, self.max_attempts)

    async def _bounded_round(
        self, product_id: str, delta: int, operation: str
    ) -> StockChange | None:
        """
        One round under the ledger deadline.

        The round is shielded rather than cancelled on timeout, because a
        miss can land after the UPDATE committed. A late round that did
        commit a reservation is released again, so the caller's
        ``OperationTimeout`` always means "no units held".
        """
        round_task = asyncio.ensure_future(self._try_adjust(product_id, delta))
        try:
            return await asyncio.wait_for(asyncio.shield(round_task), self.timeout)
        except asyncio.TimeoutError:
            self._late.add(round_task)
            round_task.add_done_callback(
                functools.partial(self._finish_late_round, product_id, delta)
            )
            raise OperationTimeout(f"stock {operation}", self.timeout) from None

    def _finish_late_round(self, product_id: str, delta: int, round_task: asyncio.Future) -> None:
        self._late.discard(round_task)
        if round_task.cancelled() or round_task.exception() is not None:
            return
        change = round_task.result()
        if change is None:
            return
        if delta > 0:
            logger.warning(
                "Late release of %d units on product=%s committed after its deadline",
                delta, product_id,
            )
            return
        logger.warning(
            "Late reservation of %d units on product=%s committed after its deadline; releasing",
            -delta, product_id,
        )
        undo = asyncio.ensure_future(self._adjust(product_id, -delta, "release"))
        self._late.add(undo)
        undo.add_done_callback(self._forget_undo)

    def _forget_undo(self, undo: asyncio.Future) -> None:
        self._late.discard(undo)
        if not undo.cancelled() and undo.exception() is not None:
            logger.error(
                "Could not release a late reservation; correct stock manually: %s",
                undo.exception(),
            )

    async def _try_adjust(self, product_id: str, delta: int) -> StockChange | None:
        """One read-check-write round. Returns None when the version moved."""
        try:
            async with self._sessions() as session:
                result = await session.execute(
                    text(
                        "SELECT name, stock_available, version "
                        "FROM products WHERE id = :id"
                    ),
                    {"id": product_id},
                )
                row = result.first()
                if row is None:
                    raise ProductNotFound(product_id)

                new_level = row.stock_available + delta
                if new_level < 0:
                    raise InsufficientStock(
                        product_id, requested=-delta, available=row.stock_available
                    )

                result = await session.execute(
                    text("""
                        UPDATE products
                        SET stock_available = :new_level, version = version + 1
                        WHERE id = :id AND version = :version
                    """),
                    {"new_level": new_level, "id": product_id, "version": row.version},
                )
                if result.rowcount != 1:
                    await session.rollback()
                    return None
                await session.commit()
        except SQLAlchemyError as e:
            raise StorageFailure("stock update") from e

        return StockChange(
            product_id=product_id,
            product_name=row.name,
            previous_level=row.stock_available,
            new_level=new_level,
            version=row.version + 1,
        )

    def _delay(self, attempt: int) -> float:
        return random.uniform(0, self.backoff * 2 ** (attempt - 1))


def _check_quantity(quantity: int) -> None:
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
        raise ValidationFailed(f"quantity must be a positive integer, got {quantity!r}")
