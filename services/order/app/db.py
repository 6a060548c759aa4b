"""
Order Service: storage substrate

Engine / session factory creation, the table DDL and the timeout wrapper
shared by the storage components.

Timestamps are stored as ISO-8601 UTC text with fixed microsecond
precision, so lexical order equals chronological order on every backend.
Money is stored as decimal text.
"""

import asyncio
from datetime import datetime, timezone
from typing import Awaitable, TypeVar

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .errors import OperationTimeout

T = TypeVar("T")

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS customers (
        id            TEXT PRIMARY KEY,
        display_name  TEXT NOT NULL,
        contact_info  TEXT NOT NULL DEFAULT ''
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id               TEXT PRIMARY KEY,
        name             TEXT NOT NULL,
        unit_price       TEXT NOT NULL,
        stock_available  INTEGER NOT NULL CHECK (stock_available >= 0),
        version          INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id                TEXT PRIMARY KEY,
        customer_id       TEXT NOT NULL,
        product_id        TEXT NOT NULL,
        product_name      TEXT NOT NULL,
        quantity          INTEGER NOT NULL CHECK (quantity >= 1),
        unit_price        TEXT NOT NULL,
        status            TEXT NOT NULL,
        created_at        TEXT NOT NULL,
        last_modified_at  TEXT NOT NULL,
        version           INTEGER NOT NULL DEFAULT 1
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_created ON orders (created_at, id)",
    """
    CREATE TABLE IF NOT EXISTS order_status_history (
        order_id    TEXT NOT NULL,
        version     INTEGER NOT NULL,
        status      TEXT NOT NULL,
        changed_at  TEXT NOT NULL,
        PRIMARY KEY (order_id, version)
    )
    """,
)


def create_engine(database_url: str, **kwargs) -> AsyncEngine:
    return create_async_engine(database_url, echo=False, **kwargs)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in SCHEMA:
            await conn.execute(text(statement))


async def bounded(awaitable: Awaitable[T], timeout: float, operation: str) -> T:
    """Await with a deadline; a miss surfaces as ``OperationTimeout``."""
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise OperationTimeout(operation, timeout) from None


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def format_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def parse_ts(value) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)
