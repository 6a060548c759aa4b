"""
Notifier Service: Redis Streams subscriber

Reads ``order-events`` and ``stock-events`` through a consumer group.
An entry is acknowledged only after it has been handled, so a crash or a
handler error leaves it pending and it is delivered again: at-least-once.

Duplicates (redeliveries, or the publisher retrying after a lost reply)
are filtered by message id before the handler runs.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Protocol

import redis.asyncio as aioredis
from pydantic import ValidationError
from redis.exceptions import ResponseError

from services.order.app.events import parse_event

from .handlers import handle_event

logger = logging.getLogger(__name__)


class Guard(Protocol):
    async def seen(self, message_id: str) -> bool:
        ...

    async def mark(self, message_id: str) -> None:
        ...


class ProcessedGuard:
    """Remembers processed message ids in Redis for ``ttl`` seconds."""

    def __init__(
        self,
        redis: aioredis.Redis,
        ttl: int = 7 * 24 * 3600,
        prefix: str = "notifier:processed:",
    ) -> None:
        self.redis = redis
        self.ttl = ttl
        self.prefix = prefix

    async def seen(self, message_id: str) -> bool:
        return bool(await self.redis.exists(self.prefix + message_id))

    async def mark(self, message_id: str) -> None:
        await self.redis.set(self.prefix + message_id, "1", ex=self.ttl)


class MessageProcessor:
    def __init__(
        self,
        guard: Guard,
        handler: Callable[[object], Awaitable[None]] = handle_event,
    ) -> None:
        self.guard = guard
        self.handler = handler

    async def process(self, fields: dict | None) -> None:
        """
        Handle one stream entry. Returning normally means the entry may be
        acknowledged; an exception means it must stay pending.

        ``fields`` is None for a pending entry whose data was trimmed from
        the stream.
        """
        if not fields or "body" not in fields:
            logger.error("Dropping entry without a body: %r", fields)
            return
        try:
            event = parse_event(fields["body"])
        except ValidationError:
            # redelivering a malformed entry can never succeed
            logger.error("Dropping malformed message %s", fields.get("message_id"))
            return

        if await self.guard.seen(event.message_id):
            logger.info("Skipping duplicate %s", event.message_id)
            return

        logger.info("Received %s: %s", event.type, event.message_id)
        await self.handler(event)
        await self.guard.mark(event.message_id)


async def ensure_groups(redis: aioredis.Redis, streams: list[str], group: str) -> None:
    for stream in streams:
        try:
            await redis.xgroup_create(stream, group, id="0", mkstream=True)
            logger.info("Created consumer group %s on %s", group, stream)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise


async def run_subscriber(
    redis_url: str,
    streams: list[str],
    group: str,
    consumer: str,
    shutdown_event: asyncio.Event,
    *,
    processed_ttl: int = 7 * 24 * 3600,
    pending_retry_interval: float = 30.0,
) -> None:
    """
    Consume until ``shutdown_event`` is set.

    Entries left pending by earlier failures (id "0") are re-read at start
    and then every ``pending_retry_interval`` seconds; new entries (">")
    are read in between.
    """
    redis_conn = aioredis.from_url(redis_url, decode_responses=True)
    processor = MessageProcessor(ProcessedGuard(redis_conn, ttl=processed_ttl))
    await ensure_groups(redis_conn, streams, group)
    logger.info("Subscribed to %s as %s/%s", ", ".join(streams), group, consumer)

    next_pending_check = 0.0
    try:
        while not shutdown_event.is_set():
            pending_pass = time.monotonic() >= next_pending_check
            start = "0" if pending_pass else ">"
            response = await redis_conn.xreadgroup(
                group,
                consumer,
                {stream: start for stream in streams},
                count=50,
                block=None if pending_pass else 1000,
            )
            if pending_pass:
                next_pending_check = time.monotonic() + pending_retry_interval
            for stream, entries in response or []:
                for entry_id, fields in entries:
                    await _handle_entry(redis_conn, processor, stream, group, entry_id, fields)
    finally:
        await redis_conn.aclose()


async def _handle_entry(
    redis_conn: aioredis.Redis,
    processor: MessageProcessor,
    stream: str,
    group: str,
    entry_id: str,
    fields: dict,
) -> None:
    try:
        await processor.process(fields)
    except Exception:
        logger.exception("Failed to process %s from %s; left pending", entry_id, stream)
        return
    await redis_conn.xack(stream, group, entry_id)
