"""
Order Service: Notification Publisher

Events go to named channels (``order-events``, ``stock-events``). With
Redis, each channel is a Stream: unlike Pub/Sub, entries stay in the
stream until consumer groups acknowledge them, which gives at-least-once
delivery to downstream consumers.

Publishing is a single bounded attempt. Retrying is the caller's job;
what still fails after the caller's retries is recorded in the error sink
so an operator can replay it.
"""

import asyncio
import json
import logging
from dataclasses import asdict, dataclass
from typing import Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .db import bounded, format_ts, utcnow
from .errors import DeliveryFailure, OperationTimeout
from .events import to_message

logger = logging.getLogger(__name__)


class Transport(Protocol):
    async def send(self, channel: str, message_id: str, body: str) -> None:
        ...


class RedisStreamTransport:
    def __init__(self, redis: aioredis.Redis, *, maxlen: int | None = 100_000) -> None:
        self.redis = redis
        self.maxlen = maxlen

    async def send(self, channel: str, message_id: str, body: str) -> None:
        try:
            await self.redis.xadd(
                channel,
                {"message_id": message_id, "body": body},
                maxlen=self.maxlen,
                approximate=True,
            )
        except RedisError as e:
            raise DeliveryFailure(channel, message_id, str(e)) from e


class NotificationPublisher:
    def __init__(self, transport: Transport, *, timeout: float = 2.0) -> None:
        self.transport = transport
        self.timeout = timeout

    async def publish(self, channel: str, event) -> None:
        body = to_message(event)
        try:
            await asyncio.wait_for(
                self.transport.send(channel, event.message_id, body), self.timeout
            )
        except asyncio.TimeoutError:
            raise OperationTimeout(f"publish {event.message_id} to {channel}", self.timeout) from None
        except OSError as e:
            raise DeliveryFailure(channel, event.message_id, str(e)) from e
        logger.debug("Published %s to %s", event.message_id, channel)


# ── Operational error sink ───────────────────────


@dataclass(frozen=True)
class FailedDelivery:
    channel: str
    message_id: str
    body: str
    error: str
    failed_at: str

    @classmethod
    def from_event(cls, channel: str, event, error: Exception) -> "FailedDelivery":
        return cls(
            channel=channel,
            message_id=event.message_id,
            body=to_message(event),
            error=str(error),
            failed_at=format_ts(utcnow()),
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, raw: str | bytes) -> "FailedDelivery":
        return cls(**json.loads(raw))


class ErrorSink(Protocol):
    async def record(self, failure: FailedDelivery) -> None:
        ...


class RedisErrorSink:
    """
    Dead-letter list for notifications that could not be delivered.

    New failures are pushed on the left; ``replay`` consumes from the
    right, so entries are replayed oldest first.
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        key: str = "notifications:dead-letter",
        *,
        timeout: float = 2.0,
    ) -> None:
        self.redis = redis
        self.key = key
        self.timeout = timeout

    async def record(self, failure: FailedDelivery) -> None:
        try:
            await bounded(
                self.redis.lpush(self.key, failure.to_json()), self.timeout, "dead-letter write"
            )
        except (RedisError, OperationTimeout):
            # last resort: the log line carries everything needed to replay by hand
            logger.exception(
                "Could not dead-letter %s for %s: %s",
                failure.message_id, failure.channel, failure.body,
            )
            return
        logger.error(
            "Dead-lettered %s for %s: %s", failure.message_id, failure.channel, failure.error
        )

    async def pending(self) -> list[FailedDelivery]:
        raw = await self.redis.lrange(self.key, 0, -1)
        return [FailedDelivery.from_json(item) for item in reversed(raw)]

    async def replay(self, transport: Transport, limit: int = 100) -> int:
        """Re-send up to ``limit`` entries. Stops at the first failure, keeping that entry."""
        replayed = 0
        while replayed < limit:
            raw = await self.redis.rpop(self.key)
            if raw is None:
                break
            failure = FailedDelivery.from_json(raw)
            try:
                await bounded(
                    transport.send(failure.channel, failure.message_id, failure.body),
                    self.timeout,
                    f"replay {failure.message_id}",
                )
            except (DeliveryFailure, OperationTimeout):
                await self.redis.rpush(self.key, raw)
                logger.warning("Replay of %s failed; left in dead-letter list", failure.message_id)
                break
            replayed += 1
        if replayed:
            logger.info("Replayed %d dead-lettered notifications", replayed)
        return replayed
