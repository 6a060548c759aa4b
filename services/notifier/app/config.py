"""
Notifier Service: configuration

Channel names and ``REDIS_URL`` are shared with the order service;
numbers are parsed the same way, so a malformed value names its variable.
"""

import os
import socket
from dataclasses import dataclass, field
from typing import Mapping

from services.order.app.config import read_number


@dataclass(frozen=True)
class NotifierSettings:
    redis_url: str = "redis://localhost:6379"
    order_events_channel: str = "order-events"
    stock_events_channel: str = "stock-events"
    group: str = "notifier"
    consumer: str = field(default_factory=socket.gethostname)
    processed_ttl: int = 7 * 24 * 3600
    pending_retry_interval: float = 30.0
    log_level: str = "INFO"

    @property
    def streams(self) -> list[str]:
        return [self.order_events_channel, self.stock_events_channel]


def load_settings(environ: Mapping[str, str] | None = None) -> NotifierSettings:
    env = os.environ if environ is None else environ
    defaults = NotifierSettings()
    return NotifierSettings(
        redis_url=env.get("REDIS_URL", defaults.redis_url),
        order_events_channel=env.get("ORDER_EVENTS_CHANNEL", defaults.order_events_channel),
        stock_events_channel=env.get("STOCK_EVENTS_CHANNEL", defaults.stock_events_channel),
        group=env.get("NOTIFIER_GROUP", defaults.group),
        consumer=env.get("NOTIFIER_CONSUMER", defaults.consumer),
        processed_ttl=read_number(env, "PROCESSED_TTL_SECONDS", defaults.processed_ttl, int),
        pending_retry_interval=read_number(
            env, "PENDING_RETRY_SECONDS", defaults.pending_retry_interval, float
        ),
        log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
    )
