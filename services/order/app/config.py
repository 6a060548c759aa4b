"""
Order Service: configuration

Settings are read from the environment once, at startup, and passed
explicitly to the components that need them.
"""

import os
from dataclasses import dataclass
from typing import Mapping


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite+aiosqlite:///./orders.db"
    redis_url: str = "redis://localhost:6379"
    order_events_channel: str = "order-events"
    stock_events_channel: str = "stock-events"
    dead_letter_key: str = "notifications:dead-letter"
    storage_timeout: float = 5.0
    publish_timeout: float = 2.0
    reserve_max_attempts: int = 5
    publish_max_attempts: int = 3
    publish_backoff: float = 0.1
    log_level: str = "INFO"


def read_number(environ: Mapping[str, str], key: str, default, cast):
    raw = environ.get(key)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"{key} must be a {cast.__name__}, got {raw!r}") from None


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    env = os.environ if environ is None else environ
    defaults = Settings()
    return Settings(
        database_url=env.get("DATABASE_URL", defaults.database_url),
        redis_url=env.get("REDIS_URL", defaults.redis_url),
        order_events_channel=env.get("ORDER_EVENTS_CHANNEL", defaults.order_events_channel),
        stock_events_channel=env.get("STOCK_EVENTS_CHANNEL", defaults.stock_events_channel),
        dead_letter_key=env.get("DEAD_LETTER_KEY", defaults.dead_letter_key),
        storage_timeout=read_number(env, "STORAGE_TIMEOUT_SECONDS", defaults.storage_timeout, float),
        publish_timeout=read_number(env, "PUBLISH_TIMEOUT_SECONDS", defaults.publish_timeout, float),
        reserve_max_attempts=read_number(env, "RESERVE_MAX_ATTEMPTS", defaults.reserve_max_attempts, int),
        publish_max_attempts=read_number(env, "PUBLISH_MAX_ATTEMPTS", defaults.publish_max_attempts, int),
        publish_backoff=read_number(env, "PUBLISH_BACKOFF_SECONDS", defaults.publish_backoff, float),
        log_level=env.get("LOG_LEVEL", defaults.log_level).upper(),
    )
