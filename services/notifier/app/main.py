"""
Notifier Service: FastAPI entry point

Downstream consumer of the order service's notification channels. The
subscriber runs as a background task for the lifetime of the app.

┌───────────────┐  order-events   ┌──────────────────┐
│ Order Service │ ──── Redis ───▶ │ Notifier Service │
│               │  stock-events   │ (consumer group) │
└───────────────┘    Streams      └──────────────────┘
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .config import load_settings
from .subscriber import run_subscriber


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the stream subscriber as a background task."""
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    shutdown_event = asyncio.Event()
    subscriber_task = asyncio.create_task(
        run_subscriber(
            settings.redis_url,
            settings.streams,
            settings.group,
            settings.consumer,
            shutdown_event,
            processed_ttl=settings.processed_ttl,
            pending_retry_interval=settings.pending_retry_interval,
        )
    )
    yield
    shutdown_event.set()
    subscriber_task.cancel()
    try:
        await subscriber_task
    except asyncio.CancelledError:
        pass


app = FastAPI(title="Notifier Service", lifespan=lifespan)


@app.get("/health")
async def health():
    return {"status": "ok", "service": "notifier-service"}
