"""
Order Service: FastAPI entry point

HTTP surface of the order workflow. Components are built once in the
lifespan and handed to the endpoints through dependency functions, so
tests can swap them with ``app.dependency_overrides``.
"""

import logging
from contextlib import aclosing, asynccontextmanager
from datetime import datetime

import redis.asyncio as aioredis
from fastapi import Depends, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, StrictInt
from pydantic.alias_generators import to_camel

from .config import load_settings
from .customers import CustomerDirectory
from .db import create_engine, create_schema, create_session_factory
from .errors import OrderWorkflowError, ProductNotFound
from .models import Order, OrderStatus
from .order_store import OrderFilter, OrderStore
from .orchestrator import OrderWorkflow, RetryPolicy
from .publisher import NotificationPublisher, RedisErrorSink, RedisStreamTransport
from .stock_ledger import StockLedger

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = load_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )

    engine = create_engine(settings.database_url)
    await create_schema(engine)
    sessions = create_session_factory(engine)
    redis_pool = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.publish_timeout,
        socket_connect_timeout=settings.publish_timeout,
    )

    ledger = StockLedger(
        sessions,
        max_attempts=settings.reserve_max_attempts,
        timeout=settings.storage_timeout,
    )
    transport = RedisStreamTransport(redis_pool)
    error_sink = RedisErrorSink(
        redis_pool, settings.dead_letter_key, timeout=settings.publish_timeout
    )

    app.state.ledger = ledger
    app.state.transport = transport
    app.state.error_sink = error_sink
    app.state.workflow = OrderWorkflow(
        CustomerDirectory(sessions, timeout=settings.storage_timeout),
        ledger,
        OrderStore(sessions, timeout=settings.storage_timeout),
        NotificationPublisher(transport, timeout=settings.publish_timeout),
        error_sink,
        order_channel=settings.order_events_channel,
        stock_channel=settings.stock_events_channel,
        retry=RetryPolicy(
            attempts=settings.publish_max_attempts,
            backoff=settings.publish_backoff,
        ),
    )
    logger.info("Order service started")
    yield
    await ledger.settle(timeout=settings.storage_timeout)
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Order Service", lifespan=lifespan)


# ── Dependencies ─────────────────────────────────


def get_workflow(request: Request) -> OrderWorkflow:
    return request.app.state.workflow


def get_ledger(request: Request) -> StockLedger:
    return request.app.state.ledger


def get_error_sink(request: Request) -> RedisErrorSink:
    return request.app.state.error_sink


def get_transport(request: Request) -> RedisStreamTransport:
    return request.app.state.transport


# ── Error mapping ────────────────────────────────


@app.exception_handler(OrderWorkflowError)
async def workflow_error_handler(request: Request, exc: OrderWorkflowError):
    headers = {"Retry-After": "1"} if exc.retryable else None
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={
            "error": "validation_error",
            "message": "Request body or parameters are malformed",
            "detail": jsonable_encoder(exc.errors()),
        },
    )


# ── Request Models ───────────────────────────────


class _Body(BaseModel):
    model_config = ConfigDict(extra="forbid", alias_generator=to_camel)


class CreateOrderRequest(_Body):
    customer_id: str = Field(min_length=1)
    product_id: str = Field(min_length=1)
    quantity: StrictInt


class UpdateStatusRequest(_Body):
    status: OrderStatus


def _render(order: Order) -> dict:
    return order.model_dump(mode="json", by_alias=True)


# ── Order Endpoints ──────────────────────────────


@app.post("/orders", status_code=201)
async def create_order(
    req: CreateOrderRequest, workflow: OrderWorkflow = Depends(get_workflow)
):
    order = await workflow.create_order(req.customer_id, req.product_id, req.quantity)
    return _render(order)


@app.patch("/orders/{order_id}/status")
async def update_order_status(
    order_id: str,
    req: UpdateStatusRequest,
    workflow: OrderWorkflow = Depends(get_workflow),
):
    order = await workflow.update_order_status(order_id, req.status)
    return _render(order)


@app.get("/orders")
async def list_orders(
    customer_id: str | None = Query(None, alias="customerId"),
    status: OrderStatus | None = Query(None),
    created_from: datetime | None = Query(None, alias="createdFrom"),
    created_to: datetime | None = Query(None, alias="createdTo"),
    limit: int = Query(100, ge=1, le=500),
    workflow: OrderWorkflow = Depends(get_workflow),
):
    order_filter = OrderFilter(
        customer_id=customer_id,
        status=status,
        created_from=created_from,
        created_to=created_to,
    )
    items = []
    async with aclosing(workflow.list_orders(order_filter)) as orders:
        async for order in orders:
            items.append(_render(order))
            if len(items) >= limit:
                break
    return items


@app.get("/orders/{order_id}")
async def get_order(order_id: str, workflow: OrderWorkflow = Depends(get_workflow)):
    return _render(await workflow.get_order(order_id))


@app.get("/orders/{order_id}/history")
async def get_order_history(order_id: str, workflow: OrderWorkflow = Depends(get_workflow)):
    await workflow.get_order(order_id)
    changes = await workflow.orders.history(order_id)
    return [change.model_dump(mode="json", by_alias=True) for change in changes]


# ── Stock / Operations ───────────────────────────


@app.get("/products/{product_id}")
async def get_product(product_id: str, ledger: StockLedger = Depends(get_ledger)):
    product = await ledger.get_product(product_id)
    if product is None:
        raise ProductNotFound(product_id)
    return product.model_dump(mode="json", by_alias=True)


@app.post("/notifications/replay")
async def replay_notifications(
    limit: int = Query(100, ge=1, le=1000),
    error_sink: RedisErrorSink = Depends(get_error_sink),
    transport: RedisStreamTransport = Depends(get_transport),
):
    replayed = await error_sink.replay(transport, limit)
    return {"replayed": replayed}


@app.get("/health")
async def health():
    return {"status": "ok", "service": "order-service"}
