"""
Order Intake: FastAPI エントリーポイント

起動時にすべての依存 (DB / Redis / ブローカー / 下流クライアント) を組み立て、
キューディスパッチャを開始する。停止時はワーカーを合流させてから接続を閉じる。

  ┌────────┐ POST /orders ┌──────────────┐ order.created.q ┌──────────┐
  │ Client │ ───────────▶ │ Orchestrator │ ──────────────▶ │ order-gw │
  └────────┘              └──────┬───────┘  (Dispatcher)   └────┬─────┘
                                 │                              │
                            ┌────▼────┐                         │
                            │ orders  │ ◀── Reconciler ◀────────┘
                            └─────────┘   order.status.changed
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Callable

import redis.asyncio as aioredis
from fastapi import FastAPI, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from . import queries
from .broker import RedisStreamBroker
from .cache import RedisStatusCache
from .commands import OrderIntakeOrchestrator
from .config import Settings
from .dispatcher import Dispatcher
from .errors import (
    DuplicateError,
    NotFoundError,
    OrderIntakeError,
    TransientInfrastructureError,
    ValidationError,
)
from .events import OrderCreated, OrderStatusChanged
from .gateway import OrderGatewayClient
from .handlers import JSONHandler, OrderCreatedHandler
from .idempotency import RedisIdempotencyStore
from .publisher import EventPublisher
from .reconciler import StatusReconciler
from .store import SQLOrderStore, init_schema, make_session_factory

logger = logging.getLogger(__name__)


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )


# ── 依存の組み立て ───────────────────────────────


@dataclass
class Container:
    settings: Settings
    engine: AsyncEngine
    redis: aioredis.Redis
    stream_redis: aioredis.Redis
    store: SQLOrderStore
    cache: RedisStatusCache
    broker: RedisStreamBroker
    gateway: OrderGatewayClient
    orchestrator: OrderIntakeOrchestrator
    dispatcher: Dispatcher

    async def startup(self) -> None:
        await init_schema(self.engine)
        for queue in self.dispatcher.queues:
            await self.broker.ensure_group(queue)
        self.dispatcher.start()

    async def shutdown(self) -> None:
        await self.dispatcher.stop()
        await self.gateway.aclose()
        await self.stream_redis.aclose()
        await self.redis.aclose()
        await self.engine.dispose()


def build_container(settings: Settings) -> Container:
    engine = create_async_engine(settings.database_url, echo=False, pool_pre_ping=True)
    redis = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
        socket_timeout=settings.redis_socket_timeout_seconds,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
    )
    # ストリームはエントリごとにデコードする
    stream_redis = aioredis.from_url(
        settings.redis_url,
        decode_responses=False,
        socket_timeout=settings.redis_socket_timeout_seconds,
        socket_connect_timeout=settings.redis_socket_timeout_seconds,
    )

    store = SQLOrderStore(make_session_factory(engine))
    cache = RedisStatusCache(redis, settings.status_cache_ttl_seconds)
    idempotency = RedisIdempotencyStore(
        redis,
        ttl_seconds=settings.idempotency_ttl_seconds,
        lock_ttl_seconds=settings.idempotency_lock_ttl_seconds,
    )
    broker = RedisStreamBroker(stream_redis, settings.consumer_group, settings.consumer_name)
    publisher = EventPublisher(broker, settings.created_queue)
    gateway = OrderGatewayClient(
        settings.order_gateway_url, timeout=settings.gateway_timeout_seconds
    )

    orchestrator = OrderIntakeOrchestrator(store, idempotency, publisher, cache)
    reconciler = StatusReconciler(store, cache)

    dispatcher = Dispatcher(
        broker,
        prefetch=settings.dispatch_prefetch,
        call_timeout=settings.handler_timeout_seconds,
        requeue_on_error=settings.dispatch_requeue_on_error,
    )
    dispatcher.register(
        settings.created_queue,
        JSONHandler(OrderCreated, OrderCreatedHandler(gateway).handle),
    )
    dispatcher.register(
        settings.status_queue,
        JSONHandler(OrderStatusChanged, reconciler.handle),
    )

    return Container(
        settings=settings,
        engine=engine,
        redis=redis,
        stream_redis=stream_redis,
        store=store,
        cache=cache,
        broker=broker,
        gateway=gateway,
        orchestrator=orchestrator,
        dispatcher=dispatcher,
    )


def _default_container() -> Container:
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    return build_container(settings)


# ── Request / Response Models ────────────────────


class Amount(BaseModel):
    cents: int = Field(gt=0)
    currency: str = Field(min_length=1)


class CreateOrderRequest(BaseModel):
    userId: str = Field(min_length=1)
    amount: Amount
    items: str = Field(min_length=1)


class CreateOrderResponse(BaseModel):
    orderId: str
    status: str


# ── App ──────────────────────────────────────────


def create_app(container_factory: Callable[[], Container] = _default_container) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        container = container_factory()
        await container.startup()
        app.state.container = container
        logger.info("order-intake: started")
        yield
        await container.shutdown()
        logger.info("order-intake: stopped")

    app = FastAPI(title="Order Intake Service", lifespan=lifespan)

    @app.exception_handler(RequestValidationError)
    async def bad_request(_request: Request, _exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"error": "bad_request"})

    @app.exception_handler(ValidationError)
    async def invalid(_request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"error": str(exc)})

    @app.exception_handler(DuplicateError)
    async def conflict(_request: Request, _exc: DuplicateError):
        return JSONResponse(status_code=409, content={"error": "duplicate_request"})

    @app.exception_handler(NotFoundError)
    async def not_found(_request: Request, _exc: NotFoundError):
        return JSONResponse(status_code=404, content={"error": "not_found"})

    @app.exception_handler(OrderIntakeError)
    async def internal(request: Request, exc: OrderIntakeError):
        logger.error("Request %s %s failed: %r", request.method, request.url.path, exc)
        return JSONResponse(status_code=500, content={"error": "internal_error"})

    @app.post("/orders", status_code=202, response_model=CreateOrderResponse)
    async def create_order(
        req: CreateOrderRequest,
        request: Request,
        x_idempotency_key: str | None = Header(default=None),
    ):
        """注文作成。X-Idempotency-Key ヘッダで再試行を冪等にする。"""
        container = request.app.state.container
        try:
            async with asyncio.timeout(container.settings.request_timeout_seconds):
                result = await container.orchestrator.create_order(
                    user_id=req.userId,
                    idempotency_key=x_idempotency_key,
                    amount_cents=req.amount.cents,
                    currency=req.amount.currency,
                    items=req.items,
                )
        except TimeoutError as e:
            raise TransientInfrastructureError("create_order timed out") from e
        return CreateOrderResponse(orderId=result.order_id, status=result.status)

    @app.get("/orders/{order_id}")
    async def get_order(order_id: str, request: Request):
        container = request.app.state.container
        return await queries.get_order(container.store, order_id)

    @app.get("/orders/{order_id}/status")
    async def get_order_status(order_id: str, request: Request):
        container = request.app.state.container
        status = await queries.get_order_status(container.store, container.cache, order_id)
        return {"orderId": order_id, "status": status}

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "order-intake"}

    return app


app = create_app()
