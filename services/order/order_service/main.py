"""
Order Service — FastAPI エントリーポイント

注文の作成 (POST) と取得 (GET) を公開する。HTTP 層は薄く、
受付・検証・永続化・イベント発行はすべて OrderPipeline が行う。

起動時に次のバックグラウンドタスクを開始する:
  - 在庫結果サブスクライバー (order.qty_confirmed / order.qty_failed)
  - 商品キャッシュの暖機 (PRODUCT_WARMUP_IDS)
  - 統計ログ (STATS_LOG_INTERVAL 秒ごと)
"""

import asyncio
import logging
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from .cache import LocalTier, OrderListingCache, ProductCache, RedisProductTier
from .config import Settings
from .domain import Order
from .errors import OrderServiceError, ServiceOverloaded
from .pipeline import OrderPipeline
from .product_client import ProductClient
from .publisher import RedisEventPublisher
from .stats import ServiceStats
from .store import SqlOrderStore, create_schema
from .subscriber import run_subscriber

logger = logging.getLogger(__name__)


# ── Request / Response Models ────────────────────


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    product_id: int = Field(gt=0)
    total_price: int = Field(ge=0)


class CreateOrderResponse(BaseModel):
    id: int
    status: str


# ── Lifespan ─────────────────────────────────────


async def _log_stats_forever(pipeline: OrderPipeline, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        pipeline.log_stats()


async def _warmup(cache: ProductCache, product_ids: tuple[int, ...]) -> None:
    warmed = await cache.warmup(product_ids)
    logger.info("Cache warmed up: %d/%d products", warmed, len(product_ids))


@asynccontextmanager
async def _run_service(app: FastAPI):
    settings = Settings.from_env()
    logging.basicConfig(level=settings.log_level)

    engine = create_async_engine(settings.database_url, echo=False)
    await create_schema(engine)
    session_factory = async_sessionmaker(engine, expire_on_commit=False)
    redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)

    stats = ServiceStats()
    store = SqlOrderStore(session_factory)
    listing = OrderListingCache(
        redis_pool, ttl=settings.order_list_ttl, timeout=settings.listing_cache_timeout
    )
    product_client = ProductClient(settings.product_service_url)
    cache = ProductCache(
        product_client,
        LocalTier(ttl=settings.local_cache_ttl),
        RedisProductTier(redis_pool, ttl=settings.remote_cache_ttl),
        stats=stats,
        remote_timeout=settings.remote_cache_timeout,
        origin_timeout=settings.origin_timeout,
    )
    pipeline = OrderPipeline(
        cache,
        store,
        RedisEventPublisher(redis_pool),
        listing=listing,
        config=settings.pipeline,
        stats=stats,
    )
    pipeline.start()
    app.state.pipeline = pipeline

    shutdown_event = asyncio.Event()
    tasks = [
        asyncio.create_task(run_subscriber(redis_pool, store, listing, shutdown_event)),
        asyncio.create_task(_log_stats_forever(pipeline, settings.stats_log_interval)),
    ]
    if settings.warmup_product_ids:
        tasks.append(asyncio.create_task(_warmup(cache, settings.warmup_product_ids)))

    logger.info(
        "Order service started: db_workers=%d event_workers=%d admission=%d",
        settings.pipeline.db_workers,
        settings.pipeline.event_workers,
        settings.pipeline.admission_capacity,
    )
    try:
        yield
    finally:
        shutdown_event.set()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        await pipeline.aclose()
        await product_client.aclose()
        await redis_pool.aclose()
        await engine.dispose()


def create_app(pipeline: OrderPipeline | None = None) -> FastAPI:
    """pipeline を渡した場合はインフラを組み立てずにそれを使う (テスト用)。"""
    if pipeline is None:
        lifespan = _run_service
    else:

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            app.state.pipeline = pipeline
            yield

    app = FastAPI(title="Order Service", lifespan=lifespan)

    @app.exception_handler(OrderServiceError)
    async def handle_service_error(request: Request, exc: OrderServiceError):
        headers = {"Retry-After": "1"} if isinstance(exc, ServiceOverloaded) else None
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": exc.code, "detail": str(exc)},
            headers=headers,
        )

    # ── Command Endpoints ────────────────────────

    @app.post("/orders", status_code=201, response_model=CreateOrderResponse)
    async def create_order(req: CreateOrderRequest, request: Request):
        """注文作成"""
        order = await request.app.state.pipeline.create_order(
            req.product_id, req.total_price
        )
        return CreateOrderResponse(id=order.id, status=order.status.value)

    # ── Query Endpoints ──────────────────────────

    @app.get("/orders/product/{product_id}", response_model=list[Order])
    async def get_orders_by_product(product_id: int, request: Request):
        """商品ごとの注文一覧"""
        return await request.app.state.pipeline.get_orders_by_product(product_id)

    @app.get("/orders/{order_id}", response_model=Order)
    async def get_order(order_id: int, request: Request):
        """指定注文を取得"""
        return await request.app.state.pipeline.get_order(order_id)

    @app.get("/health")
    async def health(request: Request):
        return {
            "status": "ok",
            "service": "order-service",
            "stats": request.app.state.pipeline.service_stats(),
        }

    return app


app = create_app()
