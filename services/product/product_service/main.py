"""
Product Service — FastAPI エントリーポイント

商品の CRUD と、order.created を処理する在庫リコンサイラ。
Order Service は GET /products/{id} で商品の存在を確認する。
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from .consumer import run_consumer
from .store import SqlProductStore, create_schema

logger = logging.getLogger(__name__)


# ── Request Models ───────────────────────────────


class CreateProductRequest(BaseModel):
    name: str = Field(min_length=1)
    price: int = Field(ge=0)
    qty: int = Field(ge=0)


@asynccontextmanager
async def _run_service(app: FastAPI):
    """起動時に order.created コンシューマーをバックグラウンドタスクとして開始する。"""
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO"))
    engine = create_async_engine(os.environ["DATABASE_URL"], echo=False)
    await create_schema(engine)
    redis_pool = aioredis.from_url(
        os.environ.get("REDIS_URL", "redis://localhost:6379"), decode_responses=True
    )
    store = SqlProductStore(async_sessionmaker(engine, expire_on_commit=False))
    app.state.store = store

    shutdown_event = asyncio.Event()
    consumer_task = asyncio.create_task(run_consumer(redis_pool, store, shutdown_event))
    try:
        yield
    finally:
        shutdown_event.set()
        consumer_task.cancel()
        try:
            await consumer_task
        except asyncio.CancelledError:
            pass
        await redis_pool.aclose()
        await engine.dispose()


def create_app(store: SqlProductStore | None = None) -> FastAPI:
    """store を渡した場合はそれを使い、コンシューマーは起動しない (テスト用)。"""
    if store is None:
        lifespan = _run_service
    else:

        @asynccontextmanager
        async def lifespan(app: FastAPI):
            app.state.store = store
            yield

    app = FastAPI(title="Product Service", lifespan=lifespan)

    @app.get("/products/{product_id}")
    async def get_product(product_id: int):
        """商品を取得"""
        product = await app.state.store.get_product(product_id)
        if not product:
            raise HTTPException(404, f"Product {product_id} not found")
        return product

    @app.post("/products", status_code=201)
    async def create_product(req: CreateProductRequest):
        """商品を作成"""
        return await app.state.store.create_product(req.name, req.price, req.qty)

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "product-service"}

    return app


app = create_app()
