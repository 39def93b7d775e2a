import asyncio
import itertools
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from order_service.cache import LocalTier, ProductCache
from order_service.config import PipelineConfig
from order_service.domain import Order, ProductInfo
from order_service.pipeline import OrderPipeline
from order_service.stats import ServiceStats
from order_service.store import SqlOrderStore, create_schema


class FakeProductClient:
    """ProductClient の代わり。呼び出し回数を記録する。"""

    def __init__(self, products=(), delay: float = 0.0):
        self.products = {p.id: p for p in products}
        self.delay = delay
        self.error: Exception | None = None
        self.gate: asyncio.Event | None = None
        self.called = asyncio.Event()
        self.calls: list[int] = []

    async def fetch(self, product_id: int, timeout: float) -> ProductInfo | None:
        self.calls.append(product_id)
        self.called.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.products.get(product_id)


class InMemoryOrderStore:
    def __init__(self):
        self.orders: dict[int, Order] = {}
        self._ids = itertools.count(1)
        self.insert_calls = 0
        self.gate: asyncio.Event | None = None
        self.insert_started = asyncio.Event()

    async def insert(self, order: Order) -> Order:
        self.insert_calls += 1
        self.insert_started.set()
        if self.gate is not None:
            await self.gate.wait()
        saved = order.with_id(next(self._ids))
        self.orders[saved.id] = saved
        return saved

    async def get_by_id(self, order_id: int) -> Order | None:
        return self.orders.get(order_id)

    async def get_by_product_id(self, product_id: int) -> list[Order]:
        return sorted(
            (o for o in self.orders.values() if o.product_id == product_id),
            key=lambda o: o.created_at,
            reverse=True,
        )


@pytest.fixture
def product():
    return ProductInfo(id=1, name="Keyboard", price=1500, qty=5)


@pytest.fixture
def product_client(product):
    return FakeProductClient(
        [product, ProductInfo(id=2, name="Sold out", price=800, qty=0)]
    )


@pytest.fixture
def order_store():
    return InMemoryOrderStore()


@pytest.fixture
def publisher():
    pub = AsyncMock()
    pub.publish = AsyncMock(return_value=1)
    return pub


@pytest_asyncio.fixture
async def make_pipeline(product_client, order_store, publisher):
    pipelines: list[OrderPipeline] = []

    def factory(
        client=None, store=None, pub=None, listing=None, **config
    ) -> OrderPipeline:
        stats = ServiceStats()
        cache = ProductCache(client or product_client, LocalTier(ttl=30.0), stats=stats)
        pipeline = OrderPipeline(
            cache,
            store or order_store,
            pub or publisher,
            listing=listing,
            config=PipelineConfig(**{"validation_timeout": 1.0, **config}),
            stats=stats,
        )
        pipeline.start()
        pipelines.append(pipeline)
        return pipeline

    yield factory

    for pipeline in pipelines:
        await pipeline.aclose()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:", poolclass=StaticPool, echo=False
    )
    await create_schema(engine)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest.fixture
def sql_store(session_factory):
    return SqlOrderStore(session_factory)
