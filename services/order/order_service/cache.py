"""
Order Service — 多段キャッシュ

商品情報 (ProductCache):

  ┌────────────┐ miss ┌──────────────┐ miss ┌──────────────────┐
  │ LocalTier  │─────▶│ Redis (30ms) │─────▶│ 商品サービス(150ms)│
  │ プロセス内   │      │ 共有キャッシュ  │      │ 正データ           │
  └────────────┘      └──────────────┘      └──────────────────┘

  - local miss 以降は SingleFlight で合体し、同じ商品 ID の取得は
    プロセス内で同時に1本だけ走る。
  - 商品サービスから取得したら local には同期で、Redis には
    バックグラウンドで書く。Redis 書き込みの失敗はログのみ。
  - not found はキャッシュしない。
  - TTL は local ≤ Redis。下の段ほど古さを許容する。

注文一覧 (OrderListingCache):
  商品 ID ごとの注文一覧を Redis に短い TTL でキャッシュする。
  注文作成時は期限切れを待たずに削除する。
"""

import asyncio
import logging
import time
from collections import OrderedDict
from collections.abc import Callable, Hashable, Iterable
from typing import Any

import redis.asyncio as aioredis
from pydantic import TypeAdapter, ValidationError
from redis.exceptions import RedisError

from .concurrency import SingleFlight, TaskPool
from .domain import Order, ProductInfo
from .errors import OrderServiceError, ProductLookupError, ProductNotFound
from .product_client import ProductClient
from .stats import ServiceStats

logger = logging.getLogger(__name__)


class LocalTier:
    """プロセス内の TTL 付き LRU。書き込みは last write wins。"""

    def __init__(
        self,
        ttl: float,
        max_size: int = 10_000,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: OrderedDict[Hashable, tuple[Any, float]] = OrderedDict()

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: Hashable) -> Any | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        self._entries.move_to_end(key)
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._entries[key] = (value, self._clock() + self.ttl)
        self._entries.move_to_end(key)
        while len(self._entries) > self.max_size:
            self._entries.popitem(last=False)

    def delete(self, key: Hashable) -> bool:
        return self._entries.pop(key, None) is not None


class RedisProductTier:
    def __init__(self, redis: aioredis.Redis, ttl: float, prefix: str = "product:"):
        self.redis = redis
        self.ttl = ttl
        self.prefix = prefix

    def key(self, product_id: int) -> str:
        return f"{self.prefix}{product_id}"

    async def get(self, product_id: int) -> ProductInfo | None:
        raw = await self.redis.get(self.key(product_id))
        if raw is None:
            return None
        return ProductInfo.model_validate_json(raw)

    async def set(self, product: ProductInfo) -> None:
        await self.redis.set(
            self.key(product.id), product.model_dump_json(), px=int(self.ttl * 1000)
        )


class ProductCache:
    def __init__(
        self,
        client: ProductClient,
        local: LocalTier,
        remote: RedisProductTier | None = None,
        *,
        stats: ServiceStats | None = None,
        remote_timeout: float = 0.03,
        origin_timeout: float = 0.15,
        remote_write_timeout: float = 0.1,
        writer: TaskPool | None = None,
    ) -> None:
        if remote is not None and local.ttl > remote.ttl:
            raise ValueError(
                f"Local cache TTL ({local.ttl}s) must not exceed remote TTL ({remote.ttl}s)"
            )
        self.client = client
        self.local = local
        self.remote = remote
        self.stats = stats or ServiceStats()
        self.remote_timeout = remote_timeout
        self.origin_timeout = origin_timeout
        self.remote_write_timeout = remote_write_timeout
        self.writer = writer or TaskPool("cache-writer", workers=4, queue_size=1000)
        self._flight = SingleFlight()

    def start(self) -> None:
        self.writer.start()

    async def aclose(self) -> None:
        await self.writer.aclose()

    async def resolve(self, product_id: int) -> ProductInfo:
        """
        商品情報を返す。

        Raises:
            ProductNotFound: 商品サービスに存在しない
            ProductLookupTimeout: 商品サービスがタイムアウト
            ProductLookupError: 商品サービスのその他のエラー
        """
        cached = self.local.get(product_id)
        if cached is not None:
            self.stats.incr("cache_hits")
            return cached

        self.stats.incr("cache_misses")
        return await self._flight.do(product_id, lambda: self._fetch(product_id))

    async def _fetch(self, product_id: int) -> ProductInfo:
        # 合体待ちの間に別の取得が local を埋めている場合がある
        cached = self.local.get(product_id)
        if cached is not None:
            return cached

        product = await self._from_remote(product_id)
        if product is not None:
            self.local.set(product_id, product)
            return product

        product = await self.client.fetch(product_id, self.origin_timeout)
        if product is None:
            raise ProductNotFound(product_id)

        self.local.set(product_id, product)
        self._write_remote(product)
        return product

    async def _from_remote(self, product_id: int) -> ProductInfo | None:
        if self.remote is None:
            return None
        try:
            return await asyncio.wait_for(
                self.remote.get(product_id), self.remote_timeout
            )
        except asyncio.TimeoutError:
            logger.debug("Remote cache timeout for product %s", product_id)
        except (RedisError, ValidationError) as e:
            logger.warning("Remote cache read failed for product %s: %s", product_id, e)
        return None

    def _write_remote(self, product: ProductInfo) -> None:
        if self.remote is None:
            return
        remote = self.remote

        async def write() -> None:
            try:
                await asyncio.wait_for(remote.set(product), self.remote_write_timeout)
            except (asyncio.TimeoutError, RedisError) as e:
                logger.warning(
                    "Remote cache write failed for product %s: %r", product.id, e
                )

        if not self.writer.submit(write):
            logger.debug("Cache writer full, skipping remote write for %s", product.id)

    async def warmup(self, product_ids: Iterable[int], concurrency: int = 10) -> int:
        """起動時のキャッシュ暖機。成功した件数を返す。"""
        sem = asyncio.Semaphore(concurrency)

        async def warm(product_id: int) -> bool:
            async with sem:
                try:
                    await self.resolve(product_id)
                    return True
                except (OrderServiceError, ProductLookupError) as e:
                    logger.warning("Cache warmup failed for product %s: %s", product_id, e)
                    return False

        results = await asyncio.gather(*(warm(pid) for pid in product_ids))
        return sum(results)


_orders_adapter = TypeAdapter(list[Order])


class OrderListingCache:
    """
    Redis の各操作は timeout で打ち切る。読み取りのタイムアウトは miss、
    書き込みと削除のタイムアウトはログのみ。

    invalidate ごとに商品 ID の世代を進める。set に読み取り前の世代を渡すと、
    その間に invalidate があった場合は書き込まない。検出できるのは同一プロセス内の
    invalidate だけで、他のレプリカとの競合は ttl で収束する。
    """

    def __init__(
        self,
        redis: aioredis.Redis,
        ttl: float = 10.0,
        prefix: str = "orders:product:",
        timeout: float = 0.05,
    ):
        self.redis = redis
        self.ttl = ttl
        self.prefix = prefix
        self.timeout = timeout
        self._generations: dict[int, int] = {}

    def key(self, product_id: int) -> str:
        return f"{self.prefix}{product_id}"

    def generation(self, product_id: int) -> int:
        return self._generations.get(product_id, 0)

    async def get(self, product_id: int) -> list[Order] | None:
        try:
            raw = await asyncio.wait_for(self.redis.get(self.key(product_id)), self.timeout)
            if raw is None:
                return None
            return _orders_adapter.validate_json(raw)
        except asyncio.TimeoutError:
            logger.warning("Order listing cache read timed out for product %s", product_id)
            return None
        except (RedisError, ValidationError) as e:
            logger.warning("Order listing cache read failed for product %s: %s", product_id, e)
            return None

    async def set(
        self, product_id: int, orders: list[Order], generation: int | None = None
    ) -> bool:
        """一覧を書き込む。generation が古ければ書かずに False。"""
        if generation is not None and generation != self.generation(product_id):
            logger.debug("Order listing for product %s invalidated during read, skipping", product_id)
            return False
        try:
            await asyncio.wait_for(
                self.redis.set(
                    self.key(product_id),
                    _orders_adapter.dump_json(orders, by_alias=True),
                    px=int(self.ttl * 1000),
                ),
                self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Order listing cache write timed out for product %s", product_id)
            return False
        except RedisError as e:
            logger.warning("Order listing cache write failed for product %s: %s", product_id, e)
            return False
        return True

    async def invalidate(self, product_id: int) -> bool:
        self._generations[product_id] = self.generation(product_id) + 1
        try:
            await asyncio.wait_for(self.redis.delete(self.key(product_id)), self.timeout)
        except asyncio.TimeoutError:
            logger.warning("Order listing invalidation timed out for product %s", product_id)
            return False
        except RedisError as e:
            logger.warning("Order listing invalidation failed for product %s: %s", product_id, e)
            return False
        return True
