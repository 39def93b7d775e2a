"""
Order Service — 注文受付パイプライン (Admission Pipeline)

注文作成の流れ:

  1. アドミッションゲート   満杯なら即 ServiceOverloaded (バックプレッシャー)
  2. 商品検証 (200ms 期限)  多段キャッシュ → 商品サービス
  3. Order を pending で作成
  4. 永続化                DB ワーカープールのスロット内で INSERT
  5. 注文一覧キャッシュを削除
  6. OrderCreated を発行    イベント用プール (DB とは別) に投入するだけ。
                           満杯なら破棄してログ。呼び出し側には影響しない。

在庫の減算は商品サービスのリコンサイラが非同期に行い、
order.qty_confirmed / order.qty_failed で結果を返す (結果整合性)。
DB ワーカーとイベントワーカーは互いのスロットを共有しない。
"""

import asyncio
import logging
import time
from collections.abc import Awaitable
from dataclasses import asdict
from typing import Protocol, TypeVar

from .cache import OrderListingCache, ProductCache
from .concurrency import Bulkhead, SlotUnavailable, TaskPool
from .config import PipelineConfig
from .domain import Order, ProductInfo
from .errors import (
    InvalidOrder,
    OrderNotFound,
    PersistenceFailure,
    ProductLookupError,
    ProductLookupTimeout,
    ProductUnavailable,
    ProductValidationFailed,
    ServiceOverloaded,
    StageTimeout,
    ValidationTimeout,
)
from .events import Event, OrderCreated
from .stats import ServiceStats

logger = logging.getLogger(__name__)

T = TypeVar("T")


class OrderStore(Protocol):
    async def insert(self, order: Order) -> Order: ...

    async def get_by_id(self, order_id: int) -> Order | None: ...

    async def get_by_product_id(self, product_id: int) -> list[Order]: ...


class EventPublisher(Protocol):
    async def publish(self, topic: str, event: Event) -> object: ...


class OrderPipeline:
    def __init__(
        self,
        cache: ProductCache,
        store: OrderStore,
        publisher: EventPublisher,
        listing: OrderListingCache | None = None,
        config: PipelineConfig | None = None,
        stats: ServiceStats | None = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.cache = cache
        self.store = store
        self.publisher = publisher
        self.listing = listing
        self.stats = stats or cache.stats

        self.admission = Bulkhead(
            "admission", self.config.admission_capacity, self.config.admission_wait
        )
        self.db_pool = Bulkhead(
            "db-workers", self.config.db_workers, self.config.db_acquire_timeout
        )
        self.event_pool = TaskPool(
            "event-workers", self.config.event_workers, self.config.event_queue_size
        )

    def start(self) -> None:
        self.cache.start()
        self.event_pool.start()

    async def aclose(self) -> None:
        await self.event_pool.aclose()
        await self.cache.aclose()

    # ── Command: 注文作成 ─────────────────────────

    async def create_order(self, product_id: int, total_price: int) -> Order:
        """
        注文を受け付けて永続化した Order (status=pending) を返す。

        Raises:
            InvalidOrder, ServiceOverloaded, ProductNotFound, ProductUnavailable,
            ValidationTimeout, ProductValidationFailed, PersistenceFailure
        """
        if total_price < 0:
            raise InvalidOrder("total_price must be >= 0")

        start = time.perf_counter()
        self.stats.incr("total_requests")
        succeeded = False
        try:
            order = await self._admit(product_id, total_price)
            succeeded = True
        finally:
            self.stats.incr("successful_orders" if succeeded else "failed_orders")

        self._schedule_publish(order)

        elapsed = time.perf_counter() - start
        if elapsed > self.config.slow_order_threshold:
            logger.warning("Slow order creation: %.3fs for order %s", elapsed, order.id)
        return order

    async def _admit(self, product_id: int, total_price: int) -> Order:
        try:
            await self.admission.acquire()
        except SlotUnavailable as e:
            raise ServiceOverloaded("Admission queue is full") from e
        try:
            await self._validate(product_id)
            order = await self._persist(Order.pending(product_id, total_price))
            await self._invalidate_listing(product_id)
            return order
        finally:
            self.admission.release()

    async def _validate(self, product_id: int) -> ProductInfo:
        timeout = self.config.validation_timeout
        try:
            product = await asyncio.wait_for(self.cache.resolve(product_id), timeout)
        except (asyncio.TimeoutError, ProductLookupTimeout) as e:
            raise ValidationTimeout(timeout) from e
        except ProductLookupError as e:
            raise ProductValidationFailed(f"Product validation failed: {e}") from e

        # qty=0 の扱いは設定次第。既定ではリコンサイラに任せる
        if self.config.reject_out_of_stock and not product.in_stock:
            raise ProductUnavailable(product_id)
        return product

    async def _persist(self, order: Order) -> Order:
        try:
            await self.db_pool.acquire()
        except SlotUnavailable as e:
            raise ServiceOverloaded("Database worker pool exhausted") from e
        # 期限切れでも INSERT は止めない (commit 済みかもしれない)。
        # スロットの解放と発行は _finish_late_insert が引き継ぐ
        insert = asyncio.ensure_future(self.store.insert(order))
        try:
            saved = await asyncio.wait_for(
                asyncio.shield(insert), self.config.persist_timeout
            )
        except asyncio.TimeoutError as e:
            insert.add_done_callback(self._finish_late_insert)
            raise PersistenceFailure(
                f"Failed to save order: timed out after {self.config.persist_timeout:.3f}s"
            ) from e
        except asyncio.CancelledError:
            insert.add_done_callback(self._finish_late_insert)
            raise
        except Exception as e:
            self.db_pool.release()
            raise PersistenceFailure(f"Failed to save order: {e}") from e
        self.db_pool.release()

        if not saved.id:
            raise PersistenceFailure("Order saved but ID not assigned")
        return saved

    def _finish_late_insert(self, insert: "asyncio.Future[Order]") -> None:
        self.db_pool.release()
        if insert.cancelled():
            return
        if insert.exception() is not None:
            logger.warning("Late insert failed: %r", insert.exception())
            return
        saved = insert.result()
        if saved.id:
            logger.warning(
                "Order %s committed after the persist deadline, publishing anyway", saved.id
            )
            self._schedule_publish(saved)

    async def _invalidate_listing(self, product_id: int) -> None:
        if self.listing is None:
            return
        try:
            await asyncio.wait_for(
                self.listing.invalidate(product_id), self.config.invalidate_timeout
            )
        except asyncio.TimeoutError:
            logger.warning("Order listing invalidation timed out for product %s", product_id)

    def _schedule_publish(self, order: Order) -> None:
        event = OrderCreated.from_order(order)

        async def publish() -> None:
            try:
                await asyncio.wait_for(
                    self.publisher.publish(event.topic, event),
                    self.config.publish_timeout,
                )
            except Exception as e:
                self.stats.incr("events_failed")
                logger.warning("Failed to publish event for order %s: %r", order.id, e)
            else:
                self.stats.incr("events_published")

        if not self.event_pool.submit(publish):
            self.stats.incr("events_dropped")
            logger.warning("Event worker pool full, skipping event for order %s", order.id)

    # ── Query: 注文取得 ───────────────────────────

    async def get_order(self, order_id: int) -> Order:
        order = await self._with_deadline(
            "get order", self.store.get_by_id(order_id), self.config.read_timeout_by_id
        )
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found")
        return order

    async def get_orders_by_product(self, product_id: int) -> list[Order]:
        """キャッシュの読み書きを含めて read_timeout_by_product で打ち切る。"""
        return await self._with_deadline(
            "list orders by product",
            self._list_orders_by_product(product_id),
            self.config.read_timeout_by_product,
        )

    async def _list_orders_by_product(self, product_id: int) -> list[Order]:
        generation = None
        if self.listing is not None:
            cached = await self.listing.get(product_id)
            if cached:
                return cached
            generation = self.listing.generation(product_id)

        orders = await self.store.get_by_product_id(product_id)
        if not orders:
            raise OrderNotFound(f"No orders for product {product_id}")

        if self.listing is not None:
            await self.listing.set(product_id, orders, generation=generation)
        return orders

    @staticmethod
    async def _with_deadline(stage: str, aw: Awaitable[T], timeout: float) -> T:
        try:
            return await asyncio.wait_for(aw, timeout)
        except asyncio.TimeoutError as e:
            raise StageTimeout(stage, timeout) from e

    # ── 統計 ──────────────────────────────────────

    def service_stats(self) -> dict:
        snap = self.stats.snapshot()
        return {
            **asdict(snap),
            "success_rate": snap.success_rate,
            "cache_hit_rate": snap.cache_hit_rate,
            "admission_usage": self.admission.usage,
            "db_pool_usage": self.db_pool.usage,
            "event_pool_usage": self.event_pool.usage,
        }

    def log_stats(self) -> None:
        snap = self.stats.snapshot()
        if not snap.total_requests:
            return
        logger.info(
            "OrderService: Total=%d, Success=%.1f%%, Failed=%d, Cache=%.1f%%, "
            "DBPool=%d/%d, EventPool=%.1f%%, Dropped=%d",
            snap.total_requests,
            snap.success_rate,
            snap.failed_orders,
            snap.cache_hit_rate,
            self.db_pool.in_use,
            self.db_pool.capacity,
            self.event_pool.usage,
            snap.events_dropped,
        )
