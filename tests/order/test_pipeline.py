"""OrderPipeline の受付・検証・永続化・発行のテスト。"""

import asyncio
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from order_service.cache import OrderListingCache
from order_service.domain import Order, OrderStatus
from order_service.errors import (
    InvalidOrder,
    OrderNotFound,
    PersistenceFailure,
    ProductLookupError,
    ProductLookupTimeout,
    ProductNotFound,
    ProductUnavailable,
    ProductValidationFailed,
    ServiceOverloaded,
    StageTimeout,
    ValidationTimeout,
)
from order_service.events import ORDER_CREATED, OrderCreated

from .conftest import FakeProductClient


async def hang(*args, **kwargs):
    await asyncio.sleep(3)


async def wait_until(predicate):
    while not predicate():
        await asyncio.sleep(0.01)


class TestCreateOrder:
    @pytest.mark.asyncio
    async def test_creates_pending_order(self, make_pipeline):
        pipeline = make_pipeline()
        before = datetime.now(timezone.utc)

        order = await pipeline.create_order(1, 1500)

        assert order.id and order.id > 0
        assert order.product_id == 1
        assert order.total_price == 1500
        assert order.status is OrderStatus.PENDING
        assert before <= order.created_at <= datetime.now(timezone.utc) + timedelta(seconds=1)

    @pytest.mark.asyncio
    async def test_out_of_stock_product_is_deferred_to_reconciler(
        self, make_pipeline, order_store
    ):
        pipeline = make_pipeline()

        order = await pipeline.create_order(2, 800)

        assert order.status is OrderStatus.PENDING
        assert order_store.insert_calls == 1

    @pytest.mark.asyncio
    async def test_out_of_stock_rejected_when_configured(self, make_pipeline, order_store):
        pipeline = make_pipeline(reject_out_of_stock=True)

        with pytest.raises(ProductUnavailable):
            await pipeline.create_order(2, 800)
        assert order_store.insert_calls == 0

    @pytest.mark.asyncio
    async def test_unknown_product_is_not_persisted(self, make_pipeline, order_store, publisher):
        pipeline = make_pipeline()

        with pytest.raises(ProductNotFound):
            await pipeline.create_order(999, 1000)

        assert order_store.insert_calls == 0
        await pipeline.event_pool.join()
        publisher.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_negative_price_is_rejected(self, make_pipeline, order_store):
        pipeline = make_pipeline()

        with pytest.raises(InvalidOrder):
            await pipeline.create_order(1, -1)
        assert order_store.insert_calls == 0

    @pytest.mark.asyncio
    async def test_concurrent_orders_share_one_origin_lookup(self, make_pipeline, product):
        client = FakeProductClient([product], delay=0.02)
        pipeline = make_pipeline(client=client)

        orders = await asyncio.gather(
            pipeline.create_order(1, 100), pipeline.create_order(1, 200)
        )

        assert client.calls == [1]
        assert {o.total_price for o in orders} == {100, 200}
        assert orders[0].id != orders[1].id

    @pytest.mark.asyncio
    async def test_publishes_order_created_once(self, make_pipeline, publisher):
        pipeline = make_pipeline()

        order = await pipeline.create_order(1, 1500)
        await pipeline.event_pool.join()

        publisher.publish.assert_awaited_once()
        topic, event = publisher.publish.await_args.args
        assert topic == ORDER_CREATED
        assert isinstance(event, OrderCreated)
        assert event.order_id == order.id
        assert event.product_id == 1
        assert event.total_price == 1500
        assert pipeline.stats.snapshot().events_published == 1

    @pytest.mark.asyncio
    async def test_publish_failure_does_not_fail_order(self, make_pipeline, publisher):
        publisher.publish.side_effect = ConnectionError("broker down")
        pipeline = make_pipeline()

        order = await pipeline.create_order(1, 1500)
        await pipeline.event_pool.join()

        assert order.id
        assert pipeline.stats.snapshot().events_failed == 1

    @pytest.mark.asyncio
    async def test_saturated_event_pool_drops_events(self, make_pipeline, publisher):
        gate = asyncio.Event()

        async def blocked_publish(topic, event):
            await gate.wait()

        publisher.publish.side_effect = blocked_publish
        pipeline = make_pipeline(event_workers=1, event_queue_size=1)

        orders = [await pipeline.create_order(1, 100) for _ in range(3)]

        assert all(o.id for o in orders)
        assert pipeline.stats.snapshot().events_dropped >= 1
        gate.set()

    @pytest.mark.asyncio
    async def test_invalidates_product_listing_before_returning(self, make_pipeline):
        listing = MagicMock(spec=OrderListingCache)
        listing.invalidate = AsyncMock(return_value=True)
        pipeline = make_pipeline(listing=listing)

        await pipeline.create_order(1, 1500)

        listing.invalidate.assert_awaited_once_with(1)

    @pytest.mark.asyncio
    async def test_stalled_listing_invalidation_is_bounded(self, make_pipeline):
        listing = MagicMock(spec=OrderListingCache)
        listing.invalidate = AsyncMock(side_effect=hang)
        pipeline = make_pipeline(listing=listing, invalidate_timeout=0.05)

        start = time.perf_counter()
        order = await pipeline.create_order(1, 1500)

        assert order.id
        assert time.perf_counter() - start < 1.0
        assert pipeline.admission.in_use == 0
        assert pipeline.stats.snapshot().successful_orders == 1


class TestAdmissionControl:
    @pytest.mark.asyncio
    async def test_full_admission_queue_rejects_immediately(self, make_pipeline, product):
        client = FakeProductClient([product])
        client.gate = asyncio.Event()
        pipeline = make_pipeline(client=client, admission_capacity=1, validation_timeout=5.0)

        first = asyncio.create_task(pipeline.create_order(1, 100))
        await client.called.wait()

        with pytest.raises(ServiceOverloaded):
            await asyncio.wait_for(pipeline.create_order(1, 200), 0.5)

        client.gate.set()
        assert (await first).id
        assert pipeline.admission.in_use == 0

    @pytest.mark.asyncio
    async def test_db_pool_acquire_timeout(self, make_pipeline, order_store):
        order_store.gate = asyncio.Event()
        pipeline = make_pipeline(db_workers=1, db_acquire_timeout=0.01)
        await pipeline.cache.resolve(1)

        first = asyncio.create_task(pipeline.create_order(1, 100))
        await order_store.insert_started.wait()

        with pytest.raises(ServiceOverloaded):
            await pipeline.create_order(1, 200)

        order_store.gate.set()
        assert (await first).id
        assert pipeline.db_pool.in_use == 0

    @pytest.mark.asyncio
    async def test_cancellation_releases_admission_slot(self, make_pipeline, product):
        client = FakeProductClient([product])
        client.gate = asyncio.Event()
        pipeline = make_pipeline(client=client, validation_timeout=5.0)

        task = asyncio.create_task(pipeline.create_order(1, 100))
        await client.called.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task
        assert pipeline.admission.in_use == 0
        assert pipeline.stats.snapshot().failed_orders == 1
        client.gate.set()


class TestValidationFailures:
    @pytest.mark.asyncio
    async def test_validation_deadline(self, make_pipeline, product, order_store):
        client = FakeProductClient([product], delay=1.0)
        pipeline = make_pipeline(client=client, validation_timeout=0.05)

        with pytest.raises(ValidationTimeout):
            await pipeline.create_order(1, 100)
        assert order_store.insert_calls == 0

    @pytest.mark.asyncio
    async def test_origin_timeout_is_validation_timeout(self, make_pipeline, product_client):
        product_client.error = ProductLookupTimeout("slow")
        pipeline = make_pipeline()

        with pytest.raises(ValidationTimeout):
            await pipeline.create_order(1, 100)

    @pytest.mark.asyncio
    async def test_origin_error_is_validation_failure(self, make_pipeline, product_client):
        product_client.error = ProductLookupError("status 500")
        pipeline = make_pipeline()

        with pytest.raises(ProductValidationFailed):
            await pipeline.create_order(1, 100)
        assert pipeline.stats.snapshot().failed_orders == 1


class TestPersistence:
    @pytest.mark.asyncio
    async def test_store_error_is_persistence_failure(self, make_pipeline, order_store, publisher):
        order_store.insert = AsyncMock(side_effect=RuntimeError("disk full"))
        pipeline = make_pipeline()

        with pytest.raises(PersistenceFailure):
            await pipeline.create_order(1, 100)

        await pipeline.event_pool.join()
        publisher.publish.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_id_is_persistence_failure(self, make_pipeline, order_store):
        order_store.insert = AsyncMock(side_effect=lambda order: order)
        pipeline = make_pipeline()

        with pytest.raises(PersistenceFailure, match="ID not assigned"):
            await pipeline.create_order(1, 100)

    @pytest.mark.asyncio
    async def test_insert_committed_after_deadline_is_still_published(
        self, make_pipeline, order_store, publisher
    ):
        order_store.gate = asyncio.Event()
        pipeline = make_pipeline(persist_timeout=0.05)

        with pytest.raises(PersistenceFailure, match="timed out"):
            await pipeline.create_order(1, 100)
        # INSERT はまだ実行中なのでスロットは保持されたまま
        assert pipeline.db_pool.in_use == 1

        order_store.gate.set()
        await asyncio.wait_for(wait_until(lambda: pipeline.db_pool.in_use == 0), 1.0)
        await pipeline.event_pool.join()

        [saved] = order_store.orders.values()
        publisher.publish.assert_awaited_once()
        topic, event = publisher.publish.await_args.args
        assert topic == ORDER_CREATED
        assert event.order_id == saved.id

    @pytest.mark.asyncio
    async def test_insert_failing_after_deadline_releases_slot(
        self, make_pipeline, order_store, publisher
    ):
        order_store.gate = asyncio.Event()
        pipeline = make_pipeline(persist_timeout=0.05)
        insert = order_store.insert

        async def failing_insert(order):
            await insert(order)
            raise RuntimeError("connection reset")

        order_store.insert = failing_insert

        with pytest.raises(PersistenceFailure):
            await pipeline.create_order(1, 100)
        order_store.gate.set()
        await asyncio.wait_for(wait_until(lambda: pipeline.db_pool.in_use == 0), 1.0)
        await pipeline.event_pool.join()

        publisher.publish.assert_not_awaited()


class TestReadPath:
    @pytest.mark.asyncio
    async def test_get_order_round_trip(self, make_pipeline, sql_store):
        pipeline = make_pipeline(store=sql_store)

        created = await pipeline.create_order(1, 1500)

        assert await pipeline.get_order(created.id) == created

    @pytest.mark.asyncio
    async def test_get_missing_order(self, make_pipeline):
        pipeline = make_pipeline()

        with pytest.raises(OrderNotFound):
            await pipeline.get_order(42)

    @pytest.mark.asyncio
    async def test_orders_by_product_without_orders(self, make_pipeline):
        pipeline = make_pipeline()

        with pytest.raises(OrderNotFound):
            await pipeline.get_orders_by_product(1)

    @pytest.mark.asyncio
    async def test_orders_by_product_uses_listing_cache(self, make_pipeline, order_store):
        cached = [Order(id=7, product_id=1, total_price=10)]
        listing = MagicMock(spec=OrderListingCache)
        listing.get = AsyncMock(return_value=cached)
        pipeline = make_pipeline(listing=listing)

        assert await pipeline.get_orders_by_product(1) == cached
        assert order_store.insert_calls == 0

    @pytest.mark.asyncio
    async def test_orders_by_product_fills_listing_cache(self, make_pipeline):
        listing = MagicMock(spec=OrderListingCache)
        listing.get = AsyncMock(return_value=None)
        listing.set = AsyncMock(return_value=True)
        listing.invalidate = AsyncMock(return_value=True)
        listing.generation = MagicMock(return_value=4)
        pipeline = make_pipeline(listing=listing)
        order = await pipeline.create_order(1, 1500)

        orders = await pipeline.get_orders_by_product(1)

        assert orders == [order]
        listing.set.assert_awaited_once_with(1, [order], generation=4)

    @pytest.mark.asyncio
    async def test_stalled_listing_read_hits_deadline(self, make_pipeline):
        listing = MagicMock(spec=OrderListingCache)
        listing.get = AsyncMock(side_effect=hang)
        pipeline = make_pipeline(listing=listing, read_timeout_by_product=0.05)

        start = time.perf_counter()
        with pytest.raises(StageTimeout):
            await pipeline.get_orders_by_product(1)
        assert time.perf_counter() - start < 1.0

    @pytest.mark.asyncio
    async def test_stale_listing_is_not_written_back(self, make_pipeline, order_store):
        redis = MagicMock()
        redis.get = AsyncMock(return_value=None)
        redis.set = AsyncMock(return_value=True)
        redis.delete = AsyncMock(return_value=1)
        pipeline = make_pipeline(listing=OrderListingCache(redis))
        await pipeline.create_order(1, 100)
        read = order_store.get_by_product_id

        # 一覧を読んだ直後に別の注文が作られる
        async def read_then_create(product_id):
            orders = await read(product_id)
            await pipeline.create_order(1, 200)
            return orders

        order_store.get_by_product_id = read_then_create

        orders = await pipeline.get_orders_by_product(1)

        assert [o.total_price for o in orders] == [100]
        redis.set.assert_not_awaited()


class TestStats:
    @pytest.mark.asyncio
    async def test_service_stats(self, make_pipeline):
        pipeline = make_pipeline()
        await pipeline.create_order(1, 100)
        await pipeline.create_order(1, 100)
        with pytest.raises(ProductNotFound):
            await pipeline.create_order(999, 100)

        stats = pipeline.service_stats()

        assert stats["total_requests"] == 3
        assert stats["successful_orders"] == 2
        assert stats["failed_orders"] == 1
        assert stats["cache_hits"] == 1
        assert stats["cache_misses"] == 2
        assert stats["db_pool_usage"] == 0
