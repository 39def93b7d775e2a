"""
Order Service — 在庫結果サブスクライバー

商品サービスのリコンサイラが発行する order.qty_confirmed / order.qty_failed を
購読し、注文を pending から confirmed / failed に遷移させる。

注意: Redis Pub/Sub は fire-and-forget 方式。
サービスがダウンしている間のイベントは失われ、注文は pending のまま残る。
"""

import asyncio
import logging

import redis.asyncio as aioredis

from .cache import OrderListingCache
from .domain import Order, OrderStatus
from .events import QTY_CONFIRMED, QTY_FAILED, QtyConfirmed, QtyFailed, decode_event
from .store import SqlOrderStore

logger = logging.getLogger(__name__)

TOPICS = (QTY_CONFIRMED, QTY_FAILED)


async def apply_inventory_outcome(
    store: SqlOrderStore,
    listing: OrderListingCache | None,
    event: QtyConfirmed | QtyFailed,
) -> Order | None:
    """結果イベントを注文に反映する。既に確定済みの注文には何もしない。"""
    if isinstance(event, QtyConfirmed):
        status = OrderStatus.CONFIRMED
    else:
        status = OrderStatus.FAILED
        logger.info("Order %s failed: %s", event.order_id, event.reason)

    order = await store.transition_status(event.order_id, status)
    if order is None:
        logger.info(
            "Order %s not pending, ignoring %s", event.order_id, event.topic
        )
        return None

    if listing is not None:
        await listing.invalidate(order.product_id)
    return order


async def run_subscriber(
    redis_conn: aioredis.Redis,
    store: SqlOrderStore,
    listing: OrderListingCache | None,
    shutdown_event: asyncio.Event,
) -> None:
    """
    結果イベントのチャネルを購読する。
    shutdown_event がセットされるまで無限ループで待機する。
    """
    pubsub = redis_conn.pubsub()
    await pubsub.subscribe(*TOPICS)
    logger.info("Subscribed to %s", ", ".join(TOPICS))

    try:
        while not shutdown_event.is_set():
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message and message["type"] == "message":
                try:
                    event = decode_event(message["data"])
                    if isinstance(event, (QtyConfirmed, QtyFailed)):
                        if await apply_inventory_outcome(store, listing, event):
                            logger.info("Applied %s for order %s", event.topic, event.order_id)
                except Exception:
                    logger.exception("Failed to process event")
            else:
                await asyncio.sleep(0.1)
    finally:
        await pubsub.unsubscribe(*TOPICS)
        await pubsub.aclose()
