"""
Product Service — Redis Pub/Sub コンシューマー

order.created チャネルを購読し、受信した注文をリコンサイラに渡す。

注意: Redis Pub/Sub は fire-and-forget 方式。
サービスがダウンしている間のイベントは失われ、その注文は pending のまま残る。
"""

import asyncio
import logging

import redis.asyncio as aioredis

from .events import ORDER_CREATED, OrderCreated, decode_event
from .reconciler import reconcile
from .store import SqlProductStore

logger = logging.getLogger(__name__)


async def run_consumer(
    redis_conn: aioredis.Redis,
    store: SqlProductStore,
    shutdown_event: asyncio.Event,
) -> None:
    """
    order.created を購読し、在庫を減算する。
    shutdown_event がセットされるまで無限ループで待機する。
    """
    pubsub = redis_conn.pubsub()
    await pubsub.subscribe(ORDER_CREATED)
    logger.info("Subscribed to %s channel", ORDER_CREATED)

    try:
        while not shutdown_event.is_set():
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message and message["type"] == "message":
                try:
                    event = decode_event(message["data"])
                    if isinstance(event, OrderCreated):
                        await reconcile(store, redis_conn, event)
                except Exception:
                    logger.exception("Failed to process event")
            else:
                await asyncio.sleep(0.1)
    finally:
        await pubsub.unsubscribe(ORDER_CREATED)
        await pubsub.aclose()
