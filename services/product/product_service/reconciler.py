"""
Product Service — 在庫リコンサイラ

order.created を受けて在庫を1つ減算し、結果を発行する。

  在庫あり       → order.qty_confirmed
  在庫なし / 商品なし → order.qty_failed

配信は at-least-once を想定し、減算は注文 ID 単位で冪等
(SqlProductStore.decrement_for_order)。再配信時は記録済みの結果を再発行する。
"""

import logging

import redis.asyncio as aioredis

from .events import OrderCreated, QtyConfirmed, QtyFailed, encode_event
from .store import Outcome, SqlProductStore

logger = logging.getLogger(__name__)

FAILURE_REASON = "product_not_found_or_unavailable"


async def reconcile(
    store: SqlProductStore,
    redis: aioredis.Redis,
    event: OrderCreated,
) -> QtyConfirmed | QtyFailed:
    logger.info(
        "Received order.created for order %s, product %s",
        event.order_id,
        event.product_id,
    )
    outcome, duplicate = await store.decrement_for_order(event.product_id, event.order_id)
    if duplicate:
        logger.info("Order %s already reconciled: %s", event.order_id, outcome.value)

    if outcome is Outcome.CONFIRMED:
        result = QtyConfirmed(order_id=event.order_id)
    else:
        logger.info("Order %s failed. Insufficient stock", event.order_id)
        result = QtyFailed(order_id=event.order_id, reason=FAILURE_REASON)

    await redis.publish(result.topic, encode_event(result))
    return result
