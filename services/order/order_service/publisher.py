"""
Order Service — イベントパブリッシャー

Redis Pub/Sub でイベントを発行する。チャネル名 = トピック名。
配信の保証はブローカー側の責務で、このサービスは発行したら追跡しない。
"""

import logging

import redis.asyncio as aioredis

from .events import Event, encode_event

logger = logging.getLogger(__name__)


class RedisEventPublisher:
    def __init__(self, redis: aioredis.Redis):
        self.redis = redis

    async def publish(self, topic: str, event: Event) -> int:
        """イベントを発行し、受信したサブスクライバー数を返す。"""
        receivers = await self.redis.publish(topic, encode_event(event))
        logger.debug("Published %s to %d subscribers", topic, receivers)
        return receivers
