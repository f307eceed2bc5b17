"""
Order Service — イベント発行

コミット済みのイベントを Redis Pub/Sub で通知する。

注意: Redis Pub/Sub は fire-and-forget 方式。購読者がいない間の
イベントは失われる。正となる記録は order_events テーブル。
"""

import json
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from .events import OrderEvent

logger = logging.getLogger(__name__)


class EventPublisher:
    def __init__(self, redis: aioredis.Redis | None, channel: str = "order_events") -> None:
        self.redis = redis
        self.channel = channel

    @classmethod
    def from_url(cls, redis_url: str | None, channel: str = "order_events") -> "EventPublisher":
        if not redis_url:
            return cls(None, channel)
        return cls(aioredis.from_url(redis_url, decode_responses=True), channel)

    async def publish(self, event: OrderEvent) -> None:
        """
        イベントを発行する。コミット後に呼ばれるため、ここでの失敗は
        リクエストを失敗させずにログに残す。
        """
        if self.redis is None:
            logger.debug("Publishing disabled, skipped %s for order %s", event.event_type, event.order_id)
            return
        message = json.dumps(
            {"event_type": event.event_type, "data": event.model_dump(mode="json")},
            default=str,
        )
        try:
            await self.redis.publish(self.channel, message)
        except RedisError:
            logger.exception(
                "Failed to publish %s for order %s", event.event_type, event.order_id
            )

    async def close(self) -> None:
        if self.redis is not None:
            await self.redis.aclose()
