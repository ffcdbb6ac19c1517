"""
イベント発行 — Redis Pub/Sub

注文のドメインイベントを order_events チャネルに発行する。
購読側 (集計・通知など) はこのサービスの内部を知らなくてよい。

注意: Pub/Sub は fire-and-forget。発行はコミット後に行い、
Redis の障害で決済の反映そのものを失敗させない。
"""

import json
import logging

import redis.asyncio as aioredis
from pydantic import BaseModel

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"


class EventPublisher:
    def __init__(
        self,
        redis: aioredis.Redis | None,
        channel: str = ORDER_EVENTS_CHANNEL,
    ):
        self.redis = redis
        self.channel = channel

    async def publish(self, event: BaseModel) -> None:
        event_type = type(event).__name__
        if self.redis is None:
            logger.debug("Redis not configured, dropping %s", event_type)
            return
        message = json.dumps(
            {
                "event_type": event_type,
                "data": event.model_dump(mode="json"),
            },
            default=str,
        )
        try:
            await self.redis.publish(self.channel, message)
        except aioredis.RedisError:
            logger.exception("Failed to publish %s", event_type)
