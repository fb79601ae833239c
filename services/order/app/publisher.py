"""
Order Service — Saga イベントの発行

Saga の結末を Redis Pub/Sub で他サービスへ通知する。
通知はベストエフォート: 発行に失敗しても Saga の結果は変わらない。
"""

import json
import logging
from abc import ABC, abstractmethod

import redis.asyncio as aioredis
from pydantic import BaseModel

logger = logging.getLogger(__name__)

SAGA_EVENTS_CHANNEL = "saga_events"


def serialize_event(event: BaseModel) -> str:
    return json.dumps(
        {
            "event_type": type(event).__name__,
            "data": event.model_dump(mode="json"),
        },
        default=str,
    )


class EventPublisher(ABC):
    @abstractmethod
    async def publish(self, event: BaseModel) -> None:
        ...


class RedisEventPublisher(EventPublisher):
    def __init__(self, redis: aioredis.Redis, channel: str = SAGA_EVENTS_CHANNEL):
        self.redis = redis
        self.channel = channel

    async def publish(self, event: BaseModel) -> None:
        await self.redis.publish(self.channel, serialize_event(event))


class InMemoryEventPublisher(EventPublisher):
    """発行したイベントをリストに溜めるだけ（テスト・ローカル実行用）"""

    def __init__(self) -> None:
        self.events: list[BaseModel] = []

    async def publish(self, event: BaseModel) -> None:
        self.events.append(event)

    def of_type(self, event_type: type) -> list[BaseModel]:
        return [e for e in self.events if isinstance(e, event_type)]


async def publish_safely(publisher: EventPublisher | None, event: BaseModel) -> None:
    """publisher が無い・落ちている場合でも Saga を止めない。"""
    if publisher is None:
        return
    try:
        await publisher.publish(event)
    except Exception:
        logger.exception("Failed to publish %s", type(event).__name__)
