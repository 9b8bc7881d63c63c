from __future__ import annotations

import json

import redis

from app.config import settings
from app.services.event_publisher import DomainEvent


class RedisEventPublisher:
    def __init__(self, client: redis.Redis | None = None, channel: str | None = None):
        self.client = client or redis.Redis.from_url(
            settings.redis_url,
            socket_timeout=settings.redis_timeout_seconds,
            socket_connect_timeout=settings.redis_timeout_seconds,
        )
        self.channel = channel or settings.event_channel

    def publish(self, event: DomainEvent) -> None:
        self.client.publish(self.channel, json.dumps(event.to_dict(), default=str))
