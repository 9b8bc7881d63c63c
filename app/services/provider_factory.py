from __future__ import annotations

from functools import lru_cache

from app.config import settings
from app.services.log_event_publisher import LogEventPublisher
from app.services.redis_event_publisher import RedisEventPublisher


@lru_cache(maxsize=1)
def get_event_publisher():
    provider = settings.event_publisher.strip().lower()
    if provider == 'redis':
        return RedisEventPublisher()
    return LogEventPublisher()
