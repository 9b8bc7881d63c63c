from __future__ import annotations

import logging

from app.services.event_publisher import DomainEvent

logger = logging.getLogger(__name__)


class LogEventPublisher:
    def publish(self, event: DomainEvent) -> None:
        logger.info('event %s id=%s payload=%s', event.type, event.id, event.payload)
