from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import event
from sqlalchemy.orm import Session

from app.services.event_publisher import DomainEvent
from app.services.provider_factory import get_event_publisher

logger = logging.getLogger(__name__)

PENDING_EVENTS_KEY = 'pending_events'


def queue_event(db: Session, *, event_type: str, payload: dict[str, Any], actor_id: int | None = None) -> DomainEvent:
    domain_event = DomainEvent(type=event_type, payload=payload, actor_principal_id=actor_id)
    db.info.setdefault(PENDING_EVENTS_KEY, []).append(domain_event)
    return domain_event


def pending_events(db: Session) -> list[DomainEvent]:
    return list(db.info.get(PENDING_EVENTS_KEY, []))


def publish_event(domain_event: DomainEvent) -> bool:
    try:
        get_event_publisher().publish(domain_event)
    except Exception:
        logger.warning('Failed to publish event %s (%s)', domain_event.type, domain_event.id, exc_info=True)
        return False
    return True


@event.listens_for(Session, 'after_commit')
def _publish_after_commit(session: Session) -> None:
    for domain_event in session.info.pop(PENDING_EVENTS_KEY, []):
        publish_event(domain_event)


@event.listens_for(Session, 'after_rollback')
def _discard_after_rollback(session: Session) -> None:
    dropped = session.info.pop(PENDING_EVENTS_KEY, [])
    if dropped:
        logger.debug('Discarded %s queued events after rollback', len(dropped))
