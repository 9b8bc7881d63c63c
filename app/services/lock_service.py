from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from app.config import settings
from app.models import ReceivingSession
from app.services.audit_service import log_session_audit
from app.services.receiving_errors import LockConflictError

logger = logging.getLogger(__name__)

LOCK_TIMEOUT = timedelta(minutes=settings.lock_timeout_minutes)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_lock_stale(receiving_session: ReceivingSession, *, now: datetime | None = None) -> bool:
    if receiving_session.locked_at is None:
        return False
    now = now or _now()
    return now - _as_utc(receiving_session.locked_at) > LOCK_TIMEOUT


def can_hold_lock(receiving_session: ReceivingSession, actor_id: int, *, now: datetime | None = None) -> bool:
    if receiving_session.locked_by_principal_id is None:
        return True
    if receiving_session.locked_by_principal_id == actor_id:
        return True
    return is_lock_stale(receiving_session, now=now)


def check_lock(receiving_session: ReceivingSession, actor_id: int, *, now: datetime | None = None) -> None:
    if not can_hold_lock(receiving_session, actor_id, now=now):
        raise LockConflictError(
            locked_by=receiving_session.locked_by_principal_id,
            locked_at=receiving_session.locked_at,
        )


def refresh_lock(receiving_session: ReceivingSession, actor_id: int, *, now: datetime | None = None) -> None:
    receiving_session.locked_by_principal_id = actor_id
    receiving_session.locked_at = now or _now()


def acquire_lock(
    db: Session,
    receiving_session: ReceivingSession,
    actor_id: int,
    *,
    now: datetime | None = None,
) -> bool:
    """Take or refresh the session lock for actor_id.

    Returns True when the holder changed. A live lock held by someone else
    raises LockConflictError; a stale one is taken over.
    """
    check_lock(receiving_session, actor_id, now=now)
    previous_holder = receiving_session.locked_by_principal_id
    refresh_lock(receiving_session, actor_id, now=now)
    if previous_holder == actor_id:
        return False

    if previous_holder is not None:
        logger.info(
            'Receiving session %s lock taken over from principal %s by principal %s',
            receiving_session.id,
            previous_holder,
            actor_id,
        )
    log_session_audit(
        db,
        session_id=receiving_session.id,
        actor_principal_id=actor_id,
        action='LOCK_ACQUIRED',
        metadata={'previous_holder': previous_holder},
    )
    return True


def release_lock(db: Session, receiving_session: ReceivingSession, actor_id: int) -> bool:
    if receiving_session.locked_by_principal_id != actor_id:
        return False
    receiving_session.locked_by_principal_id = None
    receiving_session.locked_at = None
    log_session_audit(
        db,
        session_id=receiving_session.id,
        actor_principal_id=actor_id,
        action='LOCK_RELEASED',
    )
    return True
