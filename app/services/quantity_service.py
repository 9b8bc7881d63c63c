from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import update
from sqlalchemy.orm import Session

from app.models import ReceivingLine, ReceivingSession, ReceivingSessionStatus
from app.services.audit_service import log_session_audit
from app.services.lock_service import check_lock
from app.services.receiving_errors import NotFoundError, ValidationError, VersionConflictError
from app.services.receiving_lookup import get_receiving_session, get_session_line, get_session_lines, require_status

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LineDelta:
    line_id: int
    delta: int
    scan_ids: tuple[str, ...] = ()


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def line_result(line: ReceivingLine) -> dict:
    return {
        'line_id': line.id,
        'sku': line.sku,
        'quantity_counted': line.quantity_counted,
        'quantity_expected': line.quantity_expected,
        'remaining': line.remaining,
        'variance': line.variance,
        'is_complete': line.is_complete,
        'is_overage': line.is_overage,
    }


def _apply_count(line: ReceivingLine, new_count: int, *, now: datetime) -> None:
    line.quantity_counted = new_count
    line.variance = new_count - line.quantity_expected
    line.updated_at = now


def _bump_version(db: Session, receiving_session: ReceivingSession, *, actor_id: int, now: datetime) -> int:
    current = receiving_session.version
    db.flush()
    result = db.execute(
        update(ReceivingSession)
        .where(ReceivingSession.id == receiving_session.id, ReceivingSession.version == current)
        .values(version=current + 1, locked_by_principal_id=actor_id, locked_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.refresh(receiving_session, attribute_names=['version'])
        logger.info(
            'Version conflict on receiving session %s: expected %s, found %s',
            receiving_session.id,
            current,
            receiving_session.version,
        )
        raise VersionConflictError(expected=current, actual=receiving_session.version)
    db.refresh(receiving_session)
    return receiving_session.version


def _load_for_count(db: Session, *, session_id: int, actor_id: int) -> ReceivingSession:
    receiving_session = get_receiving_session(db, session_id=session_id, for_update=True)
    check_lock(receiving_session, actor_id)
    require_status(receiving_session, ReceivingSessionStatus.IN_PROGRESS, verb='update')
    return receiving_session


def batch_update_quantities(
    db: Session,
    *,
    session_id: int,
    updates: list[LineDelta],
    actor_id: int,
    expected_version: int | None = None,
) -> dict:
    if not updates:
        raise ValidationError('No quantity updates supplied')

    receiving_session = _load_for_count(db, session_id=session_id, actor_id=actor_id)
    if expected_version is not None and receiving_session.version != expected_version:
        logger.info(
            'Stale batch for receiving session %s: expected %s, found %s',
            session_id,
            expected_version,
            receiving_session.version,
        )
        raise VersionConflictError(expected=expected_version, actual=receiving_session.version)

    lines_by_id = {line.id: line for line in get_session_lines(db, session_id=session_id)}
    missing = [update_row.line_id for update_row in updates if update_row.line_id not in lines_by_id]
    if missing:
        raise NotFoundError(f'Line {missing[0]} not found')

    now = _now()
    results: list[dict] = []
    for update_row in updates:
        line = lines_by_id[update_row.line_id]
        previous = line.quantity_counted
        new_count = max(0, previous + update_row.delta)
        _apply_count(line, new_count, now=now)
        results.append(line_result(line))
        log_session_audit(
            db,
            session_id=session_id,
            actor_principal_id=actor_id,
            action='QUANTITY_UPDATED',
            metadata={
                'line_id': line.id,
                'sku': line.sku,
                'previous_count': previous,
                'new_count': new_count,
                'delta': update_row.delta,
                'scan_ids': list(update_row.scan_ids),
            },
        )

    version = _bump_version(db, receiving_session, actor_id=actor_id, now=now)
    return {'success': True, 'version': version, 'results': results}


def add_quantity(db: Session, *, session_id: int, line_id: int, delta: int, actor_id: int) -> dict:
    result = batch_update_quantities(
        db,
        session_id=session_id,
        updates=[LineDelta(line_id=line_id, delta=delta)],
        actor_id=actor_id,
    )
    return {'success': True, 'version': result['version'], **result['results'][0]}


def set_quantity(db: Session, *, session_id: int, line_id: int, quantity: int, actor_id: int) -> dict:
    if quantity < 0:
        raise ValidationError('Quantity cannot be negative')

    receiving_session = _load_for_count(db, session_id=session_id, actor_id=actor_id)
    line = get_session_line(db, session_id=session_id, line_id=line_id)

    now = _now()
    previous = line.quantity_counted
    _apply_count(line, quantity, now=now)
    log_session_audit(
        db,
        session_id=session_id,
        actor_principal_id=actor_id,
        action='QUANTITY_SET',
        metadata={'line_id': line.id, 'sku': line.sku, 'previous_count': previous, 'new_count': quantity},
    )
    version = _bump_version(db, receiving_session, actor_id=actor_id, now=now)
    return {'success': True, 'version': version, **line_result(line)}
