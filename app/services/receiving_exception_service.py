from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import ReceivingException, ReceivingExceptionType, ReceivingSessionStatus
from app.services.audit_service import log_session_audit
from app.services.lock_service import acquire_lock
from app.services.receiving_errors import ValidationError
from app.services.receiving_lookup import get_receiving_session, get_session_line, require_status


def _parse_type(value: ReceivingExceptionType | str) -> ReceivingExceptionType:
    if isinstance(value, ReceivingExceptionType):
        return value
    try:
        return ReceivingExceptionType(str(value).strip().upper())
    except ValueError:
        raise ValidationError(f'Unknown exception type: {value}') from None


def record_exception(
    db: Session,
    *,
    session_id: int,
    line_id: int,
    exception_type: ReceivingExceptionType | str,
    quantity: int,
    actor_id: int,
    notes: str | None = None,
    photo_url: str | None = None,
) -> ReceivingException:
    if quantity <= 0:
        raise ValidationError('Exception quantity must be positive')
    exception_type = _parse_type(exception_type)

    receiving_session = get_receiving_session(db, session_id=session_id, for_update=True)
    require_status(receiving_session, ReceivingSessionStatus.IN_PROGRESS, verb='record exception')
    acquire_lock(db, receiving_session, actor_id)
    line = get_session_line(db, session_id=session_id, line_id=line_id)

    if exception_type == ReceivingExceptionType.DAMAGED:
        # Not clamped to quantity_counted; approval derives the good quantity.
        line.quantity_damaged += quantity
        line.updated_at = datetime.now(tz=timezone.utc)

    row = ReceivingException(
        session_id=session_id,
        line_id=line_id,
        type=exception_type,
        quantity=quantity,
        notes=(notes or '').strip() or None,
        photo_url=photo_url,
        reported_by_principal_id=actor_id,
    )
    db.add(row)
    log_session_audit(
        db,
        session_id=session_id,
        actor_principal_id=actor_id,
        action='EXCEPTION_RECORDED',
        metadata={
            'line_id': line_id,
            'sku': line.sku,
            'type': exception_type.value,
            'quantity': quantity,
            'notes': row.notes,
            'photo_url': photo_url,
        },
    )
    db.flush()
    return row


def list_exceptions(db: Session, *, session_id: int) -> list[ReceivingException]:
    return db.execute(
        select(ReceivingException)
        .where(ReceivingException.session_id == session_id)
        .order_by(ReceivingException.created_at.asc(), ReceivingException.id.asc())
    ).scalars().all()
