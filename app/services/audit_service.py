from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import AuditLog

RECEIVING_SESSION_ENTITY = 'ReceivingSession'


def log_audit(
    db: Session,
    *,
    actor_principal_id: int | None,
    action: str,
    entity_type: str,
    entity_id: int | None,
    metadata: dict | None = None,
) -> None:
    meta = dict(metadata or {})
    meta.setdefault('timestamp', datetime.now(tz=timezone.utc).isoformat())
    db.add(
        AuditLog(
            actor_principal_id=actor_principal_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            meta=meta,
        )
    )


def log_session_audit(
    db: Session,
    *,
    session_id: int,
    actor_principal_id: int | None,
    action: str,
    metadata: dict | None = None,
) -> None:
    log_audit(
        db,
        actor_principal_id=actor_principal_id,
        action=action,
        entity_type=RECEIVING_SESSION_ENTITY,
        entity_id=session_id,
        metadata=metadata,
    )


def list_entity_audit(db: Session, *, entity_type: str, entity_id: int) -> list[AuditLog]:
    return db.execute(
        select(AuditLog)
        .where(AuditLog.entity_type == entity_type, AuditLog.entity_id == entity_id)
        .order_by(AuditLog.id.asc())
    ).scalars().all()
