from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.models import ProductVariant, ReceivingLine, ReceivingSession, ReceivingSessionStatus
from app.services.receiving_errors import NotFoundError, PreconditionFailedError


def get_receiving_session(db: Session, *, session_id: int, for_update: bool = False) -> ReceivingSession:
    stmt = select(ReceivingSession).where(ReceivingSession.id == session_id)
    if for_update:
        stmt = stmt.with_for_update()
    receiving_session = db.execute(stmt).scalar_one_or_none()
    if not receiving_session:
        raise NotFoundError('Session not found')
    return receiving_session


def get_session_lines(db: Session, *, session_id: int) -> list[ReceivingLine]:
    return db.execute(
        select(ReceivingLine)
        .where(ReceivingLine.session_id == session_id)
        .order_by(ReceivingLine.sku.asc(), ReceivingLine.id.asc())
    ).scalars().all()


def get_session_line(db: Session, *, session_id: int, line_id: int) -> ReceivingLine:
    line = db.execute(
        select(ReceivingLine).where(ReceivingLine.id == line_id, ReceivingLine.session_id == session_id)
    ).scalar_one_or_none()
    if not line:
        raise NotFoundError(f'Line {line_id} not found')
    return line


def variants_for_lines(db: Session, lines: list[ReceivingLine]) -> dict[int, ProductVariant]:
    variant_ids = {line.product_variant_id for line in lines if line.product_variant_id}
    if not variant_ids:
        return {}
    variants = db.execute(select(ProductVariant).where(ProductVariant.id.in_(variant_ids))).scalars().all()
    return {variant.id: variant for variant in variants}


def require_status(receiving_session: ReceivingSession, status: ReceivingSessionStatus, *, verb: str) -> None:
    if receiving_session.status != status:
        raise PreconditionFailedError(f'Cannot {verb}: session is {receiving_session.status.value}')
