from __future__ import annotations

from collections.abc import Callable
from datetime import date

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from app.auth import Principal, Role, get_current_principal, require_role
from app.db import get_db
from app.services.quantity_service import LineDelta, add_quantity, batch_update_quantities, set_quantity
from app.services.receiving_errors import ReceivingError
from app.services.receiving_exception_service import record_exception
from app.services.receiving_service import (
    ExpectedItem,
    approve_session,
    get_session,
    heartbeat,
    list_pending_sessions,
    list_sessions,
    reject_session,
    release_session_lock,
    reopen_session,
    scan_barcode,
    start_session,
    submit_for_approval,
)

router = APIRouter(prefix='/receiving', tags=['receiving'])

approver_only = require_role(Role.ADMIN, Role.MANAGER)


class ExpectedItemIn(BaseModel):
    sku: str
    product_name: str | None = None
    quantity: int = Field(ge=0)
    lot_number: str | None = None
    expiry_date: date | None = None


class StartSessionIn(BaseModel):
    po_id: str
    po_reference: str
    vendor: str | None = None
    receiving_location_id: int | None = None
    expected_items: list[ExpectedItemIn]


class ScanIn(BaseModel):
    barcode: str


class LineDeltaIn(BaseModel):
    line_id: int
    quantity: int
    scan_ids: list[str] = Field(default_factory=list)


class BatchUpdateIn(BaseModel):
    updates: list[LineDeltaIn]
    expected_version: int | None = None


class AddQuantityIn(BaseModel):
    line_id: int
    quantity: int = 1


class SetQuantityIn(BaseModel):
    quantity: int


class ExceptionIn(BaseModel):
    line_id: int
    type: str
    quantity: int
    notes: str | None = None
    photo_url: str | None = None


class SubmitIn(BaseModel):
    assigned_to: int | None = None


class RejectIn(BaseModel):
    reason: str


def _run(db: Session, action: Callable[[], object]):
    try:
        result = action()
    except ReceivingError:
        db.rollback()
        raise
    db.commit()
    return result


@router.post('/sessions')
def start_session_route(
    payload: StartSessionIn,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    items = [
        ExpectedItem(
            sku=item.sku,
            product_name=item.product_name,
            quantity=item.quantity,
            lot_number=item.lot_number,
            expiry_date=item.expiry_date,
        )
        for item in payload.expected_items
    ]
    return _run(
        db,
        lambda: start_session(
            db,
            po_id=payload.po_id,
            po_reference=payload.po_reference,
            expected_items=items,
            actor_id=principal.id,
            vendor=payload.vendor,
            receiving_location_id=payload.receiving_location_id,
        ),
    )


@router.get('/sessions')
def list_sessions_route(
    status: list[str] | None = Query(default=None),
    mine: bool = False,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return list_sessions(
        db,
        statuses=status,
        counted_by=principal.id if mine else None,
        limit=limit,
        offset=offset,
    )


@router.get('/pending')
def list_pending_route(
    principal: Principal = Depends(approver_only),
    db: Session = Depends(get_db),
):
    return {'sessions': list_pending_sessions(db)}


@router.get('/sessions/{session_id}')
def get_session_route(
    session_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return _run(db, lambda: get_session(db, session_id=session_id, actor_id=principal.id))


@router.post('/sessions/{session_id}/scan')
def scan_route(
    session_id: int,
    payload: ScanIn,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return _run(db, lambda: scan_barcode(db, session_id=session_id, token=payload.barcode, actor_id=principal.id))


@router.post('/sessions/{session_id}/quantities')
def batch_update_route(
    session_id: int,
    payload: BatchUpdateIn,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    updates = [LineDelta(line_id=u.line_id, delta=u.quantity, scan_ids=tuple(u.scan_ids)) for u in payload.updates]
    return _run(
        db,
        lambda: batch_update_quantities(
            db,
            session_id=session_id,
            updates=updates,
            actor_id=principal.id,
            expected_version=payload.expected_version,
        ),
    )


@router.post('/sessions/{session_id}/add')
def add_quantity_route(
    session_id: int,
    payload: AddQuantityIn,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return _run(
        db,
        lambda: add_quantity(
            db, session_id=session_id, line_id=payload.line_id, delta=payload.quantity, actor_id=principal.id
        ),
    )


@router.put('/sessions/{session_id}/lines/{line_id}/quantity')
def set_quantity_route(
    session_id: int,
    line_id: int,
    payload: SetQuantityIn,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return _run(
        db,
        lambda: set_quantity(
            db, session_id=session_id, line_id=line_id, quantity=payload.quantity, actor_id=principal.id
        ),
    )


@router.post('/sessions/{session_id}/exceptions')
def record_exception_route(
    session_id: int,
    payload: ExceptionIn,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    row = _run(
        db,
        lambda: record_exception(
            db,
            session_id=session_id,
            line_id=payload.line_id,
            exception_type=payload.type,
            quantity=payload.quantity,
            actor_id=principal.id,
            notes=payload.notes,
            photo_url=payload.photo_url,
        ),
    )
    return {'success': True, 'exception_id': row.id}


@router.post('/sessions/{session_id}/heartbeat')
def heartbeat_route(
    session_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return _run(db, lambda: heartbeat(db, session_id=session_id, actor_id=principal.id))


@router.post('/sessions/{session_id}/release')
def release_lock_route(
    session_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    released = _run(db, lambda: release_session_lock(db, session_id=session_id, actor_id=principal.id))
    return {'success': True, 'released': released}


@router.post('/sessions/{session_id}/submit')
def submit_route(
    session_id: int,
    payload: SubmitIn | None = None,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    assignee_id = payload.assigned_to if payload else None
    return _run(
        db,
        lambda: submit_for_approval(db, session_id=session_id, actor_id=principal.id, assignee_id=assignee_id),
    )


@router.post('/sessions/{session_id}/approve')
def approve_route(
    session_id: int,
    principal: Principal = Depends(approver_only),
    db: Session = Depends(get_db),
):
    return _run(db, lambda: approve_session(db, session_id=session_id, approver_id=principal.id))


@router.post('/sessions/{session_id}/reject')
def reject_route(
    session_id: int,
    payload: RejectIn,
    principal: Principal = Depends(approver_only),
    db: Session = Depends(get_db),
):
    return _run(db, lambda: reject_session(db, session_id=session_id, approver_id=principal.id, reason=payload.reason))


@router.post('/sessions/{session_id}/reopen')
def reopen_route(
    session_id: int,
    principal: Principal = Depends(get_current_principal),
    db: Session = Depends(get_db),
):
    return _run(db, lambda: reopen_session(db, session_id=session_id, actor_id=principal.id))
