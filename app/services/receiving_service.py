from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.auth import is_admin_role
from app.models import (
    ACTIVE_SESSION_STATUSES,
    Location,
    LocationType,
    Principal as PrincipalModel,
    ProductVariant,
    ReceivingLine,
    ReceivingSession,
    ReceivingSessionStatus,
    WorkTask,
)
from app.services.approval_service import materialize_approval
from app.services.audit_service import log_session_audit
from app.services.barcode_service import (
    KnownElsewhere,
    Matched,
    build_barcode_lookup,
    generate_unique_barcode,
    resolve_token,
)
from app.services.event_service import queue_event
from app.services.lock_service import acquire_lock, can_hold_lock, check_lock, release_lock, refresh_lock
from app.services.quantity_service import line_result
from app.services.receiving_errors import PreconditionFailedError, ValidationError
from app.services.receiving_lookup import (
    get_receiving_session,
    get_session_lines,
    require_status,
    variants_for_lines,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExpectedItem:
    sku: str
    product_name: str | None
    quantity: int
    lot_number: str | None = None
    expiry_date: date | None = None


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _iso(value: datetime | date | None) -> str | None:
    return value.isoformat() if value else None


def _parse_statuses(statuses) -> list[ReceivingSessionStatus]:
    parsed: list[ReceivingSessionStatus] = []
    for value in statuses or []:
        if isinstance(value, ReceivingSessionStatus):
            parsed.append(value)
            continue
        try:
            parsed.append(ReceivingSessionStatus(str(value).strip().upper()))
        except ValueError:
            raise ValidationError(f'Unknown session status: {value}') from None
    return parsed


def resolve_receiving_location(db: Session, *, location_id: int | None) -> Location:
    if location_id is not None:
        location = db.get(Location, location_id)
        if not location:
            raise ValidationError(f'Receiving location {location_id} not found')
        return location

    for location_type in (LocationType.RECEIVING, LocationType.STORAGE):
        location = db.execute(
            select(Location)
            .where(Location.type == location_type, Location.active.is_(True))
            .order_by(Location.id.asc())
            .limit(1)
        ).scalars().first()
        if location:
            return location
    raise ValidationError('No receiving location configured')


def _summary(lines: list[ReceivingLine]) -> dict:
    total_expected = sum(line.quantity_expected for line in lines)
    total_counted = sum(line.quantity_counted for line in lines)
    total_damaged = sum(line.quantity_damaged for line in lines)
    items_counted = sum(1 for line in lines if line.quantity_counted > 0)
    return {
        'total_items': len(lines),
        'items_counted': items_counted,
        'items_remaining': len(lines) - items_counted,
        'total_expected': total_expected,
        'total_counted': total_counted,
        'total_damaged': total_damaged,
        'total_remaining': max(0, total_expected - total_counted),
        'variance': total_counted - total_expected,
        'progress': round(total_counted / total_expected * 100) if total_expected > 0 else 0,
        'has_variances': any(line.variance != 0 for line in lines),
        'has_exceptions': total_damaged > 0,
    }


def build_session_payload(db: Session, receiving_session: ReceivingSession) -> dict:
    lines = get_session_lines(db, session_id=receiving_session.id)
    variants_by_id = variants_for_lines(db, lines)
    location = db.get(Location, receiving_session.receiving_location_id)
    putaway_task = db.get(WorkTask, receiving_session.putaway_task_id) if receiving_session.putaway_task_id else None

    line_rows = []
    for line in lines:
        variant = variants_by_id.get(line.product_variant_id) if line.product_variant_id else None
        row = line_result(line)
        row.update(
            {
                'id': line.id,
                'product_name': line.product_name,
                'product_variant_id': line.product_variant_id,
                'quantity_damaged': line.quantity_damaged,
                'lot_number': line.lot_number,
                'expiry_date': _iso(line.expiry_date),
                'generated_barcode': line.generated_barcode,
                'scan_count': line.scan_count,
                'last_scanned_at': _iso(line.last_scanned_at),
                'image_url': variant.image_url if variant else None,
                'barcodes': [
                    code
                    for code in (
                        line.sku,
                        line.generated_barcode,
                        variant.upc if variant else None,
                        variant.barcode if variant else None,
                    )
                    if code
                ],
            }
        )
        line_rows.append(row)

    return {
        'session': {
            'id': receiving_session.id,
            'po_id': receiving_session.po_id,
            'po_reference': receiving_session.po_reference,
            'vendor': receiving_session.vendor,
            'status': receiving_session.status.value,
            'version': receiving_session.version,
            'locked_by': receiving_session.locked_by_principal_id,
            'locked_at': _iso(receiving_session.locked_at),
            'counted_by': receiving_session.counted_by_principal_id,
            'assigned_to': receiving_session.assigned_to_principal_id,
            'receiving_location': (
                {'id': location.id, 'name': location.name, 'barcode': location.barcode} if location else None
            ),
            'putaway_task': (
                {'id': putaway_task.id, 'task_number': putaway_task.task_number, 'status': putaway_task.status.value}
                if putaway_task
                else None
            ),
            'rejection_reason': receiving_session.rejection_reason,
            'created_at': _iso(receiving_session.created_at),
            'submitted_at': _iso(receiving_session.submitted_at),
            'approved_at': _iso(receiving_session.approved_at),
            'rejected_at': _iso(receiving_session.rejected_at),
        },
        'lines': line_rows,
        'summary': _summary(lines),
        'barcode_lookup': build_barcode_lookup(lines, variants_by_id),
    }


def _find_active_session(db: Session, *, po_id: str) -> ReceivingSession | None:
    return db.execute(
        select(ReceivingSession)
        .where(ReceivingSession.po_id == po_id, ReceivingSession.status.in_(ACTIVE_SESSION_STATUSES))
        .order_by(ReceivingSession.id.asc())
        .limit(1)
        .with_for_update()
    ).scalars().first()


def _resume_session(db: Session, existing: ReceivingSession, actor_id: int) -> dict:
    if existing.status == ReceivingSessionStatus.IN_PROGRESS:
        acquire_lock(db, existing, actor_id)
        db.flush()
    return build_session_payload(db, existing)


def start_session(
    db: Session,
    *,
    po_id: str,
    po_reference: str,
    expected_items: list[ExpectedItem],
    actor_id: int,
    vendor: str | None = None,
    receiving_location_id: int | None = None,
) -> dict:
    po_id = (po_id or '').strip()
    if not po_id:
        raise ValidationError('PO id is required')

    existing = _find_active_session(db, po_id=po_id)
    if existing:
        return _resume_session(db, existing, actor_id)

    if not expected_items:
        raise ValidationError('No expected items supplied')
    for item in expected_items:
        if not (item.sku or '').strip():
            raise ValidationError('Every expected item needs a SKU')
        if item.quantity < 0:
            raise ValidationError(f'Expected quantity for {item.sku.strip()} cannot be negative')

    location = resolve_receiving_location(db, location_id=receiving_location_id)

    skus = [item.sku.strip() for item in expected_items]
    variants = db.execute(select(ProductVariant).where(ProductVariant.sku.in_(set(skus)))).scalars().all()
    variants_by_sku = {variant.sku: variant for variant in variants}

    now = _now()
    try:
        with db.begin_nested():
            generated: dict[str, str] = {}
            taken: set[str] = set()
            for variant in variants:
                if not variant.upc and not variant.barcode:
                    code = generate_unique_barcode(db, variant.sku, taken)
                    variant.barcode = code
                    generated[variant.sku] = code

            receiving_session = ReceivingSession(
                po_id=po_id,
                po_reference=(po_reference or '').strip() or po_id,
                vendor=vendor,
                status=ReceivingSessionStatus.IN_PROGRESS,
                version=1,
                counted_by_principal_id=actor_id,
                locked_by_principal_id=actor_id,
                locked_at=now,
                receiving_location_id=location.id,
                updated_at=now,
            )
            db.add(receiving_session)
            db.flush()
    except IntegrityError:
        # Another start for this PO committed between the lookup and the insert.
        existing = _find_active_session(db, po_id=po_id)
        if existing is None:
            raise
        logger.info('Concurrent start for PO %s, resuming session %s', po_id, existing.id)
        return _resume_session(db, existing, actor_id)

    for item, sku in zip(expected_items, skus):
        variant = variants_by_sku.get(sku)
        db.add(
            ReceivingLine(
                session_id=receiving_session.id,
                sku=sku,
                product_name=(item.product_name or '').strip() or (variant.name if variant else None) or sku,
                product_variant_id=variant.id if variant else None,
                quantity_expected=item.quantity,
                quantity_counted=0,
                quantity_damaged=0,
                variance=-item.quantity,
                lot_number=item.lot_number,
                expiry_date=item.expiry_date,
                generated_barcode=generated.get(sku),
                updated_at=now,
            )
        )

    log_session_audit(
        db,
        session_id=receiving_session.id,
        actor_principal_id=actor_id,
        action='SESSION_STARTED',
        metadata={
            'po_id': po_id,
            'po_reference': receiving_session.po_reference,
            'total_items': len(expected_items),
            'total_expected': sum(item.quantity for item in expected_items),
            'barcodes_generated': len(generated),
        },
    )
    queue_event(
        db,
        event_type='receiving:started',
        actor_id=actor_id,
        payload={'session_id': receiving_session.id, 'po_id': po_id, 'po_reference': receiving_session.po_reference},
    )
    db.flush()
    logger.info('Started receiving session %s for PO %s with %s lines', receiving_session.id, po_id, len(expected_items))
    return build_session_payload(db, receiving_session)


def get_session(db: Session, *, session_id: int, actor_id: int | None = None) -> dict:
    receiving_session = get_receiving_session(db, session_id=session_id)
    if (
        actor_id is not None
        and receiving_session.status == ReceivingSessionStatus.IN_PROGRESS
        and can_hold_lock(receiving_session, actor_id)
    ):
        acquire_lock(db, receiving_session, actor_id)
        db.flush()
    return build_session_payload(db, receiving_session)


def _totals_by_session(db: Session, session_ids: list[int]) -> dict[int, dict]:
    if not session_ids:
        return {}
    rows = db.execute(
        select(
            ReceivingLine.session_id,
            func.count(ReceivingLine.id),
            func.coalesce(func.sum(ReceivingLine.quantity_expected), 0),
            func.coalesce(func.sum(ReceivingLine.quantity_counted), 0),
            func.coalesce(func.sum(ReceivingLine.quantity_damaged), 0),
        )
        .where(ReceivingLine.session_id.in_(session_ids))
        .group_by(ReceivingLine.session_id)
    ).all()
    return {
        session_id: {
            'total_items': int(items),
            'total_expected': int(expected),
            'total_counted': int(counted),
            'total_damaged': int(damaged),
        }
        for session_id, items, expected, counted, damaged in rows
    }


def _principal_names(db: Session, principal_ids: set[int]) -> dict[int, str]:
    principal_ids = {pid for pid in principal_ids if pid}
    if not principal_ids:
        return {}
    rows = db.execute(
        select(PrincipalModel.id, PrincipalModel.display_name, PrincipalModel.username).where(
            PrincipalModel.id.in_(principal_ids)
        )
    ).all()
    return {pid: display_name or username for pid, display_name, username in rows}


def list_sessions(
    db: Session,
    *,
    statuses=None,
    counted_by: int | None = None,
    limit: int = 50,
    offset: int = 0,
) -> dict:
    filters = []
    parsed = _parse_statuses(statuses)
    if parsed:
        filters.append(ReceivingSession.status.in_(parsed))
    if counted_by is not None:
        filters.append(ReceivingSession.counted_by_principal_id == counted_by)

    total = db.execute(select(func.count()).select_from(ReceivingSession).where(*filters)).scalar_one()
    sessions = db.execute(
        select(ReceivingSession)
        .where(*filters)
        .order_by(ReceivingSession.updated_at.desc(), ReceivingSession.id.desc())
        .limit(max(1, min(limit, 200)))
        .offset(max(0, offset))
    ).scalars().all()

    totals = _totals_by_session(db, [s.id for s in sessions])
    names = _principal_names(db, {s.counted_by_principal_id for s in sessions})
    empty = {'total_items': 0, 'total_expected': 0, 'total_counted': 0, 'total_damaged': 0}
    rows = []
    for s in sessions:
        session_totals = totals.get(s.id, empty)
        rows.append(
            {
                'id': s.id,
                'po_id': s.po_id,
                'po_reference': s.po_reference,
                'vendor': s.vendor,
                'status': s.status.value,
                'version': s.version,
                'counted_by': {'id': s.counted_by_principal_id, 'name': names.get(s.counted_by_principal_id)},
                'created_at': _iso(s.created_at),
                'submitted_at': _iso(s.submitted_at),
                'approved_at': _iso(s.approved_at),
                'total_items': session_totals['total_items'],
                'total_expected': session_totals['total_expected'],
                'total_counted': session_totals['total_counted'],
            }
        )
    return {'sessions': rows, 'total': total}


def list_pending_sessions(db: Session) -> list[dict]:
    sessions = db.execute(
        select(ReceivingSession)
        .where(ReceivingSession.status == ReceivingSessionStatus.SUBMITTED)
        .order_by(ReceivingSession.submitted_at.desc(), ReceivingSession.id.desc())
    ).scalars().all()

    totals = _totals_by_session(db, [s.id for s in sessions])
    names = _principal_names(
        db,
        {s.counted_by_principal_id for s in sessions} | {s.assigned_to_principal_id for s in sessions},
    )
    empty = {'total_items': 0, 'total_expected': 0, 'total_counted': 0, 'total_damaged': 0}
    rows = []
    for s in sessions:
        session_totals = totals.get(s.id, empty)
        rows.append(
            {
                'id': s.id,
                'po_id': s.po_id,
                'po_reference': s.po_reference,
                'vendor': s.vendor,
                'status': s.status.value,
                'submitted_at': _iso(s.submitted_at),
                **session_totals,
                'counted_by': {'id': s.counted_by_principal_id, 'name': names.get(s.counted_by_principal_id)},
                'assigned_to': (
                    {'id': s.assigned_to_principal_id, 'name': names.get(s.assigned_to_principal_id)}
                    if s.assigned_to_principal_id
                    else None
                ),
            }
        )
    return rows


def scan_barcode(db: Session, *, session_id: int, token: str, actor_id: int) -> dict:
    token = (token or '').strip()
    if not token:
        raise ValidationError('Barcode is required')

    receiving_session = get_receiving_session(db, session_id=session_id, for_update=True)
    require_status(receiving_session, ReceivingSessionStatus.IN_PROGRESS, verb='scan')
    acquire_lock(db, receiving_session, actor_id)

    lines = get_session_lines(db, session_id=session_id)
    variants_by_id = variants_for_lines(db, lines)
    resolution = resolve_token(db, lines=lines, variants_by_id=variants_by_id, token=token)
    scan_id = str(uuid.uuid4())

    if isinstance(resolution, Matched):
        line = resolution.line
        line.scan_count += 1
        line.last_scanned_at = _now()
        log_session_audit(
            db,
            session_id=session_id,
            actor_principal_id=actor_id,
            action='SCAN_SUCCESS',
            metadata={
                'scan_id': scan_id,
                'barcode': token,
                'line_id': line.id,
                'sku': line.sku,
                'matched_on': resolution.matched_on,
            },
        )
        db.flush()
        variant = variants_by_id.get(line.product_variant_id) if line.product_variant_id else None
        return {
            'success': True,
            'scan_id': scan_id,
            'result': 'MATCHED',
            'matched_on': resolution.matched_on,
            'line_id': line.id,
            'sku': line.sku,
            'product_name': line.product_name,
            'quantity_expected': line.quantity_expected,
            'quantity_counted': line.quantity_counted,
            'remaining': line.remaining,
            'image_url': variant.image_url if variant else None,
        }

    if isinstance(resolution, KnownElsewhere):
        reason = 'NOT_ON_PO'
        matched_sku = resolution.variant.sku
        response = {
            'success': False,
            'scan_id': scan_id,
            'result': reason,
            'sku': matched_sku,
            'product_name': resolution.variant.name,
            'message': f'{matched_sku} is not on this PO',
        }
    else:
        reason = 'UNKNOWN_BARCODE'
        matched_sku = None
        response = {
            'success': False,
            'scan_id': scan_id,
            'result': reason,
            'message': f'Unknown barcode: {token}',
        }

    log_session_audit(
        db,
        session_id=session_id,
        actor_principal_id=actor_id,
        action='SCAN_FAILED',
        metadata={'scan_id': scan_id, 'barcode': token, 'reason': reason, 'matched_sku': matched_sku},
    )
    db.flush()
    return response


def heartbeat(db: Session, *, session_id: int, actor_id: int) -> dict:
    receiving_session = get_receiving_session(db, session_id=session_id, for_update=True)
    require_status(receiving_session, ReceivingSessionStatus.IN_PROGRESS, verb='hold lock')
    acquire_lock(db, receiving_session, actor_id)
    db.flush()
    return {
        'session_id': receiving_session.id,
        'locked_by': receiving_session.locked_by_principal_id,
        'locked_at': _iso(receiving_session.locked_at),
        'version': receiving_session.version,
    }


def release_session_lock(db: Session, *, session_id: int, actor_id: int) -> bool:
    receiving_session = get_receiving_session(db, session_id=session_id, for_update=True)
    released = release_lock(db, receiving_session, actor_id)
    db.flush()
    return released


def submit_for_approval(db: Session, *, session_id: int, actor_id: int, assignee_id: int | None = None) -> dict:
    receiving_session = get_receiving_session(db, session_id=session_id, for_update=True)
    check_lock(receiving_session, actor_id)
    require_status(receiving_session, ReceivingSessionStatus.IN_PROGRESS, verb='submit')

    lines = get_session_lines(db, session_id=session_id)
    total_counted = sum(line.quantity_counted for line in lines)
    if total_counted == 0:
        raise PreconditionFailedError('Cannot submit: no items counted')

    if assignee_id is not None:
        assignee = db.get(PrincipalModel, assignee_id)
        if not assignee or not assignee.active or not is_admin_role(assignee.role):
            raise ValidationError('Assigned approver must be Admin or Manager')

    now = _now()
    receiving_session.status = ReceivingSessionStatus.SUBMITTED
    receiving_session.submitted_at = now
    receiving_session.assigned_to_principal_id = assignee_id
    receiving_session.locked_by_principal_id = None
    receiving_session.locked_at = None
    receiving_session.updated_at = now

    log_session_audit(
        db,
        session_id=session_id,
        actor_principal_id=actor_id,
        action='SESSION_SUBMITTED',
        metadata={'total_items': len(lines), 'total_counted': total_counted, 'assigned_to': assignee_id},
    )
    queue_event(
        db,
        event_type='receiving:submitted',
        actor_id=actor_id,
        payload={
            'session_id': session_id,
            'po_reference': receiving_session.po_reference,
            'assigned_to': assignee_id,
        },
    )
    db.flush()
    return {
        'id': receiving_session.id,
        'status': receiving_session.status.value,
        'submitted_at': _iso(receiving_session.submitted_at),
        'assigned_to': assignee_id,
    }


def approve_session(db: Session, *, session_id: int, approver_id: int) -> dict:
    receiving_session = get_receiving_session(db, session_id=session_id, for_update=True)
    result = materialize_approval(db, receiving_session=receiving_session, approver_id=approver_id)
    queue_event(
        db,
        event_type='receiving:approved',
        actor_id=approver_id,
        payload={
            'session_id': session_id,
            'po_id': receiving_session.po_id,
            'po_reference': receiving_session.po_reference,
            'items_received': len(result['inventory_created']),
            'putaway_task_number': result['putaway_task']['task_number'],
        },
    )
    result['session']['approved_at'] = _iso(result['session']['approved_at'])
    return result


def reject_session(db: Session, *, session_id: int, approver_id: int, reason: str) -> dict:
    reason = (reason or '').strip()
    if not reason:
        raise ValidationError('Rejection reason is required')

    receiving_session = get_receiving_session(db, session_id=session_id, for_update=True)
    require_status(receiving_session, ReceivingSessionStatus.SUBMITTED, verb='reject')

    now = _now()
    receiving_session.status = ReceivingSessionStatus.REJECTED
    receiving_session.rejected_by_principal_id = approver_id
    receiving_session.rejected_at = now
    receiving_session.rejection_reason = reason
    receiving_session.updated_at = now

    log_session_audit(
        db,
        session_id=session_id,
        actor_principal_id=approver_id,
        action='SESSION_REJECTED',
        metadata={'reason': reason},
    )
    queue_event(
        db,
        event_type='receiving:rejected',
        actor_id=approver_id,
        payload={'session_id': session_id, 'po_reference': receiving_session.po_reference, 'reason': reason},
    )
    db.flush()
    return {
        'id': receiving_session.id,
        'status': receiving_session.status.value,
        'rejection_reason': receiving_session.rejection_reason,
    }


def reopen_session(db: Session, *, session_id: int, actor_id: int) -> dict:
    receiving_session = get_receiving_session(db, session_id=session_id, for_update=True)
    require_status(receiving_session, ReceivingSessionStatus.REJECTED, verb='reopen')
    active = _find_active_session(db, po_id=receiving_session.po_id)
    if active:
        raise PreconditionFailedError(f'Cannot reopen: session {active.id} is already active for this PO')

    now = _now()
    receiving_session.status = ReceivingSessionStatus.IN_PROGRESS
    receiving_session.rejection_reason = None
    receiving_session.rejected_by_principal_id = None
    receiving_session.rejected_at = None
    receiving_session.approved_by_principal_id = None
    receiving_session.approved_at = None
    receiving_session.submitted_at = None
    receiving_session.updated_at = now
    refresh_lock(receiving_session, actor_id, now=now)

    log_session_audit(db, session_id=session_id, actor_principal_id=actor_id, action='SESSION_REOPENED')
    queue_event(
        db,
        event_type='receiving:reopened',
        actor_id=actor_id,
        payload={'session_id': session_id, 'po_reference': receiving_session.po_reference},
    )
    db.flush()
    return build_session_payload(db, receiving_session)
