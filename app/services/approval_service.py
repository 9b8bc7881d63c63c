from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models import (
    InventoryUnit,
    InventoryUnitStatus,
    Location,
    ReceivingSession,
    ReceivingSessionStatus,
    WorkTask,
    WorkTaskItem,
    WorkTaskSequence,
    WorkTaskStatus,
    WorkTaskType,
)
from app.services.audit_service import log_session_audit
from app.services.event_service import queue_event
from app.services.receiving_errors import ValidationError
from app.services.receiving_lookup import get_session_lines, require_status

logger = logging.getLogger(__name__)

PUTAWAY_PRIORITY = 50
PUTAWAY_SOURCE_TYPE = 'RECEIVING_SESSION'


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _locked_sequence(db: Session, *, prefix: str) -> WorkTaskSequence | None:
    return db.execute(
        select(WorkTaskSequence)
        .where(WorkTaskSequence.prefix == prefix)
        .with_for_update()
        .execution_options(populate_existing=True)
    ).scalar_one_or_none()


def next_putaway_task_number(db: Session, *, now: datetime | None = None) -> str:
    """Allocate the next PUT-YYYYMMDD-NNNN number from a locked per-day counter row.

    The counter is only consumed when the caller's transaction commits.
    """
    now = now or _now()
    day_prefix = f"PUT-{now.strftime('%Y%m%d')}"

    sequence = _locked_sequence(db, prefix=day_prefix)
    if sequence is None:
        # Tasks numbered before the counter row existed still count.
        existing = db.execute(
            select(func.count()).select_from(WorkTask).where(WorkTask.task_number.like(f'{day_prefix}-%'))
        ).scalar_one()
        try:
            with db.begin_nested():
                sequence = WorkTaskSequence(prefix=day_prefix, current_value=existing)
                db.add(sequence)
                db.flush()
        except IntegrityError:
            logger.debug('Task sequence %s created concurrently, retrying', day_prefix)
            sequence = _locked_sequence(db, prefix=day_prefix)
            if sequence is None:
                raise

    sequence.current_value += 1
    db.flush()
    return f'{day_prefix}-{sequence.current_value:04d}'


def _find_inventory_unit(
    db: Session,
    *,
    product_variant_id: int,
    location_id: int,
    lot_number: str | None,
) -> InventoryUnit | None:
    lot_clause = InventoryUnit.lot_number.is_(None) if lot_number is None else InventoryUnit.lot_number == lot_number
    return db.execute(
        select(InventoryUnit)
        .where(
            InventoryUnit.product_variant_id == product_variant_id,
            InventoryUnit.location_id == location_id,
            lot_clause,
        )
        .order_by(InventoryUnit.id.asc())
        .limit(1)
        .with_for_update()
    ).scalars().first()


def materialize_approval(db: Session, *, receiving_session: ReceivingSession, approver_id: int) -> dict:
    require_status(receiving_session, ReceivingSessionStatus.SUBMITTED, verb='approve')
    location = db.get(Location, receiving_session.receiving_location_id)
    if not location:
        raise ValidationError('No receiving location configured')

    now = _now()
    lines = get_session_lines(db, session_id=receiving_session.id)
    received: list[tuple[int, int, InventoryUnit, str]] = []

    for line in lines:
        if line.quantity_counted <= 0 or not line.product_variant_id:
            continue
        good_quantity = line.quantity_counted - line.quantity_damaged
        if good_quantity <= 0:
            continue

        unit = _find_inventory_unit(
            db,
            product_variant_id=line.product_variant_id,
            location_id=location.id,
            lot_number=line.lot_number,
        )
        if unit:
            unit.quantity += good_quantity
            unit.status = InventoryUnitStatus.AVAILABLE
            unit.updated_at = now
        else:
            unit = InventoryUnit(
                product_variant_id=line.product_variant_id,
                location_id=location.id,
                quantity=good_quantity,
                status=InventoryUnitStatus.AVAILABLE,
                lot_number=line.lot_number,
                expiry_date=line.expiry_date,
                received_from=f'PO:{receiving_session.po_reference}',
            )
            db.add(unit)
        db.flush()
        received.append((line.product_variant_id, good_quantity, unit, line.sku))

        queue_event(
            db,
            event_type='inventory:received',
            actor_id=approver_id,
            payload={
                'product_variant_id': line.product_variant_id,
                'sku': line.sku,
                'location_id': location.id,
                'quantity': good_quantity,
                'inventory_unit_id': unit.id,
                'reference_type': 'PURCHASE_ORDER',
                'reference_id': receiving_session.po_id,
                'po_reference': receiving_session.po_reference,
            },
        )

    task = WorkTask(
        task_number=next_putaway_task_number(db, now=now),
        type=WorkTaskType.PUTAWAY,
        status=WorkTaskStatus.PENDING,
        priority=PUTAWAY_PRIORITY,
        source_type=PUTAWAY_SOURCE_TYPE,
        source_id=receiving_session.id,
        po_reference=receiving_session.po_reference,
        total_items=len(received),
        completed_items=0,
        notes=f'Put-away for PO {receiving_session.po_reference}',
        created_by_principal_id=approver_id,
    )
    db.add(task)
    db.flush()

    for idx, (variant_id, quantity, unit, _sku) in enumerate(received):
        db.add(
            WorkTaskItem(
                task_id=task.id,
                sequence=idx + 1,
                product_variant_id=variant_id,
                inventory_unit_id=unit.id,
                location_id=location.id,
                quantity_required=quantity,
                quantity_completed=0,
                status=WorkTaskStatus.PENDING,
            )
        )

    receiving_session.status = ReceivingSessionStatus.APPROVED
    receiving_session.approved_by_principal_id = approver_id
    receiving_session.approved_at = now
    receiving_session.putaway_task_id = task.id
    receiving_session.locked_by_principal_id = None
    receiving_session.locked_at = None
    receiving_session.updated_at = now

    units_received = sum(quantity for _variant_id, quantity, _unit, _sku in received)
    log_session_audit(
        db,
        session_id=receiving_session.id,
        actor_principal_id=approver_id,
        action='SESSION_APPROVED',
        metadata={
            'items_received': len(received),
            'units_received': units_received,
            'putaway_task_id': task.id,
            'putaway_task_number': task.task_number,
        },
    )
    db.flush()
    logger.info(
        'Receiving session %s approved by principal %s: %s units on %s lines, task %s',
        receiving_session.id,
        approver_id,
        units_received,
        len(received),
        task.task_number,
    )

    return {
        'session': {
            'id': receiving_session.id,
            'status': receiving_session.status.value,
            'approved_at': receiving_session.approved_at,
        },
        'inventory_created': [
            {'sku': sku, 'quantity': quantity, 'inventory_unit_id': unit.id}
            for _variant_id, quantity, unit, sku in received
        ],
        'putaway_task': {'id': task.id, 'task_number': task.task_number},
    }
