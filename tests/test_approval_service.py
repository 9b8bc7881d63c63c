from __future__ import annotations

from datetime import datetime, timezone
from unittest.mock import MagicMock, patch

from sqlalchemy import select

from app.models import (
    InventoryUnit,
    InventoryUnitStatus,
    ReceivingSessionStatus,
    WorkTask,
    WorkTaskItem,
    WorkTaskSequence,
    WorkTaskStatus,
    WorkTaskType,
)
from app.services import approval_service
from app.services.approval_service import next_putaway_task_number
from app.services.receiving_errors import PreconditionFailedError
from app.services.receiving_exception_service import record_exception
from app.services.receiving_service import ExpectedItem, approve_session, submit_for_approval
from tests.support import ReceivingDbTestCase


class ApprovalServiceTests(ReceivingDbTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.variant = self.add_variant('X', upc='0042')
        self.db.commit()

    def _submitted_session(self, items: list[ExpectedItem] | None = None, counts: dict[str, int] | None = None) -> dict:
        payload = self.start(items=items)
        session_id = payload['session']['id']
        for line in payload['lines']:
            delta = (counts or {'X': 5}).get(line['sku'], 0)
            if delta:
                self.count(session_id, line['id'], delta)
        submit_for_approval(self.db, session_id=session_id, actor_id=self.operator.id)
        self.db.commit()
        return payload

    def _approve(self, session_id: int) -> dict:
        result = approve_session(self.db, session_id=session_id, approver_id=self.manager.id)
        self.db.commit()
        return result

    def test_damaged_units_are_excluded_from_inventory(self) -> None:
        payload = self.start()
        session_id = payload['session']['id']
        line_id = payload['lines'][0]['id']
        self.count(session_id, line_id, 5)
        record_exception(
            self.db,
            session_id=session_id,
            line_id=line_id,
            exception_type='DAMAGED',
            quantity=2,
            actor_id=self.operator.id,
        )
        self.db.commit()
        submit_for_approval(self.db, session_id=session_id, actor_id=self.operator.id)
        self.db.commit()

        result = self._approve(session_id)

        self.assertEqual(result['session']['status'], 'APPROVED')
        self.assertEqual(len(result['inventory_created']), 1)
        self.assertEqual(result['inventory_created'][0]['quantity'], 3)

        unit = self.db.execute(select(InventoryUnit)).scalars().one()
        self.assertEqual(unit.quantity, 3)
        self.assertEqual(unit.status, InventoryUnitStatus.AVAILABLE)
        self.assertEqual(unit.location_id, self.dock.id)
        self.assertEqual(unit.received_from, 'PO:REF-PO-1')

        task = self.db.get(WorkTask, result['putaway_task']['id'])
        self.assertEqual(task.priority, 50)
        self.assertEqual(task.total_items, 1)
        self.assertEqual(task.status, WorkTaskStatus.PENDING)
        items = self.db.execute(select(WorkTaskItem).where(WorkTaskItem.task_id == task.id)).scalars().all()
        self.assertEqual(len(items), 1)
        self.assertEqual(items[0].sequence, 1)
        self.assertEqual(items[0].quantity_required, 3)
        self.assertEqual(items[0].inventory_unit_id, unit.id)

        row = self.session_row(session_id)
        self.assertEqual(row.status, ReceivingSessionStatus.APPROVED)
        self.assertEqual(row.approved_by_principal_id, self.manager.id)
        self.assertEqual(row.putaway_task_id, task.id)
        self.assertEqual(self.audit_actions(session_id)[-1], 'SESSION_APPROVED')

    def test_existing_inventory_is_incremented(self) -> None:
        existing = InventoryUnit(
            product_variant_id=self.variant.id,
            location_id=self.dock.id,
            quantity=4,
            status=InventoryUnitStatus.QUARANTINE,
        )
        other_lot = InventoryUnit(
            product_variant_id=self.variant.id,
            location_id=self.dock.id,
            quantity=9,
            lot_number='LOT-7',
            status=InventoryUnitStatus.AVAILABLE,
        )
        self.db.add_all([existing, other_lot])
        self.db.commit()
        payload = self._submitted_session()

        result = self._approve(payload['session']['id'])

        self.db.expire_all()
        self.assertEqual(result['inventory_created'][0]['inventory_unit_id'], existing.id)
        self.assertEqual(self.db.get(InventoryUnit, existing.id).quantity, 9)
        self.assertEqual(self.db.get(InventoryUnit, existing.id).status, InventoryUnitStatus.AVAILABLE)
        self.assertEqual(self.db.get(InventoryUnit, other_lot.id).quantity, 9)
        self.assertEqual(len(self.db.execute(select(InventoryUnit)).scalars().all()), 2)

    def test_second_approval_fails_without_new_inventory(self) -> None:
        payload = self._submitted_session()
        session_id = payload['session']['id']
        self._approve(session_id)

        with self.assertRaises(PreconditionFailedError):
            approve_session(self.db, session_id=session_id, approver_id=self.manager.id)
        self.db.rollback()

        self.assertEqual(self.db.execute(select(InventoryUnit)).scalars().one().quantity, 5)
        self.assertEqual(len(self.db.execute(select(WorkTask)).scalars().all()), 1)

    def test_lines_without_catalog_link_still_get_one_task(self) -> None:
        payload = self._submitted_session(
            items=[ExpectedItem(sku='LOOSE', product_name='Loose part', quantity=3)],
            counts={'LOOSE': 3},
        )

        result = self._approve(payload['session']['id'])

        self.assertEqual(result['inventory_created'], [])
        task = self.db.get(WorkTask, result['putaway_task']['id'])
        self.assertEqual(task.total_items, 0)

    def test_sequence_follows_creation_order(self) -> None:
        self.add_variant('Y')
        self.db.commit()
        payload = self._submitted_session(
            items=[
                ExpectedItem(sku='X', product_name=None, quantity=5),
                ExpectedItem(sku='Y', product_name=None, quantity=2),
            ],
            counts={'X': 5, 'Y': 2},
        )

        result = self._approve(payload['session']['id'])

        items = self.db.execute(
            select(WorkTaskItem).where(WorkTaskItem.task_id == result['putaway_task']['id']).order_by(WorkTaskItem.sequence)
        ).scalars().all()
        self.assertEqual([item.sequence for item in items], [1, 2])
        self.assertEqual([item.quantity_required for item in items], [5, 2])

    def test_task_numbers_run_per_day(self) -> None:
        now = datetime(2026, 5, 4, 9, 30, tzinfo=timezone.utc)
        self.db.add(WorkTask(task_number='PUT-20260504-0001', type=WorkTaskType.PUTAWAY, priority=50))
        self.db.flush()
        self.assertEqual(next_putaway_task_number(self.db, now=now), 'PUT-20260504-0002')
        self.assertEqual(
            next_putaway_task_number(self.db, now=datetime(2026, 5, 5, 0, 1, tzinfo=timezone.utc)),
            'PUT-20260505-0001',
        )

    def test_task_numbers_drawn_before_commit_are_distinct(self) -> None:
        now = datetime(2026, 5, 4, 9, 30, tzinfo=timezone.utc)
        first = next_putaway_task_number(self.db, now=now)
        second = next_putaway_task_number(self.db, now=now)
        self.db.commit()

        self.assertEqual((first, second), ('PUT-20260504-0001', 'PUT-20260504-0002'))
        sequence = self.db.get(WorkTaskSequence, 'PUT-20260504')
        self.assertEqual(sequence.current_value, 2)

    def test_counter_created_concurrently_is_reused(self) -> None:
        with self.SessionFactory() as other:
            other.add(WorkTaskSequence(prefix='PUT-20260504', current_value=3))
            other.commit()
        real_lookup = approval_service._locked_sequence
        lookups = []

        def lookup_missing_first(db, *, prefix):
            lookups.append(prefix)
            if len(lookups) == 1:
                return None
            return real_lookup(db, prefix=prefix)

        with patch('app.services.approval_service._locked_sequence', side_effect=lookup_missing_first):
            number = next_putaway_task_number(self.db, now=datetime(2026, 5, 4, 9, 30, tzinfo=timezone.utc))
        self.db.commit()

        self.assertEqual(number, 'PUT-20260504-0004')
        self.assertEqual(len(lookups), 2)
        rows = self.db.execute(select(WorkTaskSequence)).scalars().all()
        self.assertEqual([(row.prefix, row.current_value) for row in rows], [('PUT-20260504', 4)])

    def test_approvals_in_one_transaction_get_distinct_tasks(self) -> None:
        first = self._submitted_session()
        second = self.start(po_id='PO-2')
        self.count(second['session']['id'], second['lines'][0]['id'], 2)
        submit_for_approval(self.db, session_id=second['session']['id'], actor_id=self.operator.id)
        self.db.commit()

        approved_first = approve_session(self.db, session_id=first['session']['id'], approver_id=self.manager.id)
        approved_second = approve_session(self.db, session_id=second['session']['id'], approver_id=self.manager.id)
        self.db.commit()

        self.assertNotEqual(
            approved_first['putaway_task']['task_number'],
            approved_second['putaway_task']['task_number'],
        )
        self.assertEqual(len(self.db.execute(select(WorkTask)).scalars().all()), 2)

    def test_approval_publishes_inventory_events_after_commit(self) -> None:
        payload = self._submitted_session()
        publisher = MagicMock()

        with patch('app.services.event_service.get_event_publisher', return_value=publisher):
            approve_session(self.db, session_id=payload['session']['id'], approver_id=self.manager.id)
            publisher.publish.assert_not_called()
            self.db.commit()

        published = [call.args[0] for call in publisher.publish.call_args_list]
        self.assertEqual([event.type for event in published], ['inventory:received', 'receiving:approved'])
        received = published[0].payload
        self.assertEqual(received['reference_type'], 'PURCHASE_ORDER')
        self.assertEqual(received['reference_id'], 'PO-1')
        self.assertEqual(received['quantity'], 5)
        self.assertEqual(received['location_id'], self.dock.id)
