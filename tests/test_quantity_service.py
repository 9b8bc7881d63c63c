from __future__ import annotations

from unittest.mock import patch

from sqlalchemy import update

from app.models import ReceivingSession
from app.services import quantity_service
from app.services.quantity_service import LineDelta, add_quantity, batch_update_quantities, set_quantity
from app.services.receiving_errors import (
    LockConflictError,
    NotFoundError,
    PreconditionFailedError,
    ValidationError,
    VersionConflictError,
)
from app.services.receiving_service import ExpectedItem, submit_for_approval
from tests.support import ReceivingDbTestCase


class QuantityServiceTests(ReceivingDbTestCase):
    def setUp(self) -> None:
        super().setUp()
        payload = self.start()
        self.session_id = payload['session']['id']
        self.line_id = payload['lines'][0]['id']

    def test_stale_version_is_rejected_then_retry_succeeds(self) -> None:
        first = batch_update_quantities(
            self.db,
            session_id=self.session_id,
            updates=[LineDelta(line_id=self.line_id, delta=7)],
            actor_id=self.operator.id,
            expected_version=1,
        )
        self.db.commit()
        self.assertEqual(first['version'], 2)

        with self.assertRaises(VersionConflictError) as ctx:
            batch_update_quantities(
                self.db,
                session_id=self.session_id,
                updates=[LineDelta(line_id=self.line_id, delta=3)],
                actor_id=self.operator.id,
                expected_version=1,
            )
        self.db.rollback()
        self.assertEqual(ctx.exception.expected, 1)
        self.assertEqual(ctx.exception.actual, 2)
        self.assertEqual(self.line_row(self.line_id).quantity_counted, 7)
        self.assertEqual(self.session_row(self.session_id).version, 2)

        retry = batch_update_quantities(
            self.db,
            session_id=self.session_id,
            updates=[LineDelta(line_id=self.line_id, delta=3)],
            actor_id=self.operator.id,
            expected_version=2,
        )
        self.db.commit()

        self.assertEqual(retry['version'], 3)
        self.assertEqual(retry['results'][0]['quantity_counted'], 10)
        self.assertTrue(retry['results'][0]['is_complete'])
        self.assertFalse(retry['results'][0]['is_overage'])

    def test_version_bumps_once_per_batch(self) -> None:
        payload = self.start(
            po_id='PO-2',
            items=[ExpectedItem(sku='A', product_name=None, quantity=2), ExpectedItem(sku='B', product_name=None, quantity=2)],
        )
        session_id = payload['session']['id']
        line_a, line_b = (line['id'] for line in payload['lines'])

        result = batch_update_quantities(
            self.db,
            session_id=session_id,
            updates=[LineDelta(line_id=line_a, delta=1), LineDelta(line_id=line_b, delta=3), LineDelta(line_id=line_a, delta=1)],
            actor_id=self.operator.id,
            expected_version=1,
        )
        self.db.commit()

        self.assertEqual(result['version'], 2)
        self.assertEqual(self.line_row(line_a).quantity_counted, 2)
        self.assertEqual(self.line_row(line_b).variance, 1)
        self.assertTrue(result['results'][1]['is_overage'])
        self.assertEqual(self.audit_actions(session_id).count('QUANTITY_UPDATED'), 3)

    def test_negative_delta_clamps_to_zero(self) -> None:
        self.count(self.session_id, self.line_id, 2)
        result = self.count(self.session_id, self.line_id, -5)

        self.assertEqual(result['results'][0]['quantity_counted'], 0)
        self.assertEqual(result['results'][0]['variance'], -10)
        self.assertEqual(result['results'][0]['remaining'], 10)

    def test_unknown_line_aborts_whole_batch(self) -> None:
        with self.assertRaises(NotFoundError):
            batch_update_quantities(
                self.db,
                session_id=self.session_id,
                updates=[LineDelta(line_id=self.line_id, delta=4), LineDelta(line_id=9999, delta=1)],
                actor_id=self.operator.id,
            )
        self.db.rollback()
        self.assertEqual(self.line_row(self.line_id).quantity_counted, 0)
        self.assertEqual(self.session_row(self.session_id).version, 1)

    def test_empty_batch_is_invalid(self) -> None:
        with self.assertRaises(ValidationError):
            batch_update_quantities(self.db, session_id=self.session_id, updates=[], actor_id=self.operator.id)

    def test_other_actor_blocked_by_live_lock(self) -> None:
        with self.assertRaises(LockConflictError):
            self.count(self.session_id, self.line_id, 1, actor_id=self.other_operator.id)

    def test_counting_refreshes_lock_after_takeover(self) -> None:
        self.age_lock(self.session_id, 6)
        self.count(self.session_id, self.line_id, 1, actor_id=self.other_operator.id)
        self.assertEqual(self.session_row(self.session_id).locked_by_principal_id, self.other_operator.id)

    def test_add_quantity_wraps_batch(self) -> None:
        result = add_quantity(self.db, session_id=self.session_id, line_id=self.line_id, delta=4, actor_id=self.operator.id)
        self.db.commit()
        self.assertTrue(result['success'])
        self.assertEqual(result['version'], 2)
        self.assertEqual(result['quantity_counted'], 4)
        self.assertEqual(result['line_id'], self.line_id)

    def test_set_quantity_overrides_and_bumps_version(self) -> None:
        self.count(self.session_id, self.line_id, 3)
        result = set_quantity(self.db, session_id=self.session_id, line_id=self.line_id, quantity=12, actor_id=self.operator.id)
        self.db.commit()

        self.assertEqual(result['quantity_counted'], 12)
        self.assertEqual(result['variance'], 2)
        self.assertEqual(result['version'], 3)
        self.assertIn('QUANTITY_SET', self.audit_actions(self.session_id))

    def test_set_quantity_rejects_negative(self) -> None:
        with self.assertRaises(ValidationError):
            set_quantity(self.db, session_id=self.session_id, line_id=self.line_id, quantity=-1, actor_id=self.operator.id)

    def test_counting_requires_in_progress(self) -> None:
        self.count(self.session_id, self.line_id, 1)
        submit_for_approval(self.db, session_id=self.session_id, actor_id=self.operator.id)
        self.db.commit()

        with self.assertRaises(PreconditionFailedError):
            self.count(self.session_id, self.line_id, 1)

    def test_set_quantity_blocked_by_live_lock(self) -> None:
        with self.assertRaises(LockConflictError):
            set_quantity(self.db, session_id=self.session_id, line_id=self.line_id, quantity=5, actor_id=self.other_operator.id)
        self.db.rollback()
        self.assertEqual(self.line_row(self.line_id).quantity_counted, 0)

    def test_set_quantity_requires_in_progress(self) -> None:
        self.count(self.session_id, self.line_id, 1)
        submit_for_approval(self.db, session_id=self.session_id, actor_id=self.operator.id)
        self.db.commit()

        with self.assertRaises(PreconditionFailedError):
            set_quantity(self.db, session_id=self.session_id, line_id=self.line_id, quantity=5, actor_id=self.operator.id)

    def test_version_moved_by_concurrent_writer_loses_batch(self) -> None:
        real_lines = quantity_service.get_session_lines

        def lines_after_concurrent_batch(db, *, session_id):
            with self.SessionFactory() as other:
                other.execute(
                    update(ReceivingSession)
                    .where(ReceivingSession.id == session_id)
                    .values(version=ReceivingSession.version + 1)
                )
                other.commit()
            return real_lines(db, session_id=session_id)

        with patch('app.services.quantity_service.get_session_lines', side_effect=lines_after_concurrent_batch):
            with self.assertRaises(VersionConflictError) as ctx:
                batch_update_quantities(
                    self.db,
                    session_id=self.session_id,
                    updates=[LineDelta(line_id=self.line_id, delta=4)],
                    actor_id=self.operator.id,
                )
        self.db.rollback()

        self.assertEqual(ctx.exception.expected, 1)
        self.assertEqual(ctx.exception.actual, 2)
        self.assertEqual(self.line_row(self.line_id).quantity_counted, 0)
        self.assertEqual(self.session_row(self.session_id).version, 2)
