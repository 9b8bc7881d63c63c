from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from app.models import (
    Base,
    Location,
    LocationType,
    Principal,
    PrincipalRole,
    ProductVariant,
    ReceivingLine,
    ReceivingSession,
)
from app.services.audit_service import RECEIVING_SESSION_ENTITY, list_entity_audit
from app.services.quantity_service import LineDelta, batch_update_quantities
from app.services.receiving_service import ExpectedItem, start_session


def make_engine():
    return create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )


class ReceivingDbTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        Base.metadata.create_all(self.engine)
        self.SessionFactory = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, class_=Session)
        self.db = self.SessionFactory()
        self.addCleanup(self.engine.dispose)
        self.addCleanup(self.db.close)

        self.operator = self.add_principal('receiver1', PrincipalRole.OPERATOR)
        self.other_operator = self.add_principal('receiver2', PrincipalRole.OPERATOR)
        self.manager = self.add_principal('manager', PrincipalRole.MANAGER)
        self.dock = self.add_location('Dock 1', LocationType.RECEIVING)
        self.db.commit()

    def add_principal(self, username: str, role: PrincipalRole) -> Principal:
        principal = Principal(username=username, display_name=username.title(), role=role, active=True)
        self.db.add(principal)
        self.db.flush()
        return principal

    def add_location(self, name: str, location_type: LocationType) -> Location:
        location = Location(name=name, type=location_type, barcode=f'LOC-{name.upper().replace(" ", "-")}', active=True)
        self.db.add(location)
        self.db.flush()
        return location

    def add_variant(self, sku: str, *, name: str | None = None, upc: str | None = None, barcode: str | None = None) -> ProductVariant:
        variant = ProductVariant(sku=sku, name=name or sku.title(), upc=upc, barcode=barcode, active=True)
        self.db.add(variant)
        self.db.flush()
        return variant

    def start(self, po_id: str = 'PO-1', items: list[ExpectedItem] | None = None, actor_id: int | None = None) -> dict:
        payload = start_session(
            self.db,
            po_id=po_id,
            po_reference=f'REF-{po_id}',
            expected_items=items or [ExpectedItem(sku='X', product_name='Widget X', quantity=10)],
            actor_id=actor_id or self.operator.id,
            vendor='Acme',
        )
        self.db.commit()
        return payload

    def count(self, session_id: int, line_id: int, delta: int, *, actor_id: int | None = None) -> dict:
        result = batch_update_quantities(
            self.db,
            session_id=session_id,
            updates=[LineDelta(line_id=line_id, delta=delta)],
            actor_id=actor_id or self.operator.id,
        )
        self.db.commit()
        return result

    def age_lock(self, session_id: int, minutes: int) -> None:
        receiving_session = self.db.get(ReceivingSession, session_id)
        receiving_session.locked_at = datetime.now(tz=timezone.utc) - timedelta(minutes=minutes)
        self.db.commit()

    def session_row(self, session_id: int) -> ReceivingSession:
        self.db.expire_all()
        return self.db.get(ReceivingSession, session_id)

    def line_row(self, line_id: int) -> ReceivingLine:
        self.db.expire_all()
        return self.db.get(ReceivingLine, line_id)

    def audit_actions(self, session_id: int) -> list[str]:
        rows = list_entity_audit(self.db, entity_type=RECEIVING_SESSION_ENTITY, entity_id=session_id)
        return [row.action for row in rows]
