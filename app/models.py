from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Text,
    func,
    text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigIntPK = BigInteger().with_variant(Integer, 'sqlite')


class Base(DeclarativeBase):
    pass


class PrincipalRole(str, Enum):
    ADMIN = 'ADMIN'
    MANAGER = 'MANAGER'
    LEAD = 'LEAD'
    OPERATOR = 'OPERATOR'


class LocationType(str, Enum):
    RECEIVING = 'RECEIVING'
    STORAGE = 'STORAGE'
    PICKING = 'PICKING'
    STAGING = 'STAGING'


class ReceivingSessionStatus(str, Enum):
    IN_PROGRESS = 'IN_PROGRESS'
    SUBMITTED = 'SUBMITTED'
    APPROVED = 'APPROVED'
    REJECTED = 'REJECTED'


ACTIVE_SESSION_STATUSES = (ReceivingSessionStatus.IN_PROGRESS, ReceivingSessionStatus.SUBMITTED)
ACTIVE_STATUS_SQL = "status IN ('IN_PROGRESS', 'SUBMITTED')"


class ReceivingExceptionType(str, Enum):
    DAMAGED = 'DAMAGED'
    WRONG_ITEM = 'WRONG_ITEM'
    MISSING = 'MISSING'
    OVERAGE = 'OVERAGE'


class InventoryUnitStatus(str, Enum):
    AVAILABLE = 'AVAILABLE'
    RESERVED = 'RESERVED'
    QUARANTINE = 'QUARANTINE'


class WorkTaskType(str, Enum):
    PUTAWAY = 'PUTAWAY'


class WorkTaskStatus(str, Enum):
    PENDING = 'PENDING'
    IN_PROGRESS = 'IN_PROGRESS'
    COMPLETED = 'COMPLETED'
    CANCELLED = 'CANCELLED'


class Principal(Base):
    __tablename__ = 'principals'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    username: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    display_name: Mapped[str | None] = mapped_column(Text)
    role: Mapped[PrincipalRole] = mapped_column(SQLEnum(PrincipalRole, name='principal_role'), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Location(Base):
    __tablename__ = 'locations'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    barcode: Mapped[str | None] = mapped_column(Text, unique=True)
    type: Mapped[LocationType] = mapped_column(SQLEnum(LocationType, name='location_type'), nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ProductVariant(Base):
    __tablename__ = 'product_variants'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    sku: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    upc: Mapped[str | None] = mapped_column(Text, index=True)
    barcode: Mapped[str | None] = mapped_column(Text, index=True)
    image_url: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ReceivingSession(Base):
    __tablename__ = 'receiving_sessions'
    __table_args__ = (
        CheckConstraint('version >= 1', name='receiving_sessions_version_ck'),
        Index('ix_receiving_sessions_po_status', 'po_id', 'status'),
        Index(
            'uq_receiving_sessions_active_po',
            'po_id',
            unique=True,
            postgresql_where=text(ACTIVE_STATUS_SQL),
            sqlite_where=text(ACTIVE_STATUS_SQL),
        ),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    po_id: Mapped[str] = mapped_column(Text, nullable=False)
    po_reference: Mapped[str] = mapped_column(Text, nullable=False)
    vendor: Mapped[str | None] = mapped_column(Text)
    status: Mapped[ReceivingSessionStatus] = mapped_column(
        SQLEnum(ReceivingSessionStatus, name='receiving_session_status'),
        nullable=False,
        default=ReceivingSessionStatus.IN_PROGRESS,
        server_default='IN_PROGRESS',
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default='1')
    locked_by_principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    locked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    counted_by_principal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    receiving_location_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('locations.id'), nullable=False)
    assigned_to_principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    submitted_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    approved_by_principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    rejected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    rejected_by_principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    rejection_reason: Mapped[str | None] = mapped_column(Text)
    putaway_task_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('work_tasks.id'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class ReceivingLine(Base):
    __tablename__ = 'receiving_lines'
    __table_args__ = (
        CheckConstraint('quantity_counted >= 0', name='receiving_lines_counted_non_negative_ck'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    session_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('receiving_sessions.id', ondelete='CASCADE'), nullable=False, index=True
    )
    sku: Mapped[str] = mapped_column(Text, nullable=False)
    product_name: Mapped[str] = mapped_column(Text, nullable=False)
    product_variant_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('product_variants.id'))
    quantity_expected: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_counted: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    quantity_damaged: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    variance: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    lot_number: Mapped[str | None] = mapped_column(Text)
    expiry_date: Mapped[date | None] = mapped_column(Date)
    generated_barcode: Mapped[str | None] = mapped_column(Text, index=True)
    scan_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    last_scanned_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    @property
    def remaining(self) -> int:
        return max(0, self.quantity_expected - self.quantity_counted)

    @property
    def is_complete(self) -> bool:
        return self.quantity_counted >= self.quantity_expected

    @property
    def is_overage(self) -> bool:
        return self.quantity_counted > self.quantity_expected


class ReceivingException(Base):
    __tablename__ = 'receiving_exceptions'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    session_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('receiving_sessions.id', ondelete='CASCADE'), nullable=False, index=True
    )
    line_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey('receiving_lines.id', ondelete='CASCADE'), nullable=False, index=True
    )
    type: Mapped[ReceivingExceptionType] = mapped_column(
        SQLEnum(ReceivingExceptionType, name='receiving_exception_type'), nullable=False
    )
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text)
    photo_url: Mapped[str | None] = mapped_column(Text)
    reported_by_principal_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('principals.id'), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'
    __table_args__ = (
        Index('ix_audit_log_entity', 'entity_type', 'entity_id'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    entity_type: Mapped[str] = mapped_column(Text, nullable=False)
    entity_id: Mapped[int | None] = mapped_column(BigInteger)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    actor_principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class InventoryUnit(Base):
    __tablename__ = 'inventory_units'
    __table_args__ = (
        Index('ix_inventory_units_variant_location_lot', 'product_variant_id', 'location_id', 'lot_number'),
    )

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    product_variant_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('product_variants.id'), nullable=False)
    location_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('locations.id'), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[InventoryUnitStatus] = mapped_column(
        SQLEnum(InventoryUnitStatus, name='inventory_unit_status'),
        nullable=False,
        default=InventoryUnitStatus.AVAILABLE,
        server_default='AVAILABLE',
    )
    lot_number: Mapped[str | None] = mapped_column(Text)
    expiry_date: Mapped[date | None] = mapped_column(Date)
    received_from: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WorkTask(Base):
    __tablename__ = 'work_tasks'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    task_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    type: Mapped[WorkTaskType] = mapped_column(SQLEnum(WorkTaskType, name='work_task_type'), nullable=False)
    status: Mapped[WorkTaskStatus] = mapped_column(
        SQLEnum(WorkTaskStatus, name='work_task_status'),
        nullable=False,
        default=WorkTaskStatus.PENDING,
        server_default='PENDING',
    )
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    source_type: Mapped[str | None] = mapped_column(Text)
    source_id: Mapped[int | None] = mapped_column(BigInteger)
    po_reference: Mapped[str | None] = mapped_column(Text)
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    completed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    notes: Mapped[str | None] = mapped_column(Text)
    created_by_principal_id: Mapped[int | None] = mapped_column(BigInteger, ForeignKey('principals.id'))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WorkTaskSequence(Base):
    __tablename__ = 'work_task_sequences'

    # Task number prefix, e.g. PUT-20260504.
    prefix: Mapped[str] = mapped_column(Text, primary_key=True)
    current_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')


class WorkTaskItem(Base):
    __tablename__ = 'work_task_items'

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    task_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('work_tasks.id', ondelete='CASCADE'), nullable=False, index=True)
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    product_variant_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('product_variants.id'), nullable=False)
    inventory_unit_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('inventory_units.id'), nullable=False)
    location_id: Mapped[int] = mapped_column(BigInteger, ForeignKey('locations.id'), nullable=False)
    quantity_required: Mapped[int] = mapped_column(Integer, nullable=False)
    quantity_completed: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    status: Mapped[WorkTaskStatus] = mapped_column(
        SQLEnum(WorkTaskStatus, name='work_task_status'),
        nullable=False,
        default=WorkTaskStatus.PENDING,
        server_default='PENDING',
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
