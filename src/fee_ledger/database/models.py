from typing import Optional

from sqlalchemy import (
    JSON, Boolean, CheckConstraint, DateTime, Enum, ForeignKeyConstraint, Index,
    Integer, Numeric, PrimaryKeyConstraint, String, Text, UniqueConstraint, Uuid, event
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
import datetime
import decimal
import uuid

from .db_enums import PaymentMethodEnum, FeeStatusEnum
from ..common.time_utils import utc_now

JSONVariant = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    pass


class Students(Base):
    """Account directory row. Owned by the student management side of the platform."""
    __tablename__ = 'students'
    __table_args__ = (
        PrimaryKeyConstraint('id', name='students_pkey'),
        Index('idx_students_class', 'class_id'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    first_name: Mapped[Optional[str]] = mapped_column(String(100))
    last_name: Mapped[Optional[str]] = mapped_column(String(100))
    class_id: Mapped[Optional[str]] = mapped_column(String(64))
    class_name: Mapped[Optional[str]] = mapped_column(String(100))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(True), default=utc_now)

    payments: Mapped[list['PaymentEvents']] = relationship('PaymentEvents', back_populates='student')


class FeeStructures(Base):
    __tablename__ = 'fee_structures'
    __table_args__ = (
        PrimaryKeyConstraint('id', name='fee_structures_pkey'),
        CheckConstraint('total_amount >= 0', name='fee_structures_non_negative_total'),
    )

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    class_id: Mapped[str] = mapped_column(String(64))
    class_name: Mapped[Optional[str]] = mapped_column(String(100))
    term: Mapped[str] = mapped_column(String(50))
    session: Mapped[str] = mapped_column(String(50))
    items: Mapped[list] = mapped_column(JSONVariant, default=list)
    total_amount: Mapped[decimal.Decimal] = mapped_column(Numeric(12, 2))
    due_date: Mapped[datetime.datetime] = mapped_column(DateTime(True))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    created_by: Mapped[str] = mapped_column(String(100))
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(True), default=utc_now)
    updated_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(True))


class PaymentEvents(Base):
    """
    The ledger. One row per payment, append-only.
    `period_key` is what the recorder derived at write time; reconciliation
    re-derives it from term/session instead of trusting it.
    """
    __tablename__ = 'fee_payments'
    __table_args__ = (
        ForeignKeyConstraint(['student_id'], ['students.id'], name='fee_payments_student_id_fkey'),
        PrimaryKeyConstraint('id', name='fee_payments_pkey'),
        UniqueConstraint('receipt_number', name='fee_payments_receipt_number_key'),
        CheckConstraint('amount > 0', name='fee_payments_positive_amount'),
        Index('idx_fee_payments_student', 'student_id'),
        Index('idx_fee_payments_period_key', 'period_key'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    term: Mapped[str] = mapped_column(String(50))
    session: Mapped[str] = mapped_column(String(50))
    period_key: Mapped[str] = mapped_column(String(200))
    amount: Mapped[decimal.Decimal] = mapped_column(Numeric(12, 2))
    method: Mapped[str] = mapped_column(Enum(*PaymentMethodEnum.get_all_names(), name='payment_method_enum'))
    details: Mapped[dict] = mapped_column(JSONVariant, default=dict)
    payment_date: Mapped[datetime.datetime] = mapped_column(DateTime(True), default=utc_now)
    receipt_number: Mapped[str] = mapped_column(String(32))
    recorded_by: Mapped[str] = mapped_column(String(100))
    notes: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(True), default=utc_now)

    student: Mapped['Students'] = relationship('Students', back_populates='payments')


@event.listens_for(PaymentEvents, 'before_update')
def _refuse_payment_update(mapper, connection, target):
    raise ValueError(f"Payment {target.id} is immutable and cannot be updated.")


@event.listens_for(PaymentEvents, 'before_delete')
def _refuse_payment_delete(mapper, connection, target):
    raise ValueError(f"Payment {target.id} is immutable and cannot be deleted.")


class FeeStatusSnapshots(Base):
    """
    Materialized balance/status per student-period, read by every dashboard.
    `version` is bumped on every write and checked on every ORM update.
    """
    __tablename__ = 'student_fee_status'
    __table_args__ = (
        ForeignKeyConstraint(['student_id'], ['students.id'], name='student_fee_status_student_id_fkey'),
        PrimaryKeyConstraint('id', name='student_fee_status_pkey'),
        CheckConstraint('balance >= 0', name='student_fee_status_non_negative_balance'),
        Index('idx_student_fee_status_student', 'student_id'),
        Index('idx_student_fee_status_period', 'term', 'session'),
    )

    id: Mapped[str] = mapped_column(String(200), primary_key=True)
    student_id: Mapped[uuid.UUID] = mapped_column(Uuid)
    term: Mapped[str] = mapped_column(String(50))
    session: Mapped[str] = mapped_column(String(50))
    class_id: Mapped[Optional[str]] = mapped_column(String(64))
    total_due: Mapped[decimal.Decimal] = mapped_column(Numeric(12, 2))
    total_paid: Mapped[decimal.Decimal] = mapped_column(Numeric(12, 2), default=decimal.Decimal("0"))
    balance: Mapped[decimal.Decimal] = mapped_column(Numeric(12, 2))
    status: Mapped[str] = mapped_column(
        Enum(*FeeStatusEnum.get_all_names(), name='fee_status_enum'),
        default=FeeStatusEnum.UNPAID.value
    )
    last_payment_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    last_payment_date: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(True))
    last_payment_amount: Mapped[Optional[decimal.Decimal]] = mapped_column(Numeric(12, 2))
    due_date: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(True))
    days_overdue: Mapped[int] = mapped_column(Integer, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    last_updated: Mapped[datetime.datetime] = mapped_column(DateTime(True), default=utc_now)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(True), default=utc_now)

    __mapper_args__ = {"version_id_col": version}


class ReceiptCounters(Base):
    """One row per receipt year; `last_number` is incremented inside the payment transaction."""
    __tablename__ = 'receipt_counters'
    __table_args__ = (
        PrimaryKeyConstraint('year', name='receipt_counters_pkey'),
    )

    year: Mapped[str] = mapped_column(String(4), primary_key=True)
    prefix: Mapped[str] = mapped_column(String(10))
    last_number: Mapped[int] = mapped_column(Integer, default=0)


class AuditEvents(Base):
    __tablename__ = 'audit_events'
    __table_args__ = (
        PrimaryKeyConstraint('id', name='audit_events_pkey'),
        Index('idx_audit_events_entity', 'entity_type', 'entity_id'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    action: Mapped[str] = mapped_column(String(64))
    entity_type: Mapped[str] = mapped_column(String(64))
    entity_id: Mapped[Optional[str]] = mapped_column(String(200))
    actor: Mapped[Optional[str]] = mapped_column(String(100))
    details: Mapped[dict] = mapped_column(JSONVariant, default=dict)
    success: Mapped[bool] = mapped_column(Boolean, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(True), default=utc_now)
