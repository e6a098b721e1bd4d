'''
Payment recording. Every payment appends one immutable ledger row and moves
the student's fee status forward in the same transaction.
'''
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Annotated, Any, Optional, Union
from uuid import UUID

from fastapi import Depends
from pydantic import ValidationError
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database.engine import get_session_factory
from ..database.utils import read_session, transaction
from ..database import models as db_models
from ..database.db_enums import AuditActionEnum, FeeStatusEnum
from ..models import fees as fee_models
from ..core.fee_status import compute_status
from ..core.keys import derive_key
from ..common.config import settings
from ..common.exceptions import (
    ConcurrencyConflictError,
    FeeStructureMissingError,
    PaymentValidationError,
)
from ..common.time_utils import utc_now
from ..common.logger import log
from .account_service import AccountService
from .audit_service import AuditService
from .fee_structure_service import FeeStructureService


class PaymentRecorderService:
    """
    The only writer of payments, and the live-path owner of fee statuses.
    Concurrent payments on one student-period are serialized by the
    snapshot's version column; the loser retries the whole operation.
    """

    def __init__(
        self,
        session_factory: Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)],
        account_service: Annotated[AccountService, Depends(AccountService)],
        fee_structure_service: Annotated[FeeStructureService, Depends(FeeStructureService)],
        audit_service: Annotated[AuditService, Depends(AuditService)]
    ):
        self.session_factory = session_factory
        self.account_service = account_service
        self.fee_structure_service = fee_structure_service
        self.audit_service = audit_service
        self.max_attempts = settings.RECORD_PAYMENT_MAX_ATTEMPTS

    # --- 1. Validation Helpers ---

    def _validate_amount(self, amount: Any) -> Decimal:
        try:
            value = Decimal(str(amount))
        except (InvalidOperation, ValueError) as e:
            raise PaymentValidationError(f"Amount '{amount}' is not a number.") from e
        if not value.is_finite() or value <= 0:
            raise PaymentValidationError(f"Amount must be greater than zero, got {amount}.")
        return value.quantize(Decimal("0.01"))

    def _validate_details(self, details: Any) -> fee_models.PaymentDetails:
        if isinstance(details, fee_models.MethodDetailsBase):
            return details
        try:
            return fee_models.PaymentDetailsValidator.validate_python(details)
        except ValidationError as e:
            log.error(f"Payment details failed validation. Data: {details}, Error: {e}")
            raise PaymentValidationError(f"Invalid payment details: {e}") from e

    # --- 2. Receipt Numbers ---

    async def _allocate_receipt_number(self, session: AsyncSession, issued_at: datetime) -> str:
        """
        Increments this year's counter inside the caller's transaction, so the
        number is only consumed if the payment commits. Concurrent callers
        queue on the counter row; two racing first-of-the-year inserts end in
        an IntegrityError, which the caller retries.
        """
        year = str(issued_at.year)
        stmt = (
            update(db_models.ReceiptCounters)
            .where(db_models.ReceiptCounters.year == year)
            .values(last_number=db_models.ReceiptCounters.last_number + 1)
            .returning(db_models.ReceiptCounters.last_number)
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(stmt)
        number = result.scalar_one_or_none()
        if number is None:
            session.add(db_models.ReceiptCounters(year=year, prefix=settings.RECEIPT_PREFIX, last_number=1))
            await session.flush()
            number = 1
        return f"{settings.RECEIPT_PREFIX}/{year}/{number:05d}"

    # --- 3. Writes ---

    async def _new_snapshot(
        self,
        account: db_models.Students,
        period: fee_models.BillingPeriod,
        key: str
    ) -> db_models.FeeStatusSnapshots:
        resolved = await self.fee_structure_service.resolve_total_due(account, period)
        if resolved is None:
            raise FeeStructureMissingError(
                f"No fee structure for student {account.id} in {period.term} {period.session}. "
                "Please set up the fee structure first."
            )
        total_due, due_date = resolved
        balance, status = compute_status(total_due, Decimal("0"))
        now = utc_now()
        return db_models.FeeStatusSnapshots(
            id=key,
            student_id=account.id,
            term=period.term,
            session=period.session,
            class_id=account.class_id,
            total_due=total_due,
            total_paid=Decimal("0"),
            balance=balance,
            status=status.value,
            due_date=due_date,
            days_overdue=0,
            last_updated=now,
            created_at=now,
        )

    async def _record_once(
        self,
        account: db_models.Students,
        period: fee_models.BillingPeriod,
        amount: Decimal,
        details: fee_models.PaymentDetails,
        recorded_by: str,
        payment_date: Optional[datetime],
        notes: Optional[str]
    ) -> tuple[db_models.FeeStatusSnapshots, db_models.PaymentEvents]:
        key = period.key_for(account.id)
        async with transaction(self.session_factory) as session:
            snapshot = await session.get(db_models.FeeStatusSnapshots, key)
            if snapshot is None:
                snapshot = await self._new_snapshot(account, period, key)
                session.add(snapshot)

            now = utc_now()
            receipt_number = await self._allocate_receipt_number(session, now)
            detail_fields = details.model_dump(mode="json", exclude={"method"})
            payment = db_models.PaymentEvents(
                student_id=account.id,
                term=period.term,
                session=period.session,
                period_key=key,
                amount=amount,
                method=details.method,
                details=detail_fields,
                payment_date=payment_date or now,
                receipt_number=receipt_number,
                recorded_by=recorded_by,
                notes=notes,
                created_at=now,
            )
            session.add(payment)
            await session.flush()

            new_total = Decimal(snapshot.total_paid) + amount
            balance, status = compute_status(snapshot.total_due, new_total, snapshot.status)
            snapshot.total_paid = new_total
            snapshot.balance = balance
            snapshot.status = status.value
            snapshot.last_payment_id = payment.id
            snapshot.last_payment_date = payment.payment_date
            snapshot.last_payment_amount = amount
            snapshot.last_updated = now
            if status == FeeStatusEnum.PAID:
                snapshot.days_overdue = 0
            # the UPDATE carries "WHERE version = <read version>"
            await session.flush()
        return snapshot, payment

    async def record_payment(
        self,
        account_id: UUID,
        period: fee_models.BillingPeriod,
        amount: Union[Decimal, int, str],
        details: Union[dict, fee_models.PaymentDetails],
        recorded_by: str,
        payment_date: Optional[datetime] = None,
        notes: Optional[str] = None
    ) -> tuple[fee_models.FeeStatusRead, str]:
        """
        Records a payment and returns (updated fee status, receipt number).

        Raises PaymentValidationError / AccountNotFoundError for bad input,
        FeeStructureMissingError when the first payment of a period has no
        fee structure to price it, ConcurrencyConflictError when every retry
        lost the race, StorageUnavailableError when the database is down.
        """
        log.info(f"Recording payment of {amount} for student {account_id} ({period.term} {period.session}) by {recorded_by}.")
        value = self._validate_amount(amount)
        method_details = self._validate_details(details)
        account = await self.account_service.resolve_account(account_id)

        for attempt in range(1, self.max_attempts + 1):
            try:
                snapshot, payment = await self._record_once(
                    account, period, value, method_details, recorded_by, payment_date, notes
                )
                break
            except ConcurrencyConflictError:
                log.warning(f"Payment for {account_id} lost a concurrent race (attempt {attempt}/{self.max_attempts}).")
                if attempt == self.max_attempts:
                    raise

        log.info(f"Payment recorded: {payment.receipt_number} ({snapshot.id} now {snapshot.status}, balance {snapshot.balance}).")
        await self.audit_service.emit(
            AuditActionEnum.PAYMENT_RECORDED,
            entity_type="fee_payment",
            entity_id=str(payment.id),
            actor=recorded_by,
            details={
                "student_id": account.id,
                "fee_status_id": snapshot.id,
                "receipt_number": payment.receipt_number,
                "amount": value,
                "method": payment.method,
            }
        )
        return fee_models.FeeStatusRead.model_validate(snapshot), payment.receipt_number

    async def record_payment_for_api(self, payment_data: dict) -> fee_models.PaymentReceipt:
        """Validates a raw request body and records it."""
        try:
            input_model = fee_models.PaymentCreate.model_validate(payment_data)
            period = fee_models.BillingPeriod(term=input_model.term, session=input_model.session)
        except ValidationError as e:
            log.error(f"Pydantic validation failed for payment. Data: {payment_data}, Error: {e}")
            raise PaymentValidationError(f"Invalid payment: {e}") from e

        fee_status, receipt_number = await self.record_payment(
            input_model.student_id,
            period,
            input_model.amount,
            input_model.details,
            input_model.recorded_by,
            payment_date=input_model.payment_date,
            notes=input_model.notes,
        )
        return fee_models.PaymentReceipt(
            payment_id=fee_status.last_payment_id,
            receipt_number=receipt_number,
            fee_status=fee_status,
        )

    async def open_fee_status(self, account_id: UUID, period: fee_models.BillingPeriod) -> fee_models.FeeStatusRead:
        """
        Establishes a zero-paid fee status priced from the fee structure.
        Existing fee statuses are returned untouched.
        """
        account = await self.account_service.resolve_account(account_id)
        key = period.key_for(account.id)
        try:
            async with transaction(self.session_factory) as session:
                snapshot = await session.get(db_models.FeeStatusSnapshots, key)
                if snapshot is None:
                    snapshot = await self._new_snapshot(account, period, key)
                    session.add(snapshot)
                    log.info(f"Opened fee status {key} with total due {snapshot.total_due}.")
        except ConcurrencyConflictError:
            # a payment created it first
            async with read_session(self.session_factory) as session:
                snapshot = await session.get(db_models.FeeStatusSnapshots, key)
            if snapshot is None:
                raise
        return fee_models.FeeStatusRead.model_validate(snapshot)

    async def open_class_fee_statuses(self, class_id: str, period: fee_models.BillingPeriod) -> int:
        """
        Opens a fee status for every active student in the class.
        Returns how many were newly created.
        """
        students = await self.account_service.list_active_in_class(class_id)
        opened = 0
        async with read_session(self.session_factory) as session:
            keys = [period.key_for(student.id) for student in students]
            existing = set()
            if keys:
                result = await session.execute(
                    select(db_models.FeeStatusSnapshots.id).filter(db_models.FeeStatusSnapshots.id.in_(keys))
                )
                existing = set(result.scalars().all())
        for student in students:
            if period.key_for(student.id) in existing:
                continue
            await self.open_fee_status(student.id, period)
            opened += 1
        log.info(f"Opened {opened} fee statuses for class {class_id} ({len(students)} active students).")
        return opened

    # --- 4. Reads ---

    async def list_payments(
        self,
        account_id: UUID,
        period: Optional[fee_models.BillingPeriod] = None
    ) -> list[fee_models.PaymentRead]:
        """Payment history of a student, newest first, optionally limited to one period."""
        async with read_session(self.session_factory) as session:
            stmt = select(db_models.PaymentEvents).filter(
                db_models.PaymentEvents.student_id == account_id
            ).order_by(db_models.PaymentEvents.payment_date.desc(), db_models.PaymentEvents.created_at.desc())
            result = await session.execute(stmt)
            payments = list(result.scalars().all())

        if period is not None:
            wanted = period.key_for(account_id)
            payments = [p for p in payments if derive_key(p.student_id, p.term, p.session) == wanted]
        return [self._format_payment_for_api(p) for p in payments]

    def _format_payment_for_api(self, payment: db_models.PaymentEvents) -> fee_models.PaymentRead:
        if type(payment) != db_models.PaymentEvents:
            raise TypeError(f"payment must be type {db_models.PaymentEvents}, instead got {type(payment)}")
        return fee_models.PaymentRead(
            id=payment.id,
            student_id=payment.student_id,
            term=payment.term,
            session=payment.session,
            amount=payment.amount,
            method=payment.method,
            details={"method": payment.method, **(payment.details or {})},
            payment_date=payment.payment_date,
            receipt_number=payment.receipt_number,
            recorded_by=payment.recorded_by,
            notes=payment.notes,
        )
