'''
Pydantic models for the fee ledger API and services.
'''
from datetime import datetime
from decimal import Decimal
from typing import Optional, Literal, Annotated, Union
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, StringConstraints, TypeAdapter, computed_field, field_validator

from ..database.db_enums import PaymentMethodEnum, FeeStatusEnum, FeeCategoryEnum
from ..core.keys import derive_key


# --- 1. Billing Period ---

# Term and session text as it arrives in request bodies
PeriodText = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

class BillingPeriod(BaseModel):
    """
    A term inside an academic session, e.g. ("first", "2025/2026").
    The raw spelling is kept for display; keys are normalized.
    """
    term: str = Field(min_length=1)
    session: str = Field(min_length=1)

    model_config = ConfigDict(frozen=True)

    @field_validator('term', 'session')
    @classmethod
    def _not_blank(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("must not be blank")
        return value.strip()

    def key_for(self, account_id: UUID) -> str:
        return derive_key(account_id, self.term, self.session)


# --- 2. Payment Method Details (closed tagged variant) ---

class MethodDetailsBase(BaseModel):
    model_config = ConfigDict(extra='forbid', frozen=True)

class CashDetails(MethodDetailsBase):
    method: Literal[PaymentMethodEnum.CASH.value]

class BankTransferDetails(MethodDetailsBase):
    method: Literal[PaymentMethodEnum.BANK_TRANSFER.value]
    bank_name: str = Field(min_length=1)
    account_name: str = Field(min_length=1)
    payment_reference: str = Field(min_length=1)

class PosDetails(MethodDetailsBase):
    method: Literal[PaymentMethodEnum.POS.value]
    payment_reference: str = Field(min_length=1)

class ChequeDetails(MethodDetailsBase):
    method: Literal[PaymentMethodEnum.CHEQUE.value]
    cheque_number: str = Field(min_length=1)
    bank_name: str = Field(min_length=1)

class CardDetails(MethodDetailsBase):
    method: Literal[PaymentMethodEnum.CARD.value]
    payment_reference: str = Field(min_length=1)

class PaystackDetails(MethodDetailsBase):
    method: Literal[PaymentMethodEnum.PAYSTACK.value]
    payment_reference: str = Field(min_length=1)

class OtherDetails(MethodDetailsBase):
    method: Literal[PaymentMethodEnum.OTHER.value]
    description: str = Field(min_length=1)

PaymentDetails = Annotated[
    Union[
        CashDetails, BankTransferDetails, PosDetails, ChequeDetails,
        CardDetails, PaystackDetails, OtherDetails
    ],
    Field(discriminator='method')
]

# The services validate raw dictionaries through this adapter.
PaymentDetailsValidator = TypeAdapter(PaymentDetails)


# --- 3. API Input Models (for POST) ---

class PaymentCreate(BaseModel):
    """
    Validates the request body for recording a fee payment.
    """
    student_id: UUID
    term: PeriodText
    session: PeriodText
    amount: Decimal
    details: PaymentDetails
    recorded_by: str = Field(min_length=1)
    payment_date: Optional[datetime] = None
    notes: Optional[str] = None

class FeeItemInput(BaseModel):
    category: FeeCategoryEnum
    description: str
    amount: Decimal = Field(ge=0)
    is_mandatory: bool = True

class FeeStructureCreate(BaseModel):
    """
    Validates the request body for setting a class fee structure.
    """
    class_id: str = Field(min_length=1)
    class_name: Optional[str] = None
    term: PeriodText
    session: PeriodText
    items: list[FeeItemInput] = Field(min_length=1)
    due_date: datetime
    created_by: str = Field(min_length=1)


# --- 4. API Output Models (for GET) ---

class PaymentRead(BaseModel):
    id: UUID
    student_id: UUID
    term: str
    session: str
    amount: Decimal
    method: PaymentMethodEnum
    details: dict
    payment_date: datetime
    receipt_number: str
    recorded_by: str
    notes: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)

class FeeStatusRead(BaseModel):
    """
    The fast-read balance/status of one student-period.
    """
    id: str
    student_id: UUID
    term: str
    session: str
    class_id: Optional[str] = None
    total_due: Decimal
    total_paid: Decimal
    balance: Decimal
    status: FeeStatusEnum
    last_payment_id: Optional[UUID] = None
    last_payment_date: Optional[datetime] = None
    last_payment_amount: Optional[Decimal] = None
    due_date: Optional[datetime] = None
    days_overdue: int = 0
    version: int
    last_updated: datetime

    model_config = ConfigDict(from_attributes=True)

    @computed_field
    @property
    def is_overdue(self) -> bool:
        return self.status == FeeStatusEnum.OVERDUE

class PaymentReceipt(BaseModel):
    """Returned after a successful payment."""
    payment_id: UUID
    receipt_number: str
    fee_status: FeeStatusRead

class FeeStructureRead(BaseModel):
    id: str
    class_id: str
    class_name: Optional[str] = None
    term: str
    session: str
    items: list[FeeItemInput]
    total_amount: Decimal
    due_date: datetime
    created_by: str

    model_config = ConfigDict(from_attributes=True)


# --- 5. Batch Job Reports ---

class AccountRange(BaseModel):
    """
    Half-open range of student IDs [start, end). None means unbounded.
    Ranges never share a student, so they never share a fee status key.
    """
    start: Optional[UUID] = None
    end: Optional[UUID] = None

    model_config = ConfigDict(frozen=True)

    def contains(self, account_id: UUID) -> bool:
        if self.start is not None and account_id < self.start:
            return False
        if self.end is not None and account_id >= self.end:
            return False
        return True

class ReconciliationReport(BaseModel):
    scanned: int = 0
    groups: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    contended: int = 0
    batches_committed: int = 0
    cancelled: bool = False
    dry_run: bool = False
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @computed_field
    @property
    def writes(self) -> int:
        return self.created + self.updated

    def merge(self, other: 'ReconciliationReport') -> 'ReconciliationReport':
        """Sums two shard reports."""
        starts = [s for s in (self.started_at, other.started_at) if s is not None]
        ends = [e for e in (self.finished_at, other.finished_at) if e is not None]
        return ReconciliationReport(
            scanned=self.scanned + other.scanned,
            groups=self.groups + other.groups,
            created=self.created + other.created,
            updated=self.updated + other.updated,
            skipped=self.skipped + other.skipped,
            contended=self.contended + other.contended,
            batches_committed=self.batches_committed + other.batches_committed,
            cancelled=self.cancelled or other.cancelled,
            dry_run=self.dry_run and other.dry_run,
            started_at=min(starts) if starts else None,
            finished_at=max(ends) if ends else None,
        )

class OverdueSweepReport(BaseModel):
    scanned: int = 0
    flagged: int = 0
    refreshed: int = 0
    contended: int = 0
