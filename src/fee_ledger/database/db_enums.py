'''
Static enums shared by the ORM models and the API models.
'''
import enum


class ListableEnum(str, enum.Enum):
    """A custom Enum base class that can list all member values."""
    @classmethod
    def get_all_names(cls) -> list[str]:
        return [member.value for member in cls]


class PaymentMethodEnum(ListableEnum):
    CASH = "cash"
    BANK_TRANSFER = "bank_transfer"
    POS = "pos"
    CHEQUE = "cheque"
    CARD = "card"
    PAYSTACK = "paystack"
    OTHER = "other"


class FeeStatusEnum(ListableEnum):
    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


class FeeCategoryEnum(ListableEnum):
    TUITION = "tuition"
    DEVELOPMENT = "development"
    SPORTS = "sports"
    LIBRARY = "library"
    EXAM = "exam"
    TRANSPORT = "transport"
    UNIFORM = "uniform"
    BOOKS = "books"
    EXCURSION = "excursion"
    OTHER = "other"


class AuditActionEnum(ListableEnum):
    PAYMENT_RECORDED = "payment.recorded"
    FEE_STRUCTURE_SET = "fee_structure.set"
    RECONCILIATION_COMPLETED = "reconciliation.completed"
    RECONCILIATION_FAILED = "reconciliation.failed"
    OVERDUE_FLAGGED = "fee_status.overdue_flagged"
