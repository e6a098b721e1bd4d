'''
Pure balance/status rules shared by the payment recorder and the
reconciliation engine.
'''
from decimal import Decimal
from typing import Optional

from ..database.db_enums import FeeStatusEnum

ZERO = Decimal("0")


def compute_balance(total_due: Decimal, total_paid: Decimal) -> Decimal:
    """Outstanding balance. Overpayment never produces a negative balance."""
    return max(ZERO, Decimal(total_due) - Decimal(total_paid))


def compute_status(
    total_due: Decimal,
    total_paid: Decimal,
    current_status: Optional[FeeStatusEnum] = None
) -> tuple[Decimal, FeeStatusEnum]:
    """
    Returns (balance, status) for the given amounts.

    `overdue` is set from outside (it depends on the due date, not on the
    amounts), so it is only left once the balance is cleared.
    """
    balance = compute_balance(total_due, total_paid)
    if balance <= ZERO:
        return balance, FeeStatusEnum.PAID
    if current_status is not None and FeeStatusEnum(current_status) == FeeStatusEnum.OVERDUE:
        return balance, FeeStatusEnum.OVERDUE
    if Decimal(total_paid) > ZERO:
        return balance, FeeStatusEnum.PARTIAL
    return balance, FeeStatusEnum.UNPAID
