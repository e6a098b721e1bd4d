"""
This file contains custom, application-specific exceptions.
"""
from typing import Any


class FeeLedgerError(Exception):
    """Base class for every error raised by the fee ledger."""
    pass

class PaymentValidationError(FeeLedgerError):
    """Raised when a payment request is invalid (bad amount, bad details, unknown account)."""
    pass

class AccountNotFoundError(PaymentValidationError):
    """Raised when the account directory cannot resolve a student ID."""
    pass

class FeeStructureMissingError(FeeLedgerError):
    """Raised when no total due can be resolved for a student-period without a snapshot."""
    pass

class ConcurrencyConflictError(FeeLedgerError):
    """Raised when a concurrent writer won the race on the same fee status. Retry the whole call."""
    pass

class StorageUnavailableError(FeeLedgerError):
    """Raised when the database cannot be reached. Nothing was written."""
    pass

class ReconciliationBatchError(FeeLedgerError):
    """
    Raised when a reconciliation batch keeps failing.
    Carries the progress report so a rerun is informed.
    """
    def __init__(self, message: str, report: Any):
        super().__init__(message)
        self.report = report
