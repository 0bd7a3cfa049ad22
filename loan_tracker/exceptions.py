"""Exception hierarchy for loan tracking and payment recording."""

from typing import List, Optional


class LoanTrackerError(Exception):
    """Base exception for all loan tracker errors."""


class ConfigurationError(LoanTrackerError):
    """Raised when configuration is invalid or missing."""


class LoanValidationError(LoanTrackerError):
    """Raised when loan terms supplied at creation are invalid."""


class LoanNotFoundError(LoanTrackerError):
    """Raised when a loan does not exist or belongs to another user."""


class LoanNotPayableError(LoanTrackerError):
    """Raised when a payment is submitted against a loan that is not active."""


class SubmissionInProgressError(LoanTrackerError):
    """Raised when a second payment is submitted while one is being recorded."""


class DuplicateRecordError(LoanTrackerError):
    """Raised when an insert collides with an existing record id."""

    def __init__(self, table: str, record_id: str):
        self.table = table
        self.record_id = record_id
        super().__init__(f"Record {record_id} already exists in {table}")


class PaymentValidationError(LoanTrackerError):
    """Raised when a payment form fails business rules. Nothing is written."""

    def __init__(self, errors: List[str]):
        self.errors = list(errors)
        super().__init__(". ".join(self.errors))


class ProofUploadError(LoanTrackerError):
    """Raised when the proof-of-payment upload fails. Nothing is written."""


class PaymentPersistenceError(LoanTrackerError):
    """
    Raised when writing the payment, its interest expense or the loan fails.

    payment_recorded tells the caller whether a LoanPayment row survived the
    failure and needs reconciliation.
    """

    def __init__(
        self,
        message: str,
        loan_id: str,
        payment_number: Optional[int] = None,
        stage: str = "payment",
        payment_recorded: bool = False,
        payment_id: Optional[str] = None
    ):
        self.loan_id = loan_id
        self.payment_number = payment_number
        self.stage = stage
        self.payment_recorded = payment_recorded
        self.payment_id = payment_id
        super().__init__(message)


class LoanBalanceUpdateError(PaymentPersistenceError):
    """Raised when the payment was written but the loan balance update failed."""

    def __init__(self, message: str, loan_id: str, payment_number: Optional[int] = None,
                 payment_recorded: bool = False, payment_id: Optional[str] = None):
        super().__init__(
            message,
            loan_id=loan_id,
            payment_number=payment_number,
            stage="loan_update",
            payment_recorded=payment_recorded,
            payment_id=payment_id
        )
