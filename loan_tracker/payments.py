"""
Payment Recording Module

Records one real-world loan payment: validate the form, upload the optional
proof of payment, then write the payment row, the interest expense and the
loan's new balance.

The write phase runs as one storage transaction when the backend supports
them. On stores with per-statement atomicity only, the payment row is first
written as pending and confirmed once the loan balance is updated, so a
half-finished recording is visible in the ledger and reported to the caller
as a partial failure.
"""

import asyncio
import inspect
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Union

from .amortization import AmortizationPayment
from .audit import AuditTrail, AuditEventType
from .config import TrackerConfig, get_config
from .currency import Money, to_decimal
from .exceptions import (
    DuplicateRecordError, LoanBalanceUpdateError, LoanNotFoundError, LoanNotPayableError,
    LoanTrackerError, PaymentPersistenceError, PaymentValidationError, ProofUploadError,
    SubmissionInProgressError
)
from .expenses import Category, CategoryType, Expense, interest_expense_description
from .loans import (
    Loan, LoanPayment, LoanStatus, PaymentMethod, PaymentStatus,
    payment_id_for, summarize_payments
)
from .logging_config import get_logger, log_action
from .receipts import ReceiptStore, file_extension, proof_key
from .repository import LoanRepository


class RecordingState(Enum):
    """Progress of a single payment submission"""
    IDLE = "idle"
    VALIDATING = "validating"
    INVALID = "invalid"
    UPLOADING_PROOF = "uploading_proof"
    PERSISTING = "persisting"
    LINKING_EXPENSE = "linking_expense"
    UPDATING_LOAN = "updating_loan"
    DONE = "done"
    FAILED = "failed"


@dataclass
class ProofFile:
    """Proof-of-payment attachment"""
    filename: str
    content: bytes
    content_type: Optional[str] = None

    @property
    def size(self) -> int:
        return len(self.content)

    @property
    def extension(self) -> str:
        return file_extension(self.filename)

    @property
    def resolved_content_type(self) -> str:
        return self.content_type or f"image/{self.extension}"


@dataclass
class PaymentRequest:
    """
    A filled-in payment form.

    interest_amount comes from the scheduled row (see for_loan) and is not
    meant to be edited by the user. existing_payments is the caller's view of
    the ledger; the recorder re-reads the ledger before numbering the payment.
    """
    loan: Loan
    payment_date: Optional[date]
    principal_amount: Decimal
    interest_amount: Decimal = Decimal('0')
    payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER
    next_payment: Optional[AmortizationPayment] = None
    existing_payments: List[LoanPayment] = field(default_factory=list)
    proof: Optional[ProofFile] = None
    notes: Optional[str] = None

    def __post_init__(self):
        self.principal_amount = to_decimal(self.principal_amount)
        self.interest_amount = to_decimal(self.interest_amount)

    @property
    def total_amount(self) -> Decimal:
        return self.principal_amount + self.interest_amount

    @classmethod
    def for_loan(
        cls,
        loan: Loan,
        next_payment: Optional[AmortizationPayment],
        existing_payments: Optional[List[LoanPayment]] = None,
        payment_date: Optional[date] = None,
        payment_method: PaymentMethod = PaymentMethod.BANK_TRANSFER,
        proof: Optional[ProofFile] = None,
        notes: Optional[str] = None
    ) -> 'PaymentRequest':
        """
        Pre-fill a form from the next scheduled payment.

        Without a schedule row the principal defaults to the outstanding
        balance and the interest to zero. The scheduled principal is capped
        at the balance since the ledger can run ahead of the schedule.
        """
        currency = loan.currency
        if next_payment is not None:
            principal = min(
                Money(next_payment.principal_payment, currency),
                loan.current_balance
            ).amount
            interest = Money(next_payment.interest_payment, currency).amount
        else:
            principal = loan.current_balance.amount
            interest = Decimal('0')

        return cls(
            loan=loan,
            payment_date=payment_date or date.today(),
            principal_amount=principal,
            interest_amount=interest,
            payment_method=payment_method,
            next_payment=next_payment,
            existing_payments=list(existing_payments or []),
            proof=proof,
            notes=notes
        )


@dataclass
class RecordedPayment:
    """Everything a successful submission wrote"""
    payment: LoanPayment
    loan: Loan
    expense: Optional[Expense] = None
    category: Optional[Category] = None
    category_created: bool = False


@dataclass
class _Attempt:
    payment_number: Optional[int] = None
    payment_id: Optional[str] = None
    payment_written: bool = False


RefreshCallback = Callable[[RecordedPayment], Union[None, Awaitable[None]]]


class PaymentRecorder:
    """
    Records loan payments for one payment form.

    Only one submission may be in flight per recorder.
    """

    def __init__(
        self,
        repository: LoanRepository,
        receipt_store: ReceiptStore,
        audit_trail: AuditTrail,
        config: Optional[TrackerConfig] = None,
        on_recorded: Optional[RefreshCallback] = None
    ):
        self.repository = repository
        self.receipt_store = receipt_store
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.on_recorded = on_recorded
        self.state = RecordingState.IDLE
        self.logger = get_logger("loan_tracker.payments")
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def validate(self, request: PaymentRequest) -> List[str]:
        """
        Check a payment form against the loan

        Returns:
            Every violated rule as a user-facing message, empty when valid
        """
        errors = []
        loan = request.loan

        if request.payment_date is None:
            errors.append("Payment date is required")
        # Checked as stored: sub-cent amounts round away
        errors.extend(self._amount_errors(
            Money(request.principal_amount, loan.currency),
            Money(request.interest_amount, loan.currency),
            loan.current_balance
        ))
        if request.proof is not None and request.proof.size > self.config.max_proof_size_bytes:
            limit_mb = self.config.max_proof_size_bytes / (1024 * 1024)
            errors.append(f"Payment proof must be smaller than {limit_mb:g} MB")

        return errors

    @staticmethod
    def _amount_errors(principal: Money, interest: Money, balance: Money) -> List[str]:
        errors = []
        if not (principal + interest).is_positive():
            errors.append("Payment amount must be greater than 0")
        if principal > balance:
            errors.append(f"Loan amount cannot exceed amount left of {balance.to_string()}")
        if not principal.is_positive():
            errors.append("Loan amount must be greater than 0")
        return errors

    async def submit(self, request: PaymentRequest) -> RecordedPayment:
        """
        Record a payment

        Cancelling the caller before the first write leaves nothing behind
        and returns the recorder to idle. Once writes begin they run to
        completion even if the caller is cancelled.

        Raises:
            SubmissionInProgressError: If another submission is in flight
            LoanNotPayableError: If the loan is not active
            PaymentValidationError: If the form is invalid
            ProofUploadError: If the proof could not be uploaded
            PaymentPersistenceError: If a write failed
            LoanBalanceUpdateError: If the loan balance could not be updated
        """
        if self._in_flight:
            raise SubmissionInProgressError("A payment is already being recorded")
        self._in_flight = True

        correlation_id = str(uuid.uuid4())
        try:
            proof_url = await self._prepare(request, correlation_id)
        except BaseException:
            self._in_flight = False
            raise

        write = asyncio.ensure_future(self._persist(request, proof_url, correlation_id))
        write.add_done_callback(self._write_finished)
        return await asyncio.shield(write)

    def _write_finished(self, task: asyncio.Future) -> None:
        self._in_flight = False
        if not task.cancelled():
            # Retrieved here so an abandoned shield does not warn
            task.exception()

    async def _prepare(self, request: PaymentRequest, correlation_id: str) -> Optional[str]:
        """Checks and proof upload. Nothing is written to the ledger here."""
        loan = request.loan
        self.state = RecordingState.VALIDATING

        if loan.status != LoanStatus.ACTIVE:
            self.state = RecordingState.INVALID
            raise LoanNotPayableError(
                f"Cannot record a payment for a loan that is {loan.status.value}"
            )

        errors = self.validate(request)
        if errors:
            self.state = RecordingState.INVALID
            log_action(
                self.logger, "info", "Payment form rejected",
                user_id=loan.user_id, action="validate_payment",
                resource=f"loan:{loan.id}", correlation_id=correlation_id,
                extra={"errors": errors}
            )
            raise PaymentValidationError(errors)

        if request.proof is None:
            return None

        self.state = RecordingState.UPLOADING_PROOF
        try:
            return await self._upload_proof(request, correlation_id)
        except asyncio.CancelledError:
            self.state = RecordingState.IDLE
            log_action(
                self.logger, "info", "Payment submission cancelled before any write",
                user_id=loan.user_id, action="record_payment",
                resource=f"loan:{loan.id}", correlation_id=correlation_id
            )
            raise
        except ProofUploadError as e:
            await self._fail(request, correlation_id, e, stage="upload")
            raise

    async def _upload_proof(self, request: PaymentRequest, correlation_id: str) -> str:
        loan = request.loan
        proof = request.proof
        key = proof_key(loan.user_id, loan.id, proof.filename)

        try:
            url = await asyncio.wait_for(
                self.receipt_store.upload(proof.content, proof.resolved_content_type, key),
                timeout=self.config.request_timeout_seconds
            )
        except asyncio.TimeoutError as e:
            raise ProofUploadError("Timed out uploading payment proof") from e

        log_action(
            self.logger, "info", "Payment proof uploaded",
            user_id=loan.user_id, action="upload_proof",
            resource=f"loan:{loan.id}", correlation_id=correlation_id,
            extra={"key": key, "size": proof.size}
        )
        await self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_PROOF_UPLOADED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=loan.user_id,
            metadata={"key": key, "url": url, "size": proof.size}
        )
        return url

    async def _call(self, awaitable: Awaitable[Any]) -> Any:
        return await asyncio.wait_for(awaitable, timeout=self.config.request_timeout_seconds)

    async def _persist(self, request: PaymentRequest, proof_url: Optional[str],
                       correlation_id: str) -> RecordedPayment:
        attempt = _Attempt()
        transactional = self.repository.supports_transactions

        try:
            if transactional:
                async with self.repository.atomic():
                    recorded = await self._write(request, proof_url, attempt, transactional)
            else:
                recorded = await self._write(request, proof_url, attempt, transactional)
        except LoanTrackerError as e:
            await self._fail(request, correlation_id, e, attempt=attempt)
            raise

        self.state = RecordingState.DONE
        await self._record_success(recorded, correlation_id)
        await self._notify(recorded, correlation_id)
        return recorded

    async def _write(self, request: PaymentRequest, proof_url: Optional[str],
                     attempt: _Attempt, transactional: bool) -> RecordedPayment:
        self.state = RecordingState.PERSISTING
        submitted = request.loan

        def persistence_error(message: str, stage: str) -> PaymentPersistenceError:
            details = {
                "loan_id": submitted.id,
                "payment_number": attempt.payment_number,
                "payment_recorded": attempt.payment_written and not transactional,
                "payment_id": attempt.payment_id
            }
            if stage == "loan_update":
                return LoanBalanceUpdateError(message, **details)
            return PaymentPersistenceError(message, stage=stage, **details)

        # Authoritative state: the caller's loan snapshot and ledger may be stale
        try:
            loan = await self._call(self.repository.get_loan(submitted.id, submitted.user_id))
            ledger = await self._call(
                self.repository.get_loan_payments(submitted.id, submitted.user_id)
            )
        except Exception as e:
            raise persistence_error(f"Failed to load loan {submitted.id}: {e}", "payment") from e

        if loan is None:
            raise LoanNotFoundError(f"Loan {submitted.id} not found")
        if loan.status != LoanStatus.ACTIVE:
            raise LoanNotPayableError(
                f"Cannot record a payment for a loan that is {loan.status.value}"
            )

        currency = loan.currency
        principal = Money(request.principal_amount, currency)
        interest = Money(request.interest_amount, currency)
        errors = self._amount_errors(principal, interest, loan.current_balance)
        if errors:
            raise PaymentValidationError(errors)

        new_balance = (loan.current_balance - principal).max_zero()
        now = datetime.now(timezone.utc)

        attempt.payment_number = len(ledger) + 1
        attempt.payment_id = payment_id_for(loan.id, attempt.payment_number)
        payment = LoanPayment(
            id=attempt.payment_id,
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            user_id=loan.user_id,
            payment_number=attempt.payment_number,
            payment_date=request.payment_date,
            due_date=request.next_payment.payment_date if request.next_payment else request.payment_date,
            principal_amount=principal,
            interest_amount=interest,
            total_payment=principal + interest,
            remaining_balance=new_balance,
            payment_method=request.payment_method,
            status=PaymentStatus.PAID if transactional else PaymentStatus.PENDING,
            paid_date=request.payment_date,
            payment_proof_url=proof_url,
            notes=request.notes or None
        )

        try:
            await self._call(self.repository.insert_loan_payment(payment))
        except DuplicateRecordError as e:
            raise persistence_error(
                f"Payment #{attempt.payment_number} was already recorded for loan {loan.loan_number}",
                "payment"
            ) from e
        except Exception as e:
            raise persistence_error(f"Failed to record payment: {e}", "payment") from e
        attempt.payment_written = True

        expense = None
        category = None
        category_created = False
        if interest.is_positive():
            self.state = RecordingState.LINKING_EXPENSE
            try:
                category, category_created = await self._call(
                    self.repository.find_or_create_category(
                        loan.user_id,
                        self.config.interest_category_name,
                        CategoryType.EXPENSE,
                        self.config.interest_category_color
                    )
                )
                expense = await self._call(self.repository.insert_expense(Expense(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    user_id=loan.user_id,
                    category_id=category.id,
                    amount=interest,
                    date=request.payment_date,
                    description=interest_expense_description(
                        loan.loan_number, loan.lender_name, attempt.payment_number
                    ),
                    loan_payment_id=payment.id
                )))
                payment = await self._call(
                    self.repository.update_loan_payment(payment.id, {'expense_id': expense.id})
                )
            except Exception as e:
                raise persistence_error(f"Failed to record interest expense: {e}", "expense") from e

        self.state = RecordingState.UPDATING_LOAN
        totals = summarize_payments(ledger + [payment], currency)
        loan.current_balance = new_balance
        loan.total_paid = totals.total_paid
        loan.total_principal_paid = totals.total_principal_paid
        loan.total_interest_paid = totals.total_interest_paid
        if new_balance.is_zero():
            loan.status = LoanStatus.PAID_OFF
        loan.updated_at = now

        try:
            loan = await self._update_loan(loan)
        except Exception as e:
            outcome = "was rolled back" if transactional else "was saved"
            raise persistence_error(
                f"Loan balance could not be updated, payment #{attempt.payment_number} "
                f"{outcome}: {e}",
                "loan_update"
            ) from e

        if payment.status == PaymentStatus.PENDING:
            try:
                payment = await self._call(self.repository.update_loan_payment(
                    payment.id, {'status': PaymentStatus.PAID.value}
                ))
            except Exception as e:
                raise persistence_error(f"Failed to confirm payment: {e}", "confirm") from e

        return RecordedPayment(
            payment=payment,
            loan=loan,
            expense=expense,
            category=category,
            category_created=category_created
        )

    async def _update_loan(self, loan: Loan) -> Loan:
        attempts = self.config.loan_update_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                return await self._call(self.repository.update_loan(loan.id, loan.balance_fields()))
            except Exception as e:
                if attempt == attempts:
                    raise
                log_action(
                    self.logger, "warning",
                    f"Loan update failed, retrying ({attempt}/{attempts - 1}): {e}",
                    user_id=loan.user_id, action="update_loan", resource=f"loan:{loan.id}"
                )

    async def _fail(self, request: PaymentRequest, correlation_id: str, error: Exception,
                    attempt: Optional[_Attempt] = None, stage: Optional[str] = None) -> None:
        self.state = RecordingState.FAILED
        loan = request.loan
        stage = stage or getattr(error, 'stage', None) or type(error).__name__
        payment_recorded = getattr(error, 'payment_recorded', False)
        payment_number = attempt.payment_number if attempt else None

        log_action(
            self.logger, "error" if payment_recorded else "warning",
            f"Payment recording failed: {error}",
            user_id=loan.user_id, action="record_payment",
            resource=f"loan:{loan.id}", correlation_id=correlation_id,
            extra={
                "stage": stage,
                "payment_number": payment_number,
                "payment_recorded": payment_recorded,
                "error_type": type(error).__name__
            }
        )
        await self.audit_trail.log_event(
            event_type=AuditEventType.PAYMENT_RECORDING_FAILED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=loan.user_id,
            metadata={
                "stage": stage,
                "payment_number": payment_number,
                "payment_id": attempt.payment_id if attempt else None,
                "payment_recorded": payment_recorded,
                "error": str(error)
            }
        )

    async def _record_success(self, recorded: RecordedPayment, correlation_id: str) -> None:
        payment = recorded.payment
        loan = recorded.loan

        log_action(
            self.logger, "info", f"Payment #{payment.payment_number} recorded for {loan.loan_number}",
            user_id=loan.user_id, action="record_payment",
            resource=f"loan_payment:{payment.id}", correlation_id=correlation_id,
            extra={
                "loan_id": loan.id,
                "principal_amount": payment.principal_amount.to_string(),
                "interest_amount": payment.interest_amount.to_string(),
                "remaining_balance": payment.remaining_balance.to_string()
            }
        )

        await self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_PAYMENT_RECORDED,
            entity_type="loan_payment",
            entity_id=payment.id,
            user_id=loan.user_id,
            metadata={
                "loan_id": loan.id,
                "payment_number": payment.payment_number,
                "principal_amount": payment.principal_amount.to_string(),
                "interest_amount": payment.interest_amount.to_string(),
                "remaining_balance": payment.remaining_balance.to_string(),
                "payment_proof_url": payment.payment_proof_url
            }
        )
        if recorded.category_created:
            await self.audit_trail.log_event(
                event_type=AuditEventType.CATEGORY_CREATED,
                entity_type="category",
                entity_id=recorded.category.id,
                user_id=loan.user_id,
                metadata={"name": recorded.category.name}
            )
        if recorded.expense is not None:
            await self.audit_trail.log_event(
                event_type=AuditEventType.INTEREST_EXPENSE_CREATED,
                entity_type="expense",
                entity_id=recorded.expense.id,
                user_id=loan.user_id,
                metadata={
                    "loan_payment_id": payment.id,
                    "amount": recorded.expense.amount.to_string()
                }
            )
        if loan.status == LoanStatus.PAID_OFF:
            await self.audit_trail.log_event(
                event_type=AuditEventType.LOAN_PAID_OFF,
                entity_type="loan",
                entity_id=loan.id,
                user_id=loan.user_id,
                metadata={"final_payment_number": payment.payment_number}
            )

    async def _notify(self, recorded: RecordedPayment, correlation_id: str) -> None:
        if self.on_recorded is None:
            return
        try:
            result = self.on_recorded(recorded)
            if inspect.isawaitable(result):
                await result
        except Exception as e:
            # The payment is committed; a failed refresh must not report it as unrecorded
            log_action(
                self.logger, "error", f"Refresh callback failed: {e}",
                user_id=recorded.loan.user_id, action="refresh",
                resource=f"loan:{recorded.loan.id}", correlation_id=correlation_id
            )
