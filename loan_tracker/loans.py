"""
Loan Module

Loan and loan payment records, ledger summaries, and the LoanManager that
creates loans, projects their schedules and repairs their running totals.
Recording a payment lives in payments.PaymentRecorder.
"""

from decimal import Decimal
from datetime import datetime, timezone, date
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Any, TYPE_CHECKING
from enum import Enum
import uuid

from .amortization import (
    AmortizationPayment, ScheduleFrequency, add_months, calculate_loan_progress,
    calculate_monthly_payment, find_next_payment, generate_amortization_schedule
)
from .audit import AuditTrail, AuditEventType
from .config import TrackerConfig, get_config
from .currency import Money, Currency, to_decimal
from .exceptions import (
    DuplicateRecordError, LoanNotFoundError, LoanNotPayableError, LoanValidationError
)
from .logging_config import get_logger, log_action
from .storage import StorageRecord

if TYPE_CHECKING:
    from .repository import LoanRepository

# Fixed namespaces so ids are a function of (loan, payment number) and (user, loan number)
PAYMENT_NAMESPACE = uuid.UUID("0b9e4a57-61d2-4c8f-b3a0-7d5e2f19c684")
LOAN_NAMESPACE = uuid.UUID("5c1f7e20-93ab-4d6e-8f42-a6b0d3c1e975")


class LoanStatus(Enum):
    """Loan lifecycle states"""
    ACTIVE = "active"
    PAID_OFF = "paid_off"      # terminal
    DEFAULTED = "defaulted"    # terminal


class LoanPaymentFrequency(Enum):
    """Cadence agreed at origination"""
    MONTHLY = "monthly"
    QUARTERLY = "quarterly"
    YEARLY = "yearly"

    @property
    def months(self) -> int:
        return {
            LoanPaymentFrequency.MONTHLY: 1,
            LoanPaymentFrequency.QUARTERLY: 3,
            LoanPaymentFrequency.YEARLY: 12
        }[self]


class PaymentMethod(Enum):
    BANK_TRANSFER = "bank_transfer"
    CHECK = "check"
    CASH = "cash"
    DEBIT_CARD = "debit_card"
    CREDIT_CARD = "credit_card"
    ACH = "ach"
    WIRE = "wire"
    OTHER = "other"


class PaymentStatus(Enum):
    PENDING = "pending"  # linked writes not yet confirmed
    PAID = "paid"


def payment_id_for(loan_id: str, payment_number: int) -> str:
    return str(uuid.uuid5(PAYMENT_NAMESPACE, f"{loan_id}:{payment_number}"))


def loan_id_for(user_id: str, loan_number: str) -> str:
    return str(uuid.uuid5(LOAN_NAMESPACE, f"{user_id}:{loan_number}"))


def schedule_frequency_for(frequency: LoanPaymentFrequency) -> ScheduleFrequency:
    """
    Schedule stepping for a loan cadence.

    The schedule engine only steps monthly, biweekly or weekly, and its rows
    are always monthly slices, so every loan cadence projects monthly.
    """
    return ScheduleFrequency.MONTHLY


def _get_date(data: Dict[str, Any], key: str) -> Optional[date]:
    if data.get(key):
        return date.fromisoformat(data[key])
    return None


@dataclass
class Loan(StorageRecord):
    """Borrowed-money obligation with immutable terms and running totals"""
    user_id: str
    loan_number: str
    lender_name: str
    principal_amount: Money
    interest_rate: Decimal              # annual percentage, e.g. 6 for 6%
    term_months: int
    start_date: date
    payment_frequency: LoanPaymentFrequency = LoanPaymentFrequency.MONTHLY
    monthly_payment: Money = None
    end_date: Optional[date] = None
    first_payment_date: Optional[date] = None
    status: LoanStatus = LoanStatus.ACTIVE

    # Running state
    current_balance: Money = None
    total_paid: Money = None
    total_principal_paid: Money = None
    total_interest_paid: Money = None

    vendor_id: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self):
        currency = self.principal_amount.currency
        zero_amount = Money.zero(currency)

        if self.current_balance is None:
            self.current_balance = self.principal_amount
        if self.total_paid is None:
            self.total_paid = zero_amount
        if self.total_principal_paid is None:
            self.total_principal_paid = zero_amount
        if self.total_interest_paid is None:
            self.total_interest_paid = zero_amount
        if self.monthly_payment is None:
            self.monthly_payment = Money(
                calculate_monthly_payment(
                    self.principal_amount.amount, self.interest_rate, self.term_months
                ),
                currency
            )

    @property
    def currency(self) -> Currency:
        return self.principal_amount.currency

    @property
    def is_active(self) -> bool:
        return self.status == LoanStatus.ACTIVE

    @property
    def is_paid_off(self) -> bool:
        return self.status == LoanStatus.PAID_OFF

    @property
    def progress(self) -> Decimal:
        """Percentage of principal paid off"""
        return calculate_loan_progress(self.principal_amount.amount, self.current_balance.amount)

    def balance_fields(self) -> Dict[str, Any]:
        """Mutable running state as stored, for partial updates"""
        return {
            'current_balance': str(self.current_balance.amount),
            'total_paid': str(self.total_paid.amount),
            'total_principal_paid': str(self.total_principal_paid.amount),
            'total_interest_paid': str(self.total_interest_paid.amount),
            'status': self.status.value,
            'updated_at': self.updated_at.isoformat()
        }

    def to_dict(self) -> Dict[str, Any]:
        result = {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'user_id': self.user_id,
            'loan_number': self.loan_number,
            'lender_name': self.lender_name,
            'currency': self.currency.code,
            'principal_amount': str(self.principal_amount.amount),
            'interest_rate': str(self.interest_rate),
            'term_months': self.term_months,
            'start_date': self.start_date.isoformat(),
            'payment_frequency': self.payment_frequency.value,
            'monthly_payment': str(self.monthly_payment.amount),
            'end_date': self.end_date.isoformat() if self.end_date else None,
            'first_payment_date': self.first_payment_date.isoformat() if self.first_payment_date else None,
            'vendor_id': self.vendor_id,
            'notes': self.notes
        }
        result.update(self.balance_fields())
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Loan':
        currency = Currency[data['currency']]

        def get_money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            user_id=data['user_id'],
            loan_number=data['loan_number'],
            lender_name=data['lender_name'],
            principal_amount=get_money('principal_amount'),
            interest_rate=Decimal(data['interest_rate']),
            term_months=data['term_months'],
            start_date=date.fromisoformat(data['start_date']),
            payment_frequency=LoanPaymentFrequency(data['payment_frequency']),
            monthly_payment=get_money('monthly_payment'),
            end_date=_get_date(data, 'end_date'),
            first_payment_date=_get_date(data, 'first_payment_date'),
            status=LoanStatus(data['status']),
            current_balance=get_money('current_balance'),
            total_paid=get_money('total_paid'),
            total_principal_paid=get_money('total_principal_paid'),
            total_interest_paid=get_money('total_interest_paid'),
            vendor_id=data.get('vendor_id'),
            notes=data.get('notes')
        )


@dataclass
class LoanPayment(StorageRecord):
    """One recorded real-world payment. Append-only."""
    loan_id: str
    user_id: str
    payment_number: int
    payment_date: date
    due_date: date
    principal_amount: Money
    interest_amount: Money
    total_payment: Money
    remaining_balance: Money
    payment_method: PaymentMethod
    status: PaymentStatus = PaymentStatus.PAID
    paid_date: Optional[date] = None
    payment_proof_url: Optional[str] = None
    expense_id: Optional[str] = None
    notes: Optional[str] = None

    def __post_init__(self):
        calculated = self.principal_amount + self.interest_amount
        if calculated != self.total_payment:
            raise ValueError(f"Payment total {self.total_payment.to_string()} does not equal "
                             f"principal {self.principal_amount.to_string()} + "
                             f"interest {self.interest_amount.to_string()}")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'created_at': self.created_at.isoformat(),
            'updated_at': self.updated_at.isoformat(),
            'loan_id': self.loan_id,
            'user_id': self.user_id,
            'payment_number': self.payment_number,
            'payment_date': self.payment_date.isoformat(),
            'due_date': self.due_date.isoformat(),
            'currency': self.total_payment.currency.code,
            'principal_amount': str(self.principal_amount.amount),
            'interest_amount': str(self.interest_amount.amount),
            'total_payment': str(self.total_payment.amount),
            'remaining_balance': str(self.remaining_balance.amount),
            'payment_method': self.payment_method.value,
            'status': self.status.value,
            'paid_date': self.paid_date.isoformat() if self.paid_date else None,
            'payment_proof_url': self.payment_proof_url,
            'expense_id': self.expense_id,
            'notes': self.notes
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LoanPayment':
        currency = Currency[data['currency']]

        def get_money(key: str) -> Money:
            return Money(Decimal(data[key]), currency)

        return cls(
            id=data['id'],
            created_at=datetime.fromisoformat(data['created_at']),
            updated_at=datetime.fromisoformat(data['updated_at']),
            loan_id=data['loan_id'],
            user_id=data['user_id'],
            payment_number=data['payment_number'],
            payment_date=date.fromisoformat(data['payment_date']),
            due_date=date.fromisoformat(data['due_date']),
            principal_amount=get_money('principal_amount'),
            interest_amount=get_money('interest_amount'),
            total_payment=get_money('total_payment'),
            remaining_balance=get_money('remaining_balance'),
            payment_method=PaymentMethod(data['payment_method']),
            status=PaymentStatus(data['status']),
            paid_date=_get_date(data, 'paid_date'),
            payment_proof_url=data.get('payment_proof_url'),
            expense_id=data.get('expense_id'),
            notes=data.get('notes')
        )


@dataclass(frozen=True)
class PaymentTotals:
    """Aggregates summed from recorded payments"""
    total_paid: Money
    total_principal_paid: Money
    total_interest_paid: Money
    payments_count: int


@dataclass
class PortfolioSummary:
    """Per-currency debt overview across a user's loans"""
    total_debt: Dict[str, Money] = field(default_factory=dict)
    monthly_obligation: Dict[str, Money] = field(default_factory=dict)
    active_loans: int = 0
    paid_off_loans: int = 0
    defaulted_loans: int = 0


def summarize_payments(payments: List[LoanPayment], currency: Currency) -> PaymentTotals:
    """Sum the ledger. Preferred over schedule-derived paid-to-date figures."""
    total_paid = Money.zero(currency)
    principal_paid = Money.zero(currency)
    interest_paid = Money.zero(currency)
    for payment in payments:
        total_paid = total_paid + payment.total_payment
        principal_paid = principal_paid + payment.principal_amount
        interest_paid = interest_paid + payment.interest_amount
    return PaymentTotals(total_paid, principal_paid, interest_paid, len(payments))


def summarize_portfolio(loans: List[Loan]) -> PortfolioSummary:
    summary = PortfolioSummary()
    for loan in loans:
        code = loan.currency.code
        summary.total_debt[code] = summary.total_debt.get(code, Money.zero(loan.currency)) + loan.current_balance
        if loan.status == LoanStatus.ACTIVE:
            summary.active_loans += 1
            summary.monthly_obligation[code] = (
                summary.monthly_obligation.get(code, Money.zero(loan.currency)) + loan.monthly_payment
            )
        elif loan.status == LoanStatus.PAID_OFF:
            summary.paid_off_loans += 1
        else:
            summary.defaulted_loans += 1
    return summary


class LoanManager:
    """
    Creates loans and answers questions about their schedules and ledgers
    """

    def __init__(
        self,
        repository: 'LoanRepository',
        audit_trail: AuditTrail,
        config: Optional[TrackerConfig] = None
    ):
        self.repository = repository
        self.audit_trail = audit_trail
        self.config = config or get_config()
        self.logger = get_logger("loan_tracker.loans")

    async def create_loan(
        self,
        user_id: str,
        lender_name: str,
        principal_amount,
        interest_rate,
        term_months: int,
        start_date: date,
        payment_frequency: LoanPaymentFrequency = LoanPaymentFrequency.MONTHLY,
        currency: Optional[Currency] = None,
        vendor_id: Optional[str] = None,
        notes: Optional[str] = None
    ) -> Loan:
        """
        Create an active loan whose balance starts at the principal

        Args:
            user_id: Owner of the loan
            lender_name: Who lent the money
            principal_amount: Borrowed amount, > 0
            interest_rate: Annual percentage rate, >= 0
            term_months: Loan term, > 0
            start_date: Origination date
            payment_frequency: Agreed payment cadence
            currency: Loan currency, defaults to the configured base currency

        Returns:
            Created Loan

        Raises:
            LoanValidationError: If any term is invalid
        """
        principal = to_decimal(principal_amount)
        rate = to_decimal(interest_rate)

        errors = []
        if not lender_name or not lender_name.strip():
            errors.append("Please enter a lender name")
        if principal <= Decimal('0'):
            errors.append("Please enter a valid principal amount")
        if rate < Decimal('0'):
            errors.append("Please enter a valid interest rate")
        if not isinstance(term_months, int) or term_months <= 0:
            errors.append("Please enter a valid term in months")
        if errors:
            raise LoanValidationError(". ".join(errors))

        currency = currency or Currency[self.config.base_currency]
        now = datetime.now(timezone.utc)
        prefix = f"{self.config.loan_number_prefix}-{now.year}-"
        sequence = await self._next_loan_sequence(user_id, prefix)

        # The id is keyed on (user, loan number): a concurrent create that
        # picked the same number collides here and moves to the next one
        while True:
            loan_number = f"{prefix}{sequence:04d}"
            loan = Loan(
                id=loan_id_for(user_id, loan_number),
                created_at=now,
                updated_at=now,
                user_id=user_id,
                loan_number=loan_number,
                lender_name=lender_name.strip(),
                principal_amount=Money(principal, currency),
                interest_rate=rate,
                term_months=term_months,
                start_date=start_date,
                payment_frequency=payment_frequency,
                end_date=add_months(start_date, term_months),
                first_payment_date=add_months(start_date, payment_frequency.months),
                vendor_id=vendor_id,
                notes=notes or None
            )
            try:
                await self.repository.insert_loan(loan)
                break
            except DuplicateRecordError:
                sequence += 1

        log_action(
            self.logger, "info", f"Loan created: {loan.loan_number}",
            user_id=user_id, action="create_loan", resource=f"loan:{loan.id}",
            extra={
                "principal_amount": loan.principal_amount.to_string(),
                "interest_rate": str(rate),
                "term_months": term_months
            }
        )
        await self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_CREATED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=user_id,
            metadata={
                "loan_number": loan.loan_number,
                "lender_name": loan.lender_name,
                "principal_amount": loan.principal_amount.to_string(),
                "interest_rate": str(rate),
                "term_months": term_months,
                "payment_frequency": payment_frequency.value,
                "start_date": start_date.isoformat()
            }
        )
        return loan

    async def _next_loan_sequence(self, user_id: str, prefix: str) -> int:
        """One past the highest sequence the user has under this year's prefix"""
        sequences = [
            int(loan.loan_number[len(prefix):])
            for loan in await self.repository.list_loans(user_id)
            if loan.loan_number.startswith(prefix) and loan.loan_number[len(prefix):].isdigit()
        ]
        return max(sequences, default=0) + 1

    async def get_loan(self, loan_id: str, user_id: str) -> Loan:
        """Get a user's loan or raise LoanNotFoundError"""
        loan = await self.repository.get_loan(loan_id, user_id)
        if loan is None:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return loan

    async def list_loans(self, user_id: str, status: Optional[LoanStatus] = None) -> List[Loan]:
        return await self.repository.list_loans(user_id, status)

    async def get_loan_payments(self, loan_id: str, user_id: str) -> List[LoanPayment]:
        return await self.repository.get_loan_payments(loan_id, user_id)

    def build_schedule(self, loan: Loan) -> List[AmortizationPayment]:
        """Projected schedule from the loan's original terms"""
        return generate_amortization_schedule(
            loan.principal_amount.amount,
            loan.interest_rate,
            loan.term_months,
            loan.start_date,
            schedule_frequency_for(loan.payment_frequency)
        )

    def next_scheduled_payment(self, loan: Loan,
                               payments: List[LoanPayment]) -> Optional[AmortizationPayment]:
        """Schedule row the next payment should cover, None once fully paid"""
        if not loan.is_active:
            return None
        return find_next_payment(self.build_schedule(loan), len(payments))

    async def portfolio_summary(self, user_id: str) -> PortfolioSummary:
        return summarize_portfolio(await self.repository.list_loans(user_id))

    async def mark_defaulted(self, loan_id: str, user_id: str) -> Loan:
        """Move an active loan to the terminal defaulted state"""
        loan = await self.get_loan(loan_id, user_id)
        if not loan.is_active:
            raise LoanNotPayableError(
                f"Only active loans can default, loan is {loan.status.value}"
            )

        loan.status = LoanStatus.DEFAULTED
        loan.updated_at = datetime.now(timezone.utc)
        await self.repository.update_loan(loan.id, loan.balance_fields())

        log_action(
            self.logger, "warning", f"Loan defaulted: {loan.loan_number}",
            user_id=user_id, action="mark_defaulted", resource=f"loan:{loan.id}"
        )
        await self.audit_trail.log_event(
            event_type=AuditEventType.LOAN_DEFAULTED,
            entity_type="loan",
            entity_id=loan.id,
            user_id=user_id,
            metadata={"current_balance": loan.current_balance.to_string()}
        )
        return loan

    async def reconcile_loan(self, loan_id: str, user_id: str) -> Loan:
        """
        Rebuild a loan's running state from its recorded payments.

        Repairs a loan left behind by a partially failed payment recording:
        pending payments are confirmed and the balance, totals and status
        are recomputed from the ledger.
        """
        async with self.repository.atomic():
            loan = await self.get_loan(loan_id, user_id)
            payments = await self.repository.get_loan_payments(loan_id, user_id)

            for payment in payments:
                if payment.status == PaymentStatus.PENDING:
                    await self.repository.update_loan_payment(
                        payment.id, {'status': PaymentStatus.PAID.value}
                    )

            totals = summarize_payments(payments, loan.currency)
            loan.total_paid = totals.total_paid
            loan.total_principal_paid = totals.total_principal_paid
            loan.total_interest_paid = totals.total_interest_paid
            loan.current_balance = (loan.principal_amount - totals.total_principal_paid).max_zero()
            if loan.current_balance.is_zero():
                loan.status = LoanStatus.PAID_OFF
            loan.updated_at = datetime.now(timezone.utc)
            await self.repository.update_loan(loan.id, loan.balance_fields())

        log_action(
            self.logger, "info", f"Loan reconciled: {loan.loan_number}",
            user_id=user_id, action="reconcile_loan", resource=f"loan:{loan.id}",
            extra={
                "payments": totals.payments_count,
                "current_balance": loan.current_balance.to_string()
            }
        )
        return loan
