"""
Amortization Module

Pure loan math: monthly payment, loan totals, amortization schedules and
the progress figures derived from them. Nothing here touches storage, the
clock (unless no anchor date is given) or rounding; amounts are unrounded
Decimal and callers round for display or persistence.
"""

from decimal import Decimal
from datetime import date, timedelta
from dataclasses import dataclass
from typing import List, Optional, Union
from enum import Enum
import calendar

from .currency import to_decimal

Number = Union[Decimal, int, float, str]

ZERO = Decimal('0')
HUNDRED = Decimal('100')
MONTHS_PER_YEAR = Decimal('12')


class ScheduleFrequency(Enum):
    """Calendar stepping between schedule rows"""
    MONTHLY = "monthly"
    BIWEEKLY = "biweekly"
    WEEKLY = "weekly"


@dataclass(frozen=True)
class AmortizationPayment:
    """One row of a computed schedule. Derived, never persisted."""
    payment_number: int
    payment_date: date
    principal_payment: Decimal
    interest_payment: Decimal
    total_payment: Decimal
    remaining_balance: Decimal


@dataclass(frozen=True)
class LoanCalculation:
    """Headline figures for a set of loan terms"""
    monthly_payment: Decimal
    total_payments: int
    total_interest: Decimal
    total_amount: Decimal


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, clamping to the last day of the target month"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def monthly_rate(annual_rate_percent: Number) -> Decimal:
    """Annual percentage rate to a monthly fraction, e.g. 6 -> 0.005"""
    return to_decimal(annual_rate_percent) / HUNDRED / MONTHS_PER_YEAR


def calculate_monthly_payment(
    principal: Number,
    annual_rate_percent: Number,
    term_months: int
) -> Decimal:
    """
    Level payment that amortizes the principal over term_months.

    M = P * r * (1 + r)^n / ((1 + r)^n - 1) with r the monthly rate.
    Zero for a non-positive principal or term; straight-line for a 0% rate.
    """
    principal = to_decimal(principal)
    if principal <= ZERO or term_months <= 0:
        return ZERO

    rate = to_decimal(annual_rate_percent)
    if rate == ZERO:
        return principal / Decimal(term_months)

    r = monthly_rate(rate)
    factor = (Decimal('1') + r) ** term_months
    return principal * r * factor / (factor - Decimal('1'))


def calculate_loan_details(
    principal: Number,
    annual_rate_percent: Number,
    term_months: int
) -> LoanCalculation:
    """Monthly payment plus total amount and total interest over the term"""
    principal = to_decimal(principal)
    if principal <= ZERO or term_months <= 0:
        return LoanCalculation(ZERO, max(term_months, 0), ZERO, ZERO)

    payment = calculate_monthly_payment(principal, annual_rate_percent, term_months)
    total_amount = payment * Decimal(term_months)
    return LoanCalculation(
        monthly_payment=payment,
        total_payments=term_months,
        total_interest=total_amount - principal,
        total_amount=total_amount
    )


def _schedule_date(start_date: date, index: int, frequency: ScheduleFrequency) -> date:
    # Dates are computed from the anchor so month-end clamping never drifts
    if frequency == ScheduleFrequency.MONTHLY:
        return add_months(start_date, index)
    if frequency == ScheduleFrequency.BIWEEKLY:
        return start_date + timedelta(days=14 * index)
    if frequency == ScheduleFrequency.WEEKLY:
        return start_date + timedelta(days=7 * index)
    raise ValueError(f"Unsupported schedule frequency: {frequency}")


def generate_amortization_schedule(
    principal: Number,
    annual_rate_percent: Number,
    term_months: int,
    start_date: date,
    frequency: ScheduleFrequency = ScheduleFrequency.MONTHLY
) -> List[AmortizationPayment]:
    """
    Generate the full amortization schedule.

    Always term_months rows. The frequency only changes the date stepping:
    interest accrues at the monthly rate for weekly and biweekly schedules too.
    The first row falls on start_date.
    """
    principal = to_decimal(principal)
    if principal <= ZERO or term_months <= 0:
        return []

    payment = calculate_monthly_payment(principal, annual_rate_percent, term_months)
    rate = monthly_rate(annual_rate_percent)

    schedule = []
    remaining_balance = principal
    for index in range(term_months):
        interest_payment = remaining_balance * rate
        principal_payment = payment - interest_payment
        remaining_balance = max(ZERO, remaining_balance - principal_payment)

        schedule.append(AmortizationPayment(
            payment_number=index + 1,
            payment_date=_schedule_date(start_date, index, frequency),
            principal_payment=principal_payment,
            interest_payment=interest_payment,
            total_payment=payment,
            remaining_balance=remaining_balance
        ))

    return schedule


def calculate_loan_progress(principal: Number, current_balance: Number) -> Decimal:
    """Percentage of the principal paid off. Not clamped to [0, 100]."""
    principal = to_decimal(principal)
    if principal <= ZERO:
        return ZERO
    return (principal - to_decimal(current_balance)) / principal * HUNDRED


def find_next_payment(
    schedule: List[AmortizationPayment],
    paid_count: int
) -> Optional[AmortizationPayment]:
    """First schedule row not yet covered by a recorded payment"""
    if paid_count < 0 or paid_count >= len(schedule):
        return None
    return schedule[paid_count]


def calculate_remaining_payments(schedule: List[AmortizationPayment], current_payment: int) -> int:
    return max(0, len(schedule) - current_payment)


def calculate_interest_paid(schedule: List[AmortizationPayment], payments_made: int) -> Decimal:
    """
    Interest over the first payments_made schedule rows.

    A projection: the ledger may differ when payments deviate from the
    schedule. See loans.summarize_payments for the recorded figure.
    """
    rows = schedule[:max(0, payments_made)]
    return sum((row.interest_payment for row in rows), ZERO)


def calculate_principal_paid(schedule: List[AmortizationPayment], payments_made: int) -> Decimal:
    """Principal over the first payments_made schedule rows"""
    rows = schedule[:max(0, payments_made)]
    return sum((row.principal_payment for row in rows), ZERO)


def calculate_payoff_date(start_date: date, term_months: int) -> date:
    return add_months(start_date, term_months)


def calculate_early_payoff(
    principal: Number,
    annual_rate_percent: Number,
    term_months: int,
    payments_made: int,
    as_of: Optional[date] = None
) -> Decimal:
    """
    Remaining balance read from a fresh schedule at index payments_made.

    The schedule is anchored on as_of, defaulting to today rather than the
    loan's start date. Only the row dates depend on the anchor.
    """
    schedule = generate_amortization_schedule(
        principal, annual_rate_percent, term_months, as_of or date.today()
    )
    if payments_made < 0 or payments_made >= len(schedule):
        return ZERO
    return schedule[payments_made].remaining_balance


def calculate_interest_saved(
    principal: Number,
    annual_rate_percent: Number,
    term_months: int,
    payments_made: int,
    as_of: Optional[date] = None
) -> Decimal:
    """Scheduled interest still outstanding after payments_made rows"""
    schedule = generate_amortization_schedule(
        principal, annual_rate_percent, term_months, as_of or date.today()
    )
    total_interest = sum((row.interest_payment for row in schedule), ZERO)
    return total_interest - calculate_interest_paid(schedule, payments_made)
