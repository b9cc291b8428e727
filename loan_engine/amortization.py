"""
Amortization Calculator Module

Pure, stateless functions for the simple (non-compounding) interest model the
loan engine uses: schedule totals, installment projections, payment dates,
and late fees. No I/O, no rounding; callers decide display precision.

Calendar-month arithmetic clamps to the last day of the target month, so
Jan 31 + 1 month is Feb 28 (Feb 29 in leap years).
"""

import calendar
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import Iterable, List, Optional, Union

from .currency import to_decimal

ONE_DAY = timedelta(days=1)
MONTHS_PER_YEAR = Decimal('12')
DAYS_PER_YEAR = Decimal('365')

Number = Union[Decimal, int, str]


class TermUnit(Enum):
    """Unit the loan term is expressed in"""
    DAYS = "days"
    MONTHS = "months"
    YEARS = "years"


@dataclass(frozen=True)
class ScheduleSummary:
    """Totals for a loan under the simple interest model"""
    principal: Decimal
    total_amount: Decimal
    monthly_payment: Decimal

    @property
    def total_interest(self) -> Decimal:
        return self.total_amount - self.principal


@dataclass(frozen=True)
class ScheduledInstallment:
    """Single projected installment"""
    number: int
    due_date: datetime
    payment_amount: Decimal
    principal_amount: Decimal
    interest_amount: Decimal
    remaining_balance: Decimal


def compute_schedule(principal: Number, annual_rate_percent: Number, term_months: Number) -> ScheduleSummary:
    """
    Total amount and constant monthly payment for a loan

    monthly_rate = annual_rate_percent / 100 / 12
    total_interest = principal * monthly_rate * term_months
    total_amount = principal + total_interest
    monthly_payment = total_amount / term_months

    Raises:
        ValueError: If term_months is not positive. Callers validate the term
            before calling; this guards against programming errors only.
    """
    principal = to_decimal(principal)
    term_months = to_decimal(term_months)
    if term_months <= 0:
        raise ValueError(f"term_months must be positive, got {term_months}")

    monthly_rate = to_decimal(annual_rate_percent) / Decimal('100') / MONTHS_PER_YEAR
    total_interest = principal * monthly_rate * term_months
    total_amount = principal + total_interest
    return ScheduleSummary(
        total_amount=total_amount,
        monthly_payment=total_amount / term_months,
        principal=principal
    )


def add_months(value: datetime, months: int) -> datetime:
    """Add calendar months, clamping the day to the target month's length"""
    month = value.month - 1 + months
    year = value.year + month // 12
    month = month % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def term_in_months(term: int, unit: TermUnit) -> Decimal:
    """Express a loan term in (possibly fractional) months"""
    if unit == TermUnit.MONTHS:
        return Decimal(term)
    if unit == TermUnit.YEARS:
        return Decimal(term) * MONTHS_PER_YEAR
    if unit == TermUnit.DAYS:
        return Decimal(term) * MONTHS_PER_YEAR / DAYS_PER_YEAR
    raise ValueError(f"Unsupported term unit: {unit}")


def add_term(start: datetime, term: int, unit: TermUnit) -> datetime:
    """Date a term of the given length ends, counted from start"""
    if unit == TermUnit.DAYS:
        return start + timedelta(days=term)
    if unit == TermUnit.MONTHS:
        return add_months(start, term)
    if unit == TermUnit.YEARS:
        return add_months(start, term * 12)
    raise ValueError(f"Unsupported term unit: {unit}")


def next_payment_date(confirmed_payment_dates: Iterable[datetime],
                      disbursement_date: Optional[datetime]) -> Optional[datetime]:
    """
    Date the next payment falls due

    The disbursement date until a payment is confirmed, then one calendar
    month after the latest confirmed payment. None if not disbursed and
    nothing has been paid.
    """
    latest = max(confirmed_payment_dates, default=None)
    if latest is None:
        return disbursement_date
    return add_months(latest, 1)


def days_until(target: Optional[datetime], now: datetime) -> Optional[int]:
    """Whole days from now until target, rounded up; negative once past"""
    if target is None:
        return None
    # ceil(a / b) == -((-a) // b)
    return -((now - target) // ONE_DAY)


def days_late(due_date: Optional[datetime], now: datetime) -> int:
    """Whole days past due_date, rounded down; 0 when not overdue"""
    if due_date is None or now <= due_date:
        return 0
    return (now - due_date) // ONE_DAY


def late_fee(monthly_payment: Number, due_date: Optional[datetime], now: datetime,
             fee_rate_percent: Number = Decimal('5'), period_days: int = 30) -> Decimal:
    """
    Flat penalty of fee_rate_percent of the monthly payment for every full
    period_days overdue. Partial periods are not charged.
    """
    overdue_days = days_late(due_date, now)
    if overdue_days == 0:
        return Decimal('0')
    periods = overdue_days // period_days
    return to_decimal(monthly_payment) * to_decimal(fee_rate_percent) / Decimal('100') * periods


def project_schedule(principal: Number, annual_rate_percent: Number, term_months: Number,
                     first_payment_date: datetime,
                     installments: Optional[int] = None) -> List[ScheduledInstallment]:
    """
    Project equal installments for a loan

    Each installment carries an equal share of principal and of the total
    simple interest. Installment k is due k-1 calendar months after
    first_payment_date. The final installment absorbs any Decimal residue so
    the installments sum exactly to the schedule totals.

    Args:
        installments: Number of installments; defaults to term_months, which
            must then be a whole number
    """
    summary = compute_schedule(principal, annual_rate_percent, term_months)
    if installments is None:
        count = to_decimal(term_months)
        if count != count.to_integral_value():
            raise ValueError(f"installments required for fractional term of {count} months")
        installments = int(count)
    if installments < 1:
        raise ValueError(f"installments must be at least 1, got {installments}")

    principal = summary.principal
    total_interest = summary.total_interest
    principal_share = principal / installments
    interest_share = total_interest / installments

    schedule = []
    principal_paid = Decimal('0')
    interest_paid = Decimal('0')
    for number in range(1, installments + 1):
        if number == installments:
            principal_part = principal - principal_paid
            interest_part = total_interest - interest_paid
        else:
            principal_part = principal_share
            interest_part = interest_share
        principal_paid += principal_part
        interest_paid += interest_part

        schedule.append(ScheduledInstallment(
            number=number,
            due_date=add_months(first_payment_date, number - 1),
            payment_amount=principal_part + interest_part,
            principal_amount=principal_part,
            interest_amount=interest_part,
            remaining_balance=principal - principal_paid
        ))

    return schedule
