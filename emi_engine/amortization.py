"""
Amortization Module

Reducing-balance EMI calculation and month-by-month amortization breakdown.
Everything here is a pure function of its arguments: no storage, no clock.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Any, Dict, List, Tuple

from .currency import Money, sum_money, percentage
from .errors import InvalidInput


ONE = Decimal('1')
MONTHS_PER_YEAR = Decimal('12')
HUNDRED = Decimal('100')


@dataclass(frozen=True)
class BreakdownRow:
    """Single month of an amortization breakdown"""
    month: int
    emi: Money
    principal: Money
    interest: Money
    balance: Money          # balance after this month's payment

    def to_dict(self) -> Dict[str, Any]:
        return {
            'month': self.month,
            'emi': str(self.emi.amount),
            'principal': str(self.principal.amount),
            'interest': str(self.interest.amount),
            'balance': str(self.balance.amount),
        }


@dataclass(frozen=True)
class AmortizationResult:
    """Fixed installment plus the full breakdown it produces"""
    principal: Money
    annual_rate_percent: Decimal
    tenure_months: int
    emi: Money
    total_payment: Money
    total_interest: Money
    principal_percentage: Decimal
    interest_percentage: Decimal
    breakdown: Tuple[BreakdownRow, ...]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'principal': str(self.principal.amount),
            'currency': self.principal.currency.code,
            'annual_rate_percent': str(self.annual_rate_percent),
            'tenure_months': self.tenure_months,
            'emi': str(self.emi.amount),
            'total_payment': str(self.total_payment.amount),
            'total_interest': str(self.total_interest.amount),
            'principal_percentage': str(self.principal_percentage),
            'interest_percentage': str(self.interest_percentage),
            'breakdown': [row.to_dict() for row in self.breakdown],
        }


def monthly_rate(annual_rate_percent: Decimal) -> Decimal:
    """Convert an annual percentage (e.g. 10) into a monthly fraction"""
    return annual_rate_percent / MONTHS_PER_YEAR / HUNDRED


def _validate(principal: Money, annual_rate_percent: Decimal, tenure_months: int) -> None:
    if not principal.is_positive():
        raise InvalidInput(f"Principal must be positive, got {principal.to_string()}")
    if not isinstance(tenure_months, int) or isinstance(tenure_months, bool) or tenure_months <= 0:
        raise InvalidInput(f"Tenure must be a positive number of months, got {tenure_months!r}")
    if annual_rate_percent < 0:
        raise InvalidInput(f"Interest rate cannot be negative, got {annual_rate_percent}")


def calculate_emi(principal: Money, annual_rate_percent: Decimal, tenure_months: int) -> Money:
    """
    Fixed monthly installment for a reducing-balance loan.

    EMI = P * r * (1+r)^n / ((1+r)^n - 1), or P / n when the rate is zero,
    rounded half-up to the currency's minor unit.
    """
    annual_rate_percent = Decimal(str(annual_rate_percent))
    _validate(principal, annual_rate_percent, tenure_months)

    rate = monthly_rate(annual_rate_percent)
    if rate == Decimal('0'):
        return principal / Decimal(tenure_months)

    factor = (ONE + rate) ** tenure_months
    return Money(principal.amount * rate * factor / (factor - ONE), principal.currency)


def _walk(principal: Money, rate: Decimal, emi: Money, months: int,
          stop_when_repaid: bool) -> List[BreakdownRow]:
    """
    Walk the balance down month by month.

    The final month pays exactly the remaining balance, which absorbs the
    rounding drift of the fixed installment. With ``stop_when_repaid`` the
    walk ends as soon as one installment can clear the balance.
    """
    rows: List[BreakdownRow] = []
    zero = Money.zero(principal.currency)
    balance = principal

    for month in range(1, months + 1):
        interest = balance * rate
        principal_part = emi - interest
        is_final = month == months or (stop_when_repaid and principal_part >= balance)

        if is_final or principal_part > balance:
            principal_part = balance
            payment = principal_part + interest
            balance = zero
        else:
            payment = emi
            balance = balance - principal_part

        rows.append(BreakdownRow(
            month=month,
            emi=payment,
            principal=principal_part,
            interest=interest,
            balance=balance,
        ))

        if is_final:
            break

    return rows


def _result(principal: Money, annual_rate_percent: Decimal, emi: Money,
            rows: List[BreakdownRow]) -> AmortizationResult:
    currency = principal.currency
    total_payment = sum_money((row.emi for row in rows), currency)
    total_interest = sum_money((row.interest for row in rows), currency)
    return AmortizationResult(
        principal=principal,
        annual_rate_percent=annual_rate_percent,
        tenure_months=len(rows),
        emi=emi,
        total_payment=total_payment,
        total_interest=total_interest,
        principal_percentage=percentage(principal.amount, total_payment.amount),
        interest_percentage=percentage(total_interest.amount, total_payment.amount),
        breakdown=tuple(rows),
    )


def calculate_amortization(principal: Money, annual_rate_percent: Decimal,
                           tenure_months: int) -> AmortizationResult:
    """
    Full amortization for (principal, annual rate %, tenure).

    Args:
        principal: Amount borrowed
        annual_rate_percent: Annual interest rate as a percentage (10 = 10%)
        tenure_months: Number of monthly installments

    Returns:
        AmortizationResult with exactly ``tenure_months`` breakdown rows whose
        final balance is zero

    Raises:
        InvalidInput: principal <= 0, tenure <= 0 or rate < 0
    """
    annual_rate_percent = Decimal(str(annual_rate_percent))
    emi = calculate_emi(principal, annual_rate_percent, tenure_months)
    rows = _walk(principal, monthly_rate(annual_rate_percent), emi, tenure_months,
                 stop_when_repaid=False)
    return _result(principal, annual_rate_percent, emi, rows)


def amortize_fixed_emi(principal: Money, annual_rate_percent: Decimal, emi: Money,
                       max_months: int) -> AmortizationResult:
    """
    Amortize with a given installment, finishing as early as the balance allows.

    Used when a prepayment should shorten the tenure instead of lowering the
    EMI. The schedule never runs past ``max_months``; if it would, the last
    allowed month pays off whatever remains.
    """
    annual_rate_percent = Decimal(str(annual_rate_percent))
    _validate(principal, annual_rate_percent, max_months)
    if emi.currency != principal.currency:
        raise InvalidInput("EMI currency must match principal currency")

    rate = monthly_rate(annual_rate_percent)
    first_interest = principal * rate
    if emi <= first_interest:
        raise InvalidInput(
            f"EMI {emi.to_string()} does not cover the first month's interest "
            f"{first_interest.to_string()}"
        )

    rows = _walk(principal, rate, emi, max_months, stop_when_repaid=True)
    return _result(principal, annual_rate_percent, emi, rows)
