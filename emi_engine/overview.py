"""
Overview Module

Per-user summaries of loans and lendings at a point in time. Pure
aggregation over already-loaded records; nothing is cached.
"""

from dataclasses import dataclass, fields
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .currency import Money, Currency, sum_money, percentage
from .models import (
    Loan, EmiSchedule, Lending, LoanStatus, LendingStatus, LendingType, LoanType
)
from .status import StatusEngine


def _plain(value: Any) -> Any:
    if isinstance(value, Money):
        return str(value.amount)
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


class _Flat:
    """to_dict for the summary dataclasses below"""

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: _plain(getattr(self, f.name)) for f in fields(self)}


@dataclass
class EmiOverview(_Flat):
    """Loan side of a user's overview"""
    total_active_loans: int
    total_outstanding_amount: Money
    total_monthly_emi: Money
    next_payment_date: Optional[date]
    next_payment_amount: Money
    overdue_payments: int               # overdue unpaid installments
    overdue_amount: Money
    overdue_loans: int
    defaulted_loans: int
    defaulted_outstanding_amount: Money
    total_paid_this_month: Money
    total_pending_this_month: Money


@dataclass
class LendingOverview(_Flat):
    """Lending side of a user's overview"""
    total_lent_amount: Money
    total_borrowed_amount: Money
    total_lent_pending: Money
    total_borrowed_pending: Money
    overdue_lent_count: int
    overdue_borrowed_count: int
    overdue_lent_amount: Money
    overdue_borrowed_amount: Money


@dataclass
class LoanPerformance(_Flat):
    """Repayment track record of a single loan"""
    loan_id: str
    lender: str
    loan_type: LoanType
    original_amount: Money
    outstanding_amount: Money
    completion_percentage: Decimal
    on_time_payments: int
    late_payments: int
    total_payments: int


@dataclass
class Overview:
    """Everything the dashboard shows for one user"""
    user_id: str
    as_of: date
    currency: Currency
    emi: EmiOverview
    lending: LendingOverview

    def to_dict(self) -> Dict[str, Any]:
        return {
            'user_id': self.user_id,
            'as_of': self.as_of.isoformat(),
            'currency': self.currency.code,
            'emi': self.emi.to_dict(),
            'lending': self.lending.to_dict(),
        }


class OverviewAggregator:
    """
    Aggregates loans and lendings through the status engine.

    Records in a currency other than the requested one are skipped; amounts
    are never converted.
    """

    def __init__(self, status_engine: StatusEngine):
        self.status_engine = status_engine

    def emi_overview(self, loans: Sequence[Tuple[Loan, List[EmiSchedule]]],
                     today: date, currency: Currency) -> EmiOverview:
        """
        Summarize loans given as (loan, schedule) pairs.

        Outstanding and monthly EMI totals cover active loans only; defaulted
        loans are counted and totalled separately. The next payment is the
        earliest unpaid due date across active loans, with every installment
        due that day summed into the amount.
        """
        zero = Money.zero(currency)
        active = []
        defaulted = []
        open_loans = []
        paid_this_month = zero
        pending_this_month = zero

        for loan, schedule in loans:
            if loan.currency != currency:
                continue
            status = self.status_engine.loan_status(loan, schedule, today)
            if status == LoanStatus.ACTIVE:
                active.append((loan, schedule))
            elif status == LoanStatus.DEFAULTED:
                defaulted.append((loan, schedule))
            if status != LoanStatus.CLOSED:
                open_loans.append((loan, schedule))

            for row in schedule:
                if (row.due_date.year, row.due_date.month) != (today.year, today.month):
                    continue
                paid_this_month = paid_this_month + row.actual_payment_amount
                if status != LoanStatus.CLOSED and not row.is_paid:
                    pending_this_month = pending_this_month + row.amount_due

        next_rows = [
            next(row for row in schedule if not row.is_paid)
            for _, schedule in active
            if any(not row.is_paid for row in schedule)
        ]
        next_date = min((row.due_date for row in next_rows), default=None)
        next_amount = zero
        if next_date is not None:
            next_amount = sum_money(
                (row.amount_due for _, schedule in active for row in schedule
                 if not row.is_paid and row.due_date == next_date),
                currency
            )

        overdue_rows = []
        overdue_loans = 0
        for _, schedule in open_loans:
            rows = self.status_engine.overdue_installments(schedule, today)
            if rows:
                overdue_loans += 1
                overdue_rows.extend(rows)

        return EmiOverview(
            total_active_loans=len(active),
            total_outstanding_amount=sum_money((loan.outstanding_amount for loan, _ in active), currency),
            total_monthly_emi=sum_money((loan.emi_amount for loan, _ in active), currency),
            next_payment_date=next_date,
            next_payment_amount=next_amount,
            overdue_payments=len(overdue_rows),
            overdue_amount=sum_money((row.amount_due for row in overdue_rows), currency),
            overdue_loans=overdue_loans,
            defaulted_loans=len(defaulted),
            defaulted_outstanding_amount=sum_money(
                (loan.outstanding_amount for loan, _ in defaulted), currency
            ),
            total_paid_this_month=paid_this_month,
            total_pending_this_month=pending_this_month,
        )

    def lending_overview(self, lendings: Sequence[Lending], today: date,
                         currency: Currency) -> LendingOverview:
        zero = Money.zero(currency)
        totals = {
            LendingType.LENT: {'amount': zero, 'pending': zero, 'overdue': 0, 'overdue_amount': zero},
            LendingType.BORROWED: {'amount': zero, 'pending': zero, 'overdue': 0, 'overdue_amount': zero},
        }

        for lending in lendings:
            if lending.currency != currency:
                continue
            bucket = totals[lending.lending_type]
            bucket['amount'] = bucket['amount'] + lending.amount
            bucket['pending'] = bucket['pending'] + lending.pending_amount

            status = self.status_engine.lending_status(
                lending.amount, lending.pending_amount, lending.due_date, today
            )
            if status == LendingStatus.OVERDUE:
                bucket['overdue'] += 1
                bucket['overdue_amount'] = bucket['overdue_amount'] + lending.pending_amount

        lent = totals[LendingType.LENT]
        borrowed = totals[LendingType.BORROWED]
        return LendingOverview(
            total_lent_amount=lent['amount'],
            total_borrowed_amount=borrowed['amount'],
            total_lent_pending=lent['pending'],
            total_borrowed_pending=borrowed['pending'],
            overdue_lent_count=lent['overdue'],
            overdue_borrowed_count=borrowed['overdue'],
            overdue_lent_amount=lent['overdue_amount'],
            overdue_borrowed_amount=borrowed['overdue_amount'],
        )

    def loan_performance(self, loan: Loan, schedule: List[EmiSchedule]) -> LoanPerformance:
        """
        Completion is the share of principal repaid; an installment counts as
        on time when it was fully paid on or before its due date.
        """
        paid_rows = [row for row in schedule if row.is_paid]
        late = sum(1 for row in paid_rows if row.payment_date and row.payment_date > row.due_date)
        repaid = loan.principal_amount - loan.outstanding_amount

        return LoanPerformance(
            loan_id=loan.id,
            lender=loan.lender,
            loan_type=loan.loan_type,
            original_amount=loan.principal_amount,
            outstanding_amount=loan.outstanding_amount,
            completion_percentage=percentage(repaid.amount, loan.principal_amount.amount),
            on_time_payments=len(paid_rows) - late,
            late_payments=late,
            total_payments=len(paid_rows),
        )

    def overview(self, user_id: str, loans: Sequence[Tuple[Loan, List[EmiSchedule]]],
                 lendings: Sequence[Lending], today: date, currency: Currency) -> Overview:
        return Overview(
            user_id=user_id,
            as_of=today,
            currency=currency,
            emi=self.emi_overview(loans, today, currency),
            lending=self.lending_overview(lendings, today, currency),
        )
