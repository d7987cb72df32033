"""
Schedule Module

Turns an amortization breakdown into persisted EmiSchedule rows, and rebuilds
the unpaid tail of a schedule after a prepayment or a change of terms.
"""

import calendar
import logging
from decimal import Decimal
from datetime import date, datetime, timezone
from typing import List, Optional, Sequence

from .amortization import (
    BreakdownRow, calculate_amortization, amortize_fixed_emi
)
from .currency import Money
from .errors import (
    InvalidInput, ScheduleExistsError, ScheduleNotFoundError, OverpaymentExceedsOutstanding
)
from .models import Loan, EmiSchedule, PrepaymentMode
from .repository import LoanRepository


logger = logging.getLogger("emi_engine.schedule")


def add_months(start_date: date, months: int) -> date:
    """Add months to a date, handling month-end edge cases"""
    month = start_date.month - 1 + months
    year = start_date.year + month // 12
    month = month % 12 + 1
    day = min(start_date.day, calendar.monthrange(year, month)[1])
    return date(year, month, day)


def installment_due_date(start_date: date, installment_number: int,
                         payment_day: Optional[int] = None) -> date:
    """
    Due date of installment ``n``: ``n`` months after the start date.

    With a payment day the day-of-month is moved to that day, clamped to the
    length of the month (payment day 31 falls on Feb 28/29).
    """
    due = add_months(start_date, installment_number)
    if payment_day:
        last_day = calendar.monthrange(due.year, due.month)[1]
        due = due.replace(day=min(payment_day, last_day))
    return due


class ScheduleGenerator:
    """
    Builds and regenerates a loan's installment schedule
    """

    def __init__(self, repository: LoanRepository):
        self.repository = repository

    def generate(self, loan: Loan, start_date: Optional[date] = None) -> List[EmiSchedule]:
        """
        Create the full schedule for a loan that has none yet.

        Args:
            loan: Loan to schedule; its emi, outstanding and next due date are
                updated and the loan is saved
            start_date: Overrides the loan's start date

        Returns:
            ``tenure_months`` schedule rows, ordered

        Raises:
            ScheduleExistsError: the loan already has schedule rows
            InvalidInput: the loan's terms are not a valid amortization
        """
        if self.repository.load_schedule(loan.id):
            raise ScheduleExistsError(
                f"Loan {loan.id} already has a schedule; regenerate it instead"
            )

        if start_date is not None:
            loan.start_date = start_date

        result = calculate_amortization(loan.principal_amount, loan.interest_rate, loan.tenure_months)
        rows = self._build_rows(loan, result.breakdown, first_installment=1)
        self.repository.save_schedule(rows)

        loan.emi_amount = result.emi
        loan.outstanding_amount = loan.principal_amount
        loan.next_due_date = rows[0].due_date
        self.repository.save_loan(loan)

        logger.info(
            f"Generated {len(rows)} installments for loan {loan.id} "
            f"(emi {result.emi.to_string()})"
        )
        return rows

    def regenerate_from(
        self,
        loan: Loan,
        as_of_installment: Optional[int] = None,
        prepayment_amount: Optional[Money] = None,
        mode: PrepaymentMode = PrepaymentMode.REDUCE_EMI,
        interest_rate: Optional[Decimal] = None,
        tenure_months: Optional[int] = None
    ) -> List[EmiSchedule]:
        """
        Rebuild the unpaid tail of the schedule.

        Rows before ``as_of_installment`` must all be paid and are kept as
        they are; rows from it onward must carry no payment and are replaced.
        The outstanding principal is reduced by the prepayment, then either
        re-amortized over the remaining tenure (REDUCE_EMI) or repaid with the
        current EMI for as many months as it takes (REDUCE_TENURE). A new
        interest rate or total tenure restructures the loan at the same time.

        Args:
            loan: Loan being regenerated; updated and saved
            as_of_installment: First installment to replace; defaults to the
                first installment with no payment against it
            prepayment_amount: Extra principal paid now (zero if omitted)
            mode: Which of EMI or tenure absorbs the prepayment
            interest_rate: New annual rate, if the loan is being restructured
            tenure_months: New total tenure, counting installments already paid

        Returns:
            The complete schedule: kept paid rows followed by the new tail

        Raises:
            ScheduleNotFoundError: the loan has no schedule
            InvalidInput: the installment window or the new terms are invalid
            OverpaymentExceedsOutstanding: prepayment exceeds outstanding principal
        """
        schedule = self.repository.load_schedule(loan.id)
        if not schedule:
            raise ScheduleNotFoundError(f"Loan {loan.id} has no schedule to regenerate")

        as_of = self._resolve_as_of(loan, schedule, as_of_installment)
        paid_rows = [row for row in schedule if row.installment_number < as_of]
        paid_count = as_of - 1

        zero = Money.zero(loan.currency)
        prepayment = prepayment_amount if prepayment_amount is not None else zero
        if prepayment.currency != loan.currency:
            raise InvalidInput("Prepayment currency must match loan currency")
        if prepayment.is_negative():
            raise InvalidInput("Prepayment amount cannot be negative")
        if prepayment > loan.outstanding_amount:
            raise OverpaymentExceedsOutstanding(
                f"Prepayment {prepayment.to_string()} exceeds outstanding "
                f"{loan.outstanding_amount.to_string()}"
            )

        rate = Decimal(str(interest_rate)) if interest_rate is not None else loan.interest_rate
        if rate < 0:
            raise InvalidInput(f"Interest rate cannot be negative, got {rate}")

        total_tenure = tenure_months if tenure_months is not None else loan.tenure_months
        remaining_months = total_tenure - paid_count
        if remaining_months <= 0:
            raise InvalidInput(
                f"Tenure of {total_tenure} months leaves no room after {paid_count} paid installments"
            )

        new_balance = loan.outstanding_amount - prepayment
        if new_balance.is_zero():
            breakdown: Sequence[BreakdownRow] = ()
            new_emi = loan.emi_amount
        elif mode == PrepaymentMode.REDUCE_TENURE:
            result = amortize_fixed_emi(new_balance, rate, loan.emi_amount, remaining_months)
            breakdown, new_emi = result.breakdown, result.emi
        else:
            result = calculate_amortization(new_balance, rate, remaining_months)
            breakdown, new_emi = result.breakdown, result.emi

        tail = self._build_rows(loan, breakdown, first_installment=as_of)
        self.repository.replace_schedule_tail(loan.id, as_of, tail)

        loan.interest_rate = rate
        loan.emi_amount = new_emi
        loan.outstanding_amount = new_balance
        loan.tenure_months = paid_count + len(tail)
        loan.next_due_date = tail[0].due_date if tail else None
        self.repository.save_loan(loan)

        logger.info(
            f"Regenerated loan {loan.id} from installment {as_of}: "
            f"{len(tail)} installments of {new_emi.to_string()} ({mode.value})"
        )
        return paid_rows + tail

    def _resolve_as_of(self, loan: Loan, schedule: List[EmiSchedule],
                       as_of_installment: Optional[int]) -> int:
        if as_of_installment is None:
            untouched = [row for row in schedule if not row.has_payment]
            if not untouched:
                raise InvalidInput(f"Loan {loan.id} has no unpaid installments left to regenerate")
            as_of_installment = untouched[0].installment_number

        last_number = schedule[-1].installment_number
        if not 1 <= as_of_installment <= last_number:
            raise InvalidInput(
                f"Installment {as_of_installment} is outside the schedule (1..{last_number})"
            )

        for row in schedule:
            if row.installment_number < as_of_installment and not row.is_paid:
                raise InvalidInput(
                    f"Installment {row.installment_number} must be settled before "
                    f"regenerating from installment {as_of_installment}"
                )
            if row.installment_number >= as_of_installment and row.has_payment:
                raise InvalidInput(
                    f"Installment {row.installment_number} already has a payment and cannot be regenerated"
                )
        return as_of_installment

    def _build_rows(self, loan: Loan, breakdown: Sequence[BreakdownRow],
                    first_installment: int) -> List[EmiSchedule]:
        now = datetime.now(timezone.utc)
        rows = []
        for offset, entry in enumerate(breakdown):
            number = first_installment + offset
            rows.append(EmiSchedule(
                id=EmiSchedule.row_id(loan.id, number),
                created_at=now,
                updated_at=now,
                loan_id=loan.id,
                user_id=loan.user_id,
                installment_number=number,
                due_date=installment_due_date(loan.start_date, number, loan.payment_day),
                emi_amount=entry.emi,
                principal_amount=entry.principal,
                interest_amount=entry.interest,
                outstanding_balance=entry.balance,
            ))
        return rows
