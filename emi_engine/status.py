"""
Status Engine

Derives loan, installment and lending status from ledger state and the
injected clock. Stored status fields are caches: they are rewritten from
these functions after every mutation and on every read.
"""

import logging
from datetime import date
from typing import List, Optional

from .clock import Clock
from .currency import Money
from .models import (
    Loan, EmiSchedule, Lending, LoanStatus, LendingStatus, InstallmentState
)


logger = logging.getLogger("emi_engine.status")


def days_overdue(due_date: date, today: date) -> int:
    """Whole days past the due date, 0 if not yet due"""
    return max(0, (today - due_date).days)


class StatusEngine:
    """
    Read-only status derivation

    Args:
        clock: Source of "today" when no date is passed explicitly
        grace_installments: Overdue unpaid installments tolerated before a
            loan counts as defaulted
    """

    def __init__(self, clock: Clock, grace_installments: int = 3):
        if grace_installments < 0:
            raise ValueError("grace_installments cannot be negative")
        self.clock = clock
        self.grace_installments = grace_installments

    def _today(self, today: Optional[date]) -> date:
        return today if today is not None else self.clock.now()

    def installment_state(self, row: EmiSchedule, today: Optional[date] = None) -> InstallmentState:
        if row.is_paid:
            return InstallmentState.PAID
        if row.due_date < self._today(today):
            return InstallmentState.LATE
        return InstallmentState.PENDING

    def overdue_installments(self, schedule: List[EmiSchedule],
                             today: Optional[date] = None) -> List[EmiSchedule]:
        """Unpaid rows whose due date has passed, in installment order"""
        today = self._today(today)
        return [row for row in schedule if not row.is_paid and row.due_date < today]

    def consecutive_missed(self, schedule: List[EmiSchedule], today: Optional[date] = None) -> int:
        """Length of the run of overdue unpaid rows starting at the earliest unpaid row"""
        today = self._today(today)
        count = 0
        for row in schedule:
            if row.is_paid:
                continue
            if row.due_date >= today:
                break
            count += 1
        return count

    def loan_status(self, loan: Loan, schedule: List[EmiSchedule],
                    today: Optional[date] = None) -> LoanStatus:
        """
        closed: nothing outstanding, or the loan was closed explicitly;
        defaulted: more consecutive missed installments than the grace count;
        active otherwise.
        """
        if loan.outstanding_amount.is_zero() or loan.closed_date is not None:
            return LoanStatus.CLOSED
        if self.consecutive_missed(schedule, today) > self.grace_installments:
            return LoanStatus.DEFAULTED
        return LoanStatus.ACTIVE

    def lending_status(self, amount: Money, pending_amount: Money,
                       due_date: Optional[date], today: Optional[date] = None) -> LendingStatus:
        """
        Exactly one status for any combination of inputs. A fully repaid
        lending is paid even past its due date.
        """
        if not pending_amount.is_positive():
            return LendingStatus.PAID
        if due_date is not None and due_date < self._today(today):
            return LendingStatus.OVERDUE
        if pending_amount < amount:
            return LendingStatus.PARTIAL
        return LendingStatus.PENDING

    def refresh_loan(self, loan: Loan, schedule: List[EmiSchedule],
                     today: Optional[date] = None) -> bool:
        """
        Rewrite the loan's cached status. A loan that is paid off gets its
        closed date stamped.

        Returns:
            True if the cached status changed
        """
        today = self._today(today)
        status = self.loan_status(loan, schedule, today)
        if status == LoanStatus.CLOSED and loan.closed_date is None:
            loan.closed_date = loan.last_payment_date or today
            loan.next_due_date = None

        changed = status != loan.status
        if changed:
            logger.info(f"Loan {loan.id} status {loan.status.value} -> {status.value}")
            loan.status = status
        return changed

    def refresh_lending(self, lending: Lending, today: Optional[date] = None) -> bool:
        status = self.lending_status(lending.amount, lending.pending_amount,
                                     lending.due_date, today)
        changed = status != lending.status
        if changed:
            logger.info(f"Lending {lending.id} status {lending.status.value} -> {status.value}")
            lending.status = status
        return changed
