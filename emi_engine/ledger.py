"""
Payment Ledger Module

Applies submitted payments to a loan's schedule or to a lending, keeping the
schedule rows, the outstanding figures and the append-only payment ledger
consistent with one another.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import List, Optional

from .currency import Money, sum_money
from .errors import InvalidInput, OverpaymentExceedsOutstanding, OverpaymentExceedsPending
from .models import (
    Loan, EmiSchedule, EmiPayment, Lending, LendingPayment, PaymentInput
)
from .repository import LoanRepository


logger = logging.getLogger("emi_engine.ledger")


@dataclass
class LoanPaymentResult:
    """Loan and schedule after a payment, plus the ledger entry it produced"""
    loan: Loan
    schedule: List[EmiSchedule]
    entry: EmiPayment


@dataclass
class LendingPaymentResult:
    """Lending after a repayment, plus the ledger entry it produced"""
    lending: Lending
    entry: LendingPayment


def _check_amount(amount: Money, currency, what: str) -> None:
    if amount.currency != currency:
        raise InvalidInput(
            f"{what} currency {amount.currency.code} does not match {currency.code}"
        )
    if not amount.is_positive():
        raise InvalidInput(f"{what} amount must be positive, got {amount.to_string()}")


class PaymentLedger:
    """
    Applies payments and appends ledger entries
    """

    def __init__(self, repository: LoanRepository):
        self.repository = repository

    def apply_loan_payment(self, loan: Loan, schedule: List[EmiSchedule],
                           payment: PaymentInput) -> LoanPaymentResult:
        """
        Apply a payment against a loan's schedule.

        Installments are settled strictly in order starting with the earliest
        unpaid row. Within a row interest is settled before principal, using
        the split stored on the row. An amount larger than the row's remaining
        due rolls forward to the next row; a smaller amount leaves the row
        partially paid. The caller's late fee is recorded on the first row
        touched when the payment date is after that row's due date.

        Args:
            loan: Loan being paid; outstanding, last payment and next due date
                are updated and the loan is saved
            schedule: The loan's schedule rows, ordered by installment number
            payment: Amount, date and optional late fee

        Returns:
            LoanPaymentResult with the full updated schedule and the new entry

        Raises:
            InvalidInput: amount is not positive or in the wrong currency
            OverpaymentExceedsOutstanding: amount exceeds the outstanding
                principal plus the interest due by the payment date
        """
        _check_amount(payment.amount, loan.currency, "Payment")

        unpaid = [row for row in schedule if not row.is_paid]
        limit = self.payment_limit(loan, unpaid, payment.payment_date)
        if payment.amount > limit:
            logger.warning(
                f"Rejected payment of {payment.amount.to_string()} on loan {loan.id}: "
                f"at most {limit.to_string()} can be paid on {payment.payment_date}"
            )
            raise OverpaymentExceedsOutstanding(
                f"Payment {payment.amount.to_string()} exceeds the outstanding "
                f"{loan.outstanding_amount.to_string()} plus interest due "
                f"({limit.to_string()}) on loan {loan.id}; prepay the excess instead"
            )

        zero = Money.zero(loan.currency)
        entry_id = str(uuid.uuid4())
        left = payment.amount
        principal_paid = zero
        interest_paid = zero
        late_fee = zero
        touched: List[EmiSchedule] = []

        for row in unpaid:
            if not left.is_positive():
                break

            if not touched and payment.late_fee is not None and payment.payment_date > row.due_date:
                late_fee = payment.late_fee
                row.late_fee = row.late_fee + late_fee

            interest_before = row.interest_settled
            principal_before = row.principal_settled
            applied = min(left, row.amount_due)

            row.actual_payment_amount = row.actual_payment_amount + applied
            row.payment_date = payment.payment_date
            row.payment_id = entry_id
            row.is_paid = row.actual_payment_amount >= row.emi_amount

            interest_paid = interest_paid + (row.interest_settled - interest_before)
            principal_paid = principal_paid + (row.principal_settled - principal_before)
            left = left - applied
            touched.append(row)

        loan.outstanding_amount = loan.outstanding_amount - principal_paid
        loan.last_payment_date = payment.payment_date
        next_unpaid = next((row for row in schedule if not row.is_paid), None)
        loan.next_due_date = next_unpaid.due_date if next_unpaid else None

        now = datetime.now(timezone.utc)
        entry = EmiPayment(
            id=entry_id,
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            user_id=loan.user_id,
            payment_date=payment.payment_date,
            amount=payment.amount,
            principal_amount=principal_paid,
            interest_amount=interest_paid,
            outstanding_balance=loan.outstanding_amount,
            late_fee=late_fee,
            installment_numbers=[row.installment_number for row in touched],
            payment_method=payment.payment_method,
            notes=payment.notes,
        )

        self.repository.save_schedule(touched)
        self.repository.append_emi_payment(entry)
        self.repository.save_loan(loan)

        logger.info(
            f"Applied {payment.amount.to_string()} to loan {loan.id} "
            f"(installments {entry.installment_numbers}, "
            f"outstanding {loan.outstanding_amount.to_string()})"
        )
        return LoanPaymentResult(loan=loan, schedule=schedule, entry=entry)

    @staticmethod
    def payment_limit(loan: Loan, unpaid: List[EmiSchedule], payment_date: date) -> Money:
        """
        Largest regular payment accepted on ``payment_date``: the outstanding
        principal plus the unsettled interest of every installment due by
        then, or of the earliest unpaid installment when none is due yet.
        """
        due = [row for row in unpaid if row.due_date <= payment_date] or unpaid[:1]
        interest_due = sum_money(
            (row.interest_amount - row.interest_settled for row in due), loan.currency
        )
        return loan.outstanding_amount + interest_due

    def prepayment_entry(self, loan: Loan, amount: Money, payment_date: date,
                         payment_method: Optional[str] = None,
                         notes: Optional[str] = None) -> EmiPayment:
        """
        Append the ledger entry for a prepayment.

        Prepayments go straight to principal; call this after the schedule
        was regenerated so the entry snapshots the reduced outstanding.
        """
        _check_amount(amount, loan.currency, "Prepayment")

        now = datetime.now(timezone.utc)
        entry = EmiPayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            loan_id=loan.id,
            user_id=loan.user_id,
            payment_date=payment_date,
            amount=amount,
            principal_amount=amount,
            interest_amount=Money.zero(loan.currency),
            outstanding_balance=loan.outstanding_amount,
            is_prepayment=True,
            payment_method=payment_method,
            notes=notes,
        )
        self.repository.append_emi_payment(entry)
        return entry

    def apply_lending_payment(self, lending: Lending, payments: List[LendingPayment],
                              payment: PaymentInput) -> LendingPaymentResult:
        """
        Record a repayment against a lending.

        The pending amount is recomputed from the whole ledger rather than
        decremented, so it always equals amount minus the sum of payments.

        Raises:
            InvalidInput: amount is not positive or in the wrong currency
            OverpaymentExceedsPending: the repayment would take pending below zero
        """
        _check_amount(payment.amount, lending.currency, "Payment")

        paid_so_far = sum_money((p.amount for p in payments), lending.currency)
        new_pending = lending.amount - paid_so_far - payment.amount
        if new_pending.is_negative():
            logger.warning(
                f"Rejected repayment of {payment.amount.to_string()} on lending {lending.id}: "
                f"pending is {(lending.amount - paid_so_far).to_string()}"
            )
            raise OverpaymentExceedsPending(
                f"Payment {payment.amount.to_string()} exceeds the pending "
                f"{(lending.amount - paid_so_far).to_string()} on lending {lending.id}"
            )

        now = datetime.now(timezone.utc)
        entry = LendingPayment(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            lending_id=lending.id,
            user_id=lending.user_id,
            payment_date=payment.payment_date,
            amount=payment.amount,
            payment_method=payment.payment_method,
            notes=payment.notes,
        )

        lending.pending_amount = new_pending
        self.repository.append_lending_payment(entry)
        self.repository.save_lending(lending)

        logger.info(
            f"Applied {payment.amount.to_string()} to lending {lending.id} "
            f"(pending {new_pending.to_string()})"
        )
        return LendingPaymentResult(lending=lending, entry=entry)
