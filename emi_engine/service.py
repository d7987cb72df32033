"""
EMI Service

Caller-facing operations: the calculator, loan and purchase EMI creation
with the schedule, payments, prepayments, restructuring, edits and closing,
lendings and their repayments, loan templates and per-user overviews.

Every mutating operation holds the record's lock and runs inside one storage
transaction, so either the schedule rows, the loan and the ledger entry are
all written or none of them are. Status is recomputed after every mutation
and on every read.
"""

import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from .amortization import AmortizationResult, calculate_amortization
from .audit import AuditTrail, AuditEventType
from .clock import Clock, SystemClock
from .config import get_config
from .currency import Money, Currency
from .errors import InvalidInput, ScheduleNotFoundError
from .ledger import PaymentLedger, LoanPaymentResult, LendingPaymentResult
from .locks import LoanLockManager
from .logging_config import get_logger, log_action
from .models import (
    Loan, EmiSchedule, EmiPayment, Lending, LendingPayment, PaymentInput, EmiTemplate,
    PurchaseDetails, LoanType, LoanStatus, LendingType, LendingStatus, PrepaymentMode,
    PurchaseCategory, ItemCondition
)
from .overview import OverviewAggregator, Overview, LoanPerformance
from .repository import LoanRepository
from .schedule import ScheduleGenerator
from .status import StatusEngine
from .storage import StorageInterface


@dataclass
class LoanInput:
    """Terms of a new loan as entered by the user"""
    user_id: str
    lender: str
    loan_type: LoanType
    principal_amount: Money
    interest_rate: Decimal
    tenure_months: int
    start_date: date
    payment_day: Optional[int] = None
    notes: Optional[str] = None


MAX_WARRANTY_MONTHS = 120


@dataclass
class PurchaseInput:
    """An item bought on installments from a vendor"""
    user_id: str
    item_name: str
    vendor_name: str
    category: PurchaseCategory
    principal_amount: Money             # financed amount, after the down payment
    interest_rate: Decimal
    tenure_months: int
    purchase_date: date
    condition: ItemCondition = ItemCondition.NEW
    down_payment: Optional[Money] = None
    warranty_months: Optional[int] = None
    notes: Optional[str] = None


@dataclass
class LendingInput:
    """A new person-to-person lending as entered by the user"""
    user_id: str
    person_name: str
    lending_type: LendingType
    amount: Money
    lending_date: date
    interest_rate: Optional[Decimal] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None


@dataclass
class LoanDetails:
    """A loan together with its full schedule"""
    loan: Loan
    schedule: List[EmiSchedule]


class EmiService:
    """
    Loan and lending operations for the dashboard

    Args:
        storage: Backing store for every record
        clock: Source of "today"; the UTC wall clock when omitted
        audit_trail: Hash-chained audit log; auditing is off when None
        grace_installments: Missed installments tolerated before default
        lock_timeout_seconds: How long an operation waits for a busy record
        default_currency: Currency used by overviews when none is requested
    """

    def __init__(
        self,
        storage: StorageInterface,
        clock: Optional[Clock] = None,
        audit_trail: Optional[AuditTrail] = None,
        grace_installments: Optional[int] = None,
        lock_timeout_seconds: Optional[float] = None,
        default_currency: Optional[str] = None
    ):
        cfg = get_config()
        self.storage = storage
        self.clock = clock or SystemClock()
        self.audit_trail = audit_trail
        self.default_currency = Currency.from_code(default_currency or cfg.default_currency)

        if grace_installments is None:
            grace_installments = cfg.default_grace_installments
        if lock_timeout_seconds is None:
            lock_timeout_seconds = cfg.lock_timeout_seconds

        self.repository = LoanRepository(storage)
        self.schedule_generator = ScheduleGenerator(self.repository)
        self.ledger = PaymentLedger(self.repository)
        self.status_engine = StatusEngine(self.clock, grace_installments)
        self.overview_aggregator = OverviewAggregator(self.status_engine)
        self.locks = LoanLockManager(lock_timeout_seconds)
        self.logger = get_logger("emi_engine.service")

    # Calculator

    def calculate_amortization(self, principal: Money, annual_rate_percent: Decimal,
                               tenure_months: int) -> AmortizationResult:
        """Pure EMI calculation; nothing is stored"""
        return calculate_amortization(principal, annual_rate_percent, tenure_months)

    # Loans

    def create_loan_with_schedule(self, loan_input: LoanInput) -> LoanDetails:
        """
        Store a new loan and generate its full schedule in one transaction

        Raises:
            InvalidInput: missing lender or invalid terms
        """
        return self._create_loan(loan_input)

    def create_purchase_emi(self, purchase_input: PurchaseInput) -> LoanDetails:
        """
        Store an item bought on installments as a purchase EMI loan.

        The vendor becomes the lender and installments fall due on the 1st.
        The down payment is recorded with the purchase but is not financed.

        Raises:
            InvalidInput: missing item or vendor, a negative down payment or
                warranty, or invalid terms
        """
        if not purchase_input.item_name or not purchase_input.item_name.strip():
            raise InvalidInput("Item name is required")
        down_payment = purchase_input.down_payment
        if down_payment is not None:
            if down_payment.currency != purchase_input.principal_amount.currency:
                raise InvalidInput("Down payment currency must match the financed amount")
            if down_payment.is_negative():
                raise InvalidInput("Down payment cannot be negative")
        warranty = purchase_input.warranty_months
        if warranty is not None and not 0 <= warranty <= MAX_WARRANTY_MONTHS:
            raise InvalidInput(f"Warranty must be between 0 and {MAX_WARRANTY_MONTHS} months")

        purchase = PurchaseDetails(
            item_name=purchase_input.item_name.strip(),
            category=purchase_input.category,
            condition=purchase_input.condition,
            down_payment=down_payment,
            warranty_months=warranty,
        )
        loan_input = LoanInput(
            user_id=purchase_input.user_id,
            lender=purchase_input.vendor_name,
            loan_type=LoanType.PURCHASE_EMI,
            principal_amount=purchase_input.principal_amount,
            interest_rate=purchase_input.interest_rate,
            tenure_months=purchase_input.tenure_months,
            start_date=purchase_input.purchase_date,
            payment_day=1,
            notes=purchase_input.notes,
        )
        return self._create_loan(loan_input, purchase)

    def _create_loan(self, loan_input: LoanInput,
                     purchase: Optional[PurchaseDetails] = None) -> LoanDetails:
        if not loan_input.lender or not loan_input.lender.strip():
            raise InvalidInput("Lender name is required")
        if not loan_input.user_id:
            raise InvalidInput("user_id is required")

        now = datetime.now(timezone.utc)
        loan = Loan(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=loan_input.user_id,
            lender=loan_input.lender.strip(),
            loan_type=loan_input.loan_type,
            principal_amount=loan_input.principal_amount,
            interest_rate=loan_input.interest_rate,
            tenure_months=loan_input.tenure_months,
            start_date=loan_input.start_date,
            payment_day=loan_input.payment_day,
            notes=loan_input.notes,
            purchase=purchase,
        )

        created = {
            "lender": loan.lender,
            "loan_type": loan.loan_type,
            "principal_amount": loan.principal_amount,
            "interest_rate": loan.interest_rate,
            "tenure_months": loan.tenure_months,
            "start_date": loan.start_date,
        }
        if purchase is not None:
            created["purchase"] = purchase.to_dict()

        with self.repository.atomic():
            self.repository.save_loan(loan)
            schedule = self.schedule_generator.generate(loan)
            self._refresh_loan(loan, schedule)

            self._audit(AuditEventType.LOAN_CREATED, "loan", loan.id, loan.user_id, created)
            self._audit(AuditEventType.SCHEDULE_GENERATED, "loan", loan.id, loan.user_id, {
                "installments": len(schedule),
                "emi_amount": loan.emi_amount,
                "first_due_date": schedule[0].due_date,
            })

        log_action(
            self.logger, "info", f"Loan created: {loan.display_name}",
            user_id=loan.user_id, action="create_loan", resource=f"loan:{loan.id}",
            extra={
                "principal_amount": loan.principal_amount.to_string(),
                "emi_amount": loan.emi_amount.to_string(),
                "tenure_months": loan.tenure_months,
            }
        )
        return LoanDetails(loan=loan, schedule=schedule)

    def record_payment(self, loan_id: str, payment: PaymentInput) -> LoanPaymentResult:
        """
        Apply a regular payment to the loan's schedule

        Raises:
            LoanNotFoundError: unknown loan
            InvalidInput: the loan is closed or the amount is invalid
            OverpaymentExceedsOutstanding: amount exceeds everything still due
            ConcurrentModificationError: the loan is busy
        """
        with self.locks.lock(self._loan_key(loan_id)):
            with self.repository.atomic():
                loan = self.repository.load_loan(loan_id)
                self._ensure_open(loan)
                schedule = self._load_schedule(loan)

                result = self.ledger.apply_loan_payment(loan, schedule, payment)
                self._refresh_loan(loan, schedule)

                self._audit(AuditEventType.LOAN_PAYMENT_RECORDED, "loan", loan.id, loan.user_id, {
                    "payment_id": result.entry.id,
                    "amount": result.entry.amount,
                    "principal_amount": result.entry.principal_amount,
                    "interest_amount": result.entry.interest_amount,
                    "late_fee": result.entry.late_fee,
                    "installments": result.entry.installment_numbers,
                    "outstanding_amount": loan.outstanding_amount,
                })

        log_action(
            self.logger, "info", f"Payment recorded on loan {loan.id}",
            user_id=loan.user_id, action="record_payment", resource=f"loan:{loan.id}",
            extra={
                "amount": payment.amount.to_string(),
                "installments": result.entry.installment_numbers,
                "outstanding_amount": loan.outstanding_amount.to_string(),
                "status": loan.status.value,
            }
        )
        return LoanPaymentResult(loan=loan, schedule=schedule, entry=result.entry)

    def prepay(
        self,
        loan_id: str,
        amount: Money,
        mode: Union[PrepaymentMode, str],
        payment_date: Optional[date] = None,
        as_of_installment: Optional[int] = None,
        payment_method: Optional[str] = None,
        notes: Optional[str] = None
    ) -> LoanPaymentResult:
        """
        Pay extra principal and regenerate the unpaid tail of the schedule

        Args:
            loan_id: Loan to prepay
            amount: Principal paid ahead of schedule
            mode: REDUCE_EMI keeps the tenure, REDUCE_TENURE keeps the EMI
            payment_date: Defaults to today
            as_of_installment: First installment to regenerate; defaults to
                the first installment without any payment

        Returns:
            LoanPaymentResult whose entry is the prepayment ledger entry

        Raises:
            InvalidInput: bad amount or mode, closed loan, or a partially
                paid installment in the regenerated range
            OverpaymentExceedsOutstanding: amount exceeds outstanding principal
        """
        mode = self._prepayment_mode(mode)
        if not amount.is_positive():
            raise InvalidInput(f"Prepayment amount must be positive, got {amount.to_string()}")
        payment_date = payment_date or self.clock.now()

        with self.locks.lock(self._loan_key(loan_id)):
            with self.repository.atomic():
                loan = self.repository.load_loan(loan_id)
                self._ensure_open(loan)
                previous_emi = loan.emi_amount
                previous_tenure = loan.tenure_months

                schedule = self.schedule_generator.regenerate_from(
                    loan,
                    as_of_installment=as_of_installment,
                    prepayment_amount=amount,
                    mode=mode,
                )
                loan.prepayment_amount = loan.prepayment_amount + amount
                loan.last_payment_date = payment_date
                entry = self.ledger.prepayment_entry(
                    loan, amount, payment_date, payment_method=payment_method, notes=notes
                )
                self._refresh_loan(loan, schedule)

                self._audit(AuditEventType.LOAN_PREPAID, "loan", loan.id, loan.user_id, {
                    "payment_id": entry.id,
                    "amount": amount,
                    "mode": mode,
                    "outstanding_amount": loan.outstanding_amount,
                })
                self._audit(AuditEventType.SCHEDULE_REGENERATED, "loan", loan.id, loan.user_id, {
                    "reason": "prepayment",
                    "previous_emi": previous_emi,
                    "emi_amount": loan.emi_amount,
                    "previous_tenure_months": previous_tenure,
                    "tenure_months": loan.tenure_months,
                })

        log_action(
            self.logger, "info", f"Prepayment recorded on loan {loan.id}",
            user_id=loan.user_id, action="prepay", resource=f"loan:{loan.id}",
            extra={
                "amount": amount.to_string(),
                "mode": mode.value,
                "emi_amount": loan.emi_amount.to_string(),
                "tenure_months": loan.tenure_months,
            }
        )
        return LoanPaymentResult(loan=loan, schedule=schedule, entry=entry)

    def restructure(
        self,
        loan_id: str,
        interest_rate: Optional[Decimal] = None,
        tenure_months: Optional[int] = None,
        as_of_installment: Optional[int] = None
    ) -> LoanDetails:
        """
        Change the rate and/or total tenure of a loan and re-amortize the
        outstanding principal over what remains

        Raises:
            InvalidInput: neither term given, or the new terms are invalid
        """
        if interest_rate is None and tenure_months is None:
            raise InvalidInput("Restructuring needs a new interest rate or tenure")

        with self.locks.lock(self._loan_key(loan_id)):
            with self.repository.atomic():
                loan = self.repository.load_loan(loan_id)
                self._ensure_open(loan)
                previous = {
                    "interest_rate": loan.interest_rate,
                    "tenure_months": loan.tenure_months,
                    "emi_amount": loan.emi_amount,
                }

                schedule = self.schedule_generator.regenerate_from(
                    loan,
                    as_of_installment=as_of_installment,
                    interest_rate=interest_rate,
                    tenure_months=tenure_months,
                )
                self._refresh_loan(loan, schedule)

                self._audit(AuditEventType.LOAN_RESTRUCTURED, "loan", loan.id, loan.user_id, {
                    "previous": previous,
                    "interest_rate": loan.interest_rate,
                    "tenure_months": loan.tenure_months,
                    "emi_amount": loan.emi_amount,
                })
                self._audit(AuditEventType.SCHEDULE_REGENERATED, "loan", loan.id, loan.user_id, {
                    "reason": "restructure",
                    "previous_emi": previous["emi_amount"],
                    "emi_amount": loan.emi_amount,
                    "previous_tenure_months": previous["tenure_months"],
                    "tenure_months": loan.tenure_months,
                })

        log_action(
            self.logger, "info", f"Loan {loan.id} restructured",
            user_id=loan.user_id, action="restructure_loan", resource=f"loan:{loan.id}",
            extra={
                "interest_rate": str(loan.interest_rate),
                "tenure_months": loan.tenure_months,
                "emi_amount": loan.emi_amount.to_string(),
            }
        )
        return LoanDetails(loan=loan, schedule=schedule)

    def close_loan(self, loan_id: str, closed_date: Optional[date] = None) -> Loan:
        """
        Mark a loan closed by the user, e.g. settled outside the tracker.
        Closing an already closed loan returns it unchanged.
        """
        with self.locks.lock(self._loan_key(loan_id)):
            with self.repository.atomic():
                loan = self.repository.load_loan(loan_id)
                if loan.closed_date is not None:
                    return loan

                loan.closed_date = closed_date or self.clock.now()
                loan.next_due_date = None
                loan.status = LoanStatus.CLOSED
                self.repository.save_loan(loan)

                self._audit(AuditEventType.LOAN_CLOSED, "loan", loan.id, loan.user_id, {
                    "closed_date": loan.closed_date,
                    "outstanding_amount": loan.outstanding_amount,
                    "reason": "closed_by_user",
                })

        log_action(
            self.logger, "info", f"Loan {loan.id} closed",
            user_id=loan.user_id, action="close_loan", resource=f"loan:{loan.id}",
            extra={"outstanding_amount": loan.outstanding_amount.to_string()}
        )
        return loan

    def update_loan(self, loan_id: str, lender: Optional[str] = None,
                    notes: Optional[str] = None) -> Loan:
        """
        Edit a loan's descriptive fields. Terms change only through
        prepayment or restructuring, so the schedule is left alone.

        Raises:
            LoanNotFoundError: unknown loan
            InvalidInput: nothing to change or a blank lender
        """
        if lender is None and notes is None:
            raise InvalidInput("Nothing to update")
        if lender is not None and not lender.strip():
            raise InvalidInput("Lender name is required")

        with self.locks.lock(self._loan_key(loan_id)):
            with self.repository.atomic():
                loan = self.repository.load_loan(loan_id)
                changes = {}
                if lender is not None and lender.strip() != loan.lender:
                    changes["lender"] = {"from": loan.lender, "to": lender.strip()}
                    loan.lender = lender.strip()
                if notes is not None and notes != loan.notes:
                    changes["notes"] = {"from": loan.notes, "to": notes}
                    loan.notes = notes

                if changes:
                    self.repository.save_loan(loan)
                    self._audit(AuditEventType.LOAN_UPDATED, "loan", loan.id, loan.user_id, changes)

        if changes:
            log_action(
                self.logger, "info", f"Loan {loan.id} updated",
                user_id=loan.user_id, action="update_loan", resource=f"loan:{loan.id}",
                extra={"fields": sorted(changes)}
            )
        self.status_engine.refresh_loan(loan, self.repository.load_schedule(loan_id))
        return loan

    def delete_loan(self, loan_id: str) -> bool:
        """Delete a loan with its schedule and payments"""
        with self.locks.lock(self._loan_key(loan_id)):
            with self.repository.atomic():
                loan = self.repository.load_loan(loan_id)
                deleted = self.repository.delete_loan(loan_id)
                self._audit(AuditEventType.LOAN_DELETED, "loan", loan.id, loan.user_id, {
                    "lender": loan.lender,
                    "outstanding_amount": loan.outstanding_amount,
                })

        log_action(
            self.logger, "info", f"Loan {loan_id} deleted",
            user_id=loan.user_id, action="delete_loan", resource=f"loan:{loan_id}"
        )
        return deleted

    def get_loan(self, loan_id: str) -> Loan:
        loan = self.repository.load_loan(loan_id)
        self.status_engine.refresh_loan(loan, self.repository.load_schedule(loan_id))
        return loan

    def get_loan_details(self, loan_id: str) -> LoanDetails:
        loan = self.repository.load_loan(loan_id)
        schedule = self.repository.load_schedule(loan_id)
        self.status_engine.refresh_loan(loan, schedule)
        return LoanDetails(loan=loan, schedule=schedule)

    def get_schedule(self, loan_id: str) -> List[EmiSchedule]:
        self.repository.load_loan(loan_id)
        return self.repository.load_schedule(loan_id)

    def get_loan_payments(self, loan_id: str) -> List[EmiPayment]:
        self.repository.load_loan(loan_id)
        return self.repository.load_emi_payments(loan_id)

    def get_loan_performance(self, loan_id: str) -> LoanPerformance:
        details = self.get_loan_details(loan_id)
        return self.overview_aggregator.loan_performance(details.loan, details.schedule)

    def list_loans(self, user_id: str, status: Optional[LoanStatus] = None,
                   loan_type: Optional[LoanType] = None) -> List[Loan]:
        """A user's loans with freshly derived status, optionally filtered"""
        filters: Dict[str, Any] = {}
        if loan_type is not None:
            filters['loan_type'] = loan_type.value

        loans = []
        for loan in self.repository.find_loans(user_id, **filters):
            self.status_engine.refresh_loan(loan, self.repository.load_schedule(loan.id))
            if status is None or loan.status == status:
                loans.append(loan)
        return loans

    # Lendings

    def create_lending(self, lending_input: LendingInput) -> Lending:
        """
        Raises:
            InvalidInput: missing person, non-positive amount or a due date
                before the lending date
        """
        if not lending_input.person_name or not lending_input.person_name.strip():
            raise InvalidInput("Person name is required")
        if not lending_input.user_id:
            raise InvalidInput("user_id is required")
        if not lending_input.amount.is_positive():
            raise InvalidInput(f"Lending amount must be positive, got {lending_input.amount.to_string()}")
        if lending_input.due_date is not None and lending_input.due_date < lending_input.lending_date:
            raise InvalidInput("Due date cannot be before the lending date")
        if lending_input.interest_rate is not None and Decimal(str(lending_input.interest_rate)) < 0:
            raise InvalidInput("Interest rate cannot be negative")

        now = datetime.now(timezone.utc)
        lending = Lending(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=lending_input.user_id,
            person_name=lending_input.person_name.strip(),
            lending_type=lending_input.lending_type,
            amount=lending_input.amount,
            lending_date=lending_input.lending_date,
            interest_rate=lending_input.interest_rate,
            due_date=lending_input.due_date,
            notes=lending_input.notes,
        )
        self.status_engine.refresh_lending(lending)

        with self.repository.atomic():
            self.repository.save_lending(lending)
            self._audit(AuditEventType.LENDING_CREATED, "lending", lending.id, lending.user_id, {
                "person_name": lending.person_name,
                "lending_type": lending.lending_type,
                "amount": lending.amount,
                "due_date": lending.due_date,
            })

        log_action(
            self.logger, "info", f"Lending created: {lending.display_name}",
            user_id=lending.user_id, action="create_lending", resource=f"lending:{lending.id}",
            extra={"amount": lending.amount.to_string(), "status": lending.status.value}
        )
        return lending

    def record_lending_payment(self, lending_id: str, payment: PaymentInput) -> LendingPaymentResult:
        """
        Raises:
            LendingNotFoundError: unknown lending
            InvalidInput: amount is not positive or in the wrong currency
            OverpaymentExceedsPending: the repayment exceeds what is pending
        """
        with self.locks.lock(self._lending_key(lending_id)):
            with self.repository.atomic():
                lending = self.repository.load_lending(lending_id)
                payments = self.repository.load_lending_payments(lending_id)

                result = self.ledger.apply_lending_payment(lending, payments, payment)
                previous_status = lending.status
                if self.status_engine.refresh_lending(lending):
                    self.repository.save_lending(lending)
                    self._audit(AuditEventType.LENDING_STATUS_CHANGED, "lending", lending.id,
                                lending.user_id, {"from": previous_status, "to": lending.status})

                self._audit(AuditEventType.LENDING_PAYMENT_RECORDED, "lending", lending.id,
                            lending.user_id, {
                                "payment_id": result.entry.id,
                                "amount": result.entry.amount,
                                "pending_amount": lending.pending_amount,
                            })

        log_action(
            self.logger, "info", f"Repayment recorded on lending {lending.id}",
            user_id=lending.user_id, action="record_lending_payment",
            resource=f"lending:{lending.id}",
            extra={
                "amount": payment.amount.to_string(),
                "pending_amount": lending.pending_amount.to_string(),
                "status": lending.status.value,
            }
        )
        return LendingPaymentResult(lending=lending, entry=result.entry)

    def update_lending(self, lending_id: str, person_name: Optional[str] = None,
                       due_date: Optional[date] = None, notes: Optional[str] = None) -> Lending:
        """
        Edit who a lending is with, when it falls due and its notes.
        The amount and repayments are left alone; status is re-derived since
        a new due date can make the lending overdue or not.

        Raises:
            LendingNotFoundError: unknown lending
            InvalidInput: nothing to change, a blank name or a due date
                before the lending date
        """
        if person_name is None and due_date is None and notes is None:
            raise InvalidInput("Nothing to update")
        if person_name is not None and not person_name.strip():
            raise InvalidInput("Person name is required")

        with self.locks.lock(self._lending_key(lending_id)):
            with self.repository.atomic():
                lending = self.repository.load_lending(lending_id)
                if due_date is not None and due_date < lending.lending_date:
                    raise InvalidInput("Due date cannot be before the lending date")

                changes = {}
                if person_name is not None and person_name.strip() != lending.person_name:
                    changes["person_name"] = {"from": lending.person_name, "to": person_name.strip()}
                    lending.person_name = person_name.strip()
                if due_date is not None and due_date != lending.due_date:
                    changes["due_date"] = {"from": lending.due_date, "to": due_date}
                    lending.due_date = due_date
                if notes is not None and notes != lending.notes:
                    changes["notes"] = {"from": lending.notes, "to": notes}
                    lending.notes = notes

                previous_status = lending.status
                status_changed = self.status_engine.refresh_lending(lending)
                if changes or status_changed:
                    self.repository.save_lending(lending)
                if changes:
                    self._audit(AuditEventType.LENDING_UPDATED, "lending", lending.id,
                                lending.user_id, changes)
                if status_changed:
                    self._audit(AuditEventType.LENDING_STATUS_CHANGED, "lending", lending.id,
                                lending.user_id, {"from": previous_status, "to": lending.status})

        if changes:
            log_action(
                self.logger, "info", f"Lending {lending.id} updated",
                user_id=lending.user_id, action="update_lending",
                resource=f"lending:{lending.id}",
                extra={"fields": sorted(changes), "status": lending.status.value}
            )
        return lending

    def delete_lending(self, lending_id: str) -> bool:
        with self.locks.lock(self._lending_key(lending_id)):
            with self.repository.atomic():
                lending = self.repository.load_lending(lending_id)
                deleted = self.repository.delete_lending(lending_id)
                self._audit(AuditEventType.LENDING_DELETED, "lending", lending.id, lending.user_id, {
                    "person_name": lending.person_name,
                    "pending_amount": lending.pending_amount,
                })

        log_action(
            self.logger, "info", f"Lending {lending_id} deleted",
            user_id=lending.user_id, action="delete_lending", resource=f"lending:{lending_id}"
        )
        return deleted

    def get_lending(self, lending_id: str) -> Lending:
        lending = self.repository.load_lending(lending_id)
        self.status_engine.refresh_lending(lending)
        return lending

    def get_lending_payments(self, lending_id: str) -> List[LendingPayment]:
        self.repository.load_lending(lending_id)
        return self.repository.load_lending_payments(lending_id)

    def list_lendings(self, user_id: str, status: Optional[LendingStatus] = None,
                      lending_type: Optional[LendingType] = None) -> List[Lending]:
        filters: Dict[str, Any] = {}
        if lending_type is not None:
            filters['lending_type'] = lending_type.value

        lendings = []
        for lending in self.repository.find_lendings(user_id, **filters):
            self.status_engine.refresh_lending(lending)
            if status is None or lending.status == status:
                lendings.append(lending)
        return lendings

    # Templates

    def create_emi_template(
        self,
        user_id: str,
        name: str,
        loan_type: LoanType,
        default_interest_rate: Decimal,
        default_tenure_months: int,
        description: Optional[str] = None,
        is_active: bool = True
    ) -> EmiTemplate:
        """
        Raises:
            InvalidInput: blank name, negative rate or non-positive tenure
        """
        if not user_id:
            raise InvalidInput("user_id is required")
        if not name or not name.strip():
            raise InvalidInput("Template name is required")
        default_interest_rate = Decimal(str(default_interest_rate))
        if default_interest_rate < 0:
            raise InvalidInput("Interest rate cannot be negative")
        if default_tenure_months <= 0:
            raise InvalidInput("Tenure must be a positive number of months")

        now = datetime.now(timezone.utc)
        template = EmiTemplate(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            user_id=user_id,
            name=name.strip(),
            loan_type=loan_type,
            default_interest_rate=default_interest_rate,
            default_tenure_months=default_tenure_months,
            description=description,
            is_active=is_active,
        )
        self.repository.save_template(template)

        log_action(
            self.logger, "info", f"EMI template created: {template.name}",
            user_id=user_id, action="create_emi_template", resource=f"template:{template.id}",
            extra={"loan_type": loan_type.value}
        )
        return template

    def get_emi_templates(self, user_id: str) -> List[EmiTemplate]:
        """A user's active templates ordered by name"""
        templates = self.repository.find_templates(user_id, is_active=True)
        templates.sort(key=lambda template: template.name.lower())
        return templates

    # Overview

    def get_overview(self, user_id: str,
                     currency: Optional[Union[Currency, str]] = None) -> Overview:
        """Loan and lending summary for a user as of today"""
        if currency is None:
            currency = self.default_currency
        elif isinstance(currency, str):
            currency = Currency.from_code(currency)

        loans = [
            (loan, self.repository.load_schedule(loan.id))
            for loan in self.repository.find_loans(user_id)
        ]
        lendings = self.repository.find_lendings(user_id)
        return self.overview_aggregator.overview(
            user_id, loans, lendings, self.clock.now(), currency
        )

    # Helpers

    @staticmethod
    def _loan_key(loan_id: str) -> str:
        return f"loan:{loan_id}"

    @staticmethod
    def _lending_key(lending_id: str) -> str:
        return f"lending:{lending_id}"

    @staticmethod
    def _prepayment_mode(mode: Union[PrepaymentMode, str]) -> PrepaymentMode:
        if isinstance(mode, PrepaymentMode):
            return mode
        try:
            return PrepaymentMode(mode)
        except ValueError:
            raise InvalidInput(f"Unknown prepayment mode: {mode!r}")

    def _ensure_open(self, loan: Loan) -> None:
        if loan.closed_date is not None or loan.outstanding_amount.is_zero():
            self.logger.warning(f"Rejected operation on closed loan {loan.id}")
            raise InvalidInput(f"Loan {loan.id} is closed")

    def _load_schedule(self, loan: Loan) -> List[EmiSchedule]:
        schedule = self.repository.load_schedule(loan.id)
        if not schedule:
            raise ScheduleNotFoundError(f"Loan {loan.id} has no schedule")
        return schedule

    def _refresh_loan(self, loan: Loan, schedule: List[EmiSchedule]) -> None:
        """Re-derive the cached status, store it and audit any transition"""
        previous_status = loan.status
        changed = self.status_engine.refresh_loan(loan, schedule)
        self.repository.save_loan(loan)
        if not changed:
            return

        self._audit(AuditEventType.LOAN_STATUS_CHANGED, "loan", loan.id, loan.user_id, {
            "from": previous_status,
            "to": loan.status,
        })
        if loan.status == LoanStatus.CLOSED:
            self._audit(AuditEventType.LOAN_CLOSED, "loan", loan.id, loan.user_id, {
                "closed_date": loan.closed_date,
                "reason": "paid_off",
            })

    def _audit(self, event_type: AuditEventType, entity_type: str, entity_id: str,
               user_id: str, metadata: Dict[str, Any]) -> None:
        if self.audit_trail is None:
            return
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type=entity_type,
            entity_id=entity_id,
            metadata=metadata,
            user_id=user_id,
        )
