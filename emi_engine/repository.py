"""
Loan Repository

Persistence collaborator for loans, schedules, lendings and their payment
ledgers. Sits on top of any StorageInterface; callers wrap multi-record
updates in ``atomic()`` so that a failure leaves nothing half-written.
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from .storage import StorageInterface
from .models import Loan, EmiSchedule, EmiPayment, Lending, LendingPayment, EmiTemplate
from .errors import (
    LoanNotFoundError, LendingNotFoundError, ConcurrentModificationError, InvalidInput
)


class LoanRepository:
    """Loads and stores loan and lending records"""

    def __init__(self, storage: StorageInterface):
        self.storage = storage

        self.loans_table = "loans"
        self.schedule_table = "emi_schedules"
        self.emi_payments_table = "emi_payments"
        self.lendings_table = "lendings"
        self.lending_payments_table = "lending_payments"
        self.templates_table = "emi_templates"

    def atomic(self):
        """Transaction scope supplied by the storage backend"""
        return self.storage.atomic()

    # Loans

    def get_loan(self, loan_id: str) -> Optional[Loan]:
        data = self.storage.load(self.loans_table, loan_id)
        return Loan.from_dict(data) if data else None

    def load_loan(self, loan_id: str) -> Loan:
        loan = self.get_loan(loan_id)
        if not loan:
            raise LoanNotFoundError(f"Loan {loan_id} not found")
        return loan

    def save_loan(self, loan: Loan) -> None:
        """
        Insert or update a loan.

        The stored version must match the loan's version; the write bumps it.
        A mismatch means the loan was read before someone else saved it.
        """
        existing = self.storage.load(self.loans_table, loan.id)
        self._check_version("Loan", loan.id, existing, loan.version)
        loan.version += 1
        loan.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.loans_table, loan.id, loan.to_dict())

    def find_loans(self, user_id: str, **filters: Any) -> List[Loan]:
        query: Dict[str, Any] = {"user_id": user_id}
        query.update(filters)
        loans = [Loan.from_dict(data) for data in self.storage.find(self.loans_table, query)]
        loans.sort(key=lambda loan: loan.created_at)
        return loans

    def delete_loan(self, loan_id: str) -> bool:
        """Delete a loan with its schedule and payment ledger"""
        self.storage.delete_where(self.schedule_table, {"loan_id": loan_id})
        self.storage.delete_where(self.emi_payments_table, {"loan_id": loan_id})
        return self.storage.delete(self.loans_table, loan_id)

    # Schedule

    def load_schedule(self, loan_id: str) -> List[EmiSchedule]:
        """Schedule rows ordered by installment number"""
        rows = [EmiSchedule.from_dict(data)
                for data in self.storage.find(self.schedule_table, {"loan_id": loan_id})]
        rows.sort(key=lambda row: row.installment_number)
        return rows

    def save_schedule(self, rows: List[EmiSchedule]) -> None:
        for row in rows:
            self.storage.save(self.schedule_table, row.id, row.to_dict())

    def replace_schedule_tail(self, loan_id: str, from_installment: int,
                              rows: List[EmiSchedule]) -> None:
        """Drop every row numbered ``from_installment`` or later, then insert ``rows``"""
        for data in self.storage.find(self.schedule_table, {"loan_id": loan_id}):
            if data['installment_number'] >= from_installment:
                self.storage.delete(self.schedule_table, data['id'])
        self.save_schedule(rows)

    # Loan payment ledger

    def append_emi_payment(self, entry: EmiPayment) -> None:
        if self.storage.exists(self.emi_payments_table, entry.id):
            raise InvalidInput(f"Payment {entry.id} is already recorded")
        self.storage.save(self.emi_payments_table, entry.id, entry.to_dict())

    def load_emi_payments(self, loan_id: str) -> List[EmiPayment]:
        payments = [EmiPayment.from_dict(data)
                    for data in self.storage.find(self.emi_payments_table, {"loan_id": loan_id})]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    # Lendings

    def get_lending(self, lending_id: str) -> Optional[Lending]:
        data = self.storage.load(self.lendings_table, lending_id)
        return Lending.from_dict(data) if data else None

    def load_lending(self, lending_id: str) -> Lending:
        lending = self.get_lending(lending_id)
        if not lending:
            raise LendingNotFoundError(f"Lending {lending_id} not found")
        return lending

    def save_lending(self, lending: Lending) -> None:
        existing = self.storage.load(self.lendings_table, lending.id)
        self._check_version("Lending", lending.id, existing, lending.version)
        lending.version += 1
        lending.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.lendings_table, lending.id, lending.to_dict())

    def find_lendings(self, user_id: str, **filters: Any) -> List[Lending]:
        query: Dict[str, Any] = {"user_id": user_id}
        query.update(filters)
        lendings = [Lending.from_dict(data) for data in self.storage.find(self.lendings_table, query)]
        lendings.sort(key=lambda lending: lending.created_at)
        return lendings

    def delete_lending(self, lending_id: str) -> bool:
        self.storage.delete_where(self.lending_payments_table, {"lending_id": lending_id})
        return self.storage.delete(self.lendings_table, lending_id)

    # Lending payment ledger

    def append_lending_payment(self, entry: LendingPayment) -> None:
        if self.storage.exists(self.lending_payments_table, entry.id):
            raise InvalidInput(f"Payment {entry.id} is already recorded")
        self.storage.save(self.lending_payments_table, entry.id, entry.to_dict())

    def load_lending_payments(self, lending_id: str) -> List[LendingPayment]:
        payments = [LendingPayment.from_dict(data)
                    for data in self.storage.find(self.lending_payments_table, {"lending_id": lending_id})]
        payments.sort(key=lambda p: (p.payment_date, p.created_at))
        return payments

    # Templates

    def save_template(self, template: EmiTemplate) -> None:
        template.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.templates_table, template.id, template.to_dict())

    def find_templates(self, user_id: str, **filters: Any) -> List[EmiTemplate]:
        query: Dict[str, Any] = {"user_id": user_id}
        query.update(filters)
        return [EmiTemplate.from_dict(data) for data in self.storage.find(self.templates_table, query)]

    @staticmethod
    def _check_version(kind: str, record_id: str, existing: Optional[Dict[str, Any]],
                       version: int) -> None:
        stored_version = existing.get('version', 0) if existing else 0
        if stored_version != version:
            raise ConcurrentModificationError(
                f"{kind} {record_id} was modified concurrently "
                f"(stored version {stored_version}, read version {version})"
            )
