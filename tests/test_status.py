"""
Test suite for status engine

Tests derived loan, installment and lending status against an injected clock.
"""

import pytest
import uuid
from itertools import product
from decimal import Decimal
from datetime import date, datetime, timedelta, timezone

from emi_engine.clock import FixedClock
from emi_engine.currency import Money, Currency
from emi_engine.storage import InMemoryStorage
from emi_engine.repository import LoanRepository
from emi_engine.models import (
    Loan, Lending, LoanType, LendingType, LoanStatus, LendingStatus,
    InstallmentState, PaymentInput
)
from emi_engine.schedule import ScheduleGenerator
from emi_engine.ledger import PaymentLedger
from emi_engine.status import StatusEngine, days_overdue


def bdt(amount):
    return Money(Decimal(amount), Currency.BDT)


@pytest.fixture
def clock():
    return FixedClock(date(2024, 2, 1))


@pytest.fixture
def engine(clock):
    return StatusEngine(clock, grace_installments=3)


@pytest.fixture
def repository():
    return LoanRepository(InMemoryStorage())


@pytest.fixture
def loan_and_schedule(repository):
    """Installments due on the 15th of each month from 2024-02-15"""
    now = datetime.now(timezone.utc)
    loan = Loan(
        id=str(uuid.uuid4()),
        created_at=now,
        updated_at=now,
        user_id="user-1",
        lender="City Bank",
        loan_type=LoanType.CAR,
        principal_amount=bdt('120000'),
        interest_rate=Decimal('10'),
        tenure_months=12,
        start_date=date(2024, 1, 15),
    )
    repository.save_loan(loan)
    schedule = ScheduleGenerator(repository).generate(loan)
    return loan, schedule


class TestDaysOverdue:
    """Test overdue day counting"""

    def test_not_yet_due(self):
        assert days_overdue(date(2024, 2, 15), date(2024, 2, 10)) == 0
        assert days_overdue(date(2024, 2, 15), date(2024, 2, 15)) == 0

    def test_past_due(self):
        assert days_overdue(date(2024, 2, 15), date(2024, 2, 20)) == 5


class TestInstallmentState:
    """Test per-row state"""

    def test_pending_until_due(self, engine, loan_and_schedule):
        _, schedule = loan_and_schedule
        assert engine.installment_state(schedule[0], date(2024, 2, 15)) == InstallmentState.PENDING

    def test_late_after_due(self, engine, loan_and_schedule):
        _, schedule = loan_and_schedule
        assert engine.installment_state(schedule[0], date(2024, 2, 16)) == InstallmentState.LATE

    def test_paid(self, engine, repository, loan_and_schedule):
        loan, schedule = loan_and_schedule
        PaymentLedger(repository).apply_loan_payment(
            loan, schedule, PaymentInput(bdt('10549.91'), date(2024, 3, 1))
        )
        assert engine.installment_state(schedule[0], date(2024, 3, 1)) == InstallmentState.PAID

    def test_uses_clock_by_default(self, engine, clock, loan_and_schedule):
        _, schedule = loan_and_schedule
        assert engine.installment_state(schedule[0]) == InstallmentState.PENDING
        clock.advance(29)
        assert engine.installment_state(schedule[0]) == InstallmentState.LATE


class TestLoanStatus:
    """Test derived loan status"""

    def test_active(self, engine, loan_and_schedule):
        loan, schedule = loan_and_schedule
        assert engine.loan_status(loan, schedule, date(2024, 2, 1)) == LoanStatus.ACTIVE

    def test_within_grace(self, engine, loan_and_schedule):
        """Three missed installments are tolerated"""
        loan, schedule = loan_and_schedule
        today = date(2024, 4, 20)
        assert len(engine.overdue_installments(schedule, today)) == 3
        assert engine.loan_status(loan, schedule, today) == LoanStatus.ACTIVE

    def test_defaulted_past_grace(self, engine, loan_and_schedule):
        loan, schedule = loan_and_schedule
        today = date(2024, 5, 20)
        assert engine.consecutive_missed(schedule, today) == 4
        assert engine.loan_status(loan, schedule, today) == LoanStatus.DEFAULTED

    def test_grace_is_configurable(self, clock, loan_and_schedule):
        loan, schedule = loan_and_schedule
        strict = StatusEngine(clock, grace_installments=0)
        assert strict.loan_status(loan, schedule, date(2024, 2, 16)) == LoanStatus.DEFAULTED

    def test_closed_when_outstanding_zero(self, engine, loan_and_schedule):
        loan, schedule = loan_and_schedule
        loan.outstanding_amount = Money.zero(Currency.BDT)
        assert engine.loan_status(loan, schedule, date(2030, 1, 1)) == LoanStatus.CLOSED

    def test_closed_by_user(self, engine, loan_and_schedule):
        loan, schedule = loan_and_schedule
        loan.closed_date = date(2024, 2, 1)
        assert engine.loan_status(loan, schedule, date(2030, 1, 1)) == LoanStatus.CLOSED

    def test_catching_up_restores_active(self, engine, repository, loan_and_schedule):
        loan, schedule = loan_and_schedule
        today = date(2024, 6, 20)
        assert engine.loan_status(loan, schedule, today) == LoanStatus.DEFAULTED

        PaymentLedger(repository).apply_loan_payment(
            loan, schedule, PaymentInput(bdt('10549.91') * 2, today)
        )
        assert engine.loan_status(loan, schedule, today) == LoanStatus.ACTIVE

    def test_refresh_loan(self, engine, loan_and_schedule):
        loan, schedule = loan_and_schedule
        assert engine.refresh_loan(loan, schedule, date(2024, 6, 20))
        assert loan.status == LoanStatus.DEFAULTED
        assert not engine.refresh_loan(loan, schedule, date(2024, 6, 20))

    def test_refresh_stamps_closed_date(self, engine, loan_and_schedule):
        loan, schedule = loan_and_schedule
        loan.outstanding_amount = Money.zero(Currency.BDT)
        loan.last_payment_date = date(2024, 3, 3)
        engine.refresh_loan(loan, schedule, date(2024, 3, 10))
        assert loan.status == LoanStatus.CLOSED
        assert loan.closed_date == date(2024, 3, 3)


class TestLendingStatus:
    """Test derived lending status"""

    def test_pending(self, engine):
        today = date(2024, 2, 1)
        assert engine.lending_status(bdt('5000'), bdt('5000'), None, today) == LendingStatus.PENDING
        assert engine.lending_status(bdt('5000'), bdt('5000'), today, today) == LendingStatus.PENDING

    def test_partial(self, engine):
        """5000 lent, 2000 repaid, no due date"""
        assert engine.lending_status(bdt('5000'), bdt('3000'), None, date(2024, 2, 1)) == LendingStatus.PARTIAL

    def test_paid(self, engine):
        assert engine.lending_status(bdt('5000'), bdt('0'), None, date(2024, 2, 1)) == LendingStatus.PAID

    def test_overdue(self, engine):
        """Nothing repaid and the due date was yesterday"""
        today = date(2024, 2, 1)
        yesterday = today - timedelta(days=1)
        assert engine.lending_status(bdt('5000'), bdt('5000'), yesterday, today) == LendingStatus.OVERDUE

    def test_overdue_overrides_partial(self, engine):
        assert engine.lending_status(
            bdt('5000'), bdt('1000'), date(2024, 1, 1), date(2024, 2, 1)
        ) == LendingStatus.OVERDUE

    def test_paid_wins_over_past_due_date(self, engine):
        assert engine.lending_status(
            bdt('5000'), bdt('0'), date(2020, 1, 1), date(2024, 2, 1)
        ) == LendingStatus.PAID

    def test_totality(self, engine):
        """Every combination yields exactly one status; zero pending is always paid"""
        today = date(2024, 2, 1)
        pendings = [bdt('0'), bdt('0.01'), bdt('2500'), bdt('5000')]
        due_dates = [None, today - timedelta(days=1), today, today + timedelta(days=1)]

        for pending, due in product(pendings, due_dates):
            status = engine.lending_status(bdt('5000'), pending, due, today)
            assert isinstance(status, LendingStatus)
            if pending.is_zero():
                assert status == LendingStatus.PAID

    def test_refresh_lending(self, engine):
        now = datetime.now(timezone.utc)
        lending = Lending(
            id="lending-1",
            created_at=now,
            updated_at=now,
            user_id="user-1",
            person_name="Karim",
            lending_type=LendingType.BORROWED,
            amount=bdt('5000'),
            lending_date=date(2024, 1, 1),
            due_date=date(2024, 1, 31),
        )
        assert engine.refresh_lending(lending)
        assert lending.status == LendingStatus.OVERDUE
