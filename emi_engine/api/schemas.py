"""
Pydantic schemas for API requests and responses
"""

from decimal import Decimal, InvalidOperation
from datetime import date
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, field_validator

from ..currency import Money, Currency
from ..models import (
    Loan, EmiSchedule, EmiPayment, Lending, LendingPayment, PaymentInput, EmiTemplate,
    LoanType, LendingType, PaymentMethod, PrepaymentMode, InstallmentState,
    PurchaseCategory, ItemCondition
)
from ..service import LoanInput, LendingInput, PurchaseInput


class MoneyModel(BaseModel):
    amount: str = Field(..., description="Decimal amount as string")
    currency: str = Field(..., description="Currency code (BDT, INR, USD, etc.)")

    @field_validator("amount")
    @classmethod
    def _decimal_amount(cls, value: str) -> str:
        try:
            amount = Decimal(value)
        except InvalidOperation:
            raise ValueError(f"Not a decimal amount: {value!r}")
        if not amount.is_finite():
            raise ValueError(f"Amount must be finite: {value!r}")
        return value

    @field_validator("currency")
    @classmethod
    def _known_currency(cls, value: str) -> str:
        return Currency.from_code(value).code

    def to_money(self) -> Money:
        return Money(Decimal(self.amount), Currency.from_code(self.currency))

    @classmethod
    def from_money(cls, money: Money) -> 'MoneyModel':
        return cls(amount=str(money.amount), currency=money.currency.code)


def money_dict(money: Optional[Money]) -> Optional[Dict[str, str]]:
    return MoneyModel.from_money(money).model_dump() if money is not None else None


# Calculator schemas
class EmiCalculationRequest(BaseModel):
    principal: MoneyModel
    annual_rate_percent: Decimal = Field(..., description="Annual rate in percent, 10 = 10%")
    tenure_months: int


# Loan schemas
class CreateLoanRequest(BaseModel):
    user_id: str
    lender: str
    loan_type: LoanType = LoanType.PERSONAL
    principal_amount: MoneyModel
    interest_rate: Decimal = Field(..., description="Annual rate in percent")
    tenure_months: int
    start_date: date
    payment_day: Optional[int] = Field(None, description="Day of month installments fall due (1-31)")
    notes: Optional[str] = None

    def to_loan_input(self) -> LoanInput:
        return LoanInput(
            user_id=self.user_id,
            lender=self.lender,
            loan_type=self.loan_type,
            principal_amount=self.principal_amount.to_money(),
            interest_rate=self.interest_rate,
            tenure_months=self.tenure_months,
            start_date=self.start_date,
            payment_day=self.payment_day,
            notes=self.notes,
        )


class CreatePurchaseEmiRequest(BaseModel):
    user_id: str
    item_name: str
    vendor_name: str
    category: PurchaseCategory
    principal_amount: MoneyModel = Field(..., description="Financed amount, excluding the down payment")
    interest_rate: Decimal = Field(..., description="Annual rate in percent")
    tenure_months: int
    purchase_date: date
    condition: ItemCondition = ItemCondition.NEW
    down_payment: Optional[MoneyModel] = None
    warranty_months: Optional[int] = None
    notes: Optional[str] = None

    def to_purchase_input(self) -> PurchaseInput:
        return PurchaseInput(
            user_id=self.user_id,
            item_name=self.item_name,
            vendor_name=self.vendor_name,
            category=self.category,
            principal_amount=self.principal_amount.to_money(),
            interest_rate=self.interest_rate,
            tenure_months=self.tenure_months,
            purchase_date=self.purchase_date,
            condition=self.condition,
            down_payment=self.down_payment.to_money() if self.down_payment else None,
            warranty_months=self.warranty_months,
            notes=self.notes,
        )


class UpdateLoanRequest(BaseModel):
    lender: Optional[str] = None
    notes: Optional[str] = None


class PaymentRequest(BaseModel):
    amount: MoneyModel
    payment_date: Optional[date] = None  # today when omitted
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = None

    def to_payment_input(self, today: date, late_fee: Optional[Money] = None) -> PaymentInput:
        return PaymentInput(
            amount=self.amount.to_money(),
            payment_date=self.payment_date or today,
            late_fee=late_fee,
            payment_method=self.payment_method.value if self.payment_method else None,
            notes=self.notes,
        )


class LoanPaymentRequest(PaymentRequest):
    late_fee: Optional[MoneyModel] = Field(None, description="Charged only if the installment is overdue")

    def to_payment_input(self, today: date, late_fee: Optional[Money] = None) -> PaymentInput:
        if late_fee is None and self.late_fee is not None:
            late_fee = self.late_fee.to_money()
        return super().to_payment_input(today, late_fee)


class PrepaymentRequest(BaseModel):
    amount: MoneyModel
    mode: PrepaymentMode = Field(..., description="reduce_emi or reduce_tenure")
    payment_date: Optional[date] = None
    as_of_installment: Optional[int] = None
    payment_method: Optional[PaymentMethod] = None
    notes: Optional[str] = None


class RestructureRequest(BaseModel):
    interest_rate: Optional[Decimal] = None
    tenure_months: Optional[int] = Field(None, description="New total tenure, paid installments included")
    as_of_installment: Optional[int] = None


class CloseLoanRequest(BaseModel):
    closed_date: Optional[date] = None


# Lending schemas
class CreateLendingRequest(BaseModel):
    user_id: str
    person_name: str
    lending_type: LendingType
    amount: MoneyModel
    lending_date: date
    interest_rate: Optional[Decimal] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None

    def to_lending_input(self) -> LendingInput:
        return LendingInput(
            user_id=self.user_id,
            person_name=self.person_name,
            lending_type=self.lending_type,
            amount=self.amount.to_money(),
            lending_date=self.lending_date,
            interest_rate=self.interest_rate,
            due_date=self.due_date,
            notes=self.notes,
        )


class UpdateLendingRequest(BaseModel):
    person_name: Optional[str] = None
    due_date: Optional[date] = None
    notes: Optional[str] = None


# Template schemas
class CreateTemplateRequest(BaseModel):
    user_id: str
    name: str
    description: Optional[str] = None
    loan_type: LoanType = LoanType.PERSONAL
    default_interest_rate: Decimal = Field(..., description="Annual rate in percent")
    default_tenure_months: int
    is_active: bool = True


# Response shapes

def _iso(value: Optional[date]) -> Optional[str]:
    return value.isoformat() if value else None


def _purchase_response(loan: Loan) -> Optional[Dict[str, Any]]:
    purchase = loan.purchase
    if purchase is None:
        return None
    return {
        "item_name": purchase.item_name,
        "category": purchase.category.value,
        "condition": purchase.condition.value,
        "down_payment": money_dict(purchase.down_payment),
        "warranty_months": purchase.warranty_months,
    }


def template_response(template: EmiTemplate) -> Dict[str, Any]:
    return {
        "id": template.id,
        "user_id": template.user_id,
        "name": template.name,
        "description": template.description,
        "loan_type": template.loan_type.value,
        "default_interest_rate": str(template.default_interest_rate),
        "default_tenure_months": template.default_tenure_months,
        "is_active": template.is_active,
    }


def loan_response(loan: Loan) -> Dict[str, Any]:
    return {
        "id": loan.id,
        "user_id": loan.user_id,
        "lender": loan.lender,
        "display_name": loan.display_name,
        "loan_type": loan.loan_type.value,
        "principal_amount": money_dict(loan.principal_amount),
        "outstanding_amount": money_dict(loan.outstanding_amount),
        "interest_rate": str(loan.interest_rate),
        "emi_amount": money_dict(loan.emi_amount),
        "tenure_months": loan.tenure_months,
        "start_date": loan.start_date.isoformat(),
        "next_due_date": _iso(loan.next_due_date),
        "payment_day": loan.payment_day,
        "status": loan.status.value,
        "currency": loan.currency.code,
        "last_payment_date": _iso(loan.last_payment_date),
        "prepayment_amount": money_dict(loan.prepayment_amount),
        "closed_date": _iso(loan.closed_date),
        "notes": loan.notes,
        "purchase": _purchase_response(loan),
        "version": loan.version,
    }


def schedule_row_response(row: EmiSchedule, state: InstallmentState,
                          days_overdue: int = 0) -> Dict[str, Any]:
    return {
        "id": row.id,
        "installment_number": row.installment_number,
        "due_date": row.due_date.isoformat(),
        "emi_amount": money_dict(row.emi_amount),
        "principal_amount": money_dict(row.principal_amount),
        "interest_amount": money_dict(row.interest_amount),
        "outstanding_balance": money_dict(row.outstanding_balance),
        "is_paid": row.is_paid,
        "state": state.value,
        "days_overdue": days_overdue,
        "payment_date": _iso(row.payment_date),
        "actual_payment_amount": money_dict(row.actual_payment_amount),
        "amount_due": money_dict(row.amount_due),
        "late_fee": money_dict(row.late_fee),
    }


def emi_payment_response(entry: EmiPayment) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "loan_id": entry.loan_id,
        "payment_date": entry.payment_date.isoformat(),
        "amount": money_dict(entry.amount),
        "principal_amount": money_dict(entry.principal_amount),
        "interest_amount": money_dict(entry.interest_amount),
        "outstanding_balance": money_dict(entry.outstanding_balance),
        "is_prepayment": entry.is_prepayment,
        "late_fee": money_dict(entry.late_fee),
        "installment_numbers": list(entry.installment_numbers),
        "payment_method": entry.payment_method,
        "notes": entry.notes,
    }


def lending_response(lending: Lending) -> Dict[str, Any]:
    return {
        "id": lending.id,
        "user_id": lending.user_id,
        "person_name": lending.person_name,
        "display_name": lending.display_name,
        "lending_type": lending.lending_type.value,
        "amount": money_dict(lending.amount),
        "pending_amount": money_dict(lending.pending_amount),
        "interest_rate": str(lending.interest_rate) if lending.interest_rate is not None else None,
        "lending_date": lending.lending_date.isoformat(),
        "due_date": _iso(lending.due_date),
        "status": lending.status.value,
        "currency": lending.currency.code,
        "notes": lending.notes,
    }


def lending_payment_response(entry: LendingPayment) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "lending_id": entry.lending_id,
        "payment_date": entry.payment_date.isoformat(),
        "amount": money_dict(entry.amount),
        "payment_method": entry.payment_method,
        "notes": entry.notes,
    }
