"""
Loan endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .deps import EmiSystem, get_emi_system
from .schemas import (
    CreateLoanRequest, CreatePurchaseEmiRequest, UpdateLoanRequest, LoanPaymentRequest,
    PrepaymentRequest, RestructureRequest, CloseLoanRequest, loan_response, schedule_row_response, emi_payment_response
)
from ..models import LoanStatus, LoanType
from ..status import days_overdue


router = APIRouter()


def _schedule_response(system: EmiSystem, schedule):
    today = system.clock.now()
    engine = system.service.status_engine
    return [
        schedule_row_response(
            row,
            engine.installment_state(row, today),
            0 if row.is_paid else days_overdue(row.due_date, today)
        )
        for row in schedule
    ]


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_loan(
    request: CreateLoanRequest,
    system: EmiSystem = Depends(get_emi_system)
):
    """Create a loan and generate its schedule"""
    details = system.service.create_loan_with_schedule(request.to_loan_input())

    return {
        "loan": loan_response(details.loan),
        "schedule": _schedule_response(system, details.schedule),
        "message": "Loan created successfully"
    }


@router.post("/purchase", status_code=status.HTTP_201_CREATED)
async def create_purchase_emi(
    request: CreatePurchaseEmiRequest,
    system: EmiSystem = Depends(get_emi_system)
):
    """Finance an item bought on installments"""
    details = system.service.create_purchase_emi(request.to_purchase_input())

    return {
        "loan": loan_response(details.loan),
        "schedule": _schedule_response(system, details.schedule),
        "message": "Purchase EMI created successfully"
    }


@router.get("")
async def list_loans(
    user_id: str,
    loan_status: Optional[LoanStatus] = Query(None, alias="status"),
    loan_type: Optional[LoanType] = None,
    system: EmiSystem = Depends(get_emi_system)
):
    """List a user's loans"""
    loans = system.service.list_loans(user_id, status=loan_status, loan_type=loan_type)
    return {
        "loans": [loan_response(loan) for loan in loans],
        "total_count": len(loans)
    }


@router.get("/{loan_id}")
async def get_loan(
    loan_id: str,
    system: EmiSystem = Depends(get_emi_system)
):
    """Get loan details"""
    return loan_response(system.service.get_loan(loan_id))


@router.patch("/{loan_id}")
async def update_loan(
    loan_id: str,
    request: UpdateLoanRequest,
    system: EmiSystem = Depends(get_emi_system)
):
    """Edit the lender or notes; terms are left alone"""
    loan = system.service.update_loan(loan_id, lender=request.lender, notes=request.notes)
    return {
        "loan": loan_response(loan),
        "message": "Loan updated successfully"
    }


@router.get("/{loan_id}/schedule")
async def get_loan_schedule(
    loan_id: str,
    system: EmiSystem = Depends(get_emi_system)
):
    """Get the installment schedule with each row's current state"""
    schedule = system.service.get_schedule(loan_id)
    return {
        "loan_id": loan_id,
        "schedule": _schedule_response(system, schedule),
        "total_installments": len(schedule)
    }


@router.get("/{loan_id}/payments")
async def get_loan_payments(
    loan_id: str,
    system: EmiSystem = Depends(get_emi_system)
):
    """Get the payment ledger of a loan"""
    payments = system.service.get_loan_payments(loan_id)
    return {
        "loan_id": loan_id,
        "payments": [emi_payment_response(entry) for entry in payments],
        "total_count": len(payments)
    }


@router.get("/{loan_id}/performance")
async def get_loan_performance(
    loan_id: str,
    system: EmiSystem = Depends(get_emi_system)
):
    """Repayment track record of a loan"""
    return system.service.get_loan_performance(loan_id).to_dict()


@router.post("/{loan_id}/payments", status_code=status.HTTP_201_CREATED)
async def record_payment(
    loan_id: str,
    request: LoanPaymentRequest,
    system: EmiSystem = Depends(get_emi_system)
):
    """Apply a payment to the schedule"""
    result = system.service.record_payment(loan_id, request.to_payment_input(system.clock.now()))

    return {
        "loan": loan_response(result.loan),
        "payment": emi_payment_response(result.entry),
        "message": "Payment recorded successfully"
    }


@router.post("/{loan_id}/prepay")
async def prepay_loan(
    loan_id: str,
    request: PrepaymentRequest,
    system: EmiSystem = Depends(get_emi_system)
):
    """Prepay principal and regenerate the remaining schedule"""
    result = system.service.prepay(
        loan_id,
        amount=request.amount.to_money(),
        mode=request.mode,
        payment_date=request.payment_date,
        as_of_installment=request.as_of_installment,
        payment_method=request.payment_method.value if request.payment_method else None,
        notes=request.notes
    )

    return {
        "loan": loan_response(result.loan),
        "schedule": _schedule_response(system, result.schedule),
        "payment": emi_payment_response(result.entry),
        "message": "Prepayment recorded successfully"
    }


@router.post("/{loan_id}/restructure")
async def restructure_loan(
    loan_id: str,
    request: RestructureRequest,
    system: EmiSystem = Depends(get_emi_system)
):
    """Change rate or tenure and regenerate the remaining schedule"""
    details = system.service.restructure(
        loan_id,
        interest_rate=request.interest_rate,
        tenure_months=request.tenure_months,
        as_of_installment=request.as_of_installment
    )

    return {
        "loan": loan_response(details.loan),
        "schedule": _schedule_response(system, details.schedule),
        "message": "Loan restructured successfully"
    }


@router.post("/{loan_id}/close")
async def close_loan(
    loan_id: str,
    request: Optional[CloseLoanRequest] = None,
    system: EmiSystem = Depends(get_emi_system)
):
    """Mark a loan closed"""
    closed_date = request.closed_date if request else None
    loan = system.service.close_loan(loan_id, closed_date=closed_date)
    return {
        "loan": loan_response(loan),
        "message": "Loan closed successfully"
    }


@router.delete("/{loan_id}")
async def delete_loan(
    loan_id: str,
    system: EmiSystem = Depends(get_emi_system)
):
    """Delete a loan with its schedule and payments"""
    system.service.delete_loan(loan_id)
    return {"loan_id": loan_id, "message": "Loan deleted successfully"}
