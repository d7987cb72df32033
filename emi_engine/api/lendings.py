"""
Lending endpoints
"""

from typing import Optional
from fastapi import APIRouter, Depends, Query, status

from .deps import EmiSystem, get_emi_system
from .schemas import (
    CreateLendingRequest, UpdateLendingRequest, PaymentRequest, lending_response,
    lending_payment_response
)
from ..models import LendingStatus, LendingType


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_lending(
    request: CreateLendingRequest,
    system: EmiSystem = Depends(get_emi_system)
):
    """Record money lent to or borrowed from someone"""
    lending = system.service.create_lending(request.to_lending_input())
    return {
        "lending": lending_response(lending),
        "message": "Lending created successfully"
    }


@router.get("")
async def list_lendings(
    user_id: str,
    lending_status: Optional[LendingStatus] = Query(None, alias="status"),
    lending_type: Optional[LendingType] = None,
    system: EmiSystem = Depends(get_emi_system)
):
    """List a user's lendings"""
    lendings = system.service.list_lendings(user_id, status=lending_status, lending_type=lending_type)
    return {
        "lendings": [lending_response(lending) for lending in lendings],
        "total_count": len(lendings)
    }


@router.get("/{lending_id}")
async def get_lending(
    lending_id: str,
    system: EmiSystem = Depends(get_emi_system)
):
    """Get lending details"""
    return lending_response(system.service.get_lending(lending_id))


@router.patch("/{lending_id}")
async def update_lending(
    lending_id: str,
    request: UpdateLendingRequest,
    system: EmiSystem = Depends(get_emi_system)
):
    """Edit the person, due date or notes"""
    lending = system.service.update_lending(
        lending_id,
        person_name=request.person_name,
        due_date=request.due_date,
        notes=request.notes
    )
    return {
        "lending": lending_response(lending),
        "message": "Lending updated successfully"
    }


@router.get("/{lending_id}/payments")
async def get_lending_payments(
    lending_id: str,
    system: EmiSystem = Depends(get_emi_system)
):
    """Get the repayment ledger of a lending"""
    payments = system.service.get_lending_payments(lending_id)
    return {
        "lending_id": lending_id,
        "payments": [lending_payment_response(entry) for entry in payments],
        "total_count": len(payments)
    }


@router.post("/{lending_id}/payments", status_code=status.HTTP_201_CREATED)
async def record_lending_payment(
    lending_id: str,
    request: PaymentRequest,
    system: EmiSystem = Depends(get_emi_system)
):
    """Record a repayment"""
    result = system.service.record_lending_payment(
        lending_id, request.to_payment_input(system.clock.now())
    )
    return {
        "lending": lending_response(result.lending),
        "payment": lending_payment_response(result.entry),
        "message": "Payment recorded successfully"
    }


@router.delete("/{lending_id}")
async def delete_lending(
    lending_id: str,
    system: EmiSystem = Depends(get_emi_system)
):
    """Delete a lending with its repayments"""
    system.service.delete_lending(lending_id)
    return {"lending_id": lending_id, "message": "Lending deleted successfully"}
