"""
EMI calculator endpoint
"""

from fastapi import APIRouter, Depends

from .deps import EmiSystem, get_emi_system
from .schemas import EmiCalculationRequest, money_dict


router = APIRouter()


@router.post("/emi")
async def calculate_emi(
    request: EmiCalculationRequest,
    system: EmiSystem = Depends(get_emi_system)
):
    """Fixed installment and month-by-month breakdown; nothing is stored"""
    result = system.service.calculate_amortization(
        principal=request.principal.to_money(),
        annual_rate_percent=request.annual_rate_percent,
        tenure_months=request.tenure_months
    )

    return {
        "principal": money_dict(result.principal),
        "annual_rate_percent": str(result.annual_rate_percent),
        "tenure_months": result.tenure_months,
        "emi": money_dict(result.emi),
        "total_payment": money_dict(result.total_payment),
        "total_interest": money_dict(result.total_interest),
        "principal_percentage": str(result.principal_percentage),
        "interest_percentage": str(result.interest_percentage),
        "breakdown": [row.to_dict() for row in result.breakdown]
    }
