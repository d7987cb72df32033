"""
Overview endpoint
"""

from typing import Optional
from fastapi import APIRouter, Depends

from .deps import EmiSystem, get_emi_system


router = APIRouter()


@router.get("/{user_id}")
async def get_overview(
    user_id: str,
    currency: Optional[str] = None,
    system: EmiSystem = Depends(get_emi_system)
):
    """Loan and lending summary for a user as of today"""
    return system.service.get_overview(user_id, currency=currency).to_dict()
