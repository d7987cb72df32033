"""
Loan template endpoints
"""

from fastapi import APIRouter, Depends, status

from .deps import EmiSystem, get_emi_system
from .schemas import CreateTemplateRequest, template_response


router = APIRouter()


@router.post("", status_code=status.HTTP_201_CREATED)
async def create_template(
    request: CreateTemplateRequest,
    system: EmiSystem = Depends(get_emi_system)
):
    """Save default terms for loans the user adds often"""
    template = system.service.create_emi_template(
        user_id=request.user_id,
        name=request.name,
        loan_type=request.loan_type,
        default_interest_rate=request.default_interest_rate,
        default_tenure_months=request.default_tenure_months,
        description=request.description,
        is_active=request.is_active
    )
    return {
        "template": template_response(template),
        "message": "Template created successfully"
    }


@router.get("")
async def list_templates(
    user_id: str,
    system: EmiSystem = Depends(get_emi_system)
):
    """A user's active templates by name"""
    templates = system.service.get_emi_templates(user_id)
    return {
        "templates": [template_response(template) for template in templates],
        "total_count": len(templates)
    }
