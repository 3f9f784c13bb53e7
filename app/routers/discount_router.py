"""折扣码校验 API 路由"""

from fastapi import APIRouter, Depends, HTTPException
import logging

from app.core.dependencies import (
    get_discount_calculation_service,
    get_discount_validation_service,
)
from app.schemas.discount import DiscountValidateResponse, ValidationContext
from app.services.discount_calculation_service import DiscountCalculationService
from app.services.discount_validation_service import DiscountValidationService

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/discounts", tags=["折扣"])


@router.post(
    "/validate",
    response_model=DiscountValidateResponse,
    summary="校验折扣码并试算优惠",
    description="校验不通过时仍返回 200，valid=false 并给出错误码，不记录使用次数。"
)
async def validate_discount(
    context: ValidationContext,
    validation: DiscountValidationService = Depends(get_discount_validation_service),
    calculation: DiscountCalculationService = Depends(get_discount_calculation_service),
):
    try:
        result = validation.validate_discount_code(context)
        if not result.valid:
            return DiscountValidateResponse(
                success=True,
                valid=False,
                message=result.message,
                error_code=result.error_code,
            )

        calc = calculation.calculate_discount(result.discount, context, result.applicable_items)
        return DiscountValidateResponse(
            success=True,
            valid=True,
            message="折扣码可用",
            discount_code=result.discount_code,
            discount_type=calc.discount_type,
            discount_amount=calc.discount_amount,
            breakdown=calc.breakdown,
            free_items=calc.free_items,
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"折扣码校验失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
