"""订单 API 路由（下单、发货、取消、退货）"""

from fastapi import APIRouter, Depends, HTTPException, Path
from typing import Optional
import logging

from app.core.dependencies import get_order_reservation_service, get_order_service
from app.schemas.order import (
    CreateOrderRequest,
    DirectOrderRequest,
    OrderResponse,
    OrderSchema,
    ReturnOrderRequest,
    StockValidationRequest,
)
from app.schemas.inventory_api import StockValidationReport
from app.services.order_reservation_service import OrderReservationService
from app.services.order_service import OrderService

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/orders",
    tags=["订单"],
    responses={
        400: {"description": "库存不足或折扣不可用"},
        404: {"description": "订单不存在"},
        409: {"description": "订单状态不允许该操作"},
        500: {"description": "服务器内部错误"}
    }
)


def _order_response(order, message: str) -> OrderResponse:
    return OrderResponse(success=True, message=message, data=OrderSchema.model_validate(order))


@router.post(
    "/validate-stock",
    response_model=StockValidationReport,
    summary="下单前校验库存",
    description="只读校验，不预占库存。允许超卖时即使缺货 can_proceed 也为 true。"
)
async def validate_stock(
    request: StockValidationRequest,
    service: OrderReservationService = Depends(get_order_reservation_service),
):
    try:
        return service.validate_stock_availability(request.items, request.allow_overselling)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"库存校验失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "",
    response_model=OrderResponse,
    summary="店铺下单",
    description="""创建订单并预占库存。

    - 传入 cart_id 时转换该购物车的预占
    - 店铺下单从不超卖，任一商品缺货返回 400 并列出缺货明细
    - 可选折扣码，在同一事务内记录使用次数
    """
)
async def create_order(
    request: CreateOrderRequest,
    service: OrderService = Depends(get_order_service),
):
    try:
        order = service.create_order(request)
        return _order_response(order, "下单成功")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"下单失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/direct",
    response_model=OrderResponse,
    summary="管理员直建订单",
    description="后台直接建单，allow_overselling=true 时缺货也会预占并标记超卖。"
)
async def create_direct_order(
    request: DirectOrderRequest,
    service: OrderService = Depends(get_order_service),
):
    try:
        order = service.create_order(
            request,
            allow_overselling=request.allow_overselling,
            is_direct=True,
        )
        return _order_response(order, "下单成功")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"直建订单失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/{order_id}", response_model=OrderResponse, summary="查询订单")
async def get_order(
    order_id: int = Path(..., gt=0, description="订单ID"),
    service: OrderService = Depends(get_order_service),
):
    try:
        return _order_response(service.get_order(order_id), "查询成功")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"查询订单失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{order_id}/ship", response_model=OrderResponse, summary="订单发货")
async def ship_order(
    order_id: int = Path(..., gt=0, description="订单ID"),
    service: OrderService = Depends(get_order_service),
):
    try:
        return _order_response(service.ship_order(order_id), "发货成功")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"订单发货失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{order_id}/cancel", response_model=OrderResponse, summary="取消订单")
async def cancel_order(
    order_id: int = Path(..., gt=0, description="订单ID"),
    service: OrderService = Depends(get_order_service),
):
    try:
        return _order_response(service.cancel_order(order_id), "取消成功")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"取消订单失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/{order_id}/return", response_model=OrderResponse, summary="订单退货")
async def return_order(
    request: Optional[ReturnOrderRequest] = None,
    order_id: int = Path(..., gt=0, description="订单ID"),
    service: OrderService = Depends(get_order_service),
):
    try:
        request = request or ReturnOrderRequest()
        order = service.return_order(order_id, items=request.items, restock=request.restock)
        return _order_response(order, "退货成功")
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"订单退货失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
