"""库存与购物车预占 API 路由"""

from fastapi import APIRouter, Depends, HTTPException, Path, Query, Body
from typing import Optional
from sqlalchemy.orm import Session
import logging

from app.core.dependencies import (
    get_db,
    get_redis,
    get_cart_reservation_service,
    get_inventory_service,
)
from app.services.cart_reservation_service import CartReservationService
from app.services.inventory_service import InventoryService
from app.schemas.inventory_api import (
    BatchStockQueryRequest,
    CartExtendRequest,
    CartReserveRequest,
    StockAdjustRequest,
    StockResponse,
    BatchStockResponse,
    OperationResponse,
    CleanupResponse,
    CeleryTaskResponse,
    TaskStatusResponse,
)
from tasks.inventory_tasks import cleanup_expired_cart_reservations as celery_cleanup_task

logger = logging.getLogger(__name__)
router = APIRouter(
    prefix="/inventory",
    tags=["库存管理"],
    responses={
        400: {"description": "请求参数错误或库存不足"},
        404: {"description": "资源未找到"},
        409: {"description": "状态冲突"},
        422: {"description": "请求验证失败"},
        500: {"description": "服务器内部错误"}
    }
)


@router.get(
    "/stock/{product_id}",
    response_model=StockResponse,
    summary="查询商品可售库存",
    description="""查询商品的可售库存（实物 - 预占，汇总所有仓库）。

    **缓存策略：**
    - 首先查询Redis缓存
    - 缓存未命中则查询数据库
    - 任何库存变动提交后立即失效缓存
    """,
    responses={
        200: {
            "description": "查询成功",
            "content": {
                "application/json": {
                    "example": {
                        "success": True,
                        "product_id": 1,
                        "available_stock": 100
                    }
                }
            }
        }
    }
)
async def get_stock(
    product_id: int = Path(
        ...,
        gt=0,
        description="商品ID",
        examples=[1]
    ),
    service: InventoryService = Depends(get_inventory_service),
):
    try:
        stock = service.get_product_stock(product_id)
        return {
            "success": True,
            "product_id": product_id,
            "available_stock": stock
        }
    except HTTPException:
        # 透传 HTTPException
        raise
    except Exception as e:
        logger.error(f"查询库存失败: {str(e)}")
        # 未知异常统一抛 500
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/stock/batch",
    response_model=BatchStockResponse,
    summary="批量查询商品库存",
    description="""批量查询多个商品的可售库存，单次最多100个。

    使用 Redis mget + pipeline 减少网络往返。
    """
)
async def batch_get_stocks(
    request: BatchStockQueryRequest = Body(
        ...,
        description="批量查询请求参数"
    ),
    service: InventoryService = Depends(get_inventory_service),
):
    try:
        stocks = service.batch_get_stocks(request.product_ids)
        return BatchStockResponse(
            success=True,
            data=stocks
        )
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"批量查询库存失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/adjust",
    response_model=OperationResponse,
    summary="人工调整库存",
    description="盘点、入库、报损。出库时不能扣减已被预占的数量。"
)
async def adjust_stock(
    request: StockAdjustRequest,
    service: InventoryService = Depends(get_inventory_service),
):
    try:
        result = service.adjust_stock(
            request.product_id,
            request.delta,
            variant_id=request.variant_id,
            location_id=request.location_id,
            reason=request.reason,
        )
        return {"success": True, "message": "调整成功", "data": result}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"调整库存失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/cart/{cart_id}/reserve",
    response_model=OperationResponse,
    summary="购物车预占库存",
    description="""为购物车中的商品预占库存，全部成功或全部失败。

    **特点：**
    - 单条 UPDATE 原子扣减，条件不满足即失败，不会超卖
    - 默认 30 分钟后过期，由定时任务释放
    - 任一商品库存不足时整批回滚，返回缺货明细
    """,
    responses={
        200: {
            "description": "预占成功",
            "content": {
                "application/json": {
                    "example": {
                        "success": True,
                        "message": "预占成功",
                        "data": {
                            "cart_id": "cart_7f3a9c",
                            "expires_at": "2026-01-01T10:30:00Z",
                            "reservation_ids": [1, 2]
                        }
                    }
                }
            }
        },
        400: {
            "description": "库存不足",
            "content": {
                "application/json": {
                    "example": {
                        "success": False,
                        "message": "商品 1 库存不足",
                        "code": "INSUFFICIENT_STOCK",
                        "data": [{"product_id": 1, "variant_id": None, "requested": 5, "available": 2}]
                    }
                }
            }
        }
    }
)
async def reserve_cart_stock(
    request: CartReserveRequest,
    cart_id: str = Path(..., min_length=1, max_length=64, description="购物车ID"),
    service: CartReservationService = Depends(get_cart_reservation_service),
):
    try:
        result = service.reserve_cart_stock(request.items, cart_id, request.expiration_minutes)
        return {"success": True, "message": "预占成功", "data": result}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"购物车预占失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/cart/{cart_id}/release",
    response_model=OperationResponse,
    summary="释放购物车预占",
    description="清空购物车或用户主动放弃时调用，可重复调用。"
)
async def release_cart_stock(
    cart_id: str = Path(..., min_length=1, max_length=64, description="购物车ID"),
    service: CartReservationService = Depends(get_cart_reservation_service),
):
    try:
        released = service.release_cart_stock(cart_id)
        return {"success": True, "message": "释放成功", "data": {"released": released}}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"释放购物车预占失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post(
    "/cart/{cart_id}/extend",
    response_model=OperationResponse,
    summary="延长购物车预占",
    description="进入结算页时调用，默认延长到 60 分钟后。"
)
async def extend_cart_reservation(
    request: Optional[CartExtendRequest] = None,
    cart_id: str = Path(..., min_length=1, max_length=64, description="购物车ID"),
    service: CartReservationService = Depends(get_cart_reservation_service),
):
    try:
        extended = service.extend_cart_reservation(cart_id, request.minutes if request else None)
        return {"success": True, "message": "延长成功", "data": {"extended": extended}}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"延长购物车预占失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/cart/{cart_id}", response_model=OperationResponse, summary="查询购物车预占")
async def get_cart_reservations(
    cart_id: str = Path(..., min_length=1, max_length=64, description="购物车ID"),
    service: CartReservationService = Depends(get_cart_reservation_service),
):
    try:
        holds = service.get_cart_reservations(cart_id)
        data = [
            {
                "reservation_id": h.id,
                "product_id": h.product_id,
                "variant_id": h.variant_id,
                "quantity": h.quantity,
                "expires_at": h.expires_at,
            }
            for h in holds
        ]
        return {"success": True, "data": data}
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"查询购物车预占失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/cleanup/manual", response_model=CleanupResponse)
async def manual_cleanup(
    batch_size: int = Query(500, ge=1, le=10000, description="批处理大小"),
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
):
    """手动触发过期预占清理（API 直接调用 Service）"""
    try:
        service = CartReservationService(db, redis)
        count = service.cleanup_expired_cart_reservations(batch_size)
        return {
            "success": True,
            "message": "手动清理完成",
            "cleaned_count": count
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"手动清理失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/cleanup/celery", response_model=CeleryTaskResponse)
async def celery_cleanup(batch_size: int = Query(500, ge=1, le=10000, description="批处理大小")):
    """触发 Celery 异步清理任务"""
    try:
        task = celery_cleanup_task.delay(batch_size)
        return {
            "success": True,
            "message": "已提交异步清理任务",
            "task_id": task.id
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Celery 任务提交失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/cleanup/status/{task_id}", response_model=TaskStatusResponse)
async def get_cleanup_status(task_id: str):
    """查询 Celery 任务执行状态"""
    try:
        from celery_app import app
        task = app.AsyncResult(task_id)

        if task.state == 'PENDING':
            status = "任务等待中"
        elif task.state == 'SUCCESS':
            status = f"任务完成: {task.result}"
        elif task.state == 'FAILURE':
            status = f"任务失败: {str(task.info)}"
        else:
            status = f"任务状态: {task.state}"

        return {
            "task_id": task_id,
            "status": status,
            "state": task.state
        }
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"查询任务状态失败: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
