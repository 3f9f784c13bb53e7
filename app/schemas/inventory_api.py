"""库存API专用的Pydantic模型和响应格式"""

from pydantic import BaseModel, Field, field_validator
from typing import Any, List, Dict, Optional


# ==================== 请求模型 ====================

class StockItem(BaseModel):
    """一条购物项（购物车预占、订单预占、库存校验共用）"""
    product_id: int = Field(
        ...,
        gt=0,
        description="商品ID",
        examples=[1]
    )
    quantity: int = Field(
        ...,
        gt=0,
        description="数量",
        examples=[2]
    )
    variant_id: Optional[int] = Field(
        None,
        gt=0,
        description="规格ID，为空表示基础商品"
    )
    location_id: Optional[int] = Field(
        None,
        gt=0,
        description="仓库ID，为空时使用默认仓"
    )


class CartReserveRequest(BaseModel):
    """购物车预占请求"""
    items: List[StockItem] = Field(
        ...,
        min_length=1,
        max_length=100,
        description="购物项列表"
    )
    expiration_minutes: Optional[int] = Field(
        None,
        ge=1,
        le=1440,
        description="预占有效期（分钟），默认 30"
    )


class CartExtendRequest(BaseModel):
    """延长购物车预占请求（进入结算页时调用）"""
    minutes: Optional[int] = Field(
        None,
        ge=1,
        le=1440,
        description="从现在起的有效期（分钟），默认 60"
    )


class BatchStockQueryRequest(BaseModel):
    """批量查询库存请求"""
    product_ids: List[int] = Field(
        ...,
        min_length=1,
        max_length=100,
        description="商品ID列表",
        examples=[[1, 2, 3]]
    )


class StockAdjustRequest(BaseModel):
    """人工调整库存请求"""
    product_id: int = Field(..., gt=0, description="商品ID")
    delta: int = Field(..., description="调整数量，正数入库，负数出库")
    variant_id: Optional[int] = Field(None, gt=0)
    location_id: Optional[int] = Field(None, gt=0)
    reason: Optional[str] = Field(None, max_length=255, description="调整原因")

    @field_validator("delta")
    @classmethod
    def delta_not_zero(cls, v: int) -> int:
        if v == 0:
            raise ValueError("调整数量不能为 0")
        return v


# ==================== 校验结果 ====================

class StockValidationResult(BaseModel):
    """单个购物项的库存校验结果"""
    product_id: int
    variant_id: Optional[int] = None
    requested: int
    available: int = Field(..., description="当前可售库存")
    sufficient: bool
    message: Optional[str] = None


class StockValidationReport(BaseModel):
    """整单库存校验结果"""
    results: List[StockValidationResult] = []
    shortfalls: List[StockValidationResult] = []
    can_proceed: bool = Field(
        ...,
        description="是否可以下单（允许超卖时即使有缺货也为 True）"
    )


# ==================== 响应模型 ====================

class BaseResponse(BaseModel):
    """基础响应模型"""
    success: bool = Field(
        ...,
        description="请求是否成功"
    )
    message: Optional[str] = Field(
        None,
        description="响应消息"
    )


class StockResponse(BaseResponse):
    """单个商品库存响应"""
    product_id: int = Field(
        ...,
        description="商品ID"
    )
    available_stock: int = Field(
        ...,
        ge=0,
        description="可售库存数量"
    )


class BatchStockResponse(BaseResponse):
    """批量库存查询响应"""
    data: Dict[int, int] = Field(
        ...,
        description="商品ID到可售库存的映射"
    )


class OperationResponse(BaseResponse):
    """操作响应（预占、释放、调整等）"""
    data: Optional[Any] = Field(
        None,
        description="操作结果"
    )


class CleanupResponse(BaseResponse):
    """清理任务响应"""
    cleaned_count: Optional[int] = Field(
        None,
        ge=0,
        description="释放的过期预占数量"
    )


class CeleryTaskResponse(BaseResponse):
    """Celery任务响应"""
    task_id: Optional[str] = Field(
        None,
        description="任务ID"
    )


class TaskStatusResponse(BaseModel):
    """任务状态响应"""
    task_id: str = Field(
        ...,
        description="任务ID"
    )
    status: str = Field(
        ...,
        description="任务状态描述"
    )
    state: str = Field(
        ...,
        description="任务状态码"
    )
