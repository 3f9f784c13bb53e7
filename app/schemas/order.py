# app/schemas/order.py
from pydantic import BaseModel, ConfigDict, Field
from typing import List, Optional
from decimal import Decimal
from datetime import datetime

from app.models.orders import OrderStatus, PaymentStatus
from app.schemas.inventory_api import StockItem


class OrderItemSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    variant_id: Optional[int] = None
    location_id: Optional[int] = None
    product_name: str
    quantity: int
    unit_price: Decimal
    discount_amount: Decimal
    line_total: Decimal


class OrderSchema(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    user_id: Optional[str] = None
    cart_id: Optional[str] = None
    subtotal: Decimal
    discount_amount: Decimal
    shipping_amount: Decimal
    total_amount: Decimal
    discount_code: Optional[str] = None
    payment_status: PaymentStatus
    order_status: OrderStatus
    is_direct: bool
    razorpay_order_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    items: List[OrderItemSchema] = []


# 创建订单请求（店铺下单，不允许超卖）
class CreateOrderRequest(BaseModel):
    items: List[StockItem] = Field(..., min_length=1, max_length=100)
    user_id: Optional[str] = Field(None, max_length=64, description="下单用户，游客为空")
    cart_id: Optional[str] = Field(None, max_length=64, description="来源购物车，下单时转换其预占")
    discount_code: Optional[str] = Field(None, max_length=50, examples=["SAVE20"])
    shipping_amount: Decimal = Field(Decimal("0"), ge=0)
    razorpay_order_id: Optional[str] = Field(None, max_length=64)
    is_new_customer: Optional[bool] = None
    segment_ids: List[str] = []
    shipping_address_country: Optional[str] = Field(None, max_length=8)
    shipping_address_region: Optional[str] = Field(None, max_length=16)


# 管理员直建订单请求
class DirectOrderRequest(CreateOrderRequest):
    allow_overselling: bool = Field(False, description="是否允许超卖")


class ReturnOrderRequest(BaseModel):
    items: Optional[List[StockItem]] = Field(None, description="部分退货明细，为空表示整单退货")
    restock: bool = Field(True, description="是否重新入库")


class StockValidationRequest(BaseModel):
    items: List[StockItem] = Field(..., min_length=1, max_length=100)
    allow_overselling: bool = False


# 订单响应
class OrderResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    data: Optional[OrderSchema] = None
