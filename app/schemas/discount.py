"""折扣相关的 Pydantic 模型"""

from decimal import Decimal
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class CartLine(BaseModel):
    """参与折扣计算的购物项"""
    product_id: int = Field(..., gt=0, description="商品ID", examples=[1])
    variant_id: Optional[int] = Field(None, gt=0)
    name: str = Field("", description="商品名称")
    quantity: int = Field(..., gt=0)
    price: Decimal = Field(..., ge=0, description="单价", examples=["499.00"])
    collection_ids: List[str] = Field(default_factory=list, description="所属集合ID")

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


class ValidationContext(BaseModel):
    """折扣码校验上下文"""
    code: str = Field(..., min_length=1, max_length=50, description="折扣码", examples=["SAVE20"])
    cart_items: List[CartLine] = Field(..., min_length=1)
    cart_subtotal: Optional[Decimal] = Field(None, ge=0, description="为空时按购物项合计")
    shipping_amount: Decimal = Field(Decimal("0"), ge=0)
    user_id: Optional[str] = None
    is_new_customer: Optional[bool] = None
    segment_ids: List[str] = Field(default_factory=list, description="用户所属分群")
    shipping_address_country: Optional[str] = Field(None, max_length=8)
    shipping_address_region: Optional[str] = Field(None, max_length=16)

    @field_validator("code")
    @classmethod
    def normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @property
    def subtotal(self) -> Decimal:
        if self.cart_subtotal is not None:
            return self.cart_subtotal
        return sum((line.line_total for line in self.cart_items), Decimal("0"))

    @property
    def total_quantity(self) -> int:
        return sum(line.quantity for line in self.cart_items)


class ValidationResult(BaseModel):
    """校验结果；通过时带上折扣对象与适用的购物项"""
    model_config = ConfigDict(arbitrary_types_allowed=True)

    valid: bool
    discount: Optional[Any] = None
    discount_code: Optional[str] = None
    applicable_items: List[CartLine] = []
    error_code: Optional[str] = None
    message: Optional[str] = None


class DiscountBreakdown(BaseModel):
    product_id: int
    product_name: str
    quantity: int
    original_price: Decimal
    discount_amount: Decimal
    final_price: Decimal


class FreeItem(BaseModel):
    product_id: int
    product_name: str
    quantity: int
    original_price: Decimal
    discount_amount: Decimal


class CalculationResult(BaseModel):
    discount_amount: Decimal = Decimal("0.00")
    discount_type: str
    breakdown: List[DiscountBreakdown] = []
    free_items: List[FreeItem] = []
    free_shipping_amount: Decimal = Decimal("0.00")


class DiscountValidateResponse(BaseModel):
    """/discounts/validate 响应"""
    success: bool
    valid: bool
    message: Optional[str] = None
    error_code: Optional[str] = None
    discount_code: Optional[str] = None
    discount_type: Optional[str] = None
    discount_amount: Decimal = Decimal("0.00")
    breakdown: List[DiscountBreakdown] = []
    free_items: List[FreeItem] = []
