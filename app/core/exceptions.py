"""业务异常定义

服务层统一抛出 ServiceError 子类，由 app.main 中的全局异常处理器
转换成 {success, message, code, data} 结构的响应。
"""

from typing import Any, Optional

from fastapi import HTTPException


class ServiceError(HTTPException):
    """业务异常基类（携带 HTTP 状态码、错误码和附加数据）"""

    default_status = 400
    default_code = "SERVICE_ERROR"

    def __init__(
        self,
        detail: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        data: Any = None,
    ):
        super().__init__(status_code=status_code or self.default_status, detail=detail)
        self.code = code or self.default_code
        self.data = data


class InsufficientStockError(ServiceError):
    default_code = "INSUFFICIENT_STOCK"


class InventoryNotFoundError(ServiceError):
    default_status = 404
    default_code = "INVENTORY_NOT_FOUND"


class ReservationNotFoundError(ServiceError):
    default_status = 404
    default_code = "RESERVATION_NOT_FOUND"


class OrderNotFoundError(ServiceError):
    default_status = 404
    default_code = "ORDER_NOT_FOUND"


class InvalidStateError(ServiceError):
    default_status = 409
    default_code = "INVALID_STATE"


class LedgerViolationError(ServiceError):
    """库存台账更新会导致数量为负时抛出"""
    default_status = 409
    default_code = "LEDGER_VIOLATION"


class DiscountValidationError(ServiceError):
    default_code = "DISCOUNT_NOT_ELIGIBLE"
