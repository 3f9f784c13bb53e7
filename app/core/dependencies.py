"""依赖注入配置模块"""

from fastapi import Depends

# 数据库会话依赖
from app.db.session import SessionLocal
from sqlalchemy.orm import Session

# Redis 依赖
from app.core.redis import redis_client, redlock

from app.services.cart_reservation_service import CartReservationService
from app.services.discount_calculation_service import DiscountCalculationService
from app.services.discount_validation_service import DiscountValidationService
from app.services.inventory_service import InventoryService
from app.services.order_reservation_service import OrderReservationService
from app.services.order_service import OrderService
from app.services.payment_webhook_service import PaymentWebhookService


def get_redis():
    """获取同步 Redis 客户端"""
    return redis_client

def get_redlock():
    """获取 Redlock 分布式锁实例"""
    return redlock

def get_db() -> Session:
    """获取数据库会话"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_inventory_service(
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
) -> InventoryService:
    """获取库存服务实例（依赖注入）"""
    return InventoryService(db=db, redis=redis)


def get_cart_reservation_service(
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
) -> CartReservationService:
    return CartReservationService(db=db, redis=redis)


def get_order_reservation_service(
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
) -> OrderReservationService:
    return OrderReservationService(db=db, redis=redis)


def get_order_service(
    db: Session = Depends(get_db),
    redis = Depends(get_redis),
) -> OrderService:
    return OrderService(db=db, redis=redis)


def get_discount_validation_service(db: Session = Depends(get_db)) -> DiscountValidationService:
    return DiscountValidationService(db)


def get_discount_calculation_service() -> DiscountCalculationService:
    return DiscountCalculationService()


def get_payment_webhook_service(db: Session = Depends(get_db)) -> PaymentWebhookService:
    return PaymentWebhookService(db)


# 常用的依赖注入别名
DatabaseDep = Depends(get_db)
RedisDep = Depends(get_redis)
RedlockDep = Depends(get_redlock)
InventoryServiceDep = Depends(get_inventory_service)
CartReservationServiceDep = Depends(get_cart_reservation_service)
OrderReservationServiceDep = Depends(get_order_reservation_service)
OrderServiceDep = Depends(get_order_service)
