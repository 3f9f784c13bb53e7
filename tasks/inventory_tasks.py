"""库存相关的 Celery 任务"""

from celery_app import app
from app.core.config import settings
from app.db.session import SessionLocal
from app.services.cart_reservation_service import CartReservationService
from app.core.redis import redis_client, redlock
import logging

logger = logging.getLogger(__name__)

CLEANUP_LOCK_KEY = "lock:cleanup_expired_cart_reservations"


@app.task(name='tasks.inventory.cleanup_expired_cart_reservations')
def cleanup_expired_cart_reservations(batch_size: int = None):
    """释放过期的购物车预占（定时任务）

    Redlock 保证同一时刻只有一个 worker 在清理；
    即使锁失效并发执行，预占行的状态 CAS 也保证每条只释放一次。

    Args:
        batch_size: 批处理大小，默认 CART_CLEANUP_BATCH_SIZE

    Returns:
        清理结果描述
    """
    lock_ttl_ms = settings.CART_CLEANUP_INTERVAL_SECONDS * 1000
    lock = redlock.lock(CLEANUP_LOCK_KEY, lock_ttl_ms)
    if not lock:
        logger.info("其它 worker 正在清理过期预占，本次跳过")
        return "跳过：清理任务正在其它 worker 上执行"

    db = SessionLocal()
    try:
        service = CartReservationService(db, redis_client)
        count = service.cleanup_expired_cart_reservations(batch_size)
        result = f"成功释放 {count} 条过期购物车预占"
        logger.info(result)
        return result
    except Exception as e:
        logger.error(f"清理过期预占任务执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()
        redlock.unlock(lock)


@app.task(name='tasks.inventory.release_cart_reservation')
def release_cart_reservation(cart_id: str):
    """异步释放某个购物车的全部预占（清空购物车、会话结束时调用）"""
    db = SessionLocal()
    try:
        service = CartReservationService(db, redis_client)
        released = service.release_cart_stock(cart_id)
        logger.info(f"购物车预占已释放: cart_id={cart_id}, released={released}")
        return {"status": "success", "cart_id": cart_id, "released": released}
    except Exception as e:
        logger.error(f"释放购物车预占失败: {cart_id}, error: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()


# 导出任务
__all__ = [
    'cleanup_expired_cart_reservations',
    'release_cart_reservation',
]
