"""库存服务实现（读缓存 + 人工调整）"""

from sqlalchemy.orm import Session
from typing import Iterable, List, Optional
import logging
from redis import Redis
from redis.exceptions import RedisError

from app.core.config import settings
from app.core.exceptions import InventoryNotFoundError, LedgerViolationError
from app.queries import inventory_queries as q

logger = logging.getLogger(__name__)


def stock_cache_key(product_id: int) -> str:
    return f"stock:available:{product_id}"


def invalidate_stock_cache(redis: Optional[Redis], product_ids: Iterable[int]):
    """事务提交后失效相关商品的可售库存缓存"""
    if not redis:
        return
    for product_id in sorted(set(product_ids)):
        try:
            redis.delete(stock_cache_key(product_id))
            logger.debug(f"Cache invalidated for product {product_id}")
        except RedisError as e:
            # 缓存最多延迟 STOCK_CACHE_TTL_SECONDS 生效，台账已提交不回滚
            logger.warning(f"失效库存缓存失败: product_id={product_id}, error={str(e)}")


class InventoryService:
    """库存核心服务类"""

    def __init__(self, db: Session, redis: Redis = None):
        self.db = db
        self.redis = redis

    def get_product_stock(self, product_id: int) -> int:
        """查询商品可售库存（带缓存）"""
        cache_key = stock_cache_key(product_id)

        # 先查缓存
        if self.redis:
            try:
                cached = self.redis.get(cache_key)
                if cached is not None:
                    logger.debug(f"Cache hit for product {product_id}")
                    return int(cached)
            except RedisError as e:
                logger.warning(f"读取库存缓存失败，回源数据库: product_id={product_id}, error={str(e)}")

        # 缓存未命中，查询数据库
        available = q.total_effective_stock(self.db, [product_id]).get(product_id, 0)

        if self.redis:
            try:
                self.redis.setex(cache_key, settings.STOCK_CACHE_TTL_SECONDS, available)
                logger.debug(f"Cache set for product {product_id}: {available}")
            except RedisError as e:
                logger.warning(f"写入库存缓存失败: product_id={product_id}, error={str(e)}")

        return available

    def batch_get_stocks(self, product_ids: List[int]) -> dict:
        """批量获取可售库存（mget + pipeline）"""
        if not product_ids:
            return {}

        results = {}
        uncached_ids = list(product_ids)

        if self.redis:
            try:
                cached_values = self.redis.mget([stock_cache_key(pid) for pid in product_ids])
            except RedisError as e:
                logger.warning(f"批量读取库存缓存失败，回源数据库: product_ids={product_ids}, error={str(e)}")
                cached_values = [None] * len(product_ids)

            uncached_ids = []
            for pid, cached in zip(product_ids, cached_values):
                if cached is not None:
                    results[pid] = int(cached)
                    logger.debug(f"Batch cache hit for product {pid}")
                else:
                    uncached_ids.append(pid)

        if uncached_ids:
            stock_map = q.total_effective_stock(self.db, uncached_ids)
            for pid in uncached_ids:
                results[pid] = stock_map.get(pid, 0)

            if self.redis:
                try:
                    pipe = self.redis.pipeline()
                    for pid in uncached_ids:
                        pipe.setex(stock_cache_key(pid), settings.STOCK_CACHE_TTL_SECONDS, results[pid])
                    pipe.execute()
                except RedisError as e:
                    logger.warning(f"批量写入库存缓存失败: product_ids={uncached_ids}, error={str(e)}")

        return results

    def adjust_stock(
        self,
        product_id: int,
        delta: int,
        variant_id: Optional[int] = None,
        location_id: Optional[int] = None,
        reason: Optional[str] = None,
    ) -> dict:
        """人工调整实物库存（盘点、入库、报损）

        减少库存时不能扣到已被预占的数量。
        """
        if delta == 0:
            raise ValueError("调整数量不能为 0")

        try:
            if location_id is not None:
                row = q.find_inventory_by_product_and_location(
                    self.db, product_id, location_id, variant_id
                )
            else:
                row = q.resolve_inventory(self.db, product_id, variant_id)

            if row is None:
                raise InventoryNotFoundError(f"商品 {product_id} 没有库存记录")

            if delta > 0:
                updated = q.increment_available(self.db, row.id, delta)
            else:
                updated = q.decrement_available(self.db, row.id, -delta)

            if updated is None:
                raise LedgerViolationError(
                    f"库存不足以扣减 {-delta} 件（已预占部分不可调整）",
                    data={"product_id": product_id, "inventory_id": row.id},
                )

            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"库存调整失败: product_id={product_id}, delta={delta}, error={str(e)}")
            raise

        logger.info(
            f"库存调整成功: product_id={product_id}, inventory_id={updated.id}, "
            f"delta={delta}, reason={reason}"
        )
        invalidate_stock_cache(self.redis, [product_id])

        return {
            "inventory_id": updated.id,
            "product_id": product_id,
            "available_quantity": updated.available_quantity,
            "reserved_quantity": updated.reserved_quantity,
        }
