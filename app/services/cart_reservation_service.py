"""购物车库存预占服务

购物车里的商品在 30 分钟内为用户锁定库存；进入结算页时延长，
过期后由定时任务统一释放。每条预占都是一行 InventoryReservation(kind=cart)，
状态 reserved -> converted | released | expired。
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional, Sequence

from redis import Redis
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import (
    InsufficientStockError,
    InventoryNotFoundError,
    LedgerViolationError,
)
from app.models.inventory_reservations import (
    InventoryReservation,
    ReservationKind,
    ReservationStatus,
)
from app.queries import inventory_queries as q
from app.schemas.inventory_api import StockItem
from app.services.inventory_service import invalidate_stock_cache

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CartReservationService:
    """购物车预占服务类"""

    def __init__(self, db: Session, redis: Redis = None):
        self.db = db
        self.redis = redis

    def reserve_cart_stock(
        self,
        items: Sequence[StockItem],
        cart_id: str,
        expiration_minutes: Optional[int] = None,
    ) -> dict:
        """为购物车预占库存（全部成功或全部失败）

        Args:
            items: 购物项列表
            cart_id: 购物车ID
            expiration_minutes: 有效期，默认 CART_RESERVATION_TTL_MINUTES

        Returns:
            {"cart_id", "expires_at", "reservation_ids"}

        Raises:
            InsufficientStockError: 任一商品可售库存不足，整批回滚
            InventoryNotFoundError: 商品没有可售的库存行
        """
        if not items:
            raise ValueError("购物项不能为空")

        ttl = expiration_minutes or settings.CART_RESERVATION_TTL_MINUTES
        expires_at = utcnow() + timedelta(minutes=ttl)
        reservations = []

        try:
            for item in items:
                row = q.resolve_inventory(
                    self.db, item.product_id, item.variant_id, item.location_id
                )
                if row is None:
                    raise InventoryNotFoundError(
                        f"商品 {item.product_id} 不可售或没有库存记录",
                        data={"product_id": item.product_id},
                    )

                updated = q.increment_reserved(self.db, row.id, item.quantity)
                if updated is None:
                    available = q.current_effective_stock(self.db, row.id)
                    raise InsufficientStockError(
                        f"商品 {item.product_id} 库存不足",
                        data=[{
                            "product_id": item.product_id,
                            "variant_id": item.variant_id,
                            "requested": item.quantity,
                            "available": available,
                        }],
                    )

                reservation = InventoryReservation(
                    kind=ReservationKind.CART,
                    status=ReservationStatus.RESERVED,
                    inventory_id=row.id,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    quantity=item.quantity,
                    cart_id=cart_id,
                    expires_at=expires_at,
                )
                self.db.add(reservation)
                reservations.append(reservation)

            self.db.flush()

            # 整个购物车的有效期统一刷新
            self.db.execute(
                update(InventoryReservation)
                .where(
                    InventoryReservation.cart_id == cart_id,
                    InventoryReservation.kind == ReservationKind.CART,
                    InventoryReservation.status == ReservationStatus.RESERVED,
                )
                .values(expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )

            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"购物车预占失败: cart_id={cart_id}, error={str(e)}")
            raise

        logger.info(f"购物车预占成功: cart_id={cart_id}, items={len(reservations)}, expires_at={expires_at}")
        invalidate_stock_cache(self.redis, [item.product_id for item in items])

        return {
            "cart_id": cart_id,
            "expires_at": expires_at,
            "reservation_ids": [r.id for r in reservations],
        }

    def release_cart_stock(self, cart_id: str) -> int:
        """释放购物车的全部预占（重复调用时第二次返回 0）"""
        try:
            released, product_ids = self._release_holds(cart_id, ReservationStatus.RELEASED)
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"释放购物车预占失败: cart_id={cart_id}, error={str(e)}")
            raise

        if released:
            logger.info(f"释放购物车预占成功: cart_id={cart_id}, released={released}")
            invalidate_stock_cache(self.redis, product_ids)
        return released

    def extend_cart_reservation(self, cart_id: str, minutes: Optional[int] = None) -> int:
        """延长购物车预占有效期，只刷新仍在占用中的行"""
        ttl = minutes or settings.CHECKOUT_RESERVATION_TTL_MINUTES
        expires_at = utcnow() + timedelta(minutes=ttl)

        try:
            result = self.db.execute(
                update(InventoryReservation)
                .where(
                    InventoryReservation.cart_id == cart_id,
                    InventoryReservation.kind == ReservationKind.CART,
                    InventoryReservation.status == ReservationStatus.RESERVED,
                )
                .values(expires_at=expires_at)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            logger.error(f"延长购物车预占失败: cart_id={cart_id}, error={str(e)}")
            raise

        logger.info(f"延长购物车预占: cart_id={cart_id}, rows={result.rowcount}, expires_at={expires_at}")
        return result.rowcount

    def get_cart_reservations(self, cart_id: str) -> List[InventoryReservation]:
        """查询购物车仍在占用中的预占"""
        return self.db.execute(
            select(InventoryReservation)
            .where(
                InventoryReservation.cart_id == cart_id,
                InventoryReservation.kind == ReservationKind.CART,
                InventoryReservation.status == ReservationStatus.RESERVED,
            )
            .order_by(InventoryReservation.id)
            .execution_options(populate_existing=True)
        ).scalars().all()

    def cleanup_expired_cart_reservations(self, batch_size: int = None) -> int:
        """释放过期的购物车预占

        每个购物车单独一个事务；与下单并发时由状态 CAS 决定谁生效，
        同一条预占不会被释放两次。

        Returns:
            本次释放的预占行数量
        """
        batch_size = batch_size or settings.CART_CLEANUP_BATCH_SIZE
        total_released = 0
        failed_carts = set()

        while True:
            now = utcnow()
            stmt = (
                select(InventoryReservation.id, InventoryReservation.cart_id)
                .where(
                    InventoryReservation.kind == ReservationKind.CART,
                    InventoryReservation.status == ReservationStatus.RESERVED,
                    InventoryReservation.expires_at <= now,
                )
                .order_by(InventoryReservation.expires_at)
                .limit(batch_size)
                .with_for_update(skip_locked=True)
            )
            if failed_carts:
                stmt = stmt.where(InventoryReservation.cart_id.not_in(list(failed_carts)))

            rows = self.db.execute(stmt).all()
            if not rows:
                self.db.rollback()
                break

            cart_ids = list(dict.fromkeys(r.cart_id for r in rows))
            logger.info(f"本批次发现 {len(rows)} 条过期预占，涉及 {len(cart_ids)} 个购物车")

            for cart_id in cart_ids:
                try:
                    released, product_ids = self._release_holds(
                        cart_id, ReservationStatus.EXPIRED, expired_before=now
                    )
                    self.db.commit()
                except Exception as e:
                    self.db.rollback()
                    failed_carts.add(cart_id)
                    logger.error(f"释放过期购物车预占失败: cart_id={cart_id}, error={str(e)}")
                    continue

                total_released += released
                invalidate_stock_cache(self.redis, product_ids)

        logger.info(f"过期购物车预占清理完成，共释放 {total_released} 条，失败购物车 {len(failed_carts)} 个")
        return total_released

    def count_expired_cart_reservations(self) -> int:
        """统计已过期但仍在占用中的预占（试运行用）"""
        rows = self.db.execute(
            select(InventoryReservation.id).where(
                InventoryReservation.kind == ReservationKind.CART,
                InventoryReservation.status == ReservationStatus.RESERVED,
                InventoryReservation.expires_at <= utcnow(),
            )
        ).all()
        return len(rows)

    # ==================== 内部方法 ====================

    def _release_holds(
        self,
        cart_id: str,
        target_status: ReservationStatus,
        expired_before: Optional[datetime] = None,
    ):
        """把购物车的占用行翻到 target_status，并为每条翻转成功的行归还预占"""
        stmt = select(InventoryReservation).where(
            InventoryReservation.cart_id == cart_id,
            InventoryReservation.kind == ReservationKind.CART,
            InventoryReservation.status == ReservationStatus.RESERVED,
        )
        if expired_before is not None:
            stmt = stmt.where(InventoryReservation.expires_at <= expired_before)

        holds = self.db.execute(
            stmt.order_by(InventoryReservation.id).execution_options(populate_existing=True)
        ).scalars().all()

        released = 0
        product_ids = []
        for hold in holds:
            flipped = q.transition_reservation(
                self.db,
                hold,
                ReservationStatus.RESERVED,
                target_status,
                released_at=utcnow(),
            )
            if not flipped:
                # 已被下单转换或其它清理进程处理
                continue

            if q.decrement_reserved(self.db, hold.inventory_id, hold.quantity) is None:
                raise LedgerViolationError(
                    f"预占数量不足以释放: inventory_id={hold.inventory_id}, quantity={hold.quantity}"
                )
            released += 1
            product_ids.append(hold.product_id)

        return released, product_ids

