"""订单库存预占服务

下单时把购物车预占转换为订单预占（kind=order），
之后按 reserved -> fulfilled -> returned 或 reserved -> released 流转。
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence

from redis import Redis
from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from app.core.exceptions import (
    InsufficientStockError,
    InvalidStateError,
    InventoryNotFoundError,
    LedgerViolationError,
    ReservationNotFoundError,
)
from app.models.inventory_reservations import (
    InventoryReservation,
    ReservationKind,
    ReservationStatus,
    can_transition,
)
from app.queries import inventory_queries as q
from app.schemas.inventory_api import (
    StockItem,
    StockValidationReport,
    StockValidationResult,
)
from app.services.inventory_service import invalidate_stock_cache

logger = logging.getLogger(__name__)

GUEST_OWNER = "GUEST"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderReservationService:
    """订单预占服务类"""

    def __init__(self, db: Session, redis: Redis = None):
        self.db = db
        self.redis = redis

    def validate_stock_availability(
        self,
        items: Sequence[StockItem],
        allow_overselling: bool = False,
    ) -> StockValidationReport:
        """只读校验：返回每个购物项的可售情况和缺货列表"""
        results = []
        shortfalls = []
        missing = False
        # 同一库存行被多个购物项引用时累计需求
        requested_by_row: Dict[int, int] = defaultdict(int)

        for item in items:
            row = q.resolve_inventory(self.db, item.product_id, item.variant_id, item.location_id)
            if row is None:
                missing = True
                result = StockValidationResult(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    requested=item.quantity,
                    available=0,
                    sufficient=False,
                    message="商品不可售或没有库存记录",
                )
            else:
                remaining = q.effective_stock(row) - requested_by_row[row.id]
                requested_by_row[row.id] += item.quantity
                sufficient = remaining >= item.quantity
                result = StockValidationResult(
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    requested=item.quantity,
                    available=max(0, remaining),
                    sufficient=sufficient,
                    message=None if sufficient else f"库存不足，仅剩 {max(0, remaining)} 件",
                )

            results.append(result)
            if not result.sufficient:
                shortfalls.append(result)

        can_proceed = not missing and (allow_overselling or not shortfalls)
        return StockValidationReport(results=results, shortfalls=shortfalls, can_proceed=can_proceed)

    def reserve_stock_for_order(
        self,
        items: Sequence[StockItem],
        order_number: str,
        owner_id: Optional[str] = None,
        allow_overselling: bool = False,
        cart_id: Optional[str] = None,
        commit: bool = True,
    ) -> List[InventoryReservation]:
        """为订单预占库存

        传入 cart_id 时先把购物车预占 CAS 转为 converted，只补足差额、
        归还多余部分。允许超卖时缺货也继续预占，并打 oversold 标记。

        Raises:
            InsufficientStockError: 不允许超卖且存在缺货，data 列出所有缺货商品
        """
        owner = owner_id or GUEST_OWNER
        reservations = []
        shortfalls = []
        touched_products = set()

        try:
            carried = self._convert_cart_holds(cart_id, order_number) if cart_id else {}

            for item in items:
                row = q.resolve_inventory(self.db, item.product_id, item.variant_id, item.location_id)
                if row is None:
                    raise InventoryNotFoundError(
                        f"商品 {item.product_id} 不可售或没有库存记录",
                        data={"product_id": item.product_id},
                    )

                from_cart = min(carried.get(row.id, 0), item.quantity)
                if from_cart:
                    carried[row.id] -= from_cart
                extra = item.quantity - from_cart

                oversold = False
                if extra > 0 and q.increment_reserved(self.db, row.id, extra) is None:
                    if not allow_overselling:
                        shortfalls.append({
                            "product_id": item.product_id,
                            "variant_id": item.variant_id,
                            "requested": item.quantity,
                            "available": q.current_effective_stock(self.db, row.id) + from_cart,
                        })
                        continue

                    q.increment_reserved(self.db, row.id, extra, require_available=False)
                    oversold = True
                    logger.warning(
                        f"订单超卖: order_number={order_number}, product_id={item.product_id}, "
                        f"variant_id={item.variant_id}, quantity={item.quantity}，需后续补货对账"
                    )

                reservation = InventoryReservation(
                    kind=ReservationKind.ORDER,
                    status=ReservationStatus.RESERVED,
                    inventory_id=row.id,
                    product_id=item.product_id,
                    variant_id=item.variant_id,
                    quantity=item.quantity,
                    cart_id=cart_id,
                    order_number=order_number,
                    owner_id=owner,
                    oversold=oversold,
                )
                self.db.add(reservation)
                reservations.append(reservation)
                touched_products.add(item.product_id)

            if shortfalls:
                names = ", ".join(str(s["product_id"]) for s in shortfalls)
                raise InsufficientStockError(f"以下商品库存不足: {names}", data=shortfalls)

            # 购物车里多占的部分归还
            for inventory_id, surplus in carried.items():
                if surplus > 0:
                    if q.decrement_reserved(self.db, inventory_id, surplus) is None:
                        raise LedgerViolationError(f"归还购物车多余预占失败: inventory_id={inventory_id}")

            self._finish(commit)
        except Exception as e:
            if commit:
                self.db.rollback()
            logger.error(f"订单预占失败: order_number={order_number}, error={str(e)}")
            raise

        logger.info(
            f"订单预占成功: order_number={order_number}, owner={owner}, "
            f"items={len(reservations)}, from_cart={cart_id}"
        )
        if commit:
            invalidate_stock_cache(self.redis, touched_products)
        return reservations

    def fulfill_order_inventory(self, order_number: str, commit: bool = True) -> int:
        """发货：reserved -> fulfilled，同时扣减实物和预占"""
        try:
            holds = self._load_order_holds(order_number)
            active = [h for h in holds if h.status == ReservationStatus.RESERVED]
            if not active:
                raise InvalidStateError(
                    f"订单 {order_number} 没有待发货的预占",
                    data={"statuses": sorted({h.status.value for h in holds})},
                )

            fulfilled = 0
            for hold in active:
                if not q.transition_reservation(
                    self.db, hold, ReservationStatus.RESERVED, ReservationStatus.FULFILLED,
                    fulfilled_at=utcnow(),
                ):
                    continue
                if q.fulfill_quantity(self.db, hold.inventory_id, hold.quantity) is None:
                    raise LedgerViolationError(
                        f"实物库存不足以发货（超卖未补货）: product_id={hold.product_id}",
                        data={
                            "order_number": order_number,
                            "product_id": hold.product_id,
                            "quantity": hold.quantity,
                            "oversold": hold.oversold,
                        },
                    )
                fulfilled += 1

            self._finish(commit)
        except Exception as e:
            if commit:
                self.db.rollback()
            logger.error(f"订单发货扣减库存失败: order_number={order_number}, error={str(e)}")
            raise

        logger.info(f"订单发货扣减库存成功: order_number={order_number}, items={fulfilled}")
        if commit:
            invalidate_stock_cache(self.redis, [h.product_id for h in active])
        return fulfilled

    def release_reservation(self, order_number: str, commit: bool = True) -> int:
        """取消订单：reserved -> released，只归还预占数量

        已释放的订单再次调用返回 0；已发货的订单不能释放。
        """
        try:
            holds = self._load_order_holds(order_number)
            active = [h for h in holds if h.status == ReservationStatus.RESERVED]
            if not active and any(
                h.status in (ReservationStatus.FULFILLED, ReservationStatus.RETURNED) for h in holds
            ):
                raise InvalidStateError(f"订单 {order_number} 已发货，请走退货流程")

            released = 0
            for hold in active:
                if not q.transition_reservation(
                    self.db, hold, ReservationStatus.RESERVED, ReservationStatus.RELEASED,
                    released_at=utcnow(),
                ):
                    continue
                if q.decrement_reserved(self.db, hold.inventory_id, hold.quantity) is None:
                    raise LedgerViolationError(
                        f"预占数量不足以释放: inventory_id={hold.inventory_id}, quantity={hold.quantity}"
                    )
                released += 1

            self._finish(commit)
        except Exception as e:
            if commit:
                self.db.rollback()
            logger.error(f"释放订单预占失败: order_number={order_number}, error={str(e)}")
            raise

        logger.info(f"释放订单预占: order_number={order_number}, released={released}")
        if commit and released:
            invalidate_stock_cache(self.redis, [h.product_id for h in active])
        return released

    def process_order_return(
        self,
        order_number: str,
        items: Optional[Sequence[StockItem]] = None,
        restock: bool = True,
        commit: bool = True,
    ) -> int:
        """退货入库（只允许已发货的预占）

        items 为空时整单退货；否则按商品部分退货。
        restock=False 表示退回的货不可再售（如损坏），只记录退货数量。

        Returns:
            退回的件数
        """
        try:
            holds = self._load_order_holds(order_number)
            shipped = [h for h in holds if h.status == ReservationStatus.FULFILLED]
            if not shipped:
                raise InvalidStateError(f"订单 {order_number} 没有可退货的已发货商品")

            plan = self._plan_return(shipped, items)

            returned_units = 0
            for hold, quantity in plan:
                new_returned = hold.returned_quantity + quantity
                target = (
                    ReservationStatus.RETURNED if new_returned == hold.quantity
                    else ReservationStatus.FULFILLED
                )
                if target != hold.status and not can_transition(hold.kind, hold.status, target):
                    raise InvalidStateError(f"非法的预占状态迁移: {hold.status.value} -> {target.value}")

                values = {"returned_quantity": new_returned, "status": target, "updated_at": func.now()}
                if target == ReservationStatus.RETURNED:
                    values["returned_at"] = utcnow()

                result = self.db.execute(
                    update(InventoryReservation)
                    .where(
                        InventoryReservation.id == hold.id,
                        InventoryReservation.status == ReservationStatus.FULFILLED,
                        InventoryReservation.returned_quantity == hold.returned_quantity,
                    )
                    .values(**values)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    raise InvalidStateError(f"退货并发冲突，请重试: reservation_id={hold.id}")

                if restock:
                    q.increment_available(self.db, hold.inventory_id, quantity)
                returned_units += quantity

            self._finish(commit)
        except Exception as e:
            if commit:
                self.db.rollback()
            logger.error(f"订单退货入库失败: order_number={order_number}, error={str(e)}")
            raise

        logger.info(f"订单退货完成: order_number={order_number}, units={returned_units}, restock={restock}")
        if commit and restock:
            invalidate_stock_cache(self.redis, [hold.product_id for hold, _ in plan])
        return returned_units

    # ==================== 内部方法 ====================

    def _load_order_holds(self, order_number: str) -> List[InventoryReservation]:
        holds = self.db.execute(
            select(InventoryReservation)
            .where(
                InventoryReservation.kind == ReservationKind.ORDER,
                InventoryReservation.order_number == order_number,
            )
            .order_by(InventoryReservation.id)
            .execution_options(populate_existing=True)
        ).scalars().all()
        if not holds:
            raise ReservationNotFoundError(f"订单 {order_number} 没有库存预占记录")
        return holds

    def _convert_cart_holds(self, cart_id: str, order_number: str) -> Dict[int, int]:
        """购物车预占 reserved -> converted，返回每个库存行可转入订单的数量"""
        holds = self.db.execute(
            select(InventoryReservation)
            .where(
                InventoryReservation.cart_id == cart_id,
                InventoryReservation.kind == ReservationKind.CART,
                InventoryReservation.status == ReservationStatus.RESERVED,
            )
            .order_by(InventoryReservation.id)
            .execution_options(populate_existing=True)
        ).scalars().all()

        carried: Dict[int, int] = defaultdict(int)
        for hold in holds:
            # 与过期清理竞争：谁先翻转状态谁生效
            if q.transition_reservation(
                self.db, hold, ReservationStatus.RESERVED, ReservationStatus.CONVERTED,
                order_number=order_number,
            ):
                carried[hold.inventory_id] += hold.quantity
        return carried

    def _plan_return(self, shipped: List[InventoryReservation], items: Optional[Sequence[StockItem]]):
        if not items:
            return [
                (hold, hold.quantity - hold.returned_quantity)
                for hold in shipped
                if hold.quantity > hold.returned_quantity
            ]

        plan = []
        for item in items:
            remaining = item.quantity
            for hold in shipped:
                if hold.product_id != item.product_id or hold.variant_id != item.variant_id:
                    continue
                already = sum(qty for h, qty in plan if h is hold)
                returnable = hold.quantity - hold.returned_quantity - already
                take = min(returnable, remaining)
                if take > 0:
                    plan.append((hold, take))
                    remaining -= take
                if remaining == 0:
                    break
            if remaining > 0:
                raise InvalidStateError(
                    f"商品 {item.product_id} 的退货数量超过已发货未退数量",
                    data={"product_id": item.product_id, "excess": remaining},
                )

        # 同一预占行合并成一次更新
        merged: Dict[int, list] = {}
        for hold, qty in plan:
            if hold.id in merged:
                merged[hold.id][1] += qty
            else:
                merged[hold.id] = [hold, qty]
        return [(hold, qty) for hold, qty in merged.values()]

    def _finish(self, commit: bool):
        if commit:
            self.db.commit()
        else:
            self.db.flush()
