"""库存台账查询层

所有数量变更都是单条 UPDATE ... SET col = col ± :qty，非负约束写在 WHERE 里；
没有命中行（条件不满足）时返回 None，由调用方抛异常并回滚事务。
"""

import logging
from typing import List, Optional

from sqlalchemy import select, update, func
from sqlalchemy.orm import Session

from app.core.config import settings
from app.models.inventory import Inventory, InventoryLocation, StockStatus
from app.models.inventory_reservations import (
    InventoryReservation,
    ReservationStatus,
    can_transition,
)
from app.models.product import Product, ProductStatus

logger = logging.getLogger(__name__)


# ==================== 读操作 ====================

def find_inventory_by_product(db: Session, product_id: int) -> List[Inventory]:
    """查询商品在所有仓库（含所有规格）的库存行"""
    return db.execute(
        select(Inventory)
        .where(Inventory.product_id == product_id)
        .order_by(Inventory.id)
        .execution_options(populate_existing=True)
    ).scalars().all()


def find_inventory_by_product_and_location(
    db: Session,
    product_id: int,
    location_id: int,
    variant_id: Optional[int] = None,
) -> Optional[Inventory]:
    stmt = select(Inventory).where(
        Inventory.product_id == product_id,
        Inventory.location_id == location_id,
    )
    stmt = _variant_filter(stmt, variant_id)
    return db.execute(
        stmt.execution_options(populate_existing=True)
    ).scalar_one_or_none()


def resolve_inventory(
    db: Session,
    product_id: int,
    variant_id: Optional[int] = None,
    location_id: Optional[int] = None,
) -> Optional[Inventory]:
    """确定一个购物项要占用的库存行

    指定仓库时取该仓库；否则优先默认仓，再按 id 最小的行。
    已归档或已删除的商品不可售，直接返回 None。
    """
    stmt = (
        select(Inventory)
        .join(Product, Product.id == Inventory.product_id)
        .join(InventoryLocation, InventoryLocation.id == Inventory.location_id)
        .where(
            Inventory.product_id == product_id,
            Product.status != ProductStatus.ARCHIVED,
            Product.is_deleted.is_(False),
        )
    )
    stmt = _variant_filter(stmt, variant_id)

    if location_id is not None:
        stmt = stmt.where(Inventory.location_id == location_id)
    else:
        stmt = stmt.where(InventoryLocation.is_active.is_(True)).order_by(
            InventoryLocation.is_default.desc(),
            Inventory.id.asc(),
        )

    return db.execute(
        stmt.limit(1).execution_options(populate_existing=True)
    ).scalars().first()


def effective_stock(row: Inventory) -> int:
    """可售库存 = 实物 - 预占（展示时不小于 0）"""
    if row is None:
        return 0
    return max(0, row.available_quantity - row.reserved_quantity)


def current_effective_stock(db: Session, inventory_id: int) -> int:
    """直接读取库存行当前的可售数量（不经过 ORM 身份映射）"""
    row = db.execute(
        select(Inventory.available_quantity, Inventory.reserved_quantity)
        .where(Inventory.id == inventory_id)
    ).first()
    if row is None:
        return 0
    return max(0, row.available_quantity - row.reserved_quantity)


def total_effective_stock(db: Session, product_ids: List[int]) -> dict:
    """按商品汇总所有库存行的可售库存"""
    if not product_ids:
        return {}
    rows = db.execute(
        select(Inventory)
        .where(Inventory.product_id.in_(product_ids))
        .execution_options(populate_existing=True)
    ).scalars().all()

    totals = {pid: 0 for pid in product_ids}
    for row in rows:
        totals[row.product_id] += effective_stock(row)
    return totals


def stock_status(quantity: int) -> StockStatus:
    if quantity <= 0:
        return StockStatus.OUT_OF_STOCK
    if quantity <= settings.LOW_STOCK_THRESHOLD:
        return StockStatus.LOW_STOCK
    return StockStatus.IN_STOCK


# ==================== 写操作（相对更新） ====================

def increment_reserved(
    db: Session,
    inventory_id: int,
    quantity: int,
    require_available: bool = True,
):
    """增加预占数量

    require_available=True 时要求可售库存足够；
    管理员超卖时传 False，预占可以超过实物库存。
    """
    _check_quantity(quantity)
    stmt = update(Inventory).where(Inventory.id == inventory_id)
    if require_available:
        stmt = stmt.where(
            Inventory.available_quantity - Inventory.reserved_quantity >= quantity
        )
    stmt = stmt.values(
        reserved_quantity=Inventory.reserved_quantity + quantity,
        updated_at=func.now(),
    )
    return _execute(db, stmt)


def decrement_reserved(db: Session, inventory_id: int, quantity: int):
    _check_quantity(quantity)
    stmt = (
        update(Inventory)
        .where(
            Inventory.id == inventory_id,
            Inventory.reserved_quantity >= quantity,
        )
        .values(
            reserved_quantity=Inventory.reserved_quantity - quantity,
            updated_at=func.now(),
        )
    )
    return _execute(db, stmt)


def increment_available(db: Session, inventory_id: int, quantity: int):
    _check_quantity(quantity)
    stmt = (
        update(Inventory)
        .where(Inventory.id == inventory_id)
        .values(
            available_quantity=Inventory.available_quantity + quantity,
            updated_at=func.now(),
        )
    )
    row = _execute(db, stmt)
    if row is not None:
        _refresh_status(db, row)
    return row


def decrement_available(
    db: Session,
    inventory_id: int,
    quantity: int,
    respect_reserved: bool = True,
):
    """减少实物库存

    respect_reserved=True 时不允许扣到已被预占的部分。
    """
    _check_quantity(quantity)
    stmt = update(Inventory).where(Inventory.id == inventory_id)
    if respect_reserved:
        stmt = stmt.where(
            Inventory.available_quantity - Inventory.reserved_quantity >= quantity
        )
    else:
        stmt = stmt.where(Inventory.available_quantity >= quantity)
    stmt = stmt.values(
        available_quantity=Inventory.available_quantity - quantity,
        updated_at=func.now(),
    )
    row = _execute(db, stmt)
    if row is not None:
        _refresh_status(db, row)
    return row


def fulfill_quantity(db: Session, inventory_id: int, quantity: int):
    """发货：实物与预占同时扣减（唯一永久移除库存的操作）"""
    _check_quantity(quantity)
    stmt = (
        update(Inventory)
        .where(
            Inventory.id == inventory_id,
            Inventory.available_quantity >= quantity,
            Inventory.reserved_quantity >= quantity,
        )
        .values(
            available_quantity=Inventory.available_quantity - quantity,
            reserved_quantity=Inventory.reserved_quantity - quantity,
            updated_at=func.now(),
        )
    )
    row = _execute(db, stmt)
    if row is not None:
        _refresh_status(db, row)
    return row


def transition_reservation(
    db: Session,
    reservation: InventoryReservation,
    from_status: ReservationStatus,
    to_status: ReservationStatus,
    **values,
) -> bool:
    """预占行状态 CAS：只有把状态从 from_status 翻过去的那条语句才能动计数器"""
    if not can_transition(reservation.kind, from_status, to_status):
        raise ValueError(f"非法的预占状态迁移: {reservation.kind.value} {from_status.value} -> {to_status.value}")

    result = db.execute(
        update(InventoryReservation)
        .where(
            InventoryReservation.id == reservation.id,
            InventoryReservation.status == from_status,
        )
        .values(status=to_status, updated_at=func.now(), **values)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


# ==================== 内部工具 ====================

def _variant_filter(stmt, variant_id: Optional[int]):
    if variant_id is None:
        return stmt.where(Inventory.variant_id.is_(None))
    return stmt.where(Inventory.variant_id == variant_id)


def _check_quantity(quantity: int):
    if quantity is None or quantity <= 0:
        raise ValueError(f"数量必须为正整数: {quantity}")


def _execute(db: Session, stmt):
    return db.execute(
        stmt.returning(
            Inventory.id,
            Inventory.product_id,
            Inventory.available_quantity,
            Inventory.reserved_quantity,
        ).execution_options(synchronize_session=False)
    ).first()


def _refresh_status(db: Session, row):
    db.execute(
        update(Inventory)
        .where(Inventory.id == row.id)
        .values(status=stock_status(row.available_quantity))
        .execution_options(synchronize_session=False)
    )
