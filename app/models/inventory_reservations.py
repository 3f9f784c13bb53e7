import enum

from sqlalchemy import (
    Column,
    BigInteger,
    Boolean,
    String,
    Integer,
    TIMESTAMP,
    func,
    CheckConstraint,
    Index,
    ForeignKey,
)
from app.db.base import Base, BigIntPK, enum_type



# 1️ 预占类型与状态枚举

class ReservationKind(str, enum.Enum):
    CART = "cart"     # 购物车短期预占，带过期时间
    ORDER = "order"   # 下单后的订单预占


class ReservationStatus(str, enum.Enum):
    RESERVED = "reserved"     # 占用中
    CONVERTED = "converted"   # 购物车预占已转为订单预占
    RELEASED = "released"     # 已释放（取消/移出购物车）
    EXPIRED = "expired"       # 购物车预占过期，被定时任务释放
    FULFILLED = "fulfilled"   # 已发货，实物库存已扣减
    RETURNED = "returned"     # 已退货入库


# 合法的状态迁移（购物车与订单两套状态机）
ALLOWED_TRANSITIONS = {
    ReservationKind.CART: {
        ReservationStatus.RESERVED: {
            ReservationStatus.CONVERTED,
            ReservationStatus.RELEASED,
            ReservationStatus.EXPIRED,
        },
    },
    ReservationKind.ORDER: {
        ReservationStatus.RESERVED: {
            ReservationStatus.FULFILLED,
            ReservationStatus.RELEASED,
        },
        ReservationStatus.FULFILLED: {
            ReservationStatus.RETURNED,
        },
    },
}


def can_transition(kind: ReservationKind, current: ReservationStatus, target: ReservationStatus) -> bool:
    return target in ALLOWED_TRANSITIONS.get(kind, {}).get(current, set())



# 2️ 预占表

class InventoryReservation(Base):
    __tablename__ = "inventory_reservations"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    kind = Column(
        enum_type(ReservationKind, "reservation_kind_type"),
        nullable=False,
        comment="预占类型",
    )

    status = Column(
        enum_type(ReservationStatus, "reservation_status_type"),
        nullable=False,
        default=ReservationStatus.RESERVED,
        server_default=ReservationStatus.RESERVED.value,
        comment="预占状态",
    )

    inventory_id = Column(
        BigInteger,
        ForeignKey("inventory.id"),
        nullable=False,
        index=True,
        comment="被占用的库存行",
    )

    product_id = Column(
        BigInteger,
        nullable=False,
        index=True,
        comment="商品ID",
    )

    variant_id = Column(
        BigInteger,
        nullable=True,
        comment="规格ID",
    )

    quantity = Column(
        Integer,
        nullable=False,
        comment="预占数量",
    )

    returned_quantity = Column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
        comment="已退货数量（仅订单预占）",
    )

    cart_id = Column(
        String(64),
        nullable=True,
        index=True,
        comment="购物车ID",
    )

    order_number = Column(
        String(64),
        nullable=True,
        index=True,
        comment="订单号",
    )

    owner_id = Column(
        String(64),
        nullable=False,
        default="GUEST",
        server_default="GUEST",
        comment="下单用户ID，游客为 GUEST",
    )

    # 管理员直建订单允许超卖，此标记用于后续对账
    oversold = Column(
        Boolean,
        nullable=False,
        default=False,
        server_default="0",
    )

    expires_at = Column(
        TIMESTAMP(timezone=True),
        nullable=True,
        comment="购物车预占过期时间",
    )

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    updated_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )

    released_at = Column(TIMESTAMP(timezone=True), nullable=True)
    fulfilled_at = Column(TIMESTAMP(timezone=True), nullable=True)
    returned_at = Column(TIMESTAMP(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_reservation_quantity_positive"),
        CheckConstraint(
            "returned_quantity >= 0 AND returned_quantity <= quantity",
            name="ck_reservation_returned_range",
        ),
    )



# 3️ 高频查询优化索引

Index(
    "idx_reservation_kind_status_expires",
    InventoryReservation.kind,
    InventoryReservation.status,
    InventoryReservation.expires_at,
)
