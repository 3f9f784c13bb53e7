import enum

from sqlalchemy import (
    Column,
    BigInteger,
    Boolean,
    String,
    Integer,
    Numeric,
    Text,
    TIMESTAMP,
    ForeignKey,
    func,
    Index,
)
from sqlalchemy.orm import relationship
from app.db.base import Base, BigIntPK, enum_type



# 1️ 订单状态枚举（支付状态与履约状态相互独立）

class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"                      # 终态，之后不允许再写支付状态
    PARTIALLY_REFUNDED = "partially_refunded"


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    RETURNED = "returned"
    REFUNDED = "refunded"



# 2️ 订单表

class Order(Base):
    __tablename__ = "orders"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    order_number = Column(
        String(40),
        nullable=False,
        unique=True,
        comment="订单号",
    )

    user_id = Column(
        String(64),
        nullable=True,
        index=True,
        comment="下单用户，游客为空",
    )

    cart_id = Column(
        String(64),
        nullable=True,
        comment="来源购物车",
    )

    subtotal = Column(Numeric(12, 2), nullable=False, default=0)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    shipping_amount = Column(Numeric(12, 2), nullable=False, default=0)
    total_amount = Column(
        Numeric(12, 2),
        nullable=False,
        comment="应付总额（元），支付校验时换算为分",
    )

    discount_code = Column(String(50), nullable=True)

    payment_status = Column(
        enum_type(PaymentStatus, "order_payment_status_type"),
        nullable=False,
        default=PaymentStatus.PENDING,
        server_default=PaymentStatus.PENDING.value,
    )

    order_status = Column(
        enum_type(OrderStatus, "order_status_type"),
        nullable=False,
        default=OrderStatus.PENDING,
        server_default=OrderStatus.PENDING.value,
    )

    # 管理员直建订单（允许超卖）
    is_direct = Column(
        Boolean,
        nullable=False,
        default=False,
        server_default="0",
    )

    razorpay_order_id = Column(
        String(64),
        nullable=True,
        index=True,
        comment="Razorpay 订单ID",
    )

    transaction_id = Column(
        String(64),
        nullable=True,
        comment="Razorpay 支付ID",
    )

    paid_at = Column(TIMESTAMP(timezone=True), nullable=True)
    last_payment_error = Column(Text, nullable=True)

    # 发票生成请求只发一次，用该字段做 CAS
    invoice_requested_at = Column(TIMESTAMP(timezone=True), nullable=True)

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

    items = relationship(
        "OrderItem",
        back_populates="order",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    order_id = Column(
        BigInteger,
        ForeignKey("orders.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    product_id = Column(BigInteger, nullable=False, comment="商品ID")
    variant_id = Column(BigInteger, nullable=True, comment="规格ID")
    location_id = Column(BigInteger, nullable=True, comment="发货仓")

    product_name = Column(
        String(255),
        nullable=False,
        comment="下单时的商品名称快照",
    )

    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    discount_amount = Column(Numeric(12, 2), nullable=False, default=0)
    line_total = Column(Numeric(12, 2), nullable=False)

    order = relationship("Order", back_populates="items")



# 3️ 索引

Index(
    "idx_orders_payment_status_created",
    Order.payment_status,
    Order.created_at.desc(),
)
