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
from app.db.base import Base, BigIntPK, JSONType, enum_type



# 1️ 支付流水状态

class TransactionStatus(str, enum.Enum):
    INITIATED = "initiated"
    PROCESSING = "processing"
    AUTHORIZED = "authorized"       # 预授权，尚未最终确认
    CAPTURED = "captured"           # 扣款成功（终态）
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


# 已成功收款的状态，失败事件不得覆盖
SETTLED_STATUSES = (
    TransactionStatus.CAPTURED,
    TransactionStatus.REFUNDED,
    TransactionStatus.PARTIALLY_REFUNDED,
)



# 2️ 支付流水表（每次支付尝试一行）

class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    order_id = Column(
        BigInteger,
        ForeignKey("orders.id"),
        nullable=False,
        index=True,
    )

    razorpay_order_id = Column(
        String(64),
        nullable=False,
        index=True,
        comment="Razorpay 订单ID",
    )

    razorpay_payment_id = Column(
        String(64),
        nullable=True,
        index=True,
        comment="Razorpay 支付ID",
    )

    amount = Column(
        Numeric(12, 2),
        nullable=False,
        comment="发起支付时的金额（元）",
    )

    currency = Column(
        String(3),
        nullable=False,
        default="INR",
        server_default="INR",
    )

    status = Column(
        enum_type(TransactionStatus, "payment_transaction_status_type"),
        nullable=False,
        default=TransactionStatus.INITIATED,
        server_default=TransactionStatus.INITIATED.value,
    )

    payment_method = Column(String(30), nullable=True)
    payment_method_details = Column(JSONType, nullable=True)

    error_code = Column(String(64), nullable=True)
    error_description = Column(Text, nullable=True)
    error_source = Column(String(64), nullable=True)
    error_step = Column(String(64), nullable=True)
    error_reason = Column(String(128), nullable=True)

    refund_id = Column(String(64), nullable=True)
    refund_amount = Column(
        Numeric(12, 2),
        nullable=False,
        default=0,
        server_default="0",
        comment="累计退款金额（元）",
    )
    refunded_at = Column(TIMESTAMP(timezone=True), nullable=True)

    webhook_verified = Column(
        Boolean,
        nullable=False,
        default=False,
        server_default="0",
    )

    # 退款失败等需要人工介入的标记
    needs_review = Column(
        Boolean,
        nullable=False,
        default=False,
        server_default="0",
    )

    webhook_received_at = Column(TIMESTAMP(timezone=True), nullable=True)
    verified_at = Column(TIMESTAMP(timezone=True), nullable=True)

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



# 3️ Webhook 日志表（幂等键）

class PaymentWebhookLog(Base):
    __tablename__ = "payment_webhook_logs"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    # 幂等唯一键：{payment_id 或 order_id}_{event_type}
    event_id = Column(
        String(128),
        nullable=False,
        unique=True,
        comment="幂等唯一键",
    )

    event_type = Column(String(64), nullable=False)
    razorpay_order_id = Column(String(64), nullable=True)
    razorpay_payment_id = Column(String(64), nullable=True)

    raw_payload = Column(
        JSONType,
        nullable=True,
        comment="原始事件快照",
    )

    signature_verified = Column(
        Boolean,
        nullable=False,
        default=False,
        server_default="0",
    )

    processed = Column(
        Boolean,
        nullable=False,
        default=False,
        server_default="0",
    )

    processing_error = Column(Text, nullable=True)

    retry_count = Column(
        Integer,
        nullable=False,
        default=0,
        server_default="0",
    )

    received_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )

    processed_at = Column(TIMESTAMP(timezone=True), nullable=True)



Index(
    "idx_webhook_logs_event_type_received",
    PaymentWebhookLog.event_type,
    PaymentWebhookLog.received_at.desc(),
)
