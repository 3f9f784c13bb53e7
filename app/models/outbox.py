from sqlalchemy import (
    Column,
    Boolean,
    String,
    Integer,
    Text,
    TIMESTAMP,
    func,
    Index,
)
from app.db.base import Base, BigIntPK, JSONType


class OutboxEvent(Base):
    """事务性 Outbox

    业务代码在同一事务里插入事件行，由 tasks.outbox_tasks 中的定时任务
    投递到对应的 Celery 任务。
    """

    __tablename__ = "outbox_events"

    id = Column(
        BigIntPK,
        primary_key=True,
        autoincrement=True,
    )

    topic = Column(
        String(128),
        nullable=False,
        index=True,
        comment="事件主题，如 invoice.generate",
    )

    payload = Column(
        JSONType,
        nullable=False,
        default=dict,
    )

    # 投递状态
    available_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
        comment="最早可投递时间（失败后按指数退避推迟）",
    )
    attempt_count = Column(Integer, nullable=False, default=0, server_default="0")
    last_error = Column(Text, nullable=True)
    delivered = Column(Boolean, nullable=False, default=False, server_default="0")
    delivered_at = Column(TIMESTAMP(timezone=True), nullable=True)

    created_at = Column(
        TIMESTAMP(timezone=True),
        server_default=func.now(),
        nullable=False,
    )


Index("idx_outbox_delivery", OutboxEvent.delivered, OutboxEvent.available_at)
