"""异步事件发布（事务性 Outbox）

事件行与业务修改在同一事务中写入，提交后由 Celery 定时任务投递，
请求方不等待下游执行结果。
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from app.models.outbox import OutboxEvent

logger = logging.getLogger(__name__)

TOPIC_GENERATE_INVOICE = "invoice.generate"


class EventPublisher:
    """把事件写入 outbox（不提交，由调用方的事务负责）"""

    def __init__(self, db: Session):
        self.db = db

    def publish(self, topic: str, payload: dict) -> OutboxEvent:
        event = OutboxEvent(topic=topic, payload=payload)
        self.db.add(event)
        logger.info(f"事件已写入 outbox: topic={topic}, payload={payload}")
        return event

    def publish_generate_invoice(
        self,
        order_id: int,
        reason: str = "INITIAL",
        triggered_by: str = "system",
        order_number: Optional[str] = None,
    ) -> OutboxEvent:
        return self.publish(
            TOPIC_GENERATE_INVOICE,
            {
                "order_id": order_id,
                "order_number": order_number,
                "reason": reason,
                "triggered_by": triggered_by,
            },
        )


def kick_outbox_dispatch():
    """提交后立即触发一次 outbox 投递（失败只记录日志，定时任务会兜底）"""
    try:
        from tasks.outbox_tasks import dispatch_outbox_events
        dispatch_outbox_events.delay()
    except Exception as e:
        logger.warning(f"触发 outbox 投递失败，等待定时任务重试: {str(e)}")
