"""Outbox 投递任务

把 outbox_events 中未投递的事件按主题转发给对应的 Celery 任务，
失败时按指数退避推迟下一次投递（最长 10 分钟）。
"""

from datetime import datetime, timedelta, timezone
import logging

from sqlalchemy import select

from celery_app import app
from app.core.config import settings
from app.db.session import SessionLocal
from app.models.outbox import OutboxEvent
from app.services.event_publisher import TOPIC_GENERATE_INVOICE

logger = logging.getLogger(__name__)

# 主题 -> (任务名, 队列)
TOPIC_TASKS = {
    TOPIC_GENERATE_INVOICE: ("tasks.invoice.generate_invoice", "invoice"),
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def next_attempt_at(attempt_count: int) -> datetime:
    seconds = min(600, 2 ** min(attempt_count, 9))
    return utcnow() + timedelta(seconds=seconds)


@app.task(name='tasks.outbox.dispatch_outbox_events')
def dispatch_outbox_events(batch_size: int = None):
    """投递一批到期的 outbox 事件

    Returns:
        {"delivered": n, "failed": m}
    """
    batch_size = batch_size or settings.OUTBOX_BATCH_SIZE
    db = SessionLocal()
    delivered = failed = 0
    try:
        events = db.execute(
            select(OutboxEvent)
            .where(
                OutboxEvent.delivered.is_(False),
                OutboxEvent.available_at <= utcnow(),
            )
            .order_by(OutboxEvent.id)
            .limit(batch_size)
            .with_for_update(skip_locked=True)
        ).scalars().all()

        for event in events:
            route = TOPIC_TASKS.get(event.topic)
            if route is None:
                # 没有消费者，标记为已投递，避免无限重试
                logger.warning(f"outbox 事件没有对应的任务: id={event.id}, topic={event.topic}")
                event.delivered = True
                event.delivered_at = utcnow()
                continue

            task_name, queue = route
            try:
                app.send_task(task_name, kwargs=event.payload or {}, queue=queue)
            except Exception as e:
                event.attempt_count = (event.attempt_count or 0) + 1
                event.last_error = str(e)[:1000]
                event.available_at = next_attempt_at(event.attempt_count)
                failed += 1
                logger.error(f"outbox 事件投递失败: id={event.id}, topic={event.topic}, attempt={event.attempt_count}, error={str(e)}")
                continue

            event.delivered = True
            event.delivered_at = utcnow()
            event.last_error = None
            delivered += 1
            logger.info(f"outbox 事件已投递: id={event.id}, topic={event.topic}, task={task_name}")

        db.commit()
        return {"delivered": delivered, "failed": failed}
    except Exception as e:
        logger.error(f"outbox 投递任务执行失败: {str(e)}")
        db.rollback()
        raise
    finally:
        db.close()


__all__ = ['dispatch_outbox_events']
