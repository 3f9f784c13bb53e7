"""Razorpay Webhook 处理

状态码约定：
- 401：缺少签名 / 签名错误（日志行保留，便于追查）
- 400：请求体为空或不是合法的事件 JSON
- 200：其余所有情况，包括业务处理失败，避免 Razorpay 无限重试

幂等：event_id = "{payment_id 或 order_id}_{event_type}"，退款事件再拼上退款ID。
处理结果与 processed=True 在同一个事务中提交。
"""

import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional, Tuple

from sqlalchemy import select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.models.orders import Order, OrderStatus, PaymentStatus
from app.models.payments import (
    PaymentTransaction,
    PaymentWebhookLog,
    SETTLED_STATUSES,
    TransactionStatus,
)
from app.services.event_publisher import EventPublisher, kick_outbox_dispatch
from app.services.razorpay_service import (
    extract_payment_method_details,
    from_paise,
    to_paise,
    verify_webhook_signature,
)

logger = logging.getLogger(__name__)

SUPPORTED_EVENTS = (
    "payment.captured",
    "payment.authorized",
    "payment.failed",
    "refund.processed",
    "refund.failed",
    "order.paid",
)

AMOUNT_MISMATCH = "AMOUNT_MISMATCH"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _entity(payload: dict, name: str) -> dict:
    return ((payload.get("payload") or {}).get(name) or {}).get("entity") or {}


class PaymentWebhookService:
    """Webhook 状态机"""

    def __init__(self, db: Session, publisher: Optional[EventPublisher] = None):
        self.db = db
        self.publisher = publisher or EventPublisher(db)
        self._invoice_requested = False
        self._handlers = {
            "payment.captured": self._handle_payment_captured,
            "payment.authorized": self._handle_payment_authorized,
            "payment.failed": self._handle_payment_failed,
            "refund.processed": self._handle_refund_processed,
            "refund.failed": self._handle_refund_failed,
            "order.paid": self._handle_order_paid,
        }

    def handle(self, raw_body: bytes, signature: Optional[str]) -> Tuple[int, dict]:
        """处理一次 webhook 推送，返回 (HTTP 状态码, 响应体)"""
        if not signature:
            return 401, {"status": "error", "message": "Missing signature"}
        if not raw_body:
            return 400, {"status": "error", "message": "Missing body"}

        try:
            event = json.loads(raw_body)
        except (ValueError, UnicodeDecodeError):
            return 400, {"status": "error", "message": "Invalid JSON"}
        if not isinstance(event, dict) or not event.get("event"):
            return 400, {"status": "error", "message": "Invalid JSON"}

        event_type = event["event"]
        payment = _entity(event, "payment")
        refund = _entity(event, "refund")
        razorpay_order_id = payment.get("order_id") or _entity(event, "order").get("id")
        razorpay_payment_id = payment.get("id") or refund.get("payment_id")

        event_id = self.build_event_id(event_type, razorpay_payment_id, razorpay_order_id, refund.get("id"))

        # 先验签，结果随日志行一起落库
        is_valid = verify_webhook_signature(raw_body, signature)

        try:
            log_id, processed = self._upsert_log(
                event_id=event_id,
                event_type=event_type,
                razorpay_order_id=razorpay_order_id,
                razorpay_payment_id=razorpay_payment_id,
                raw_payload=event,
                signature_verified=is_valid,
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Webhook 日志写入失败: event_id={event_id}, error={str(e)}")
            return 200, {"status": "error", "message": "Database error"}

        if processed:
            logger.info(f"Webhook 已处理过（幂等命中）: event_id={event_id}")
            return 200, {"status": "already_processed"}

        if not is_valid:
            logger.error(f"安全告警：Webhook 签名校验失败 event_type={event_type}, razorpay_order_id={razorpay_order_id}")
            return 401, {"status": "error", "message": "Invalid signature"}

        handler = self._handlers.get(event_type)
        if handler is None:
            logger.info(f"忽略不支持的 Webhook 事件: {event_type}")
            return 200, {"status": "ignored", "message": "Unsupported event type"}

        self._invoice_requested = False
        try:
            handler(event)
            self.db.execute(
                update(PaymentWebhookLog)
                .where(PaymentWebhookLog.id == log_id)
                .values(processed=True, processed_at=utcnow(), processing_error=None)
            )
            self.db.commit()
        except Exception as e:
            self.db.rollback()
            error_message = str(e)
            logger.error(f"Webhook 处理失败: event_id={event_id}, error={error_message}")
            self._record_failure(log_id, error_message)
            return 200, {"status": "error", "message": error_message}

        logger.info(
            f"Webhook 处理成功: event_type={event_type}, "
            f"razorpay_order_id={razorpay_order_id}, razorpay_payment_id={razorpay_payment_id}"
        )

        if self._invoice_requested:
            kick_outbox_dispatch()

        return 200, {"status": "success"}

    @staticmethod
    def build_event_id(
        event_type: str,
        razorpay_payment_id: Optional[str],
        razorpay_order_id: Optional[str],
        refund_id: Optional[str] = None,
    ) -> str:
        """幂等键：同一笔支付的不同事件互不影响；多次部分退款各自独立"""
        event_id = f"{razorpay_payment_id or razorpay_order_id}_{event_type}"
        if event_type.startswith("refund.") and refund_id:
            event_id = f"{event_id}_{refund_id}"
        return event_id

    # ==================== 日志 ====================

    def _upsert_log(self, **values) -> Tuple[int, bool]:
        """INSERT ... ON CONFLICT (event_id) DO UPDATE SET received_at, signature_verified RETURNING id, processed"""
        dialect = self.db.get_bind().dialect.name
        insert = postgresql.insert if dialect == "postgresql" else sqlite.insert

        stmt = insert(PaymentWebhookLog).values(received_at=utcnow(), **values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["event_id"],
            set_={
                "received_at": stmt.excluded.received_at,
                "signature_verified": stmt.excluded.signature_verified,
            },
        ).returning(PaymentWebhookLog.id, PaymentWebhookLog.processed)

        row = self.db.execute(stmt).first()
        self.db.commit()
        return row.id, bool(row.processed)

    def _record_failure(self, log_id: int, error_message: str):
        try:
            self.db.execute(
                update(PaymentWebhookLog)
                .where(PaymentWebhookLog.id == log_id)
                .values(
                    processing_error=error_message,
                    retry_count=PaymentWebhookLog.retry_count + 1,
                )
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"记录 Webhook 处理错误失败: log_id={log_id}, error={str(e)}")

    # ==================== 事件处理 ====================

    def _handle_payment_captured(self, event: dict):
        """payment.captured：唯一可信的支付成功信号"""
        payment = _entity(event, "payment")
        payment_id = payment.get("id")
        razorpay_order_id = payment.get("order_id")
        amount = payment.get("amount")

        logger.info(f"处理 payment.captured: payment_id={payment_id}, razorpay_order_id={razorpay_order_id}, amount={amount}")

        transaction = self._find_transaction(razorpay_order_id=razorpay_order_id)
        if transaction is None:
            logger.warning(f"未找到支付流水: razorpay_order_id={razorpay_order_id}")
            return

        if transaction.status == TransactionStatus.CAPTURED and transaction.webhook_verified:
            logger.info(f"支付流水已确认收款，跳过: razorpay_order_id={razorpay_order_id}")
            return

        if transaction.status in (TransactionStatus.REFUNDED, TransactionStatus.PARTIALLY_REFUNDED):
            logger.warning(f"支付流水已退款，忽略收款事件: razorpay_order_id={razorpay_order_id}")
            return

        if not self._amount_matches(transaction, payment):
            return

        now = utcnow()
        self.db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == transaction.id)
            .values(
                status=TransactionStatus.CAPTURED,
                razorpay_payment_id=payment_id,
                payment_method=payment.get("method"),
                payment_method_details=extract_payment_method_details(payment),
                webhook_verified=True,
                webhook_received_at=now,
                verified_at=now,
                updated_at=now,
            )
        )

        # 已退款的订单不能被"复活"
        result = self.db.execute(
            update(Order)
            .where(
                Order.id == transaction.order_id,
                Order.payment_status != PaymentStatus.REFUNDED,
            )
            .values(
                payment_status=PaymentStatus.PAID,
                order_status=OrderStatus.CONFIRMED,
                transaction_id=payment_id,
                paid_at=now,
                last_payment_error=None,
                updated_at=now,
            )
        )
        if result.rowcount:
            logger.info(f"支付成功，订单已确认: order_id={transaction.order_id}, payment_id={payment_id}, amount={from_paise(amount)}")
        else:
            logger.warning(f"订单已退款，收款事件不再修改支付状态: order_id={transaction.order_id}")

        self._request_invoice(transaction.order_id)

    def _handle_payment_authorized(self, event: dict):
        """payment.authorized：临时确认，后续仍以 captured 为准"""
        payment = _entity(event, "payment")
        payment_id = payment.get("id")
        razorpay_order_id = payment.get("order_id")

        logger.info(f"处理 payment.authorized: payment_id={payment_id}, razorpay_order_id={razorpay_order_id}")

        transaction = self._find_transaction(razorpay_order_id=razorpay_order_id)
        if transaction is None:
            logger.warning(f"未找到支付流水: razorpay_order_id={razorpay_order_id}")
            return

        if transaction.status in SETTLED_STATUSES:
            logger.info(f"支付流水已是终态，跳过: razorpay_order_id={razorpay_order_id}, status={transaction.status.value}")
            return

        if not self._amount_matches(transaction, payment):
            return

        now = utcnow()
        self.db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction.id,
                PaymentTransaction.status.not_in(SETTLED_STATUSES),
            )
            .values(
                status=TransactionStatus.AUTHORIZED,
                razorpay_payment_id=payment_id,
                payment_method=payment.get("method"),
                webhook_received_at=now,
                updated_at=now,
            )
        )
        self.db.execute(
            update(Order)
            .where(
                Order.id == transaction.order_id,
                Order.payment_status.in_([PaymentStatus.PENDING, PaymentStatus.FAILED]),
            )
            .values(payment_status=PaymentStatus.PAID, updated_at=now)
        )

    def _handle_payment_failed(self, event: dict):
        """payment.failed：失败事件晚到时不能覆盖已成功的状态"""
        payment = _entity(event, "payment")
        payment_id = payment.get("id")
        razorpay_order_id = payment.get("order_id")

        logger.info(
            f"处理 payment.failed: payment_id={payment_id}, razorpay_order_id={razorpay_order_id}, "
            f"error_code={payment.get('error_code')}"
        )

        transaction = self._find_transaction(razorpay_order_id=razorpay_order_id)
        if transaction is None:
            logger.warning(f"未找到支付流水: razorpay_order_id={razorpay_order_id}")
            return

        if transaction.status in SETTLED_STATUSES:
            logger.info(f"支付流水已成功，忽略失败事件: razorpay_order_id={razorpay_order_id}")
            return

        now = utcnow()
        self.db.execute(
            update(PaymentTransaction)
            .where(
                PaymentTransaction.id == transaction.id,
                PaymentTransaction.status.not_in(SETTLED_STATUSES),
            )
            .values(
                status=TransactionStatus.FAILED,
                razorpay_payment_id=payment_id,
                error_code=payment.get("error_code"),
                error_description=payment.get("error_description"),
                error_source=payment.get("error_source"),
                error_step=payment.get("error_step"),
                error_reason=payment.get("error_reason"),
                webhook_received_at=now,
                updated_at=now,
            )
        )
        self.db.execute(
            update(Order)
            .where(
                Order.id == transaction.order_id,
                Order.payment_status == PaymentStatus.PENDING,
            )
            .values(
                payment_status=PaymentStatus.FAILED,
                last_payment_error=(
                    payment.get("error_description") or payment.get("error_reason") or "Payment failed"
                ),
                updated_at=now,
            )
        )

    def _handle_refund_processed(self, event: dict):
        """refund.processed：累计退款金额，判断全额/部分退款"""
        refund = _entity(event, "refund")
        refund_id = refund.get("id")
        payment_id = refund.get("payment_id")
        amount = refund.get("amount") or 0

        logger.info(f"处理 refund.processed: refund_id={refund_id}, payment_id={payment_id}, amount={amount}")

        transaction = self._find_transaction(razorpay_payment_id=payment_id)
        if transaction is None:
            logger.warning(f"未找到退款对应的支付流水: payment_id={payment_id}")
            return

        total_refunded = Decimal(transaction.refund_amount or 0) + from_paise(amount)
        is_full_refund = total_refunded >= Decimal(transaction.amount)
        now = utcnow()

        self.db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == transaction.id)
            .values(
                status=TransactionStatus.REFUNDED if is_full_refund else TransactionStatus.PARTIALLY_REFUNDED,
                refund_id=refund_id,
                refund_amount=total_refunded,
                refunded_at=now,
                updated_at=now,
            )
        )

        order_values = {
            "payment_status": PaymentStatus.REFUNDED if is_full_refund else PaymentStatus.PARTIALLY_REFUNDED,
            "updated_at": now,
        }
        if is_full_refund:
            order_values["order_status"] = OrderStatus.REFUNDED
        self.db.execute(
            update(Order)
            .where(
                Order.id == transaction.order_id,
                Order.payment_status != PaymentStatus.REFUNDED,
            )
            .values(**order_values)
        )
        logger.info(f"退款已入账: order_id={transaction.order_id}, total_refunded={total_refunded}, full={is_full_refund}")

    def _handle_refund_failed(self, event: dict):
        """refund.failed：只标记人工处理，不改状态"""
        refund = _entity(event, "refund")
        refund_id = refund.get("id")
        payment_id = refund.get("payment_id")

        logger.warning(f"退款失败，需要人工处理: refund_id={refund_id}, payment_id={payment_id}")

        transaction = self._find_transaction(razorpay_payment_id=payment_id)
        if transaction is None:
            return

        self.db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == transaction.id)
            .values(
                needs_review=True,
                error_description="Refund failed - manual review required",
                updated_at=utcnow(),
            )
        )

    def _handle_order_paid(self, event: dict):
        """order.paid：payment.captured 丢失时的兜底确认"""
        entity = _entity(event, "order")
        razorpay_order_id = entity.get("id")

        logger.info(f"处理 order.paid: razorpay_order_id={razorpay_order_id}, amount_paid={entity.get('amount_paid')}")

        order = self.db.execute(
            select(Order)
            .where(Order.razorpay_order_id == razorpay_order_id)
            .execution_options(populate_existing=True)
        ).scalars().first()
        if order is None:
            logger.warning(f"order.paid 未找到订单: razorpay_order_id={razorpay_order_id}")
            return

        if order.payment_status in (PaymentStatus.PAID, PaymentStatus.REFUNDED):
            return

        transaction = self._find_transaction(razorpay_order_id=razorpay_order_id)
        if transaction is not None and transaction.error_code == AMOUNT_MISMATCH:
            logger.warning(f"支付流水金额不一致，order.paid 不确认订单: order_id={order.id}, razorpay_order_id={razorpay_order_id}")
            return

        expected = to_paise(order.total_amount)
        if entity.get("amount_paid") != expected:
            logger.error(
                f"安全告警：order.paid 实付金额不一致 razorpay_order_id={razorpay_order_id}, "
                f"expected={expected}, actual={entity.get('amount_paid')}, order_id={order.id}"
            )
            return

        now = utcnow()
        result = self.db.execute(
            update(Order)
            .where(
                Order.id == order.id,
                Order.payment_status.not_in([PaymentStatus.PAID, PaymentStatus.REFUNDED]),
            )
            .values(
                payment_status=PaymentStatus.PAID,
                order_status=OrderStatus.CONFIRMED,
                paid_at=now,
                updated_at=now,
            )
        )
        if result.rowcount:
            logger.info(f"order.paid 兜底更新订单为已支付: order_id={order.id}, previous={order.payment_status.value}")
            self._request_invoice(order.id)

    # ==================== 内部工具 ====================

    def _find_transaction(
        self,
        razorpay_order_id: Optional[str] = None,
        razorpay_payment_id: Optional[str] = None,
    ) -> Optional[PaymentTransaction]:
        stmt = select(PaymentTransaction)
        if razorpay_payment_id is not None:
            stmt = stmt.where(PaymentTransaction.razorpay_payment_id == razorpay_payment_id)
        elif razorpay_order_id is not None:
            stmt = stmt.where(PaymentTransaction.razorpay_order_id == razorpay_order_id)
        else:
            return None
        return self.db.execute(
            stmt.order_by(PaymentTransaction.id.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        ).scalars().first()

    def _amount_matches(self, transaction: PaymentTransaction, payment: dict) -> bool:
        """按订单应付金额（分）校验实付金额，不一致时把流水标记为失败"""
        order = self.db.get(Order, transaction.order_id, populate_existing=True)
        expected = to_paise(order.total_amount if order is not None else transaction.amount)
        actual = payment.get("amount")

        if actual == expected:
            return True

        logger.error(
            f"安全告警：支付金额不一致 razorpay_order_id={transaction.razorpay_order_id}, "
            f"payment_id={payment.get('id')}, expected={expected}, actual={actual}, "
            f"order_id={transaction.order_id}"
        )
        now = utcnow()
        self.db.execute(
            update(PaymentTransaction)
            .where(PaymentTransaction.id == transaction.id)
            .values(
                status=TransactionStatus.FAILED,
                razorpay_payment_id=payment.get("id"),
                error_code=AMOUNT_MISMATCH,
                error_description=f"Expected {expected} paise but received {actual} paise",
                webhook_verified=True,
                webhook_received_at=now,
                updated_at=now,
            )
        )
        return False

    def _request_invoice(self, order_id: int):
        """每个订单只请求一次发票"""
        result = self.db.execute(
            update(Order)
            .where(Order.id == order_id, Order.invoice_requested_at.is_(None))
            .values(invoice_requested_at=utcnow())
        )
        if result.rowcount != 1:
            logger.info(f"发票已请求过，跳过: order_id={order_id}")
            return

        self.publisher.publish_generate_invoice(order_id, reason="INITIAL", triggered_by="system")
        self._invoice_requested = True
