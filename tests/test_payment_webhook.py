"""Razorpay Webhook 状态机单元测试"""
from decimal import Decimal

import pytest
from unittest.mock import patch
from sqlalchemy.exc import OperationalError

from app.models.orders import Order, OrderStatus, PaymentStatus
from app.models.outbox import OutboxEvent
from app.models.payments import PaymentTransaction, PaymentWebhookLog, TransactionStatus
from app.services.event_publisher import TOPIC_GENERATE_INVOICE
from app.services.payment_webhook_service import AMOUNT_MISMATCH, PaymentWebhookService
from app.services.razorpay_service import (
    extract_payment_method_details,
    from_paise,
    to_paise,
    verify_webhook_signature,
)

RZP_ORDER_ID = "order_TEST001"


def payment_event(event="payment.captured", amount=100000, payment_id="pay_001", **extra):
    entity = {"id": payment_id, "order_id": RZP_ORDER_ID, "amount": amount, "method": "upi", "vpa": "buyer@upi"}
    entity.update(extra)
    return {"event": event, "payload": {"payment": {"entity": entity}}}


def refund_event(event="refund.processed", amount=40000, refund_id="rfnd_001", payment_id="pay_001"):
    return {
        "event": event,
        "payload": {"refund": {"entity": {"id": refund_id, "payment_id": payment_id, "amount": amount}}},
    }


def order_paid_event(amount_paid=100000):
    return {
        "event": "order.paid",
        "payload": {"order": {"entity": {"id": RZP_ORDER_ID, "amount_paid": amount_paid}}},
    }


@pytest.fixture(autouse=True)
def kick_dispatch():
    with patch("app.services.payment_webhook_service.kick_outbox_dispatch") as mock:
        yield mock


@pytest.fixture
def service(db_session, webhook_secret):
    return PaymentWebhookService(db_session)


@pytest.fixture
def order(factory):
    order = factory.order(total="1000.00", razorpay_order_id=RZP_ORDER_ID)
    factory.transaction(order)
    return order


@pytest.fixture
def deliver(service, sign):
    def _deliver(payload, target=None):
        raw_body, signature = sign(payload)
        return (target or service).handle(raw_body, signature)
    return _deliver


def reload_order(db_session, order):
    return db_session.get(Order, order.id, populate_existing=True)


def reload_transaction(db_session, order):
    return (
        db_session.query(PaymentTransaction)
        .filter_by(order_id=order.id)
        .populate_existing()
        .one()
    )


class TestRazorpayHelpers:
    """签名与金额工具测试"""

    def test_signature(self, sign):
        """测试签名校验"""
        raw_body, signature = sign({"event": "payment.captured"}, secret="s3cret")

        assert verify_webhook_signature(raw_body, signature, secret="s3cret") is True
        assert verify_webhook_signature(raw_body, signature.upper(), secret="s3cret") is True
        assert verify_webhook_signature(raw_body, signature, secret="other") is False
        assert verify_webhook_signature(raw_body, "", secret="s3cret") is False

    @pytest.mark.parametrize("amount,paise", [
        (Decimal("1000.00"), 100000),
        (Decimal("499.99"), 49999),
        ("0.015", 2),
    ])
    def test_to_paise(self, amount, paise):
        """测试元换算为分"""
        assert to_paise(amount) == paise

    def test_from_paise(self):
        """测试分换算为元"""
        assert from_paise(49999) == Decimal("499.99")

    def test_method_details(self):
        """测试按支付方式提取明细"""
        card = {"method": "card", "card": {"id": "card_1", "network": "Visa", "last4": "4242"}}

        assert extract_payment_method_details(card)["last4"] == "4242"
        assert extract_payment_method_details({"method": "upi", "vpa": "a@upi"}) == {"vpa": "a@upi"}
        assert extract_payment_method_details({"method": "emi"}) == {"method": "emi"}

    def test_event_id(self):
        """测试幂等键，退款事件带上退款ID"""
        assert PaymentWebhookService.build_event_id("payment.captured", "pay_1", "order_1") == "pay_1_payment.captured"
        assert PaymentWebhookService.build_event_id("order.paid", None, "order_1") == "order_1_order.paid"
        assert PaymentWebhookService.build_event_id(
            "refund.processed", "pay_1", None, "rfnd_1"
        ) == "pay_1_refund.processed_rfnd_1"


class TestRequestValidation:
    """请求校验测试"""

    def test_missing_signature(self, service):
        """测试缺少签名"""
        status, body = service.handle(b'{"event": "payment.captured"}', None)

        assert status == 401
        assert body["message"] == "Missing signature"

    def test_missing_body(self, service):
        """测试请求体为空"""
        assert service.handle(b"", "abc")[0] == 400

    @pytest.mark.parametrize("raw_body", [b"not json", b"[1, 2]", b'{"payload": {}}'])
    def test_invalid_json(self, service, raw_body):
        """测试非法 JSON 或缺少事件类型"""
        status, body = service.handle(raw_body, "abc")

        assert status == 400
        assert body["message"] == "Invalid JSON"

    def test_invalid_signature_is_logged(self, sign, service, db_session, order):
        """测试签名错误返回 401，日志行保留"""
        raw_body, _ = sign(payment_event())

        status, body = service.handle(raw_body, "0" * 64)

        assert status == 401
        log = db_session.query(PaymentWebhookLog).one()
        assert log.signature_verified is False
        assert log.processed is False
        assert reload_order(db_session, order).payment_status == PaymentStatus.PENDING


    def test_valid_retry_after_bad_signature(self, sign, deliver, service, db_session, order):
        """测试签名错误后同一事件的合法重推仍会处理"""
        raw_body, _ = sign(payment_event())
        service.handle(raw_body, "0" * 64)

        status, body = deliver(payment_event())

        assert (status, body) == (200, {"status": "success"})
        log = db_session.query(PaymentWebhookLog).populate_existing().one()
        assert log.signature_verified is True
        assert log.processed is True
        assert reload_order(db_session, order).payment_status == PaymentStatus.PAID

    def test_log_write_error(self, deliver, db_session, order, kick_dispatch):
        """测试日志写入失败时返回 200，订单与流水不变"""
        with patch.object(
            PaymentWebhookService, "_upsert_log",
            side_effect=OperationalError("INSERT", {}, Exception("数据库不可用")),
        ):
            status, body = deliver(payment_event())

        assert (status, body) == (200, {"status": "error", "message": "Database error"})
        assert reload_order(db_session, order).payment_status == PaymentStatus.PENDING
        assert reload_transaction(db_session, order).status == TransactionStatus.INITIATED
        assert db_session.query(OutboxEvent).count() == 0
        kick_dispatch.assert_not_called()
    def test_unsupported_event(self, deliver, db_session):
        """测试不支持的事件类型"""
        status, body = deliver({"event": "payment.dispute.created", "payload": {}})

        assert status == 200
        assert body["status"] == "ignored"
        assert db_session.query(PaymentWebhookLog).one().processed is False


class TestPaymentCaptured:
    """payment.captured 测试"""

    def test_captured(self, deliver, db_session, order, kick_dispatch):
        """测试收款成功：订单确认并请求发票"""
        status, body = deliver(payment_event())

        assert (status, body) == (200, {"status": "success"})
        updated = reload_order(db_session, order)
        assert updated.payment_status == PaymentStatus.PAID
        assert updated.order_status == OrderStatus.CONFIRMED
        assert updated.transaction_id == "pay_001"
        assert updated.invoice_requested_at is not None

        transaction = reload_transaction(db_session, order)
        assert transaction.status == TransactionStatus.CAPTURED
        assert transaction.webhook_verified is True
        assert transaction.payment_method_details == {"vpa": "buyer@upi"}

        event = db_session.query(OutboxEvent).one()
        assert event.topic == TOPIC_GENERATE_INVOICE
        assert event.payload["order_id"] == order.id
        assert event.payload["reason"] == "INITIAL"
        assert db_session.query(PaymentWebhookLog).one().processed is True
        kick_dispatch.assert_called_once()

    def test_replay_is_idempotent(self, deliver, db_session, order, kick_dispatch):
        """测试重复推送只处理一次"""
        deliver(payment_event())

        status, body = deliver(payment_event())

        assert (status, body) == (200, {"status": "already_processed"})
        assert db_session.query(OutboxEvent).count() == 1
        assert db_session.query(PaymentWebhookLog).count() == 1
        kick_dispatch.assert_called_once()

    def test_amount_mismatch(self, deliver, db_session, order, kick_dispatch):
        """测试金额不一致：流水标记失败，订单不变"""
        status, body = deliver(payment_event(amount=100))

        assert status == 200
        transaction = reload_transaction(db_session, order)
        assert transaction.status == TransactionStatus.FAILED
        assert transaction.error_code == AMOUNT_MISMATCH
        assert reload_order(db_session, order).payment_status == PaymentStatus.PENDING
        assert db_session.query(OutboxEvent).count() == 0
        kick_dispatch.assert_not_called()

    def test_unknown_transaction(self, deliver, db_session):
        """测试找不到支付流水时直接成功返回"""
        status, body = deliver(payment_event())

        assert body["status"] == "success"
        assert db_session.query(PaymentWebhookLog).one().processed is True

    def test_handler_error(self, deliver, db_session, order):
        """测试处理异常时返回 200 并记录错误"""
        with patch.object(PaymentWebhookService, "_handle_payment_captured", side_effect=RuntimeError("数据库超时")):
            failing = PaymentWebhookService(db_session)
            status, body = deliver(payment_event(), target=failing)

        assert (status, body["status"]) == (200, "error")
        log = db_session.query(PaymentWebhookLog).populate_existing().one()
        assert log.processed is False
        assert log.retry_count == 1
        assert log.processing_error == "数据库超时"

        # Razorpay 重试时可以正常处理
        status, body = deliver(payment_event())
        assert body["status"] == "success"


class TestOutOfOrderEvents:
    """事件乱序测试"""

    def test_failed_after_captured(self, deliver, db_session, order):
        """测试失败事件晚到不覆盖已收款状态"""
        deliver(payment_event())

        deliver(payment_event(event="payment.failed", error_code="BAD_REQUEST_ERROR"))

        assert reload_order(db_session, order).payment_status == PaymentStatus.PAID
        assert reload_transaction(db_session, order).status == TransactionStatus.CAPTURED

    def test_failed(self, deliver, db_session, order):
        """测试支付失败"""
        deliver(payment_event(
            event="payment.failed",
            error_code="BAD_REQUEST_ERROR",
            error_description="Payment declined by bank",
        ))

        updated = reload_order(db_session, order)
        assert updated.payment_status == PaymentStatus.FAILED
        assert updated.last_payment_error == "Payment declined by bank"
        assert reload_transaction(db_session, order).error_code == "BAD_REQUEST_ERROR"

    def test_authorized_then_captured(self, deliver, db_session, order):
        """测试预授权后收款"""
        deliver(payment_event(event="payment.authorized"))

        assert reload_transaction(db_session, order).status == TransactionStatus.AUTHORIZED
        assert reload_order(db_session, order).payment_status == PaymentStatus.PAID
        assert db_session.query(OutboxEvent).count() == 0

        deliver(payment_event())

        assert reload_transaction(db_session, order).status == TransactionStatus.CAPTURED
        assert reload_order(db_session, order).order_status == OrderStatus.CONFIRMED
        assert db_session.query(OutboxEvent).count() == 1

    def test_authorized_after_captured(self, deliver, db_session, order):
        """测试预授权事件晚到"""
        deliver(payment_event())

        deliver(payment_event(event="payment.authorized"))

        assert reload_transaction(db_session, order).status == TransactionStatus.CAPTURED

    def test_order_paid_fallback_then_captured(self, deliver, db_session, order):
        """测试 order.paid 兜底确认，之后的收款事件不重复请求发票"""
        deliver(order_paid_event())

        updated = reload_order(db_session, order)
        assert updated.payment_status == PaymentStatus.PAID
        assert updated.order_status == OrderStatus.CONFIRMED

        deliver(payment_event())

        assert db_session.query(OutboxEvent).count() == 1

    def test_order_paid_after_amount_mismatch(self, deliver, db_session, order, kick_dispatch):
        """测试收款金额不一致后 order.paid 不能确认订单"""
        deliver(payment_event(amount=100))

        status, body = deliver(order_paid_event(amount_paid=100))

        assert status == 200
        updated = reload_order(db_session, order)
        assert updated.payment_status == PaymentStatus.PENDING
        assert updated.order_status == OrderStatus.PENDING
        transaction = reload_transaction(db_session, order)
        assert transaction.status == TransactionStatus.FAILED
        assert transaction.error_code == AMOUNT_MISMATCH
        assert db_session.query(OutboxEvent).count() == 0
        kick_dispatch.assert_not_called()

    def test_order_paid_amount_mismatch(self, deliver, db_session, order):
        """测试 order.paid 实付金额不一致时不确认订单"""
        deliver(order_paid_event(amount_paid=50000))

        assert reload_order(db_session, order).payment_status == PaymentStatus.PENDING
        assert db_session.query(OutboxEvent).count() == 0


class TestRefunds:
    """退款测试"""

    def test_partial_then_full_refund(self, deliver, db_session, order):
        """测试多次部分退款累计为全额退款"""
        deliver(payment_event())

        deliver(refund_event(amount=40000, refund_id="rfnd_001"))

        transaction = reload_transaction(db_session, order)
        assert transaction.status == TransactionStatus.PARTIALLY_REFUNDED
        assert transaction.refund_amount == Decimal("400.00")
        assert reload_order(db_session, order).payment_status == PaymentStatus.PARTIALLY_REFUNDED

        deliver(refund_event(amount=60000, refund_id="rfnd_002"))

        transaction = reload_transaction(db_session, order)
        assert transaction.status == TransactionStatus.REFUNDED
        assert transaction.refund_amount == Decimal("1000.00")
        updated = reload_order(db_session, order)
        assert updated.payment_status == PaymentStatus.REFUNDED
        assert updated.order_status == OrderStatus.REFUNDED

    def test_refund_is_terminal(self, deliver, db_session, order):
        """测试全额退款后收款事件不能复活订单"""
        deliver(payment_event())
        deliver(refund_event(amount=100000))

        deliver(order_paid_event())
        deliver(payment_event(payment_id="pay_002"))

        assert reload_order(db_session, order).payment_status == PaymentStatus.REFUNDED
        assert reload_transaction(db_session, order).status == TransactionStatus.REFUNDED

    def test_refund_failed(self, deliver, db_session, order):
        """测试退款失败标记人工处理"""
        deliver(payment_event())

        deliver(refund_event(event="refund.failed"))

        transaction = reload_transaction(db_session, order)
        assert transaction.needs_review is True
        assert transaction.status == TransactionStatus.CAPTURED
