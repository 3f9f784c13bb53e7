"""Razorpay 相关工具：签名校验、金额换算、支付方式详情提取"""

import hashlib
import hmac
import logging
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional

from app.core.config import settings

logger = logging.getLogger(__name__)


def verify_webhook_signature(raw_body: bytes, signature: str, secret: Optional[str] = None) -> bool:
    """校验 x-razorpay-signature（原始请求体的 HMAC-SHA256 十六进制摘要）"""
    secret = secret if secret is not None else settings.RAZORPAY_WEBHOOK_SECRET
    if not raw_body or not signature or not secret:
        logger.warning("Webhook 签名校验缺少参数")
        return False

    if isinstance(raw_body, str):
        raw_body = raw_body.encode("utf-8")

    expected = hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()
    # 常量时间比较
    is_valid = hmac.compare_digest(expected, signature.strip().lower())
    if not is_valid:
        logger.warning("Webhook 签名校验失败")
    return is_valid


def to_paise(amount) -> int:
    """元 -> 分（Razorpay 使用最小货币单位）"""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_paise(paise: int) -> Decimal:
    return (Decimal(int(paise)) / 100).quantize(Decimal("0.01"))


def extract_payment_method_details(payment: dict) -> dict:
    """按支付方式提取需要落库的明细"""
    method = payment.get("method")
    if method == "card":
        card = payment.get("card") or {}
        return {
            "card_id": card.get("id"),
            "network": card.get("network"),
            "last4": card.get("last4"),
            "issuer": card.get("issuer"),
            "type": card.get("type"),
        }
    if method == "upi":
        return {"vpa": payment.get("vpa")}
    if method == "netbanking":
        return {"bank_code": payment.get("bank")}
    if method == "wallet":
        return {"wallet": payment.get("wallet")}
    return {"method": method}
