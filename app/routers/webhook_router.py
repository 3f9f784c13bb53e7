"""Razorpay Webhook 入口

需要原始请求体做签名校验，因此直接读取 request.body()，
状态码由 PaymentWebhookService 决定，原样返回。
"""

from fastapi import APIRouter, Depends, Header, Request
from fastapi.responses import JSONResponse
from typing import Optional

from app.core.dependencies import get_payment_webhook_service
from app.services.payment_webhook_service import PaymentWebhookService

router = APIRouter(prefix="/webhooks", tags=["支付回调"])


@router.post("/razorpay", summary="Razorpay 支付事件回调")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    service: PaymentWebhookService = Depends(get_payment_webhook_service),
):
    raw_body = await request.body()
    status_code, body = service.handle(raw_body, x_razorpay_signature)
    return JSONResponse(status_code=status_code, content=body)
