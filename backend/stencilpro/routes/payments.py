"""
积分购买路由
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from stencilpro import storage
from stencilpro.auth import get_current_user
from stencilpro.database import get_db
from stencilpro.dependencies import get_payment_gateway
from stencilpro.errors import (
    ErrorCode,
    service_not_configured_error,
    upstream_error,
    webhook_signature_error,
)
from stencilpro.models import User
from stencilpro.schemas import PaymentIntentRequest, PaymentIntentResponse
from stencilpro.services import ledger
from stencilpro.services.payments import (
    PaymentError,
    PaymentGateway,
    WebhookSignatureError,
    parse_credit_purchase,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["payments"])


def _require_gateway(gateway: Optional[PaymentGateway]) -> PaymentGateway:
    if gateway is None:
        raise service_not_configured_error(
            "stripe", "Payment processing is not configured"
        )
    return gateway


@router.post("/create-payment-intent", response_model=PaymentIntentResponse)
def create_payment_intent(
    body: PaymentIntentRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    gateway: Optional[PaymentGateway] = Depends(get_payment_gateway),
):
    """
    创建积分购买的 PaymentIntent，积分在 webhook 确认后发放

    - 首次购买时创建 Stripe customer 并保存到用户
    """
    gateway = _require_gateway(gateway)
    try:
        customer_id = gateway.ensure_customer(current_user)
        if customer_id != current_user.stripe_customer_id:
            storage.set_stripe_customer(db, current_user, customer_id)
        client_secret = gateway.create_payment_intent(
            current_user, body.amount, body.credits, customer_id=customer_id
        )
    except PaymentError as e:
        raise upstream_error(e.message, ErrorCode.PAYMENT_FAILED)
    return PaymentIntentResponse(client_secret=client_secret)


@router.post("/stripe/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    gateway: Optional[PaymentGateway] = Depends(get_payment_gateway),
):
    """
    Stripe webhook

    - 签名无效返回 400，不做任何修改
    - 同一事件重复投递只发放一次积分
    """
    gateway = _require_gateway(gateway)
    payload = await request.body()
    signature = request.headers.get("stripe-signature")

    try:
        event = gateway.construct_event(payload, signature)
    except WebhookSignatureError as e:
        raise webhook_signature_error(e.message)

    purchase = parse_credit_purchase(event)
    if purchase:
        applied = ledger.credit_from_payment(
            db,
            event_id=purchase.event_id,
            user_id=purchase.user_id,
            credits=purchase.credits,
        )
        if not applied:
            logger.info(f"Payment event {purchase.event_id} already processed")
    else:
        logger.debug(f"Ignoring webhook event {event.get('type')}")

    return {"received": True}
