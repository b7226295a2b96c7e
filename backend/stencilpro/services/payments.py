"""
Stripe 支付服务
创建积分购买的 PaymentIntent，校验并解析 webhook 事件
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import stripe

from stencilpro.config import Settings
from stencilpro.models import User

logger = logging.getLogger(__name__)

PAYMENT_SUCCEEDED_EVENT = "payment_intent.succeeded"


class PaymentError(Exception):
    """支付服务错误"""

    def __init__(self, message: str, code: str = "PAYMENT_FAILED"):
        self.message = message
        self.code = code
        super().__init__(self.message)


class WebhookSignatureError(PaymentError):
    def __init__(self, message: str = "Webhook signature verification failed"):
        super().__init__(message, code="WEBHOOK_SIGNATURE_INVALID")


@dataclass(frozen=True)
class CreditPurchase:
    """从支付成功事件中解析出的购买信息"""
    event_id: str
    user_id: int
    credits: int


class PaymentGateway:
    """
    Stripe 客户端

    密钥在构造时传入，每次调用显式携带，不修改 stripe 模块的全局配置
    """

    def __init__(self, secret_key: str, webhook_secret: str, currency: str = "usd"):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret
        self.currency = currency

    @classmethod
    def from_settings(cls, settings: Settings) -> Optional["PaymentGateway"]:
        """未同时配置密钥和 webhook 密钥时返回 None"""
        if not settings.payments_configured:
            return None
        return cls(
            secret_key=settings.STRIPE_SECRET_KEY,
            webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
            currency=settings.STRIPE_CURRENCY,
        )

    def ensure_customer(self, user: User) -> str:
        """返回用户的 Stripe customer id，没有时创建"""
        if user.stripe_customer_id:
            return user.stripe_customer_id
        try:
            customer = stripe.Customer.create(
                email=user.email,
                name=user.display_name,
                metadata={"userId": str(user.id)},
                api_key=self.secret_key,
            )
        except stripe.StripeError as e:
            logger.error(f"Failed to create Stripe customer for user {user.id}: {e}")
            raise PaymentError(f"Error creating customer: {e.user_message or e}")

        logger.info(f"Created Stripe customer {customer.id} for user {user.id}")
        return customer.id

    def create_payment_intent(self, user: User, amount: float, credits: int,
                              customer_id: Optional[str] = None) -> str:
        """
        创建 PaymentIntent

        Args:
            user: 购买积分的用户
            amount: 金额（美元）
            credits: 购买的积分数
            customer_id: 关联的 Stripe customer

        Returns:
            str: 前端使用的 client_secret
        """
        params: Dict[str, Any] = {
            "amount": int(round(amount * 100)),
            "currency": self.currency,
            "metadata": {"userId": str(user.id), "credits": str(credits)},
        }
        if customer_id:
            params["customer"] = customer_id
        try:
            intent = stripe.PaymentIntent.create(**params, api_key=self.secret_key)
        except stripe.StripeError as e:
            logger.error(f"Failed to create payment intent for user {user.id}: {e}")
            raise PaymentError(f"Error creating payment intent: {e.user_message or e}")

        logger.info(f"Created payment intent {intent.id} for user {user.id}: {credits} credits")
        return intent.client_secret

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """
        校验签名并解析事件

        Raises:
            WebhookSignatureError: 缺少签名、签名无效或内容不是 JSON 对象
        """
        if not signature:
            raise WebhookSignatureError()
        try:
            if hasattr(payload, "decode"):
                payload = payload.decode("utf-8")
            stripe.WebhookSignature.verify_header(payload, signature, self.webhook_secret)
            event = json.loads(payload)
        except stripe.SignatureVerificationError as e:
            logger.warning(f"Invalid Stripe webhook signature: {e}")
            raise WebhookSignatureError()
        except ValueError as e:
            logger.warning(f"Invalid Stripe webhook payload: {e}")
            raise WebhookSignatureError(f"Webhook error: {e}")

        if not isinstance(event, dict):
            logger.warning(f"Stripe webhook payload is a {type(event).__name__}, expected an object")
            raise WebhookSignatureError("Webhook error: payload is not a JSON object")
        return event


def parse_credit_purchase(event: Any) -> Optional[CreditPurchase]:
    """
    从事件中解析积分购买

    非支付成功事件、缺少事件 id 或元数据不完整时返回 None
    """
    if not isinstance(event, dict) or event.get("type") != PAYMENT_SUCCEEDED_EVENT:
        return None

    data = event.get("data")
    intent = data.get("object") if isinstance(data, dict) else None
    if not isinstance(intent, dict):
        logger.warning(f"Payment event {event.get('id')} has no payment intent object")
        return None

    metadata = intent.get("metadata")
    if not isinstance(metadata, dict):
        metadata = {}
    try:
        user_id = int(metadata.get("userId"))
        credits = int(metadata.get("credits"))
    except (TypeError, ValueError):
        logger.warning(f"Payment event {event.get('id')} has incomplete metadata: {metadata}")
        return None

    event_id = event.get("id")
    if not event_id or not isinstance(event_id, str):
        logger.warning(f"Payment event for user {user_id} has no event id, ignoring")
        return None

    if credits <= 0:
        return None
    return CreditPurchase(event_id=event_id, user_id=user_id, credits=credits)
