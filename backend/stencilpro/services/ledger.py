"""
积分账本
生成扣费与支付入账，均在数据库层做原子更新
"""
import logging
from typing import Optional, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from stencilpro import storage
from stencilpro.models import Edit, PaymentEvent, User

logger = logging.getLogger(__name__)


class InsufficientCreditsError(Exception):
    """积分不足"""

    def __init__(self, required: int, available: int):
        self.required = required
        self.available = available
        super().__init__(f"Insufficient credits: required {required}, available {available}")


def get_balance(db: Session, user_id: int) -> int:
    return db.query(User.credits).filter(User.id == user_id).scalar() or 0


def ensure_balance(user: User, cost: int) -> None:
    """调用外部服务前检查余额"""
    if user.credits < cost:
        raise InsufficientCreditsError(cost, user.credits)


def debit_and_record(
    db: Session,
    user_id: int,
    cost: int,
    result_url: str,
    prompt: str,
    ai_prompt: Optional[str] = None,
    settings: Optional[dict] = None,
    base_image_id: Optional[int] = None,
) -> Tuple[Edit, int]:
    """
    扣除积分并写入生成记录

    条件更新 credits = credits - cost WHERE credits >= cost，
    与生成记录在同一事务中提交

    Returns:
        (生成记录, 剩余积分)

    Raises:
        InsufficientCreditsError: 余额已不足（并发请求先扣走了积分）
    """
    try:
        updated = db.query(User).filter(
            User.id == user_id,
            User.credits >= cost
        ).update({User.credits: User.credits - cost}, synchronize_session=False)

        if updated != 1:
            db.rollback()
            raise InsufficientCreditsError(cost, get_balance(db, user_id))

        edit = storage.create_edit(
            db,
            user_id=user_id,
            base_image_id=base_image_id,
            result_url=result_url,
            prompt=prompt,
            ai_prompt=ai_prompt,
            settings=settings,
            credit_cost=cost,
        )
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        raise

    db.refresh(edit)
    remaining = get_balance(db, user_id)
    logger.info(f"Debited {cost} credits from user {user_id}, {remaining} remaining (edit {edit.id})")
    return edit, remaining


def credit_from_payment(db: Session, event_id: str, user_id: int, credits: int) -> bool:
    """
    支付成功后加积分

    同一事件只入账一次

    Returns:
        bool: 本次是否入账
    """
    if db.query(PaymentEvent).filter(PaymentEvent.event_id == event_id).first():
        logger.warning(f"Payment event {event_id} already processed, skipping")
        return False

    try:
        db.add(PaymentEvent(event_id=event_id, user_id=user_id, credits=credits))
        updated = db.query(User).filter(User.id == user_id).update(
            {User.credits: User.credits + credits}, synchronize_session=False
        )
        if updated != 1:
            db.rollback()
            logger.warning(f"Payment event {event_id} references unknown user {user_id}")
            return False
        db.commit()
    except IntegrityError:
        # 并发投递的同一事件
        db.rollback()
        logger.warning(f"Payment event {event_id} already processed, skipping")
        return False
    except SQLAlchemyError:
        db.rollback()
        raise

    logger.info(f"Credited {credits} credits to user {user_id} (event {event_id})")
    return True
