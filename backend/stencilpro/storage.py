"""
持久化访问层
用户、图片、生成记录、对话消息四类记录的增删查
"""
import logging
from typing import List, Optional

from sqlalchemy import desc
from sqlalchemy.orm import Session

from stencilpro.models import User, Image, Edit, ChatMessage, ChatRole

logger = logging.getLogger(__name__)


# ============ 用户 ============

def get_user(db: Session, user_id: int) -> Optional[User]:
    return db.query(User).filter(User.id == user_id).first()


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    return db.query(User).filter(User.email == email).first()


def update_user_profile(
    db: Session,
    user: User,
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    profile_image_url: Optional[str] = None,
) -> User:
    if first_name is not None:
        user.first_name = first_name
    if last_name is not None:
        user.last_name = last_name
    if profile_image_url is not None:
        user.profile_image_url = profile_image_url
    db.commit()
    db.refresh(user)
    return user


def set_stripe_customer(db: Session, user: User, customer_id: str) -> User:
    user.stripe_customer_id = customer_id
    db.commit()
    db.refresh(user)
    return user


# ============ 图片 ============

def create_image(
    db: Session,
    owner_id: int,
    url: str,
    filename: str,
    size: int,
    width: int,
    height: int,
    meta: Optional[dict] = None,
) -> Image:
    image = Image(
        owner_id=owner_id,
        url=url,
        filename=filename,
        size=size,
        width=width,
        height=height,
        meta=meta,
    )
    db.add(image)
    db.commit()
    db.refresh(image)
    return image


def get_image(db: Session, image_id: int) -> Optional[Image]:
    return db.query(Image).filter(Image.id == image_id).first()


def get_user_image(db: Session, user_id: int, image_id: int) -> Optional[Image]:
    """按归属查询图片，不属于该用户时返回 None"""
    return db.query(Image).filter(
        Image.id == image_id,
        Image.owner_id == user_id
    ).first()


def list_user_images(db: Session, user_id: int) -> List[Image]:
    return db.query(Image).filter(
        Image.owner_id == user_id
    ).order_by(desc(Image.created_at), desc(Image.id)).all()


def delete_image(db: Session, image: Image) -> None:
    """
    删除图片记录

    - 关联的对话消息一并删除
    - 生成记录保留，仅断开与原图的关联
    """
    db.query(ChatMessage).filter(ChatMessage.image_id == image.id).delete(synchronize_session=False)
    db.query(Edit).filter(Edit.base_image_id == image.id).update(
        {Edit.base_image_id: None}, synchronize_session=False
    )
    db.delete(image)
    db.commit()


# ============ 生成记录 ============

def create_edit(
    db: Session,
    user_id: int,
    result_url: str,
    prompt: str,
    ai_prompt: Optional[str] = None,
    settings: Optional[dict] = None,
    credit_cost: int = 5,
    base_image_id: Optional[int] = None,
) -> Edit:
    """创建生成记录，不提交事务，由调用方决定提交时机"""
    edit = Edit(
        user_id=user_id,
        base_image_id=base_image_id,
        result_url=result_url,
        prompt=prompt,
        ai_prompt=ai_prompt,
        settings=settings,
        credit_cost=credit_cost,
    )
    db.add(edit)
    return edit


def list_user_edits(db: Session, user_id: int) -> List[Edit]:
    return db.query(Edit).filter(
        Edit.user_id == user_id
    ).order_by(desc(Edit.created_at), desc(Edit.id)).all()


def list_image_edits(db: Session, image_id: int) -> List[Edit]:
    return db.query(Edit).filter(
        Edit.base_image_id == image_id
    ).order_by(desc(Edit.created_at), desc(Edit.id)).all()


# ============ 对话消息 ============

def create_chat_message(
    db: Session,
    user_id: int,
    role: ChatRole,
    content: str,
    image_id: Optional[int] = None,
) -> ChatMessage:
    message = ChatMessage(
        user_id=user_id,
        image_id=image_id,
        role=role,
        content=content,
    )
    db.add(message)
    db.commit()
    db.refresh(message)
    return message


def list_chat_messages(db: Session, user_id: int, image_id: Optional[int] = None) -> List[ChatMessage]:
    """按创建顺序返回对话，时间相同的按插入顺序"""
    query = db.query(ChatMessage).filter(ChatMessage.user_id == user_id)
    if image_id is not None:
        query = query.filter(ChatMessage.image_id == image_id)
    return query.order_by(ChatMessage.created_at, ChatMessage.id).all()


def clear_chat_messages(db: Session, user_id: int, image_id: Optional[int] = None) -> int:
    query = db.query(ChatMessage).filter(ChatMessage.user_id == user_id)
    if image_id is not None:
        query = query.filter(ChatMessage.image_id == image_id)
    deleted = query.delete(synchronize_session=False)
    db.commit()
    logger.info(f"Cleared {deleted} chat messages for user {user_id} (image={image_id})")
    return deleted
