"""
AI 对话路由
流式返回模型回复，并维护按用户/图片划分的对话记录
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session, sessionmaker

from stencilpro import storage
from stencilpro.auth import get_current_user
from stencilpro.config import get_settings
from stencilpro.database import get_db, get_session_factory
from stencilpro.dependencies import get_llm_client
from stencilpro.errors import image_not_found_error, service_not_configured_error
from stencilpro.models import ChatRole, User
from stencilpro.schemas import APIResponse, ChatMessageResponse, ChatRequest
from stencilpro.services.chat_relay import relay_chat
from stencilpro.services.llm import LLMClient
from stencilpro.services.upload import read_image_base64

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["chat"])

settings = get_settings()


@router.post("/chat")
async def chat(
    request: Request,
    body: ChatRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    llm: LLMClient = Depends(get_llm_client),
    session_factory: sessionmaker = Depends(get_session_factory),
):
    """
    与 AI 助手对话

    返回 text/event-stream：
    - data: {"content": "..."} 文本片段
    - data: {"error": "..."} 流中出错
    - data: [DONE] 结束标记
    """
    if not llm.configured:
        raise service_not_configured_error(
            "openai", "AI chat service requires OpenAI API key configuration"
        )

    user_id = current_user.id
    image_id = body.image_id

    image = None
    if image_id is not None:
        image = storage.get_user_image(db, user_id, image_id)
        if not image:
            raise image_not_found_error(image_id)

    storage.create_chat_message(db, user_id, ChatRole.USER, body.message, image_id=image_id)

    history = [
        {"role": message.role.value, "content": message.content}
        for message in storage.list_chat_messages(db, user_id, image_id)
    ]

    image_base64 = None
    mime_type = "image/jpeg"
    if image is not None:
        mime_type = (image.meta or {}).get("mimetype") or mime_type
        try:
            image_base64 = await read_image_base64(image.url, settings.UPLOAD_DIR)
        except OSError as e:
            logger.warning(f"Could not read image {image_id} for chat context: {e}")

    def save_reply(text: str) -> None:
        # 请求会话可能已关闭，使用独立会话
        session = session_factory()
        try:
            storage.create_chat_message(session, user_id, ChatRole.ASSISTANT, text, image_id=image_id)
        finally:
            session.close()

    logger.info(f"Chat turn for user {user_id} (image={image_id}, history={len(history)})")

    chunks = llm.stream_chat(history, image_base64=image_base64, mime_type=mime_type)
    return StreamingResponse(
        relay_chat(chunks, save_reply, request.is_disconnected),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        }
    )


@router.get("/chat/history", response_model=List[ChatMessageResponse])
def get_chat_history(
    image_id: Optional[int] = Query(None, alias="imageId"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """按创建顺序返回对话记录"""
    return storage.list_chat_messages(db, current_user.id, image_id)


@router.delete("/chat/history", response_model=APIResponse)
def clear_chat_history(
    image_id: Optional[int] = Query(None, alias="imageId"),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    deleted = storage.clear_chat_messages(db, current_user.id, image_id)
    return APIResponse(success=True, message="Chat history cleared", data={"deleted": deleted})
