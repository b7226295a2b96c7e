"""
对话流转发
将语言模型的增量文本以 SSE 事件转发给客户端，并在结束后保存完整回复
"""
import json
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

DONE_MARKER = "[DONE]"
STREAM_ERROR_MESSAGE = "Stream error"


def sse_event(payload) -> str:
    """单条 SSE 事件"""
    data = payload if isinstance(payload, str) else json.dumps(payload, ensure_ascii=False)
    return f"data: {data}\n\n"


def done_event() -> str:
    return sse_event(DONE_MARKER)


def error_event(message: str = STREAM_ERROR_MESSAGE) -> str:
    return sse_event({"error": message})


async def relay_chat(
    chunks: AsyncIterator[str],
    on_complete: Callable[[str], None],
    is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
) -> AsyncIterator[str]:
    """
    转发模型输出

    - 每段文本一个 {"content": ...} 事件
    - 正常结束时保存完整回复（非空才保存），然后发送结束标记
    - 上游出错时发送 {"error": ...} 事件并结束，已收到的部分文本不保存
    - 客户端断开后停止读取上游，不保存
    - 无论哪种情况结束标记最多出现一次，且之后不再有内容

    Args:
        chunks: 模型文本片段的异步迭代器
        on_complete: 保存完整回复的回调
        is_disconnected: 检查客户端是否已断开
    """
    parts = []
    try:
        async for content in chunks:
            if is_disconnected is not None and await is_disconnected():
                logger.info("Chat client disconnected, stopping upstream stream")
                return
            parts.append(content)
            yield sse_event({"content": content})
    except Exception as e:
        logger.error(f"Streaming error: {e}", exc_info=True)
        yield error_event()
        yield done_event()
        return
    finally:
        aclose = getattr(chunks, "aclose", None)
        if aclose is not None:
            await aclose()

    reply = "".join(parts)
    if reply:
        try:
            on_complete(reply)
        except Exception as e:
            logger.error(f"Failed to save assistant reply: {e}", exc_info=True)
            yield error_event("Failed to save assistant reply")
    yield done_event()
