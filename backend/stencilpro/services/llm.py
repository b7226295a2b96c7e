"""
语言模型服务
对话流式输出、参考图分析、生成提示词优化
"""
import logging
from typing import AsyncIterator, Dict, List, Optional

from openai import (
    AsyncOpenAI,
    APIError,
    AuthenticationError as OpenAIAuthError,
    RateLimitError as OpenAIRateLimitError,
)

from stencilpro.config import Settings
from stencilpro.services.prompt_template import get_prompt_manager

logger = logging.getLogger(__name__)

ANALYSIS_FALLBACK = "I couldn't analyze the image. Please try again."


class LLMServiceError(Exception):
    """语言模型调用错误基类"""

    def __init__(self, message: str, code: str = "LLM_ERROR", original_error: Optional[Exception] = None):
        self.message = message
        self.code = code
        self.original_error = original_error
        super().__init__(self.message)


class LLMNotConfiguredError(LLMServiceError):
    """未配置语言模型密钥，或误填了其他服务的密钥"""

    def __init__(self):
        super().__init__("AI chat service requires OpenAI API key configuration", code="NOT_CONFIGURED")


def _wrap_error(e: Exception, action: str) -> LLMServiceError:
    if isinstance(e, OpenAIRateLimitError):
        return LLMServiceError(f"OpenAI rate limit exceeded during {action}", code="RATE_LIMIT", original_error=e)
    if isinstance(e, OpenAIAuthError):
        return LLMServiceError("OpenAI API key is invalid", code="API_KEY_INVALID", original_error=e)
    if isinstance(e, APIError):
        return LLMServiceError(f"OpenAI API error during {action}: {e}", code="API_ERROR", original_error=e)
    return LLMServiceError(f"OpenAI {action} failed: {e}", code="UNEXPECTED_ERROR", original_error=e)


def image_content(text: str, image_base64: str, mime_type: str = "image/jpeg") -> list:
    """文本 + 图片的多模态消息内容"""
    return [
        {"type": "text", "text": text},
        {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{image_base64}"}},
    ]


class LLMClient:
    """
    OpenAI Chat Completions 客户端

    由配置构造，未配置时 configured 为 False，调用方应在发起请求前检查
    """

    def __init__(self, api_key: str, model: str = "gpt-4o", base_url: Optional[str] = None,
                 configured: bool = True):
        self.model = model
        self.configured = configured
        self.client = AsyncOpenAI(api_key=api_key, base_url=base_url) if configured else None
        self.prompts = get_prompt_manager()

    @classmethod
    def from_settings(cls, settings: Settings) -> "LLMClient":
        return cls(
            api_key=settings.OPENAI_API_KEY,
            model=settings.OPENAI_MODEL,
            base_url=settings.OPENAI_BASE_URL,
            configured=settings.llm_configured,
        )

    def _require_client(self) -> AsyncOpenAI:
        if not self.configured or self.client is None:
            raise LLMNotConfiguredError()
        return self.client

    async def enhance_prompt(self, user_prompt: str, image_analysis: Optional[str] = None) -> str:
        """将用户描述改写为适合线稿生成的提示词，空回复时返回原描述"""
        client = self._require_client()
        content = self.prompts.render("enhance_request", prompt=user_prompt)
        if image_analysis:
            content += f"\n\nImage context: {image_analysis}"

        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.prompts.render("system_enhance")},
                    {"role": "user", "content": content},
                ],
                max_tokens=300,
                temperature=0.7,
            )
        except Exception as e:
            raise _wrap_error(e, "prompt enhancement")

        enhanced = (response.choices[0].message.content or "").strip()
        return enhanced or user_prompt

    async def analyze_image(self, image_base64: str, user_prompt: Optional[str] = None,
                            mime_type: str = "image/jpeg") -> str:
        client = self._require_client()
        if user_prompt:
            text = self.prompts.render("analysis_request", prompt=user_prompt)
        else:
            text = self.prompts.render("analysis_default")

        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": self.prompts.render("system_analysis")},
                    {"role": "user", "content": image_content(text, image_base64, mime_type)},
                ],
                max_tokens=1000,
                temperature=0.7,
            )
        except Exception as e:
            raise _wrap_error(e, "image analysis")

        return response.choices[0].message.content or ANALYSIS_FALLBACK

    def build_chat_messages(self, history: List[Dict[str, str]], image_base64: Optional[str] = None,
                            mime_type: str = "image/jpeg") -> list:
        """
        构造对话消息列表

        Args:
            history: 按时间顺序的 {role, content} 列表，最后一条为本次用户消息
            image_base64: 参考图，附加到最后一条用户消息上
        """
        messages: list = [{"role": "system", "content": self.prompts.render("system_chat")}]
        messages.extend({"role": m["role"], "content": m["content"]} for m in history)

        if image_base64:
            last = messages[-1]
            if last["role"] == "user" and isinstance(last["content"], str):
                last["content"] = image_content(last["content"], image_base64, mime_type)
        return messages

    async def stream_chat(self, history: List[Dict[str, str]], image_base64: Optional[str] = None,
                          mime_type: str = "image/jpeg") -> AsyncIterator[str]:
        """逐段产出模型回复文本，退出时关闭上游流"""
        client = self._require_client()
        messages = self.build_chat_messages(history, image_base64, mime_type)

        try:
            stream = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                stream=True,
                max_tokens=1000,
                temperature=0.7,
            )
        except Exception as e:
            raise _wrap_error(e, "chat streaming")

        try:
            async for chunk in stream:
                if chunk.choices and chunk.choices[0].delta.content:
                    yield chunk.choices[0].delta.content
        except Exception as e:
            raise _wrap_error(e, "chat streaming")
        finally:
            await stream.close()
