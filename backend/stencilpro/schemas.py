"""
Pydantic 模型定义
用于 API 请求和响应验证，对外字段统一使用 camelCase
"""
from pydantic import BaseModel, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel
from typing import Any, Literal, Optional
from datetime import datetime
from stencilpro.models import ChatRole


class CamelModel(BaseModel):
    """对外字段使用 camelCase，内部使用 snake_case"""

    class Config:
        from_attributes = True
        populate_by_name = True
        alias_generator = to_camel


# ============ 用户相关 Schema ============

class UserCreate(BaseModel):
    """用户注册请求"""
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=128)
    first_name: Optional[str] = Field(None, max_length=100, alias="firstName")
    last_name: Optional[str] = Field(None, max_length=100, alias="lastName")

    class Config:
        populate_by_name = True


class UserResponse(CamelModel):
    """用户信息响应"""
    id: int
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    display_name: Optional[str] = None
    profile_image_url: Optional[str] = None
    credits: int
    created_at: Optional[datetime] = None


class UserUpdate(CamelModel):
    """用户更新请求"""
    first_name: Optional[str] = Field(None, max_length=100)
    last_name: Optional[str] = Field(None, max_length=100)
    profile_image_url: Optional[str] = None


# ============ Token 相关 Schema ============

class Token(BaseModel):
    """Token 响应"""
    access_token: str
    token_type: str = "bearer"


# ============ 图片相关 Schema ============

class UploadResponse(CamelModel):
    id: int
    url: str
    filename: str
    size: int
    width: int
    height: int


class ImageResponse(CamelModel):
    id: int
    owner_id: int
    url: str
    filename: Optional[str] = None
    size: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    meta: Optional[dict] = None
    created_at: Optional[datetime] = None


# ============ 对话相关 Schema ============

class ChatRequest(CamelModel):
    message: str = Field(..., min_length=1)
    image_id: Optional[int] = None

    @field_validator("message")
    @classmethod
    def message_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Message is required")
        return v


class ChatMessageResponse(CamelModel):
    id: int
    user_id: int
    image_id: Optional[int] = None
    role: ChatRole
    content: str
    created_at: Optional[datetime] = None


class AnalyzeImageRequest(CamelModel):
    image_id: int
    prompt: Optional[str] = None


class AnalyzeImageResponse(BaseModel):
    analysis: str


# ============ 生成相关 Schema ============

StencilStyle = Literal["traditional", "neo-traditional", "realistic", "blackwork", "geometric"]
LineWeight = Literal["fine", "medium", "bold", "variable"]
AspectRatio = Literal["1:1", "4:3", "16:9", "9:16"]


class GenerationSettings(CamelModel):
    """图片生成参数"""
    style: StencilStyle = "traditional"
    line_weight: LineWeight = "medium"
    guidance_scale: float = Field(7.5, ge=1, le=20)
    steps: int = Field(30, ge=10, le=50)
    aspect_ratio: AspectRatio = "4:3"


class GenerateRequest(CamelModel):
    prompt: str = Field(..., min_length=1)
    image_id: Optional[int] = None
    settings: GenerationSettings = Field(default_factory=GenerationSettings)

    @field_validator("prompt")
    @classmethod
    def prompt_not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Prompt is required")
        return v

    @field_validator("settings", mode="before")
    @classmethod
    def settings_default(cls, v: Any) -> Any:
        return {} if v is None else v


class GenerateResponse(CamelModel):
    id: int
    url: str
    prompt: str
    credits_used: int
    credits_remaining: int


class EditResponse(CamelModel):
    id: int
    user_id: int
    base_image_id: Optional[int] = None
    result_url: str
    prompt: str
    ai_prompt: Optional[str] = None
    settings: Optional[dict] = None
    credit_cost: int
    created_at: Optional[datetime] = None


# ============ 积分 / 支付相关 Schema ============

class CreditResponse(BaseModel):
    """积分响应"""
    credits: int


class PaymentIntentRequest(BaseModel):
    amount: float = Field(..., gt=0, description="金额（美元）")
    credits: int = Field(..., gt=0)


class PaymentIntentResponse(CamelModel):
    client_secret: str


# ============ 通用响应 Schema ============

class APIResponse(BaseModel):
    """通用 API 响应"""
    success: bool
    message: str
    data: Optional[dict] = None
