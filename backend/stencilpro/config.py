from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Optional
import os


# 图片生成服务的 token 前缀，误填到语言模型密钥时需要识别出来
REPLICATE_TOKEN_PREFIX = "r8_"


class Settings(BaseSettings):
    # Database
    DB_HOST: str = "localhost"
    DB_PORT: int = 3306
    DB_USER: str = "root"
    DB_PASSWORD: str = "password"
    DB_NAME: str = "tattoo_stencil_pro"
    # 设置后覆盖 MySQL 连接串（本地开发/测试可使用 sqlite）
    SQLALCHEMY_DATABASE_URL: Optional[str] = None

    # JWT
    SECRET_KEY: str = "your-secret-key-change-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # 语言模型（对话、图片分析、提示词优化）
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "gpt-4o"
    OPENAI_BASE_URL: Optional[str] = None

    # 图片生成（启动时必须配置）
    REPLICATE_API_TOKEN: str = ""
    REPLICATE_MODEL: str = "black-forest-labs/flux-kontext-pro"
    REPLICATE_API_BASE: str = "https://api.replicate.com/v1"
    GENERATION_TIMEOUT_SECONDS: int = 180
    GENERATION_MAX_RETRIES: int = 2
    GENERATION_POLL_INTERVAL: float = 1.5

    # Stripe 支付
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_CURRENCY: str = "usd"

    # 上传配置
    UPLOAD_DIR: str = "uploads"
    RESULT_DIR: str = "results"
    MAX_UPLOAD_BYTES: int = 10 * 1024 * 1024
    ALLOWED_IMAGE_TYPES: list = ["image/jpeg", "image/png", "image/webp"]

    # 积分
    GENERATION_CREDIT_COST: int = 5
    DEFAULT_USER_CREDITS: int = 10

    # CORS
    FRONTEND_URL: str = "http://localhost:5173"

    LOG_LEVEL: str = "INFO"

    class Config:
        # 优先从环境变量读取，然后从 backend/.env 读取
        env_file = os.environ.get("APP_ENV_FILE", os.path.join(os.path.dirname(os.path.dirname(__file__)), ".env"))
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"

    @property
    def DATABASE_URL(self) -> str:
        if self.SQLALCHEMY_DATABASE_URL:
            return self.SQLALCHEMY_DATABASE_URL
        return f"mysql+pymysql://{self.DB_USER}:{self.DB_PASSWORD}@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"

    @property
    def llm_configured(self) -> bool:
        """语言模型密钥存在且不是图片生成服务的 token"""
        key = self.OPENAI_API_KEY.strip()
        return bool(key) and not key.startswith(REPLICATE_TOKEN_PREFIX)

    @property
    def payments_configured(self) -> bool:
        return bool(self.STRIPE_SECRET_KEY) and bool(self.STRIPE_WEBHOOK_SECRET)


@lru_cache()
def get_settings() -> Settings:
    return Settings()
