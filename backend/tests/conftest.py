"""
测试公共配置
数据库、测试客户端与外部服务替身
"""
import io
import os
import sys
import tempfile

# 必须在导入应用之前设置
os.environ["APP_ENV_FILE"] = os.devnull
os.environ["SQLALCHEMY_DATABASE_URL"] = "sqlite://"
os.environ["REPLICATE_API_TOKEN"] = "r8_test_token"
os.environ["OPENAI_API_KEY"] = "sk-test-key"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="stencilpro-uploads-")
os.environ["RESULT_DIR"] = tempfile.mkdtemp(prefix="stencilpro-results-")

# 添加 backend 目录到 Python 路径
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import pytest
from unittest.mock import AsyncMock, MagicMock

from fastapi.testclient import TestClient
from PIL import Image as PILImage
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from stencilpro.main import app
from stencilpro.auth import create_access_token, get_password_hash
from stencilpro.database import Base, get_db, get_session_factory
from stencilpro.dependencies import get_llm_client, get_payment_gateway, get_stencil_generator
from stencilpro.models import User
from stencilpro.services.payments import PaymentGateway

WEBHOOK_SECRET = "whsec_test_secret"
RESULT_URL = "https://replicate.delivery/pbxt/stencil.png"


# ==================== 测试数据库配置 ====================

engine = create_engine(
    "sqlite://",
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)

TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


def override_get_session_factory():
    return TestingSessionLocal


async def stream_chunks(chunks, error=None):
    """模拟语言模型的流式输出"""
    for chunk in chunks:
        yield chunk
    if error is not None:
        raise error


# ==================== Fixture ====================

@pytest.fixture(scope="function")
def db_session():
    """创建测试数据库表"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def fake_llm():
    """语言模型替身，默认回复 "Hello, world" """
    llm = MagicMock()
    llm.configured = True
    llm.enhance_prompt = AsyncMock(
        side_effect=lambda prompt, image_analysis=None: f"Professional tattoo stencil of {prompt}"
    )
    llm.analyze_image = AsyncMock(return_value="Bold outlines and a tighter composition would suit this piece.")
    llm.stream_chat = MagicMock(
        side_effect=lambda history, **kwargs: stream_chunks(["Hello", ", ", "world"])
    )
    return llm


@pytest.fixture
def fake_generator():
    """图片生成替身"""
    generator = MagicMock()
    generator.generate = AsyncMock(return_value=RESULT_URL)
    generator.get_prediction = AsyncMock(
        return_value={"status": "succeeded", "output": [RESULT_URL], "error": None}
    )
    return generator


@pytest.fixture
def payment_gateway():
    return PaymentGateway(secret_key="sk_test_123", webhook_secret=WEBHOOK_SECRET)


@pytest.fixture(scope="function")
def client(db_session, fake_llm, fake_generator, payment_gateway):
    """创建测试客户端"""
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = override_get_session_factory
    app.dependency_overrides[get_llm_client] = lambda: fake_llm
    app.dependency_overrides[get_stencil_generator] = lambda: fake_generator
    app.dependency_overrides[get_payment_gateway] = lambda: payment_gateway
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def make_user(db, email: str, password: str = "testpassword123", credits: int = 10) -> User:
    user = User(
        email=email,
        hashed_password=get_password_hash(password),
        credits=credits
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


@pytest.fixture
def test_user(db_session):
    """创建测试用户（10 积分）"""
    return make_user(db_session, "test@example.com")


@pytest.fixture
def other_user(db_session):
    return make_user(db_session, "other@example.com")


@pytest.fixture
def auth_token(test_user):
    """生成测试用户的 JWT token"""
    return create_access_token(data={"sub": str(test_user.id)})


@pytest.fixture
def auth_headers(auth_token):
    """生成带认证的请求头"""
    return {"Authorization": f"Bearer {auth_token}"}


@pytest.fixture
def other_headers(other_user):
    return {"Authorization": f"Bearer {create_access_token(data={'sub': str(other_user.id)})}"}


def make_png(width: int = 64, height: int = 48, color: str = "red") -> bytes:
    buffer = io.BytesIO()
    PILImage.new("RGB", (width, height), color=color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def sample_png():
    """64x48 的 PNG 图片字节"""
    return make_png()


@pytest.fixture
def uploaded_image(client, auth_headers, sample_png):
    """通过接口上传一张图片，返回响应数据"""
    response = client.post(
        "/api/upload",
        files={"image": ("reference.png", sample_png, "image/png")},
        headers=auth_headers,
    )
    assert response.status_code == 200
    return response.json()
