import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from stencilpro.config import Settings, get_settings
from stencilpro.database import Base, engine
from stencilpro.errors import AppException, ErrorCode, internal_error_error, validation_error_error
from stencilpro.routes import auth, chat, generation, images, payments

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# HTTP 状态码到错误码的映射（未经 AppException 包装的异常）
STATUS_ERROR_CODES = {
    status.HTTP_400_BAD_REQUEST: ErrorCode.VALIDATION_ERROR,
    status.HTTP_401_UNAUTHORIZED: ErrorCode.UNAUTHORIZED,
    status.HTTP_404_NOT_FOUND: ErrorCode.NOT_FOUND,
}


def check_required_settings(config: Settings) -> None:
    """启动前检查必需配置"""
    if not config.REPLICATE_API_TOKEN:
        raise RuntimeError("REPLICATE_API_TOKEN environment variable is required")
    if not config.llm_configured:
        logger.warning("OpenAI API key not configured, chat and image analysis are disabled")
    if not config.payments_configured:
        logger.warning("Stripe keys not configured, payment endpoints are disabled")


@asynccontextmanager
async def lifespan(app: FastAPI):
    check_required_settings(settings)
    # 创建数据库表
    Base.metadata.create_all(bind=engine)
    logger.info("Tattoo Stencil Pro API started")
    yield
    logger.info("Tattoo Stencil Pro API stopped")


app = FastAPI(
    title="Tattoo Stencil Pro API",
    description="AI 驱动的纹身线稿设计服务",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        settings.FRONTEND_URL,
        "http://localhost:5173",  # Vite dev server
        "http://127.0.0.1:5173",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


def error_response(exc: AppException) -> JSONResponse:
    content = exc.to_dict()
    content["detail"] = exc.message
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


@app.exception_handler(AppException)
async def app_exception_handler(request: Request, exc: AppException):
    return error_response(exc)


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    default_code = ErrorCode.INTERNAL_ERROR if exc.status_code >= 500 else ErrorCode.VALIDATION_ERROR
    error_code = STATUS_ERROR_CODES.get(exc.status_code, default_code)
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "success": False,
            "error_code": error_code.value,
            "message": str(exc.detail),
            "detail": exc.detail,
        },
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = first.get("msg", "Invalid request")
    if field:
        message = f"{field}: {message}"
    return error_response(validation_error_error(message, {"errors": jsonable_encoder(errors)}))


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled error on {request.method} {request.url.path}: {exc}", exc_info=True)
    return error_response(internal_error_error())


# 路由
app.include_router(auth.router)
app.include_router(images.router)
app.include_router(chat.router)
app.include_router(generation.router)
app.include_router(payments.router)

# 静态文件服务 - 上传的图片和生成结果
os.makedirs(settings.UPLOAD_DIR, exist_ok=True)
os.makedirs(settings.RESULT_DIR, exist_ok=True)
app.mount("/uploads", StaticFiles(directory=settings.UPLOAD_DIR), name="uploads")
app.mount("/results", StaticFiles(directory=settings.RESULT_DIR), name="results")


@app.get("/")
def root():
    return {"message": "Tattoo Stencil Pro API", "status": "running"}


@app.get("/health")
def health_check():
    return {"status": "healthy"}
