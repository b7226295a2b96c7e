"""
统一错误处理模块
提供错误类型枚举和AppException异常类
"""
from enum import Enum
from typing import Optional
from fastapi import HTTPException, status


class ErrorCode(str, Enum):
    """应用错误码"""
    # 积分相关
    CREDITS_INSUFFICIENT = "CREDITS_INSUFFICIENT"

    # 图片相关
    INVALID_IMAGE_FORMAT = "INVALID_IMAGE_FORMAT"
    IMAGE_TOO_LARGE = "IMAGE_TOO_LARGE"
    IMAGE_NOT_FOUND = "IMAGE_NOT_FOUND"
    UPLOAD_FAILED = "UPLOAD_FAILED"

    # 外部服务相关
    SERVICE_NOT_CONFIGURED = "SERVICE_NOT_CONFIGURED"
    UPSTREAM_ERROR = "UPSTREAM_ERROR"
    GENERATION_FAILED = "GENERATION_FAILED"

    # 支付相关
    PAYMENT_FAILED = "PAYMENT_FAILED"
    WEBHOOK_SIGNATURE_INVALID = "WEBHOOK_SIGNATURE_INVALID"

    # 验证相关
    VALIDATION_ERROR = "VALIDATION_ERROR"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"

    # 服务器相关
    INTERNAL_ERROR = "INTERNAL_ERROR"


class AppException(HTTPException):
    """应用自定义异常"""

    def __init__(
        self,
        status_code: int,
        error_code: ErrorCode | str,
        message: str,
        user_action: Optional[str] = None,
        details: Optional[dict] = None,
        headers: Optional[dict] = None,
    ):
        super().__init__(status_code=status_code, detail=message, headers=headers)
        self.error_code = error_code if isinstance(error_code, str) else error_code.value
        self.message = message
        self.user_action = user_action
        self.details = details

    def to_dict(self) -> dict:
        """转换为字典响应"""
        return {
            "success": False,
            "error_code": self.error_code,
            "message": self.message,
            "user_action": self.user_action,
            "details": self.details,
        }


# ============ 便捷错误创建函数 ============

def credits_insufficient_error(required: int, available: int) -> AppException:
    """积分不足错误"""
    return AppException(
        status_code=status.HTTP_402_PAYMENT_REQUIRED,
        error_code=ErrorCode.CREDITS_INSUFFICIENT,
        message="Insufficient credits",
        user_action="Purchase more credits and try again",
        details={"required": required, "available": available}
    )


def invalid_image_format_error(content_type: str) -> AppException:
    """图片格式错误"""
    return AppException(
        status_code=status.HTTP_400_BAD_REQUEST,
        error_code=ErrorCode.INVALID_IMAGE_FORMAT,
        message="Invalid file type. Only JPEG, PNG, and WebP are allowed.",
        user_action="Upload a JPG, PNG or WebP image",
        details={"content_type": content_type}
    )


def image_too_large_error(size_bytes: int, max_bytes: int) -> AppException:
    """图片过大错误"""
    max_mb = max_bytes / (1024 * 1024)
    return AppException(
        status_code=status.HTTP_400_BAD_REQUEST,
        error_code=ErrorCode.IMAGE_TOO_LARGE,
        message=f"File too large. Maximum size is {max_mb:g}MB",
        user_action=f"Upload an image smaller than {max_mb:g}MB",
        details={"size": size_bytes, "max_size": max_bytes}
    )


def not_found_error(
    message: str = "Not found",
    error_code: ErrorCode = ErrorCode.NOT_FOUND,
    details: Optional[dict] = None,
) -> AppException:
    """资源不存在（或不属于当前用户）"""
    return AppException(
        status_code=status.HTTP_404_NOT_FOUND,
        error_code=error_code,
        message=message,
        user_action="Refresh the page and try again",
        details=details
    )


def image_not_found_error(image_id: int) -> AppException:
    return not_found_error("Image not found", ErrorCode.IMAGE_NOT_FOUND, {"image_id": image_id})


def unauthorized_error(message: str = "Could not validate credentials") -> AppException:
    return AppException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        error_code=ErrorCode.UNAUTHORIZED,
        message=message,
        headers={"WWW-Authenticate": "Bearer"},
    )


def service_not_configured_error(service: str, message: str) -> AppException:
    """依赖服务未配置"""
    return AppException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        error_code=ErrorCode.SERVICE_NOT_CONFIGURED,
        message=message,
        user_action="Contact the administrator to configure the service",
        details={"service": service}
    )


def upstream_error(message: str, error_code: ErrorCode = ErrorCode.UPSTREAM_ERROR) -> AppException:
    """第三方服务调用失败"""
    return AppException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code=error_code,
        message=message,
        user_action="Try again later",
    )


def webhook_signature_error(detail: str = "Webhook signature verification failed") -> AppException:
    return AppException(
        status_code=status.HTTP_400_BAD_REQUEST,
        error_code=ErrorCode.WEBHOOK_SIGNATURE_INVALID,
        message=detail,
    )


def validation_error_error(message: str, details: Optional[dict] = None) -> AppException:
    """验证错误"""
    return AppException(
        status_code=status.HTTP_400_BAD_REQUEST,
        error_code=ErrorCode.VALIDATION_ERROR,
        message=message,
        user_action="Check your input and try again",
        details=details
    )


def internal_error_error(detail: str = "Internal server error") -> AppException:
    """内部错误"""
    return AppException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        error_code=ErrorCode.INTERNAL_ERROR,
        message=detail,
        user_action="If the problem persists, contact the administrator",
    )
