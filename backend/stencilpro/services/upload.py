"""
图片上传服务
校验上传文件、写入磁盘并探测尺寸
"""
import base64
import io
import logging
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Tuple

import aiofiles
from fastapi import UploadFile
from PIL import Image as PILImage, UnidentifiedImageError

logger = logging.getLogger(__name__)

# 无法探测尺寸时使用的占位尺寸
PLACEHOLDER_DIMENSIONS = (1024, 768)

CHUNK_SIZE = 1024 * 1024

_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/png": ".png",
    "image/webp": ".webp",
}


class UploadError(Exception):
    """上传错误基类"""

    def __init__(self, message: str, code: str = "UPLOAD_FAILED"):
        self.message = message
        self.code = code
        super().__init__(self.message)


class InvalidImageTypeError(UploadError):
    def __init__(self, content_type: str):
        super().__init__(f"Invalid file type: {content_type}", code="INVALID_IMAGE_FORMAT")
        self.content_type = content_type


class ImageTooLargeError(UploadError):
    def __init__(self, size: int, max_size: int):
        super().__init__(f"File too large: {size} bytes (max {max_size} bytes)", code="IMAGE_TOO_LARGE")
        self.size = size
        self.max_size = max_size


@dataclass
class SavedFile:
    """已保存的上传文件"""
    url: str
    filename: str
    size: int
    width: int
    height: int
    mimetype: str
    original_name: Optional[str]


def build_filename(content_type: str) -> str:
    """生成唯一文件名，扩展名只由校验过的 MIME 类型决定"""
    ext = _EXTENSIONS.get(content_type, ".jpg")
    return f"{uuid.uuid4().hex}{ext}"


def probe_dimensions(data: bytes) -> Tuple[int, int]:
    """
    探测图片像素尺寸

    Pillow 无法识别时返回占位尺寸
    """
    try:
        with PILImage.open(io.BytesIO(data)) as img:
            return img.size
    except (UnidentifiedImageError, OSError) as e:
        logger.warning(f"Could not probe image dimensions, using placeholder: {e}")
        return PLACEHOLDER_DIMENSIONS


async def read_limited(file: UploadFile, max_bytes: int) -> bytes:
    """分块读取上传内容，超过上限立即中止"""
    buffer = bytearray()
    while True:
        chunk = await file.read(CHUNK_SIZE)
        if not chunk:
            break
        buffer.extend(chunk)
        if len(buffer) > max_bytes:
            raise ImageTooLargeError(len(buffer), max_bytes)
    return bytes(buffer)


async def save_uploaded_file(
    file: UploadFile,
    upload_dir: str,
    allowed_types: Iterable[str],
    max_bytes: int,
) -> SavedFile:
    """
    校验并保存上传的图片

    Args:
        file: 上传文件
        upload_dir: 保存目录
        allowed_types: 允许的 MIME 类型
        max_bytes: 最大字节数

    Returns:
        SavedFile: 文件 URL、文件名、大小和尺寸

    Raises:
        InvalidImageTypeError: 类型不允许
        ImageTooLargeError: 超过大小上限
    """
    content_type = file.content_type or ""
    if content_type not in set(allowed_types):
        raise InvalidImageTypeError(content_type)

    content = await read_limited(file, max_bytes)

    filename = build_filename(content_type)
    Path(upload_dir).mkdir(parents=True, exist_ok=True)
    file_path = os.path.join(upload_dir, filename)

    async with aiofiles.open(file_path, "wb") as f:
        await f.write(content)

    width, height = probe_dimensions(content)
    logger.info(f"Saved upload {filename} ({len(content)} bytes, {width}x{height})")

    return SavedFile(
        url=f"/uploads/{filename}",
        filename=filename,
        size=len(content),
        width=width,
        height=height,
        mimetype=content_type,
        original_name=file.filename,
    )


def local_path_for(url: str, upload_dir: str) -> str:
    """由 /uploads/<filename> 形式的 URL 得到磁盘路径"""
    return os.path.join(upload_dir, os.path.basename(url))


async def read_image_base64(url: str, upload_dir: str) -> str:
    """读取已上传图片并转为 Base64"""
    async with aiofiles.open(local_path_for(url, upload_dir), "rb") as f:
        data = await f.read()
    return base64.b64encode(data).decode("utf-8")


def remove_file(url: str, upload_dir: str) -> bool:
    """删除已上传的文件，失败只记录警告"""
    path = local_path_for(url, upload_dir)
    try:
        os.remove(path)
        return True
    except OSError as e:
        logger.warning(f"Could not remove uploaded file {path}: {e}")
        return False
