"""
图片上传与管理路由
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, File, UploadFile
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from stencilpro import storage
from stencilpro.auth import get_current_user
from stencilpro.config import get_settings
from stencilpro.database import get_db
from stencilpro.errors import (
    ErrorCode,
    image_not_found_error,
    image_too_large_error,
    invalid_image_format_error,
    upstream_error,
)
from stencilpro.models import User
from stencilpro.schemas import APIResponse, EditResponse, ImageResponse, UploadResponse
from stencilpro.services.upload import (
    ImageTooLargeError,
    InvalidImageTypeError,
    remove_file,
    save_uploaded_file,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["images"])

settings = get_settings()


@router.post("/upload", response_model=UploadResponse)
async def upload_image(
    image: UploadFile = File(...),
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    上传参考图

    - 支持 JPEG、PNG、WebP
    - 最大 10MB
    """
    try:
        saved = await save_uploaded_file(
            image,
            upload_dir=settings.UPLOAD_DIR,
            allowed_types=settings.ALLOWED_IMAGE_TYPES,
            max_bytes=settings.MAX_UPLOAD_BYTES,
        )
    except InvalidImageTypeError as e:
        raise invalid_image_format_error(e.content_type)
    except ImageTooLargeError as e:
        raise image_too_large_error(e.size, e.max_size)
    except OSError as e:
        logger.error(f"Failed to save upload: {e}", exc_info=True)
        raise upstream_error("Failed to upload image", ErrorCode.UPLOAD_FAILED)

    try:
        record = storage.create_image(
            db,
            owner_id=current_user.id,
            url=saved.url,
            filename=saved.filename,
            size=saved.size,
            width=saved.width,
            height=saved.height,
            meta={"mimetype": saved.mimetype, "originalName": saved.original_name},
        )
    except SQLAlchemyError as e:
        db.rollback()
        remove_file(saved.url, settings.UPLOAD_DIR)
        logger.error(f"Failed to record upload {saved.filename}: {e}", exc_info=True)
        raise upstream_error("Failed to upload image", ErrorCode.UPLOAD_FAILED)

    logger.info(f"Image {record.id} uploaded by user {current_user.id}")
    return record


@router.get("/images", response_model=List[ImageResponse])
def list_images(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """当前用户的图片，按上传时间降序"""
    return storage.list_user_images(db, current_user.id)


@router.get("/images/{image_id}", response_model=ImageResponse)
def get_image(
    image_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    image = storage.get_user_image(db, current_user.id, image_id)
    if not image:
        raise image_not_found_error(image_id)
    return image


@router.get("/images/{image_id}/generations", response_model=List[EditResponse])
def list_image_generations(
    image_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    if not storage.get_user_image(db, current_user.id, image_id):
        raise image_not_found_error(image_id)
    return storage.list_image_edits(db, image_id)


@router.delete("/images/{image_id}", response_model=APIResponse)
def delete_image(
    image_id: int,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    删除图片

    - 关联的对话记录一并删除
    - 基于该图片的生成记录保留
    """
    image = storage.get_user_image(db, current_user.id, image_id)
    if not image:
        raise image_not_found_error(image_id)

    url = image.url
    storage.delete_image(db, image)
    remove_file(url, settings.UPLOAD_DIR)
    logger.info(f"Image {image_id} deleted by user {current_user.id}")
    return APIResponse(success=True, message="Image deleted successfully")
