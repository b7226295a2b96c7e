"""
线稿生成路由
参考图分析、线稿生成、生成历史与积分查询
"""
import logging
from typing import List

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from stencilpro import storage
from stencilpro.auth import get_current_user
from stencilpro.config import get_settings
from stencilpro.database import get_db
from stencilpro.dependencies import get_llm_client, get_stencil_generator
from stencilpro.errors import (
    ErrorCode,
    credits_insufficient_error,
    image_not_found_error,
    service_not_configured_error,
    upstream_error,
)
from stencilpro.models import User
from stencilpro.schemas import (
    AnalyzeImageRequest,
    AnalyzeImageResponse,
    CreditResponse,
    EditResponse,
    GenerateRequest,
    GenerateResponse,
)
from stencilpro.services import ledger
from stencilpro.services.ledger import InsufficientCreditsError
from stencilpro.services.llm import LLMClient, LLMServiceError
from stencilpro.services.stencil_gen import StencilGenerationError, StencilGenerator
from stencilpro.services.upload import read_image_base64

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["generation"])

settings = get_settings()


@router.post("/analyze-image", response_model=AnalyzeImageResponse)
async def analyze_image(
    body: AnalyzeImageRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    llm: LLMClient = Depends(get_llm_client),
):
    """分析参考图并给出纹身设计建议"""
    if not llm.configured:
        raise service_not_configured_error(
            "openai", "Image analysis requires OpenAI API key configuration"
        )

    image = storage.get_user_image(db, current_user.id, body.image_id)
    if not image:
        raise image_not_found_error(body.image_id)

    try:
        image_base64 = await read_image_base64(image.url, settings.UPLOAD_DIR)
        mime_type = (image.meta or {}).get("mimetype") or "image/jpeg"
        analysis = await llm.analyze_image(image_base64, body.prompt, mime_type=mime_type)
    except (OSError, LLMServiceError) as e:
        logger.error(f"Image analysis error: {e}", exc_info=True)
        raise upstream_error("Failed to analyze image")

    return AnalyzeImageResponse(analysis=analysis)


@router.post("/generate", response_model=GenerateResponse)
async def generate_stencil(
    request: Request,
    body: GenerateRequest,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    llm: LLMClient = Depends(get_llm_client),
    generator: StencilGenerator = Depends(get_stencil_generator),
):
    """
    生成纹身线稿

    - 余额不足时返回 402，不调用任何外部服务
    - 生成成功后扣除积分并写入生成记录（同一事务）
    """
    cost = settings.GENERATION_CREDIT_COST
    user_id = current_user.id

    try:
        ledger.ensure_balance(current_user, cost)
    except InsufficientCreditsError as e:
        raise credits_insufficient_error(e.required, e.available)

    reference_image_url = None
    if body.image_id is not None:
        image = storage.get_user_image(db, user_id, body.image_id)
        if not image:
            raise image_not_found_error(body.image_id)
        reference_image_url = str(request.base_url).rstrip("/") + image.url

    enhanced_prompt = body.prompt
    if llm.configured:
        try:
            enhanced_prompt = await llm.enhance_prompt(body.prompt)
        except LLMServiceError as e:
            logger.warning(f"Prompt enhancement failed, using original prompt: {e}")

    try:
        result_url = await generator.generate(
            enhanced_prompt,
            reference_image_url=reference_image_url,
            settings=body.settings.model_dump(),
        )
    except StencilGenerationError as e:
        logger.error(f"Generation error for user {user_id}: {e} ({e.code})", exc_info=True)
        raise upstream_error("Failed to generate image", ErrorCode.GENERATION_FAILED)

    try:
        edit, remaining = ledger.debit_and_record(
            db,
            user_id=user_id,
            cost=cost,
            result_url=result_url,
            prompt=body.prompt,
            ai_prompt=enhanced_prompt,
            settings=body.settings.model_dump(by_alias=True),
            base_image_id=body.image_id,
        )
    except InsufficientCreditsError as e:
        raise credits_insufficient_error(e.required, e.available)

    return GenerateResponse(
        id=edit.id,
        url=result_url,
        prompt=enhanced_prompt,
        credits_used=cost,
        credits_remaining=remaining,
    )


@router.get("/generations", response_model=List[EditResponse])
def list_generations(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """当前用户的生成记录，按时间降序"""
    return storage.list_user_edits(db, current_user.id)


@router.get("/predictions/{prediction_id}")
async def get_prediction_status(
    prediction_id: str,
    current_user: User = Depends(get_current_user),
    generator: StencilGenerator = Depends(get_stencil_generator),
):
    """查询 Replicate 预测状态"""
    try:
        return await generator.get_prediction(prediction_id)
    except StencilGenerationError as e:
        logger.error(f"Error checking prediction {prediction_id}: {e}")
        raise upstream_error("Failed to check generation status")


@router.get("/credits", response_model=CreditResponse)
def get_credits(current_user: User = Depends(get_current_user)):
    """获取用户积分"""
    return {"credits": current_user.credits}
