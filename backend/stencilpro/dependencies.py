"""
外部服务依赖
由配置构造服务实例，测试中通过 app.dependency_overrides 替换
"""
from functools import lru_cache
from typing import Optional

from stencilpro.config import get_settings
from stencilpro.services.llm import LLMClient
from stencilpro.services.payments import PaymentGateway
from stencilpro.services.stencil_gen import StencilGenerator


@lru_cache()
def get_llm_client() -> LLMClient:
    return LLMClient.from_settings(get_settings())


@lru_cache()
def get_stencil_generator() -> StencilGenerator:
    return StencilGenerator.from_settings(get_settings())


@lru_cache()
def get_payment_gateway() -> Optional[PaymentGateway]:
    return PaymentGateway.from_settings(get_settings())
