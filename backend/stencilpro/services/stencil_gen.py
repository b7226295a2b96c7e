"""
纹身线稿生成服务
调用 Replicate 预测接口生成线稿，支持参考图、超时和重试
"""
import asyncio
import logging
import time
from typing import Any, Dict, Optional

import httpx

from stencilpro.config import Settings
from stencilpro.services.prompt_template import get_prompt_manager

logger = logging.getLogger(__name__)

# 参考图对结果的影响强度
REFERENCE_PROMPT_STRENGTH = 0.7

DEFAULT_SETTINGS = {
    "style": "traditional",
    "line_weight": "medium",
    "guidance_scale": 7.5,
    "steps": 30,
    "aspect_ratio": "4:3",
}

TERMINAL_STATUSES = {"succeeded", "failed", "canceled"}


class StencilGenerationError(Exception):
    """线稿生成错误基类"""

    def __init__(self, message: str, code: str = "GENERATION_ERROR", details: Optional[Dict] = None,
                 retryable: bool = False):
        self.message = message
        self.code = code
        self.details = details or {}
        self.retryable = retryable
        super().__init__(self.message)


class APIKeyError(StencilGenerationError):
    """API密钥错误"""


class TimeoutExceededError(StencilGenerationError):
    """超时错误"""


def build_generation_input(
    prompt: str,
    reference_image_url: Optional[str] = None,
    settings: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """
    构造预测请求的 input

    Args:
        prompt: 用户（或优化后的）描述
        reference_image_url: 参考图的公网 URL
        settings: 生成参数，缺省项使用默认值

    Returns:
        Dict: Replicate 模型输入
    """
    merged = {**DEFAULT_SETTINGS, **{k: v for k, v in (settings or {}).items() if v is not None}}

    stencil_prompt = get_prompt_manager().build_stencil_prompt(
        prompt,
        style=merged["style"],
        line_weight=merged["line_weight"],
    )

    payload: Dict[str, Any] = {
        "prompt": stencil_prompt,
        "guidance_scale": merged["guidance_scale"],
        "num_inference_steps": merged["steps"],
        "aspect_ratio": merged["aspect_ratio"],
        "output_format": "png",
        "output_quality": 90,
    }
    if reference_image_url:
        payload["image"] = reference_image_url
        payload["prompt_strength"] = REFERENCE_PROMPT_STRENGTH
    return payload


def extract_output_url(output: Any) -> str:
    """从模型输出中取结果 URL，列表取第一项"""
    if isinstance(output, list) and output and isinstance(output[0], str):
        return output[0]
    if isinstance(output, str) and output:
        return output
    raise StencilGenerationError(
        "Unexpected output format from Replicate",
        code="UNEXPECTED_OUTPUT",
        details={"output_type": type(output).__name__},
    )


class StencilGenerator:
    """Replicate 线稿生成客户端"""

    def __init__(
        self,
        api_token: str,
        model: str = "black-forest-labs/flux-kontext-pro",
        api_base: str = "https://api.replicate.com/v1",
        timeout_seconds: int = 180,
        max_retries: int = 2,
        poll_interval: float = 1.5,
        retry_backoff: float = 5.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_token = api_token
        self.model = model
        self.api_base = api_base.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.max_retries = max_retries
        self.poll_interval = poll_interval
        self.retry_backoff = retry_backoff
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: Settings) -> "StencilGenerator":
        return cls(
            api_token=settings.REPLICATE_API_TOKEN,
            model=settings.REPLICATE_MODEL,
            api_base=settings.REPLICATE_API_BASE,
            timeout_seconds=settings.GENERATION_TIMEOUT_SECONDS,
            max_retries=settings.GENERATION_MAX_RETRIES,
            poll_interval=settings.GENERATION_POLL_INTERVAL,
        )

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            base_url=self.api_base,
            headers={
                "Authorization": f"Bearer {self.api_token}",
                "Content-Type": "application/json",
            },
            timeout=httpx.Timeout(self.timeout_seconds, connect=10.0),
            transport=self._transport,
        )

    async def generate(
        self,
        prompt: str,
        reference_image_url: Optional[str] = None,
        settings: Optional[Dict[str, Any]] = None,
    ) -> str:
        """
        生成线稿并返回结果图片 URL

        只在预测创建之前的失败（连接错误、429、5xx）重新提交；
        预测创建后只轮询同一个预测，超时则取消

        Raises:
            APIKeyError: 未配置或无效的 token
            TimeoutExceededError: 预测未在限定时间内完成
            StencilGenerationError: 其他生成错误
        """
        if not self.api_token:
            raise APIKeyError("REPLICATE_API_TOKEN is not configured", code="MISSING_API_KEY")

        payload = build_generation_input(prompt, reference_image_url, settings)
        start_time = time.monotonic()

        async with self._client() as client:
            prediction = await self._create_prediction(client, payload)
            prediction = await self._wait_for_completion(client, prediction, start_time)

        url = extract_output_url(prediction.get("output"))
        logger.info(f"Stencil generated in {time.monotonic() - start_time:.2f}s: {url}")
        return url

    async def _create_prediction(self, client: httpx.AsyncClient, payload: Dict[str, Any]) -> Dict[str, Any]:
        """提交预测，请求发出后的超时不再重新提交"""
        last_error: Optional[StencilGenerationError] = None

        for attempt in range(self.max_retries + 1):
            logger.info(f"Creating prediction, attempt {attempt + 1}/{self.max_retries + 1} with {self.model}")
            try:
                response = await client.post(
                    f"/models/{self.model}/predictions",
                    json={"input": payload},
                    headers={"Prefer": "wait"},
                )
                return self._parse_response(response)
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                last_error = StencilGenerationError(f"Network error: {e}", code="NETWORK_ERROR", retryable=True)
            except httpx.TimeoutException as e:
                # 请求已发出，预测可能已经创建
                raise TimeoutExceededError(f"Request timeout: {e}", code="REQUEST_TIMEOUT")
            except httpx.TransportError as e:
                raise StencilGenerationError(f"Network error: {e}", code="NETWORK_ERROR")
            except StencilGenerationError as e:
                if not e.retryable:
                    raise
                last_error = e

            if attempt < self.max_retries:
                wait_time = (attempt + 1) * self.retry_backoff
                logger.warning(f"Retryable error, waiting {wait_time}s before retry: {last_error}")
                await asyncio.sleep(wait_time)

        raise StencilGenerationError(
            f"Image generation failed after {self.max_retries + 1} attempts: {last_error}",
            code="MAX_RETRIES_EXCEEDED",
            details={"last_error": str(last_error)},
        )

    def _parse_response(self, response: httpx.Response) -> Dict[str, Any]:
        if response.status_code in (401, 403):
            raise APIKeyError("Replicate API token is invalid", code="API_KEY_INVALID")
        if response.status_code == 429 or response.status_code >= 500:
            raise StencilGenerationError(
                f"Replicate API error: HTTP {response.status_code}",
                code="RATE_LIMIT" if response.status_code == 429 else "API_ERROR",
                details={"status_code": response.status_code},
                retryable=True,
            )
        if response.status_code >= 400:
            raise StencilGenerationError(
                f"Replicate API error: HTTP {response.status_code}: {response.text[:200]}",
                code="API_ERROR",
                details={"status_code": response.status_code},
            )
        try:
            data = response.json()
        except ValueError:
            raise StencilGenerationError("Malformed response from Replicate", code="MALFORMED_RESPONSE")
        if not isinstance(data, dict):
            raise StencilGenerationError("Malformed response from Replicate", code="MALFORMED_RESPONSE")
        return data

    async def _wait_for_completion(self, client: httpx.AsyncClient, prediction: Dict[str, Any],
                                   start_time: float) -> Dict[str, Any]:
        """
        轮询同一个预测直到结束

        轮询中的网络错误、429 和 5xx 只记录警告并继续轮询，超时后取消预测
        """
        while prediction.get("status") not in TERMINAL_STATUSES:
            if time.monotonic() - start_time >= self.timeout_seconds:
                await self._cancel_prediction(client, prediction)
                raise TimeoutExceededError(
                    f"Prediction did not finish within {self.timeout_seconds}s",
                    code="PREDICTION_TIMEOUT",
                    details={"prediction_id": prediction.get("id")},
                )
            poll_url = (prediction.get("urls") or {}).get("get")
            if not poll_url:
                raise StencilGenerationError("Prediction response has no status URL", code="MALFORMED_RESPONSE")
            await asyncio.sleep(self.poll_interval)
            try:
                prediction = self._parse_response(await client.get(poll_url))
            except httpx.TransportError as e:
                logger.warning(f"Polling prediction {prediction.get('id')} failed, polling again: {e}")
            except StencilGenerationError as e:
                if not e.retryable:
                    raise
                logger.warning(f"Polling prediction {prediction.get('id')} failed, polling again: {e}")

        status = prediction["status"]
        if status != "succeeded":
            raise StencilGenerationError(
                f"Prediction {status}: {prediction.get('error') or 'unknown error'}",
                code=f"PREDICTION_{status.upper()}",
                details={"prediction_id": prediction.get("id")},
            )
        return prediction

    async def _cancel_prediction(self, client: httpx.AsyncClient, prediction: Dict[str, Any]) -> None:
        """取消仍在运行的预测，失败只记录警告"""
        prediction_id = prediction.get("id")
        cancel_url = (prediction.get("urls") or {}).get("cancel")
        if not cancel_url and prediction_id:
            cancel_url = f"/predictions/{prediction_id}/cancel"
        if not cancel_url:
            return
        try:
            response = await client.post(cancel_url)
        except httpx.HTTPError as e:
            logger.warning(f"Could not cancel prediction {prediction_id}: {e}")
            return
        if response.status_code >= 400:
            logger.warning(f"Could not cancel prediction {prediction_id}: HTTP {response.status_code}")
        else:
            logger.info(f"Cancelled prediction {prediction_id} after timeout")

    async def get_prediction(self, prediction_id: str) -> Dict[str, Any]:
        """查询预测状态"""
        async with self._client() as client:
            prediction = self._parse_response(await client.get(f"/predictions/{prediction_id}"))
        return {
            "status": prediction.get("status"),
            "output": prediction.get("output"),
            "error": prediction.get("error"),
        }
