"""
Replicate 线稿生成客户端测试
使用 httpx.MockTransport 模拟预测接口
"""
import asyncio
import json

import httpx
import pytest

from stencilpro.config import Settings
from stencilpro.services.stencil_gen import (
    DEFAULT_SETTINGS,
    REFERENCE_PROMPT_STRENGTH,
    APIKeyError,
    StencilGenerationError,
    StencilGenerator,
    TimeoutExceededError,
    build_generation_input,
    extract_output_url,
)

OUTPUT_URL = "https://replicate.delivery/pbxt/result.png"
PREDICTIONS_PATH = "/v1/models/black-forest-labs/flux-kontext-pro/predictions"


def make_generator(handler, **kwargs) -> StencilGenerator:
    options = {"max_retries": 2, "poll_interval": 0, "retry_backoff": 0}
    options.update(kwargs)
    return StencilGenerator(api_token="r8_test", transport=httpx.MockTransport(handler), **options)


def prediction(status="succeeded", output=None, prediction_id="p1", error=None) -> dict:
    return {
        "id": prediction_id,
        "status": status,
        "output": output,
        "error": error,
        "urls": {
            "get": f"https://api.replicate.com/v1/predictions/{prediction_id}",
            "cancel": f"https://api.replicate.com/v1/predictions/{prediction_id}/cancel",
        },
    }


class TestBuildGenerationInput:
    """请求参数构造"""

    def test_defaults(self):
        payload = build_generation_input("dragon sleeve")
        assert payload["guidance_scale"] == 7.5
        assert payload["num_inference_steps"] == 30
        assert payload["aspect_ratio"] == "4:3"
        assert payload["output_format"] == "png"
        assert payload["output_quality"] == 90
        assert "image" not in payload
        assert "prompt_strength" not in payload

    def test_prompt_composition(self):
        payload = build_generation_input("koi fish", settings={"style": "geometric", "line_weight": "fine"})
        prompt = payload["prompt"]
        assert prompt.startswith("Professional tattoo stencil design, koi fish")
        assert "geometric tattoo style" in prompt
        assert "fine line weight" in prompt
        assert "black and white line art" in prompt

    def test_reference_image(self):
        payload = build_generation_input("koi fish", reference_image_url="https://example.com/ref.png")
        assert payload["image"] == "https://example.com/ref.png"
        assert payload["prompt_strength"] == REFERENCE_PROMPT_STRENGTH

    def test_none_settings_use_defaults(self):
        payload = build_generation_input("rose", settings={"steps": None, "guidance_scale": 12})
        assert payload["num_inference_steps"] == DEFAULT_SETTINGS["steps"]
        assert payload["guidance_scale"] == 12


class TestExtractOutputUrl:

    def test_list_output(self):
        assert extract_output_url([OUTPUT_URL, "https://other"]) == OUTPUT_URL

    def test_string_output(self):
        assert extract_output_url(OUTPUT_URL) == OUTPUT_URL

    @pytest.mark.parametrize("output", [None, [], {"url": OUTPUT_URL}, 42])
    def test_unexpected_output(self, output):
        with pytest.raises(StencilGenerationError) as exc_info:
            extract_output_url(output)
        assert exc_info.value.code == "UNEXPECTED_OUTPUT"


class TestStencilGenerator:
    """生成流程"""

    def test_generate_sync_response(self):
        requests = []

        def handler(request: httpx.Request) -> httpx.Response:
            requests.append(request)
            return httpx.Response(201, json=prediction(output=[OUTPUT_URL]))

        generator = make_generator(handler)
        url = asyncio.run(generator.generate("dragon sleeve", settings={"style": "blackwork"}))

        assert url == OUTPUT_URL
        assert len(requests) == 1
        request = requests[0]
        assert request.method == "POST"
        assert request.url.path == PREDICTIONS_PATH
        assert request.headers["Authorization"] == "Bearer r8_test"
        assert request.headers["Prefer"] == "wait"
        body = json.loads(request.content)
        assert "blackwork tattoo style" in body["input"]["prompt"]

    def test_generate_polls_until_done(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append((request.method, request.url.path))
            if request.method == "POST":
                return httpx.Response(201, json=prediction(status="starting"))
            if len(calls) < 3:
                return httpx.Response(200, json=prediction(status="processing"))
            return httpx.Response(200, json=prediction(output=OUTPUT_URL))

        url = asyncio.run(make_generator(handler).generate("rose"))
        assert url == OUTPUT_URL
        assert calls == [
            ("POST", PREDICTIONS_PATH),
            ("GET", "/v1/predictions/p1"),
            ("GET", "/v1/predictions/p1"),
        ]

    def test_retry_on_server_error(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) == 1:
                return httpx.Response(503, json={"detail": "unavailable"})
            return httpx.Response(201, json=prediction(output=[OUTPUT_URL]))

        assert asyncio.run(make_generator(handler).generate("rose")) == OUTPUT_URL
        assert len(attempts) == 2

    def test_retries_exhausted(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(429, json={"detail": "throttled"})

        with pytest.raises(StencilGenerationError) as exc_info:
            asyncio.run(make_generator(handler, max_retries=2).generate("rose"))
        assert exc_info.value.code == "MAX_RETRIES_EXCEEDED"
        assert len(attempts) == 3

    def test_retry_on_connect_error(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            if len(attempts) == 1:
                raise httpx.ConnectError("connection refused", request=request)
            return httpx.Response(201, json=prediction(output=[OUTPUT_URL]))

        assert asyncio.run(make_generator(handler).generate("rose")) == OUTPUT_URL
        assert len(attempts) == 2

    def test_read_timeout_not_resubmitted(self):
        """请求已发出后超时，不重新提交预测"""
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            raise httpx.ReadTimeout("timed out", request=request)

        with pytest.raises(TimeoutExceededError) as exc_info:
            asyncio.run(make_generator(handler).generate("rose"))
        assert exc_info.value.code == "REQUEST_TIMEOUT"
        assert not exc_info.value.retryable
        assert len(attempts) == 1

    def test_prediction_timeout_single_submission(self):
        """预测一直处理中：只提交一次，超时后取消"""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append((request.method, request.url.path))
            if request.url.path == PREDICTIONS_PATH:
                return httpx.Response(201, json=prediction(status="starting"))
            if request.url.path.endswith("/cancel"):
                return httpx.Response(200, json=prediction(status="canceled"))
            return httpx.Response(200, json=prediction(status="processing"))

        generator = make_generator(handler, timeout_seconds=0, max_retries=2)
        with pytest.raises(TimeoutExceededError) as exc_info:
            asyncio.run(generator.generate("rose"))

        assert exc_info.value.code == "PREDICTION_TIMEOUT"
        assert not exc_info.value.retryable
        assert exc_info.value.details == {"prediction_id": "p1"}
        assert calls.count(("POST", PREDICTIONS_PATH)) == 1
        assert ("POST", "/v1/predictions/p1/cancel") in calls

    def test_prediction_timeout_cancel_failure(self):
        """取消失败不影响超时错误"""
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == PREDICTIONS_PATH:
                return httpx.Response(201, json=prediction(status="processing"))
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TimeoutExceededError) as exc_info:
            asyncio.run(make_generator(handler, timeout_seconds=0).generate("rose"))
        assert exc_info.value.code == "PREDICTION_TIMEOUT"

    def test_poll_error_repolls_same_prediction(self):
        """轮询遇到 5xx 继续轮询同一个预测"""
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append((request.method, request.url.path))
            if request.method == "POST":
                return httpx.Response(201, json=prediction(status="starting"))
            if len(calls) == 2:
                return httpx.Response(503, json={"detail": "unavailable"})
            return httpx.Response(200, json=prediction(output=[OUTPUT_URL]))

        assert asyncio.run(make_generator(handler).generate("rose")) == OUTPUT_URL
        assert calls == [
            ("POST", PREDICTIONS_PATH),
            ("GET", "/v1/predictions/p1"),
            ("GET", "/v1/predictions/p1"),
        ]

    def test_invalid_token_not_retried(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(401, json={"detail": "Unauthenticated"})

        with pytest.raises(APIKeyError):
            asyncio.run(make_generator(handler).generate("rose"))
        assert len(attempts) == 1

    def test_client_error_not_retried(self):
        attempts = []

        def handler(request: httpx.Request) -> httpx.Response:
            attempts.append(request)
            return httpx.Response(422, json={"detail": "invalid input"})

        with pytest.raises(StencilGenerationError) as exc_info:
            asyncio.run(make_generator(handler).generate("rose"))
        assert exc_info.value.code == "API_ERROR"
        assert not exc_info.value.retryable
        assert len(attempts) == 1

    def test_failed_prediction(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(201, json=prediction(status="failed", error="NSFW content detected"))

        with pytest.raises(StencilGenerationError) as exc_info:
            asyncio.run(make_generator(handler).generate("rose"))
        assert exc_info.value.code == "PREDICTION_FAILED"
        assert "NSFW" in exc_info.value.message

    def test_malformed_response(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(201, content=b"<html>oops</html>")

        with pytest.raises(StencilGenerationError) as exc_info:
            asyncio.run(make_generator(handler).generate("rose"))
        assert exc_info.value.code == "MALFORMED_RESPONSE"

    def test_missing_token(self):
        generator = StencilGenerator(api_token="")
        with pytest.raises(APIKeyError) as exc_info:
            asyncio.run(generator.generate("rose"))
        assert exc_info.value.code == "MISSING_API_KEY"

    def test_get_prediction(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/predictions/abc"
            return httpx.Response(200, json=prediction(status="processing", prediction_id="abc"))

        status = asyncio.run(make_generator(handler).get_prediction("abc"))
        assert status == {"status": "processing", "output": None, "error": None}

    def test_from_settings(self):
        generator = StencilGenerator.from_settings(
            Settings(REPLICATE_API_TOKEN="r8_abc", GENERATION_MAX_RETRIES=4, GENERATION_TIMEOUT_SECONDS=60)
        )
        assert generator.api_token == "r8_abc"
        assert generator.max_retries == 4
        assert generator.timeout_seconds == 60
        assert generator.model == "black-forest-labs/flux-kontext-pro"
