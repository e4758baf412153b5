# tests/test_completion_client.py
"""
Test suite for the Completion Client

Uses httpx.MockTransport, so no request leaves the process.
"""

import json

import httpx
import pytest

from aios.integrations.completion_client import (
    ANTHROPIC_VERSION,
    CompletionClient,
    CompletionClientError,
    CompletionConfig,
)


def _config(**overrides) -> CompletionConfig:
    values = {
        "api_url": "https://completion.test/v1/messages",
        "api_key": "test-key",
        "model": "test-model",
        "max_tokens": 256,
        "timeout": 5,
    }
    values.update(overrides)
    return CompletionConfig(**values)


def _text_response(text: str) -> httpx.Response:
    return httpx.Response(200, json={
        "content": [{"type": "text", "text": text}],
        "stop_reason": "end_turn",
        "usage": {"input_tokens": 12, "output_tokens": 3},
    })


def _client(handler, **config) -> CompletionClient:
    return CompletionClient(_config(**config), transport=httpx.MockTransport(handler))


# =============================================================================
# Test: complete
# =============================================================================

class TestComplete:

    @pytest.mark.asyncio
    async def test_request_shape_and_text(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return _text_response("Plan ready")

        async with _client(handler) as client:
            text = await client.complete("Design the schema", "You are ARCHITECTON")

        assert text == "Plan ready"
        assert seen["url"] == "https://completion.test/v1/messages"
        assert seen["headers"]["x-api-key"] == "test-key"
        assert seen["headers"]["anthropic-version"] == ANTHROPIC_VERSION
        assert seen["body"] == {
            "model": "test-model",
            "max_tokens": 256,
            "messages": [{"role": "user", "content": "Design the schema"}],
            "system": "You are ARCHITECTON",
        }

    @pytest.mark.asyncio
    async def test_system_prompt_optional(self):
        bodies = []

        def handler(request):
            bodies.append(json.loads(request.content))
            return _text_response("ok")

        async with _client(handler) as client:
            await client.complete("ping")

        assert "system" not in bodies[0]

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        calls = []

        def handler(request):
            calls.append(request)
            return _text_response("unreachable")

        client = _client(handler, api_key=None)
        with pytest.raises(CompletionClientError) as exc_info:
            await client.complete("ping")

        assert exc_info.value.error_code == "MISSING_API_KEY"
        assert calls == []

    @pytest.mark.asyncio
    async def test_http_error(self):
        client = _client(lambda request: httpx.Response(529, text="overloaded"))

        with pytest.raises(CompletionClientError) as exc_info:
            await client.complete("ping")
        await client.close()

        error = exc_info.value
        assert error.error_code == "HTTP_529"
        assert "overloaded" in error.message
        assert error.to_dict()["model"] == "test-model"

    @pytest.mark.asyncio
    async def test_timeout(self):
        def handler(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        client = _client(handler)
        with pytest.raises(CompletionClientError) as exc_info:
            await client.complete("ping")
        await client.close()

        assert exc_info.value.error_code == "TIMEOUT"
        assert isinstance(exc_info.value.original_error, httpx.TimeoutException)

    @pytest.mark.asyncio
    async def test_transport_failure(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        with pytest.raises(CompletionClientError) as exc_info:
            await client.complete("ping")
        await client.close()

        assert exc_info.value.error_code == "REQUEST_FAILED"

    @pytest.mark.asyncio
    @pytest.mark.parametrize("response", [
        httpx.Response(200, text="<html>not json</html>"),
        httpx.Response(200, json={"content": []}),
        httpx.Response(200, json={"content": [{"type": "tool_use", "name": "x"}]}),
    ])
    async def test_invalid_response(self, response):
        client = _client(lambda request: response)

        with pytest.raises(CompletionClientError) as exc_info:
            await client.complete("ping")
        await client.close()

        assert exc_info.value.error_code == "INVALID_RESPONSE"


# =============================================================================
# Test: Configuration / lifecycle
# =============================================================================

class TestConfig:

    def test_from_settings(self, settings):
        settings.ANTHROPIC_API_KEY = "from-env"
        settings.COMPLETION_MODEL = "model-x"
        settings.COMPLETION_TIMEOUT = 30

        config = CompletionConfig.from_settings(settings)

        assert config.api_key == "from-env"
        assert config.model == "model-x"
        assert config.timeout == 30

    @pytest.mark.asyncio
    async def test_close_is_idempotent(self):
        client = _client(lambda request: _text_response("ok"))
        await client.complete("ping")

        await client.close()
        await client.close()

        assert client._client is None
