"""Tests for OpenRouterEndpoint against a local aiohttp server."""

import contextlib

import pytest
from aiohttp import web
from aiohttp import test_utils

from qora_fusion.core.errors import ErrorCategory, InferenceError
from qora_fusion.core.fusion_config import EndpointConfig
from qora_fusion.core.fusion_types import GenerationParams
from qora_fusion.core.inference_endpoint import OpenRouterEndpoint

MESSAGES = [{"role": "user", "content": "hello"}]
PARAMS = GenerationParams(temperature=0.3, max_tokens=128)


@contextlib.asynccontextmanager
async def serve(handler):
    """Run ``handler`` on a local server and yield a connected endpoint."""
    app = web.Application()
    app.router.add_post("/api/v1/chat/completions", handler)
    server = test_utils.TestServer(app)
    await server.start_server()
    endpoint = OpenRouterEndpoint(
        EndpointConfig(base_url=str(server.make_url("/api/v1/chat/completions"))),
        api_key="test-key",
    )
    try:
        yield endpoint
    finally:
        await endpoint.close()
        await server.close()


class TestCompletion:

    @pytest.mark.asyncio
    async def test_success(self):
        seen = {}

        async def handler(request):
            seen["headers"] = dict(request.headers)
            seen["body"] = await request.json()
            return web.json_response({
                "model": "m/1",
                "choices": [{"message": {"role": "assistant", "content": "  Four.  "}}],
                "usage": {"total_tokens": 12},
            })

        async with serve(handler) as endpoint:
            result = await endpoint.complete("m/1", MESSAGES, PARAMS)

        assert result.text == "Four."
        assert result.usage == {"total_tokens": 12}
        assert seen["headers"]["Authorization"] == "Bearer test-key"
        assert seen["headers"]["X-Title"] == "Qora Fusion"
        assert seen["body"] == {
            "model": "m/1",
            "messages": MESSAGES,
            "temperature": 0.3,
            "max_tokens": 128,
        }

    @pytest.mark.asyncio
    async def test_session_is_reused(self):
        async def handler(request):
            return web.json_response({"choices": [{"message": {"content": "ok"}}]})

        async with serve(handler) as endpoint:
            await endpoint.complete("m/1", MESSAGES, PARAMS)
            session = endpoint._session
            await endpoint.complete("m/1", MESSAGES, PARAMS)

            assert endpoint._session is session

    @pytest.mark.asyncio
    async def test_null_usage_is_empty(self):
        async def handler(request):
            return web.json_response({"choices": [{"message": {"content": "ok"}}], "usage": None})

        async with serve(handler) as endpoint:
            result = await endpoint.complete("m/1", MESSAGES, PARAMS)

        assert result.usage == {}


class TestFailures:

    @pytest.mark.asyncio
    async def test_rate_limit(self):
        async def handler(request):
            return web.json_response(
                {"error": {"message": "Rate limit exceeded"}}, status=429, headers={"Retry-After": "7"}
            )

        async with serve(handler) as endpoint:
            with pytest.raises(InferenceError) as info:
                await endpoint.complete("m/1", MESSAGES, PARAMS)

        assert info.value.category is ErrorCategory.RATE_LIMIT
        assert info.value.status_code == 429
        assert info.value.retry_after == 7.0
        assert "Rate limit exceeded" in info.value.message

    @pytest.mark.asyncio
    async def test_server_error(self):
        async def handler(request):
            return web.json_response({"error": "upstream unavailable"}, status=502)

        async with serve(handler) as endpoint:
            with pytest.raises(InferenceError) as info:
                await endpoint.complete("m/1", MESSAGES, PARAMS)

        assert info.value.category is ErrorCategory.HTTP_ERROR
        assert info.value.message == "HTTP 502: upstream unavailable"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "payload",
        [
            {"choices": []},
            {"choices": [{"message": {}}]},
            {"choices": [{"message": {"content": "   "}}]},
            {"unexpected": True},
            {"choices": [{"message": {"content": "hi"}}], "usage": [1, 2]},
            {"choices": [{"message": {"content": "hi"}}], "usage": 5},
            {"choices": [{"message": {"content": "hi"}}], "usage": "tokens"},
        ],
    )
    async def test_malformed_completion(self, payload):
        async def handler(request):
            return web.json_response(payload)

        async with serve(handler) as endpoint:
            with pytest.raises(InferenceError) as info:
                await endpoint.complete("m/1", MESSAGES, PARAMS)

        assert info.value.category is ErrorCategory.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_invalid_json(self):
        async def handler(request):
            return web.Response(text="<html>gateway</html>", content_type="text/html")

        async with serve(handler) as endpoint:
            with pytest.raises(InferenceError) as info:
                await endpoint.complete("m/1", MESSAGES, PARAMS)

        assert info.value.category is ErrorCategory.MALFORMED_RESPONSE

    @pytest.mark.asyncio
    async def test_connection_refused(self):
        endpoint = OpenRouterEndpoint(EndpointConfig(base_url="http://127.0.0.1:1/v1/chat"), api_key="k")
        try:
            with pytest.raises(InferenceError) as info:
                await endpoint.complete("m/1", MESSAGES, PARAMS)
        finally:
            await endpoint.close()

        assert info.value.category is ErrorCategory.NETWORK

    @pytest.mark.asyncio
    async def test_missing_api_key(self, monkeypatch):
        monkeypatch.delenv("QORA_TEST_MISSING_KEY", raising=False)
        endpoint = OpenRouterEndpoint(EndpointConfig(api_key_env="QORA_TEST_MISSING_KEY"))

        with pytest.raises(InferenceError) as info:
            await endpoint.complete("m/1", MESSAGES, PARAMS)

        assert info.value.category is ErrorCategory.CONFIGURATION
        assert endpoint._session is None
