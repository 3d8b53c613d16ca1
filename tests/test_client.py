"""
Gateway Client Tests

The aiohttp session is replaced by a scripted fake so endpoint fallback,
error mapping and signature recording can be checked without a network.
"""

import json
from unittest.mock import AsyncMock

import pytest

from greconcile.proxy import client as client_module
from greconcile.proxy.client import (
    GatewayAuthError,
    GatewayClient,
    GatewayClientError,
    GatewayRateLimitError,
    raise_for_status,
)
from tests.conftest import SIG_A

URL = "https://generativelanguage.googleapis.com/v1beta/models/claude-sonnet-4-5-thinking:generateContent"
STREAM_URL = "https://generativelanguage.googleapis.com/v1beta/models/claude-sonnet-4-5-thinking:streamGenerateContent"
BODY = json.dumps({"contents": [{"role": "user", "parts": [{"text": "hi"}]}]})
ENDPOINTS = ["https://one.example", "https://two.example"]


class FakeContent:
    def __init__(self, lines):
        self._lines = lines

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for line in self._lines:
            yield line


class FakeResponse:
    def __init__(self, status=200, body="", lines=None, content_type="application/json"):
        self.status = status
        self._body = body
        self.headers = {"Content-Type": content_type}
        self.content = FakeContent(lines or [])

    async def text(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    def __init__(self, script, calls):
        self._script = script
        self._calls = calls

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    def post(self, url, headers=None, data=None):
        self._calls.append({"url": url, "headers": headers, "data": data})
        return self._script.pop(0)


@pytest.fixture
def calls():
    return []


def make_client(store, calls, script, **kwargs):
    return GatewayClient(
        "tok",
        "proj",
        session_id="sess-1",
        endpoints=ENDPOINTS,
        signatures=store,
        keep_thinking=False,
        session_factory=lambda: FakeSession(script, calls),
        **kwargs,
    )


def ok_body(*parts):
    return json.dumps({"response": {"candidates": [{"content": {"role": "model", "parts": list(parts)}}]}})


def error_body(status, message, retry_delay=None):
    error = {"code": status, "message": message}
    if retry_delay:
        error["details"] = [{"@type": "type.googleapis.com/google.rpc.RetryInfo", "retryDelay": retry_delay}]
    return json.dumps({"error": error})


class TestRaiseForStatus:
    def test_success_is_silent(self):
        raise_for_status(200, "", "e")

    def test_auth(self):
        with pytest.raises(GatewayAuthError) as exc_info:
            raise_for_status(401, error_body(401, "bad token"), "e")
        assert exc_info.value.is_auth
        assert "bad token" in str(exc_info.value)

    def test_license_error_is_not_auth(self):
        with pytest.raises(GatewayClientError) as exc_info:
            raise_for_status(403, error_body(403, "Project not licensed"), "e")
        assert not isinstance(exc_info.value, GatewayAuthError)

    def test_rate_limit_with_retry_info(self):
        with pytest.raises(GatewayRateLimitError) as exc_info:
            raise_for_status(429, error_body(429, "slow down", "3s"), "https://one.example")
        assert exc_info.value.is_rate_limit
        assert exc_info.value.retry_after_seconds == 3.0
        assert exc_info.value.endpoint == "https://one.example"

    def test_other_errors(self):
        with pytest.raises(GatewayClientError, match="API error: HTTP 500"):
            raise_for_status(500, "oops", "e")


class TestGenerate:
    @pytest.mark.asyncio
    async def test_success_records_signature(self, store, calls):
        script = [FakeResponse(body=ok_body({"thought": True, "text": "plan", "thoughtSignature": SIG_A}, {"text": "hi"}))]
        client = make_client(store, calls, script)

        result = await client.generate(URL, BODY)

        assert result["candidates"][0]["content"]["parts"][1] == {"text": "hi"}
        assert store.lookup("sess-1", "plan") == SIG_A
        assert calls[0]["url"] == "https://one.example/v1internal:generateContent"
        assert calls[0]["headers"]["Authorization"] == "Bearer tok"
        assert json.loads(calls[0]["data"])["request"]["sessionId"] == "sess-1"

    @pytest.mark.asyncio
    async def test_falls_back_to_next_endpoint(self, store, calls):
        script = [
            FakeResponse(status=500, body=error_body(500, "boom")),
            FakeResponse(body=ok_body({"text": "hi"})),
        ]
        client = make_client(store, calls, script)

        result = await client.generate(URL, BODY)

        assert result["candidates"][0]["content"]["parts"] == [{"text": "hi"}]
        assert [c["url"].split("/v1internal")[0] for c in calls] == ENDPOINTS

    @pytest.mark.asyncio
    async def test_auth_error_does_not_fall_back(self, store, calls):
        script = [FakeResponse(status=401, body=error_body(401, "expired"))]
        client = make_client(store, calls, script)

        with pytest.raises(GatewayAuthError):
            await client.generate(URL, BODY)
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_rate_limit_everywhere_raises(self, store, calls):
        script = [
            FakeResponse(status=429, body=error_body(429, "quota", "2s")),
            FakeResponse(status=429, body=error_body(429, "quota", "5s")),
        ]
        client = make_client(store, calls, script, max_retries=1)

        with pytest.raises(GatewayRateLimitError) as exc_info:
            await client.generate(URL, BODY)
        assert exc_info.value.retry_after_seconds == 5.0
        assert len(calls) == 2

    @pytest.mark.asyncio
    async def test_retries_after_backoff(self, store, calls, monkeypatch):
        sleep = AsyncMock()
        monkeypatch.setattr(client_module.asyncio, "sleep", sleep)
        script = [
            FakeResponse(status=503, body=error_body(503, "busy")),
            FakeResponse(status=503, body=error_body(503, "busy")),
            FakeResponse(body=ok_body({"text": "finally"})),
        ]
        client = make_client(store, calls, script, max_retries=2)

        result = await client.generate(URL, BODY)

        assert result["candidates"][0]["content"]["parts"] == [{"text": "finally"}]
        sleep.assert_awaited_once_with(1.0)


class TestEndpointTracking:
    def test_failed_preferred_endpoint_moves_on(self, store, calls):
        client = make_client(store, calls, [])
        client.mark_endpoint_failed(0)
        assert client.get_next_available_endpoint() == 1
        client.mark_endpoint_failed(1)
        assert client.get_next_available_endpoint() is None
        client.reset_failures()
        assert client.get_next_available_endpoint() == 0


class TestStreamGenerate:
    @pytest.mark.asyncio
    async def test_chunks_are_unwrapped_and_signatures_recorded(self, store, calls):
        lines = [
            b'data: {"response": {"candidates": [{"content": {"parts": [{"thought": true, "text": "pl"}]}}]}}\n',
            b"\n",
            b'data: {"response": {"candidates": [{"content": {"parts": [{"thought": true, "text": "an", "thoughtSignature": "'
            + SIG_A.encode()
            + b'"}]}}]}}\n',
            b'data: {"response": {"candidates": [{"content": {"parts": [{"text": "hi"}]}}]}}\n',
        ]
        script = [FakeResponse(lines=lines, content_type="text/event-stream")]
        client = make_client(store, calls, script)

        chunks = [chunk async for chunk in client.stream_generate(STREAM_URL, BODY)]

        assert len(chunks) == 3
        assert chunks[0]["candidates"][0]["content"]["parts"][0]["type"] == "reasoning"
        assert chunks[2]["candidates"][0]["content"]["parts"] == [{"text": "hi"}]
        assert store.lookup("sess-1", "plan") == SIG_A
        assert calls[0]["url"].endswith("?alt=sse")

    @pytest.mark.asyncio
    async def test_error_before_first_chunk_falls_back(self, store, calls):
        script = [
            FakeResponse(status=500, body=error_body(500, "boom")),
            FakeResponse(lines=[b'data: {"response": {"candidates": []}}\n'], content_type="text/event-stream"),
        ]
        client = make_client(store, calls, script)

        chunks = [chunk async for chunk in client.stream_generate(STREAM_URL, BODY)]

        assert chunks == [{"candidates": []}]
        assert len(calls) == 2
