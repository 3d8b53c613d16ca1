"""
Gateway client.

Sends prepared requests to the Antigravity gateway with automatic endpoint
fallback, and runs responses through the response pipeline so thinking
signatures are recorded for the session.

Endpoints (in order of preference):
1. daily-cloudcode-pa.sandbox.googleapis.com - Daily sandbox quota
2. autopush-cloudcode-pa.sandbox.googleapis.com - Autopush sandbox quota
3. cloudcode-pa.googleapis.com - Production quota
"""

import asyncio
import json
import logging
import uuid
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import aiohttp

from greconcile.proxy.request import ANTIGRAVITY_ENDPOINTS, PreparedRequest, prepare_request
from greconcile.proxy.response import SignatureRecorder, transform_response, transform_thinking_parts
from greconcile.proxy.signatures import SignatureStore, get_default_store

logger = logging.getLogger(__name__)

LICENSE_ERROR_MARKERS = ("license", "not licensed", "permission_denied")


def _is_license_error(error_msg: str) -> bool:
    lower = (error_msg or "").lower()
    return any(marker in lower for marker in LICENSE_ERROR_MARKERS)


class GatewayClientError(Exception):
    """Base exception for gateway client errors."""

    def __init__(self, message: str, is_rate_limit: bool = False, is_auth: bool = False):
        super().__init__(message)
        self.is_rate_limit = is_rate_limit
        self.is_auth = is_auth


class GatewayRateLimitError(GatewayClientError):
    """Raised when rate limit is hit."""

    def __init__(self, message: str, endpoint: str, retry_after_seconds: float | None = None):
        super().__init__(message, is_rate_limit=True)
        self.endpoint = endpoint
        self.retry_after_seconds = retry_after_seconds


class GatewayAuthError(GatewayClientError):
    """Raised when authentication fails."""

    def __init__(self, message: str):
        super().__init__(message, is_auth=True)


def _load_error(response_text: str) -> Dict[str, Any]:
    try:
        data = json.loads(response_text)
    except json.JSONDecodeError:
        return {}
    return data if isinstance(data, dict) else {}


def _error_message(error_data: Dict[str, Any], default: str) -> str:
    error = error_data.get("error")
    if isinstance(error, dict) and error.get("message"):
        return str(error["message"])
    if isinstance(error, str) and error:
        return error
    return default


def _retry_after(error_data: Dict[str, Any]) -> Optional[float]:
    error = error_data.get("error")
    details = error.get("details", []) if isinstance(error, dict) else []
    for detail in details:
        if isinstance(detail, dict) and str(detail.get("@type", "")).endswith("google.rpc.RetryInfo"):
            retry_delay = detail.get("retryDelay")
            if isinstance(retry_delay, str) and retry_delay.endswith("s"):
                try:
                    return float(retry_delay[:-1])
                except ValueError:
                    return None
    return None


def raise_for_status(status: int, response_text: str, endpoint: str) -> None:
    """Map a gateway error status onto the client exception hierarchy."""
    if status < 400:
        return
    error_data = _load_error(response_text)

    if status in (401, 403):
        error_msg = _error_message(error_data, response_text or "Authentication failed")
        if status == 403 and _is_license_error(error_msg):
            raise GatewayClientError(f"Endpoint license error: {error_msg}")
        raise GatewayAuthError(f"Authentication error: {error_msg}")

    if status == 429:
        error_msg = _error_message(error_data, "Rate limit exceeded")
        raise GatewayRateLimitError(
            f"Rate limit exceeded on {endpoint}: {error_msg}",
            endpoint=endpoint,
            retry_after_seconds=_retry_after(error_data),
        )

    raise GatewayClientError(f"API error: {_error_message(error_data, f'HTTP {status}')}")


class GatewayClient:
    """
    Client for the Antigravity gateway with automatic endpoint fallback.
    """

    def __init__(
        self,
        access_token: str,
        project_id: str,
        session_id: Optional[str] = None,
        endpoints: Optional[List[str]] = None,
        signatures: Optional[SignatureStore] = None,
        keep_thinking: Optional[bool] = None,
        max_retries: int = 3,
        session_factory: Callable[[], Any] = aiohttp.ClientSession,
    ):
        """
        Initialize the gateway client.

        Args:
            access_token: OAuth bearer token
            project_id: Google Cloud project ID
            session_id: Conversation session; signatures are recorded under it
            endpoints: Base URLs in order of preference
            signatures: Signature store (defaults to the process-wide one)
            keep_thinking: Claude override; None reads ANTIGRAVITY_KEEP_THINKING, then the config file
            session_factory: Builds the aiohttp session for each request
        """
        self.access_token = access_token
        self.project_id = project_id
        self.session_id = session_id or f"session-{uuid.uuid4()}"
        self.endpoints = list(endpoints or ANTIGRAVITY_ENDPOINTS)
        self.signatures = signatures if signatures is not None else get_default_store()
        self.keep_thinking = keep_thinking
        self.max_retries = max_retries
        self.session_factory = session_factory
        self.preferred_endpoint = 0
        self.failed_endpoints: set[int] = set()

    def reset_failures(self):
        """Reset failed endpoints tracking."""
        self.failed_endpoints.clear()

    def mark_endpoint_failed(self, endpoint_index: int):
        """Mark an endpoint as failed."""
        self.failed_endpoints.add(endpoint_index)
        # If preferred endpoint failed, move to next
        if endpoint_index == self.preferred_endpoint:
            self.preferred_endpoint = (self.preferred_endpoint + 1) % len(self.endpoints)

    def get_next_available_endpoint(self) -> Optional[int]:
        """Get the next available (not failed) endpoint index."""
        for i in range(len(self.endpoints)):
            idx = (self.preferred_endpoint + i) % len(self.endpoints)
            if idx not in self.failed_endpoints:
                return idx
        return None  # All endpoints failed

    def prepare(self, url: str, body: str, endpoint_index: int) -> PreparedRequest:
        return prepare_request(
            url,
            body,
            self.access_token,
            self.project_id,
            endpoint=self.endpoints[endpoint_index],
            session_id=self.session_id,
            signatures=self.signatures,
            keep_thinking=self.keep_thinking,
        )

    async def _backoff(self, retry: int) -> None:
        if retry < self.max_retries - 1:
            delay = min(1.0 * (2**retry), 10.0)  # 1s, 2s, 4s... max 10s
            logger.info(
                f"All endpoints exhausted, retrying in {delay}s (attempt {retry + 2}/{self.max_retries})"
            )
            await asyncio.sleep(delay)

    async def generate(self, url: str, body: str) -> Dict[str, Any]:
        """
        Send a non-streaming request.

        Args:
            url: Generative Language URL the host called
            body: JSON request body

        Returns:
            dict: Unwrapped response with thinking exposed as reasoning

        Raises:
            GatewayClientError: For API errors
            GatewayRateLimitError: When every endpoint is rate limited
            GatewayAuthError: For authentication errors
        """
        last_error: Optional[GatewayClientError] = None

        for retry in range(self.max_retries):
            self.reset_failures()
            endpoint_index = self.get_next_available_endpoint()
            while endpoint_index is not None:
                endpoint = self.endpoints[endpoint_index]
                prepared = self.prepare(url, body, endpoint_index)
                try:
                    async with self.session_factory() as session:
                        async with session.post(
                            prepared.url, headers=prepared.headers, data=prepared.body
                        ) as response:
                            response_text = await response.text()
                            raise_for_status(response.status, response_text, endpoint)

                            transformed = transform_response(
                                response_text,
                                response.status,
                                response.headers.get("Content-Type", "application/json"),
                                streaming=False,
                                headers=dict(response.headers),
                                recorder=SignatureRecorder(self.signatures, self.session_id),
                                requested_model=prepared.requested_model,
                            )
                    self.reset_failures()
                    try:
                        return json.loads(transformed.body)
                    except json.JSONDecodeError:
                        return {"text": transformed.body}

                except GatewayRateLimitError as e:
                    last_error = e
                    logger.warning(f"Rate limit hit on {endpoint}")
                except GatewayAuthError:
                    raise  # Auth errors should not trigger fallback
                except GatewayClientError as e:
                    last_error = e
                    logger.warning(f"Request to {endpoint} failed: {e}")

                self.mark_endpoint_failed(endpoint_index)
                endpoint_index = self.get_next_available_endpoint()

            await self._backoff(retry)

        if last_error:
            raise last_error
        raise GatewayClientError("All gateway endpoints and retries exhausted")

    async def stream_generate(self, url: str, body: str) -> AsyncIterator[Dict[str, Any]]:
        """
        Send a streaming request and yield unwrapped SSE chunks.

        Endpoint fallback only happens before the first chunk is yielded.
        """
        last_error: Optional[GatewayClientError] = None

        for retry in range(self.max_retries):
            self.reset_failures()
            endpoint_index = self.get_next_available_endpoint()
            while endpoint_index is not None:
                endpoint = self.endpoints[endpoint_index]
                prepared = self.prepare(url, body, endpoint_index)
                try:
                    async with self.session_factory() as session:
                        async with session.post(
                            prepared.url, headers=prepared.headers, data=prepared.body
                        ) as response:
                            logger.debug(f"Streaming response status: {response.status}")
                            if response.status >= 400:
                                raise_for_status(response.status, await response.text(), endpoint)

                            self.reset_failures()
                            recorder = SignatureRecorder(self.signatures, self.session_id)
                            chunk_count = 0
                            async for line in response.content:
                                line_text = line.decode().strip()
                                if not line_text.startswith("data:"):
                                    continue
                                try:
                                    json_data = json.loads(line_text[5:].strip())
                                except json.JSONDecodeError:
                                    continue
                                if isinstance(json_data, dict) and "response" in json_data:
                                    json_data = json_data["response"]
                                recorder.observe(json_data)
                                chunk_count += 1
                                yield transform_thinking_parts(json_data)

                            logger.debug(
                                f"Streaming complete, got {chunk_count} chunks, "
                                f"recorded {recorder.recorded} signatures"
                            )
                            return  # Success

                except GatewayRateLimitError as e:
                    last_error = e
                    logger.warning(f"Rate limit hit on {endpoint}")
                except GatewayAuthError:
                    raise
                except GatewayClientError as e:
                    last_error = e
                    logger.warning(f"Streaming request to {endpoint} failed: {e}")

                self.mark_endpoint_failed(endpoint_index)
                endpoint_index = self.get_next_available_endpoint()

            await self._backoff(retry)

        if last_error:
            raise last_error
        raise GatewayClientError("All gateway endpoints and retries exhausted")
