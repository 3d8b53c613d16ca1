"""
Response pipeline.

Unwraps Antigravity responses for the host, surfaces retry and usage
information as headers, rewrites preview-access errors into something
actionable, and records the thinking signatures the gateway issues so that
later requests in the same session can be trusted to carry them.
"""

import json
import logging
import math
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from greconcile.proxy.parts import classify
from greconcile.proxy.signatures import SignatureStore

logger = logging.getLogger(__name__)

PREVIEW_ACCESS_LINK = "https://goo.gle/enable-preview-features"

RETRY_INFO_TYPE = "type.googleapis.com/google.rpc.RetryInfo"
RETRY_DELAY_REGEX = re.compile(r"^([\d.]+)s$")

USAGE_HEADERS = {
    "cachedContentTokenCount": "x-antigravity-cached-content-token-count",
    "totalTokenCount": "x-antigravity-total-token-count",
    "promptTokenCount": "x-antigravity-prompt-token-count",
    "candidatesTokenCount": "x-antigravity-candidates-token-count",
}


def parse_api_body(raw_text: str) -> Optional[Dict[str, Any]]:
    """Parse a response body; the API sometimes wraps it in an array."""
    try:
        parsed = json.loads(raw_text)
    except (TypeError, ValueError):
        return None
    if isinstance(parsed, list):
        return next((item for item in parsed if isinstance(item, dict)), None)
    return parsed if isinstance(parsed, dict) else None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value if math.isfinite(value) else None


def extract_usage_metadata(body: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    response = body.get("response") if isinstance(body, dict) else None
    usage = response.get("usageMetadata") if isinstance(response, dict) else None
    if not isinstance(usage, dict):
        return None
    return {key: _number(usage.get(key)) for key in USAGE_HEADERS}


def _sse_events(payload: str):
    for line in payload.split("\n"):
        if not line.startswith("data:"):
            continue
        json_text = line[5:].strip()
        if not json_text:
            continue
        try:
            yield json.loads(json_text)
        except ValueError:
            continue


def extract_usage_from_sse_payload(payload: str) -> Optional[Dict[str, Any]]:
    """First usage-bearing chunk of an SSE payload."""
    for event in _sse_events(payload):
        if isinstance(event, dict):
            usage = extract_usage_metadata({"response": event.get("response")})
            if usage:
                return usage
    return None


def _is_antigravity_model(target: Optional[str]) -> bool:
    if not target:
        return False
    return bool(re.search(r"antigravity|opus|claude", target, re.IGNORECASE))


def rewrite_preview_access_error(
    body: Dict[str, Any], status: int, requested_model: Optional[str] = None
) -> Optional[Dict[str, Any]]:
    """Point 404s for preview models at the preview access form."""
    if status != 404:
        return None
    error = body.get("error") if isinstance(body.get("error"), dict) else {}
    message = error.get("message") if isinstance(error.get("message"), str) else ""
    if not _is_antigravity_model(requested_model) and not _is_antigravity_model(message):
        return None

    prefix = message.strip() or "Antigravity preview features are not enabled for this account."
    return {
        **body,
        "error": {
            **error,
            "message": f"{prefix} Request preview access at {PREVIEW_ACCESS_LINK} before using this model.",
        },
    }


def transform_thinking_parts(response: Any) -> Any:
    """Expose thinking to the host as reasoning blocks.

    Anthropic ``thinking`` content becomes ``reasoning``; Gemini thought
    parts are tagged ``type: reasoning`` and joined into
    ``reasoning_content`` on their candidate.
    """
    if not isinstance(response, dict):
        return response

    result = dict(response)
    if isinstance(result.get("content"), list):
        content = []
        for block in result["content"]:
            if isinstance(block, dict) and block.get("type") == "thinking":
                converted = {"type": "reasoning", "text": block.get("thinking") or ""}
                if block.get("signature"):
                    converted["signature"] = block["signature"]
                content.append(converted)
            else:
                content.append(block)
        result["content"] = content

    if isinstance(result.get("candidates"), list):
        candidates = []
        for candidate in result["candidates"]:
            content = candidate.get("content") if isinstance(candidate, dict) else None
            if not isinstance(content, dict) or not isinstance(content.get("parts"), list):
                candidates.append(candidate)
                continue
            thinking_texts = []
            parts = []
            for part in content["parts"]:
                if isinstance(part, dict) and part.get("thought") is True:
                    thinking_texts.append(part.get("text") or "")
                    parts.append({**part, "type": "reasoning"})
                else:
                    parts.append(part)
            updated = {**candidate, "content": {**content, "parts": parts}}
            if thinking_texts:
                updated["reasoning_content"] = "\n\n".join(thinking_texts)
            candidates.append(updated)
        result["candidates"] = candidates
    return result


class SignatureRecorder:
    """Records thinking signatures observed in gateway responses.

    Streamed thinking arrives as text deltas with the signature on the last
    one, so text is buffered until a signature shows up. Any non-thinking
    part in between ends the block unsigned.
    """

    def __init__(self, store: Optional[SignatureStore], session_id: Optional[str]):
        self.store = store
        self.session_id = session_id
        self._buffer: List[str] = []
        self.recorded = 0

    def _flush(self, signature: Optional[str]) -> None:
        text = "".join(self._buffer)
        self._buffer = []
        if signature and self.store is not None and self.store.record(self.session_id, text, signature):
            self.recorded += 1

    def observe_part(self, part: Any) -> None:
        block = classify(part)
        if not block.is_thinking:
            if self._buffer:
                self._buffer = []
            return
        if block.text:
            self._buffer.append(block.text)
        if block.signature:
            self._flush(block.signature)

    def observe(self, response: Any) -> None:
        """Feed one response object (or one streamed chunk)."""
        if not isinstance(response, dict):
            return
        for candidate in response.get("candidates") or []:
            content = candidate.get("content") if isinstance(candidate, dict) else None
            if isinstance(content, dict) and isinstance(content.get("parts"), list):
                for part in content["parts"]:
                    self.observe_part(part)
        if isinstance(response.get("content"), list):
            for block in response["content"]:
                self.observe_part(block)


def transform_streaming_payload(payload: str, recorder: Optional[SignatureRecorder] = None) -> str:
    """Rewrite SSE lines so the host only sees the inner ``response`` objects."""
    lines = []
    for line in payload.split("\n"):
        if not line.startswith("data:"):
            lines.append(line)
            continue
        json_text = line[5:].strip()
        try:
            parsed = json.loads(json_text) if json_text else None
        except ValueError:
            parsed = None
        if isinstance(parsed, dict) and "response" in parsed:
            if recorder is not None:
                recorder.observe(parsed["response"])
            lines.append(f"data: {json.dumps(transform_thinking_parts(parsed['response']))}")
        else:
            lines.append(line)
    return "\n".join(lines)


@dataclass
class TransformedResponse:
    body: str
    status: int
    headers: Dict[str, str] = field(default_factory=dict)


def _retry_headers(error_body: Dict[str, Any]) -> Dict[str, str]:
    error = error_body.get("error") if isinstance(error_body.get("error"), dict) else {}
    for detail in error.get("details") or []:
        if not isinstance(detail, dict) or detail.get("@type") != RETRY_INFO_TYPE:
            continue
        match = RETRY_DELAY_REGEX.match(str(detail.get("retryDelay", "")))
        if not match:
            continue
        seconds = float(match.group(1))
        if seconds > 0:
            return {
                "Retry-After": str(math.ceil(seconds)),
                "retry-after-ms": str(math.ceil(seconds * 1000)),
            }
    return {}


def _debug_info(status: int, headers: Dict[str, str], context: Dict[str, Any]) -> str:
    lines = [
        "",
        "",
        "[Debug Info]",
        f"Requested Model: {context.get('requested_model') or 'Unknown'}",
        f"Effective Model: {context.get('effective_model') or 'Unknown'}",
        f"Project: {context.get('project_id') or 'Unknown'}",
        f"Endpoint: {context.get('endpoint') or 'Unknown'}",
        f"Status: {status}",
        f"Request ID: {headers.get('x-request-id', 'N/A')}",
    ]
    if context.get("tool_debug_missing") is not None:
        lines.append(f"Tool Debug Missing: {context['tool_debug_missing']}")
    if context.get("tool_debug_summary"):
        lines.append(f"Tool Debug Summary: {context['tool_debug_summary']}")
    return "\n".join(lines)


def transform_response(
    text: str,
    status: int,
    content_type: str,
    streaming: bool,
    *,
    headers: Optional[Dict[str, str]] = None,
    recorder: Optional[SignatureRecorder] = None,
    requested_model: Optional[str] = None,
    effective_model: Optional[str] = None,
    project_id: Optional[str] = None,
    endpoint: Optional[str] = None,
    tool_debug_missing: Optional[int] = None,
    tool_debug_summary: Optional[str] = None,
) -> TransformedResponse:
    """
    Normalize a gateway response for the host.

    Args:
        text: Raw response body
        status: HTTP status
        content_type: Response content type
        streaming: Whether the request was a streaming one
        headers: Response headers
        recorder: Signature recorder for the request's session

    Returns:
        TransformedResponse: Body, status and headers to hand back
    """
    out_headers = dict(headers or {})
    is_json = "application/json" in (content_type or "")
    is_sse = "text/event-stream" in (content_type or "")

    if not is_json and not is_sse:
        return TransformedResponse(text, status, out_headers)

    if status >= 400:
        error_body = parse_api_body(text) or {"error": {"message": text}}
        out_headers.update(_retry_headers(error_body))
        patched = rewrite_preview_access_error(error_body, status, requested_model) or error_body
        if isinstance(patched.get("error"), dict):
            context = {
                "requested_model": requested_model,
                "effective_model": effective_model,
                "project_id": project_id,
                "endpoint": endpoint,
                "tool_debug_missing": tool_debug_missing,
                "tool_debug_summary": tool_debug_summary,
            }
            error = dict(patched["error"])
            error["message"] = (error.get("message") or "Unknown error") + _debug_info(
                status, out_headers, context
            )
            patched = {**patched, "error": error}
        logger.warning("Gateway returned %s for %s", status, requested_model or "unknown model")
        return TransformedResponse(json.dumps(patched), status, out_headers)

    if streaming and is_sse:
        usage = extract_usage_from_sse_payload(text)
        body = transform_streaming_payload(text, recorder)
        parsed = None
    else:
        parsed = parse_api_body(text)
        usage = extract_usage_metadata(parsed) if parsed else None
        body = text

    if usage and usage.get("cachedContentTokenCount") is not None:
        for key, header in USAGE_HEADERS.items():
            if usage.get(key) is not None:
                out_headers[header] = str(int(usage[key]))

    if parsed is not None and "response" in parsed:
        if recorder is not None:
            recorder.observe(parsed["response"])
        body = json.dumps(transform_thinking_parts(parsed["response"]))

    if recorder is not None and recorder.recorded:
        logger.debug("Recorded %d thinking signatures", recorder.recorded)
    return TransformedResponse(body, status, out_headers)
