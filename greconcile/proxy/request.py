"""
Request pipeline.

Turns a Generative Language API request from the host into an Antigravity
``v1internal`` request:

1. Thinking config is resolved for the target model and tier.
2. Cached content, system instruction and tool declarations are normalized.
3. Every conversation in the payload is repaired (tool pairing) and then
   reconciled (thinking blocks) for the target model family.
4. The payload is wrapped in the Antigravity envelope and headers are set.
"""

import json
import logging
import random
import uuid
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Optional, Tuple

from greconcile.config import configured_model_family, debug_tools_enabled, keep_thinking_enabled
from greconcile.proxy.compat import apply_compatibility_fixes
from greconcile.proxy.conversation import ConversationStyle, detect_style, has_assistant_history
from greconcile.proxy.models import ParsedModelInfo, parse_model_from_url, resolve_model_with_tier
from greconcile.proxy.pairing import PairingReport, ensure_tool_pairing, validate_tool_pairing
from greconcile.proxy.schema import simplify_schema
from greconcile.proxy.signatures import SignatureStore
from greconcile.proxy.thinking import ModelFamily, reconcile_thinking, rewrite_conversations

logger = logging.getLogger(__name__)

# Gateway endpoints, in order of preference
ANTIGRAVITY_ENDPOINT = "https://daily-cloudcode-pa.sandbox.googleapis.com"
AUTOPUSH_ENDPOINT = "https://autopush-cloudcode-pa.sandbox.googleapis.com"
PRODUCTION_ENDPOINT = "https://cloudcode-pa.googleapis.com"
ANTIGRAVITY_ENDPOINTS = [ANTIGRAVITY_ENDPOINT, AUTOPUSH_ENDPOINT, PRODUCTION_ENDPOINT]

ANTIGRAVITY_HEADERS = {
    "User-Agent": "antigravity/1.11.5 windows/amd64",
    "X-Goog-Api-Client": "google-cloud-sdk vscode_cloudshelleditor/0.1",
    "Client-Metadata": '{"ideType":"IDE_UNSPECIFIED","platform":"PLATFORM_UNSPECIFIED","pluginType":"GEMINI"}',
}

CLAUDE_INTERLEAVED_THINKING_BETA = "interleaved-thinking-2025-05-14"
TOOLS_DEBUG_HEADER = "X-Antigravity-Tools-Debug"

DEFAULT_THINKING_BUDGET = 16000

GENERATIVE_LANGUAGE_HOST = "generativelanguage.googleapis.com"

SYNTHETIC_PROJECT_ADJECTIVES = ["useful", "bright", "swift", "calm", "bold"]
SYNTHETIC_PROJECT_NOUNS = ["fuze", "wave", "spark", "flow", "core"]

EMPTY_SCHEMA = {"type": "object", "properties": {}}

# Tools the Gemini backend runs itself; everything else must be a function.
GEMINI_NATIVE_TOOLS = ("googleSearch", "googleSearchRetrieval", "codeExecution", "urlContext")


def _generate_project_id() -> str:
    adjective = random.choice(SYNTHETIC_PROJECT_ADJECTIVES)
    noun = random.choice(SYNTHETIC_PROJECT_NOUNS)
    return f"{adjective}-{noun}-{uuid.uuid4().hex[:5]}"


def _generate_session_id() -> str:
    return f"-{random.randint(0, 10**15 - 1)}"


def _generate_request_id() -> str:
    return f"agent-{uuid.uuid4()}"


def is_generative_language_request(url: Any) -> bool:
    return isinstance(url, str) and GENERATIVE_LANGUAGE_HOST in url


# ---------------------------------------------------------------------------
# Thinking config
# ---------------------------------------------------------------------------


def normalize_thinking_config(config: Any) -> Optional[Dict[str, Any]]:
    """Valid thinkingConfig, or None. includeThoughts needs a positive budget."""
    if not isinstance(config, dict):
        return None

    budget_raw = config.get("thinkingBudget", config.get("thinking_budget"))
    include_raw = config.get("includeThoughts", config.get("include_thoughts"))

    budget = budget_raw if isinstance(budget_raw, (int, float)) and not isinstance(budget_raw, bool) else None
    include = include_raw if isinstance(include_raw, bool) else None

    if budget is None and include is None:
        return None

    enabled = budget is not None and budget > 0
    normalized: Dict[str, Any] = {}
    if budget is not None:
        normalized["thinkingBudget"] = budget
    normalized["includeThoughts"] = bool(include) if enabled else False
    return normalized


def extract_thinking_source(payload: Dict[str, Any]) -> Any:
    """Thinking config from wherever the host put it.

    Anthropic-style ``thinking: {type: enabled, budget_tokens}`` is
    converted to the Gemini shape.
    """
    generation_config = payload.get("generationConfig")
    extra_body = payload.get("extra_body")
    generation_config = generation_config if isinstance(generation_config, dict) else {}
    extra_body = extra_body if isinstance(extra_body, dict) else {}

    config = (
        generation_config.get("thinkingConfig")
        or extra_body.get("thinkingConfig")
        or payload.get("thinkingConfig")
    )
    if config:
        return config

    anthropic = extra_body.get("thinking") or payload.get("thinking")
    if isinstance(anthropic, dict):
        budget = anthropic.get("budget_tokens") or anthropic.get("budgetTokens")
        if anthropic.get("type") == "enabled" or budget:
            return {
                "includeThoughts": True,
                "thinkingBudget": budget or DEFAULT_THINKING_BUDGET,
            }
    return None


def resolve_thinking_config(
    source_config: Any,
    is_thinking_model: bool,
    thinking_budget: Optional[int] = None,
    thinking_level: Optional[str] = None,
) -> Optional[Dict[str, Any]]:
    """Final thinking config for the request.

    Thinking-capable models always run with thinking on, including Claude
    with assistant history: the reconciler keeps its signatures valid. A
    tier budget or level from the model name wins over the host's budget.
    """
    if thinking_level:
        return {"includeThoughts": True, "thinkingLevel": thinking_level}

    if is_thinking_model:
        existing = source_config.get("thinkingBudget") if isinstance(source_config, dict) else None
        if thinking_budget:
            budget = thinking_budget
        elif isinstance(existing, (int, float)) and existing > 0:
            budget = existing
        else:
            budget = DEFAULT_THINKING_BUDGET
        return {"includeThoughts": True, "thinkingBudget": budget}

    return normalize_thinking_config(source_config)


def thinking_is_enabled(config: Optional[Dict[str, Any]]) -> bool:
    if not config:
        return False
    if config.get("thinkingLevel"):
        return True
    budget = config.get("thinkingBudget")
    return isinstance(budget, (int, float)) and budget > 0


def apply_thinking_config(payload: Dict[str, Any], config: Optional[Dict[str, Any]]) -> None:
    """Set generationConfig.thinkingConfig and drop the host's source fields."""
    generation_config = payload.get("generationConfig")
    if config:
        generation_config = dict(generation_config) if isinstance(generation_config, dict) else {}
        generation_config["thinkingConfig"] = config
        payload["generationConfig"] = generation_config
    elif isinstance(generation_config, dict) and "thinkingConfig" in generation_config:
        payload["generationConfig"] = {
            k: v for k, v in generation_config.items() if k != "thinkingConfig"
        }

    extra_body = payload.get("extra_body")
    if isinstance(extra_body, dict):
        payload["extra_body"] = {
            k: v for k, v in extra_body.items() if k not in ("thinkingConfig", "thinking")
        }
    payload.pop("thinkingConfig", None)
    payload.pop("thinking", None)


# ---------------------------------------------------------------------------
# Cached content
# ---------------------------------------------------------------------------


def extract_cached_content(payload: Dict[str, Any]) -> Optional[str]:
    extra_body = payload.get("extra_body")
    extra_body = extra_body if isinstance(extra_body, dict) else {}
    for value in (
        payload.get("cached_content"),
        payload.get("cachedContent"),
        extra_body.get("cached_content"),
        extra_body.get("cachedContent"),
    ):
        if isinstance(value, str) and value:
            return value
    return None


def cleanup_cached_content_fields(payload: Dict[str, Any]) -> None:
    payload.pop("cached_content", None)
    payload.pop("cachedContent", None)

    extra_body = payload.get("extra_body")
    if isinstance(extra_body, dict):
        extra_body = {
            k: v for k, v in extra_body.items() if k not in ("cached_content", "cachedContent")
        }
        if extra_body:
            payload["extra_body"] = extra_body
        else:
            payload.pop("extra_body")


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@dataclass
class ToolDebugInfo:
    missing: int = 0
    summaries: List[str] = field(default_factory=list)
    payload: Optional[str] = None


def _tool_schema(tool: Dict[str, Any], decl: Optional[Dict[str, Any]] = None) -> Any:
    decl = decl or {}
    function = tool.get("function") if isinstance(tool.get("function"), dict) else {}
    custom = tool.get("custom") if isinstance(tool.get("custom"), dict) else {}
    for candidate in (
        decl.get("parameters"),
        decl.get("input_schema"),
        decl.get("inputSchema"),
        tool.get("parameters"),
        tool.get("input_schema"),
        tool.get("inputSchema"),
        function.get("parameters"),
        function.get("input_schema"),
        function.get("inputSchema"),
        custom.get("parameters"),
        custom.get("input_schema"),
    ):
        if candidate:
            return candidate
    return None


def _tool_field(tool: Dict[str, Any], decl: Optional[Dict[str, Any]], key: str) -> Optional[str]:
    for source in (decl or {}, tool, tool.get("function"), tool.get("custom")):
        if isinstance(source, dict) and source.get(key):
            return source[key]
    return None


def _declaration(
    tool: Dict[str, Any], decl: Optional[Dict[str, Any]], index: int, source: str, debug: ToolDebugInfo
) -> Dict[str, Any]:
    schema = _tool_schema(tool, decl)
    name = _tool_field(tool, decl, "name") or f"tool-{index}"
    if not schema:
        debug.missing += 1
    debug.summaries.append(f"decl={name},src={source},hasSchema={'y' if schema else 'n'}")
    return {
        "name": name,
        "description": _tool_field(tool, decl, "description") or "",
        "parameters": simplify_schema(schema) if schema else dict(EMPTY_SCHEMA),
    }


def _collect_declarations(tools: List[Any], debug: ToolDebugInfo) -> Tuple[List[Dict[str, Any]], List[Any]]:
    declarations: List[Dict[str, Any]] = []
    passthrough: List[Any] = []
    for tool in tools:
        if not isinstance(tool, dict):
            passthrough.append(tool)
            continue
        decls = tool.get("functionDeclarations")
        if isinstance(decls, list) and decls:
            for decl in decls:
                declarations.append(
                    _declaration(tool, decl, len(declarations), "functionDeclarations", debug)
                )
            continue
        if any(k in tool for k in ("function", "custom", "parameters", "input_schema", "inputSchema")):
            source = tool.get("function") or tool.get("custom") or tool
            declarations.append(
                _declaration(tool, source, len(declarations), "function/custom", debug)
            )
            continue
        passthrough.append(tool)
    return declarations, passthrough


def normalize_tools_for_claude(tools: List[Any], debug: ToolDebugInfo) -> List[Any]:
    """Fold every function-style tool into one functionDeclarations entry."""
    declarations, passthrough = _collect_declarations(tools, debug)
    result: List[Any] = []
    if declarations:
        result.append({"functionDeclarations": declarations})
    return result + passthrough


def normalize_tools_for_gemini(tools: List[Any], debug: ToolDebugInfo) -> List[Any]:
    """Same folding, keeping only the built-in tools Gemini understands."""
    declarations, passthrough = _collect_declarations(tools, debug)
    result: List[Any] = []
    if declarations:
        result.append({"functionDeclarations": declarations})
    for tool in passthrough:
        if isinstance(tool, dict) and any(key in tool for key in GEMINI_NATIVE_TOOLS):
            result.append(tool)
        else:
            debug.summaries.append(f"dropped={tool!r:.60}")
    return result


# ---------------------------------------------------------------------------
# Conversation rewrite
# ---------------------------------------------------------------------------


def rewrite_conversation(
    turns: Any,
    family: ModelFamily,
    *,
    session_id: Optional[str] = None,
    signatures: Optional[SignatureStore] = None,
    keep_thinking: Optional[bool] = None,
    thinking_enabled: bool = True,
) -> Tuple[Any, PairingReport]:
    """Repair tool pairing, then reconcile thinking, then re-validate.

    Pairing goes first because it can add calls that the thinking rules
    must then cover.
    """
    if not isinstance(turns, list):
        return turns, PairingReport()
    if keep_thinking is None:
        keep_thinking = keep_thinking_enabled()

    repaired, repair_report = ensure_tool_pairing(turns, auto_fix=True)
    result = reconcile_thinking(
        repaired,
        family,
        session_id=session_id,
        signatures=signatures,
        keep_thinking=keep_thinking,
        thinking_enabled=thinking_enabled,
    )

    if (
        family is ModelFamily.CLAUDE
        and keep_thinking
        and thinking_enabled
        and detect_style(result) is ConversationStyle.ANTHROPIC
    ):
        result = apply_compatibility_fixes(result, is_claude_thinking_model=True)

    report = validate_tool_pairing(result)
    report.warnings = repair_report.warnings
    report.auto_fixed = repair_report.auto_fixed
    if not report.valid:
        logger.warning(
            "Conversation still has unpaired tool blocks: calls=%s results=%s",
            report.orphaned_calls,
            report.orphaned_results,
        )
    return result, report


def transform_request_payload(
    parsed_body: Dict[str, Any],
    model_info: ParsedModelInfo,
    tool_debug: Optional[ToolDebugInfo] = None,
    *,
    session_id: Optional[str] = None,
    signatures: Optional[SignatureStore] = None,
    keep_thinking: Optional[bool] = None,
    reports: Optional[List[PairingReport]] = None,
) -> Dict[str, Any]:
    """Rewrite an unwrapped request body for the target model."""
    payload = dict(parsed_body)
    tool_debug = tool_debug if tool_debug is not None else ToolDebugInfo()
    resolved = resolve_model_with_tier(model_info.raw_model)

    # 1. Thinking config
    source = extract_thinking_source(payload)
    config = resolve_thinking_config(
        source,
        model_info.is_thinking_model or resolved.is_thinking_model,
        thinking_budget=resolved.thinking_budget,
        thinking_level=resolved.thinking_level,
    )
    apply_thinking_config(payload, config)
    if model_info.is_claude and has_assistant_history(payload.get("contents")):
        logger.debug("Claude request with assistant history, thinking=%s", thinking_is_enabled(config))

    # 2. System instruction field name
    if "system_instruction" in payload:
        payload["systemInstruction"] = payload.pop("system_instruction")

    # 3. Cached content
    cached_content = extract_cached_content(payload)
    cleanup_cached_content_fields(payload)
    if cached_content:
        payload["cachedContent"] = cached_content

    # 4. Tools
    if isinstance(payload.get("tools"), list):
        if model_info.is_claude:
            payload["tools"] = normalize_tools_for_claude(payload["tools"], tool_debug)
        else:
            payload["tools"] = normalize_tools_for_gemini(payload["tools"], tool_debug)
        tool_debug.payload = json.dumps(payload["tools"], default=str)

    # 5. Conversations
    collected = reports if reports is not None else []

    def rewrite(turns):
        rewritten, report = rewrite_conversation(
            turns,
            model_info.family,
            session_id=session_id,
            signatures=signatures,
            keep_thinking=keep_thinking,
            thinking_enabled=thinking_is_enabled(config),
        )
        collected.append(report)
        return rewritten

    payload = rewrite_conversations(payload, rewrite)

    # 6. Model is set on the envelope
    payload.pop("model", None)
    return payload


def wrap_for_antigravity(
    payload: Dict[str, Any],
    model: str,
    project_id: Optional[str],
    session_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Antigravity ``v1internal`` envelope around a request body."""
    effective_project = (project_id or "").strip() or _generate_project_id()
    return {
        "project": effective_project,
        "model": model,
        "request": {
            **payload,
            "sessionId": session_id or _generate_session_id(),
        },
        "requestType": "agent",
        "userAgent": "antigravity",
        "requestId": _generate_request_id(),
    }


# ---------------------------------------------------------------------------
# Request preparation
# ---------------------------------------------------------------------------


@dataclass
class PreparedRequest:
    url: str
    headers: Dict[str, str]
    body: Optional[str]
    streaming: bool = False
    requested_model: Optional[str] = None
    effective_model: Optional[str] = None
    project_id: Optional[str] = None
    endpoint: Optional[str] = None
    family: Optional[ModelFamily] = None
    session_id: Optional[str] = None
    tool_debug_missing: int = 0
    tool_debug_summary: str = ""
    tool_debug_payload: Optional[str] = None
    pairing_reports: List[PairingReport] = field(default_factory=list)


def _set_auth(headers: Dict[str, str], access_token: str) -> Dict[str, str]:
    updated = {k: v for k, v in headers.items() if k.lower() not in ("x-api-key", "authorization")}
    updated["Authorization"] = f"Bearer {access_token}"
    return updated


def _apply_configured_family(model_info: ParsedModelInfo) -> ParsedModelInfo:
    """Let the config file's model patterns pick the reconciliation policy."""
    configured = configured_model_family(model_info.raw_model)
    if configured not in {family.value for family in ModelFamily}:
        return model_info
    if configured != model_info.family.value:
        logger.debug("Model %s mapped to family %s by config", model_info.raw_model, configured)
    return replace(model_info, family=ModelFamily(configured))


def prepare_request(
    url: str,
    body: Optional[str],
    access_token: str,
    project_id: Optional[str],
    *,
    headers: Optional[Dict[str, str]] = None,
    endpoint: Optional[str] = None,
    session_id: Optional[str] = None,
    signatures: Optional[SignatureStore] = None,
    keep_thinking: Optional[bool] = None,
    debug_tools: Optional[bool] = None,
) -> PreparedRequest:
    """
    Rewrite a Generative Language request into an Antigravity request.

    Args:
        url: URL the host was about to call
        body: JSON request body as sent by the host
        access_token: OAuth bearer token
        project_id: Gateway project; a synthetic one is used when empty
        headers: Host headers to carry over
        endpoint: Gateway base URL (defaults to the daily sandbox)
        session_id: Signature store session; also sent as the request sessionId
        signatures: Signature store consulted by thinking reconciliation
        keep_thinking: Claude override; None reads ANTIGRAVITY_KEEP_THINKING, then the config file
        debug_tools: Add the tool debug header; None reads ANTIGRAVITY_DEBUG_TOOLS

    Returns:
        PreparedRequest: URL, headers and body to send

    Raises:
        ValueError: If the body is not valid JSON
    """
    base_headers = dict(headers or {})

    if not is_generative_language_request(url):
        return PreparedRequest(url=url, headers=base_headers, body=body)

    model_info = parse_model_from_url(url)
    if model_info is None:
        return PreparedRequest(url=url, headers=_set_auth(base_headers, access_token), body=body)
    model_info = _apply_configured_family(model_info)

    base = (endpoint or ANTIGRAVITY_ENDPOINT).rstrip("/")
    transformed_url = f"{base}/v1internal:{model_info.action}"
    if model_info.is_streaming:
        transformed_url += "?alt=sse"

    session = session_id or _generate_session_id()
    tool_debug = ToolDebugInfo()
    reports: List[PairingReport] = []
    resolved_project = (project_id or "").strip()
    out_body = body

    if isinstance(body, str) and body:
        try:
            parsed = json.loads(body)
        except json.JSONDecodeError as e:
            raise ValueError(f"Request body is not valid JSON: {e}") from e
        if not isinstance(parsed, dict):
            raise ValueError("Request body must be a JSON object")

        if isinstance(parsed.get("project"), str) and "request" in parsed:
            # Already wrapped: only the conversations inside still need work
            def rewrite(turns):
                rewritten, report = rewrite_conversation(
                    turns,
                    model_info.family,
                    session_id=session,
                    signatures=signatures,
                    keep_thinking=keep_thinking,
                )
                reports.append(report)
                return rewritten

            wrapped = rewrite_conversations({**parsed, "model": model_info.raw_model}, rewrite)
            resolved_project = parsed["project"]
        else:
            transformed = transform_request_payload(
                parsed,
                model_info,
                tool_debug,
                session_id=session,
                signatures=signatures,
                keep_thinking=keep_thinking,
                reports=reports,
            )
            wrapped = wrap_for_antigravity(transformed, model_info.raw_model, project_id, session)
            resolved_project = wrapped["project"]
        out_body = json.dumps(wrapped)

    out_headers = _set_auth(base_headers, access_token)
    out_headers["Content-Type"] = "application/json"
    out_headers.update(ANTIGRAVITY_HEADERS)
    if model_info.is_streaming:
        out_headers["Accept"] = "text/event-stream"
    if model_info.is_claude and model_info.is_thinking_model:
        out_headers["anthropic-beta"] = CLAUDE_INTERLEAVED_THINKING_BETA

    if debug_tools is None:
        debug_tools = debug_tools_enabled()
    if debug_tools and tool_debug.missing > 0:
        out_headers[TOOLS_DEBUG_HEADER] = str(tool_debug.missing)

    return PreparedRequest(
        url=transformed_url,
        headers=out_headers,
        body=out_body,
        streaming=model_info.is_streaming,
        requested_model=model_info.raw_model,
        effective_model=model_info.raw_model,
        project_id=resolved_project,
        endpoint=transformed_url,
        family=model_info.family,
        session_id=session,
        tool_debug_missing=tool_debug.missing,
        tool_debug_summary=" | ".join(tool_debug.summaries[:20]),
        tool_debug_payload=tool_debug.payload,
        pairing_reports=reports,
    )
