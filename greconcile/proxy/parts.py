"""
Structural classification of conversation content blocks.

The same logical block shows up in several wire syntaxes:

- Gemini parts: ``{"thought": true, "text": ..., "thoughtSignature": ...}``,
  ``{"functionCall": {...}}``, ``{"functionResponse": {...}}``
- Anthropic content: ``{"type": "thinking", "thinking": ..., "signature": ...}``,
  ``{"type": "redacted_thinking", "data": ...}``, ``{"type": "tool_use"}``,
  ``{"type": "tool_result"}``
- Generic reasoning: ``{"type": "reasoning", "text": ..., "signature": ...}``
- Nested tool wrappers: ``{"tool_use": {...}}``, ``{"tool_result": {...}}``

``classify`` maps any of them onto a single ``ContentBlock``; everything
downstream works on that instead of probing raw dict keys.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class BlockKind(Enum):
    """Variant tag of a classified block."""

    THINKING = "thinking"
    TOOL_CALL = "tool_call"
    TOOL_RESULT = "tool_result"
    PLAIN = "plain"


class ThinkingStyle(Enum):
    """Wire syntax a thinking block arrived in."""

    GEMINI_THOUGHT = "gemini-thought"
    ANTHROPIC_THINKING = "anthropic-thinking"
    ANTHROPIC_REDACTED = "anthropic-redacted"
    REASONING = "reasoning"


SIGNATURE_KEYS = ("signature", "thoughtSignature")

THINKING_TYPES = {
    "thinking": ThinkingStyle.ANTHROPIC_THINKING,
    "redacted_thinking": ThinkingStyle.ANTHROPIC_REDACTED,
    "reasoning": ThinkingStyle.REASONING,
}

# Types that are visible content even when a signature rides along.
PLAIN_TYPES = {"text", "image", "document", "image_url", "input_text", "output_text"}

# (wrapper key, id key) for tool blocks nested one level down.
_CALL_WRAPPERS = (("functionCall", "id"), ("tool_use", "id"))
_RESULT_WRAPPERS = (("functionResponse", "id"), ("tool_result", "tool_use_id"))

# Nested text unwrapping stops after this many levels.
_MAX_TEXT_DEPTH = 8


@dataclass
class ContentBlock:
    """One classified content block; ``raw`` is the untouched wire value."""

    kind: BlockKind
    raw: Any
    style: Optional[ThinkingStyle] = None
    text: str = ""
    signature: Optional[str] = None
    signature_key: Optional[str] = None
    tool_name: Optional[str] = None
    call_id: Optional[str] = None
    is_error: bool = False

    @property
    def is_thinking(self) -> bool:
        return self.kind is BlockKind.THINKING

    @property
    def is_tool_call(self) -> bool:
        return self.kind is BlockKind.TOOL_CALL

    @property
    def is_tool_result(self) -> bool:
        return self.kind is BlockKind.TOOL_RESULT

    @property
    def is_plain(self) -> bool:
        return self.kind is BlockKind.PLAIN

    @property
    def is_gemini_shape(self) -> bool:
        """True when the block uses Gemini part syntax."""
        return is_gemini_shape(self.raw)


def _first_str(*values: Any) -> Optional[str]:
    for value in values:
        if isinstance(value, str) and value:
            return value
    return None


def _is_true(value: Any) -> bool:
    return value is True or (isinstance(value, str) and value.lower() == "true")


def unwrap_text(value: Any) -> str:
    """Unwrap ``{"text": {"text": "..."}}`` style nesting down to a string."""
    depth = 0
    while isinstance(value, dict) and depth < _MAX_TEXT_DEPTH:
        for key in ("text", "thinking", "thought"):
            if key in value:
                value = value[key]
                break
        else:
            return ""
        depth += 1
    return value if isinstance(value, str) else ""


def extract_signature(block: Any) -> Tuple[Optional[str], Optional[str]]:
    """Return ``(field_name, signature)`` for a block, or ``(None, None)``."""
    if not isinstance(block, dict):
        return None, None
    for key in SIGNATURE_KEYS:
        value = block.get(key)
        if isinstance(value, str) and value:
            return key, value
    nested = block.get("thinking")
    if isinstance(nested, dict):
        value = nested.get("signature")
        if isinstance(value, str) and value:
            return "signature", value
    return None, None


def is_gemini_shape(block: Any) -> bool:
    if not isinstance(block, dict):
        return False
    return (
        "functionCall" in block
        or "functionResponse" in block
        or "thought" in block
        or "thoughtSignature" in block
    )


def _tool_call_payload(block: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for wrapper, _ in _CALL_WRAPPERS:
        if isinstance(block.get(wrapper), dict):
            return block[wrapper]
    if block.get("type") == "tool_use":
        return block
    return None


def _tool_result_payload(block: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    for wrapper, _ in _RESULT_WRAPPERS:
        if isinstance(block.get(wrapper), dict):
            return block[wrapper]
    if block.get("type") == "tool_result":
        return block
    return None


def _result_is_error(result: Dict[str, Any], block: Dict[str, Any]) -> bool:
    if result.get("is_error") or block.get("is_error"):
        return True
    # Gemini reports failures as {"response": {"error": ...}}
    response = result.get("response")
    return isinstance(response, dict) and "error" in response


def _thinking_style(block: Dict[str, Any]) -> Optional[ThinkingStyle]:
    block_type = block.get("type")
    if _is_true(block.get("thought")):
        return ThinkingStyle.GEMINI_THOUGHT
    if block_type in THINKING_TYPES:
        return THINKING_TYPES[block_type]
    if block_type is None and "thinking" in block:
        if "thoughtSignature" in block:
            return ThinkingStyle.GEMINI_THOUGHT
        return ThinkingStyle.ANTHROPIC_THINKING

    signature_key, signature = extract_signature(block)
    if not signature:
        return None
    if block_type is None:
        # Gemini text parts may carry a signature; they stay visible text.
        if isinstance(block.get("text"), str):
            return None
        if signature_key == "thoughtSignature":
            return ThinkingStyle.GEMINI_THOUGHT
        return ThinkingStyle.REASONING
    if block_type in PLAIN_TYPES:
        return None
    # Signed but unrecognized: assume foreign reasoning, let policy decide.
    return ThinkingStyle.REASONING


def _thinking_text(block: Dict[str, Any], style: ThinkingStyle) -> str:
    if style is ThinkingStyle.ANTHROPIC_REDACTED:
        data = block.get("data")
        return data if isinstance(data, str) else ""
    if style is ThinkingStyle.ANTHROPIC_THINKING:
        return unwrap_text(block.get("thinking")) or unwrap_text(block.get("text"))
    return unwrap_text(block.get("text")) or unwrap_text(block.get("thinking"))


def classify(block: Any) -> ContentBlock:
    """Classify a raw block. Total: unknown input becomes a PLAIN block."""
    if not isinstance(block, dict):
        return ContentBlock(BlockKind.PLAIN, block)

    call = _tool_call_payload(block)
    if call is not None:
        return ContentBlock(
            BlockKind.TOOL_CALL,
            block,
            tool_name=_first_str(call.get("name"), block.get("name")),
            call_id=_first_str(call.get("id"), block.get("id")),
        )

    result = _tool_result_payload(block)
    if result is not None:
        return ContentBlock(
            BlockKind.TOOL_RESULT,
            block,
            tool_name=_first_str(result.get("name"), block.get("name")),
            call_id=_first_str(
                result.get("tool_use_id"),
                result.get("id"),
                block.get("tool_use_id"),
                block.get("id"),
            ),
            is_error=_result_is_error(result, block),
        )

    style = _thinking_style(block)
    if style is None:
        return ContentBlock(BlockKind.PLAIN, block)

    signature_key, signature = extract_signature(block)
    if signature_key is None:
        signature_key = "thoughtSignature" if style is ThinkingStyle.GEMINI_THOUGHT else "signature"
    return ContentBlock(
        BlockKind.THINKING,
        block,
        style=style,
        text=_thinking_text(block, style),
        signature=signature,
        signature_key=signature_key,
    )


def with_call_id(block: Any, call_id: str) -> Any:
    """Return a copy of a tool block correlated to ``call_id``.

    The id is written wherever the block already keeps one; blocks without
    any id get it on the inner call/response object.
    """
    if not isinstance(block, dict):
        return block
    updated = dict(block)
    outer_keys = [k for k in ("id", "tool_use_id") if _first_str(block.get(k))]

    for wrapper, id_key in _CALL_WRAPPERS + _RESULT_WRAPPERS:
        inner = block.get(wrapper)
        if not isinstance(inner, dict):
            continue
        for key in outer_keys:
            updated[key] = call_id
        if _first_str(inner.get(id_key)) or not outer_keys:
            updated[wrapper] = {**inner, id_key: call_id}
        return updated

    block_type = block.get("type")
    if block_type == "tool_use":
        updated["id"] = call_id
    elif block_type == "tool_result":
        updated["tool_use_id"] = call_id
    return updated


def make_tool_call(name: str, call_id: str, gemini: bool) -> Dict[str, Any]:
    if gemini:
        return {"functionCall": {"name": name, "args": {}, "id": call_id}}
    return {"type": "tool_use", "id": call_id, "name": name, "input": {}}


def make_tool_result(
    call_id: str, name: Optional[str], payload: str, gemini: bool
) -> Dict[str, Any]:
    """Build an error tool result correlated to ``call_id``."""
    if gemini:
        return {
            "functionResponse": {
                "name": name or "unknown_tool",
                "id": call_id,
                "response": {"error": payload},
            }
        }
    return {
        "type": "tool_result",
        "tool_use_id": call_id,
        "is_error": True,
        "content": payload,
    }


def make_thinking_block(text: str, signature: Optional[str], gemini: bool) -> Dict[str, Any]:
    if gemini:
        block: Dict[str, Any] = {"thought": True, "text": text}
        if signature:
            block["thoughtSignature"] = signature
        return block
    block = {"type": "thinking", "thinking": text}
    if signature:
        block["signature"] = signature
    return block
