"""
Canonicalization of thinking blocks.

Hosts and SDKs decorate thinking blocks with transport metadata
(``cache_control``, ``providerOptions``, ...) and sometimes wrap the text in
another object. The gateway only accepts the minimal field set, so a
thinking block is re-emitted with its style tag, text and optional
signature, in the same wire syntax it came in.
"""

from typing import Any, Dict, Optional, Union

from greconcile.proxy.parts import ContentBlock, ThinkingStyle, classify


def sanitize(block: Union[ContentBlock, Any], signature: Optional[str] = None) -> Any:
    """Return the canonical form of a thinking block.

    ``signature`` replaces the block's own tag (signature restoration).
    Non-thinking input is returned unchanged.
    """
    classified = block if isinstance(block, ContentBlock) else classify(block)
    if not classified.is_thinking:
        return classified.raw

    tag = signature if signature is not None else classified.signature
    style = classified.style

    if style is ThinkingStyle.GEMINI_THOUGHT:
        canonical: Dict[str, Any] = {"thought": True, "text": classified.text}
        if tag:
            canonical["thoughtSignature"] = tag
        return canonical

    if style is ThinkingStyle.ANTHROPIC_REDACTED:
        return {"type": "redacted_thinking", "data": classified.text}

    if style is ThinkingStyle.ANTHROPIC_THINKING:
        canonical = {"type": "thinking", "thinking": classified.text}
        if tag:
            canonical["signature"] = tag
        return canonical

    raw = classified.raw
    canonical = {"type": raw.get("type") or "reasoning", "text": classified.text}
    if tag:
        canonical[classified.signature_key or "signature"] = tag
    return canonical
