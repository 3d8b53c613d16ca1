"""
Workarounds for host plugins that rewrite history.

Context pruning plugins replace old assistant messages with synthetic
summaries that carry no thinking block, which Claude rejects with
"Expected 'thinking', but found 'text'". A redacted thinking block in front
of such messages keeps them acceptable.
"""

import logging
from typing import Any, List

from greconcile.proxy.parts import classify

logger = logging.getLogger(__name__)

DCP_SYNTHETIC_REDACTED_THINKING = {
    "type": "redacted_thinking",
    "data": "W0RDUF0=",
}


def _starts_with_thinking(blocks: List[Any]) -> bool:
    return bool(blocks) and classify(blocks[0]).is_thinking


def fix_dcp_synthetic_messages(messages: Any) -> Any:
    """Prepend redacted thinking to assistant messages that lack it."""
    if not isinstance(messages, list):
        return messages

    fixed = []
    patched = 0
    for message in messages:
        if not isinstance(message, dict) or message.get("role") != "assistant":
            fixed.append(message)
            continue

        key = "content" if message.get("content") else "parts" if message.get("parts") else None
        blocks = message.get(key) if key else None
        if not isinstance(blocks, list) or not blocks or _starts_with_thinking(blocks):
            fixed.append(message)
            continue

        fixed.append({**message, key: [dict(DCP_SYNTHETIC_REDACTED_THINKING)] + blocks})
        patched += 1

    if patched:
        logger.debug("Prepended redacted thinking to %d synthetic assistant messages", patched)
    return fixed


def apply_compatibility_fixes(messages: Any, is_claude_thinking_model: bool) -> Any:
    if not is_claude_thinking_model:
        return messages
    return fix_dcp_synthetic_messages(messages)
