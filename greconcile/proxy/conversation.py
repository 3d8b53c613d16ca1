"""
Conversation shape helpers.

A conversation is either a Gemini ``contents`` array of ``{role, parts}``
turns or an Anthropic ``messages`` array of ``{role, content}`` turns. The
helpers here let the rest of the engine treat both the same way and hand
back the shape it was given.
"""

from enum import Enum
from typing import Any, Dict, List, Optional

PRODUCER_ROLES = {"model", "assistant"}


class ConversationStyle(Enum):
    GEMINI = "gemini"
    ANTHROPIC = "anthropic"


def blocks_key(turn: Any) -> Optional[str]:
    """Name of the field holding the turn's block list, if it has one."""
    if not isinstance(turn, dict):
        return None
    if isinstance(turn.get("parts"), list):
        return "parts"
    if isinstance(turn.get("content"), list):
        return "content"
    return None


def get_blocks(turn: Any) -> Optional[List[Any]]:
    key = blocks_key(turn)
    return turn[key] if key else None


def replace_blocks(turn: Dict[str, Any], blocks: List[Any]) -> Dict[str, Any]:
    """Copy of ``turn`` with its block list swapped for ``blocks``."""
    key = blocks_key(turn) or "parts"
    return {**turn, key: blocks}


def is_producer(turn: Any) -> bool:
    return isinstance(turn, dict) and turn.get("role") in PRODUCER_ROLES


def detect_style(turns: List[Any]) -> ConversationStyle:
    for turn in turns:
        key = blocks_key(turn)
        if key == "parts":
            return ConversationStyle.GEMINI
        if key == "content":
            return ConversationStyle.ANTHROPIC
        if isinstance(turn, dict) and isinstance(turn.get("content"), str):
            return ConversationStyle.ANTHROPIC
    return ConversationStyle.GEMINI


def make_turn(producer: bool, blocks: List[Any], style: ConversationStyle) -> Dict[str, Any]:
    if style is ConversationStyle.GEMINI:
        return {"role": "model" if producer else "user", "parts": blocks}
    return {"role": "assistant" if producer else "user", "content": blocks}


def make_text_block(text: str, style: ConversationStyle) -> Dict[str, Any]:
    if style is ConversationStyle.GEMINI:
        return {"text": text}
    return {"type": "text", "text": text}


def has_assistant_history(turns: Any) -> bool:
    """Checks if a conversation already contains model/assistant turns."""
    if not isinstance(turns, list):
        return False
    return any(is_producer(turn) for turn in turns)
