"""
Thinking block reconciliation.

Claude, Gemini and GPT backed models disagree on what an outgoing
conversation may contain in the way of reasoning blocks:

- Claude (signature-strict) rejects nearly any signature it did not just
  issue, yet requires assistant turns that call tools to begin with a
  thinking block. By default every thinking block is stripped and a
  bypass-tagged block is re-injected in front of tool calls.
- Everything else, or Claude with ANTIGRAVITY_KEEP_THINKING=1, gets
  per-block trust evaluation against the signature store: trusted blocks
  are sanitized (and have missing tags restored), the rest are dropped.

All functions here take a conversation list and return a new one; the input
is never mutated.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from greconcile.config import keep_thinking_enabled
from greconcile.proxy.conversation import (
    detect_style,
    get_blocks,
    is_producer,
    make_text_block,
    make_turn,
    replace_blocks,
)
from greconcile.proxy.parts import ContentBlock, classify, make_thinking_block
from greconcile.proxy.sanitizer import sanitize
from greconcile.proxy.signatures import BYPASS_SIGNATURE, SignatureStore, is_valid_signature

logger = logging.getLogger(__name__)

# Synthetic turns appended to close a tool loop whose opening turn lost its thinking.
TOOL_LOOP_CLOSE_MODEL = "[Tool execution completed.]"
TOOL_LOOP_CLOSE_USER = "[Continue]"

# Text of injected bypass-tagged thinking blocks.
SYNTHETIC_THINKING_TEXT = "[Thinking]"

# Payload fields holding a conversation, and wrappers that may nest one.
CONVERSATION_KEYS = ("contents", "messages")
WRAPPER_KEYS = ("request", "extra_body")
MAX_WRAPPER_DEPTH = 4


class ModelFamily(Enum):
    """Reconciliation policy selector."""

    CLAUDE = "claude"
    GEMINI = "gemini"
    GPT = "gpt"


@dataclass
class ConversationState:
    """Turn-level facts about where a conversation currently stands."""

    in_tool_loop: bool = False
    turn_start_index: int = -1
    turn_has_thinking: bool = False
    last_producer_index: int = -1
    has_tool_use_without_thinking: bool = False


def _count_thinking(turns: List[Any]) -> int:
    count = 0
    for turn in turns:
        blocks = get_blocks(turn) or []
        count += sum(1 for block in blocks if classify(block).is_thinking)
    return count


def strip_thinking_blocks(turns: Any) -> Any:
    """Remove every thinking/reasoning block from every turn.

    Producer turns left with no blocks at all are dropped, since the
    gateway rejects empty turns.
    """
    if not isinstance(turns, list):
        return turns

    result = []
    for turn in turns:
        blocks = get_blocks(turn)
        if not blocks:
            result.append(turn)
            continue
        kept = [block for block in blocks if not classify(block).is_thinking]
        if len(kept) == len(blocks):
            result.append(turn)
            continue
        if not kept and is_producer(turn):
            logger.debug("Dropping %s turn that only held thinking", turn.get("role"))
            continue
        result.append(replace_blocks(turn, kept))
    return result


def trim_trailing_thinking(
    blocks: List[Any], is_trusted: Callable[[ContentBlock], bool]
) -> List[Any]:
    """Drop unverified thinking blocks from the end of a producer turn."""
    end = len(blocks)
    while end > 0:
        block = classify(blocks[end - 1])
        if not block.is_thinking or is_trusted(block):
            break
        end -= 1
    return blocks[:end]


def _evaluate_thinking(
    block: ContentBlock,
    session_id: Optional[str],
    signatures: Optional[SignatureStore],
) -> Optional[Any]:
    """Sanitized block to keep, or None to drop it."""
    if signatures is None or not session_id:
        return None
    cached = signatures.lookup(session_id, block.text)
    if cached is None:
        # Unsigned, truncated or foreign: none of them can be vouched for.
        return None
    if not is_valid_signature(block.signature):
        return sanitize(block, signature=cached)
    if block.signature == cached:
        return sanitize(block)
    return None


def filter_unsigned_thinking_blocks(
    turns: Any,
    session_id: Optional[str] = None,
    signatures: Optional[SignatureStore] = None,
) -> Any:
    """Trust-based per-block evaluation.

    Keeps thinking blocks whose tag matches the store for their exact text
    (restoring the tag when the block arrived unsigned), drops everything
    else, and trims unverified thinking off the end of producer turns.
    """
    if not isinstance(turns, list):
        return turns

    def is_trusted(block: ContentBlock) -> bool:
        return signatures is not None and signatures.is_trusted(block, session_id)

    result = []
    for turn in turns:
        blocks = get_blocks(turn)
        if blocks is None:
            result.append(turn)
            continue

        kept = []
        for raw in blocks:
            block = classify(raw)
            if not block.is_thinking:
                kept.append(raw)
                continue
            decision = _evaluate_thinking(block, session_id, signatures)
            if decision is not None:
                kept.append(decision)

        if is_producer(turn):
            kept = trim_trailing_thinking(kept, is_trusted)
        result.append(replace_blocks(turn, kept))
    return result


def ensure_thinking_before_tool_use(turns: Any) -> Any:
    """Make every producer turn that calls a tool begin with thinking.

    Thinking already present elsewhere in the turn is moved to the front;
    otherwise a bypass-tagged block is injected.
    """
    if not isinstance(turns, list):
        return turns

    result = []
    for turn in turns:
        blocks = get_blocks(turn)
        if not blocks or not is_producer(turn):
            result.append(turn)
            continue

        classified = [classify(block) for block in blocks]
        first_call = next((c for c in classified if c.is_tool_call), None)
        if first_call is None or classified[0].is_thinking:
            result.append(turn)
            continue

        thinking = [c.raw for c in classified if c.is_thinking]
        if thinking:
            rest = [c.raw for c in classified if not c.is_thinking]
            result.append(replace_blocks(turn, thinking + rest))
            continue

        injected = make_thinking_block(
            SYNTHETIC_THINKING_TEXT, BYPASS_SIGNATURE, gemini=first_call.is_gemini_shape
        )
        result.append(replace_blocks(turn, [injected] + list(blocks)))
    return result


def ensure_function_call_signatures(turns: Any) -> Any:
    """Attach the bypass tag to the first functionCall of each model turn.

    Gemini 3 requires the first function call of a turn to carry a
    thoughtSignature; later parallel calls must not have one.
    """
    if not isinstance(turns, list):
        return turns

    result = []
    for turn in turns:
        blocks = get_blocks(turn)
        if not blocks or not is_producer(turn):
            result.append(turn)
            continue

        updated = list(blocks)
        changed = False
        for index, raw in enumerate(blocks):
            if isinstance(raw, dict) and isinstance(raw.get("functionCall"), dict):
                if not raw.get("thoughtSignature"):
                    updated[index] = {**raw, "thoughtSignature": BYPASS_SIGNATURE}
                    changed = True
                break
        result.append(replace_blocks(turn, updated) if changed else turn)
    return result


def _is_real_user_turn(turn: Any) -> bool:
    if not isinstance(turn, dict) or is_producer(turn):
        return False
    if isinstance(turn.get("content"), str):
        return True
    blocks = get_blocks(turn) or []
    return any(not classify(block).is_tool_result for block in blocks)


def analyze_conversation_state(turns: Any) -> ConversationState:
    """Work out whether we are mid tool-loop and how the current turn began."""
    state = ConversationState()
    if not isinstance(turns, list) or not turns:
        return state

    last_user = -1
    for index, turn in enumerate(turns):
        if is_producer(turn):
            state.last_producer_index = index
            classified = [classify(block) for block in get_blocks(turn) or []]
            for block in classified:
                if block.is_thinking:
                    break
                if block.is_tool_call:
                    state.has_tool_use_without_thinking = True
                    break
        elif _is_real_user_turn(turn):
            last_user = index

    for index in range(last_user + 1, len(turns)):
        if is_producer(turns[index]):
            state.turn_start_index = index
            break

    if state.turn_start_index >= 0:
        blocks = get_blocks(turns[state.turn_start_index]) or []
        state.turn_has_thinking = bool(blocks) and classify(blocks[0]).is_thinking

    last = turns[-1]
    if not is_producer(last):
        blocks = get_blocks(last) or []
        state.in_tool_loop = any(classify(block).is_tool_result for block in blocks)
    return state


def close_tool_loop_for_thinking(turns: Any) -> Any:
    """Append a neutral producer turn and a continuation prompt.

    Closes an open tool loop without rewriting history, so the next real
    turn can start with fresh thinking.
    """
    if not isinstance(turns, list):
        return turns
    style = detect_style(turns)
    return turns + [
        make_turn(True, [make_text_block(TOOL_LOOP_CLOSE_MODEL, style)], style),
        make_turn(False, [make_text_block(TOOL_LOOP_CLOSE_USER, style)], style),
    ]


def reconcile_thinking(
    turns: Any,
    family: ModelFamily,
    *,
    session_id: Optional[str] = None,
    signatures: Optional[SignatureStore] = None,
    keep_thinking: Optional[bool] = None,
    thinking_enabled: bool = True,
) -> Any:
    """Apply the per-family thinking policy to one conversation.

    Args:
        turns: Gemini ``contents`` or Anthropic ``messages`` list
        family: Model family the request is headed to
        session_id: Key into the signature store; None means nothing is trusted
        signatures: Signature store to consult
        keep_thinking: Claude override; None reads ANTIGRAVITY_KEEP_THINKING, then the config file
        thinking_enabled: Whether the target model runs with thinking on

    Returns:
        list: The rewritten conversation, same shape as the input
    """
    if not isinstance(turns, list):
        return turns
    if keep_thinking is None:
        keep_thinking = keep_thinking_enabled()

    before = _count_thinking(turns)

    if family is not ModelFamily.CLAUDE:
        result = filter_unsigned_thinking_blocks(turns, session_id, signatures)
        if family is ModelFamily.GEMINI:
            result = ensure_function_call_signatures(result)
        logger.debug(
            "Thinking reconciliation (%s): %d -> %d thinking blocks",
            family.value,
            before,
            _count_thinking(result),
        )
        return result

    if keep_thinking and thinking_enabled:
        result = filter_unsigned_thinking_blocks(turns, session_id, signatures)
        state = analyze_conversation_state(result)
    else:
        state = analyze_conversation_state(turns)
        result = strip_thinking_blocks(turns)

    if not thinking_enabled:
        logger.debug("Thinking disabled: stripped %d thinking blocks", before)
        return result

    result = ensure_thinking_before_tool_use(result)
    if state.in_tool_loop and not state.turn_has_thinking:
        logger.debug("Closing tool loop whose opening turn had no thinking")
        result = close_tool_loop_for_thinking(result)

    logger.debug(
        "Thinking reconciliation (claude, keep_thinking=%s): %d -> %d thinking blocks",
        keep_thinking,
        before,
        _count_thinking(result),
    )
    return result


def sanitize_thinking_for_claude(
    turns: Any,
    thinking_enabled: bool,
    signatures: Optional[SignatureStore] = None,
    session_id: Optional[str] = None,
    keep_thinking: Optional[bool] = None,
) -> Any:
    """Signature-strict policy entry point."""
    return reconcile_thinking(
        turns,
        ModelFamily.CLAUDE,
        session_id=session_id,
        signatures=signatures,
        keep_thinking=keep_thinking,
        thinking_enabled=thinking_enabled,
    )


def rewrite_conversations(
    payload: Any,
    transform: Callable[[List[Any]], Any],
    _memo: Optional[Dict[int, Any]] = None,
    _depth: int = 0,
) -> Any:
    """Apply ``transform`` to every conversation array in a request payload.

    Only known fields are visited: ``contents``/``messages`` at the top and
    inside ``request``/``extra_body`` wrappers. Containers are tracked by
    identity so aliased or cyclic data is handled once.
    """
    if not isinstance(payload, dict) or _depth > MAX_WRAPPER_DEPTH:
        return payload
    memo = {} if _memo is None else _memo
    if id(payload) in memo:
        return memo[id(payload)]

    updated = dict(payload)
    memo[id(payload)] = updated

    for key in CONVERSATION_KEYS:
        value = payload.get(key)
        if isinstance(value, list):
            if id(value) not in memo:
                memo[id(value)] = transform(value)
            updated[key] = memo[id(value)]

    for key in WRAPPER_KEYS:
        inner = payload.get(key)
        if isinstance(inner, dict):
            updated[key] = rewrite_conversations(inner, transform, memo, _depth + 1)
    return updated


def deep_filter_thinking_blocks(
    payload: Any,
    session_id: Optional[str] = None,
    signatures: Optional[SignatureStore] = None,
) -> Any:
    """Trust-based thinking filter over every conversation in a payload."""
    return rewrite_conversations(
        payload, lambda turns: filter_unsigned_thinking_blocks(turns, session_id, signatures)
    )
