"""
Tool call / tool result pairing.

Every tool call in a conversation must be answered by exactly one later tool
result carrying the same correlation id, or the gateway rejects the whole
request. History that was truncated, compacted or replayed by a host often
breaks that: results lose their ids, calls lose their answers, parallel calls
come back out of order.

``validate_tool_pairing`` reports the damage; ``repair_tool_pairing`` fixes
it, guessing as little as possible and saying so when it has to.
"""

import logging
import uuid
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple

from greconcile.proxy.conversation import (
    detect_style,
    get_blocks,
    is_producer,
    make_turn,
    replace_blocks,
)
from greconcile.proxy.parts import (
    ContentBlock,
    classify,
    make_tool_call,
    make_tool_result,
    with_call_id,
)

logger = logging.getLogger(__name__)

TOOL_RESPONSE_UNAVAILABLE = "tool response unavailable"

UNKNOWN_TOOL = "unknown_tool"

# Recovery levels, most to least certain.
LEVEL_ID = "id"
LEVEL_NAME = "name"
LEVEL_ORPHAN = "orphan"
LEVEL_FALLBACK = "fallback"
LEVEL_PLACEHOLDER = "placeholder"


def _missing_id_label(name: Optional[str]) -> str:
    return f"<missing-id:{name or UNKNOWN_TOOL}>"


def _placeholder_id() -> str:
    return f"placeholder-{uuid.uuid4().hex[:12]}"


@dataclass
class PairingReport:
    """Result of a pairing scan, optionally after repair."""

    orphaned_calls: List[str] = field(default_factory=list)
    orphaned_results: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    auto_fixed: bool = False

    @property
    def valid(self) -> bool:
        return not self.orphaned_calls and not self.orphaned_results

    def to_dict(self) -> Dict[str, Any]:
        return {
            "valid": self.valid,
            "orphaned_calls": list(self.orphaned_calls),
            "orphaned_results": list(self.orphaned_results),
            "warnings": list(self.warnings),
            "auto_fixed": self.auto_fixed,
        }


def _iter_blocks(turns: List[Any]):
    """Yield ``(turn_index, block_index, classified)`` in conversation order."""
    for turn_index, turn in enumerate(turns):
        blocks = get_blocks(turn)
        if not blocks:
            continue
        for block_index, raw in enumerate(blocks):
            yield turn_index, block_index, classify(raw)


def validate_tool_pairing(turns: Any) -> PairingReport:
    """Read-only forward scan of call/result correlation.

    A result only answers a call from an earlier turn, and only from a
    consumer turn. Calls and results without ids correlate by tool name in
    arrival order, which is how id-less Gemini function calls pair up
    natively.
    """
    report = PairingReport()
    if not isinstance(turns, list):
        return report

    open_ids: Dict[str, int] = {}
    call_order: List[str] = []
    open_unnamed: "OrderedDict[str, int]" = OrderedDict()
    # Calls of the turn being scanned; they open once the turn ends.
    staged: List[ContentBlock] = []
    current_turn = None

    def open_staged():
        for call in staged:
            if call.call_id:
                open_ids[call.call_id] = open_ids.get(call.call_id, 0) + 1
                call_order.append(call.call_id)
            else:
                name = call.tool_name or UNKNOWN_TOOL
                open_unnamed[name] = open_unnamed.get(name, 0) + 1
        staged.clear()

    for turn_index, _, block in _iter_blocks(turns):
        if turn_index != current_turn:
            open_staged()
            current_turn = turn_index
        if block.is_tool_call:
            staged.append(block)
        elif block.is_tool_result:
            answerable = not is_producer(turns[turn_index])
            if block.call_id:
                if answerable and open_ids.get(block.call_id, 0) > 0:
                    open_ids[block.call_id] -= 1
                else:
                    report.orphaned_results.append(block.call_id)
            else:
                name = block.tool_name or UNKNOWN_TOOL
                if answerable and open_unnamed.get(name, 0) > 0:
                    open_unnamed[name] -= 1
                else:
                    report.orphaned_results.append(_missing_id_label(name))
    open_staged()

    for call_id in call_order:
        if open_ids.get(call_id, 0) > 0:
            report.orphaned_calls.append(call_id)
            open_ids[call_id] -= 1
    for name, count in open_unnamed.items():
        report.orphaned_calls.extend([_missing_id_label(name)] * count)
    return report


class PendingCallIndex:
    """Outstanding call ids for one repair pass.

    FIFO queues per tool name, plus a pool of calls whose name no result
    asked for. Built fresh per pass and thrown away afterwards.
    """

    def __init__(self):
        self._queues: "OrderedDict[str, Deque[str]]" = OrderedDict()
        self._orphans: List[str] = []

    @classmethod
    def from_queues(
        cls,
        queues: Optional[Dict[str, List[str]]] = None,
        orphans: Optional[List[str]] = None,
    ) -> "PendingCallIndex":
        index = cls()
        for name, call_ids in (queues or {}).items():
            for call_id in call_ids:
                index.add(name, call_id)
        for call_id in orphans or []:
            index.add(None, call_id, orphan=True)
        return index

    def add(self, name: Optional[str], call_id: str, orphan: bool = False) -> None:
        if orphan:
            self._orphans.append(call_id)
            return
        self._queues.setdefault(name or UNKNOWN_TOOL, deque()).append(call_id)

    def take_by_id(self, call_id: str) -> bool:
        for queue in self._queues.values():
            if call_id in queue:
                queue.remove(call_id)
                return True
        if call_id in self._orphans:
            self._orphans.remove(call_id)
            return True
        return False

    def take_by_name(self, name: Optional[str]) -> Optional[str]:
        queue = self._queues.get(name or UNKNOWN_TOOL)
        if queue:
            return queue.popleft()
        return None

    def take_orphan(self) -> Optional[str]:
        if self._orphans:
            return self._orphans.pop(0)
        return None

    def take_any(self) -> Optional[str]:
        for queue in self._queues.values():
            if queue:
                return queue.popleft()
        return None

    def remaining(self) -> List[str]:
        pending = [call_id for queue in self._queues.values() for call_id in queue]
        return pending + list(self._orphans)

    def __len__(self) -> int:
        return len(self.remaining())


@dataclass
class RecoveryResult:
    id: str
    recovery_level: str
    warning: Optional[str] = None


def _response_key(response: Any) -> Tuple[Optional[str], Optional[str]]:
    """``(call_id, tool_name)`` of a result block or a bare ``{name, id}`` dict."""
    block = response if isinstance(response, ContentBlock) else classify(response)
    if block.is_tool_result:
        return block.call_id, block.tool_name
    if isinstance(response, dict):
        call_id = response.get("id") or response.get("tool_use_id")
        return call_id or None, response.get("name")
    return None, None


def recover_tool_response_id(response: Any, pending: PendingCallIndex) -> RecoveryResult:
    """Find the call a tool result most plausibly answers.

    Tries, in order: its own id, the oldest pending call of the same name,
    the orphan pool, any pending call at all, and finally a fresh
    placeholder id. The last three levels are guesses and carry a warning.
    The chosen call is consumed from ``pending``.
    """
    call_id, name = _response_key(response)
    label = name or UNKNOWN_TOOL

    if call_id and pending.take_by_id(call_id):
        return RecoveryResult(call_id, LEVEL_ID)

    if name:
        matched = pending.take_by_name(name)
        if matched:
            return RecoveryResult(matched, LEVEL_NAME)

    matched = pending.take_orphan()
    if matched:
        warning = f"Tool result for '{label}' paired with orphaned call {matched}"
        logger.warning(warning)
        return RecoveryResult(matched, LEVEL_ORPHAN, warning)

    matched = pending.take_any()
    if matched:
        warning = f"Tool result for '{label}' had no matching call, fell back to call {matched}"
        logger.warning(warning)
        return RecoveryResult(matched, LEVEL_FALLBACK, warning)

    placeholder = _placeholder_id()
    warning = f"Tool result for '{label}' matches no call, using placeholder id {placeholder}"
    logger.warning(warning)
    return RecoveryResult(placeholder, LEVEL_PLACEHOLDER, warning)


def _existing_call_ids(turns: List[Any]) -> set:
    return {b.call_id for _, _, b in _iter_blocks(turns) if b.is_tool_call and b.call_id}


def assign_function_call_ids(turns: Any) -> Any:
    """Give id-less tool calls a ``tool-call-N`` id.

    Id-less results are then bound, oldest first, to earlier freshly
    numbered calls of the same tool name.
    """
    if not isinstance(turns, list):
        return turns

    taken = _existing_call_ids(turns)
    counter = 0
    queues: Dict[str, List[str]] = {}
    result = []

    for turn in turns:
        blocks = get_blocks(turn)
        if not blocks:
            result.append(turn)
            continue

        updated = list(blocks)
        changed = False
        for index, raw in enumerate(blocks):
            block = classify(raw)
            if block.is_tool_call:
                call_id = block.call_id
                if not call_id:
                    counter += 1
                    while f"tool-call-{counter}" in taken:
                        counter += 1
                    call_id = f"tool-call-{counter}"
                    taken.add(call_id)
                    updated[index] = with_call_id(raw, call_id)
                    changed = True
                    queues.setdefault(block.tool_name or UNKNOWN_TOOL, []).append(call_id)
            elif block.is_tool_result and not block.call_id:
                queue = queues.get(block.tool_name or UNKNOWN_TOOL)
                if queue:
                    updated[index] = with_call_id(raw, queue.pop(0))
                    changed = True

        result.append(replace_blocks(turn, updated) if changed else turn)
    return result


@dataclass
class _CallRef:
    turn_index: int
    block: ContentBlock
    resolved: bool = False


def _next_consumer_insert_at(blocks: List[Any]) -> int:
    """Index just past the leading tool results of a consumer turn."""
    position = 0
    while position < len(blocks) and classify(blocks[position]).is_tool_result:
        position += 1
    return position


def _move_results_to_consumers(turns: List[Any]) -> List[Any]:
    """Carry tool results found in producer turns into the next consumer turn.

    The results go in front of that turn's blocks, or into a new consumer
    turn when the next turn cannot take them. A producer turn left with no
    blocks is dropped.
    """
    style = detect_style(turns)
    result: List[Any] = []
    carried: List[Any] = []

    for turn in turns:
        blocks = get_blocks(turn)
        if carried:
            if blocks is not None and not is_producer(turn):
                result.append(replace_blocks(turn, carried + list(blocks)))
                carried = []
                continue
            result.append(make_turn(False, carried, style))
            carried = []

        if blocks and is_producer(turn):
            misplaced = [raw for raw in blocks if classify(raw).is_tool_result]
            if misplaced:
                logger.info("Moving %d tool result(s) out of a %s turn", len(misplaced), turn.get("role"))
                carried = misplaced
                kept = [raw for raw in blocks if not classify(raw).is_tool_result]
                if kept:
                    result.append(replace_blocks(turn, kept))
                continue
        result.append(turn)

    if carried:
        result.append(make_turn(False, carried, style))
    return result


def repair_tool_pairing(turns: Any) -> Tuple[Any, PairingReport]:
    """Rewrite a conversation so that every call has exactly one result.

    Results that answer nothing get an id recovered for them, or a
    placeholder call inserted before them. Calls nobody answered get an
    error result in the following consumer turn. Re-validating the output
    always comes back clean.
    """
    if not isinstance(turns, list):
        return turns, PairingReport()

    working = assign_function_call_ids(_move_results_to_consumers(turns))
    style = detect_style(working)
    warnings: List[str] = []

    # Explicit ids claim the earliest earlier call with the same id.
    open_by_id: Dict[str, List[_CallRef]] = {}
    call_refs: Dict[Tuple[int, int], _CallRef] = {}
    unmatched: Dict[Tuple[int, int], ContentBlock] = {}
    for turn_index, block_index, block in _iter_blocks(working):
        if block.is_tool_call:
            ref = _CallRef(turn_index, block)
            call_refs[(turn_index, block_index)] = ref
            open_by_id.setdefault(block.call_id, []).append(ref)
        elif block.is_tool_result:
            refs = open_by_id.get(block.call_id) if block.call_id else None
            if refs and refs[0].turn_index < turn_index:
                refs.pop(0).resolved = True
            else:
                unmatched[(turn_index, block_index)] = block

    wanted_names = {block.tool_name or UNKNOWN_TOOL for block in unmatched.values()}
    pending = PendingCallIndex()
    open_refs: Dict[str, List[_CallRef]] = {}
    replacements: Dict[Tuple[int, int], Any] = {}
    placeholder_calls: Dict[int, List[Any]] = {}

    # Calls become claimable once their own turn is over.
    staged: List[_CallRef] = []
    current_turn = None
    for turn_index, block_index, block in _iter_blocks(working):
        if turn_index != current_turn:
            for staged_ref in staged:
                name = staged_ref.block.tool_name or UNKNOWN_TOOL
                pending.add(name, staged_ref.block.call_id, orphan=name not in wanted_names)
            staged = []
            current_turn = turn_index

        position = (turn_index, block_index)
        ref = call_refs.get(position)
        if ref is not None:
            if not ref.resolved:
                staged.append(ref)
                open_refs.setdefault(block.call_id, []).append(ref)
            continue
        if position not in unmatched:
            continue

        recovery = recover_tool_response_id(block, pending)
        if recovery.warning:
            warnings.append(recovery.warning)
        replacements[position] = with_call_id(block.raw, recovery.id)
        if recovery.recovery_level == LEVEL_PLACEHOLDER:
            call = make_tool_call(
                block.tool_name or UNKNOWN_TOOL, recovery.id, gemini=block.is_gemini_shape
            )
            placeholder_calls.setdefault(turn_index, []).append(call)
        else:
            open_refs[recovery.id].pop(0).resolved = True

    new_blocks: Dict[int, List[Any]] = {}
    for (turn_index, block_index), raw in replacements.items():
        blocks = new_blocks.setdefault(turn_index, list(get_blocks(working[turn_index])))
        blocks[block_index] = raw

    insert_before: Dict[int, List[Any]] = {}
    for turn_index, calls in placeholder_calls.items():
        producer_index = next(
            (i for i in range(turn_index - 1, -1, -1) if is_producer(working[i]) and get_blocks(working[i]) is not None),
            None,
        )
        if producer_index is None:
            insert_before.setdefault(turn_index, []).extend(calls)
        else:
            blocks = new_blocks.setdefault(producer_index, list(get_blocks(working[producer_index])))
            blocks.extend(calls)

    insert_after: Dict[int, List[Any]] = {}
    for refs in open_refs.values():
        for ref in refs:
            if ref.resolved:
                continue
            block = ref.block
            logger.info(
                "Tool call %s (%s) has no result, answering with an error",
                block.call_id,
                block.tool_name,
            )
            answer = make_tool_result(
                block.call_id, block.tool_name, TOOL_RESPONSE_UNAVAILABLE, gemini=block.is_gemini_shape
            )
            following = ref.turn_index + 1
            if (
                following < len(working)
                and not is_producer(working[following])
                and get_blocks(working[following]) is not None
            ):
                blocks = new_blocks.setdefault(following, list(get_blocks(working[following])))
                blocks.insert(_next_consumer_insert_at(blocks), answer)
            else:
                insert_after.setdefault(ref.turn_index, []).append(answer)

    repaired = []
    for turn_index, turn in enumerate(working):
        if turn_index in insert_before:
            repaired.append(make_turn(True, insert_before[turn_index], style))
        if turn_index in new_blocks:
            repaired.append(replace_blocks(turn, new_blocks[turn_index]))
        else:
            repaired.append(turn)
        if turn_index in insert_after:
            repaired.append(make_turn(False, insert_after[turn_index], style))

    report = validate_tool_pairing(repaired)
    report.warnings = warnings
    report.auto_fixed = repaired != turns
    if not report.valid:
        logger.error(
            "Tool pairing repair left orphans: calls=%s results=%s",
            report.orphaned_calls,
            report.orphaned_results,
        )
    return repaired, report


def ensure_tool_pairing(turns: Any, auto_fix: bool = False) -> Tuple[Any, PairingReport]:
    """Validate, and repair when asked to and something is wrong."""
    report = validate_tool_pairing(turns)
    if report.valid or not auto_fix:
        return turns, report
    logger.debug(
        "Repairing tool pairing: %d orphaned calls, %d orphaned results",
        len(report.orphaned_calls),
        len(report.orphaned_results),
    )
    return repair_tool_pairing(turns)
