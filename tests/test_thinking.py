"""
Thinking Reconciliation Tests

Covers the strict strip path used for Claude, the trust-based path used for
everything else (and for Claude when ANTIGRAVITY_KEEP_THINKING=1), the
tool-use ordering repair and tool-loop closure.
"""

import copy

import pytest

from greconcile.proxy.conversation import get_blocks
from greconcile.proxy.parts import classify
from greconcile.proxy.signatures import BYPASS_SIGNATURE
from greconcile.proxy.thinking import (
    SYNTHETIC_THINKING_TEXT,
    TOOL_LOOP_CLOSE_MODEL,
    TOOL_LOOP_CLOSE_USER,
    ModelFamily,
    analyze_conversation_state,
    close_tool_loop_for_thinking,
    deep_filter_thinking_blocks,
    ensure_function_call_signatures,
    ensure_thinking_before_tool_use,
    filter_unsigned_thinking_blocks,
    reconcile_thinking,
    rewrite_conversations,
    sanitize_thinking_for_claude,
    strip_thinking_blocks,
    trim_trailing_thinking,
)
from tests.conftest import SESSION, SIG_A, SIG_B


def thinking_blocks(turns):
    classified = [classify(block) for turn in turns for block in get_blocks(turn) or []]
    return [block for block in classified if block.is_thinking]


def gemini_thought(text, signature=None):
    part = {"thought": True, "text": text}
    if signature:
        part["thoughtSignature"] = signature
    return part


class TestStrictPath:
    """Default policy for the signature-strict family."""

    def test_scenario_call_without_thinking_gets_bypass_block(self):
        turns = [
            {"role": "model", "parts": [{"functionCall": {"name": "bash", "args": {"command": "ls"}}}]}
        ]
        result = reconcile_thinking(turns, ModelFamily.CLAUDE)

        parts = result[0]["parts"]
        assert parts[0] == {
            "thought": True,
            "text": SYNTHETIC_THINKING_TEXT,
            "thoughtSignature": BYPASS_SIGNATURE,
        }
        assert parts[1] == turns[0]["parts"][0]

    def test_anthropic_call_gets_anthropic_bypass_block(self, anthropic_tool_loop):
        result = reconcile_thinking(anthropic_tool_loop[:2], ModelFamily.CLAUDE)
        assert result[1]["content"][0] == {
            "type": "thinking",
            "thinking": SYNTHETIC_THINKING_TEXT,
            "signature": BYPASS_SIGNATURE,
        }

    def test_strips_even_trusted_thinking(self, store):
        store.record(SESSION, "plan", SIG_A)
        turns = [
            {"role": "user", "parts": [{"text": "hi"}]},
            {"role": "model", "parts": [gemini_thought("plan", SIG_A), {"text": "hello"}]},
        ]
        result = reconcile_thinking(
            turns, ModelFamily.CLAUDE, session_id=SESSION, signatures=store
        )
        assert result[1]["parts"] == [{"text": "hello"}]

    def test_only_bypass_tags_survive(self, store):
        turns = [
            {"role": "user", "content": "go"},
            {
                "role": "assistant",
                "content": [
                    {"type": "thinking", "thinking": "a", "signature": SIG_A},
                    {"type": "redacted_thinking", "data": "xyz"},
                    {"type": "tool_use", "id": "t1", "name": "ls", "input": {}},
                    {"type": "reasoning", "text": "late", "signature": SIG_B},
                ],
            },
            {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "t1", "content": ""}]},
        ]
        result = reconcile_thinking(turns, ModelFamily.CLAUDE, session_id=SESSION, signatures=store)
        tags = {block.signature for block in thinking_blocks(result)}
        assert tags == {BYPASS_SIGNATURE}

    def test_thinking_only_turn_is_dropped(self):
        turns = [
            {"role": "user", "parts": [{"text": "hi"}]},
            {"role": "model", "parts": [gemini_thought("musing")]},
            {"role": "user", "parts": [{"text": "again"}]},
        ]
        result = reconcile_thinking(turns, ModelFamily.CLAUDE)
        assert [turn["role"] for turn in result] == ["user", "user"]

    def test_thinking_disabled_strips_without_injecting(self, gemini_tool_loop):
        result = reconcile_thinking(gemini_tool_loop, ModelFamily.CLAUDE, thinking_enabled=False)
        assert result == gemini_tool_loop
        assert thinking_blocks(result) == []

    def test_open_tool_loop_without_thinking_is_closed(self, gemini_tool_loop):
        result = reconcile_thinking(gemini_tool_loop, ModelFamily.CLAUDE)

        assert len(result) == len(gemini_tool_loop) + 2
        assert result[-2] == {"role": "model", "parts": [{"text": TOOL_LOOP_CLOSE_MODEL}]}
        assert result[-1] == {"role": "user", "parts": [{"text": TOOL_LOOP_CLOSE_USER}]}

    def test_loop_opened_with_thinking_is_not_closed(self, gemini_tool_loop):
        turns = copy.deepcopy(gemini_tool_loop)
        turns[1]["parts"].insert(0, gemini_thought("need to list", SIG_A))

        result = reconcile_thinking(turns, ModelFamily.CLAUDE)

        assert len(result) == len(turns)
        assert classify(result[1]["parts"][0]).signature == BYPASS_SIGNATURE

    def test_idempotent(self, gemini_tool_loop):
        once = reconcile_thinking(gemini_tool_loop, ModelFamily.CLAUDE)
        twice = reconcile_thinking(once, ModelFamily.CLAUDE)
        assert twice == once

    def test_input_is_not_mutated(self, anthropic_tool_loop):
        snapshot = copy.deepcopy(anthropic_tool_loop)
        reconcile_thinking(anthropic_tool_loop, ModelFamily.CLAUDE)
        assert anthropic_tool_loop == snapshot

    def test_sanitize_thinking_for_claude_wrapper(self, gemini_tool_loop):
        assert sanitize_thinking_for_claude(gemini_tool_loop, True) == reconcile_thinking(
            gemini_tool_loop, ModelFamily.CLAUDE
        )


class TestTrustPath:
    """Per-block trust evaluation against the signature store."""

    def test_trusted_block_is_kept_and_sanitized(self, store):
        store.record(SESSION, "plan", SIG_A)
        turns = [
            {"role": "user", "parts": [{"text": "hi"}]},
            {
                "role": "model",
                "parts": [
                    {"thought": True, "text": "plan", "thoughtSignature": SIG_A, "cache": 1},
                    {"text": "done"},
                ],
            },
        ]
        result = filter_unsigned_thinking_blocks(turns, SESSION, store)
        assert result[1]["parts"][0] == gemini_thought("plan", SIG_A)

    def test_unsigned_block_gets_its_signature_restored(self, store):
        store.record(SESSION, "plan", SIG_A)
        turns = [{"role": "assistant", "content": [{"type": "thinking", "thinking": "plan"}, {"type": "text", "text": "ok"}]}]
        result = filter_unsigned_thinking_blocks(turns, SESSION, store)
        assert result[0]["content"][0] == {"type": "thinking", "thinking": "plan", "signature": SIG_A}

    def test_truncated_signature_is_treated_as_absent(self, store):
        store.record(SESSION, "plan", SIG_A)
        turns = [{"role": "model", "parts": [gemini_thought("plan", "short"), {"text": "ok"}]}]
        result = filter_unsigned_thinking_blocks(turns, SESSION, store)
        assert result[0]["parts"][0]["thoughtSignature"] == SIG_A

    def test_foreign_signature_is_dropped(self, store):
        store.record(SESSION, "plan", SIG_A)
        turns = [{"role": "model", "parts": [gemini_thought("plan", SIG_B), {"text": "ok"}]}]
        result = filter_unsigned_thinking_blocks(turns, SESSION, store)
        assert result[0]["parts"] == [{"text": "ok"}]

    def test_never_recorded_signature_is_handled_like_unsigned(self, store):
        signed = [{"role": "model", "parts": [gemini_thought("plan", SIG_A), {"text": "ok"}]}]
        unsigned = [{"role": "model", "parts": [gemini_thought("plan"), {"text": "ok"}]}]
        assert filter_unsigned_thinking_blocks(signed, SESSION, store) == filter_unsigned_thinking_blocks(
            unsigned, SESSION, store
        )

    def test_other_sessions_cannot_vouch(self, store):
        store.record("session-other", "plan", SIG_A)
        turns = [{"role": "model", "parts": [gemini_thought("plan", SIG_A), {"text": "ok"}]}]
        result = filter_unsigned_thinking_blocks(turns, SESSION, store)
        assert thinking_blocks(result) == []

    def test_no_session_trusts_nothing(self, store):
        store.record(SESSION, "plan", SIG_A)
        turns = [{"role": "model", "parts": [gemini_thought("plan", SIG_A), {"text": "ok"}]}]
        assert thinking_blocks(filter_unsigned_thinking_blocks(turns, None, store)) == []

    def test_gemini_family_uses_trust_path(self, store):
        store.record(SESSION, "plan", SIG_A)
        turns = [
            {"role": "user", "parts": [{"text": "hi"}]},
            {"role": "model", "parts": [gemini_thought("plan", SIG_A), gemini_thought("other", SIG_B), {"text": "x"}]},
        ]
        result = reconcile_thinking(turns, ModelFamily.GEMINI, session_id=SESSION, signatures=store)
        assert result[1]["parts"] == [gemini_thought("plan", SIG_A), {"text": "x"}]

    def test_gemini_family_signs_first_function_call_only(self):
        turns = [
            {
                "role": "model",
                "parts": [
                    {"functionCall": {"name": "a", "args": {}}},
                    {"functionCall": {"name": "b", "args": {}}},
                ],
            }
        ]
        result = reconcile_thinking(turns, ModelFamily.GEMINI)
        assert result[0]["parts"][0]["thoughtSignature"] == BYPASS_SIGNATURE
        assert "thoughtSignature" not in result[0]["parts"][1]

    def test_gpt_family_does_not_sign_calls(self):
        turns = [{"role": "model", "parts": [{"functionCall": {"name": "a", "args": {}}}]}]
        assert reconcile_thinking(turns, ModelFamily.GPT) == turns

    def test_claude_keep_thinking_keeps_trusted_thinking(self, store, gemini_tool_loop):
        store.record(SESSION, "need to list", SIG_A)
        turns = copy.deepcopy(gemini_tool_loop)
        turns[1]["parts"].insert(0, gemini_thought("need to list", SIG_A))

        result = reconcile_thinking(
            turns, ModelFamily.CLAUDE, session_id=SESSION, signatures=store, keep_thinking=True
        )

        assert result == turns

    def test_claude_keep_thinking_from_environment(self, store, gemini_tool_loop, monkeypatch):
        monkeypatch.setenv("ANTIGRAVITY_KEEP_THINKING", "1")
        store.record(SESSION, "need to list", SIG_A)
        turns = copy.deepcopy(gemini_tool_loop)
        turns[1]["parts"].insert(0, gemini_thought("need to list", SIG_A))

        result = reconcile_thinking(turns, ModelFamily.CLAUDE, session_id=SESSION, signatures=store)

        assert result[1]["parts"][0]["thoughtSignature"] == SIG_A

    @pytest.mark.parametrize("value", ["0", "true", "yes", ""])
    def test_only_literal_one_enables_override(self, store, monkeypatch, value):
        monkeypatch.setenv("ANTIGRAVITY_KEEP_THINKING", value)
        store.record(SESSION, "plan", SIG_A)
        turns = [{"role": "model", "parts": [gemini_thought("plan", SIG_A), {"text": "ok"}]}]
        result = reconcile_thinking(turns, ModelFamily.CLAUDE, session_id=SESSION, signatures=store)
        assert result[0]["parts"] == [{"text": "ok"}]


class TestTrailingTrim:
    def test_trims_untrusted_tail(self):
        blocks = [{"text": "answer"}, gemini_thought("a"), gemini_thought("b")]
        assert trim_trailing_thinking(blocks, lambda block: False) == [{"text": "answer"}]

    def test_stops_at_trusted(self):
        blocks = [{"text": "answer"}, gemini_thought("trusted"), gemini_thought("b")]
        trimmed = trim_trailing_thinking(blocks, lambda block: block.text == "trusted")
        assert trimmed == blocks[:2]

    def test_no_producer_turn_ends_with_untrusted_thinking(self, store):
        store.record(SESSION, "kept", SIG_A)
        turns = [
            {"role": "model", "parts": [{"text": "a"}, gemini_thought("kept"), gemini_thought("junk", SIG_B)]},
        ]
        result = filter_unsigned_thinking_blocks(turns, SESSION, store)
        last = classify(result[0]["parts"][-1])
        assert not last.is_thinking or store.is_trusted(last, SESSION)


class TestOrdering:
    def test_moves_existing_thinking_to_front(self):
        turns = [
            {
                "role": "assistant",
                "content": [
                    {"type": "text", "text": "let me look"},
                    {"type": "tool_use", "id": "t1", "name": "ls", "input": {}},
                    {"type": "thinking", "thinking": "late", "signature": SIG_A},
                ],
            }
        ]
        result = ensure_thinking_before_tool_use(turns)
        content = result[0]["content"]
        assert content[0]["type"] == "thinking"
        assert [block.get("type") for block in content[1:]] == ["text", "tool_use"]

    def test_turn_without_calls_is_untouched(self):
        turns = [{"role": "model", "parts": [{"text": "hi"}]}]
        assert ensure_thinking_before_tool_use(turns) == turns

    def test_consumer_turns_are_untouched(self):
        turns = [{"role": "user", "parts": [{"functionCall": {"name": "odd"}}]}]
        assert ensure_thinking_before_tool_use(turns) == turns

    def test_earliest_thinking_precedes_earliest_call(self, gemini_tool_loop):
        result = reconcile_thinking(gemini_tool_loop, ModelFamily.CLAUDE)
        for turn in result:
            if turn["role"] != "model":
                continue
            kinds = [classify(part) for part in turn["parts"]]
            calls = [i for i, block in enumerate(kinds) if block.is_tool_call]
            thoughts = [i for i, block in enumerate(kinds) if block.is_thinking]
            if calls:
                assert thoughts and thoughts[0] < calls[0]

    def test_function_call_signature_kept_when_present(self):
        turns = [{"role": "model", "parts": [{"functionCall": {"name": "a"}, "thoughtSignature": SIG_A}]}]
        assert ensure_function_call_signatures(turns) == turns


class TestConversationState:
    def test_tool_loop(self, gemini_tool_loop):
        state = analyze_conversation_state(gemini_tool_loop)
        assert state.in_tool_loop
        assert state.turn_start_index == 1
        assert not state.turn_has_thinking
        assert state.last_producer_index == 1
        assert state.has_tool_use_without_thinking

    def test_tool_results_do_not_start_a_new_turn(self, anthropic_tool_loop):
        turns = anthropic_tool_loop + [
            {"role": "assistant", "content": [{"type": "tool_use", "id": "t2", "name": "cat", "input": {}}]},
            {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "t2", "content": ""}]},
        ]
        state = analyze_conversation_state(turns)
        assert state.turn_start_index == 1
        assert state.last_producer_index == 3

    def test_real_user_message_ends_loop(self, anthropic_tool_loop):
        state = analyze_conversation_state(anthropic_tool_loop + [{"role": "user", "content": "thanks"}])
        assert not state.in_tool_loop

    def test_empty(self):
        state = analyze_conversation_state([])
        assert state.turn_start_index == -1
        assert not state.in_tool_loop

    def test_close_tool_loop_anthropic(self, anthropic_tool_loop):
        closed = close_tool_loop_for_thinking(anthropic_tool_loop)
        assert closed[-2] == {"role": "assistant", "content": [{"type": "text", "text": TOOL_LOOP_CLOSE_MODEL}]}
        assert closed[-1] == {"role": "user", "content": [{"type": "text", "text": TOOL_LOOP_CLOSE_USER}]}


class TestMalformedInput:
    @pytest.mark.parametrize("value", [None, "text", {"contents": []}])
    def test_non_list_passes_through(self, value):
        assert reconcile_thinking(value, ModelFamily.CLAUDE) is value
        assert strip_thinking_blocks(value) is value

    def test_odd_turns_pass_through(self):
        turns = ["junk", {"role": "model"}, {"role": "user", "content": "hi"}, {"role": "model", "parts": [None, 3]}]
        assert strip_thinking_blocks(turns) == turns
        assert reconcile_thinking(turns, ModelFamily.GEMINI) == turns


class TestRewriteConversations:
    def test_visits_known_fields_only(self):
        payload = {
            "contents": [{"role": "user", "parts": [{"text": "a"}]}],
            "request": {"messages": [{"role": "user", "content": "b"}]},
            "extra_body": {"contents": []},
            "metadata": {"contents": [{"role": "user"}]},
        }
        seen = []

        def record(turns):
            seen.append(turns)
            return turns + ["marked"]

        result = rewrite_conversations(payload, record)

        assert len(seen) == 3
        assert result["contents"][-1] == "marked"
        assert result["request"]["messages"][-1] == "marked"
        assert result["metadata"] == payload["metadata"]
        assert "marked" not in payload["contents"]

    def test_aliased_list_is_transformed_once(self):
        shared = [{"role": "user", "parts": [{"text": "a"}]}]
        payload = {"contents": shared, "request": {"contents": shared}}
        calls = []

        result = rewrite_conversations(payload, lambda turns: calls.append(1) or turns)

        assert len(calls) == 1
        assert result["contents"] is result["request"]["contents"]

    def test_cycles_terminate(self):
        payload = {"contents": []}
        payload["request"] = payload
        result = rewrite_conversations(payload, lambda turns: turns)
        assert result["request"] is result

    def test_deep_filter(self, store):
        store.record(SESSION, "plan", SIG_A)
        payload = {
            "request": {
                "contents": [
                    {"role": "model", "parts": [gemini_thought("plan", SIG_A), gemini_thought("x", SIG_B), {"text": "y"}]}
                ]
            }
        }
        result = deep_filter_thinking_blocks(payload, SESSION, store)
        assert result["request"]["contents"][0]["parts"] == [gemini_thought("plan", SIG_A), {"text": "y"}]
