"""
Tests for ContextWindow history, token accounting and compaction.
"""

import asyncio
import random

import pytest

from agentloop.core.context_window import (
    AppendResult,
    ContextWindow,
    Message,
    MessageKind,
    MessageRole,
    SUMMARY_PREFIX,
)
from agentloop.core.errors import ContextOverflowError
from agentloop.core.utils import estimate_tokens


def prose(n: int, word: str = "word") -> str:
    """Prose of roughly n characters without code markers."""
    return ((word + " ") * (n // (len(word) + 1) + 1))[:n]


async def short_summary(messages):
    return "They discussed the setup."


def build_window(turns: int, chars: int = 400, model_limit: int = 128000) -> ContextWindow:
    window = ContextWindow(model_limit=model_limit, summarizer=short_summary)
    window.add(MessageRole.SYSTEM, "You are a helpful agent.")
    for i in range(turns):
        window.add(MessageRole.USER, prose(chars, f"question{i}"))
        window.add(MessageRole.ASSISTANT, prose(chars, f"answer{i}"))
    return window


class TestAppend:
    """Tests for append and the open Assistant message."""

    def test_blank_message_skipped(self):
        window = ContextWindow(model_limit=1000)
        assert window.add(MessageRole.USER, "   \n") is AppendResult.SKIPPED
        assert len(window) == 0

    def test_assistant_after_assistant_merges(self):
        window = ContextWindow(model_limit=1000)
        window.add(MessageRole.USER, "hi")
        window.add(MessageRole.ASSISTANT, "first")
        result = window.add(MessageRole.ASSISTANT, "second")

        assert result is AppendResult.MERGED
        assert len(window) == 2
        assert window.last_message().content == "first\n\nsecond"

    def test_streaming_builds_one_message(self):
        window = ContextWindow(model_limit=1000)
        window.add(MessageRole.USER, "hi")
        window.stream_assistant("Hel")
        window.stream_assistant("lo")

        assert window.has_open_assistant
        message = window.commit_assistant()
        assert message.content == "Hello"
        assert not window.has_open_assistant
        assert len(window) == 2

    def test_other_role_commits_open_assistant(self):
        window = ContextWindow(model_limit=1000)
        window.add(MessageRole.USER, "hi")
        window.stream_assistant("running")
        window.add(MessageRole.TOOL, "output", tool_call_id="c1")

        assert not window.has_open_assistant
        assert [m.role for m in window.messages] == [
            MessageRole.USER, MessageRole.ASSISTANT, MessageRole.TOOL,
        ]

    def test_blank_open_assistant_dropped_on_commit(self):
        window = ContextWindow(model_limit=1000)
        window.add(MessageRole.USER, "hi")
        window.stream_assistant("  ")
        assert window.commit_assistant() is None
        assert len(window) == 1

    def test_discard_removes_new_open_message(self):
        window = ContextWindow(model_limit=1000)
        window.add(MessageRole.USER, "hi")
        window.stream_assistant("partial")
        window.discard_assistant()

        assert len(window) == 1
        assert not window.has_open_assistant

    def test_discard_restores_reopened_message(self):
        window = ContextWindow(model_limit=1000)
        window.add(MessageRole.USER, "hi")
        window.add(MessageRole.ASSISTANT, "done part one")
        window.stream_assistant("part two")
        assert window.last_message().content == "done part one\n\npart two"

        window.discard_assistant()
        assert window.last_message().content == "done part one"

    def test_clear_keeps_system(self):
        window = build_window(turns=2)
        window.clear_conversation()
        assert [m.role for m in window.messages] == [MessageRole.SYSTEM]

    def test_positions_are_insertion_order(self):
        window = build_window(turns=2)
        positions = [m.position for m in window.messages]
        assert positions == sorted(positions)

    def test_random_operations_never_leave_adjacent_assistants(self):
        rng = random.Random(7)
        window = ContextWindow(model_limit=100000)
        roles = [MessageRole.USER, MessageRole.ASSISTANT, MessageRole.TOOL]

        for _ in range(500):
            op = rng.randrange(5)
            if op == 0:
                window.add(rng.choice(roles), rng.choice(["x", "", " ", "text"]))
            elif op == 1:
                window.stream_assistant(rng.choice(["a", " ", "", "b\n"]))
            elif op == 2:
                window.commit_assistant()
            elif op == 3:
                window.discard_assistant()
            else:
                window.add(MessageRole.USER, "next")

            messages = window.messages
            for left, right in zip(messages, messages[1:]):
                assert not (left.role is MessageRole.ASSISTANT and right.role is MessageRole.ASSISTANT)
            if window.has_open_assistant:
                assert messages[-1].role is MessageRole.ASSISTANT


class TestTokenAccounting:
    """Tests for estimates and limits."""

    def test_estimates(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("a" * 40) == 11
        assert estimate_tokens("{" + "a" * 29) == 11

    def test_window_estimate_sums_messages(self):
        window = ContextWindow(model_limit=1000)
        window.add(MessageRole.USER, "a" * 40)
        window.add(MessageRole.ASSISTANT, "b" * 40)
        assert window.token_estimate() == 22
        assert window.remaining_tokens() == 978
        assert window.percentage_used() == pytest.approx(2.2)

    def test_ensure_within_limit(self):
        window = ContextWindow(model_limit=10)
        window.add(MessageRole.USER, "a" * 200)
        with pytest.raises(ContextOverflowError):
            window.ensure_within_limit()

    def test_invalid_limit(self):
        with pytest.raises(ValueError):
            ContextWindow(model_limit=0)


class TestCompaction:
    """Tests for compaction."""

    def test_compaction_keeps_system_and_recent_turns(self):
        window = build_window(turns=4)
        before = window.messages
        tokens_before = window.token_estimate()

        outcome = asyncio.run(window.force_compact(keep_recent_turns=2))

        assert outcome.compacted
        assert outcome.messages_replaced == 4
        assert outcome.tokens_after < tokens_before
        after = window.messages
        assert after[0] == before[0]
        assert after[1].kind is MessageKind.SUMMARY
        assert after[1].role is MessageRole.ASSISTANT
        assert after[1].content.startswith(SUMMARY_PREFIX)
        assert after[2:] == before[5:]

    def test_maybe_compact_below_threshold(self):
        window = build_window(turns=4)
        outcome = asyncio.run(window.maybe_compact(threshold=0.8))
        assert not outcome.compacted
        assert outcome.reason == "below threshold"

    def test_maybe_compact_above_threshold(self):
        window = build_window(turns=4, model_limit=700)
        assert window.should_compact(0.8)
        outcome = asyncio.run(window.maybe_compact(threshold=0.8))
        assert outcome.compacted

    def test_manual_override_disables_automatic(self):
        window = build_window(turns=4, model_limit=700)
        outcome = asyncio.run(window.maybe_compact(threshold=0.8, manual_override=True))
        assert not outcome.compacted
        assert len(window) == 9

    def test_pending_tool_call_preserved(self):
        window = ContextWindow(model_limit=128000, summarizer=short_summary)
        window.add(MessageRole.SYSTEM, "system")
        window.add(MessageRole.USER, prose(400))
        window.add(MessageRole.ASSISTANT, prose(400))
        window.add(MessageRole.USER, "run it")
        window.add(MessageRole.ASSISTANT, '{"tool": "shell", "args": {"command": "ls"}}', tool_call_id="c1")
        window.add(MessageRole.USER, "still there?")
        window.add(MessageRole.ASSISTANT, "yes")
        pending = window.messages[4]

        outcome = asyncio.run(window.force_compact(keep_recent_turns=1))

        assert outcome.compacted
        assert outcome.messages_replaced == 2
        assert pending in window.messages
        assert window.pending_tool_call_indices() == [3]

    def test_tool_result_never_separated_from_call(self):
        window = ContextWindow(model_limit=128000, summarizer=short_summary)
        window.add(MessageRole.SYSTEM, "system")
        window.add(MessageRole.USER, prose(400))
        window.add(MessageRole.ASSISTANT, '{"tool": "shell", "args": {}}', tool_call_id="c1")
        window.add(MessageRole.TOOL, prose(400), tool_call_id="c1")
        window.add(MessageRole.ASSISTANT, prose(400))
        window.add(MessageRole.USER, "next")
        window.add(MessageRole.ASSISTANT, "ok")

        asyncio.run(window.force_compact(keep_recent_turns=1))

        messages = window.messages
        for i, message in enumerate(messages):
            if message.role is MessageRole.TOOL:
                assert messages[i - 1].tool_call_id == message.tool_call_id

    def test_summarizer_failure_leaves_history(self):
        async def failing(messages):
            raise RuntimeError("provider down")

        window = build_window(turns=4)
        before = window.messages
        outcome = asyncio.run(window.force_compact(summarizer=failing))

        assert not outcome.compacted
        assert "provider down" in outcome.error
        assert window.messages == before

    def test_summary_not_smaller_aborts(self):
        async def verbose(messages):
            return prose(10000)

        window = build_window(turns=4)
        before = window.messages
        outcome = asyncio.run(window.force_compact(summarizer=verbose))

        assert not outcome.compacted
        assert "not smaller" in outcome.error
        assert window.messages == before

    def test_history_change_during_summary_aborts(self):
        window = build_window(turns=4)

        async def meddling(messages):
            window.add(MessageRole.USER, "interjection")
            return "summary"

        outcome = asyncio.run(window.force_compact(summarizer=meddling))
        assert not outcome.compacted
        assert len(window) == 10

    def test_too_few_turns(self):
        window = build_window(turns=1)
        outcome = asyncio.run(window.force_compact(keep_recent_turns=2))
        assert not outcome.compacted
        assert outcome.reason == "nothing to compact"

    def test_no_summarizer(self):
        window = ContextWindow(model_limit=1000)
        outcome = asyncio.run(window.force_compact())
        assert outcome.reason == "no summarizer configured"


class TestSnapshot:
    """Tests for snapshot and restore."""

    def test_round_trip(self):
        window = build_window(turns=2)
        restored = ContextWindow.from_snapshot(window.snapshot())

        assert [(m.role, m.content) for m in restored.messages] == [
            (m.role, m.content) for m in window.messages
        ]
        assert restored.model_limit == window.model_limit

    def test_roles_case_insensitive_and_unknown_skipped(self):
        data = {
            "total_tokens": 5000,
            "conversation_history": [
                {"role": "SYSTEM", "content": "sys"},
                {"role": "User", "content": "hi"},
                {"role": "robot", "content": "beep"},
                {"content": "no role"},
                {"role": "assistant", "content": "hello"},
            ],
        }
        window = ContextWindow.from_snapshot(data)

        assert [m.role for m in window.messages] == [
            MessageRole.SYSTEM, MessageRole.USER, MessageRole.ASSISTANT,
        ]
        assert window.model_limit == 5000

    def test_message_to_dict(self):
        message = Message(MessageRole.TOOL, "out", tool_call_id="c1")
        assert message.to_dict() == {"role": "tool", "content": "out", "tool_call_id": "c1"}
