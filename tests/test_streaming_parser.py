"""
Tests for the streaming tool-call parser.
"""

import pytest

from agentloop.core.errors import ParseMalformed
from agentloop.core.streaming_parser import (
    DisplayText,
    StreamingToolParser,
    ToolCall,
    find_incomplete_tool_call,
    parse_tool_call_line,
)


def run_parser(chunks, parser=None):
    """Feed all chunks, flush, and return (text, calls)."""
    parser = parser or StreamingToolParser()
    events = []
    for chunk in chunks:
        events.extend(parser.feed(chunk))
    events.extend(parser.flush())
    text = "".join(e.text for e in events if isinstance(e, DisplayText))
    calls = [e for e in events if isinstance(e, ToolCall)]
    return text, calls


class TestParseToolCallLine:
    """Tests for single-line parsing."""

    def test_valid_line(self):
        call = parse_tool_call_line('{"tool": "shell", "args": {"command": "ls"}}\n')
        assert call.name == "shell"
        assert call.args == {"command": "ls"}

    def test_extra_keys_rejected(self):
        with pytest.raises(ParseMalformed):
            parse_tool_call_line('{"tool": "shell", "args": {}, "extra": 1}')

    def test_args_must_be_object(self):
        with pytest.raises(ParseMalformed):
            parse_tool_call_line('{"tool": "shell", "args": "ls"}')

    def test_empty_name_rejected(self):
        with pytest.raises(ParseMalformed):
            parse_tool_call_line('{"tool": "", "args": {}}')

    def test_invalid_json_rejected(self):
        with pytest.raises(ParseMalformed):
            parse_tool_call_line('{"tool": "shell", "args": {')

    def test_prose_in_argument_keys_rejected(self):
        with pytest.raises(ParseMalformed):
            parse_tool_call_line('{"tool": "shell", "args": {"Let me check the files": 1}}')


class TestStreamingToolParser:
    """Tests for chunked parsing."""

    def test_call_split_across_chunks(self):
        text, calls = run_parser([
            "Checking.\n",
            '{"tool": "sh',
            'ell", "args": {"command": "ls"}}\n',
            "Done.",
        ])

        assert calls == [ToolCall("shell", {"command": "ls"})]
        assert text == "Checking.\nDone."
        assert '"tool"' not in text

    def test_plain_text_any_split_is_unchanged(self):
        message = "Hello there.\n{not json}\nA {\"tool\": 1} inline.\n  indented\n"
        for i in range(len(message) + 1):
            for j in range(i, len(message) + 1, 3):
                text, calls = run_parser([message[:i], message[i:j], message[j:]])
                assert calls == []
                assert text == message

    def test_inline_json_is_text(self):
        line = 'Use {"tool": "shell", "args": {}} to run things.\n'
        text, calls = run_parser([line])
        assert calls == []
        assert text == line

    def test_duplicate_call_suppressed(self):
        parser = StreamingToolParser()
        call_line = '{"tool": "shell", "args": {"command": "ls"}}\n'
        text, calls = run_parser([call_line, call_line], parser)

        assert len(calls) == 1
        assert parser.suppressed_duplicates == 1

    def test_duplicate_with_only_whitespace_between_suppressed(self):
        call_line = '{"tool": "shell", "args": {"command": "ls"}}\n'
        text, calls = run_parser([call_line, "\n  \n", call_line])
        assert len(calls) == 1

    def test_same_call_after_real_text_runs_twice(self):
        call_line = '{"tool": "shell", "args": {"command": "ls"}}\n'
        text, calls = run_parser([call_line, "Again:\n", call_line])
        assert len(calls) == 2

    def test_different_args_not_duplicates(self):
        text, calls = run_parser([
            '{"tool": "shell", "args": {"command": "ls"}}\n',
            '{"tool": "shell", "args": {"command": "pwd"}}\n',
        ])
        assert [c.args["command"] for c in calls] == ["ls", "pwd"]

    def test_malformed_call_is_text(self):
        line = '{"tool": "shell", "args": {"command": "ls"}\n'
        text, calls = run_parser([line])
        assert calls == []
        assert text == line

    def test_extra_keys_line_is_text(self):
        line = '{"tool": "shell", "args": {}, "id": 3}\n'
        text, calls = run_parser([line])
        assert calls == []
        assert text == line

    def test_brace_prefix_is_buffered(self):
        parser = StreamingToolParser()
        assert parser.feed('{"tool": "sh') == []
        assert parser.buffered == '{"tool": "sh'

        events = parser.flush()
        assert events == [DisplayText('{"tool": "sh')]
        assert parser.buffered == ""

    def test_prose_streams_before_newline(self):
        parser = StreamingToolParser()
        assert parser.feed("Hello") == [DisplayText("Hello")]
        assert parser.feed(" world") == [DisplayText(" world")]
        assert parser.buffered == ""

    def test_call_at_end_without_newline(self):
        text, calls = run_parser(['{"tool": "final_output", "args": {"summary": "ok"}}'])
        assert calls == [ToolCall("final_output", {"summary": "ok"})]
        assert text == ""

    def test_call_inside_code_fence_executes(self):
        text, calls = run_parser([
            "```json\n",
            '{"tool": "shell", "args": {"command": "ls"}}\n',
            "```\n",
        ])
        assert len(calls) == 1
        assert text == "```json\n```\n"

    def test_multibyte_split_in_prose(self):
        data = "Café ☕ ready\n".encode("utf-8")
        split = data.index("☕".encode("utf-8")) + 1
        text, calls = run_parser([data[:split], data[split:]])
        assert text == "Café ☕ ready\n"

    def test_multibyte_split_in_call_args(self):
        data = '{"tool": "shell", "args": {"command": "echo é"}}\n'.encode("utf-8")
        split = data.index("é".encode("utf-8")) + 1
        text, calls = run_parser([data[:split], data[split:]])
        assert calls == [ToolCall("shell", {"command": "echo é"})]

    def test_native_duplicate_suppressed(self):
        parser = StreamingToolParser()
        parser.feed('{"tool": "todo_read", "args": {}}\n')
        events = parser.feed_native([ToolCall("todo_read", {})])
        assert events == []
        assert parser.suppressed_duplicates == 1

    def test_provenance_assigned(self):
        parser = StreamingToolParser(provenance="turn1")
        _, calls = run_parser(['{"tool": "todo_read", "args": {}}\n'], parser)
        assert calls[0].provenance == "turn1"

    def test_reset_clears_duplicate_memory(self):
        parser = StreamingToolParser()
        call_line = '{"tool": "todo_read", "args": {}}\n'
        parser.feed(call_line)
        parser.reset()
        assert parser.feed(call_line) == [ToolCall("todo_read", {})]

    def test_discard_buffer_keeps_duplicate_memory(self):
        parser = StreamingToolParser()
        call_line = '{"tool": "todo_read", "args": {}}\n'
        parser.feed(call_line)
        parser.feed('{"tool": "par')
        parser.discard_buffer()

        assert parser.buffered == ""
        assert parser.feed(call_line) == []


class TestFindIncompleteToolCall:
    """Tests for truncated call detection."""

    def test_truncated_call_found(self):
        text = 'Writing the file.\n{"tool": "write_file", "args": {"path": "a.py", "content": "x'
        assert find_incomplete_tool_call(text).startswith('{"tool": "write_file"')

    def test_plain_text_has_none(self):
        assert find_incomplete_tool_call("All done.\nNothing else.") is None

    def test_complete_call_is_not_incomplete(self):
        assert find_incomplete_tool_call('{"tool": "todo_read", "args": {}}') is None
