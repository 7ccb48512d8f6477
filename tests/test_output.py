"""
Tests for output sinks.
"""

from io import StringIO

from rich.console import Console

from agentloop.core.output import BufferOutputSink, ConsoleOutputSink
from agentloop.core.streaming_parser import ToolCall
from agentloop.core.tool_dispatch import ToolResult


def make_console():
    buffer = StringIO()
    return Console(file=buffer, force_terminal=False, width=120), buffer


class TestConsoleOutputSink:
    """Tests for the rich console sink."""

    def test_text_is_not_treated_as_markup(self):
        console, buffer = make_console()
        sink = ConsoleOutputSink(console)
        sink.write_text("[bold]literal[/bold]")
        assert buffer.getvalue() == "[bold]literal[/bold]"

    def test_tool_lines(self):
        console, buffer = make_console()
        sink = ConsoleOutputSink(console, preview_chars=20)
        call = ToolCall("shell", {"command": "ls -la"})
        sink.tool_started(call)
        sink.tool_finished(call, ToolResult(call, True, "a.py\nb.py"))

        output = buffer.getvalue()
        assert "⏺ shell(command='ls -la')" in output
        assert "⎿ a.py" in output

    def test_long_preview_truncated(self):
        console, buffer = make_console()
        sink = ConsoleOutputSink(console, preview_chars=10)
        call = ToolCall("shell", {})
        sink.tool_finished(call, ToolResult(call, False, "x" * 50))
        assert "xxxxxxxxxx..." in buffer.getvalue()


class TestBufferOutputSink:
    """Tests for the in-memory sink."""

    def test_records_everything(self):
        sink = BufferOutputSink()
        call = ToolCall("todo_read", {})
        sink.write_text("a")
        sink.write_text("b")
        sink.tool_started(call)
        sink.status("⏱ 1.0s")

        assert sink.displayed == "ab"
        assert sink.tools == [("started", call, None)]
        assert sink.statuses == ["⏱ 1.0s"]
