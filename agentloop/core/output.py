"""
Output sinks for streamed text, tool activity and status lines.
"""

from typing import TYPE_CHECKING, List, Optional, Tuple

from rich.console import Console
from rich.markup import escape

if TYPE_CHECKING:
    from agentloop.core.streaming_parser import ToolCall
    from agentloop.core.tool_dispatch import ToolResult


class OutputSink:
    """Receives everything a turn shows the user. Default: discard."""

    def write_text(self, text: str) -> None:
        pass

    def tool_started(self, call: "ToolCall") -> None:
        pass

    def tool_finished(self, call: "ToolCall", result: "ToolResult") -> None:
        pass

    def status(self, message: str) -> None:
        pass


NullOutputSink = OutputSink


class ConsoleOutputSink(OutputSink):
    """Renders to a rich Console."""

    def __init__(self, console: Optional[Console] = None, preview_chars: int = 200):
        self.console = console or Console()
        self.preview_chars = preview_chars

    def write_text(self, text: str) -> None:
        self.console.print(text, end="", markup=False, highlight=False, soft_wrap=True)

    def tool_started(self, call: "ToolCall") -> None:
        args = ", ".join(f"{k}={v!r}" for k, v in call.args.items())
        if len(args) > self.preview_chars:
            args = args[:self.preview_chars] + "..."
        self.console.print(f"[dim]⏺ {escape(call.name)}({escape(args)})[/dim]")

    def tool_finished(self, call: "ToolCall", result: "ToolResult") -> None:
        preview = result.text.strip().splitlines()[0] if result.text.strip() else ""
        if len(preview) > self.preview_chars:
            preview = preview[:self.preview_chars] + "..."
        style = "dim" if result.success else "red"
        self.console.print(f"[{style}]  ⎿ {escape(preview)}[/{style}]")

    def status(self, message: str) -> None:
        self.console.print(f"[yellow]{escape(message)}[/yellow]")


class BufferOutputSink(OutputSink):
    """Records output in memory."""

    def __init__(self):
        self.text: List[str] = []
        self.tools: List[Tuple[str, "ToolCall", Optional["ToolResult"]]] = []
        self.statuses: List[str] = []

    @property
    def displayed(self) -> str:
        return "".join(self.text)

    def write_text(self, text: str) -> None:
        self.text.append(text)

    def tool_started(self, call: "ToolCall") -> None:
        self.tools.append(("started", call, None))

    def tool_finished(self, call: "ToolCall", result: "ToolResult") -> None:
        self.tools.append(("finished", call, result))

    def status(self, message: str) -> None:
        self.statuses.append(message)
