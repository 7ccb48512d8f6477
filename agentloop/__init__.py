"""
agentloop - turn-execution engine for streaming LLM agents.
"""

__version__ = "0.1.0"

from agentloop.core.context_window import ContextWindow, Message, MessageRole
from agentloop.core.streaming_parser import StreamingToolParser, DisplayText, ToolCall
from agentloop.core.tool_dispatch import ToolDispatcher, ToolExecutor, ToolResult
from agentloop.core.execution_context import ExecutionContext
from agentloop.core.turn_controller import TurnController, TurnSettings, TurnResult, TurnState

__all__ = [
    "ContextWindow",
    "Message",
    "MessageRole",
    "StreamingToolParser",
    "DisplayText",
    "ToolCall",
    "ToolDispatcher",
    "ToolExecutor",
    "ToolResult",
    "ExecutionContext",
    "TurnController",
    "TurnSettings",
    "TurnResult",
    "TurnState",
]
