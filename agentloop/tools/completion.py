"""
final_output - ends the turn with a summary.

The completion gate runs in the turn controller before this executor is
reached, so here the call always succeeds.
"""

from agentloop.core.execution_context import ExecutionContext
from agentloop.core.streaming_parser import ToolCall
from agentloop.core.tool_dispatch import ToolExecutor


class FinalOutputExecutor(ToolExecutor):
    category = "completion"
    names = ("final_output",)

    async def run(self, call: ToolCall, ctx: ExecutionContext) -> str:
        summary = call.args.get("summary")
        if isinstance(summary, str) and summary.strip():
            return summary
        return "✅ Turn completed"
