"""
todo_read / todo_write - the session checklist the completion gate reads.
"""

from agentloop.core.execution_context import ExecutionContext
from agentloop.core.streaming_parser import ToolCall
from agentloop.core.tool_dispatch import ToolExecutor


class ChecklistExecutor(ToolExecutor):
    category = "checklist"
    names = ("todo_read", "todo_write")

    async def run(self, call: ToolCall, ctx: ExecutionContext) -> str:
        if call.name == "todo_read":
            content = ctx.checklist.read()
            if not content.strip():
                return "📝 TODO list is empty"
            return f"📝 TODO list:\n{content}"

        content = call.args.get("content")
        if not isinstance(content, str):
            raise ValueError("Missing required argument: content")
        return ctx.checklist.write(content)
