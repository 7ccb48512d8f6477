"""
research_status - report on research jobs tracked by the execution context.
"""

from agentloop.core.errors import ResourceLifecycleError
from agentloop.core.execution_context import ExecutionContext
from agentloop.core.streaming_parser import ToolCall
from agentloop.core.tool_dispatch import ToolExecutor


class ResearchStatusExecutor(ToolExecutor):
    category = "research"
    names = ("research_status",)

    async def run(self, call: ToolCall, ctx: ExecutionContext) -> str:
        task_id = call.args.get("id")
        if task_id:
            task = ctx.research.get(task_id)
            if task is None:
                raise ResourceLifecycleError(f"Unknown research task '{task_id}'")
            return task.describe()

        tasks = ctx.research.all()
        if not tasks:
            return "No research tasks"
        return "\n".join(task.describe() for task in tasks)
