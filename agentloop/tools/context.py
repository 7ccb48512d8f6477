"""
rehydrate - bring a dehydrated fragment back into view.
"""

from agentloop.core.errors import ResourceLifecycleError
from agentloop.core.execution_context import ExecutionContext
from agentloop.core.streaming_parser import ToolCall
from agentloop.core.tool_dispatch import ToolExecutor


class RehydrateExecutor(ToolExecutor):
    category = "context"
    names = ("rehydrate",)

    async def run(self, call: ToolCall, ctx: ExecutionContext) -> str:
        if ctx.fragments is None:
            raise ResourceLifecycleError("Dehydration is not enabled for this session")

        fragment_id = call.args.get("fragment_id")
        if not isinstance(fragment_id, str) or not fragment_id:
            raise ValueError("Missing required argument: fragment_id")

        try:
            fragment = ctx.fragments.load(fragment_id)
        except FileNotFoundError as e:
            raise ResourceLifecycleError(f"Fragment {fragment_id} not found") from e
        return fragment.render()
