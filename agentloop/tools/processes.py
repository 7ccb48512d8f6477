"""
background_process - start, inspect and stop long-running commands.

Processes belong to the execution context and keep running across turns
until stopped here or at session teardown.
"""

import re

from agentloop.core.execution_context import ExecutionContext
from agentloop.core.streaming_parser import ToolCall
from agentloop.core.tool_dispatch import ToolExecutor

_NAME_RE = re.compile(r"^[A-Za-z0-9_.-]{1,64}$")


class BackgroundProcessExecutor(ToolExecutor):
    category = "process"
    names = ("background_process",)

    async def run(self, call: ToolCall, ctx: ExecutionContext) -> str:
        action = call.args.get("action", "list")
        name = call.args.get("name")

        if action == "list":
            entries = ctx.processes.list()
            if not entries:
                return "No background processes"
            return "\n".join(entry.describe() for entry in entries)

        if not isinstance(name, str) or not _NAME_RE.match(name):
            raise ValueError("Missing or invalid argument: name (letters, digits, '.', '_', '-')")

        if action == "start":
            command = call.args.get("command")
            if not isinstance(command, str) or not command.strip():
                raise ValueError("Missing required argument: command")
            entry = await ctx.processes.start(name, command, ctx.working_dir)
            return f"Started {entry.describe()}\nLogs: {entry.log_path}"

        if action == "logs":
            lines = int(call.args.get("lines", 50))
            output = ctx.processes.read_log(name, tail_lines=lines)
            return output or f"(no output from {name} yet)"

        if action == "stop":
            entry = await ctx.processes.stop(name)
            return f"Stopped {entry.describe()}"

        raise ValueError(f"Invalid action '{action}'. Use start, stop, logs or list")
