"""Built-in tool executors the turn engine relies on."""

from typing import List

from agentloop.core.tool_dispatch import ToolExecutor
from agentloop.tools.checklist import ChecklistExecutor
from agentloop.tools.completion import FinalOutputExecutor
from agentloop.tools.context import RehydrateExecutor
from agentloop.tools.processes import BackgroundProcessExecutor
from agentloop.tools.research import ResearchStatusExecutor


def default_executors() -> List[ToolExecutor]:
    return [
        FinalOutputExecutor(),
        ChecklistExecutor(),
        BackgroundProcessExecutor(),
        ResearchStatusExecutor(),
        RehydrateExecutor(),
    ]


__all__ = [
    "default_executors",
    "BackgroundProcessExecutor",
    "ChecklistExecutor",
    "FinalOutputExecutor",
    "RehydrateExecutor",
    "ResearchStatusExecutor",
]
