"""
Tool Dispatch
Routes a recognized tool call to exactly one executor.

Executors belong to a closed set of categories tried in a fixed priority
order; within a category, registration order decides. The first executor
that claims the call runs it. Calls run one at a time.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Optional, Tuple

from loguru import logger

from agentloop.core.errors import ResourceLifecycleError, ToolExecutionError, UnknownToolError
from agentloop.core.execution_context import ExecutionContext
from agentloop.core.streaming_parser import ToolCall

CATEGORY_PRIORITY: Tuple[str, ...] = (
    "completion",
    "checklist",
    "process",
    "research",
    "context",
    "file",
    "shell",
    "browser",
    "computer",
)


@dataclass
class ToolResult:
    """Outcome of one tool call."""
    call: ToolCall
    success: bool
    text: str
    duration: float = 0.0

    def to_message_content(self) -> str:
        """Content of the Tool-role message recorded in history."""
        text = self.text if self.text.strip() else "(no output)"
        return text if self.success else f"Error: {text}"


class ToolExecutor(ABC):
    """
    One category of tools.

    Subclasses set ``category`` and ``names`` and implement ``run``. Raising
    from ``run`` marks the call as failed; it does not end the turn.
    """

    category: str = ""
    names: Tuple[str, ...] = ()

    def handles(self, name: str) -> bool:
        return name in self.names

    async def execute(self, call: ToolCall, ctx: ExecutionContext) -> Optional[str]:
        """None if this executor does not claim the call, else its output."""
        if not self.handles(call.name):
            return None
        return await self.run(call, ctx)

    @abstractmethod
    async def run(self, call: ToolCall, ctx: ExecutionContext) -> str:
        ...

    async def cancel(self, call: ToolCall, ctx: ExecutionContext) -> None:
        """Hook for releasing external resources when a call is cancelled."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(category={self.category}, names={list(self.names)})"


class ToolDispatcher:
    """
    Ordered registry of executors.

    Usage:
        dispatcher = ToolDispatcher(default_executors())
        result = await dispatcher.dispatch(call, ctx)
    """

    def __init__(self, executors: Iterable[ToolExecutor] = ()):
        self._executors: List[ToolExecutor] = []
        self._lock = asyncio.Lock()
        for executor in executors:
            self.register(executor)

    @property
    def executors(self) -> Tuple[ToolExecutor, ...]:
        return tuple(self._executors)

    def register(self, executor: ToolExecutor) -> None:
        """
        Add an executor at its category's place in the priority order.

        Raises:
            ValueError: If the category is not a known one
        """
        if executor.category not in CATEGORY_PRIORITY:
            raise ValueError(
                f"Unknown executor category '{executor.category}'. Valid: {', '.join(CATEGORY_PRIORITY)}"
            )
        rank = CATEGORY_PRIORITY.index(executor.category)
        index = len(self._executors)
        for i, existing in enumerate(self._executors):
            if CATEGORY_PRIORITY.index(existing.category) > rank:
                index = i
                break
        self._executors.insert(index, executor)
        logger.debug(f"Registered {executor!r}")

    def tool_names(self) -> List[str]:
        names: List[str] = []
        for executor in self._executors:
            names.extend(n for n in executor.names if n not in names)
        return names

    async def dispatch(self, call: ToolCall, ctx: ExecutionContext) -> ToolResult:
        """
        Run ``call`` with the first executor that claims it.

        Executor failures come back as unsuccessful results.

        Raises:
            UnknownToolError: If no executor claims the call
        """
        async with self._lock:
            started = time.monotonic()
            for executor in self._executors:
                try:
                    output = await executor.execute(call, ctx)
                except asyncio.CancelledError:
                    logger.warning(f"Tool {call.name} cancelled")
                    await self._cancel(executor, call, ctx)
                    raise
                except ResourceLifecycleError as e:
                    logger.warning(f"Tool {call.name}: {e}")
                    return ToolResult(call, False, str(e), time.monotonic() - started)
                except Exception as e:
                    error = ToolExecutionError(call.name, str(e) or e.__class__.__name__)
                    logger.warning(str(error))
                    return ToolResult(call, False, str(error), time.monotonic() - started)

                if output is None:
                    continue

                duration = time.monotonic() - started
                logger.debug(f"Tool {call.name} finished in {duration:.2f}s via {executor.__class__.__name__}")
                return ToolResult(call, True, output, duration)

        raise UnknownToolError(call.name)

    @staticmethod
    async def _cancel(executor: ToolExecutor, call: ToolCall, ctx: ExecutionContext) -> None:
        try:
            await executor.cancel(call, ctx)
        except Exception as e:
            logger.error(f"Cancel hook for {call.name} failed: {e}")
