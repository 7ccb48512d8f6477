"""
Exception hierarchy for the turn engine.

Errors fall in two groups: the ones a turn resolves internally (tool failures,
unknown tools, compaction failures, retryable transport errors) and the ones
that end a turn (subclasses of FatalTurnError and non-retryable transport
errors).
"""

from typing import Optional


class AgentLoopError(Exception):
    """Base class for all agentloop errors."""


class ParseMalformed(AgentLoopError):
    """A candidate tool-call line is not a valid call. Degrades to display text."""

    def __init__(self, line: str, reason: str):
        super().__init__(f"{reason}: {line[:80]!r}")
        self.line = line
        self.reason = reason


class UnknownToolError(AgentLoopError):
    """No registered executor claims the tool name."""

    def __init__(self, name: str):
        super().__init__(f"Unknown tool: {name}")
        self.name = name


class ToolExecutionError(AgentLoopError):
    """An executor raised while running a tool."""

    def __init__(self, name: str, message: str):
        super().__init__(f"{name} failed: {message}")
        self.name = name


class ResourceLifecycleError(AgentLoopError):
    """A long-lived resource (process, browser session) is in the wrong state."""


class CompactionFailure(AgentLoopError):
    """Summarization or dehydration failed; history was left untouched."""


class TransportError(AgentLoopError):
    """
    Provider transport failure.

    Args:
        message: Human readable description
        retryable: Whether the request may be retried
        status_code: HTTP-like status code if the transport reported one
    """

    def __init__(self, message: str, retryable: bool = False, status_code: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class FatalTurnError(AgentLoopError):
    """Ends the turn. Raised out of TurnController.run_turn."""


class TurnBudgetExceeded(FatalTurnError):
    """Tool-call budget or auto-continue ceiling exhausted."""


class ContextOverflowError(FatalTurnError):
    """Hard context limit exceeded and compaction could not free space."""


class SessionPersistenceError(FatalTurnError):
    """The session log could not be written or read."""
