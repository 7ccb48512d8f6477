"""Shared fixtures."""

import tempfile
from pathlib import Path

import pytest

from agentloop.core.compaction import LLMSummarizer
from agentloop.core.context_window import ContextWindow, MessageRole
from agentloop.core.execution_context import ExecutionContext
from agentloop.core.output import BufferOutputSink
from agentloop.core.session_log import SessionLog
from agentloop.core.tool_dispatch import ToolDispatcher
from agentloop.core.turn_controller import TurnController, TurnSettings
from agentloop.llm.mock_client import MockLLMClient
from agentloop.tools import default_executors


@pytest.fixture
def workspace():
    """Temporary directory acting as both working dir and workspace root."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


class Harness:
    """A TurnController wired to a scripted client, recording output and sleeps."""

    def __init__(self, workspace: Path, script, autonomous=False, executors=(), model_limit=128000,
                 chunk_delay=0.0, **settings):
        self.session_id = "turn_test"
        self.client = MockLLMClient(script, chunk_delay=chunk_delay)
        self.context = ContextWindow(model_limit, session_id=self.session_id, summarizer=LLMSummarizer(self.client))
        self.context.add(MessageRole.SYSTEM, "You are a test agent.")
        self.exec_ctx = ExecutionContext.create(
            workspace, self.session_id, workspace_dir=workspace, autonomous=autonomous
        )
        self.dispatcher = ToolDispatcher(list(default_executors()) + list(executors))
        self.output = BufferOutputSink()
        self.session_log = SessionLog(workspace)
        self.sleeps = []
        self.controller = TurnController(
            self.client,
            self.context,
            self.dispatcher,
            self.exec_ctx,
            TurnSettings(autonomous=autonomous, **settings),
            output=self.output,
            session_log=self.session_log,
            sleep=self._fake_sleep,
        )

    async def _fake_sleep(self, delay):
        self.sleeps.append(delay)

    def saved_status(self):
        return self.session_log.load_data(self.session_id)["status"]

    def roles(self):
        return [m.role.value for m in self.context.messages]


@pytest.fixture
def harness(workspace):
    """Factory: harness(script, **settings) -> Harness."""
    def make(script, **kwargs):
        return Harness(workspace, script, **kwargs)
    return make
