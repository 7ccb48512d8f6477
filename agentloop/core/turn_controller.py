"""
Turn Controller
Drives one turn: send the history, stream the reply through the parser,
run tool calls as they complete, and decide whether to continue.

    Sending -> Streaming -> ToolExecuting -> Streaming ... -> Finishing
    Finishing -> Done | AutoContinue (-> Sending) | Fatal

A stream that ran tools goes back to Sending so the model sees the results.
"""

import asyncio
import time
from contextlib import aclosing
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from loguru import logger

from agentloop.core.checklist import completion_gate
from agentloop.core.context_window import CompactionOutcome, ContextWindow, MessageRole
from agentloop.core.dehydration import FragmentStore
from agentloop.core.error_handling import backoff_delay, classify_error
from agentloop.core.errors import (
    FatalTurnError,
    SessionPersistenceError,
    TransportError,
    TurnBudgetExceeded,
    UnknownToolError,
)
from agentloop.core.execution_context import ExecutionContext
from agentloop.core.output import OutputSink
from agentloop.core.session_log import SessionLog
from agentloop.core.streaming_parser import (
    DisplayText,
    ParserEvent,
    StreamingToolParser,
    ToolCall,
    find_incomplete_tool_call,
)
from agentloop.core.tool_dispatch import ToolDispatcher, ToolResult
from agentloop.core.utils import clean_llm_tokens, format_duration, truncate
from agentloop.llm.base_client import BaseLLMClient, Usage

TIMING_FOOTER_GLYPH = "⏱"

CONTINUE_PROMPT = "Please continue until you are done. Provide a summary when complete."
INCOMPLETE_TOOL_CALL_PROMPT = (
    "Your previous response was cut off mid-tool-call. Please complete the tool call and continue."
)

_TRUNCATION_STOP_REASONS = {"length", "max_tokens"}


def is_empty_response(text: str) -> bool:
    """
    True if the response has nothing but whitespace and timing-footer lines.

    >>> is_empty_response("⏱ 43.0s | 💭 3.6s")
    True
    >>> is_empty_response("Done!\\n⏱ 43.0s")
    False
    """
    for line in text.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith(TIMING_FOOTER_GLYPH):
            return False
    return True


class TurnState(str, Enum):
    IDLE = "idle"
    SENDING = "sending"
    STREAMING = "streaming"
    TOOL_EXECUTING = "tool_executing"
    FINISHING = "finishing"
    AUTO_CONTINUE = "auto_continue"
    DONE = "done"
    FATAL = "fatal"
    CANCELLED = "cancelled"


@dataclass
class TurnSettings:
    """Knobs for one TurnController."""
    autonomous: bool = False
    compaction_threshold: float = 0.8
    keep_recent_turns: int = 2
    auto_compact: bool = True
    aggressive_dehydration: bool = False
    max_empty_responses: int = 5
    max_tool_calls: int = 200
    max_retries: int = 3
    retry_initial_delay: float = 1.0
    retry_max_delay: float = 10.0
    max_tokens: Optional[int] = None
    temperature: Optional[float] = None
    final_output_tool: str = "final_output"

    def __post_init__(self):
        if not 3 <= self.max_empty_responses <= 10:
            raise ValueError(f"max_empty_responses must be in [3, 10], got {self.max_empty_responses}")
        if self.max_tool_calls < 1:
            raise ValueError("max_tool_calls must be at least 1")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

    @classmethod
    def from_config(cls, config) -> "TurnSettings":
        return cls(
            autonomous=config.autonomous,
            compaction_threshold=config.compaction_threshold,
            keep_recent_turns=config.keep_recent_turns,
            aggressive_dehydration=config.aggressive_dehydration,
            max_empty_responses=config.max_empty_responses,
            max_tool_calls=config.max_tool_calls_per_turn,
            max_retries=config.max_retries,
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )


@dataclass
class TurnResult:
    """What happened during a turn."""
    state: TurnState
    response_text: str = ""
    tool_results: List[ToolResult] = field(default_factory=list)
    completed: bool = False
    error: Optional[str] = None
    iterations: int = 0
    auto_continues: int = 0
    usage: Usage = field(default_factory=Usage)
    elapsed: float = 0.0
    time_to_first_token: Optional[float] = None


@dataclass
class _Iteration:
    """One request/stream cycle inside a turn."""
    text: str = ""
    tools_executed: int = 0
    stop_reason: Optional[str] = None


class TurnController:
    """
    Runs turns for one session.

    Usage:
        controller = TurnController(client, context, dispatcher, ctx, settings)
        result = await controller.run_turn("Add a health check endpoint")
    """

    def __init__(
        self,
        client: BaseLLMClient,
        context: ContextWindow,
        dispatcher: ToolDispatcher,
        exec_ctx: ExecutionContext,
        settings: Optional[TurnSettings] = None,
        output: Optional[OutputSink] = None,
        session_log: Optional[SessionLog] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.client = client
        self.context = context
        self.dispatcher = dispatcher
        self.exec_ctx = exec_ctx
        self.settings = settings or TurnSettings(autonomous=exec_ctx.autonomous)
        self.output = output or OutputSink()
        self.session_log = session_log
        self._sleep = sleep or asyncio.sleep

        if self.settings.aggressive_dehydration and context.fragment_store is None:
            context.fragment_store = exec_ctx.fragments or FragmentStore(exec_ctx.workspace_dir, exec_ctx.session_id)
        if context.fragment_store is not None and exec_ctx.fragments is None:
            # rehydrate reads the same store compaction writes to
            exec_ctx.fragments = context.fragment_store

        self.state = TurnState.IDLE
        self.turn_count = 0
        self._turn_lock = asyncio.Lock()
        self._tool_calls_this_turn = 0
        self._turn_started = 0.0

    # Public API -----------------------------------------------------------------
    async def run_turn(self, user_message: Optional[str] = None) -> TurnResult:
        """
        Run one turn to completion.

        Turns of the same controller never overlap; a second caller waits.

        Raises:
            ValueError: If ``user_message`` is given but blank
            FatalTurnError: Budget exhausted, context overflow, or session log failure
            TransportError: Non-retryable provider failure, or retries exhausted
            asyncio.CancelledError: The turn was cancelled; history stays consistent
        """
        if user_message is not None and not user_message.strip():
            raise ValueError("user_message must not be blank")

        async with self._turn_lock:
            self.turn_count += 1
            self._tool_calls_this_turn = 0
            self._turn_started = time.monotonic()
            result = TurnResult(state=TurnState.SENDING)

            try:
                if user_message is not None:
                    self.context.add(MessageRole.USER, user_message)
                await self._run(result)
            except asyncio.CancelledError:
                self._settle_history()
                self._transition(TurnState.CANCELLED)
                result.state = TurnState.CANCELLED
                logger.warning(f"Turn {self.turn_count} cancelled")
                self._save_session_after_abort("cancelled")
                raise
            except (FatalTurnError, TransportError) as e:
                self._settle_history()
                self._transition(TurnState.FATAL)
                result.state = TurnState.FATAL
                result.error = str(e)
                logger.error(f"Turn {self.turn_count} failed: {e}")
                self._save_session_after_abort("fatal")
                raise

            result.state = TurnState.DONE
            result.elapsed = time.monotonic() - self._turn_started
            self._emit_footer(result)
            self._save_session("completed")
            return result

    async def compact(self) -> CompactionOutcome:
        """Compact now regardless of usage (manual /compact)."""
        outcome = await self.context.force_compact(keep_recent_turns=self.settings.keep_recent_turns)
        self._report_compaction(outcome)
        return outcome

    # Turn loop ------------------------------------------------------------------
    async def _run(self, result: TurnResult) -> None:
        parser = StreamingToolParser(provenance=f"turn-{self.turn_count}")
        empty_responses = 0
        continues = 0
        retried_incomplete = False

        while True:
            result.iterations += 1
            self._transition(TurnState.SENDING)
            self._inject_research_updates()
            await self._compact_if_needed()

            iteration = await self._stream_with_retry(parser, result)

            if result.completed:
                self._transition(TurnState.DONE)
                return
            if iteration.tools_executed:
                continue

            self._transition(TurnState.FINISHING)

            incomplete = find_incomplete_tool_call(iteration.text)
            if incomplete is not None:
                if not retried_incomplete:
                    retried_incomplete = True
                    logger.warning(f"Incomplete tool call in response: {truncate(incomplete, 120)}")
                    self._auto_continue(INCOMPLETE_TOOL_CALL_PROMPT, result)
                    continue
                result.error = "Response ended with an incomplete tool call"
                logger.error(result.error)
                self.output.status(f"⚠️ {result.error}")
                self._transition(TurnState.DONE)
                return

            if is_empty_response(iteration.text):
                empty_responses += 1
                if empty_responses > self.settings.max_empty_responses:
                    raise TurnBudgetExceeded(
                        f"Model returned {empty_responses} empty responses in a row"
                    )
                logger.warning(
                    f"Empty response ({empty_responses}/{self.settings.max_empty_responses}), continuing"
                )
                self._auto_continue(CONTINUE_PROMPT, result)
                continue
            empty_responses = 0

            truncated = iteration.stop_reason in _TRUNCATION_STOP_REASONS
            unfinished = self.settings.autonomous and bool(result.tool_results)
            if truncated or unfinished:
                continues += 1
                if continues <= self.settings.max_empty_responses:
                    reason = "output truncated" if truncated else "tools ran without final_output"
                    logger.warning(f"Auto-continuing ({reason}) {continues}/{self.settings.max_empty_responses}")
                    self._auto_continue(CONTINUE_PROMPT, result)
                    continue
                logger.warning("Auto-continue limit reached, ending turn")
                self.output.status("⚠️ Auto-continue limit reached")

            self._transition(TurnState.DONE)
            return

    async def _stream_with_retry(self, parser: StreamingToolParser, result: TurnResult) -> _Iteration:
        attempt = 0
        while True:
            iteration = _Iteration()
            try:
                await self._stream_once(parser, result, iteration)
                return iteration
            except (TransportError, ConnectionError, asyncio.TimeoutError) as e:
                error = classify_error(e)
                if not error.retryable:
                    if isinstance(e, TransportError):
                        raise
                    raise TransportError(str(e), retryable=False) from e
                if attempt >= self.settings.max_retries:
                    raise TransportError(
                        f"Giving up after {attempt} retries: {e}", retryable=True
                    ) from e

                attempt += 1
                self.context.discard_assistant()
                parser.discard_buffer()
                if iteration.text:
                    result.response_text = result.response_text[:-len(iteration.text)]
                delay = backoff_delay(attempt, self.settings.retry_initial_delay, self.settings.retry_max_delay)
                logger.warning(f"{error}: {e}. Retry {attempt}/{self.settings.max_retries} in {delay:.1f}s")
                self.output.status(
                    f"Connection issue ({error.kind.value}), retrying in {delay:.1f}s "
                    f"({attempt}/{self.settings.max_retries})"
                )
                await self._sleep(delay)

    async def _stream_once(self, parser: StreamingToolParser, result: TurnResult, iteration: _Iteration) -> None:
        messages = self.context.to_provider_messages()
        self._transition(TurnState.STREAMING)

        stream = self.client.stream_chat(
            messages,
            max_tokens=self.settings.max_tokens,
            temperature=self.settings.temperature,
        )
        async with aclosing(stream):
            async for chunk in stream:
                if chunk.usage:
                    result.usage.add(chunk.usage)
                    self.context.update_usage(chunk.usage.total_tokens)

                events: List[ParserEvent] = []
                if chunk.content:
                    if result.time_to_first_token is None:
                        result.time_to_first_token = time.monotonic() - self._turn_started
                    content = clean_llm_tokens(chunk.content) if isinstance(chunk.content, str) else chunk.content
                    events.extend(parser.feed(content))
                if chunk.tool_calls:
                    events.extend(parser.feed_native(chunk.tool_calls))
                await self._handle_events(events, result, iteration)

                if chunk.finished:
                    iteration.stop_reason = chunk.stop_reason
                    break

        await self._handle_events(parser.flush(), result, iteration)
        self.context.commit_assistant()

    async def _handle_events(self, events: List[ParserEvent], result: TurnResult, iteration: _Iteration) -> None:
        for event in events:
            if isinstance(event, DisplayText):
                iteration.text += event.text
                result.response_text += event.text
                self.context.stream_assistant(event.text)
                self.output.write_text(event.text)
            else:
                await self._execute_tool_call(event, result, iteration)
                self._transition(TurnState.STREAMING)

    async def _execute_tool_call(self, call: ToolCall, result: TurnResult, iteration: _Iteration) -> None:
        self._transition(TurnState.TOOL_EXECUTING)
        if self._tool_calls_this_turn >= self.settings.max_tool_calls:
            raise TurnBudgetExceeded(
                f"Tool-call budget of {self.settings.max_tool_calls} per turn exhausted"
            )
        self._tool_calls_this_turn += 1
        call.call_id = call.call_id or f"turn{self.turn_count}_call{self._tool_calls_this_turn}"

        # The call line becomes part of the assistant message that produced it
        last = self.context.last_message()
        needs_newline = self.context.has_open_assistant and last is not None and not last.content.endswith("\n")
        self.context.stream_assistant(("\n" if needs_newline else "") + call.to_wire())
        self.context.commit_assistant(tool_call_id=call.call_id)

        self.output.tool_started(call)
        tool_result = await self._run_tool(call)
        self.context.add(MessageRole.TOOL, tool_result.to_message_content(), tool_call_id=call.call_id)
        self.output.tool_finished(call, tool_result)

        result.tool_results.append(tool_result)
        iteration.tools_executed += 1
        if call.name == self.settings.final_output_tool and tool_result.success:
            result.completed = True

    async def _run_tool(self, call: ToolCall) -> ToolResult:
        if call.name == self.settings.final_output_tool:
            rejection = completion_gate(self.exec_ctx.checklist, self.settings.autonomous)
            if rejection:
                logger.info("final_output rejected: checklist has incomplete items")
                return ToolResult(call, False, rejection)

        try:
            return await self.dispatcher.dispatch(call, self.exec_ctx)
        except UnknownToolError as e:
            logger.warning(str(e))
            return ToolResult(call, False, f"{e}. Available tools: {', '.join(self.dispatcher.tool_names())}")

    # Helpers --------------------------------------------------------------------
    def _transition(self, state: TurnState) -> None:
        if state is not self.state:
            logger.trace(f"Turn {self.turn_count}: {self.state.value} -> {state.value}")
            self.state = state

    def _auto_continue(self, prompt: str, result: TurnResult) -> None:
        self._transition(TurnState.AUTO_CONTINUE)
        result.auto_continues += 1
        self.context.add(MessageRole.USER, prompt)

    async def _compact_if_needed(self) -> None:
        outcome = await self.context.maybe_compact(
            threshold=self.settings.compaction_threshold,
            manual_override=not self.settings.auto_compact,
            keep_recent_turns=self.settings.keep_recent_turns,
        )
        self._report_compaction(outcome)
        self.context.ensure_within_limit()

    def _report_compaction(self, outcome: CompactionOutcome) -> None:
        if outcome.compacted:
            self.output.status(
                f"🗜️ Context compacted: {outcome.messages_replaced} messages, "
                f"~{outcome.tokens_reclaimed} tokens reclaimed"
            )
        elif outcome.error:
            self.output.status(f"⚠️ Compaction skipped: {outcome.error}")

    def _inject_research_updates(self) -> None:
        for task in self.exec_ctx.research.take_finished():
            self.context.add(MessageRole.USER, f"Research update:\n{task.describe()}")

    def _settle_history(self) -> None:
        """Leave history consistent after an aborted turn."""
        self.context.discard_assistant()
        pending = self.context.pending_tool_call_indices()
        if pending and pending[-1] == len(self.context) - 1:
            call_id = self.context.last_message().tool_call_id
            self.context.add(MessageRole.TOOL, "Error: tool execution was interrupted", tool_call_id=call_id)

    def _emit_footer(self, result: TurnResult) -> None:
        footer = f"{TIMING_FOOTER_GLYPH} {format_duration(result.elapsed)}"
        if result.time_to_first_token is not None:
            footer += f" | 💭 {format_duration(result.time_to_first_token)}"
        self.output.status(footer)

    def _save_session(self, status: str) -> None:
        if self.session_log is None:
            return
        self.session_log.save(self.exec_ctx.session_id, self.context, status)

    def _save_session_after_abort(self, status: str) -> None:
        """Save after a failed or cancelled turn without masking the original error."""
        try:
            self._save_session(status)
        except SessionPersistenceError as e:
            logger.error(f"Turn {self.turn_count}: {e}")
