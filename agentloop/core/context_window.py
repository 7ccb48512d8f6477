"""
Context Window
Owns the ordered conversation history of one session, its token accounting,
and compaction.

Invariants:
- messages keep insertion order
- at most one open Assistant message exists, and it is always last
- two committed Assistant messages are never adjacent
- an Assistant tool call with no matching Tool result is never compacted away
"""

from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from loguru import logger

from agentloop.core.errors import CompactionFailure, ContextOverflowError
from agentloop.core.utils import estimate_tokens

if TYPE_CHECKING:
    from agentloop.core.dehydration import FragmentStore

SUMMARY_PREFIX = "Previous conversation summary:"


class MessageRole(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"

    @classmethod
    def parse(cls, value: str) -> "MessageRole":
        """Case-insensitive lookup. Raises ValueError for unknown roles."""
        return cls(str(value).strip().lower())


class MessageKind(str, Enum):
    REGULAR = "regular"
    SUMMARY = "summary"


@dataclass(frozen=True)
class Message:
    """One history entry. Never edited in place once committed."""
    role: MessageRole
    content: str
    tool_call_id: Optional[str] = None
    position: int = 0
    kind: MessageKind = MessageKind.REGULAR

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        if self.kind is not MessageKind.REGULAR:
            data["kind"] = self.kind.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any], position: int = 0) -> "Message":
        return cls(
            role=MessageRole.parse(data["role"]),
            content=data.get("content") or "",
            tool_call_id=data.get("tool_call_id"),
            position=position,
            kind=MessageKind(data.get("kind", MessageKind.REGULAR.value)),
        )


class AppendResult(Enum):
    APPENDED = "appended"
    MERGED = "merged"
    SKIPPED = "skipped"


@dataclass
class CompactionOutcome:
    """Result of a compaction attempt. ``error`` is set when it failed."""
    compacted: bool
    tokens_before: int
    tokens_after: int
    messages_replaced: int = 0
    reason: str = ""
    error: Optional[str] = None
    fragment_path: Optional[Path] = None

    @property
    def tokens_reclaimed(self) -> int:
        return max(self.tokens_before - self.tokens_after, 0)


# Takes the messages being replaced, returns the summary text
Summarizer = Callable[[List[Message]], Awaitable[str]]


class ContextWindow:
    """
    Conversation history for a single session.

    Usage:
        window = ContextWindow(model_limit=128000, summarizer=LLMSummarizer(client))
        window.append(Message(MessageRole.SYSTEM, system_prompt))
        window.append(Message(MessageRole.USER, "Fix the failing test"))

        window.stream_assistant("Looking at ")
        window.stream_assistant("the test now.")
        window.commit_assistant()

        outcome = await window.maybe_compact(threshold=0.8)
    """

    def __init__(
        self,
        model_limit: int,
        session_id: Optional[str] = None,
        summarizer: Optional[Summarizer] = None,
        fragment_store: Optional["FragmentStore"] = None,
    ):
        if model_limit <= 0:
            raise ValueError("model_limit must be positive")
        self.model_limit = model_limit
        self.session_id = session_id
        self.summarizer = summarizer
        self.fragment_store = fragment_store

        self._messages: List[Message] = []
        self._open = False
        # Committed message that the open one extends, restored on discard
        self._open_base: Optional[Message] = None
        self._next_position = 0
        self._revision = 0

        self.cumulative_tokens = 0
        self.compaction_count = 0

    # Read access ----------------------------------------------------------------
    @property
    def messages(self) -> Tuple[Message, ...]:
        return tuple(self._messages)

    @property
    def has_open_assistant(self) -> bool:
        return self._open

    @property
    def revision(self) -> int:
        """Incremented on every mutation."""
        return self._revision

    def last_message(self) -> Optional[Message]:
        return self._messages[-1] if self._messages else None

    def __len__(self) -> int:
        return len(self._messages)

    def to_provider_messages(self) -> List[Dict[str, Any]]:
        """History in the role/content shape provider clients accept."""
        return [m.to_dict() for m in self._messages]

    # Mutation -------------------------------------------------------------------
    def append(self, message: Message) -> AppendResult:
        """
        Add a message.

        Assistant content following an Assistant message (open or committed)
        is merged into it. Any other role first commits an open Assistant
        message. Blank messages are skipped.
        """
        if not message.content.strip():
            logger.debug(f"Skipping empty {message.role.value} message")
            return AppendResult.SKIPPED

        last = self.last_message()
        if message.role is MessageRole.ASSISTANT and last is not None and last.role is MessageRole.ASSISTANT:
            separator = "" if self._open else "\n\n"
            self._messages[-1] = replace(
                last,
                content=last.content + separator + message.content,
                tool_call_id=message.tool_call_id or last.tool_call_id,
            )
            self._revision += 1
            return AppendResult.MERGED

        if self._open:
            self.commit_assistant()

        self._messages.append(replace(message, position=self._take_position()))
        self._revision += 1
        return AppendResult.APPENDED

    def add(self, role: MessageRole, content: str, tool_call_id: Optional[str] = None) -> AppendResult:
        return self.append(Message(role=role, content=content, tool_call_id=tool_call_id))

    def stream_assistant(self, text: str) -> None:
        """Extend the open Assistant message, opening one if needed."""
        if not text:
            return

        last = self.last_message()
        if self._open:
            self._messages[-1] = replace(last, content=last.content + text)
        elif last is not None and last.role is MessageRole.ASSISTANT:
            self._open_base = last
            self._messages[-1] = replace(last, content=last.content + "\n\n" + text)
            self._open = True
        else:
            self._open_base = None
            self._messages.append(Message(MessageRole.ASSISTANT, text, position=self._take_position()))
            self._open = True
        self._revision += 1

    def commit_assistant(self, tool_call_id: Optional[str] = None) -> Optional[Message]:
        """Seal the open Assistant message. A blank one is dropped instead."""
        if not self._open:
            return None

        self._open = False
        self._open_base = None
        self._revision += 1
        last = self._messages[-1]
        if not last.content.strip():
            self._messages.pop()
            return None
        if tool_call_id:
            last = replace(last, tool_call_id=tool_call_id)
            self._messages[-1] = last
        return last

    def discard_assistant(self) -> None:
        """Drop the open Assistant message (e.g. on cancellation)."""
        if not self._open:
            return
        if self._open_base is not None:
            self._messages[-1] = self._open_base
        else:
            self._messages.pop()
        self._open = False
        self._open_base = None
        self._revision += 1

    def clear_conversation(self) -> None:
        """Drop everything except System messages."""
        self._messages = [m for m in self._messages if m.role is MessageRole.SYSTEM]
        self._open = False
        self._open_base = None
        self._revision += 1
        logger.info("Conversation cleared")

    # Token accounting -----------------------------------------------------------
    def token_estimate(self) -> int:
        return sum(estimate_tokens(m.content) for m in self._messages)

    def percentage_used(self) -> float:
        return self.token_estimate() / self.model_limit * 100

    def remaining_tokens(self) -> int:
        return max(self.model_limit - self.token_estimate(), 0)

    def update_usage(self, total_tokens: int) -> None:
        """Record provider-reported usage. Informational only."""
        self.cumulative_tokens += max(total_tokens, 0)

    def should_compact(self, threshold: float) -> bool:
        return self.token_estimate() / self.model_limit >= threshold

    def ensure_within_limit(self) -> None:
        """Raises ContextOverflowError when history exceeds the hard limit."""
        used = self.token_estimate()
        if used > self.model_limit:
            raise ContextOverflowError(
                f"Context uses ~{used} tokens, over the {self.model_limit} token limit"
            )

    # Compaction -----------------------------------------------------------------
    def pending_tool_call_indices(self) -> List[int]:
        """Indices of Assistant tool calls that have no Tool result yet."""
        resolved = {
            m.tool_call_id for m in self._messages
            if m.role is MessageRole.TOOL and m.tool_call_id
        }
        return [
            i for i, m in enumerate(self._messages)
            if m.role is MessageRole.ASSISTANT and m.tool_call_id and m.tool_call_id not in resolved
        ]

    def compactable_span(self, keep_recent_turns: int = 2) -> Optional[Tuple[int, int]]:
        """
        Locate the oldest compactable span as ``(start, end)``, end exclusive.

        Excluded: the leading System prompt, the last ``keep_recent_turns``
        turns (each starts at a User message), the open Assistant message and
        anything from the first pending tool call onward. The span is then
        shortened until the first kept message is neither Assistant nor Tool,
        so the summary never sits next to an Assistant message and no Tool
        result loses its call.
        """
        msgs = self._messages
        start = 1 if msgs and msgs[0].role is MessageRole.SYSTEM else 0
        end = len(msgs) - 1 if self._open else len(msgs)

        if keep_recent_turns > 0:
            user_indices = [i for i in range(start, len(msgs)) if msgs[i].role is MessageRole.USER]
            if len(user_indices) < keep_recent_turns:
                return None
            end = min(end, user_indices[-keep_recent_turns])

        pending = [i for i in self.pending_tool_call_indices() if i >= start]
        if pending:
            end = min(end, pending[0])

        while start < end < len(msgs) and msgs[end].role in (MessageRole.ASSISTANT, MessageRole.TOOL):
            end -= 1

        if end - start < 2:
            return None
        return start, end

    async def maybe_compact(
        self,
        threshold: float = 0.8,
        manual_override: bool = False,
        keep_recent_turns: int = 2,
        summarizer: Optional[Summarizer] = None,
    ) -> CompactionOutcome:
        """
        Compact when usage reaches ``threshold`` of the model limit.

        ``manual_override`` turns automatic compaction off for this call.
        Failures leave history untouched and come back in the outcome.
        """
        tokens = self.token_estimate()
        if manual_override:
            return CompactionOutcome(False, tokens, tokens, reason="automatic compaction disabled")
        if tokens / self.model_limit < threshold:
            return CompactionOutcome(False, tokens, tokens, reason="below threshold")

        logger.info(
            f"Context at {tokens / self.model_limit:.0%} of {self.model_limit} tokens, compacting"
        )
        return await self.force_compact(keep_recent_turns=keep_recent_turns, summarizer=summarizer)

    async def force_compact(
        self,
        keep_recent_turns: int = 2,
        summarizer: Optional[Summarizer] = None,
    ) -> CompactionOutcome:
        """Compact the oldest span regardless of usage."""
        before = self.token_estimate()
        summarizer = summarizer or self.summarizer
        if summarizer is None:
            return CompactionOutcome(False, before, before, reason="no summarizer configured")

        span = self.compactable_span(keep_recent_turns)
        if span is None:
            return CompactionOutcome(False, before, before, reason="nothing to compact")

        start, end = span
        replaced = self._messages[start:end]
        revision = self._revision

        try:
            summary = await summarizer(list(replaced))
            summary_message, fragment = self._build_summary(replaced, summary)
        except Exception as e:
            logger.warning(f"Compaction aborted, history unchanged: {e}")
            return CompactionOutcome(False, before, before, reason="summarization failed", error=str(e))

        if self._revision != revision:
            return CompactionOutcome(
                False, before, before,
                reason="history changed during summarization",
                error="history changed during summarization",
            )

        fragment_path = None
        if fragment is not None:
            try:
                fragment_path = self.fragment_store.write(fragment)
            except OSError as e:
                logger.error(f"Could not dehydrate compacted span, history unchanged: {e}")
                return CompactionOutcome(False, before, before, reason="dehydration failed", error=str(e))

        # Single reference swap: readers see the old list or the new one
        self._messages = self._messages[:start] + [summary_message] + self._messages[end:]
        self._revision += 1
        self.compaction_count += 1

        after = self.token_estimate()
        logger.info(
            f"Compacted {len(replaced)} messages: ~{before} -> ~{after} tokens"
            + (f", fragment saved to {fragment_path}" if fragment_path else "")
        )
        return CompactionOutcome(
            True, before, after,
            messages_replaced=len(replaced),
            reason="compacted",
            fragment_path=fragment_path,
        )

    def _build_summary(self, replaced: Sequence[Message], summary: Optional[str]):
        summary = (summary or "").strip()
        if not summary:
            raise CompactionFailure("summarizer returned an empty summary")

        content = f"{SUMMARY_PREFIX}\n\n{summary}"
        fragment = None
        if self.fragment_store is not None:
            fragment = self.fragment_store.prepare(replaced)
            content = f"{fragment.stub()}\n\n{content}"

        span_tokens = sum(estimate_tokens(m.content) for m in replaced)
        if estimate_tokens(content) >= span_tokens:
            raise CompactionFailure(
                f"summary (~{estimate_tokens(content)} tokens) is not smaller than "
                f"the span it replaces (~{span_tokens} tokens)"
            )

        message = Message(
            MessageRole.ASSISTANT,
            content,
            position=replaced[0].position,
            kind=MessageKind.SUMMARY,
        )
        return message, fragment

    def dehydrate(self, span: Sequence[Message]) -> Path:
        """Persist ``span`` verbatim as the session's next fragment."""
        if self.fragment_store is None:
            raise CompactionFailure("no fragment store configured for dehydration")
        return self.fragment_store.write(self.fragment_store.prepare(span))

    # Persistence ----------------------------------------------------------------
    def snapshot(self) -> Dict[str, Any]:
        """The ``context_window`` section of the session log."""
        used = self.token_estimate()
        return {
            "used_tokens": used,
            "total_tokens": self.model_limit,
            "percentage_used": round(used / self.model_limit * 100, 2),
            "cumulative_tokens": self.cumulative_tokens,
            "conversation_history": [m.to_dict() for m in self._messages],
        }

    @classmethod
    def from_snapshot(
        cls,
        data: Dict[str, Any],
        model_limit: Optional[int] = None,
        session_id: Optional[str] = None,
        summarizer: Optional[Summarizer] = None,
        fragment_store: Optional["FragmentStore"] = None,
    ) -> "ContextWindow":
        """Rebuild a window from ``snapshot()`` output. Unknown roles are skipped."""
        window = cls(
            model_limit=model_limit or int(data.get("total_tokens") or 128000),
            session_id=session_id,
            summarizer=summarizer,
            fragment_store=fragment_store,
        )
        window.cumulative_tokens = int(data.get("cumulative_tokens") or 0)
        for entry in data.get("conversation_history", []):
            try:
                message = Message.from_dict(entry)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping unreadable history entry: {e}")
                continue
            window.append(message)
        return window

    def _take_position(self) -> int:
        position = self._next_position
        self._next_position += 1
        return position
