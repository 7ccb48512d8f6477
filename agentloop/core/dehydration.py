"""
Dehydration - saves compacted-away history to disk before it leaves memory.

Each compaction in aggressive mode writes one fragment file. Fragments form a
chain through ``preceding_fragment_id`` so a session's full history can be
walked back, and the summary left in the context names the fragment so the
model can ask for it with the ``rehydrate`` tool.
"""

import json
import re
from collections import Counter
from dataclasses import dataclass, asdict, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Union

from loguru import logger

from agentloop.core import paths
from agentloop.core.context_window import Message, MessageRole
from agentloop.core.errors import ParseMalformed
from agentloop.core.streaming_parser import is_tool_call_shaped, parse_tool_call_line
from agentloop.core.utils import estimate_tokens, truncate, write_json_atomic

_FRAGMENT_FILE_RE = re.compile(r"^fragment_(\d+)\.json$")


@dataclass
class Fragment:
    """A dehydrated span of conversation."""
    fragment_id: str
    session_id: str
    sequence: int
    created_at: str
    messages: List[Dict[str, Any]]
    message_count: int
    user_message_count: int
    assistant_message_count: int
    tool_call_summary: Dict[str, int] = field(default_factory=dict)
    estimated_tokens: int = 0
    preceding_fragment_id: Optional[str] = None
    first_user_message: Optional[str] = None

    def stub(self) -> str:
        """The line that replaces this fragment in the live context."""
        tools = ", ".join(f"{name} x{count}" for name, count in sorted(self.tool_call_summary.items()))
        lines = [
            f"⚡ DEHYDRATED CONTEXT: {self.message_count} messages "
            f"({self.user_message_count} user, {self.assistant_message_count} assistant, "
            f"~{self.estimated_tokens} tokens) saved as fragment {self.fragment_id}.",
        ]
        if tools:
            lines.append(f"Tool calls: {tools}.")
        if self.first_user_message:
            lines.append(f"Started with: {truncate(self.first_user_message, 120)}")
        lines.append(f'To restore, call: rehydrate(fragment_id: "{self.fragment_id}")')
        return "\n".join(lines)

    def to_messages(self) -> List[Message]:
        return [Message.from_dict(entry, position=i) for i, entry in enumerate(self.messages)]

    def render(self) -> str:
        """Plain-text replay of the fragment, used by rehydrate."""
        parts = [f"Fragment {self.fragment_id} ({self.message_count} messages, {self.created_at}):"]
        for entry in self.messages:
            parts.append(f"[{entry['role']}] {entry['content']}")
        return "\n\n".join(parts)


class FragmentStore:
    """
    Fragment files for one session.

    Sequence numbers increase monotonically per session and continue across
    restarts: the next sequence is one past the highest file on disk.
    """

    def __init__(self, workspace: Union[str, Path], session_id: str):
        self.session_id = session_id
        self.directory = paths.fragments_dir(workspace, session_id)
        self._next_sequence: Optional[int] = None
        self._last_fragment_id: Optional[str] = None

    def prepare(self, messages: Sequence[Message]) -> Fragment:
        """Build the next fragment without writing it."""
        sequence = self._peek_sequence()
        roles = Counter(m.role for m in messages)
        first_user = next((m.content for m in messages if m.role is MessageRole.USER), None)

        return Fragment(
            fragment_id=self._fragment_id(sequence),
            session_id=self.session_id,
            sequence=sequence,
            created_at=datetime.now().isoformat(),
            messages=[m.to_dict() for m in messages],
            message_count=len(messages),
            user_message_count=roles[MessageRole.USER],
            assistant_message_count=roles[MessageRole.ASSISTANT],
            tool_call_summary=self._summarize_tool_calls(messages),
            estimated_tokens=sum(estimate_tokens(m.content) for m in messages),
            preceding_fragment_id=self._last_fragment_id or self._previous_on_disk(sequence),
            first_user_message=first_user,
        )

    def write(self, fragment: Fragment) -> Path:
        """
        Persist a prepared fragment.

        Raises:
            OSError: If the fragment cannot be written
        """
        path = self.directory / f"fragment_{fragment.sequence:04d}.json"
        write_json_atomic(path, asdict(fragment))
        self._next_sequence = fragment.sequence + 1
        self._last_fragment_id = fragment.fragment_id
        logger.info(f"Dehydrated {fragment.message_count} messages to {path}")
        return path

    def load(self, fragment_id: str) -> Fragment:
        """
        Load a fragment by id.

        Raises:
            FileNotFoundError: If no such fragment exists for this session
        """
        prefix, _, seq = fragment_id.rpartition("-")
        if prefix != self.session_id or not seq.isdigit():
            raise FileNotFoundError(f"Fragment {fragment_id} does not belong to session {self.session_id}")

        path = self.directory / f"fragment_{int(seq):04d}.json"
        data = json.loads(path.read_text(encoding="utf-8"))
        return Fragment(**data)

    def list_fragments(self) -> List[Fragment]:
        """All fragments of the session, oldest first."""
        fragments = []
        for sequence in self._sequences_on_disk():
            fragments.append(self.load(self._fragment_id(sequence)))
        return fragments

    # Internals ------------------------------------------------------------------
    def _fragment_id(self, sequence: int) -> str:
        return f"{self.session_id}-{sequence:04d}"

    def _sequences_on_disk(self) -> List[int]:
        if not self.directory.exists():
            return []
        sequences = []
        for path in self.directory.iterdir():
            match = _FRAGMENT_FILE_RE.match(path.name)
            if match:
                sequences.append(int(match.group(1)))
        return sorted(sequences)

    def _peek_sequence(self) -> int:
        if self._next_sequence is None:
            on_disk = self._sequences_on_disk()
            self._next_sequence = on_disk[-1] + 1 if on_disk else 1
        return self._next_sequence

    def _previous_on_disk(self, sequence: int) -> Optional[str]:
        earlier = [s for s in self._sequences_on_disk() if s < sequence]
        return self._fragment_id(earlier[-1]) if earlier else None

    @staticmethod
    def _summarize_tool_calls(messages: Sequence[Message]) -> Dict[str, int]:
        counts: Counter = Counter()
        for message in messages:
            if message.role is not MessageRole.ASSISTANT:
                continue
            for line in message.content.splitlines():
                if not is_tool_call_shaped(line):
                    continue
                try:
                    counts[parse_tool_call_line(line).name] += 1
                except ParseMalformed:
                    continue
        return dict(counts)
