"""
Streaming Tool Parser
Splits streamed model output into display text and tool calls.

A tool call is a whole line holding exactly ``{"tool": "<name>", "args": {...}}``.
Anything else (JSON inside prose, half-written calls, malformed lines) is
passed through as display text. Code fences are not tracked, so a call-shaped
line inside a fenced block is still treated as a real call.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Union

from loguru import logger

from agentloop.core.errors import ParseMalformed
from agentloop.core.stream_decoder import StreamDecoder

# `{"tool":` at the start of a line, tolerating whitespace variants
TOOL_CALL_LINE_RE = re.compile(r'^\s*\{\s*"tool"\s*:')

# Openers that show up when a model "stutters" prose into argument keys
_PROSE_MARKERS = ("I'll", "Let me", "Here's", "I can", "I need", "First", "Now", "The ")
_MAX_ARG_KEY_LENGTH = 100


@dataclass
class DisplayText:
    """Text to show the user and keep in the assistant message."""
    text: str


@dataclass
class ToolCall:
    """A recognized tool invocation. Equality ignores provenance and call id."""
    name: str
    args: Dict[str, Any]
    provenance: Optional[str] = field(default=None, compare=False)
    call_id: Optional[str] = field(default=None, compare=False)

    def to_wire(self) -> str:
        """Render the call back to its single-line wire form."""
        return json.dumps({"tool": self.name, "args": self.args}, ensure_ascii=False)


ParserEvent = Union[DisplayText, ToolCall]


def is_tool_call_shaped(line: str) -> bool:
    """True if the line starts like a tool call (complete or not)."""
    return bool(TOOL_CALL_LINE_RE.match(line))


def _args_contain_prose(args: Dict[str, Any]) -> bool:
    for key in args:
        if len(key) > _MAX_ARG_KEY_LENGTH or "\n" in key:
            return True
        if any(marker in key for marker in _PROSE_MARKERS):
            return True
    return False


def parse_tool_call_line(line: str) -> ToolCall:
    """
    Parse one complete line as a tool call.

    Args:
        line: The line, with or without its trailing newline

    Returns:
        The parsed ToolCall

    Raises:
        ParseMalformed: If the line is not exactly a tool-call object
    """
    stripped = line.strip()
    if not (stripped.startswith("{") and stripped.endswith("}")):
        raise ParseMalformed(line, "not a JSON object line")

    try:
        data = json.loads(stripped)
    except json.JSONDecodeError as exc:
        raise ParseMalformed(line, f"invalid JSON ({exc.msg})") from exc

    if not isinstance(data, dict) or set(data) != {"tool", "args"}:
        raise ParseMalformed(line, "expected exactly the keys 'tool' and 'args'")

    name, args = data["tool"], data["args"]
    if not isinstance(name, str) or not name.strip():
        raise ParseMalformed(line, "'tool' must be a non-empty string")
    if not isinstance(args, dict):
        raise ParseMalformed(line, "'args' must be an object")
    if _args_contain_prose(args):
        raise ParseMalformed(line, "argument keys contain prose")

    return ToolCall(name=name, args=args)


def find_incomplete_tool_call(text: str) -> Optional[str]:
    """
    Return the last call-shaped line in ``text`` that does not parse as a call.

    The parser never leaves a parseable call line in display text, so any
    call-shaped line found here was truncated or malformed.
    """
    found = None
    for line in text.splitlines():
        if not is_tool_call_shaped(line):
            continue
        try:
            parse_tool_call_line(line)
        except ParseMalformed:
            found = line
    return found


class StreamingToolParser:
    """
    Line-buffered parser over a provider chunk stream.

    State kept between ``feed`` calls:
      - the current unterminated line
      - whether that line was already streamed out as prose
      - the last accepted call, and whether real text followed it

    Usage:
        parser = StreamingToolParser()
        for chunk in stream:
            for event in parser.feed(chunk):
                ...
        for event in parser.flush():
            ...
    """

    def __init__(self, provenance: Optional[str] = None):
        self.provenance = provenance
        self._decoder = StreamDecoder()
        self._line = ""
        self._line_is_prose = False
        self._last_call: Optional[ToolCall] = None
        self._text_since_last_call = False
        self.suppressed_duplicates = 0

    # Public API -----------------------------------------------------------------
    def feed(self, chunk: Union[bytes, str]) -> List[ParserEvent]:
        """Consume one chunk and return the events it completes, in order."""
        return self._consume(self._decoder.decode(chunk))

    def feed_native(self, calls: Iterable[ToolCall]) -> List[ParserEvent]:
        """Accept structured tool calls delivered by the provider."""
        events: List[ParserEvent] = []
        for call in calls:
            self._accept_call(call, events)
        return events

    def flush(self) -> List[ParserEvent]:
        """
        End of stream. The tail counts as a terminated line: a complete call
        is still recognized, everything else is emitted as display text.
        """
        events = self._consume(self._decoder.flush())
        if self._line:
            line, self._line = self._line, ""
            self._process_line(line, events)
        self._line_is_prose = False
        return events

    def discard_buffer(self) -> None:
        """Drop the unterminated line and pending bytes, keeping duplicate memory."""
        self._decoder.reset()
        self._line = ""
        self._line_is_prose = False

    def reset(self) -> None:
        """Clear all state, including duplicate-suppression memory."""
        self._decoder.reset()
        self._line = ""
        self._line_is_prose = False
        self._last_call = None
        self._text_since_last_call = False
        self.suppressed_duplicates = 0

    @property
    def buffered(self) -> str:
        """The unterminated line currently held back."""
        return self._line

    # Internals ------------------------------------------------------------------
    def _consume(self, text: str) -> List[ParserEvent]:
        events: List[ParserEvent] = []
        while text:
            newline = text.find("\n")
            if newline == -1:
                segment, text, terminated = text, "", False
            else:
                segment, text, terminated = text[:newline + 1], text[newline + 1:], True

            if self._line_is_prose:
                self._emit_text(segment, events)
            else:
                self._line += segment
                if terminated:
                    line, self._line = self._line, ""
                    self._process_line(line, events)
                elif self._line.strip() and not self._line.lstrip().startswith("{"):
                    # Cannot become a call line; stream it out now
                    self._line_is_prose = True
                    line, self._line = self._line, ""
                    self._emit_text(line, events)

            if terminated:
                self._line_is_prose = False
        return events

    def _process_line(self, line: str, events: List[ParserEvent]) -> None:
        if not line.lstrip().startswith("{"):
            self._emit_text(line, events)
            return

        try:
            call = parse_tool_call_line(line)
        except ParseMalformed as exc:
            if is_tool_call_shaped(line):
                logger.debug(f"Call-shaped line kept as text: {exc}")
            self._emit_text(line, events)
            return

        self._accept_call(call, events)

    def _accept_call(self, call: ToolCall, events: List[ParserEvent]) -> None:
        if call.provenance is None:
            call.provenance = self.provenance

        if self._last_call is not None and call == self._last_call and not self._text_since_last_call:
            self.suppressed_duplicates += 1
            logger.debug(f"Suppressed duplicate tool call: {call.name}")
            return

        self._last_call = call
        self._text_since_last_call = False
        events.append(call)

    def _emit_text(self, text: str, events: List[ParserEvent]) -> None:
        if not text:
            return
        if text.strip():
            self._text_since_last_call = True
        if events and isinstance(events[-1], DisplayText):
            events[-1].text += text
        else:
            events.append(DisplayText(text))
