"""
Checklist (TODO) artifact and the completion gate that reads it.
"""

import re
from pathlib import Path
from typing import List, Optional, Tuple

from loguru import logger

INCOMPLETE_ITEM_RE = re.compile(r"^\s*[-*]\s*\[ \]")
COMPLETE_ITEM_RE = re.compile(r"^\s*[-*]\s*\[[xX]\]")

MAX_CHECKLIST_CHARS = 50_000

FINAL_OUTPUT_REJECTION = (
    "There are still incomplete TODO items. Please continue until *ALL* TODO items in *ALL* "
    "phases are marked complete, and *ONLY* then call `final_output`."
)


class Checklist:
    """
    Markdown checklist stored in one file.

    Items are lines like ``- [ ] write tests`` / ``- [x] write tests``.
    Writing a list whose items are all checked removes the file.
    """

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")

    def write(self, content: str) -> str:
        """
        Replace the checklist.

        Returns:
            Status message for the model

        Raises:
            ValueError: If the content exceeds MAX_CHECKLIST_CHARS
        """
        if len(content) > MAX_CHECKLIST_CHARS:
            raise ValueError(
                f"Checklist too large ({len(content)} chars, max {MAX_CHECKLIST_CHARS})"
            )

        done, remaining = self._count(content)
        if done and not remaining:
            if self.path.exists():
                self.path.unlink()
            logger.info("All checklist items complete, checklist removed")
            return f"✅ TODO list updated: all {done} items complete"

        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(content, encoding="utf-8")
        return f"✅ TODO list updated ({done} done, {remaining} remaining)"

    def counts(self) -> Tuple[int, int]:
        """(complete, incomplete) item counts."""
        return self._count(self.read())

    def incomplete_items(self) -> List[str]:
        return [line.strip() for line in self.read().splitlines() if INCOMPLETE_ITEM_RE.match(line)]

    def has_incomplete_items(self) -> bool:
        return bool(self.incomplete_items())

    @staticmethod
    def _count(content: str) -> Tuple[int, int]:
        done = remaining = 0
        for line in content.splitlines():
            if INCOMPLETE_ITEM_RE.match(line):
                remaining += 1
            elif COMPLETE_ITEM_RE.match(line):
                done += 1
        return done, remaining


def completion_gate(checklist: Optional[Checklist], autonomous: bool) -> Optional[str]:
    """
    Return a rejection message if ``final_output`` must not run yet.

    Only autonomous mode is gated; interactive turns always pass.
    """
    if not autonomous or checklist is None:
        return None
    if checklist.has_incomplete_items():
        return FINAL_OUTPUT_REJECTION
    return None
