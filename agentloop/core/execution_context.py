"""
Execution context handed to every tool call.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from loguru import logger

from agentloop.core import paths
from agentloop.core.checklist import Checklist
from agentloop.core.dehydration import FragmentStore
from agentloop.core.resources import BackgroundProcessTable, BrowserSlot, PendingResearchTracker


@dataclass
class ExecutionContext:
    """
    Per-session state shared across tool calls and turns.

    Build with ``ExecutionContext.create``; the long-lived resources live until
    ``teardown()``.
    """
    working_dir: Path
    session_id: str
    workspace_dir: Path
    processes: BackgroundProcessTable
    checklist: Checklist
    autonomous: bool = False
    pending_attachments: List[Path] = field(default_factory=list)
    browser: BrowserSlot = field(default_factory=BrowserSlot)
    research: PendingResearchTracker = field(default_factory=PendingResearchTracker)
    fragments: Optional[FragmentStore] = None

    @classmethod
    def create(
        cls,
        working_dir: Path,
        session_id: str,
        workspace_dir: Optional[Path] = None,
        autonomous: bool = False,
        fragments: Optional[FragmentStore] = None,
    ) -> "ExecutionContext":
        working_dir = Path(working_dir).resolve()
        workspace_dir = Path(workspace_dir) if workspace_dir else working_dir / ".agentloop"
        return cls(
            working_dir=working_dir,
            session_id=session_id,
            workspace_dir=workspace_dir,
            processes=BackgroundProcessTable(paths.process_logs_dir(workspace_dir, session_id)),
            checklist=Checklist(paths.todo_file(workspace_dir, session_id)),
            autonomous=autonomous,
            fragments=fragments,
        )

    def attach(self, path: Path) -> None:
        """Queue a file to go out with the next request."""
        self.pending_attachments.append(Path(path))

    def take_attachments(self) -> List[Path]:
        attachments, self.pending_attachments = self.pending_attachments, []
        return attachments

    async def teardown(self) -> None:
        """Release the browser session and stop background processes."""
        logger.debug(f"Tearing down execution context for {self.session_id}")
        await self.browser.close()
        await self.processes.stop_all()
