"""
Session log - one JSON document per session holding the context window.

Layout of ``sessions/<session_id>/session.json``:

    {
      "session_id": "...",
      "timestamp": "2025-01-01T12:00:00",
      "status": "completed",
      "context_window": {
        "used_tokens": 1234,
        "total_tokens": 128000,
        "percentage_used": 0.96,
        "conversation_history": [{"role": "user", "content": "..."}, ...]
      }
    }

External log tooling reads this format; keep it stable.
"""

import hashlib
import json
import re
import time
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from loguru import logger

from agentloop.core import paths
from agentloop.core.context_window import ContextWindow, Summarizer
from agentloop.core.dehydration import FragmentStore
from agentloop.core.errors import SessionPersistenceError
from agentloop.core.utils import write_json_atomic


def generate_session_id(description: str, agent_name: Optional[str] = None) -> str:
    """
    Readable, unique session id: a slug of the agent name (or the first five
    words of the description) plus a short hash.
    """
    if agent_name:
        prefix = agent_name
    else:
        prefix = " ".join(description.split()[:5])
    slug = re.sub(r"[^a-z0-9]+", "_", prefix.lower()).strip("_")[:40] or "session"
    digest = hashlib.sha256(f"{description}:{time.time_ns()}".encode("utf-8")).hexdigest()[:8]
    return f"{slug}_{digest}"


class SessionLog:
    """Reads and writes session documents under a workspace directory."""

    def __init__(self, workspace: Union[str, Path]):
        self.workspace = Path(workspace)

    def path_for(self, session_id: str) -> Path:
        return paths.session_file(self.workspace, session_id)

    def save(self, session_id: str, context: ContextWindow, status: str = "active") -> Path:
        """
        Replace the session document.

        Raises:
            SessionPersistenceError: If the file cannot be written
        """
        path = self.path_for(session_id)
        data = {
            "session_id": session_id,
            "timestamp": datetime.now().isoformat(),
            "status": status,
            "context_window": context.snapshot(),
        }
        try:
            write_json_atomic(path, data)
        except OSError as e:
            raise SessionPersistenceError(f"Could not save session {session_id}: {e}") from e

        logger.debug(f"Saved session {session_id} ({status}) to {path}")
        return path

    def load_data(self, session_id: str) -> Dict[str, Any]:
        path = self.path_for(session_id)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError as e:
            raise SessionPersistenceError(f"No session log for {session_id}") from e
        except (OSError, json.JSONDecodeError) as e:
            raise SessionPersistenceError(f"Could not read session {session_id}: {e}") from e

    def load(
        self,
        session_id: str,
        model_limit: Optional[int] = None,
        summarizer: Optional[Summarizer] = None,
        fragment_store: Optional[FragmentStore] = None,
    ) -> ContextWindow:
        """Restore the context window saved for ``session_id``."""
        data = self.load_data(session_id)
        window = ContextWindow.from_snapshot(
            data.get("context_window", {}),
            model_limit=model_limit,
            session_id=session_id,
            summarizer=summarizer,
            fragment_store=fragment_store,
        )
        logger.info(f"Restored session {session_id} with {len(window)} messages")
        return window

    def list_sessions(self) -> List[str]:
        """Known session ids, most recently saved first."""
        root = paths.sessions_dir(self.workspace)
        if not root.exists():
            return []
        logs = [p for p in root.glob(f"*/{paths.SESSION_FILE}") if p.is_file()]
        logs.sort(key=lambda p: p.stat().st_mtime, reverse=True)
        return [p.parent.name for p in logs]
