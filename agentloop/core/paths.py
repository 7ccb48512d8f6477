"""
Workspace layout.

    <workspace>/sessions/<session_id>/session.json
    <workspace>/sessions/<session_id>/todo.md
    <workspace>/sessions/<session_id>/fragments/fragment_0001.json
    <workspace>/sessions/<session_id>/processes/<name>.log
"""

from pathlib import Path
from typing import Union

SESSION_FILE = "session.json"
TODO_FILE = "todo.md"


def sessions_dir(workspace: Union[str, Path]) -> Path:
    return Path(workspace) / "sessions"


def session_dir(workspace: Union[str, Path], session_id: str) -> Path:
    return sessions_dir(workspace) / session_id


def session_file(workspace: Union[str, Path], session_id: str) -> Path:
    return session_dir(workspace, session_id) / SESSION_FILE


def todo_file(workspace: Union[str, Path], session_id: str) -> Path:
    return session_dir(workspace, session_id) / TODO_FILE


def fragments_dir(workspace: Union[str, Path], session_id: str) -> Path:
    return session_dir(workspace, session_id) / "fragments"


def process_logs_dir(workspace: Union[str, Path], session_id: str) -> Path:
    return session_dir(workspace, session_id) / "processes"
