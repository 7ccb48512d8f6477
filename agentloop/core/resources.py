"""
Long-lived resources shared by tool calls across turns.

- BackgroundProcessTable: processes started by tools that outlive a call
- BrowserSlot: the session's single browser-automation session
- PendingResearchTracker: research jobs running outside the turn

Tables that own OS or browser resources sit behind an asyncio.Lock so only
one writer touches them at a time. Nothing here is released implicitly: an
explicit tool request or ExecutionContext.teardown() does it.
"""

import asyncio
import itertools
import os
import signal
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from agentloop.core.errors import ResourceLifecycleError


# Background processes ---------------------------------------------------------
@dataclass
class BackgroundProcess:
    """A process started by a tool and kept running between calls."""
    name: str
    command: str
    pid: int
    cwd: str
    log_path: Path
    started_at: str
    process: asyncio.subprocess.Process = field(repr=False)

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode

    def describe(self) -> str:
        status = "running" if self.running else f"exited ({self.returncode})"
        return f"{self.name} (pid {self.pid}, {status}): {self.command}"


class BackgroundProcessTable:
    """Named background processes with output captured to log files."""

    def __init__(self, log_dir: Path):
        self.log_dir = Path(log_dir)
        self._processes: Dict[str, BackgroundProcess] = {}
        self._lock = asyncio.Lock()

    async def start(self, name: str, command: str, cwd: Path) -> BackgroundProcess:
        """
        Start ``command`` in a shell under ``name``.

        Raises:
            ResourceLifecycleError: If a process with that name is still running
        """
        async with self._lock:
            existing = self._processes.get(name)
            if existing is not None and existing.running:
                raise ResourceLifecycleError(
                    f"A process named '{name}' is already running (pid {existing.pid})"
                )

            self.log_dir.mkdir(parents=True, exist_ok=True)
            log_path = self.log_dir / f"{name}.log"
            with open(log_path, "wb") as log_file:
                process = await asyncio.create_subprocess_shell(
                    command,
                    cwd=str(cwd),
                    stdin=asyncio.subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )

            entry = BackgroundProcess(
                name=name,
                command=command,
                pid=process.pid,
                cwd=str(cwd),
                log_path=log_path,
                started_at=datetime.now().isoformat(),
                process=process,
            )
            self._processes[name] = entry
            logger.info(f"Started background process {entry.describe()}")
            return entry

    def get(self, name: str) -> Optional[BackgroundProcess]:
        return self._processes.get(name)

    def list(self) -> List[BackgroundProcess]:
        return list(self._processes.values())

    def read_log(self, name: str, tail_lines: int = 50) -> str:
        entry = self._processes.get(name)
        if entry is None:
            raise ResourceLifecycleError(f"No background process named '{name}'")
        if not entry.log_path.exists():
            return ""
        lines = entry.log_path.read_text(encoding="utf-8", errors="replace").splitlines()
        return "\n".join(lines[-tail_lines:])

    async def stop(self, name: str, timeout: float = 5.0) -> BackgroundProcess:
        """
        Terminate a process (SIGTERM, then SIGKILL after ``timeout``).

        Raises:
            ResourceLifecycleError: If no process has that name
        """
        async with self._lock:
            entry = self._processes.pop(name, None)
            if entry is None:
                raise ResourceLifecycleError(f"No background process named '{name}'")
            await self._terminate(entry, timeout)
            return entry

    async def stop_all(self, timeout: float = 5.0) -> None:
        async with self._lock:
            entries = list(self._processes.values())
            self._processes.clear()
            for entry in entries:
                await self._terminate(entry, timeout)

    @staticmethod
    async def _terminate(entry: BackgroundProcess, timeout: float) -> None:
        if not entry.running:
            return
        _signal_group(entry.process, signal.SIGTERM)
        try:
            await asyncio.wait_for(entry.process.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"{entry.name} ignored SIGTERM, killing")
            _signal_group(entry.process, signal.SIGKILL)
            await entry.process.wait()
        logger.info(f"Stopped background process {entry.describe()}")


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    """Signal the process group started with start_new_session."""
    try:
        if hasattr(os, "killpg"):
            os.killpg(process.pid, sig)
        else:
            process.send_signal(sig)
    except ProcessLookupError:
        pass


# Browser session ----------------------------------------------------------------
class BrowserSession(ABC):
    """Capabilities a browser-automation backend provides."""

    @abstractmethod
    async def navigate(self, url: str) -> None:
        ...

    @abstractmethod
    async def current_url(self) -> str:
        ...

    @abstractmethod
    async def find_element(self, selector: str) -> Optional[str]:
        """Text of the first element matching ``selector``, or None."""

    @abstractmethod
    async def execute_script(self, script: str) -> Any:
        ...

    @abstractmethod
    async def screenshot(self, path: Path) -> Path:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


class BrowserSlot:
    """
    Holds at most one BrowserSession for the execution context.

    ``use()`` yields the open session while holding the slot's lock; do not
    call ``open``/``close`` from inside it.
    """

    def __init__(self):
        self._session: Optional[BrowserSession] = None
        self._lock = asyncio.Lock()

    @property
    def is_open(self) -> bool:
        return self._session is not None

    async def open(self, factory: Callable[[], Awaitable[BrowserSession]]) -> BrowserSession:
        """Return the open session, creating one with ``factory`` if needed."""
        async with self._lock:
            if self._session is None:
                self._session = await factory()
                logger.info("Browser session opened")
            return self._session

    @asynccontextmanager
    async def use(self) -> AsyncIterator[BrowserSession]:
        async with self._lock:
            if self._session is None:
                raise ResourceLifecycleError("No browser session is open")
            yield self._session

    async def close(self) -> None:
        async with self._lock:
            if self._session is None:
                return
            session, self._session = self._session, None
            await session.close()
            logger.info("Browser session closed")


# Research tracking ----------------------------------------------------------------
class ResearchStatus(str, Enum):
    PENDING = "pending"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass
class ResearchTask:
    id: str
    query: str
    created_at: str
    status: ResearchStatus = ResearchStatus.PENDING
    result: Optional[str] = None
    error: Optional[str] = None
    notified: bool = False

    def describe(self) -> str:
        line = f"{self.id} [{self.status.value}] {self.query}"
        if self.status is ResearchStatus.COMPLETE and self.result:
            line += f"\n{self.result}"
        elif self.status is ResearchStatus.FAILED and self.error:
            line += f"\nError: {self.error}"
        return line


class PendingResearchTracker:
    """
    Research jobs running outside the turn.

    Finished jobs are handed to the turn controller once via
    ``take_finished()`` so their results reach the model.
    """

    def __init__(self):
        self._tasks: Dict[str, ResearchTask] = {}
        self._ids = itertools.count(1)

    def register(self, query: str) -> str:
        task_id = f"research_{next(self._ids)}"
        self._tasks[task_id] = ResearchTask(id=task_id, query=query, created_at=datetime.now().isoformat())
        logger.debug(f"Registered {task_id}: {query}")
        return task_id

    def complete(self, task_id: str, result: str) -> None:
        task = self._pending_task(task_id)
        task.status = ResearchStatus.COMPLETE
        task.result = result

    def fail(self, task_id: str, error: str) -> None:
        task = self._pending_task(task_id)
        task.status = ResearchStatus.FAILED
        task.error = error

    def get(self, task_id: str) -> Optional[ResearchTask]:
        return self._tasks.get(task_id)

    def all(self) -> List[ResearchTask]:
        return list(self._tasks.values())

    def pending(self) -> List[ResearchTask]:
        return [t for t in self._tasks.values() if t.status is ResearchStatus.PENDING]

    def take_finished(self) -> List[ResearchTask]:
        finished = [
            t for t in self._tasks.values()
            if t.status is not ResearchStatus.PENDING and not t.notified
        ]
        for task in finished:
            task.notified = True
        return finished

    def _pending_task(self, task_id: str) -> ResearchTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise ResourceLifecycleError(f"Unknown research task '{task_id}'")
        if task.status is not ResearchStatus.PENDING:
            raise ResourceLifecycleError(f"Research task '{task_id}' already {task.status.value}")
        return task
