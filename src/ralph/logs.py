"""Per-task append-only log files shared by the loop and external log viewers."""

from __future__ import annotations

import os
import re
import threading
from pathlib import Path
from types import TracebackType

from ralph.config import resolve_repo_root
from ralph.errors import LogFileError

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9._-]")
_UNDERSCORE_RUNS = re.compile(r"_+")


def sanitize_task_id_for_filename(task_id: str) -> str:
    sanitized = _UNDERSCORE_RUNS.sub("_", _UNSAFE_CHARS.sub("_", task_id.strip()))
    if sanitized in ("", ".", ".."):
        raise LogFileError(f"Invalid task id for log file: {task_id!r}", code="INVALID_TASK_ID")
    return sanitized


def resolve_log_dir() -> Path:
    """``RALPH_LOG_DIR`` if set, else ``<repo root>/logs/ralph``."""

    configured = os.getenv("RALPH_LOG_DIR", "").strip()
    if configured:
        return Path(configured)
    return resolve_repo_root() / "logs" / "ralph"


def log_file_path(task_id: str, *, log_dir: Path | None = None) -> Path:
    return (log_dir or resolve_log_dir()) / f"{sanitize_task_id_for_filename(task_id)}.log"


class TaskLogWriter:
    """Thread-safe binary append sink for one task log."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._handle = self.path.open("ab")
        self._lock = threading.Lock()

    def write(self, chunk: bytes | str) -> None:
        data = chunk.encode("utf-8") if isinstance(chunk, str) else chunk
        with self._lock:
            if self._handle.closed:
                return
            self._handle.write(data)
            self._handle.flush()

    def close(self) -> None:
        with self._lock:
            if not self._handle.closed:
                self._handle.close()

    def __enter__(self) -> TaskLogWriter:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        self.close()


def open_task_log_writer(task_id: str, *, log_dir: Path | None = None) -> TaskLogWriter:
    return TaskLogWriter(log_file_path(task_id, log_dir=log_dir))
