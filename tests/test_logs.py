from __future__ import annotations

from pathlib import Path

import allure
import pytest

from ralph.errors import LogFileError
from ralph.logs import (
    log_file_path,
    open_task_log_writer,
    resolve_log_dir,
    sanitize_task_id_for_filename,
)

pytestmark = [
    allure.epic("Observability"),
    allure.feature("Task Logs"),
]


@pytest.mark.parametrize(
    ("task_id", "expected"),
    [
        ("devagent-a1.2", "devagent-a1.2"),
        ("  epic/../x  ", "epic_.._x"),
        ("a b::c", "a_b_c"),
    ],
)
def test_sanitize_task_id(task_id: str, expected: str) -> None:
    assert sanitize_task_id_for_filename(task_id) == expected


@pytest.mark.parametrize("task_id", ["", "   ", ".", ".."])
def test_sanitize_rejects_unsafe_names(task_id: str) -> None:
    with pytest.raises(LogFileError) as excinfo:
        sanitize_task_id_for_filename(task_id)

    assert excinfo.value.code == "INVALID_TASK_ID"


def test_log_dir_env_override(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("RALPH_LOG_DIR", str(tmp_path / "logs"))

    assert resolve_log_dir() == tmp_path / "logs"
    assert log_file_path("t.1") == tmp_path / "logs" / "t.1.log"


def test_log_dir_defaults_under_repo_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("RALPH_LOG_DIR", raising=False)
    monkeypatch.setenv("REPO_ROOT", str(tmp_path))

    assert resolve_log_dir() == tmp_path / "logs" / "ralph"


def test_writer_appends_bytes_and_text(tmp_path: Path) -> None:
    with open_task_log_writer("task.1", log_dir=tmp_path / "nested") as writer:
        writer.write("first\n")
        writer.write(b"second\n")

    with open_task_log_writer("task.1", log_dir=tmp_path / "nested") as writer:
        writer.write("third\n")

    assert (tmp_path / "nested" / "task.1.log").read_text("utf-8") == "first\nsecond\nthird\n"


def test_writer_ignores_writes_after_close(tmp_path: Path) -> None:
    writer = open_task_log_writer("task.2", log_dir=tmp_path)
    writer.write("kept\n")
    writer.close()
    writer.write("dropped\n")
    writer.close()

    assert (tmp_path / "task.2.log").read_text("utf-8") == "kept\n"
