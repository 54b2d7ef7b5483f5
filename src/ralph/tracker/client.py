"""Subprocess client for the Beads (``bd``) issue tracker CLI."""

from __future__ import annotations

import json
import logging
import os
import re
import subprocess
import tempfile
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from ralph.errors import TrackerError, TrackerParseError
from ralph.tracker.models import TaskStatus, TrackerTask, output_preview

logger = logging.getLogger(__name__)

READY_QUERY_LIMIT = 200
DEFAULT_ISSUE_PREFIX = "devagent"
_LABEL_LINE = re.compile(r"^\s*-\s*(.+)$")
_LABEL_HEADER_MARKER = "\U0001f3f7"
_DUPLICATE_ISSUE_MARKERS = ("already exists", "UNIQUE constraint")


@dataclass(slots=True)
class IssueCreate:
    """Input for idempotent ``bd create``."""

    id: str
    title: str
    issue_type: str = "task"
    body: str = ""
    labels: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)


def parse_tracker_json(
    raw: str,
    *,
    context: str,
    shape: Literal["object", "list"],
) -> Any:
    """Decode tracker output and normalize object vs one-element-array shapes."""

    text = raw.strip()
    preview = output_preview(text)
    if not text:
        raise TrackerParseError(
            f"Failed to parse JSON ({context}): empty output. Output preview: {preview}",
            context=context,
            preview=preview,
        )
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as error:
        raise TrackerParseError(
            f"Failed to parse JSON ({context}): {error}. Output preview: {preview}",
            context=context,
            preview=preview,
        ) from error

    if shape == "object":
        if isinstance(payload, list) and payload and isinstance(payload[0], dict):
            return payload[0]
        if isinstance(payload, dict):
            return payload
    elif isinstance(payload, list):
        return [item for item in payload if isinstance(item, dict)]
    elif isinstance(payload, dict):
        return [payload]

    raise TrackerParseError(
        f"Unexpected JSON shape ({context}): expected {shape}. Output preview: {preview}",
        context=context,
        preview=preview,
    )


class BeadsClient:
    """Run ``bd`` subcommands and map their JSON into tracker models."""

    def __init__(
        self,
        command: Sequence[str] = ("bd",),
        *,
        cwd: Path | None = None,
        timeout_seconds: float = 120.0,
    ) -> None:
        if not command:
            raise ValueError("Tracker command must not be empty.")
        self.command = tuple(command)
        self.cwd = cwd
        self.timeout_seconds = timeout_seconds

    def ready(
        self,
        *,
        parent: str | None = None,
        limit: int = READY_QUERY_LIMIT,
    ) -> list[TrackerTask]:
        args = ["ready", "--json", "--limit", str(limit)]
        if parent:
            args.extend(["--parent", parent])
        output = self._run_checked(args).stdout
        if not output.strip():
            return []
        payload = parse_tracker_json(output, context=f"bd {' '.join(args)}", shape="list")
        return [TrackerTask.from_payload(item) for item in payload]

    def ready_tasks_for_epic(self, epic_id: str) -> list[TrackerTask]:
        """Ready tasks under ``epic_id``.

        Some tracker setups do not record parent links for explicitly-created
        ids, so an empty scoped query falls back to an unscoped one filtered by
        parent or ``<epic>.`` prefix. Errors are logged and yield no tasks.
        """

        try:
            scoped = self.ready(parent=epic_id)
            if scoped:
                return scoped
            unscoped = self.ready()
        except TrackerError as error:
            logger.warning("Failed to get ready tasks for epic %s: %s", epic_id, error)
            return []
        return [
            task
            for task in unscoped
            if task.parent_id == epic_id or task.id.startswith(f"{epic_id}.")
        ]

    def show(self, task_id: str) -> TrackerTask:
        args = ["show", task_id, "--json"]
        completed = self._run(args)
        if completed.returncode != 0:
            raise TrackerError(
                f"Failed to get task details for {task_id}: {completed.stderr.strip()}",
                stderr=completed.stderr,
                stdout=completed.stdout,
            )
        payload = parse_tracker_json(
            completed.stdout,
            context=f"bd show {task_id} --json",
            shape="object",
        )
        return TrackerTask.from_payload(payload)

    def epic_status(self, epic_id: str) -> str | None:
        try:
            return self.show(epic_id).status
        except TrackerError as error:
            logger.warning("Failed to check epic status for %s: %s", epic_id, error)
            return None

    def is_epic_blocked(self, epic_id: str) -> bool:
        return self.epic_status(epic_id) in (TaskStatus.BLOCKED.value, TaskStatus.CLOSED.value)

    def labels(self, task_id: str) -> list[str]:
        """Labels of ``task_id``; any tracker failure yields no labels."""

        try:
            completed = self._run(["label", "list", task_id])
        except TrackerError as error:
            logger.warning("Failed to get labels for task %s: %s", task_id, error)
            return []
        if completed.returncode != 0:
            if "has no labels" not in completed.stderr:
                logger.warning(
                    "Failed to get labels for task %s: %s",
                    task_id,
                    completed.stderr.strip(),
                )
            return []
        labels: list[str] = []
        for line in completed.stdout.splitlines():
            if _LABEL_HEADER_MARKER in line or not line.strip():
                continue
            match = _LABEL_LINE.match(line)
            if match:
                labels.append(match.group(1).strip())
        return labels

    def list_tasks(
        self,
        *,
        parent: str | None = None,
        include_all: bool = True,
        limit: int = 0,
    ) -> list[TrackerTask]:
        args = ["list"]
        if parent:
            args.extend(["--parent", parent])
        if include_all:
            args.append("--all")
        args.extend(["--limit", str(limit), "--json"])
        output = self._run_checked(args).stdout
        if not output.strip():
            return []
        payload = parse_tracker_json(output, context=f"bd {' '.join(args)}", shape="list")
        return [TrackerTask.from_payload(item) for item in payload]

    def epic_tasks(self, epic_id: str) -> list[TrackerTask]:
        """Hierarchical descendants plus explicitly parented children, deduplicated by id."""

        collected: dict[str, TrackerTask] = {}
        try:
            for task in self.list_tasks():
                if task.id.startswith(f"{epic_id}."):
                    collected[task.id] = task
        except TrackerError as error:
            logger.warning("Failed to list tasks for epic %s: %s", epic_id, error)
        try:
            for task in self.list_tasks(parent=epic_id):
                collected[task.id] = task
        except TrackerError as error:
            logger.warning("Failed to list children of epic %s: %s", epic_id, error)
        return list(collected.values())

    def update_status(self, task_id: str, status: TaskStatus | str) -> None:
        value = status.value if isinstance(status, TaskStatus) else status
        self._run_checked(["update", task_id, "--status", value])

    def add_comment(self, task_id: str, text: str) -> None:
        self._run_checked(["comments", "add", task_id, text])

    def add_dependency(self, task_id: str, depends_on_id: str) -> bool:
        """Return ``False`` when the edge already exists."""

        completed = self._run(["dep", "add", task_id, depends_on_id])
        if completed.returncode == 0:
            return True
        if "already exists" in completed.stderr or "already exists" in completed.stdout:
            return False
        raise _failure(["dep", "add", task_id, depends_on_id], completed)

    def set_parent(self, task_id: str, parent_id: str) -> bool:
        """Return ``False`` when the parent is already set."""

        completed = self._run(["update", task_id, "--parent", parent_id])
        if completed.returncode == 0:
            return True
        if "already set" in completed.stderr or "already set" in completed.stdout:
            return False
        raise _failure(["update", task_id, "--parent", parent_id], completed)

    def create_issue(self, issue: IssueCreate) -> str:
        """Create an issue; an id that already exists returns that id unchanged."""

        body_file = tempfile.NamedTemporaryFile(  # noqa: SIM115
            mode="w",
            encoding="utf-8",
            prefix="beads-desc-",
            suffix=".txt",
            delete=False,
        )
        try:
            with body_file:
                body_file.write(issue.body)
            args = [
                "create",
                "--type",
                issue.issue_type,
                "--title",
                issue.title,
                "--id",
                issue.id,
                "--body-file",
                body_file.name,
                "--force",
            ]
            if issue.labels:
                args.extend(["--labels", ",".join(issue.labels)])
            if issue.acceptance_criteria:
                args.extend(["--acceptance", "; ".join(issue.acceptance_criteria)])
            args.append("--json")
            completed = self._run(args)
        finally:
            os.unlink(body_file.name)

        if completed.returncode != 0:
            combined = f"{completed.stderr}\n{completed.stdout}"
            if any(marker in combined for marker in _DUPLICATE_ISSUE_MARKERS):
                logger.info("%s %s already exists", issue.issue_type, issue.id)
                return issue.id
            raise _failure(args, completed)

        if not completed.stdout.strip():
            return issue.id
        payload = parse_tracker_json(completed.stdout, context="bd create --json", shape="object")
        return str(payload.get("id") or issue.id)

    def info(self) -> dict[str, Any]:
        output = self._run_checked(["info", "--json"]).stdout
        return parse_tracker_json(output, context="bd info --json", shape="object")

    def issue_prefix(self) -> str:
        try:
            payload = self.info()
        except TrackerError as error:
            logger.warning(
                "Failed to read issue prefix from bd info, using %r: %s",
                DEFAULT_ISSUE_PREFIX,
                error,
            )
            return DEFAULT_ISSUE_PREFIX
        config = payload.get("config") or {}
        return str(config.get("issue_prefix") or DEFAULT_ISSUE_PREFIX)

    def _run(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        argv = [*self.command, *args]
        try:
            return subprocess.run(  # noqa: S603
                argv,
                cwd=self.cwd,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            raise TrackerError(f"Tracker command not found: {self.command[0]}") from error
        except subprocess.TimeoutExpired as error:
            raise TrackerError(
                f"Tracker command timed out after {self.timeout_seconds}s: {' '.join(argv)}",
            ) from error

    def _run_checked(self, args: Sequence[str]) -> subprocess.CompletedProcess[str]:
        completed = self._run(args)
        if completed.returncode != 0:
            raise _failure(args, completed)
        return completed


def _failure(args: Sequence[str], completed: subprocess.CompletedProcess[str]) -> TrackerError:
    stderr = completed.stderr.strip()
    detail = stderr or completed.stdout.strip() or "no output"
    return TrackerError(
        f"bd {' '.join(args)} failed (exit code: {completed.returncode}): {detail}",
        stderr=completed.stderr,
        stdout=completed.stdout,
    )
