"""Exit-code check of whether a tracker task carries a status or label."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum

from ralph.errors import TrackerError, TrackerParseError
from ralph.tracker.client import BeadsClient
from ralph.tracker.models import EMPTY_PREVIEW


class StatusCheckCode(IntEnum):
    MATCH = 0
    NO_MATCH = 1
    ERROR = 2


@dataclass(slots=True)
class StatusCheckResult:
    code: StatusCheckCode
    message: str | None = None


def check_task_status(client: BeadsClient, task_id: str, signal: str) -> StatusCheckResult:
    """``MATCH`` when the task status equals ``signal`` or its labels contain it.

    A task the tracker cannot find, or empty tracker output, is ``NO_MATCH``.
    Unreadable tracker output is ``ERROR``.
    """

    if not task_id or not signal:
        return StatusCheckResult(StatusCheckCode.ERROR, "Usage: ralph check-status <id> <signal>")
    try:
        task = client.show(task_id)
    except TrackerParseError as error:
        if error.preview == EMPTY_PREVIEW:
            return StatusCheckResult(StatusCheckCode.NO_MATCH)
        return StatusCheckResult(StatusCheckCode.ERROR, f"Error: {error}")
    except TrackerError:
        return StatusCheckResult(StatusCheckCode.NO_MATCH, f"Error: Task {task_id} not found.")

    if task.status == signal or signal in task.labels:
        return StatusCheckResult(StatusCheckCode.MATCH)
    return StatusCheckResult(StatusCheckCode.NO_MATCH)
