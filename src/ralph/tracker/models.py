"""Typed views over Beads tracker JSON payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ralph.errors import TrackerParseError


class TaskStatus(str, Enum):
    """Tracker task lifecycle states."""

    OPEN = "open"
    IN_PROGRESS = "in_progress"
    CLOSED = "closed"
    BLOCKED = "blocked"


EPIC_STATUS_ORDER: tuple[str, ...] = (
    TaskStatus.IN_PROGRESS.value,
    TaskStatus.OPEN.value,
    TaskStatus.BLOCKED.value,
    TaskStatus.CLOSED.value,
)


@dataclass(slots=True)
class TrackerTask:
    """Task summary or details returned by ``bd ready``/``bd show``/``bd list``."""

    id: str
    title: str = ""
    status: str = TaskStatus.OPEN.value
    description: str = ""
    acceptance_criteria: str = ""
    parent_id: str | None = None
    labels: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    issue_type: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> TrackerTask:
        task_id = payload.get("id")
        if not isinstance(task_id, str) or not task_id:
            raise TrackerParseError(
                "Tracker task payload is missing 'id'.",
                context="task",
                preview=output_preview(str(payload)),
            )
        return cls(
            id=task_id,
            title=str(payload.get("title") or ""),
            status=str(payload.get("status") or TaskStatus.OPEN.value),
            description=str(payload.get("description") or ""),
            acceptance_criteria=normalize_acceptance_criteria(payload.get("acceptance_criteria")),
            parent_id=payload.get("parent_id") or None,
            labels=[str(label) for label in payload.get("labels") or []],
            dependencies=_dependency_ids(payload.get("dependencies")),
            issue_type=payload.get("issue_type") or payload.get("type"),
            raw=payload,
        )

    def to_public_dict(self) -> dict[str, Any]:
        return dict(self.raw) if self.raw else {"id": self.id, "title": self.title}


def normalize_acceptance_criteria(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, list):
        return "; ".join(str(item) for item in value)
    return str(value)


EMPTY_PREVIEW = "<empty>"


def output_preview(raw: str, max_chars: int = 200) -> str:
    """Whitespace-collapsed, truncated preview of tool output for error messages."""

    normalized = " ".join(raw.split())
    if not normalized:
        return EMPTY_PREVIEW
    if len(normalized) <= max_chars:
        return normalized
    return f"{normalized[:max_chars]}…"


def _dependency_ids(value: object) -> list[str]:
    if not isinstance(value, list):
        return []
    ids: list[str] = []
    for item in value:
        if isinstance(item, str):
            ids.append(item)
        elif isinstance(item, dict):
            dep_id = item.get("depends_on_id") or item.get("id")
            if dep_id:
                ids.append(str(dep_id))
    return ids
