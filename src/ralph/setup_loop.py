"""Create an objective epic, sub-epics and tasks in the tracker from a loop file."""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from ralph.errors import ConfigError, TrackerError
from ralph.tracker.client import IssueCreate

logger = logging.getLogger(__name__)

TASK_ISSUE_TYPES = ("task", "epic", "feature", "bug")
_EPIC_BASE = re.compile(r"^([^.]+)")


class IssueWriter(Protocol):
    def issue_prefix(self) -> str: ...

    def create_issue(self, issue: IssueCreate) -> str: ...

    def set_parent(self, task_id: str, parent_id: str) -> bool: ...

    def add_dependency(self, task_id: str, depends_on_id: str) -> bool: ...


@dataclass(slots=True)
class LoopEpic:
    id: str
    title: str | None = None
    description: str = ""
    parent_id: str | None = None

    @classmethod
    def from_mapping(cls, payload: Any, *, where: str) -> LoopEpic:
        if not isinstance(payload, dict) or not payload.get("id"):
            raise ConfigError(f"Invalid loop file: {where} must be an object with an 'id'.")
        return cls(
            id=str(payload["id"]),
            title=payload.get("title"),
            description=str(payload.get("description") or ""),
            parent_id=payload.get("parent_id"),
        )


@dataclass(slots=True)
class LoopTask:
    id: str
    title: str
    role: str
    description: str = ""
    description_path: str | None = None
    issue_type: str = "task"
    parent_id: str | None = None
    acceptance_criteria: list[str] = field(default_factory=list)
    dependencies: list[str] = field(default_factory=list)
    labels: list[str] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, payload: Any, *, where: str) -> LoopTask:
        if not isinstance(payload, dict):
            raise ConfigError(f"Invalid loop file: {where} must be an object.")
        missing = [key for key in ("id", "title", "role") if not payload.get(key)]
        if missing:
            raise ConfigError(f"Invalid loop file: {where} is missing {', '.join(missing)}.")
        issue_type = str(payload.get("issue_type") or "task")
        if issue_type not in TASK_ISSUE_TYPES:
            raise ConfigError(
                f"Invalid loop file: {where} has unsupported issue_type {issue_type!r}.",
            )
        return cls(
            id=str(payload["id"]),
            title=str(payload["title"]),
            role=str(payload["role"]),
            description=str(payload.get("description") or ""),
            description_path=payload.get("descriptionPath"),
            issue_type=issue_type,
            parent_id=payload.get("parent_id"),
            acceptance_criteria=_string_list(payload.get("acceptance_criteria"), where=where),
            dependencies=_string_list(payload.get("dependencies"), where=where),
            labels=_string_list(payload.get("labels"), where=where),
        )


@dataclass(slots=True)
class LoopRun:
    base_branch: str
    working_branch: str
    max_iterations: int


@dataclass(slots=True)
class LoopDefinition:
    """Parsed loop file after template resolution."""

    run: LoopRun | None
    tasks: list[LoopTask]
    setup_tasks: list[LoopTask] = field(default_factory=list)
    teardown_tasks: list[LoopTask] = field(default_factory=list)
    epic: LoopEpic | None = None
    epics: list[LoopEpic] = field(default_factory=list)

    def all_tasks(self) -> list[LoopTask]:
        return [*self.setup_tasks, *self.tasks, *self.teardown_tasks]


def merge_with_template(config: dict[str, Any], template: dict[str, Any]) -> dict[str, Any]:
    """Loop-file keys win; ``epics`` concatenate; loop task lists fall back to the template."""

    merged = {**template, **config}
    config_loop = config.get("loop")
    template_loop = template.get("loop") or {}
    if config_loop:
        merged["loop"] = {
            **template_loop,
            **config_loop,
            "setupTasks": config_loop.get("setupTasks", template_loop.get("setupTasks")),
            "teardownTasks": config_loop.get("teardownTasks", template_loop.get("teardownTasks")),
        }
    else:
        merged["loop"] = template.get("loop")
    merged["tasks"] = config.get("tasks")
    merged["epics"] = [*(template.get("epics") or []), *(config.get("epics") or [])]
    merged["availableAgents"] = config.get("availableAgents", template.get("availableAgents"))
    merged.pop("extends", None)
    return merged


def resolve_template_path(template: str, *, base_dir: Path, templates_dir: Path) -> Path:
    candidate = Path(template)
    if candidate.is_absolute():
        if candidate.exists():
            return candidate
        raise ConfigError(f"Template not found: {template}")
    normalized = template.removeprefix("templates/")
    for path in (templates_dir / normalized, base_dir / template, base_dir / normalized):
        if path.exists():
            return path
    raise ConfigError(f"Template not found: {template}")


def load_loop_definition(path: Path, *, templates_dir: Path) -> LoopDefinition:
    resolved = path.resolve()
    if not resolved.exists():
        raise ConfigError(f"File not found: {resolved}")
    payload = _read_json(resolved)
    extends = payload.get("extends")
    if extends:
        template_path = resolve_template_path(
            str(extends),
            base_dir=resolved.parent,
            templates_dir=templates_dir,
        )
        payload = merge_with_template(payload, _read_json(template_path))
    return parse_loop_definition(payload)


def parse_loop_definition(payload: dict[str, Any]) -> LoopDefinition:
    tasks_payload = payload.get("tasks")
    if not isinstance(tasks_payload, list):
        raise ConfigError("Invalid loop file: 'tasks' must be a list.")
    loop_payload = payload.get("loop") or {}
    run_payload = payload.get("run")
    run = None
    if run_payload is not None:
        if not isinstance(run_payload, dict):
            raise ConfigError("Invalid loop file: 'run' must be an object.")
        git = run_payload.get("git") or {}
        execution = run_payload.get("execution") or {}
        try:
            max_iterations = int(execution.get("max_iterations") or 0)
        except (TypeError, ValueError) as error:
            raise ConfigError("Invalid loop file: run.execution.max_iterations") from error
        run = LoopRun(
            base_branch=str(git.get("base_branch") or "main"),
            working_branch=str(git.get("working_branch") or ""),
            max_iterations=max_iterations,
        )
    return LoopDefinition(
        run=run,
        tasks=[
            LoopTask.from_mapping(item, where=f"tasks[{index}]")
            for index, item in enumerate(tasks_payload)
        ],
        setup_tasks=[
            LoopTask.from_mapping(item, where=f"loop.setupTasks[{index}]")
            for index, item in enumerate(loop_payload.get("setupTasks") or [])
        ],
        teardown_tasks=[
            LoopTask.from_mapping(item, where=f"loop.teardownTasks[{index}]")
            for index, item in enumerate(loop_payload.get("teardownTasks") or [])
        ],
        epic=LoopEpic.from_mapping(payload["epic"], where="epic") if payload.get("epic") else None,
        epics=[
            LoopEpic.from_mapping(item, where=f"epics[{index}]")
            for index, item in enumerate(payload.get("epics") or [])
        ],
    )


def update_config_from_run(config_path: Path, run: LoopRun) -> None:
    """Write the loop's git branches and iteration limit into ``config.json``."""

    current = _read_json(config_path)
    current["git"] = {
        **(current.get("git") or {}),
        "base_branch": run.base_branch,
        "working_branch": run.working_branch,
    }
    execution = {**(current.get("execution") or {})}
    if run.max_iterations:
        execution["max_iterations"] = run.max_iterations
    current["execution"] = execution
    config_path.write_text(json.dumps(current, indent=2), "utf-8")


def prefixed_id(item_id: str, prefix: str, root_epic_id: str | None) -> str:
    """Tracker id for a loop item: nested under the root epic or prefixed with the project."""

    if item_id.startswith(f"{prefix}-"):
        return item_id
    if root_epic_id and root_epic_id.startswith(f"{prefix}-"):
        return f"{root_epic_id}.{item_id}"
    return f"{prefix}-{item_id}"


class LoopSetup:
    """Idempotently materialize a :class:`LoopDefinition` in the tracker."""

    def __init__(self, tracker: IssueWriter, *, repo_root: Path) -> None:
        self.tracker = tracker
        self.repo_root = repo_root

    def apply(self, definition: LoopDefinition, *, dry_run: bool = False) -> list[str]:
        prefix = self.tracker.issue_prefix()
        lines = [f"Project prefix: {prefix}"]

        root_epic_id: str | None = None
        if definition.epic is not None:
            root_epic_id = prefixed_id(definition.epic.id, prefix, None)
            if dry_run:
                lines.append(f"[DRY RUN] Create epic: {root_epic_id}")
            else:
                self._create_epic(definition.epic, prefix, None)
                lines.append(f"Epic: {root_epic_id}")

        for sub_epic in definition.epics:
            if dry_run:
                lines.append(
                    f"[DRY RUN] Create epic: {prefixed_id(sub_epic.id, prefix, root_epic_id)}",
                )
                continue
            sub_epic_id = self._create_epic(sub_epic, prefix, root_epic_id)
            lines.append(f"Epic: {sub_epic_id}")
            parent = sub_epic.parent_id or root_epic_id
            if parent:
                self._set_parent(sub_epic_id, parent, lines)

        tasks = definition.all_tasks()
        id_map: dict[str, str] = {}
        for task in tasks:
            if dry_run:
                lines.append(f"[DRY RUN] Create task: {task.id}")
                id_map[task.id] = task.id
                continue
            created_id = self._create_task(task, prefix, root_epic_id)
            id_map[task.id] = created_id
            lines.append(f"Task: {created_id} - {task.title}")
            base = _EPIC_BASE.match(created_id)
            parent = task.parent_id or (base.group(1) if base else None)
            if parent and parent != created_id:
                self._set_parent(created_id, parent, lines)

        for task in tasks:
            task_id = id_map.get(task.id)
            if not task_id:
                continue
            for dependency in task.dependencies:
                resolved = id_map.get(dependency, dependency)
                if dry_run:
                    lines.append(f"[DRY RUN] Dependency: {task_id} -> {resolved}")
                    continue
                try:
                    if self.tracker.add_dependency(task_id, resolved):
                        lines.append(f"Dependency: {task_id} -> {resolved}")
                except TrackerError as error:
                    logger.warning("Failed dependency %s -> %s: %s", task_id, resolved, error)

        lines.append("Loop setup completed." if not dry_run else "Dry run: no changes made.")
        return lines

    def _create_epic(self, epic: LoopEpic, prefix: str, root_epic_id: str | None) -> str:
        return self.tracker.create_issue(
            IssueCreate(
                id=prefixed_id(epic.id, prefix, root_epic_id),
                title=epic.title or epic.id,
                issue_type="epic",
                body=epic.description,
            ),
        )

    def _create_task(self, task: LoopTask, prefix: str, root_epic_id: str | None) -> str:
        return self.tracker.create_issue(
            IssueCreate(
                id=prefixed_id(task.id, prefix, root_epic_id),
                title=task.title,
                issue_type=task.issue_type,
                body=self._task_body(task),
                labels=[label for label in (task.role, *task.labels) if label],
                acceptance_criteria=list(task.acceptance_criteria),
            ),
        )

    def _task_body(self, task: LoopTask) -> str:
        if not task.description_path:
            return task.description
        path = Path(task.description_path)
        if not path.is_absolute():
            path = self.repo_root / path
        if not path.exists():
            logger.warning("Description file not found: %s", path)
            return task.description
        return path.read_text("utf-8")

    def _set_parent(self, task_id: str, parent_id: str, lines: list[str]) -> None:
        try:
            if self.tracker.set_parent(task_id, parent_id):
                lines.append(f"Parent: {task_id} -> {parent_id}")
        except TrackerError as error:
            logger.warning("Failed parent %s -> %s: %s", task_id, parent_id, error)


def _read_json(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text("utf-8"))
    except json.JSONDecodeError as error:
        raise ConfigError(f"Failed to parse JSON ({path}): {error}") from error
    if not isinstance(payload, dict):
        raise ConfigError(f"{path} must contain a JSON object.")
    return payload


def _string_list(value: object, *, where: str) -> list[str]:
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigError(f"Invalid loop file: {where} expects a list of strings.")
    return [str(item) for item in value]
