"""Prompt assembly for agent dispatch."""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from pathlib import Path

from ralph.config import AgentProfile, RalphSettings
from ralph.hierarchical_id import hierarchical_sort_key
from ralph.tracker.models import EPIC_STATUS_ORDER, TaskStatus, TrackerTask

logger = logging.getLogger(__name__)

EPIC_CONTEXT_TASK_LIMIT = 50
SECTION_SEPARATOR = "\n\n---\n\n"


def format_duration(seconds: float) -> str:
    """``1h 2m 3s`` style duration; minutes are shown whenever hours are."""

    total = max(0, round(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    parts: list[str] = []
    if hours:
        parts.append(f"{hours}h")
    if minutes or hours:
        parts.append(f"{minutes}m")
    parts.append(f"{secs}s")
    return " ".join(parts)


def build_roles_section(settings: RalphSettings) -> str:
    labels = sorted(settings.agents)
    lines = [
        "## Run roles & routing (from config)",
        "",
        "These values are loaded from the active run config so roles/agents can vary per run.",
        "",
    ]
    if not labels:
        lines.append("- No routing labels found in `config.agents` (cannot route tasks).")
        return "\n".join(lines)

    lines.append("### Routing labels")
    for label in labels:
        display_name = settings.roles.get(label) or label
        brief = (settings.role_briefs.get(label) or "").strip()
        suffix = f" — {brief}" if brief else ""
        lines.append(
            f"- **{label}**: {display_name} (profile: `{settings.agents[label]}`){suffix}",
        )

    lines.extend(
        [
            "",
            "### Task creation logic (when you discover work)",
            "- Stay in the current task if it's required to meet that task's acceptance "
            "criteria and is in-scope.",
            "- Create a new Beads task if it's out-of-scope, a follow-up, or a separate concern "
            "that needs its own owner/verification.",
            "",
            "### Creating a task Ralph can pick up (routing requirements)",
            "- Make it a **direct epic child** and apply **exactly one** routing label "
            "from the list above.",
            "- Add ordering constraints with dependency edges: "
            "`bd dep add <task> <depends-on>`.",
            "- Ensure epic-scoped queries work: `bd update <task> --parent <epic>`.",
        ],
    )
    if not settings.role_briefs:
        lines.extend(
            [
                "",
                "Tip: add `role_briefs` in `config.json` (map of label → short description) "
                "to share run-specific role guidance.",
            ],
        )
    return "\n".join(lines)


def epic_progress_summary(tasks: Sequence[TrackerTask]) -> str:
    total = len(tasks)
    counts = Counter(task.status for task in tasks)
    closed = counts[TaskStatus.CLOSED.value]
    completion = 0 if total == 0 else round(closed / total * 100)
    return (
        f"**Epic Progress:** {closed}/{total} closed | "
        f"{counts[TaskStatus.IN_PROGRESS.value]} in_progress | "
        f"{counts[TaskStatus.BLOCKED.value]} blocked | "
        f"{counts[TaskStatus.OPEN.value]} open\n"
        f"**Completion:** {completion}%"
    )


def order_epic_tasks(tasks: Sequence[TrackerTask]) -> list[TrackerTask]:
    """Status priority first (in_progress, open, blocked, closed), then hierarchical id."""

    status_index = {status: index for index, status in enumerate(EPIC_STATUS_ORDER)}
    fallback_index = len(EPIC_STATUS_ORDER)

    def _rank(task: TrackerTask) -> int:
        return status_index.get(task.status, fallback_index)

    by_id = sorted(tasks, key=lambda task: hierarchical_sort_key(task.id))
    return sorted(by_id, key=_rank)


def build_epic_context(
    epic_id: str,
    current_task_id: str,
    epic_tasks: Sequence[TrackerTask],
    *,
    limit: int = EPIC_CONTEXT_TASK_LIMIT,
) -> str:
    if not epic_tasks:
        return ""
    ordered = order_epic_tasks(epic_tasks)
    visible = ordered[:limit]
    remaining = len(ordered) - len(visible)
    task_lines = "\n".join(
        f"- {task.id} ({task.status}): {task.title}"
        + (" ← current task" if task.id == current_task_id else "")
        for task in visible
    )
    more = f"\n- ...and {remaining} more" if remaining > 0 else ""
    return (
        f"\n### EPIC CONTEXT: {epic_id}\n\n"
        f"{epic_progress_summary(epic_tasks)}\n\n"
        f"**Sub-issues (context only, showing {len(visible)} of {len(ordered)}):**\n"
        f"{task_lines}\n"
        f"{more}\n"
    )


def role_header(agent_name: str, role_name: str) -> str:
    name = agent_name.strip() or "Agent"
    return (
        f"YOUR AGENT NAME: {name}\n"
        f"YOUR ASSIGNED ROLE FOR THIS TASK: {role_name}\n"
        "COMMENT SIGNATURE (append this exact line to every Beads comment you write): "
        f"Signed: {name} — {role_name}\n\n"
    )


def load_agent_instructions(profile: AgentProfile | None, settings: RalphSettings) -> str:
    """Profile instructions followed by the shared base instructions.

    A missing profile instructions file falls back to the base instructions
    alone.
    """

    base = _read_optional(settings.base_instructions_path, what="AGENTS.md")
    if profile is None or not profile.instructions_path:
        return base
    path = settings.repo_root / profile.instructions_path
    if not path.exists():
        return base
    try:
        specific = path.read_text("utf-8")
    except OSError as error:
        logger.warning("Failed to read agent instructions from %s: %s", path, error)
        return base
    return f"{specific}\n\n---\n\n## Shared Ralph Instructions\n{base}"


def build_agent_instructions(
    profile: AgentProfile,
    matched_label: str | None,
    settings: RalphSettings,
) -> str:
    role_name = settings.role_name(matched_label)
    return role_header(profile.name, role_name) + load_agent_instructions(profile, settings)


def build_prompt(
    task: TrackerTask,
    epic_id: str | None,
    agent_instructions: str,
    settings: RalphSettings,
    *,
    epic_tasks: Sequence[TrackerTask] = (),
) -> str:
    preamble = ""
    if settings.preamble_path is not None and settings.preamble_path.exists():
        try:
            preamble = settings.preamble_path.read_text("utf-8") + SECTION_SEPARATOR
        except OSError as error:
            logger.warning("Failed to read preamble from %s: %s", settings.preamble_path, error)

    epic_label = epic_id or "null"
    epic_context = build_epic_context(epic_id, task.id, epic_tasks) if epic_id else ""
    return (
        f"{preamble}{build_roles_section(settings)}{SECTION_SEPARATOR}"
        f"Task: {task.description}\n"
        f"Task ID: {task.id}\n"
        f"Parent Epic ID: {epic_label}\n"
        "\n"
        "Acceptance Criteria:\n"
        f"{task.acceptance_criteria}\n"
        "\n"
        "CONTEXT:\n"
        f"You are working on task {task.id} which is part of Epic {epic_label}.{epic_context}\n"
        f"You can view full epic details using: bd show {epic_id or task.id}\n"
        "\n"
        "### AGENT OPERATING INSTRUCTIONS\n"
        f"{agent_instructions}\n"
        "\n"
        "### EXECUTION INSTRUCTIONS\n"
        "Please implement this task following the instructions above "
        "and the project's coding standards."
    )


def _read_optional(path: Path, *, what: str) -> str:
    if not path.exists():
        logger.warning("%s not found at %s", what, path)
        return ""
    try:
        return path.read_text("utf-8")
    except OSError as error:
        logger.warning("Failed to read %s: %s", what, error)
        return ""
