"""Label-based routing of tracker tasks to agent profiles."""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from ralph.config import FALLBACK_LABEL, AgentProfile, RalphSettings
from ralph.errors import ConfigError
from ralph.orchestrator.models import FallbackReason
from ralph.tracker.models import TrackerTask

ProfileLoader = Callable[[str], AgentProfile]


@dataclass(slots=True)
class RoutingResolution:
    """Profile chosen for one task and how it was matched."""

    profile: AgentProfile
    matched_label: str | None
    labels: list[str] = field(default_factory=list)
    fallback_reason: FallbackReason | None = None

    @property
    def used_fallback(self) -> bool:
        return self.matched_label is None


def resolve_agent_for_task(
    task_id: str,
    labels: Sequence[str],
    *,
    agents: Mapping[str, str],
    load_profile: ProfileLoader,
) -> RoutingResolution:
    """Pick the profile for the first label present in ``agents``.

    Tasks without labels, or with no known label, get the ``project-manager``
    profile together with the reason.
    """

    label_list = list(labels)
    fallback_filename = agents.get(FALLBACK_LABEL)
    if not fallback_filename:
        raise ConfigError(f"Cannot route task {task_id}: no '{FALLBACK_LABEL}' agent configured")

    if not label_list:
        return RoutingResolution(
            profile=load_profile(fallback_filename),
            matched_label=None,
            labels=label_list,
            fallback_reason=FallbackReason.NO_LABELS,
        )

    for label in label_list:
        filename = agents.get(label)
        if filename:
            return RoutingResolution(
                profile=load_profile(filename),
                matched_label=label,
                labels=label_list,
            )

    return RoutingResolution(
        profile=load_profile(fallback_filename),
        matched_label=None,
        labels=label_list,
        fallback_reason=FallbackReason.NO_MATCH,
    )


def routing_log_lines(
    task_id: str,
    resolution: RoutingResolution,
    *,
    valid_labels: Sequence[str],
) -> list[str]:
    """Operator-facing notes about fallbacks and ambiguous labels."""

    valid = ", ".join(sorted(valid_labels))
    lines: list[str] = []
    if resolution.used_fallback:
        if resolution.fallback_reason is FallbackReason.NO_LABELS:
            lines.append(
                f"Routing fallback: task {task_id} has no labels. "
                f"Using '{FALLBACK_LABEL}'. Add exactly one label from: {valid}.",
            )
        else:
            lines.append(
                f"Routing fallback: task {task_id} labels [{', '.join(resolution.labels)}] "
                f"do not match config mapping keys. Using '{FALLBACK_LABEL}'. "
                f"Valid labels: {valid}.",
            )
    elif len(resolution.labels) > 1:
        lines.append(
            f"Note: multiple labels detected for {task_id} ({', '.join(resolution.labels)}). "
            f"Router uses first matching label: {resolution.matched_label}.",
        )
    suffix = (
        f" ({FALLBACK_LABEL} fallback)"
        if resolution.used_fallback
        else f" (label: {resolution.matched_label})"
    )
    lines.append(f"Resolved agent: {resolution.profile.name}{suffix}")
    return lines


def build_router_report(
    settings: RalphSettings,
    ready_tasks: Sequence[TrackerTask],
    label_lookup: Callable[[str], list[str]],
) -> dict[str, Any]:
    """JSON-ready routing plan for every ready task, with worker env stripped."""

    task_agents: list[dict[str, Any]] = []
    for task in ready_tasks:
        resolution = resolve_agent_for_task(
            task.id,
            label_lookup(task.id),
            agents=settings.agents,
            load_profile=settings.load_profile,
        )
        task_agents.append(
            {
                "task": task.to_public_dict(),
                "agent": resolution.profile.to_public_dict(),
                "matchedLabel": resolution.matched_label,
                "fallback": resolution.used_fallback,
            },
        )
    return {
        "config": settings.to_public_dict(),
        "readyTasks": [task.to_public_dict() for task in ready_tasks],
        "taskAgents": task_agents,
    }
