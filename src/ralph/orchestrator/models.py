"""Domain models for the execution loop and agent dispatch."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum


class AttemptOutcome(str, Enum):
    """Classified result of one agent process run."""

    SUCCESS = "success"
    FAILED = "failed"
    TIMEOUT = "timeout"


class StopReason(str, Enum):
    """Why the execution loop stopped."""

    EPIC_BLOCKED = "epic_blocked"
    NO_READY_TASKS = "no_ready_tasks"
    MAX_ITERATIONS = "max_iterations"
    DRY_RUN = "dry_run"
    INTERRUPTED = "interrupted"


class FallbackReason(str, Enum):
    """Why routing used the fallback profile."""

    NO_LABELS = "no_labels"
    NO_MATCH = "no_match"


@dataclass(slots=True)
class TaskMetadata:
    """Orchestrator-owned counters for one tracker task."""

    issue_id: str
    failure_count: int = 0
    execution_count: int = 0
    last_failure_at: datetime | None = None
    last_success_at: datetime | None = None


@dataclass(slots=True)
class ExecutionAttempt:
    """One supervised agent process run; kept in logs only."""

    attempt_no: int
    started_at: datetime
    finished_at: datetime
    exit_code: int
    outcome: AttemptOutcome
    stdout_tail: str = ""
    stderr_tail: str = ""
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.outcome is AttemptOutcome.SUCCESS

    @property
    def duration_seconds(self) -> float:
        return max(0.0, (self.finished_at - self.started_at).total_seconds())


@dataclass(slots=True)
class LoopSummary:
    """Aggregate loop counters for CLI reporting."""

    iterations: int = 0
    dispatched: int = 0
    succeeded: int = 0
    failed: int = 0
    timeouts: int = 0
    blocked: int = 0
    stop_reason: str = StopReason.MAX_ITERATIONS.value
