"""Backend interface for supervised agent processes."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Protocol

from ralph.logs import TaskLogWriter
from ralph.orchestrator.models import AttemptOutcome, ExecutionAttempt


@dataclass(slots=True)
class AgentInvocation:
    """Executable, argument list and env overrides for one agent run."""

    command: str
    args: list[str]
    env: dict[str, str] = field(default_factory=dict)

    def argv(self) -> list[str]:
        return [self.command, *self.args]


@dataclass(slots=True)
class AgentRunRequest:
    """Inputs required to execute one agent attempt."""

    invocation: AgentInvocation
    timeout_seconds: float
    cwd: Path | None = None
    max_tail_chars: int = 30_000


@dataclass(slots=True)
class AgentRunResult:
    """Execution outcome from the process runner."""

    exit_code: int
    outcome: AttemptOutcome
    started_at: datetime
    finished_at: datetime
    stdout_tail: str = ""
    stderr_tail: str = ""
    error: str | None = None
    spawn_failed: bool = False

    @property
    def timed_out(self) -> bool:
        return self.outcome is AttemptOutcome.TIMEOUT

    def to_attempt(self, attempt_no: int) -> ExecutionAttempt:
        return ExecutionAttempt(
            attempt_no=attempt_no,
            started_at=self.started_at,
            finished_at=self.finished_at,
            exit_code=self.exit_code,
            outcome=self.outcome,
            stdout_tail=self.stdout_tail,
            stderr_tail=self.stderr_tail,
            error=self.error,
        )


class AgentRunner(Protocol):
    """Protocol implemented by process runners."""

    def run(
        self,
        request: AgentRunRequest,
        *,
        log: TaskLogWriter | None = None,
    ) -> AgentRunResult:
        """Run one attempt and return its classified outcome."""
