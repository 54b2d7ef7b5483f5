"""Controllers for ralph CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from ralph.config import RalphSettings, tracker_command_from_env
from ralph.git_manager import ConflictStrategy, GitManager
from ralph.orchestrator.backend import (
    AgentProcessRunner,
    DelegationOptions,
    run_agent_with_retries,
)
from ralph.orchestrator.loop import ExecutionLoop
from ralph.orchestrator.repository import ExecutionMetadataStore
from ralph.orchestrator.routing import build_router_report
from ralph.setup_loop import LoopSetup, load_loop_definition, update_config_from_run
from ralph.status_check import StatusCheckResult, check_task_status
from ralph.tracker import BeadsClient


@dataclass(slots=True)
class RunLoopCommand:
    """CLI input for the execution loop."""

    epic_id: str
    config_path: Path | None
    dry_run: bool = False


@dataclass(slots=True)
class RouteCommand:
    """CLI input for the routing report."""

    config_path: Path | None
    epic_id: str | None = None


@dataclass(slots=True)
class DelegateCommand:
    """CLI input for a single delegated agent run with retries."""

    agent: str
    prompt: str
    repo: Path | None
    attempts: int
    sleep_ms: int
    backoff: float
    max_delay_ms: int | None
    timeout_ms: int | None
    log_dir: Path | None
    wake: bool
    wake_summarize: bool
    task_description: str | None
    wake_output_chars: int
    extra_args: tuple[str, ...] = ()


@dataclass(slots=True)
class CheckStatusCommand:
    task_id: str
    signal: str


@dataclass(slots=True)
class SetupLoopCommand:
    """CLI input for loop file materialization."""

    loop_path: Path
    config_path: Path | None
    dry_run: bool = False


@dataclass(slots=True)
class GitCommand:
    """Common git options; ``branch``/``base`` meaning depends on the subcommand."""

    repo: Path | None
    branch: str
    base: str = "main"
    push: bool = True
    pull: bool = True
    strategy: str = ConflictStrategy.THEIRS.value
    abort_on_complex: bool = True
    max_conflicts: int = 10
    no_ff: bool = True
    message: str | None = None


@dataclass(slots=True)
class CommandResult:
    """Lines to print plus overall success for commands that can fail softly."""

    lines: list[str] = field(default_factory=list)
    success: bool = True


class RalphCliController:
    """Execute ralph commands and return printable lines."""

    def run_loop(self, command: RunLoopCommand) -> list[str]:
        settings = RalphSettings.load(command.config_path)
        tracker = BeadsClient(settings.tracker_command, cwd=settings.repo_root)
        with _store(settings) as store:
            loop = ExecutionLoop(
                tracker=tracker,
                store=store,
                runner=AgentProcessRunner(),
                settings=settings,
                dry_run=command.dry_run,
            )
            summary = loop.run(command.epic_id)

        return [
            "Loop summary: "
            f"iterations={summary.iterations} dispatched={summary.dispatched} "
            f"succeeded={summary.succeeded} failed={summary.failed} "
            f"timeouts={summary.timeouts} blocked={summary.blocked} "
            f"stop_reason={summary.stop_reason}",
        ]

    def route(self, command: RouteCommand) -> list[str]:
        """Resolve the agent for every ready task without dispatching anything."""

        settings = RalphSettings.load(command.config_path)
        tracker = BeadsClient(settings.tracker_command, cwd=settings.repo_root)
        ready = (
            tracker.ready_tasks_for_epic(command.epic_id) if command.epic_id else tracker.ready()
        )
        report = build_router_report(settings, ready, tracker.labels)
        return [json.dumps(report, indent=2, ensure_ascii=False, default=str)]

    def delegate(self, command: DelegateCommand) -> CommandResult:
        result = run_agent_with_retries(
            DelegationOptions(
                agent=command.agent,
                prompt=command.prompt,
                repo=command.repo,
                attempts=command.attempts,
                sleep_ms=command.sleep_ms,
                backoff=command.backoff,
                max_delay_ms=command.max_delay_ms,
                timeout_ms=command.timeout_ms,
                log_dir=command.log_dir,
                wake=command.wake,
                wake_summarize=command.wake_summarize,
                task_description=command.task_description,
                wake_output_chars=command.wake_output_chars,
                extra_args=list(command.extra_args),
            ),
        )
        status = "succeeded" if result.success else "FAILED"
        lines = [
            f"{command.agent} Agent {status} on attempt {result.attempt}/{result.total_attempts} "
            f"(exit code: {result.exit_code}).",
            f"Log: {result.log_path}",
        ]
        if result.wake_error:
            lines.append(f"Wake notification failed: {result.wake_error}")
        elif result.wake_sent:
            lines.append("Wake notification sent.")
        return CommandResult(lines=lines, success=result.success)

    def check_status(self, command: CheckStatusCommand) -> StatusCheckResult:
        client = BeadsClient(tracker_command_from_env())
        return check_task_status(client, command.task_id, command.signal)

    def setup_loop(self, command: SetupLoopCommand) -> list[str]:
        settings = RalphSettings.load(command.config_path)
        definition = load_loop_definition(
            command.loop_path,
            templates_dir=settings.config_path.parent.parent / "templates",
        )
        lines: list[str] = []
        if definition.run is not None and not command.dry_run:
            update_config_from_run(settings.config_path, definition.run)
            lines.append(f"Updated {settings.config_path} with run settings")
        tracker = BeadsClient(settings.tracker_command, cwd=settings.repo_root)
        setup = LoopSetup(tracker, repo_root=settings.repo_root)
        lines.extend(setup.apply(definition, dry_run=command.dry_run))
        return lines

    def git_hub(self, command: GitCommand) -> list[str]:
        branch = _git(command).create_hub_branch(command.branch, command.base)
        return [f"Created hub branch {branch} from {command.base}"]

    def git_feature(self, command: GitCommand) -> list[str]:
        branch = _git(command).checkout_feature_branch(command.branch, command.base)
        return [f"On feature branch {branch}"]

    def git_rebase(self, command: GitCommand) -> CommandResult:
        result = _git(command).rebase_branch(
            command.branch,
            command.base,
            strategy=command.strategy,
            abort_on_complex=command.abort_on_complex,
            max_conflicts=command.max_conflicts,
        )
        lines = [
            f"Rebase {command.branch} onto {command.base}: "
            f"{'ok' if result.success else 'failed'}"
            f"{' (aborted)' if result.aborted else ''}",
        ]
        lines.extend(
            f"  conflict {record.file}: {record.strategy.value}" for record in result.conflicts
        )
        if result.error:
            lines.append(f"Error: {result.error}")
        return CommandResult(lines=lines, success=result.success)

    def git_push(self, command: GitCommand) -> list[str]:
        _git(command).force_push_with_lease(command.branch)
        return [f"Force-pushed {command.branch} with lease"]

    def git_merge(self, command: GitCommand) -> CommandResult:
        result = _git(command).merge_branch(
            command.branch,
            command.base,
            no_ff=command.no_ff,
            message=command.message,
        )
        if result.success:
            return CommandResult(lines=[f"Merged {command.branch} into {command.base}"])
        return CommandResult(lines=[f"Error: {result.error}"], success=False)


def _git(command: GitCommand) -> GitManager:
    return GitManager(command.repo, push=command.push, pull=command.pull)


@contextmanager
def _store(settings: RalphSettings) -> Iterator[ExecutionMetadataStore]:
    store = ExecutionMetadataStore(settings.database_path)
    store.initialize()
    try:
        yield store
    finally:
        store.close()
