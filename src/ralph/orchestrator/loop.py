"""Sequential execution loop: pick the next ready task, dispatch, record the outcome."""

from __future__ import annotations

import logging
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Protocol

from ralph.config import AgentProfile, RalphSettings
from ralph.errors import TrackerError
from ralph.hierarchical_id import hierarchical_sort_key
from ralph.logs import open_task_log_writer
from ralph.orchestrator.backend import (
    AgentInvocation,
    AgentRunner,
    AgentRunRequest,
    AgentRunResult,
    resolve_agent_kind,
)
from ralph.orchestrator.models import AttemptOutcome, LoopSummary, StopReason
from ralph.orchestrator.prompt import build_agent_instructions, build_prompt, format_duration
from ralph.orchestrator.repository import ExecutionMetadataStore
from ralph.orchestrator.routing import resolve_agent_for_task, routing_log_lines
from ralph.storage.common import utc_now
from ralph.tracker.models import TaskStatus, TrackerTask

logger = logging.getLogger(__name__)


class TaskTracker(Protocol):
    """Tracker operations the loop depends on."""

    def epic_tasks(self, epic_id: str) -> list[TrackerTask]: ...

    def is_epic_blocked(self, epic_id: str) -> bool: ...

    def ready_tasks_for_epic(self, epic_id: str) -> list[TrackerTask]: ...

    def show(self, task_id: str) -> TrackerTask: ...

    def labels(self, task_id: str) -> list[str]: ...

    def update_status(self, task_id: str, status: TaskStatus | str) -> None: ...

    def add_comment(self, task_id: str, text: str) -> None: ...


class ExecutionLoop:
    """Drive one epic until it is blocked, drained, or the iteration budget runs out.

    Every iteration re-queries the tracker, so a task closed by its agent drops
    out and a task left open is picked again. Metadata store errors propagate.
    """

    def __init__(
        self,
        *,
        tracker: TaskTracker,
        store: ExecutionMetadataStore,
        runner: AgentRunner,
        settings: RalphSettings,
        dry_run: bool = False,
    ) -> None:
        self.tracker = tracker
        self.store = store
        self.runner = runner
        self.settings = settings
        self.dry_run = dry_run
        self._stop_requested = False

    def run(self, epic_id: str) -> LoopSummary:
        execution = self.settings.execution
        summary = LoopSummary()
        logger.info(
            "Starting Ralph execution loop for epic %s (max iterations: %s, "
            "max failures before blocking: %s)",
            epic_id,
            execution.max_iterations,
            execution.max_failures,
        )

        previous_duration: float | None = None
        with self._signal_handlers():
            while summary.iterations < execution.max_iterations:
                if self._stop_requested:
                    logger.info("Stop requested. Exiting after the current iteration.")
                    summary.stop_reason = StopReason.INTERRUPTED.value
                    return summary

                summary.iterations += 1
                if previous_duration is not None:
                    logger.info("Previous iteration took: %s", format_duration(previous_duration))
                logger.info("=== Iteration %s ===", summary.iterations)
                started = time.monotonic()
                try:
                    stop_reason = self._run_iteration(epic_id, summary)
                finally:
                    previous_duration = time.monotonic() - started
                if stop_reason is not None:
                    summary.stop_reason = stop_reason.value
                    return summary

        logger.info("Max iterations (%s) reached. Stopping.", execution.max_iterations)
        summary.stop_reason = StopReason.MAX_ITERATIONS.value
        return summary

    def _run_iteration(  # noqa: PLR0911
        self,
        epic_id: str,
        summary: LoopSummary,
    ) -> StopReason | None:
        epic_tasks = self.tracker.epic_tasks(epic_id)
        if epic_tasks:
            completed = sum(1 for task in epic_tasks if task.status == TaskStatus.CLOSED.value)
            logger.info(
                "Epic tasks: %s completed / %s remaining (%s total)",
                completed,
                len(epic_tasks) - completed,
                len(epic_tasks),
            )

        if self.tracker.is_epic_blocked(epic_id):
            logger.info("Epic %s is blocked or closed. Stopping execution.", epic_id)
            return StopReason.EPIC_BLOCKED

        ready = sorted(
            self.tracker.ready_tasks_for_epic(epic_id),
            key=lambda task: hierarchical_sort_key(task.id),
        )
        if not ready:
            logger.info("No more ready tasks in the objective tree. Execution complete.")
            return StopReason.NO_READY_TASKS
        logger.info("Ready tasks discovered: %s", len(ready))

        task_id = ready[0].id
        try:
            task = self.tracker.show(task_id)
        except TrackerError as error:
            logger.error("Failed to get task details for %s: %s", task_id, error)
            return None
        logger.info("Processing task: %s: %s", task.id, task.title.strip() or "<no title>")

        if self.dry_run:
            metadata = self.store.get(task.id)
        else:
            metadata = self.store.get_or_create(task.id)
            self.store.update(task.id, execution_count=metadata.execution_count + 1)

        max_failures = self.settings.execution.max_failures
        if metadata.failure_count >= max_failures:
            logger.warning(
                "Task %s has failed %s times. Blocking task.",
                task.id,
                metadata.failure_count,
            )
            summary.blocked += 1
            if self.dry_run:
                logger.info("Dry run: skipping task blocking mutations.")
                return StopReason.DRY_RUN
            self._block(task.id, metadata.failure_count)
            return None

        if not self.dry_run:
            self._set_status(task.id, TaskStatus.IN_PROGRESS)

        labels = self.tracker.labels(task.id)
        resolution = resolve_agent_for_task(
            task.id,
            labels,
            agents=self.settings.agents,
            load_profile=self.settings.load_profile,
        )
        for line in routing_log_lines(task.id, resolution, valid_labels=list(self.settings.agents)):
            logger.info(line)

        prompt_epic_id = task.parent_id or epic_id
        context_tasks = (
            epic_tasks if prompt_epic_id == epic_id else self.tracker.epic_tasks(prompt_epic_id)
        )
        prompt = build_prompt(
            task,
            prompt_epic_id,
            build_agent_instructions(resolution.profile, resolution.matched_label, self.settings),
            self.settings,
            epic_tasks=context_tasks,
        )
        invocation = self.build_invocation(resolution.profile, prompt)

        logger.info("Executing agent: %s...", resolution.profile.ai_tool.name)
        if self.dry_run:
            logger.info(
                "Dry run: would run %s for %s. Skipping agent execution and Beads status updates.",
                invocation.command,
                task.id,
            )
            return StopReason.DRY_RUN

        result = self._dispatch(task.id, invocation)
        summary.dispatched += 1
        logger.info(
            "Agent runtime: %s",
            format_duration((result.finished_at - result.started_at).total_seconds()),
        )

        if result.outcome is AttemptOutcome.SUCCESS:
            summary.succeeded += 1
            logger.info("Task %s completed successfully", task.id)
            self.store.update(task.id, last_success_at=utc_now())
            return None

        self._record_failure(task.id, result, failure_count=metadata.failure_count, summary=summary)
        return None

    def build_invocation(self, profile: AgentProfile, prompt: str) -> AgentInvocation:
        """Command line for ``profile``; env layers profile, then config ``ai_tool``, then kind."""

        tool = profile.ai_tool
        kind = resolve_agent_kind(tool.name, command=tool.command)
        invocation = kind.build_invocation(prompt, command=tool.command)
        invocation.env = {**tool.env, **self.settings.ai_tool.env, **invocation.env}
        return invocation

    def _dispatch(self, task_id: str, invocation: AgentInvocation) -> AgentRunResult:
        request = AgentRunRequest(
            invocation=invocation,
            timeout_seconds=self.settings.execution.agent_timeout_seconds,
            cwd=self.settings.repo_root,
        )
        with open_task_log_writer(task_id, log_dir=self.settings.execution.log_dir) as log:
            log.write(f"\n=== ralph: start {task_id} ({utc_now().isoformat()}) ===\n")
            result = self.runner.run(request, log=log)
            if result.spawn_failed:
                log.write(
                    f"\n=== ralph: spawn error {task_id} ({utc_now().isoformat()}) ===\n"
                    f"{result.error}\n",
                )
            else:
                log.write(f"\n=== ralph: exit {task_id} (code: {result.exit_code}) ===\n")
        return result

    def _record_failure(
        self,
        task_id: str,
        result: AgentRunResult,
        *,
        failure_count: int,
        summary: LoopSummary,
    ) -> None:
        max_failures = self.settings.execution.max_failures
        if result.timed_out:
            summary.timeouts += 1
            label, prefix = "timed out", "Task implementation timed out"
        else:
            summary.failed += 1
            label, prefix = "failed", "Task implementation failed - AI tool returned error"
        logger.error("Task %s %s (exit code: %s)", task_id, label, result.exit_code)
        if result.error:
            logger.error("Error: %s", result.error)

        self._set_status(task_id, TaskStatus.OPEN)
        detail = f": {result.error}" if result.error else ""
        self._comment(task_id, f"{prefix} (exit code: {result.exit_code}){detail}")

        new_failure_count = failure_count + 1
        self.store.update(task_id, failure_count=new_failure_count, last_failure_at=utc_now())
        logger.info("Task %s failure count: %s/%s", task_id, new_failure_count, max_failures)
        if new_failure_count >= max_failures:
            logger.warning("Blocking task %s after %s failures", task_id, max_failures)
            summary.blocked += 1
            self._block(task_id, max_failures)

    def _block(self, task_id: str, failures: int) -> None:
        self._set_status(task_id, TaskStatus.BLOCKED)
        self._comment(
            task_id,
            f"Task blocked after {failures} failures. Manual intervention required.",
        )

    def _set_status(self, task_id: str, status: TaskStatus) -> None:
        try:
            self.tracker.update_status(task_id, status)
        except TrackerError as error:
            logger.warning(
                "Failed to set status %s on %s: %s",
                status.value,
                task_id,
                error.stderr.strip() or error,
            )

    def _comment(self, task_id: str, text: str) -> None:
        try:
            self.tracker.add_comment(task_id, text)
        except TrackerError as error:
            logger.warning(
                "Failed to add comment to %s: %s",
                task_id,
                error.stderr.strip() or error,
            )

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.warning("Received %s; stopping after the current task.", name)
            self._stop_requested = True

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
