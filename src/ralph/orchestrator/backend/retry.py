"""Retry-capable delegation runner with backoff, jitter and wake notifications."""

from __future__ import annotations

import logging
import random
import re
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

from ralph.orchestrator.backend.agents import AgentKind, get_agent_kind, list_agent_kinds
from ralph.orchestrator.backend.base import AgentRunner, AgentRunRequest, AgentRunResult
from ralph.orchestrator.backend.process import AgentProcessRunner, BackendRunError
from ralph.orchestrator.backend.wake import WakeResult, build_wake_message, send_wake
from ralph.orchestrator.models import AttemptOutcome, ExecutionAttempt
from ralph.storage.common import utc_now

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 3
DEFAULT_SLEEP_MS = 8_000
DEFAULT_BACKOFF = 1.5
DEFAULT_TIMEOUT_MS = 600_000
DEFAULT_WAKE_OUTPUT_CHARS = 1_500
DEFAULT_LOG_DIR = Path(".devagent/logs/agent-runs")
JITTER_LOW = 0.75
JITTER_SPAN = 0.5


def calculate_next_delay(
    current_delay: float,
    backoff: float,
    jitter: bool = True,
    max_delay: float | None = None,
    *,
    rng: random.Random | None = None,
) -> int:
    """Next retry delay: ``current * backoff``, jittered by ±25%, capped, rounded."""

    next_delay = current_delay * backoff
    if jitter:
        next_delay *= JITTER_LOW + (rng or random).random() * JITTER_SPAN
    if max_delay and next_delay > max_delay:
        next_delay = max_delay
    return round(next_delay)


def detect_failure(output: str, patterns: Sequence[re.Pattern[str]]) -> bool:
    return any(pattern.search(output) for pattern in patterns)


def run_stamp() -> str:
    """ISO-8601 UTC timestamp safe for file names."""

    stamp = utc_now().isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return re.sub(r"[:.]", "-", stamp)


@dataclass(slots=True)
class DelegationOptions:
    """Inputs for one delegated agent run."""

    agent: str
    prompt: str
    repo: Path | None = None
    attempts: int = DEFAULT_ATTEMPTS
    sleep_ms: float = DEFAULT_SLEEP_MS
    backoff: float = DEFAULT_BACKOFF
    max_delay_ms: float | None = None
    timeout_ms: float | None = None
    log_dir: Path | None = None
    wake: bool = False
    wake_summarize: bool = False
    task_description: str | None = None
    wake_output_chars: int = DEFAULT_WAKE_OUTPUT_CHARS
    extra_args: list[str] = field(default_factory=list)


@dataclass(slots=True)
class DelegationResult:
    """Final outcome after all attempts."""

    success: bool
    exit_code: int
    attempt: int
    total_attempts: int
    stdout: str
    stderr: str
    log_path: Path
    run_id: str
    attempts: list[ExecutionAttempt] = field(default_factory=list)
    wake_sent: bool = False
    wake_error: str | None = None


class DelegationRunner:
    """Run one agent kind up to N times, sleeping with backoff between failures."""

    def __init__(
        self,
        *,
        process_runner: AgentRunner | None = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: random.Random | None = None,
        wake_sender: Callable[[str], WakeResult] = send_wake,
    ) -> None:
        self.process_runner = process_runner or AgentProcessRunner()
        self._sleep = sleep
        self._random = rng or random.Random()  # noqa: S311
        self._wake_sender = wake_sender

    def run(self, options: DelegationOptions) -> DelegationResult:
        kind = _resolve_kind(options.agent)
        if options.attempts < 1:
            raise ValueError("--attempts must be >= 1")
        if not options.prompt.strip():
            raise BackendRunError("Prompt is empty.")

        timeout_ms = options.timeout_ms
        if timeout_ms is None:
            default_seconds = kind.default_timeout_seconds
            timeout_ms = default_seconds * 1000 if default_seconds else DEFAULT_TIMEOUT_MS
        repo = options.repo or Path.cwd()
        log_dir = options.log_dir or Path.cwd() / DEFAULT_LOG_DIR
        log_dir.mkdir(parents=True, exist_ok=True)
        run_id = run_stamp()
        log_path = log_dir / f"agent_{options.agent}_{run_id}.log"
        _write_log_header(
            log_path,
            run_id=run_id,
            options=options,
            repo=repo,
            timeout_ms=timeout_ms,
        )

        request = AgentRunRequest(
            invocation=kind.build_invocation(options.prompt, options.extra_args),
            timeout_seconds=timeout_ms / 1000,
            cwd=repo,
        )
        history: list[ExecutionAttempt] = []
        delay = float(options.sleep_ms)
        last: AgentRunResult | None = None

        for attempt in range(1, options.attempts + 1):
            _append(log_path, f"\n=== Attempt {attempt}/{options.attempts} ===\n")
            last = self.process_runner.run(request)
            history.append(last.to_attempt(attempt))
            _append(log_path, _attempt_section(last))

            if last.outcome is AttemptOutcome.SUCCESS:
                logger.info(
                    "%s Agent succeeded on attempt %s. Log: %s",
                    options.agent,
                    attempt,
                    log_path,
                )
                return self._finish(
                    options,
                    wake_output=last.stdout_tail,
                    success=True,
                    attempt=attempt,
                    last=last,
                    log_path=log_path,
                    run_id=run_id,
                    history=history,
                )

            fail_message = _failure_message(attempt, last, kind)
            logger.error(fail_message)
            if attempt < options.attempts:
                _append(log_path, f"\n{fail_message} Sleeping {round(delay)}ms before retry.\n")
                self._sleep(delay / 1000)
                delay = calculate_next_delay(
                    delay,
                    options.backoff,
                    max_delay=options.max_delay_ms,
                    rng=self._random,
                )
            else:
                _append(log_path, f"\n{fail_message}\n")

        if last is None:
            raise RuntimeError("Delegation finished without running an attempt.")
        logger.error(
            "%s Agent FAILED after %s attempts. Log: %s",
            options.agent,
            options.attempts,
            log_path,
        )
        combined_output = "\n".join(
            [
                "--- last stdout ---",
                last.stdout_tail.strip(),
                "--- last stderr ---",
                last.stderr_tail.strip(),
            ],
        )
        return self._finish(
            options,
            wake_output=combined_output,
            success=False,
            attempt=options.attempts,
            last=last,
            log_path=log_path,
            run_id=run_id,
            history=history,
        )

    def _finish(  # noqa: PLR0913
        self,
        options: DelegationOptions,
        *,
        wake_output: str,
        success: bool,
        attempt: int,
        last: AgentRunResult,
        log_path: Path,
        run_id: str,
        history: list[ExecutionAttempt],
    ) -> DelegationResult:
        wake_result = WakeResult(sent=False)
        if options.wake or options.wake_summarize:
            wake_result = self._wake_sender(
                build_wake_message(
                    agent=options.agent,
                    succeeded=success,
                    attempt=attempt,
                    total_attempts=options.attempts,
                    log_path=str(log_path),
                    output=wake_output,
                    output_chars=options.wake_output_chars,
                    summarize=options.wake_summarize,
                    task_description=options.task_description,
                    prompt_text=options.prompt,
                ),
            )
        return DelegationResult(
            success=success,
            exit_code=last.exit_code,
            attempt=attempt,
            total_attempts=options.attempts,
            stdout=last.stdout_tail,
            stderr=last.stderr_tail,
            log_path=log_path,
            run_id=run_id,
            attempts=history,
            wake_sent=wake_result.sent,
            wake_error=wake_result.error,
        )


def _resolve_kind(name: str) -> AgentKind:
    kind = get_agent_kind(name)
    if kind is None:
        raise BackendRunError(
            f"Unknown agent: {name}. Supported agents: {', '.join(list_agent_kinds())}",
        )
    return kind


def _failure_message(attempt: int, result: AgentRunResult, kind: AgentKind) -> str:
    if result.spawn_failed:
        return f"Attempt {attempt} failed with error: {result.error}"
    if result.outcome is AttemptOutcome.TIMEOUT:
        return f"Attempt {attempt} failed: timed out (exit {result.exit_code})."
    output = f"{result.stdout_tail}\n{result.stderr_tail}"
    if detect_failure(output, kind.failure_patterns):
        return f"Attempt {attempt} failed: Detected failure pattern."
    return f"Attempt {attempt} failed (exit {result.exit_code})."


def _attempt_section(result: AgentRunResult) -> str:
    return (
        "\n".join(
            [
                f"exitCode: {result.exit_code}",
                "--- stdout ---",
                result.stdout_tail,
                "--- stderr ---",
                result.stderr_tail,
                "--- end ---",
            ],
        )
        + "\n"
    )


def _write_log_header(
    log_path: Path,
    *,
    run_id: str,
    options: DelegationOptions,
    repo: Path,
    timeout_ms: float,
) -> None:
    header = "\n".join(
        [
            f"Run: {run_id}",
            f"Agent: {options.agent}",
            f"Repo: {repo}",
            f"Attempts: {options.attempts}",
            f"Timeout: {round(timeout_ms)}ms",
            f"Extra args: {' '.join(options.extra_args)}",
            "--- prompt ---",
            options.prompt,
            "--- end prompt ---",
            "",
        ],
    )
    log_path.write_text(header, "utf-8")


def _append(log_path: Path, message: str) -> None:
    with log_path.open("a", encoding="utf-8") as handle:
        handle.write(message)


def run_agent_with_retries(
    options: DelegationOptions,
    *,
    runner: DelegationRunner | None = None,
) -> DelegationResult:
    return (runner or DelegationRunner()).run(options)
