from __future__ import annotations

import random
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from ralph.orchestrator.backend import (
    AgentRunRequest,
    AgentRunResult,
    BackendRunError,
    DelegationOptions,
    DelegationRunner,
    calculate_next_delay,
    run_agent_with_retries,
)
from ralph.orchestrator.backend.wake import WakeResult
from ralph.orchestrator.models import AttemptOutcome

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Delegation Retries"),
]


class FixedRandom(random.Random):
    def __init__(self, value: float) -> None:
        super().__init__()
        self.value = value

    def random(self) -> float:
        return self.value


class ScriptedRunner:
    """Returns queued outcomes and records each request."""

    def __init__(self, *results: AgentRunResult) -> None:
        self.results = list(results)
        self.requests: list[AgentRunRequest] = []

    def run(self, request: AgentRunRequest, *, log=None) -> AgentRunResult:
        self.requests.append(request)
        return self.results.pop(0)


def _result(
    outcome: AttemptOutcome,
    exit_code: int,
    *,
    stdout: str = "",
    stderr: str = "",
) -> AgentRunResult:
    now = datetime(2026, 1, 1, tzinfo=UTC)
    return AgentRunResult(
        exit_code=exit_code,
        outcome=outcome,
        started_at=now,
        finished_at=now,
        stdout_tail=stdout,
        stderr_tail=stderr,
    )


def _options(tmp_path: Path, **overrides) -> DelegationOptions:
    values = {
        "agent": "claude",
        "prompt": "Fix the build",
        "repo": tmp_path,
        "log_dir": tmp_path / "logs",
        "attempts": 3,
        "sleep_ms": 1000,
    }
    values.update(overrides)
    return DelegationOptions(**values)


def test_deterministic_backoff_sequence() -> None:
    delays = [1000.0]
    for _ in range(3):
        delays.append(calculate_next_delay(delays[-1], 1.5, jitter=False))

    assert delays == [1000, 1500, 2250, 3375]


def test_delay_is_capped() -> None:
    assert calculate_next_delay(10_000, 2, jitter=False, max_delay=15_000) == 15_000


@pytest.mark.parametrize(("value", "expected"), [(0.0, 750), (0.5, 1000), (0.999, 1250)])
def test_jitter_stays_within_quarter(value: float, expected: int) -> None:
    delay = calculate_next_delay(1000, 1.0, rng=FixedRandom(value))

    assert delay == pytest.approx(expected, abs=1)


def test_jittered_delays_stay_in_range_and_under_cap() -> None:
    rng = random.Random(1234)

    delays = [
        calculate_next_delay(1000, 2.0, max_delay=2200, rng=rng) for _ in range(1000)
    ]

    assert all(1500 <= delay <= 2200 for delay in delays)
    assert max(delays) == 2200
    assert min(delays) < 1600


def test_retries_until_success(tmp_path: Path) -> None:
    sleeps: list[float] = []
    runner = ScriptedRunner(
        _result(AttemptOutcome.FAILED, 1, stderr="flaky"),
        _result(AttemptOutcome.FAILED, 1, stderr="flaky"),
        _result(AttemptOutcome.SUCCESS, 0, stdout="done"),
    )
    delegation = DelegationRunner(process_runner=runner, sleep=sleeps.append, rng=FixedRandom(0.5))

    result = delegation.run(_options(tmp_path, attempts=4))

    assert result.success
    assert result.attempt == 3
    assert result.total_attempts == 4
    assert result.stdout == "done"
    assert sleeps == [1.0, 1.5]
    assert [attempt.outcome for attempt in result.attempts] == [
        AttemptOutcome.FAILED,
        AttemptOutcome.FAILED,
        AttemptOutcome.SUCCESS,
    ]
    assert runner.requests[0].invocation.args[:2] == ["-p", "Fix the build"]
    assert runner.requests[0].timeout_seconds == 600


def test_exhausted_attempts_report_failure(tmp_path: Path) -> None:
    sleeps: list[float] = []
    runner = ScriptedRunner(
        _result(AttemptOutcome.FAILED, 2, stdout="out-1"),
        _result(AttemptOutcome.TIMEOUT, -1, stdout="out-2", stderr="slow"),
    )
    delegation = DelegationRunner(process_runner=runner, sleep=sleeps.append, rng=FixedRandom(0.5))

    result = delegation.run(_options(tmp_path, attempts=2))

    assert not result.success
    assert result.exit_code == -1
    assert result.attempt == 2
    assert sleeps == [1.0]
    log_text = result.log_path.read_text("utf-8")
    assert log_text.startswith(f"Run: {result.run_id}\nAgent: claude\n")
    assert "--- prompt ---\nFix the build\n--- end prompt ---" in log_text
    assert "=== Attempt 1/2 ===" in log_text
    assert "=== Attempt 2/2 ===" in log_text
    assert "Attempt 1 failed (exit 2). Sleeping 1000ms before retry." in log_text
    assert "Attempt 2 failed: timed out (exit -1)." in log_text
    assert "exitCode: 2\n--- stdout ---\nout-1\n--- stderr ---\n\n--- end ---" in log_text


def test_failure_pattern_is_reported(tmp_path: Path) -> None:
    runner = ScriptedRunner(_result(AttemptOutcome.FAILED, 1, stderr="Connection stalled"))
    delegation = DelegationRunner(process_runner=runner, sleep=lambda _: None)

    result = delegation.run(_options(tmp_path, agent="cursor", attempts=1))

    assert "Attempt 1 failed: Detected failure pattern." in result.log_path.read_text("utf-8")


def test_log_file_name_uses_agent_and_stamp(tmp_path: Path) -> None:
    runner = ScriptedRunner(_result(AttemptOutcome.SUCCESS, 0))
    result = DelegationRunner(process_runner=runner).run(_options(tmp_path))

    assert result.log_path.parent == tmp_path / "logs"
    assert result.log_path.name == f"agent_claude_{result.run_id}.log"
    assert ":" not in result.run_id
    assert result.run_id.endswith("Z")


def test_wake_sent_with_plain_message(tmp_path: Path) -> None:
    messages: list[str] = []

    def wake_sender(text: str) -> WakeResult:
        messages.append(text)
        return WakeResult(sent=True)

    runner = ScriptedRunner(_result(AttemptOutcome.SUCCESS, 0, stdout="all good"))
    delegation = DelegationRunner(process_runner=runner, wake_sender=wake_sender)

    result = delegation.run(_options(tmp_path, wake=True))

    assert result.wake_sent
    assert messages[0].startswith("claude Agent succeeded on attempt 1/3. Log: ")
    assert messages[0].endswith("--- output (tail) ---\nall good")


def test_wake_not_sent_without_flag(tmp_path: Path) -> None:
    def wake_sender(text: str) -> WakeResult:
        raise AssertionError("wake must not be sent")

    runner = ScriptedRunner(_result(AttemptOutcome.SUCCESS, 0))
    result = DelegationRunner(process_runner=runner, wake_sender=wake_sender).run(
        _options(tmp_path),
    )

    assert not result.wake_sent


def test_unknown_agent_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(BackendRunError, match="Unknown agent: nope. Supported agents: "):
        DelegationRunner(process_runner=ScriptedRunner()).run(_options(tmp_path, agent="nope"))


def test_empty_prompt_and_bad_attempts_are_rejected(tmp_path: Path) -> None:
    delegation = DelegationRunner(process_runner=ScriptedRunner())

    with pytest.raises(BackendRunError, match="Prompt is empty"):
        delegation.run(_options(tmp_path, prompt="   "))
    with pytest.raises(ValueError, match="--attempts must be >= 1"):
        delegation.run(_options(tmp_path, attempts=0))


def test_real_process_retries(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("FAKE_AGENT_COUNTER", str(tmp_path / "counter"))
    monkeypatch.setenv("FAKE_AGENT_SUCCEED_ON", "2")
    monkeypatch.setenv("FAKE_AGENT_EXIT", "1")

    result = run_agent_with_retries(
        _options(tmp_path, agent="fake-python", timeout_ms=30_000),
        runner=DelegationRunner(sleep=lambda _: None),
    )

    assert result.success
    assert result.attempt == 2
    assert result.stdout.strip() == "ok on call 2"
    assert (tmp_path / "counter").read_text("utf-8") == "2"
