from __future__ import annotations

import sys

import allure

from ralph.orchestrator.backend.wake import (
    TRUNCATION_MARKER,
    build_wake_message,
    send_wake,
    truncate_tail,
)

pytestmark = [
    allure.epic("Agent Runtime"),
    allure.feature("Wake Notifications"),
]


def test_truncate_tail() -> None:
    assert truncate_tail("abcdef", 10) == "abcdef"
    assert truncate_tail("abcdef", 3) == f"{TRUNCATION_MARKER}\ndef"
    assert truncate_tail("abcdef", 0) == ""


def test_plain_failure_message_without_output() -> None:
    message = build_wake_message(
        agent="jules",
        succeeded=False,
        attempt=3,
        total_attempts=3,
        log_path="/tmp/run.log",
        output="   ",
        output_chars=100,
    )

    assert message == "jules Agent FAILED on attempt 3/3. Log: /tmp/run.log"


def test_summarize_message_uses_prompt_preview() -> None:
    message = build_wake_message(
        agent="claude",
        succeeded=True,
        attempt=1,
        total_attempts=2,
        log_path="run.log",
        output="x" * 50,
        output_chars=10,
        summarize=True,
        prompt_text="p" * 600,
    )

    assert message.startswith("claude Agent delegation completed.\n\n**Status:** success")
    assert f"Task (from prompt):\n{'p' * 500}…" in message
    assert "**Output (tail):**" in message
    assert message.endswith("recommended next steps.")


def test_summarize_message_prefers_task_description() -> None:
    message = build_wake_message(
        agent="claude",
        succeeded=False,
        attempt=2,
        total_attempts=2,
        log_path="run.log",
        output="",
        output_chars=10,
        summarize=True,
        task_description="Ship the parser",
        prompt_text="ignored",
    )

    assert "Task: Ship the parser" in message
    assert "**Status:** failed (attempt 2/2)" in message
    assert "**Output:**\n(no output)" in message


def test_send_wake_success_and_failure() -> None:
    ok = send_wake("hi", command=(sys.executable, "-c", "pass"))
    failed = send_wake(
        "hi",
        command=(sys.executable, "-c", "import sys; sys.stderr.write('down'); sys.exit(4)"),
    )

    assert ok.sent
    assert not failed.sent
    assert failed.error == "down"


def test_send_wake_missing_command_never_raises() -> None:
    result = send_wake("hi", command=("definitely-not-a-wake-gateway",))

    assert not result.sent
    assert result.error
