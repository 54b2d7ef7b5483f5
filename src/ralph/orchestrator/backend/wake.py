"""Best-effort wake notifications sent after a delegated run."""

from __future__ import annotations

import logging
import subprocess
from collections.abc import Sequence
from dataclasses import dataclass

logger = logging.getLogger(__name__)

WAKE_COMMAND: tuple[str, ...] = ("clawdbot", "gateway", "wake")
TRUNCATION_MARKER = "…(truncated)…"
TASK_PREVIEW_CHARS = 500


@dataclass(slots=True)
class WakeResult:
    sent: bool
    error: str | None = None


def truncate_tail(text: str, max_chars: int) -> str:
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text
    return f"{TRUNCATION_MARKER}\n{text[-max_chars:]}"


def build_wake_message(  # noqa: PLR0913
    *,
    agent: str,
    succeeded: bool,
    attempt: int,
    total_attempts: int,
    log_path: str,
    output: str,
    output_chars: int,
    summarize: bool = False,
    task_description: str | None = None,
    prompt_text: str = "",
) -> str:
    output_tail = truncate_tail(output.strip(), output_chars)
    if not summarize:
        status_word = "succeeded" if succeeded else "FAILED"
        base = f"{agent} Agent {status_word} on attempt {attempt}/{total_attempts}. Log: {log_path}"
        return f"{base}\n\n--- output (tail) ---\n{output_tail}" if output_tail else base

    if task_description:
        task_block = f"Task: {task_description}"
    else:
        ellipsis = "…" if len(prompt_text) > TASK_PREVIEW_CHARS else ""
        task_block = f"Task (from prompt):\n{prompt_text[:TASK_PREVIEW_CHARS]}{ellipsis}"
    status = "success" if succeeded else "failed"
    output_heading = "**Output (tail):**" if TRUNCATION_MARKER in output_tail else "**Output:**"
    return "\n".join(
        [
            f"{agent} Agent delegation completed.",
            "",
            f"**Status:** {status} (attempt {attempt}/{total_attempts})",
            f"**Agent:** {agent}",
            f"**Log:** {log_path}",
            "",
            task_block,
            "",
            output_heading,
            output_tail or "(no output)",
            "",
            "---",
            "Please summarize what was accomplished (or what failed) and highlight any key "
            "findings, deliverables, or recommended next steps.",
        ],
    )


def send_wake(
    text: str,
    *,
    command: Sequence[str] = WAKE_COMMAND,
    timeout_seconds: float = 30.0,
) -> WakeResult:
    """Deliver ``text`` via the wake gateway; never raises."""

    try:
        completed = subprocess.run(  # noqa: S603
            [*command, "--text", text, "--mode", "now"],
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as error:
        logger.warning("Wake notification failed: %s", error)
        return WakeResult(sent=False, error=str(error))
    if completed.returncode == 0:
        return WakeResult(sent=True)
    error = completed.stderr.strip() or f"{command[0]} exited with code {completed.returncode}"
    logger.warning("Wake notification failed: %s", error)
    return WakeResult(sent=False, error=error)
