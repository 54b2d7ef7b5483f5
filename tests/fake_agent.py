"""Scriptable agent used by loop and delegation tests.

Behaviour comes from environment variables so profiles can drive it through
``ai_tool.env``.
"""

from __future__ import annotations

import os
import re
import subprocess
import sys
import time
from pathlib import Path


def main(argv: list[str]) -> int:
    prompt = argv[-1] if argv else ""
    prompt_out = os.getenv("FAKE_AGENT_PROMPT_OUT")
    if prompt_out:
        with Path(prompt_out).open("a", encoding="utf-8") as handle:
            handle.write(prompt)
            handle.write("\n=== end prompt ===\n")

    counter_path = os.getenv("FAKE_AGENT_COUNTER")
    if counter_path:
        counter = Path(counter_path)
        calls = int(counter.read_text("utf-8")) + 1 if counter.exists() else 1
        counter.write_text(str(calls), "utf-8")
        succeed_on = int(os.getenv("FAKE_AGENT_SUCCEED_ON", "0"))
        if succeed_on and calls >= succeed_on:
            print(f"ok on call {calls}")
            return 0

    sys.stdout.write(os.getenv("FAKE_AGENT_STDOUT", "agent stdout\n"))
    sys.stdout.flush()
    stderr_text = os.getenv("FAKE_AGENT_STDERR", "")
    if stderr_text:
        sys.stderr.write(stderr_text)
        sys.stderr.flush()

    sleep_seconds = float(os.getenv("FAKE_AGENT_SLEEP", "0"))
    if sleep_seconds:
        time.sleep(sleep_seconds)

    task_match = re.search(r"^Task ID: (\S+)$", prompt, re.MULTILINE)
    if os.getenv("FAKE_AGENT_CLOSE_TASK") and task_match:
        bd_script = os.environ["FAKE_BD_SCRIPT"]
        subprocess.run(  # noqa: S603
            [sys.executable, bd_script, "update", task_match.group(1), "--status", "closed"],
            check=True,
        )

    return int(os.getenv("FAKE_AGENT_EXIT", "0"))


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
