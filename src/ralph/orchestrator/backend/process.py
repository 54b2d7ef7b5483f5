"""Subprocess runner that supervises a single agent attempt."""

from __future__ import annotations

import codecs
import logging
import os
import subprocess
import threading
from typing import IO

from ralph.errors import RalphError
from ralph.logs import TaskLogWriter
from ralph.orchestrator.backend.base import AgentRunRequest, AgentRunResult
from ralph.orchestrator.models import AttemptOutcome
from ralph.storage.common import utc_now

logger = logging.getLogger(__name__)

_READ_CHUNK_BYTES = 64 * 1024


class BackendRunError(RalphError):
    """Agent invocation rejected before any process is started."""


class TailBuffer:
    """Keeps only the last ``max_chars`` decoded characters of a byte stream."""

    def __init__(self, max_chars: int) -> None:
        self.max_chars = max_chars
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._text = ""

    def feed(self, chunk: bytes, *, final: bool = False) -> None:
        self._text += self._decoder.decode(chunk, final=final)
        if len(self._text) > self.max_chars:
            self._text = self._text[-self.max_chars :]

    def finish(self) -> None:
        self.feed(b"", final=True)

    @property
    def text(self) -> str:
        return self._text


class AgentProcessRunner:
    """Spawn one process, stream its output, and classify the outcome.

    Both pipes are drained on reader threads into the log sink and a bounded
    tail. A run that reaches its timeout is killed and reported as
    ``timeout`` whatever exit code is observed afterwards.
    """

    def __init__(self, *, drain_timeout_seconds: float = 10.0) -> None:
        self.drain_timeout_seconds = drain_timeout_seconds

    def run(
        self,
        request: AgentRunRequest,
        *,
        log: TaskLogWriter | None = None,
    ) -> AgentRunResult:
        started_at = utc_now()
        argv = request.invocation.argv()
        env = os.environ.copy()
        env.update(request.invocation.env)

        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=request.cwd,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as error:
            logger.error("Failed to start agent command %s: %s", argv[0], error)
            return AgentRunResult(
                exit_code=-1,
                outcome=AttemptOutcome.FAILED,
                started_at=started_at,
                finished_at=utc_now(),
                error=str(error),
                spawn_failed=True,
            )

        stdout_tail = TailBuffer(request.max_tail_chars)
        stderr_tail = TailBuffer(request.max_tail_chars)
        readers = [
            threading.Thread(
                target=_drain_stream,
                args=(process.stdout, log, stdout_tail),
                name="agent-stdout",
                daemon=True,
            ),
            threading.Thread(
                target=_drain_stream,
                args=(process.stderr, log, stderr_tail),
                name="agent-stderr",
                daemon=True,
            ),
        ]
        for reader in readers:
            reader.start()

        timed_out = False
        try:
            exit_code = process.wait(timeout=request.timeout_seconds)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning(
                "Agent command %s exceeded %ss; killing it.",
                argv[0],
                request.timeout_seconds,
            )
            exit_code = _kill_process(process)

        for reader in readers:
            reader.join(timeout=self.drain_timeout_seconds)

        finished_at = utc_now()
        if timed_out:
            normalized_exit_code = -1 if exit_code == 0 else exit_code
            return AgentRunResult(
                exit_code=normalized_exit_code,
                outcome=AttemptOutcome.TIMEOUT,
                started_at=started_at,
                finished_at=finished_at,
                stdout_tail=stdout_tail.text,
                stderr_tail=stderr_tail.text,
                error=stderr_tail.text
                or stdout_tail.text
                or f"Agent timed out after {round(request.timeout_seconds)}s",
            )
        if exit_code == 0:
            return AgentRunResult(
                exit_code=0,
                outcome=AttemptOutcome.SUCCESS,
                started_at=started_at,
                finished_at=finished_at,
                stdout_tail=stdout_tail.text,
                stderr_tail=stderr_tail.text,
            )
        return AgentRunResult(
            exit_code=exit_code,
            outcome=AttemptOutcome.FAILED,
            started_at=started_at,
            finished_at=finished_at,
            stdout_tail=stdout_tail.text,
            stderr_tail=stderr_tail.text,
            error=stderr_tail.text or stdout_tail.text or f"Agent exited with code {exit_code}",
        )


def _drain_stream(
    stream: IO[bytes] | None,
    log: TaskLogWriter | None,
    tail: TailBuffer,
) -> None:
    if stream is None:
        return
    try:
        while True:
            chunk = stream.read1(_READ_CHUNK_BYTES)  # type: ignore[attr-defined]
            if not chunk:
                break
            if log is not None:
                log.write(chunk)
            tail.feed(chunk)
    except (OSError, ValueError):
        # Pipe closed under us after a kill.
        pass
    finally:
        tail.finish()
        stream.close()


def _kill_process(process: subprocess.Popen[bytes]) -> int:
    try:
        process.kill()
    except OSError:
        pass
    return process.wait()
