"""Exception types shared across the orchestrator."""

from __future__ import annotations


class RalphError(RuntimeError):
    """Base error for orchestrator failures."""


class ConfigError(RalphError):
    """Configuration or agent profile is missing or malformed."""


class MetadataStoreError(RalphError):
    """Execution metadata could not be read or written."""


class TrackerError(RalphError):
    """Issue tracker CLI invocation failed."""

    def __init__(self, message: str, *, stderr: str = "", stdout: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr
        self.stdout = stdout


class TrackerParseError(TrackerError):
    """Issue tracker output was not the JSON shape the caller expected."""

    def __init__(self, message: str, *, context: str, preview: str) -> None:
        super().__init__(message, stdout=preview)
        self.context = context
        self.preview = preview


class GitCommandError(RalphError):
    """A git invocation exited non-zero or a precondition failed."""

    def __init__(
        self,
        message: str,
        *,
        command: str = "",
        stderr: str = "",
        stdout: str = "",
    ) -> None:
        super().__init__(message)
        self.command = command
        self.stderr = stderr
        self.stdout = stdout


class LogFileError(RalphError):
    """Task log file path could not be resolved."""

    def __init__(self, message: str, *, code: str) -> None:
        super().__init__(message)
        self.code = code
