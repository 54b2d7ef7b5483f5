"""Hub and feature branch automation on top of the system ``git``.

Every mutating operation requires a clean working tree first. Branch creation
raises :class:`GitCommandError`; rebase and merge report failures through their
result objects so the caller can decide whether to escalate.
"""

from __future__ import annotations

import contextlib
import logging
import os
import re
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from ralph.errors import GitCommandError

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONFLICTS = 10
_UNMERGED_STATUS = re.compile(r"^(AA|UU|DD|AU|UA|DU|UD) ")


class ConflictStrategy(str, Enum):
    """How a conflicted path was (or was not) resolved."""

    THEIRS = "theirs"
    OURS = "ours"
    MANUAL = "manual"


@dataclass(slots=True)
class ConflictRecord:
    file: str
    strategy: ConflictStrategy


@dataclass(slots=True)
class RebaseResult:
    """Outcome of :meth:`GitManager.rebase_branch`."""

    success: bool
    conflicts: list[ConflictRecord] = field(default_factory=list)
    aborted: bool = False
    error: str | None = None


@dataclass(slots=True)
class MergeResult:
    success: bool
    conflicts: list[str] = field(default_factory=list)
    error: str | None = None


class GitManager:
    """Run git commands in ``cwd``; ``push``/``pull`` toggle remote traffic."""

    def __init__(self, cwd: Path | None = None, *, push: bool = True, pull: bool = True) -> None:
        self.cwd = cwd or Path.cwd()
        self.push = push
        self.pull = pull

    def current_branch(self) -> str:
        return self._git("rev-parse", "--abbrev-ref", "HEAD").strip()

    def is_working_tree_clean(self) -> bool:
        return self._git("status", "--porcelain").strip() == ""

    def branch_exists(self, name: str) -> bool:
        """True when ``name`` exists locally or as ``origin/<name>``."""

        local = self._git("branch", "--format=%(refname:short)").splitlines()
        if name in (line.strip() for line in local):
            return True
        try:
            remote = self._git("branch", "-r", "--format=%(refname:short)").splitlines()
        except GitCommandError:
            return False
        return f"origin/{name}" in (line.strip() for line in remote)

    def create_hub_branch(self, hub: str, base: str = "main") -> str:
        if self.branch_exists(hub):
            raise GitCommandError(f"Hub branch '{hub}' already exists")
        self._require_clean("creating hub branch")

        self._git("checkout", base)
        if self.pull:
            self._git("pull", "origin", base)
        self._git("checkout", "-b", hub)
        if self.push:
            self._git("push", "-u", "origin", hub)
        logger.info("Created hub branch %s from %s", hub, base)
        return hub

    def checkout_feature_branch(self, feature: str, base: str) -> str:
        """Check out ``feature``, creating it from ``base`` when it does not exist yet."""

        self._require_clean("checking out feature branch")

        self._git("checkout", base)
        if self.pull:
            self._git("pull", "origin", base)

        if self.branch_exists(feature):
            self._git("checkout", feature)
            if self.pull:
                self._git("pull", "origin", feature)
            logger.info("Checked out existing feature branch %s", feature)
            return feature

        self._git("checkout", "-b", feature)
        if self.push:
            self._git("push", "-u", "origin", feature)
        logger.info("Created feature branch %s from %s", feature, base)
        return feature

    def conflicted_files(self) -> list[str]:
        files: list[str] = []
        for line in self._git("status", "--porcelain").splitlines():
            if _UNMERGED_STATUS.match(line):
                files.append(line[3:].strip())
        return files

    def rebase_branch(
        self,
        branch: str,
        onto: str,
        *,
        strategy: ConflictStrategy | str = ConflictStrategy.THEIRS,
        abort_on_complex: bool = True,
        max_conflicts: int = DEFAULT_MAX_CONFLICTS,
    ) -> RebaseResult:
        """Rebase ``branch`` onto ``onto``, resolving conflicts by taking one side.

        Conflicts from every replayed commit count against one ``max_conflicts``
        budget. Exceeding it aborts the rebase and reports the last batch as
        ``manual``.
        """

        side = ConflictStrategy(strategy)
        if side is ConflictStrategy.MANUAL:
            raise ValueError("Rebase strategy must be 'theirs' or 'ours'.")
        if not self.is_working_tree_clean():
            return RebaseResult(
                success=False,
                error="Working directory is not clean. "
                "Please commit or stash changes before rebasing.",
            )

        try:
            self._git("checkout", branch)
            if self.pull:
                self._git("pull", "origin", branch)
        except GitCommandError as error:
            return RebaseResult(success=False, error=f"Failed to checkout branch: {error}")

        try:
            self._git("rebase", onto)
        except GitCommandError as error:
            rebase_error = error
        else:
            logger.info("Rebased %s onto %s without conflicts", branch, onto)
            return RebaseResult(success=True)

        resolved: list[ConflictRecord] = []
        remaining = max_conflicts
        first_pass = True
        while True:
            conflicts = self.conflicted_files()
            if not conflicts:
                self._abort_rebase()
                prefix = "Rebase failed" if first_pass else "Rebase continue failed"
                return RebaseResult(
                    success=False,
                    conflicts=resolved,
                    aborted=True,
                    error=f"{prefix}: {rebase_error}",
                )

            if len(conflicts) > remaining and abort_on_complex:
                self._abort_rebase()
                if first_pass:
                    message = f"Too many conflicts ({len(conflicts)} > {max_conflicts}). Aborted."
                else:
                    message = f"Additional conflicts detected ({len(conflicts)}). Aborted."
                logger.warning("Rebase of %s onto %s aborted: %s", branch, onto, message)
                return RebaseResult(
                    success=False,
                    conflicts=[
                        *resolved,
                        *(ConflictRecord(path, ConflictStrategy.MANUAL) for path in conflicts),
                    ],
                    aborted=True,
                    error=message,
                )

            try:
                for path in conflicts:
                    self._git("checkout", f"--{side.value}", "--", path)
                    self._git("add", "--", path)
                    resolved.append(ConflictRecord(path, side))
            except GitCommandError as error:
                self._abort_rebase()
                return RebaseResult(
                    success=False,
                    conflicts=resolved,
                    aborted=True,
                    error=f"Failed to resolve conflicts: {error}",
                )
            remaining -= len(conflicts)
            first_pass = False

            try:
                self._git("rebase", "--continue", env={"GIT_EDITOR": "true"})
            except GitCommandError as error:
                rebase_error = error
                continue
            logger.info(
                "Rebased %s onto %s resolving %s conflict(s) with %s",
                branch,
                onto,
                len(resolved),
                side.value,
            )
            return RebaseResult(success=True, conflicts=resolved)

    def force_push_with_lease(self, branch: str) -> None:
        self._git("push", "--force-with-lease", "origin", branch)

    def merge_branch(
        self,
        source: str,
        target: str,
        *,
        no_ff: bool = True,
        message: str | None = None,
    ) -> MergeResult:
        if not self.is_working_tree_clean():
            return MergeResult(
                success=False,
                error="Working directory is not clean. "
                "Please commit or stash changes before merging.",
            )
        commit_message = message or f"Merge {source} into {target}"
        try:
            self._git("checkout", target)
            if self.pull:
                self._git("pull", "origin", target)
            args = ["merge", source, "-m", commit_message]
            if no_ff:
                args.insert(2, "--no-ff")
            self._git(*args)
        except GitCommandError as error:
            conflicts = self.conflicted_files()
            if conflicts:
                self._abort_merge()
                logger.warning("Merge of %s into %s aborted on conflicts", source, target)
                return MergeResult(
                    success=False,
                    conflicts=conflicts,
                    error=f"Merge conflicts detected in {len(conflicts)} file(s): "
                    f"{', '.join(conflicts)}",
                )
            return MergeResult(success=False, error=f"Merge failed: {error}")
        logger.info("Merged %s into %s", source, target)
        return MergeResult(success=True)

    def _require_clean(self, action: str) -> None:
        if not self.is_working_tree_clean():
            raise GitCommandError(
                "Working directory is not clean. "
                f"Please commit or stash changes before {action}.",
            )

    def _abort_rebase(self) -> None:
        with contextlib.suppress(GitCommandError):
            self._git("rebase", "--abort")

    def _abort_merge(self) -> None:
        with contextlib.suppress(GitCommandError):
            self._git("merge", "--abort")

    def _git(self, *args: str, env: Mapping[str, str] | None = None) -> str:
        command = f"git {' '.join(args)}"
        run_env = None
        if env:
            run_env = os.environ.copy()
            run_env.update(env)
        try:
            completed = subprocess.run(  # noqa: S603
                ["git", *args],  # noqa: S607
                cwd=self.cwd,
                capture_output=True,
                text=True,
                env=run_env,
                check=False,
            )
        except FileNotFoundError as error:
            raise GitCommandError("git executable not found", command=command) from error
        if completed.returncode != 0:
            raise GitCommandError(
                f"Git command failed: {command}\n"
                f"Stderr: {completed.stderr.strip()}\n"
                f"Stdout: {completed.stdout.strip()}",
                command=command,
                stderr=completed.stderr,
                stdout=completed.stdout,
            )
        return completed.stdout
