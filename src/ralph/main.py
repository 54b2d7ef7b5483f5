"""CLI entrypoint for ralph."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from ralph import __version__
from ralph.errors import RalphError
from ralph.git_manager import DEFAULT_MAX_CONFLICTS, ConflictStrategy
from ralph.orchestrator.backend import BackendRunError, list_agent_kinds
from ralph.orchestrator.backend.retry import (
    DEFAULT_ATTEMPTS,
    DEFAULT_BACKOFF,
    DEFAULT_SLEEP_MS,
    DEFAULT_WAKE_OUTPUT_CHARS,
)
from ralph.orchestrator.controllers import (
    CheckStatusCommand,
    DelegateCommand,
    GitCommand,
    RalphCliController,
    RouteCommand,
    RunLoopCommand,
    SetupLoopCommand,
)

click.rich_click.USE_MARKDOWN = True
CONTROLLER = RalphCliController()

config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Path to config.json. Defaults to RALPH_CONFIG or the plugin config in the repo.",
)
repo_option = click.option(
    "--repo",
    type=click.Path(path_type=Path, file_okay=False, exists=True),
    default=None,
    help="Git working tree. Defaults to the current directory.",
)
push_option = click.option(
    "--push/--no-push",
    default=True,
    show_default=True,
    help="Push new branches to origin.",
)
pull_option = click.option(
    "--pull/--no-pull",
    default=True,
    show_default=True,
    help="Pull from origin before branching.",
)


@click.group()
@click.version_option(version=__version__, prog_name="ralph")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
def ralph(verbose: bool) -> None:
    """Ralph: autonomous task execution over a Beads epic."""

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
    )


@ralph.command("run")
@click.argument("epic_id")
@config_option
@click.option(
    "--dry-run",
    is_flag=True,
    help="Route the first ready task and print the plan without running agents or updating tasks.",
)
def run(epic_id: str, config_path: Path | None, dry_run: bool) -> None:
    """Execute ready tasks under **EPIC_ID** until the epic is done or blocked."""

    with _ralph_errors():
        _emit_lines(
            CONTROLLER.run_loop(
                RunLoopCommand(epic_id=epic_id, config_path=config_path, dry_run=dry_run),
            ),
        )


@ralph.command("route")
@config_option
@click.option("--epic", "epic_id", default=None, help="Only route ready tasks under this epic.")
def route(config_path: Path | None, epic_id: str | None) -> None:
    """Print the agent resolved for every ready task as JSON."""

    with _ralph_errors():
        _emit_lines(CONTROLLER.route(RouteCommand(config_path=config_path, epic_id=epic_id)))


@ralph.command("delegate", context_settings={"ignore_unknown_options": True})
@click.option(
    "--agent",
    required=True,
    help=f"Agent kind: {', '.join(list_agent_kinds())}.",
)
@click.option("--prompt", default=None, help="Prompt text.")
@click.option(
    "--prompt-file",
    type=click.Path(path_type=Path, dir_okay=False, exists=True),
    default=None,
    help="Read the prompt from a file.",
)
@repo_option
@click.option("--attempts", type=int, default=DEFAULT_ATTEMPTS, show_default=True)
@click.option("--sleep-ms", type=click.IntRange(min=0), default=DEFAULT_SLEEP_MS, show_default=True)
@click.option("--backoff", type=float, default=DEFAULT_BACKOFF, show_default=True)
@click.option("--max-delay-ms", type=click.IntRange(min=1), default=None)
@click.option(
    "--timeout-ms",
    type=click.IntRange(min=1),
    default=None,
    help="Per-attempt timeout. Defaults to the agent kind's timeout or 600000.",
)
@click.option(
    "--log-dir",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Directory for run logs. Defaults to .devagent/logs/agent-runs.",
)
@click.option("--wake", is_flag=True, help="Send a wake notification when done.")
@click.option(
    "--wake-summarize",
    is_flag=True,
    help="Send a wake notification asking for a summary of the run.",
)
@click.option("--task-description", default=None, help="Task text used in the wake message.")
@click.option(
    "--wake-output-chars",
    type=click.IntRange(min=0),
    default=DEFAULT_WAKE_OUTPUT_CHARS,
    show_default=True,
)
@click.argument("extra_args", nargs=-1, type=click.UNPROCESSED)
def delegate(  # noqa: PLR0913
    agent: str,
    prompt: str | None,
    prompt_file: Path | None,
    repo: Path | None,
    attempts: int,
    sleep_ms: int,
    backoff: float,
    max_delay_ms: int | None,
    timeout_ms: int | None,
    log_dir: Path | None,
    wake: bool,
    wake_summarize: bool,
    task_description: str | None,
    wake_output_chars: int,
    extra_args: tuple[str, ...],
) -> None:
    """Run one agent with retries and backoff; extra arguments after `--` go to the agent."""

    if prompt_file is not None:
        prompt = prompt_file.read_text("utf-8")
    if not prompt:
        raise click.UsageError("Provide --prompt or --prompt-file.")
    try:
        result = CONTROLLER.delegate(
            DelegateCommand(
                agent=agent,
                prompt=prompt,
                repo=repo,
                attempts=attempts,
                sleep_ms=sleep_ms,
                backoff=backoff,
                max_delay_ms=max_delay_ms,
                timeout_ms=timeout_ms,
                log_dir=log_dir,
                wake=wake,
                wake_summarize=wake_summarize,
                task_description=task_description,
                wake_output_chars=wake_output_chars,
                extra_args=extra_args,
            ),
        )
    except (BackendRunError, ValueError) as error:
        raise click.UsageError(str(error)) from error
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Agent delegation failed.")


@ralph.command("check-status")
@click.argument("task_id")
@click.argument("signal")
@click.pass_context
def check_status(ctx: click.Context, task_id: str, signal: str) -> None:
    """Exit 0 when **TASK_ID** has status or label **SIGNAL**, 1 when not, 2 on error."""

    result = CONTROLLER.check_status(CheckStatusCommand(task_id=task_id, signal=signal))
    if result.message:
        click.echo(result.message, err=True)
    ctx.exit(int(result.code))


@ralph.command("setup")
@click.argument("loop_file", type=click.Path(path_type=Path, dir_okay=False))
@config_option
@click.option("--dry-run", is_flag=True, help="Print the plan without touching the tracker.")
def setup(loop_file: Path, config_path: Path | None, dry_run: bool) -> None:
    """Create the epic, sub-epics and tasks described by **LOOP_FILE**."""

    with _ralph_errors():
        _emit_lines(
            CONTROLLER.setup_loop(
                SetupLoopCommand(loop_path=loop_file, config_path=config_path, dry_run=dry_run),
            ),
        )


@ralph.group()
def git() -> None:
    """Hub/feature branch automation."""


@git.command("hub")
@click.argument("hub")
@click.option("--base", default="main", show_default=True, help="Branch to start from.")
@repo_option
@push_option
@pull_option
def git_hub(hub: str, base: str, repo: Path | None, push: bool, pull: bool) -> None:
    """Create hub branch **HUB** from the base branch."""

    with _ralph_errors():
        _emit_lines(
            CONTROLLER.git_hub(GitCommand(repo=repo, branch=hub, base=base, push=push, pull=pull)),
        )


@git.command("feature")
@click.argument("feature")
@click.option("--base", required=True, help="Hub branch the feature branches off.")
@repo_option
@push_option
@pull_option
def git_feature(feature: str, base: str, repo: Path | None, push: bool, pull: bool) -> None:
    """Check out **FEATURE**, creating it from the base branch when missing."""

    with _ralph_errors():
        _emit_lines(
            CONTROLLER.git_feature(
                GitCommand(repo=repo, branch=feature, base=base, push=push, pull=pull),
            ),
        )


@git.command("rebase")
@click.argument("branch")
@click.argument("onto")
@click.option(
    "--strategy",
    type=click.Choice([ConflictStrategy.THEIRS.value, ConflictStrategy.OURS.value]),
    default=ConflictStrategy.THEIRS.value,
    show_default=True,
    help="Side taken for conflicted files.",
)
@click.option(
    "--max-conflicts",
    type=click.IntRange(min=0),
    default=DEFAULT_MAX_CONFLICTS,
    show_default=True,
)
@click.option(
    "--abort-on-complex/--no-abort-on-complex",
    default=True,
    show_default=True,
    help="Abort when conflicts exceed --max-conflicts.",
)
@repo_option
@pull_option
def git_rebase(  # noqa: PLR0913
    branch: str,
    onto: str,
    strategy: str,
    max_conflicts: int,
    abort_on_complex: bool,
    repo: Path | None,
    pull: bool,
) -> None:
    """Rebase **BRANCH** onto **ONTO**, auto-resolving a bounded number of conflicts."""

    with _ralph_errors():
        result = CONTROLLER.git_rebase(
            GitCommand(
                repo=repo,
                branch=branch,
                base=onto,
                pull=pull,
                strategy=strategy,
                abort_on_complex=abort_on_complex,
                max_conflicts=max_conflicts,
            ),
        )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Rebase failed.")


@git.command("push")
@click.argument("branch")
@repo_option
def git_push(branch: str, repo: Path | None) -> None:
    """Force-push **BRANCH** to origin with lease."""

    with _ralph_errors():
        _emit_lines(CONTROLLER.git_push(GitCommand(repo=repo, branch=branch)))


@git.command("merge")
@click.argument("source")
@click.argument("target")
@click.option("--no-ff/--ff", default=True, show_default=True, help="Always create a merge commit.")
@click.option("--message", "-m", default=None, help="Merge commit message.")
@repo_option
@pull_option
def git_merge(  # noqa: PLR0913
    source: str,
    target: str,
    no_ff: bool,
    message: str | None,
    repo: Path | None,
    pull: bool,
) -> None:
    """Merge **SOURCE** into **TARGET**."""

    with _ralph_errors():
        result = CONTROLLER.git_merge(
            GitCommand(
                repo=repo,
                branch=source,
                base=target,
                pull=pull,
                no_ff=no_ff,
                message=message,
            ),
        )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Merge failed.")


@contextmanager
def _ralph_errors() -> Iterator[None]:
    try:
        yield
    except RalphError as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    ralph()
