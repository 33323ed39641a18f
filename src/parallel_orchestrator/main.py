"""CLI entrypoint for parallel-orchestrator."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

import rich_click as click

from parallel_orchestrator import __version__
from parallel_orchestrator.config import SCHEDULER_POLICIES, WORKSPACE_MODES, Settings
from parallel_orchestrator.orchestrator.controllers import (
    OrchestratorCliController,
    PlanCommand,
    QueueInitCommand,
    QueueWorkCommand,
    RepoCommand,
    RunCommand,
)
from parallel_orchestrator.orchestrator.coordinator import WorkerSpawnError
from parallel_orchestrator.orchestrator.workspace import WorkspaceError
from parallel_orchestrator.session.lock import LockHeldError
from parallel_orchestrator.session.mutex import MutexTimeoutError

click.rich_click.USE_MARKDOWN = True
ORCHESTRATOR_CONTROLLER = OrchestratorCliController()

_repo_option = click.option(
    "--repo",
    "repo_root",
    type=click.Path(file_okay=False, path_type=Path),
    default=Path(),
    show_default=True,
    help="Repository checkout the orchestrator manages.",
)
_state_dir_option = click.option(
    "--state-dir",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="State directory (relative paths resolve against --repo).",
)
_task_file_argument = click.argument(
    "task_file",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
)


@click.group()
@click.version_option(version=__version__, prog_name="parallel-orchestrator")
@click.option(
    "--log-level",
    default=None,
    help="Logging level; defaults to PARALLEL_ORCHESTRATOR_LOG_LEVEL or WARNING.",
)
def parallel_orchestrator(log_level: str | None) -> None:
    """Run dependent tasks across parallel worker processes."""

    with _cli_errors():
        level = (log_level or Settings.from_env().log_level).strip().upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Invalid log level: {level!r}")
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@parallel_orchestrator.command("run")
@_task_file_argument
@_repo_option
@_state_dir_option
@click.option(
    "--policy",
    type=click.Choice(SCHEDULER_POLICIES),
    default=None,
    help="Admission policy: `phased` runs phase by phase, `ready` starts tasks as soon as "
    "their dependencies finish.",
)
@click.option(
    "--max-workers",
    type=click.IntRange(min=0),
    default=None,
    help="Cap on concurrent workers (0 = unbounded).",
)
@click.option(
    "--workspace-mode",
    type=click.Choice(WORKSPACE_MODES),
    default=None,
    help="Run each worker in its own git worktree or in the checkout itself.",
)
@click.option(
    "--worker-command",
    default=None,
    help="Worker command template with {task_args}, {task_id}, {from_id}, {to_id}, {workdir}.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=0),
    default=None,
    help="Per-worker timeout (0 = none).",
)
@click.option("--resume", is_flag=True, default=False, help="Resume the persisted session.")
@click.option(
    "--force",
    is_flag=True,
    default=False,
    help="Take the instance lock even if another orchestrator holds it.",
)
@click.option(
    "--non-interactive",
    is_flag=True,
    default=False,
    help="Clean stale locks without asking.",
)
def run(  # noqa: PLR0913
    task_file: Path,
    repo_root: Path,
    state_dir: Path | None,
    policy: str | None,
    max_workers: int | None,
    workspace_mode: str | None,
    worker_command: str | None,
    timeout_seconds: int | None,
    resume: bool,
    force: bool,
    non_interactive: bool,
) -> None:
    """Execute the task file, one worker per story group."""

    with _cli_errors():
        result = ORCHESTRATOR_CONTROLLER.run(
            RunCommand(
                task_file=task_file,
                repo_root=repo_root,
                state_dir=state_dir,
                policy=policy,
                max_workers=max_workers,
                workspace_mode=workspace_mode,
                worker_command=worker_command,
                timeout_seconds=timeout_seconds,
                resume=resume,
                force=force,
                non_interactive=non_interactive,
                confirm=_confirm_stale_lock,
                echo=click.echo,
            ),
        )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Orchestration did not complete successfully.")


@parallel_orchestrator.command("plan")
@_task_file_argument
@click.option(
    "--max-workers",
    type=click.IntRange(min=0),
    default=None,
    help="Cap on story groups per phase (0 = one group per task).",
)
def plan(task_file: Path, max_workers: int | None) -> None:
    """Print the phases a phased run would execute, without running anything."""

    with _cli_errors():
        lines = ORCHESTRATOR_CONTROLLER.plan(
            PlanCommand(task_file=task_file, max_workers=max_workers),
        )
    _emit_lines(lines)


@parallel_orchestrator.command("status")
@_repo_option
@_state_dir_option
def status(repo_root: Path, state_dir: Path | None) -> None:
    """Show the instance lock and the persisted session summary."""

    with _cli_errors():
        lines = ORCHESTRATOR_CONTROLLER.status(
            RepoCommand(repo_root=repo_root, state_dir=state_dir),
        )
    _emit_lines(lines)


@parallel_orchestrator.command("recover")
@_repo_option
@_state_dir_option
def recover(repo_root: Path, state_dir: Path | None) -> None:
    """Reconcile a session left running by a crashed orchestrator."""

    with _cli_errors():
        lines = ORCHESTRATOR_CONTROLLER.recover(
            RepoCommand(repo_root=repo_root, state_dir=state_dir),
        )
    _emit_lines(lines)


@parallel_orchestrator.command("orphans")
@_repo_option
@_state_dir_option
def orphans(repo_root: Path, state_dir: Path | None) -> None:
    """List worktrees that the persisted session does not account for."""

    with _cli_errors():
        lines = ORCHESTRATOR_CONTROLLER.orphans(
            RepoCommand(repo_root=repo_root, state_dir=state_dir),
        )
    _emit_lines(lines)


@parallel_orchestrator.group()
def lock() -> None:
    """Single-instance lock commands."""


@lock.command("status")
@_repo_option
@_state_dir_option
def lock_status(repo_root: Path, state_dir: Path | None) -> None:
    """Show who holds the instance lock."""

    with _cli_errors():
        lines = ORCHESTRATOR_CONTROLLER.lock_status(
            RepoCommand(repo_root=repo_root, state_dir=state_dir),
        )
    _emit_lines(lines)


@lock.command("release")
@_repo_option
@_state_dir_option
@click.option(
    "--force",
    is_flag=True,
    default=False,
    help="Remove the lock even if its holder is still running.",
)
def lock_release(repo_root: Path, state_dir: Path | None, force: bool) -> None:
    """Remove a stale instance lock."""

    with _cli_errors():
        result = ORCHESTRATOR_CONTROLLER.lock_release(
            RepoCommand(repo_root=repo_root, state_dir=state_dir, force=force),
        )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Lock was not released.")


@parallel_orchestrator.group()
def session() -> None:
    """Persisted session commands."""


@session.command("show")
@_repo_option
@_state_dir_option
def session_show(repo_root: Path, state_dir: Path | None) -> None:
    """Print the persisted session with per-task status."""

    with _cli_errors():
        lines = ORCHESTRATOR_CONTROLLER.session_show(
            RepoCommand(repo_root=repo_root, state_dir=state_dir),
        )
    _emit_lines(lines)


@session.command("delete")
@_repo_option
@_state_dir_option
@click.option(
    "--force",
    is_flag=True,
    default=False,
    help="Delete even while an orchestrator holds the lock.",
)
def session_delete(repo_root: Path, state_dir: Path | None, force: bool) -> None:
    """Delete the persisted session."""

    with _cli_errors():
        result = ORCHESTRATOR_CONTROLLER.session_delete(
            RepoCommand(repo_root=repo_root, state_dir=state_dir, force=force),
        )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Session was not deleted.")


@parallel_orchestrator.group()
def queue() -> None:
    """Shared task queue commands."""


@queue.command("init")
@_task_file_argument
@_repo_option
@_state_dir_option
def queue_init(task_file: Path, repo_root: Path, state_dir: Path | None) -> None:
    """Seed the shared task queue from a task file."""

    with _cli_errors():
        lines = ORCHESTRATOR_CONTROLLER.queue_init(
            QueueInitCommand(task_file=task_file, repo_root=repo_root, state_dir=state_dir),
        )
    _emit_lines(lines)


@queue.command("status")
@_repo_option
@_state_dir_option
def queue_status(repo_root: Path, state_dir: Path | None) -> None:
    """Show shared task queue counts and entries."""

    with _cli_errors():
        lines = ORCHESTRATOR_CONTROLLER.queue_status(
            RepoCommand(repo_root=repo_root, state_dir=state_dir),
        )
    _emit_lines(lines)


@queue.command("work")
@_repo_option
@_state_dir_option
@click.option(
    "--worker-id",
    default=None,
    help="Name recorded on claimed tasks; defaults to one derived from the process id.",
)
@click.option(
    "--max-tasks",
    type=click.IntRange(min=1),
    default=None,
    help="Stop after this many tasks (default: until the queue drains).",
)
@click.option(
    "--workspace-mode",
    type=click.Choice(WORKSPACE_MODES),
    default=None,
    help="Run each task in its own git worktree or in the checkout itself.",
)
@click.option(
    "--worker-command",
    default=None,
    help="Worker command template with {task_args}, {task_id}, {from_id}, {to_id}, {workdir}.",
)
@click.option(
    "--timeout-seconds",
    type=click.IntRange(min=0),
    default=None,
    help="Per-task timeout (0 = none).",
)
@click.option(
    "--poll-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Wait between claims while other workers hold the remaining tasks.",
)
def queue_work(  # noqa: PLR0913
    repo_root: Path,
    state_dir: Path | None,
    worker_id: str | None,
    max_tasks: int | None,
    workspace_mode: str | None,
    worker_command: str | None,
    timeout_seconds: int | None,
    poll_seconds: float | None,
) -> None:
    """Claim and run queued tasks until the shared queue drains.

    Start several of these, in separate terminals or hosts sharing the state
    directory, to work one queue without a central orchestrator.
    """

    with _cli_errors():
        result = ORCHESTRATOR_CONTROLLER.queue_work(
            QueueWorkCommand(
                repo_root=repo_root,
                state_dir=state_dir,
                worker_id=worker_id,
                max_tasks=max_tasks,
                workspace_mode=workspace_mode,
                worker_command=worker_command,
                timeout_seconds=timeout_seconds,
                poll_seconds=poll_seconds,
                echo=click.echo,
            ),
        )
    _emit_lines(result.lines)
    if not result.success:
        raise click.ClickException("Some queue tasks failed or were interrupted.")


@contextmanager
def _cli_errors() -> Iterator[None]:
    try:
        yield
    except LockHeldError as error:
        raise click.ClickException(str(error)) from error
    except MutexTimeoutError as error:
        raise click.ClickException(f"Timed out waiting for {error.marker}") from error
    except (ValueError, WorkspaceError, WorkerSpawnError) as error:
        raise click.ClickException(str(error)) from error


def _confirm_stale_lock(description: str) -> bool:
    click.echo(description)
    return click.confirm("Remove the stale lock and continue?", default=False)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    parallel_orchestrator()
