"""Controllers for orchestrator CLI commands."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from uuid import uuid4

from parallel_orchestrator.config import Settings
from parallel_orchestrator.orchestrator.coordinator import WorkerCoordinator
from parallel_orchestrator.orchestrator.graph import DependencyGraph, load_task_file
from parallel_orchestrator.orchestrator.models import EventType, OrchestratorEvent, RunResult
from parallel_orchestrator.orchestrator.queue_worker import QueueWorker, QueueWorkSummary
from parallel_orchestrator.orchestrator.runner import Orchestrator
from parallel_orchestrator.orchestrator.scheduler import plan_phases
from parallel_orchestrator.orchestrator.task_queue import SharedTaskQueue
from parallel_orchestrator.orchestrator.workspace import build_workspace_provider
from parallel_orchestrator.session.lock import InstanceLock, InstanceLockGuard
from parallel_orchestrator.session.models import OrphanedWorkspace, PersistedSessionState
from parallel_orchestrator.session.persistence import (
    SessionStore,
    get_session_summary,
    is_session_resumable,
)
from parallel_orchestrator.session.recovery import (
    RecoveryResult,
    detect_and_recover_stale_session,
    detect_orphaned_workspaces,
)


@dataclass(slots=True)
class RunCommand:
    """CLI input for an orchestration run."""

    task_file: Path
    repo_root: Path
    state_dir: Path | None = None
    policy: str | None = None
    max_workers: int | None = None
    workspace_mode: str | None = None
    worker_command: str | None = None
    timeout_seconds: int | None = None
    resume: bool = False
    force: bool = False
    non_interactive: bool = False
    confirm: Callable[[str], bool] | None = None
    echo: Callable[[str], None] | None = None


@dataclass(slots=True)
class PlanCommand:
    """CLI input for printing phases without running anything."""

    task_file: Path
    max_workers: int | None = None


@dataclass(slots=True)
class RepoCommand:
    """CLI input for commands that only inspect or edit the state directory."""

    repo_root: Path
    state_dir: Path | None = None
    force: bool = False


@dataclass(slots=True)
class QueueInitCommand:
    """CLI input for seeding the shared task queue."""

    task_file: Path
    repo_root: Path
    state_dir: Path | None = None


@dataclass(slots=True)
class QueueWorkCommand:
    """CLI input for one decentralized worker draining the shared task queue."""

    repo_root: Path
    state_dir: Path | None = None
    worker_id: str | None = None
    max_tasks: int | None = None
    workspace_mode: str | None = None
    worker_command: str | None = None
    timeout_seconds: int | None = None
    poll_seconds: float | None = None
    echo: Callable[[str], None] | None = None


@dataclass(slots=True)
class CommandResult:
    """Report to render in CLI plus the exit verdict."""

    lines: list[str]
    success: bool


class OrchestratorCliController:
    """Coordinates run, inspection and maintenance CLI operations."""

    def run(self, command: RunCommand) -> CommandResult:
        settings = _settings(command.state_dir)
        if command.policy is not None:
            settings.scheduler.policy = command.policy
        if command.max_workers is not None:
            settings.scheduler.max_workers = command.max_workers
        if command.workspace_mode is not None:
            settings.workspace.mode = command.workspace_mode
        if command.worker_command is not None:
            settings.worker.command_template = command.worker_command
        if command.timeout_seconds is not None:
            settings.worker.timeout_seconds = command.timeout_seconds
        settings.validate()

        graph = load_task_file(command.task_file)
        repo_root = command.repo_root.resolve()
        state_dir = settings.resolve_state_dir(repo_root)
        store = _store(settings, state_dir)
        lock = _lock(settings, state_dir)

        recovery = detect_and_recover_stale_session(
            store,
            lock,
            repo_root,
            worktree_dir=settings.workspace.worktree_dir,
        )
        lines = _recovery_lines(recovery)

        session: PersistedSessionState | None = None
        if command.resume:
            session = recovery.recovered_session or store.load_session()
            if session is None:
                raise ValueError(f"No session to resume in {state_dir}")
            if not is_session_resumable(session):
                raise ValueError(
                    f"Session {session.session_id} is {session.status.value} "
                    "and cannot be resumed",
                )
        session_id = session.session_id if session is not None else str(uuid4())

        with InstanceLockGuard(
            lock,
            session_id,
            force=command.force,
            non_interactive=command.non_interactive,
            confirm=command.confirm,
        ):
            coordinator = _coordinator(settings, repo_root, state_dir)
            orchestrator = Orchestrator(
                graph,
                coordinator,
                settings=settings,
                repo_root=repo_root,
                store=store,
            )
            if command.echo is not None:
                echo = command.echo
                orchestrator.add_listener(lambda event: echo(render_event(event)))
            result = orchestrator.run(session=session, session_id=session_id)

        lines.extend(render_run_result(result))
        return CommandResult(lines=lines, success=result.succeeded)

    def plan(self, command: PlanCommand) -> list[str]:
        settings = _settings(None)
        if command.max_workers is not None:
            settings.scheduler.max_workers = command.max_workers
        settings.validate()
        graph = load_task_file(command.task_file)
        return render_plan(
            graph,
            max_workers=settings.scheduler.max_workers,
            low_confidence_threshold=settings.scheduler.low_confidence_threshold,
        )

    def status(self, command: RepoCommand) -> list[str]:
        settings = _settings(command.state_dir)
        state_dir = settings.resolve_state_dir(command.repo_root.resolve())
        lines = _lock_lines(_lock(settings, state_dir))
        session = _store(settings, state_dir).load_session()
        if session is None:
            lines.append("Session: none")
            return lines
        lines.extend(render_session(session))
        return lines

    def recover(self, command: RepoCommand) -> list[str]:
        settings = _settings(command.state_dir)
        repo_root = command.repo_root.resolve()
        state_dir = settings.resolve_state_dir(repo_root)
        recovery = detect_and_recover_stale_session(
            _store(settings, state_dir),
            _lock(settings, state_dir),
            repo_root,
            worktree_dir=settings.workspace.worktree_dir,
        )
        return _recovery_lines(recovery) or ["Nothing to recover."]

    def orphans(self, command: RepoCommand) -> list[str]:
        settings = _settings(command.state_dir)
        repo_root = command.repo_root.resolve()
        state_dir = settings.resolve_state_dir(repo_root)
        orphans = detect_orphaned_workspaces(
            repo_root,
            session=_store(settings, state_dir).load_session(),
            worktree_dir=settings.workspace.worktree_dir,
        )
        return [f"Orphaned workspaces: {len(orphans)}", *_orphan_lines(orphans)]

    def lock_status(self, command: RepoCommand) -> list[str]:
        settings = _settings(command.state_dir)
        state_dir = settings.resolve_state_dir(command.repo_root.resolve())
        return _lock_lines(_lock(settings, state_dir))

    def lock_release(self, command: RepoCommand) -> CommandResult:
        """Remove a stale lock; a live holder is only evicted with ``force``."""

        settings = _settings(command.state_dir)
        state_dir = settings.resolve_state_dir(command.repo_root.resolve())
        lock = _lock(settings, state_dir)
        status = lock.check_lock()
        if status.lock is None:
            return CommandResult(lines=["Lock: not held"], success=True)
        if status.is_locked and not command.force:
            return CommandResult(
                lines=[
                    f"Lock is held by a running process (PID: {status.lock.pid}); "
                    "use --force to remove it anyway.",
                ],
                success=False,
            )
        released = lock.release_lock(only_if_owner=False)
        return CommandResult(
            lines=[f"Lock released (PID: {status.lock.pid})" if released else "Lock: not held"],
            success=True,
        )

    def session_show(self, command: RepoCommand) -> list[str]:
        settings = _settings(command.state_dir)
        state_dir = settings.resolve_state_dir(command.repo_root.resolve())
        session = _store(settings, state_dir).load_session()
        if session is None:
            return ["Session: none"]
        lines = render_session(session)
        for task in session.tasks:
            lines.append(f"  {task.id} status={task.status.value} work_unit={task.work_unit_id}")
        for agent in session.agents:
            lines.append(
                f"  agent {agent.agent_id} tasks={','.join(agent.task_ids)} "
                f"status={agent.status.value} workspace={agent.workspace_path}"
                + (f" error={agent.error}" if agent.error else ""),
            )
        return lines

    def session_delete(self, command: RepoCommand) -> CommandResult:
        settings = _settings(command.state_dir)
        state_dir = settings.resolve_state_dir(command.repo_root.resolve())
        status = _lock(settings, state_dir).check_lock()
        if status.is_locked and status.lock is not None and not command.force:
            return CommandResult(
                lines=[
                    f"Session is in use by a running orchestrator (PID: {status.lock.pid}); "
                    "use --force to delete it anyway.",
                ],
                success=False,
            )
        deleted = _store(settings, state_dir).delete_session()
        return CommandResult(
            lines=["Session deleted." if deleted else "Session: none"],
            success=True,
        )

    def queue_init(self, command: QueueInitCommand) -> list[str]:
        settings = _settings(command.state_dir)
        state_dir = settings.resolve_state_dir(command.repo_root.resolve())
        graph = load_task_file(command.task_file)
        tasks = _queue(settings, state_dir).initialize_from_graph(graph)
        return [f"Task queue initialized: {len(tasks)} task(s) in {state_dir}"]

    def queue_status(self, command: RepoCommand) -> list[str]:
        settings = _settings(command.state_dir)
        state_dir = settings.resolve_state_dir(command.repo_root.resolve())
        queue = _queue(settings, state_dir)
        status = queue.get_queue_status()
        lines = [
            "Task queue: "
            f"total={status.total} pending={status.pending} in_progress={status.in_progress} "
            f"done={status.done} failed={status.failed}",
        ]
        for task in queue.list_tasks():
            owner = f" worker={task.worker_id}" if task.worker_id else ""
            error = f" error={task.error}" if task.error else ""
            lines.append(f"  {task.id} status={task.status.value}{owner}{error}")
        return lines

    def queue_work(self, command: QueueWorkCommand) -> CommandResult:
        """Drain the shared queue from this process; no instance lock is taken."""

        settings = _settings(command.state_dir)
        if command.workspace_mode is not None:
            settings.workspace.mode = command.workspace_mode
        if command.worker_command is not None:
            settings.worker.command_template = command.worker_command
        if command.timeout_seconds is not None:
            settings.worker.timeout_seconds = command.timeout_seconds
        if command.poll_seconds is not None:
            settings.worker.queue_poll_seconds = command.poll_seconds
        settings.validate()

        repo_root = command.repo_root.resolve()
        state_dir = settings.resolve_state_dir(repo_root)
        queue = _queue(settings, state_dir)
        if not queue.list_tasks():
            raise ValueError(f"Task queue is empty; run queue init first ({state_dir})")

        coordinator = _coordinator(settings, repo_root, state_dir)
        if command.echo is not None:
            echo = command.echo
            coordinator.add_listener(lambda event: echo(render_event(event)))
        if settings.worker.sync_before_work:
            coordinator.sync_before_work()
        worker = QueueWorker(
            queue,
            coordinator,
            worker_id=command.worker_id,
            poll_interval_seconds=settings.worker.queue_poll_seconds,
        )
        summary = worker.run_loop(max_tasks=command.max_tasks)
        return CommandResult(
            lines=render_queue_work(summary),
            success=not summary.failed and not summary.interrupted,
        )


def render_event(event: OrchestratorEvent) -> str:
    """One human-readable line per orchestrator event."""

    tasks = ",".join(event.task_ids)
    if event.type == EventType.WORKER_STARTED:
        return f"[{event.worker_id}] started {tasks}"
    if event.type == EventType.WORKER_PROGRESS:
        return f"[{event.worker_id}] {tasks} {event.progress}%"
    if event.type == EventType.WORKER_COMPLETED:
        return f"[{event.worker_id}] completed {tasks}"
    if event.type == EventType.WORKER_FAILED:
        return f"[{event.worker_id}] failed {tasks}: {event.error or 'unknown error'}"
    if event.type in {EventType.PHASE_STARTED, EventType.PHASE_COMPLETED}:
        verb = "started" if event.type == EventType.PHASE_STARTED else "completed"
        position = (event.phase_index or 0) + 1
        return f"{event.phase_name} ({position}/{event.total_phases}) {verb}"
    return (
        f"Orchestration finished: {event.completed_tasks}/{event.total_tasks} completed, "
        f"{event.failed_tasks} failed"
    )


def render_run_result(result: RunResult) -> list[str]:
    verdict = "interrupted" if result.interrupted else "ok" if result.succeeded else "failed"
    lines = [
        f"Run summary: session={result.session_id} status={verdict} "
        f"total={result.total_tasks} completed={result.completed} failed={result.failed}",
    ]
    if result.completed_task_ids:
        lines.append(f"Completed: {', '.join(result.completed_task_ids)}")
    for task_id, reason in result.failed_task_ids.items():
        lines.append(f"Failed: {task_id} ({reason})")
    return lines


def render_queue_work(summary: QueueWorkSummary) -> list[str]:
    verdict = " (interrupted)" if summary.interrupted else ""
    lines = [
        f"Queue worker {summary.worker_id}{verdict}: processed={summary.processed} "
        f"completed={len(summary.completed)} failed={len(summary.failed)}",
    ]
    if summary.completed:
        lines.append(f"Completed: {', '.join(summary.completed)}")
    for task_id, reason in summary.failed.items():
        lines.append(f"Failed: {task_id} ({reason})")
    if summary.released:
        lines.append(f"Released: {', '.join(summary.released)}")
    return lines


def render_plan(
    graph: DependencyGraph,
    *,
    max_workers: int = 0,
    low_confidence_threshold: float = 0.5,
) -> list[str]:
    phases = plan_phases(
        graph,
        max_workers=max_workers,
        low_confidence_threshold=low_confidence_threshold,
    )
    lines = [f"Plan: {len(graph)} task(s) in {len(phases)} phase(s)"]
    for phase in phases:
        mode = "parallel" if phase.parallel else "sequential"
        groups = " ".join(group.label for group in phase.story_groups)
        lines.append(
            f"  {phase.name}: {mode} confidence={phase.confidence:.2f} groups={groups}",
        )
    return lines


def render_session(session: PersistedSessionState) -> list[str]:
    summary = get_session_summary(session)
    return [
        f"Session: {summary.session_id}",
        f"Status: {summary.status.value}{' (paused)' if summary.is_paused else ''}",
        f"Started: {summary.started_at}",
        f"Updated: {summary.updated_at}",
        f"Resumable: {'yes' if summary.is_resumable else 'no'}",
        "Tasks: "
        f"total={summary.total_tasks} completed={summary.completed_tasks} "
        f"failed={summary.failed_tasks} cancelled={summary.cancelled_tasks} "
        f"pending={summary.pending_tasks}",
        f"Active agents: {summary.active_agents} workspaces: {summary.active_workspaces}",
    ]


def _recovery_lines(recovery: RecoveryResult) -> list[str]:
    lines: list[str] = []
    if recovery.was_stale and recovery.recovered_session is not None:
        lines.append(
            f"Recovered crashed session {recovery.recovered_session.session_id}: "
            f"{recovery.reset_agent_count} interrupted agent(s) re-queued.",
        )
    if recovery.orphaned_workspaces:
        lines.append(f"Orphaned workspaces: {len(recovery.orphaned_workspaces)}")
        lines.extend(_orphan_lines(recovery.orphaned_workspaces))
    return lines


def _orphan_lines(orphans: list[OrphanedWorkspace]) -> list[str]:
    lines = []
    for orphan in orphans:
        owner = f" task={orphan.task_id} agent={orphan.agent_id}" if orphan.task_id else ""
        lines.append(
            f"  {orphan.path} branch={orphan.branch or '-'} "
            f"on_disk={'yes' if orphan.exists_on_disk else 'no'} "
            f"git={'yes' if orphan.tracked_by_git else 'no'}{owner}",
        )
    return lines


def _lock_lines(lock: InstanceLock) -> list[str]:
    status = lock.check_lock()
    if status.lock is None:
        return ["Lock: not held"]
    state = "held" if status.is_locked else "stale"
    return [
        f"Lock: {state} (PID: {status.lock.pid}, session: {status.lock.session_id}, "
        f"since {status.lock.acquired_at}, host: {status.lock.hostname})",
    ]


def _settings(state_dir: Path | None) -> Settings:
    settings = Settings.from_env(state_dir=state_dir)
    settings.validate()
    return settings


def _store(settings: Settings, state_dir: Path) -> SessionStore:
    return SessionStore(
        state_dir,
        retry_delay_seconds=settings.lock.retry_delay_seconds,
        max_attempts=settings.lock.max_attempts,
    )


def _lock(settings: Settings, state_dir: Path) -> InstanceLock:
    return InstanceLock(
        state_dir,
        retry_delay_seconds=settings.lock.retry_delay_seconds,
        max_attempts=settings.lock.max_attempts,
    )


def _queue(settings: Settings, state_dir: Path) -> SharedTaskQueue:
    return SharedTaskQueue(
        state_dir,
        retry_delay_seconds=settings.lock.retry_delay_seconds,
        max_attempts=settings.lock.max_attempts,
    )


def _coordinator(settings: Settings, repo_root: Path, state_dir: Path) -> WorkerCoordinator:
    workspaces = build_workspace_provider(
        settings.workspace.mode,
        repo_root,
        worktree_dir=settings.workspace.worktree_dir,
        base_ref=settings.workspace.base_ref,
    )
    return WorkerCoordinator(
        repo_root,
        settings.worker,
        workspaces,
        state_dir=state_dir,
        cleanup_on_success=settings.workspace.cleanup_on_success,
        merge_on_success=settings.workspace.merge_on_success,
    )
