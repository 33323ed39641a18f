"""Worker lifecycle coordinator: workspaces, processes and their events.

Each worker is an OS process. A reader thread per worker turns its output
into progress notifications and reports the exit status; both travel through
one queue and are applied by :meth:`WorkerCoordinator.next_event` on the
control thread. Worker state is therefore only ever mutated by the thread
that drives scheduling, and every worker produces ``worker:started``, zero
or more ``worker:progress`` and exactly one terminal event, in that order.
"""

from __future__ import annotations

import json
import logging
import os
import queue
import re
import shlex
import subprocess
import threading
from collections import deque
from collections.abc import Callable
from contextlib import nullcontext
from dataclasses import dataclass, field
from pathlib import Path
from uuid import uuid4

from parallel_orchestrator.config import WorkerSettings
from parallel_orchestrator.git import commit_all, run_git
from parallel_orchestrator.orchestrator.models import (
    EventType,
    OrchestratorEvent,
    StoryGroup,
    WorkerState,
    WorkerStatus,
)
from parallel_orchestrator.orchestrator.workspace import WorkspaceProvider, commit_message
from parallel_orchestrator.session.models import WorkspaceDescriptor, utc_now_iso
from parallel_orchestrator.session.mutex import MutexTimeoutError, hold_mutex

logger = logging.getLogger(__name__)

COMMIT_MUTEX_NAME = "commit.lock.d"
COMMIT_RETRY_DELAY_SECONDS = 0.5
COMMIT_MAX_ATTEMPTS = 60
KILLED_ERROR = "killed"
OUTPUT_TAIL_LINES = 20

_PROGRESS_RE = re.compile(r"progress[:\s]+(\d+)", re.IGNORECASE)

EventListener = Callable[[OrchestratorEvent], None]


class WorkerSpawnError(RuntimeError):
    """Worker process could not be launched, with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


@dataclass(slots=True)
class _RawEvent:
    kind: str
    worker_id: str | None = None
    value: int | None = None


@dataclass(slots=True)
class _ManagedWorker:
    state: WorkerState
    group: StoryGroup
    workspace: WorkspaceDescriptor
    process: subprocess.Popen[str]
    log_path: Path | None = None
    timed_out: bool = False
    timer: threading.Timer | None = None
    pump: threading.Thread | None = None
    output_tail: deque[str] = field(default_factory=lambda: deque(maxlen=OUTPUT_TAIL_LINES))


def parse_progress(line: str) -> int | None:
    """Progress percentage from ``progress: N`` text or a JSON line, clamped to 0..100."""

    stripped = line.strip()
    if stripped.startswith("{"):
        try:
            payload = json.loads(stripped)
        except json.JSONDecodeError:
            payload = None
        if isinstance(payload, dict) and isinstance(payload.get("progress"), int | float):
            return max(0, min(100, int(payload["progress"])))
    match = _PROGRESS_RE.search(stripped)
    if match is None:
        return None
    return max(0, min(100, int(match.group(1))))


def build_worker_command(
    command_template: str,
    *,
    group: StoryGroup,
    workdir: Path,
    headless: bool,
    extra_args: tuple[str, ...] = (),
) -> list[str]:
    """Render the worker command line for a task or a contiguous task range."""

    stripped = command_template.strip()
    if not stripped:
        raise WorkerSpawnError("Worker command template is empty.", transient=False)
    span = group.id_range
    if len(group.task_ids) == 1:
        task_args = ["--task", span.start]
    else:
        task_args = ["--from", span.start, "--to", span.end]
    try:
        rendered = stripped.format(
            task_args=" ".join(shlex.quote(arg) for arg in task_args),
            task_id=shlex.quote(span.start),
            from_id=shlex.quote(span.start),
            to_id=shlex.quote(span.end),
            workdir=shlex.quote(str(workdir)),
        )
    except (KeyError, IndexError) as error:
        raise WorkerSpawnError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise WorkerSpawnError("Worker command template rendered empty command.", transient=False)
    if headless:
        argv.append("--headless")
    argv.extend(extra_args)
    return argv


class WorkerCoordinator:
    """Spawn workers into isolated workspaces and track their state machines."""

    def __init__(
        self,
        repo_root: Path,
        settings: WorkerSettings,
        workspaces: WorkspaceProvider,
        *,
        state_dir: Path | None = None,
        cleanup_on_success: bool = True,
        merge_on_success: bool = False,
    ) -> None:
        self.repo_root = repo_root
        self.settings = settings
        self.workspaces = workspaces
        self.state_dir = state_dir
        self.cleanup_on_success = cleanup_on_success
        self.merge_on_success = merge_on_success
        self._workers: dict[str, _ManagedWorker] = {}
        self._events: queue.Queue[_RawEvent] = queue.Queue()
        self._listeners: list[EventListener] = []
        self._counter = 0
        self._run_tag = uuid4().hex[:6]

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def spawn_worker(self, target: StoryGroup | str) -> str:
        """Provision a workspace and launch the worker; returns without waiting."""

        group = StoryGroup((target,)) if isinstance(target, str) else target
        self._counter += 1
        worker_id = f"worker-{self._run_tag}-{self._counter}"
        workspace = self.workspaces.acquire(worker_id, group)
        workdir = Path(workspace.path)
        try:
            argv = build_worker_command(
                self.settings.command_template,
                group=group,
                workdir=workdir,
                headless=self.settings.headless,
                extra_args=self.settings.extra_args,
            )
            process = self._launch(argv, workdir, worker_id, group)
        except WorkerSpawnError:
            self.workspaces.release(workspace)
            raise

        state = WorkerState(
            id=worker_id,
            task_ids=group.task_ids,
            status=WorkerStatus.RUNNING,
            started_at=utc_now_iso(),
            workspace_id=workspace.id,
            workspace_path=workspace.path,
        )
        worker = _ManagedWorker(
            state=state,
            group=group,
            workspace=workspace,
            process=process,
            log_path=self._log_path(worker_id),
        )
        self._workers[worker_id] = worker
        logger.info("Started %s for %s (pid %d)", worker_id, group.label, process.pid)
        self._emit(
            OrchestratorEvent(
                type=EventType.WORKER_STARTED,
                worker_id=worker_id,
                task_ids=group.task_ids,
            ),
        )

        worker.pump = threading.Thread(
            target=self._pump_output,
            args=(worker,),
            name=f"{worker_id}-output",
            daemon=True,
        )
        worker.pump.start()
        if self.settings.timeout_seconds > 0:
            worker.timer = threading.Timer(
                self.settings.timeout_seconds,
                self._expire,
                args=(worker,),
            )
            worker.timer.daemon = True
            worker.timer.start()
        return worker_id

    def next_event(self, timeout: float | None = None) -> OrchestratorEvent | None:
        """Apply the next queued worker notification and return the resulting event.

        Returns ``None`` on timeout, on :meth:`wake`, and for notifications
        that do not change any state (stale progress, exits of killed workers).
        """

        try:
            raw = self._events.get(timeout=timeout)
        except queue.Empty:
            return None
        if raw.kind == "wake" or raw.worker_id is None:
            return None
        worker = self._workers.get(raw.worker_id)
        if worker is None or worker.state.is_terminal:
            return None
        if raw.kind == "progress":
            return self._apply_progress(worker, raw.value or 0)
        if raw.kind == "exit":
            return self._apply_exit(worker, raw.value if raw.value is not None else -1)
        return None

    def wake(self) -> None:
        """Unblock a pending :meth:`next_event` call."""

        self._events.put(_RawEvent(kind="wake"))

    def get_worker_state(self, worker_id: str) -> WorkerState | None:
        worker = self._workers.get(worker_id)
        return worker.state if worker else None

    def get_all_worker_states(self) -> list[WorkerState]:
        return [worker.state for worker in self._workers.values()]

    def get_workspace(self, worker_id: str) -> WorkspaceDescriptor | None:
        worker = self._workers.get(worker_id)
        return worker.workspace if worker else None

    def get_group(self, worker_id: str) -> StoryGroup | None:
        worker = self._workers.get(worker_id)
        return worker.group if worker else None

    @property
    def active_worker_ids(self) -> list[str]:
        return [
            worker_id
            for worker_id, worker in self._workers.items()
            if not worker.state.is_terminal
        ]

    def kill_all(self) -> list[OrchestratorEvent]:
        """Terminate every non-terminal worker; calling it again is a no-op.

        Workers that already exited on their own get their real outcome
        instead of being reported as killed.
        """

        victims: list[_ManagedWorker] = []
        events: list[OrchestratorEvent] = []
        for worker_id in self.active_worker_ids:
            worker = self._workers[worker_id]
            returncode = worker.process.poll()
            if returncode is None:
                victims.append(worker)
                continue
            if worker.pump is not None:
                worker.pump.join(timeout=max(self.settings.graceful_shutdown_seconds, 1))
            events.append(self._apply_exit(worker, returncode))
        for worker in victims:
            if worker.timer is not None:
                worker.timer.cancel()
            try:
                worker.process.terminate()
            except OSError:
                logger.debug("Worker %s already gone", worker.state.id)
        for worker in victims:
            _wait_or_kill(worker.process, self.settings.graceful_shutdown_seconds)
            worker.state.status = WorkerStatus.KILLED
            worker.state.error = KILLED_ERROR
            worker.state.ended_at = utc_now_iso()
            worker.state.exit_code = worker.process.returncode
            logger.info("Killed %s (%s)", worker.state.id, worker.group.label)
            event = OrchestratorEvent(
                type=EventType.WORKER_FAILED,
                worker_id=worker.state.id,
                task_ids=worker.group.task_ids,
                error=KILLED_ERROR,
            )
            self._emit(event)
            events.append(event)
        return events

    def sync_before_work(self) -> bool:
        """Pull the latest upstream state into the shared checkout."""

        result = run_git(["pull", "--rebase"], cwd=self.repo_root)
        if not result.ok:
            logger.warning("Repository sync failed: %s", result.stderr.strip() or result.stdout)
        return result.ok

    def _launch(
        self,
        argv: list[str],
        workdir: Path,
        worker_id: str,
        group: StoryGroup,
    ) -> subprocess.Popen[str]:
        env = os.environ.copy()
        env["PARALLEL_ORCHESTRATOR_WORKER_ID"] = worker_id
        env["PARALLEL_ORCHESTRATOR_TASK_IDS"] = ",".join(group.task_ids)
        try:
            return subprocess.Popen(  # noqa: S603
                argv,
                cwd=workdir,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except FileNotFoundError as error:
            raise WorkerSpawnError(
                f"Worker command not found: {argv[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise WorkerSpawnError(f"Worker failed to start: {error}", transient=True) from error

    def _pump_output(self, worker: _ManagedWorker) -> None:
        process = worker.process
        worker_id = worker.state.id
        sink = worker.log_path.open("a", encoding="utf-8") if worker.log_path else nullcontext()
        with sink as handle:
            if process.stdout is not None:
                for line in process.stdout:
                    if handle is not None:
                        handle.write(line)
                    worker.output_tail.append(line.rstrip())
                    progress = parse_progress(line)
                    if progress is not None:
                        self._events.put(_RawEvent("progress", worker_id, progress))
        self._events.put(_RawEvent("exit", worker_id, process.wait()))

    def _expire(self, worker: _ManagedWorker) -> None:
        worker.timed_out = True
        logger.warning(
            "Worker %s exceeded %d s; terminating",
            worker.state.id,
            self.settings.timeout_seconds,
        )
        _terminate_process(worker.process, self.settings.graceful_shutdown_seconds)

    def _apply_progress(self, worker: _ManagedWorker, progress: int) -> OrchestratorEvent | None:
        if progress == worker.state.progress:
            return None
        worker.state.progress = progress
        event = OrchestratorEvent(
            type=EventType.WORKER_PROGRESS,
            worker_id=worker.state.id,
            task_ids=worker.group.task_ids,
            progress=progress,
        )
        self._emit(event)
        return event

    def _apply_exit(self, worker: _ManagedWorker, returncode: int) -> OrchestratorEvent:
        if worker.timer is not None:
            worker.timer.cancel()
        state = worker.state
        state.exit_code = returncode
        state.ended_at = utc_now_iso()

        error: str | None = None
        if worker.timed_out:
            error = f"Timed out after {self.settings.timeout_seconds} s"
        elif returncode != 0:
            error = f"Exit code {returncode}"
            if worker.output_tail:
                error = f"{error}: {worker.output_tail[-1]}"
        elif self.settings.commit_on_success or self.merge_on_success:
            error = self._integrate_changes(worker)

        if error is None:
            state.status = WorkerStatus.COMPLETED
            state.progress = 100
            if self.cleanup_on_success:
                self.workspaces.release(worker.workspace)
            logger.info("Worker %s completed %s", state.id, worker.group.label)
            event = OrchestratorEvent(
                type=EventType.WORKER_COMPLETED,
                worker_id=state.id,
                task_ids=worker.group.task_ids,
            )
        else:
            state.status = WorkerStatus.FAILED
            state.error = error
            logger.info("Worker %s failed %s: %s", state.id, worker.group.label, error)
            event = OrchestratorEvent(
                type=EventType.WORKER_FAILED,
                worker_id=state.id,
                task_ids=worker.group.task_ids,
                error=error,
            )
        self._emit(event)
        return event

    def _integrate_changes(self, worker: _ManagedWorker) -> str | None:
        """Commit and merge the worker's changes; returns an error message on failure.

        Runs under the commit mutex so integrations happen one at a time.
        """

        workdir = Path(worker.workspace.path)
        label = worker.group.label
        marker_root = self.state_dir or workdir
        try:
            with hold_mutex(
                marker_root / COMMIT_MUTEX_NAME,
                retry_delay_seconds=COMMIT_RETRY_DELAY_SECONDS,
                max_attempts=COMMIT_MAX_ATTEMPTS,
            ):
                error = None
                if self.settings.commit_on_success:
                    error = commit_all(workdir, commit_message(label))
                if error is None and self.merge_on_success:
                    error = self.workspaces.integrate(worker.workspace, label)
                return error
        except MutexTimeoutError as error:
            return f"Commit failed: {error}"

    def _log_path(self, worker_id: str) -> Path | None:
        if self.state_dir is None:
            return None
        log_dir = self.state_dir / "logs"
        log_dir.mkdir(parents=True, exist_ok=True)
        return log_dir / f"{worker_id}.log"

    def _emit(self, event: OrchestratorEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Event listener failed for %s", event.type.value)


def _wait_or_kill(process: subprocess.Popen[str], graceful_seconds: int) -> None:
    try:
        process.wait(timeout=max(graceful_seconds, 0))
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def _terminate_process(process: subprocess.Popen[str], graceful_seconds: int = 2) -> None:
    try:
        process.terminate()
    except OSError:
        return
    _wait_or_kill(process, graceful_seconds)
