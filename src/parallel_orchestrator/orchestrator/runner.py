"""Orchestration run loop tying scheduling, workers and session state together."""

from __future__ import annotations

import logging
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

from parallel_orchestrator.config import Settings
from parallel_orchestrator.orchestrator.coordinator import (
    KILLED_ERROR,
    WorkerCoordinator,
    WorkerSpawnError,
)
from parallel_orchestrator.orchestrator.graph import DependencyGraph
from parallel_orchestrator.orchestrator.models import (
    EventType,
    OrchestrationSnapshot,
    OrchestratorEvent,
    RunResult,
    StoryGroup,
)
from parallel_orchestrator.orchestrator.scheduler import (
    PhasePolicy,
    SchedulingPolicy,
    build_policy,
)
from parallel_orchestrator.orchestrator.workspace import WorkspaceError
from parallel_orchestrator.session.models import (
    PersistedSessionState,
    TaskStatus,
    from_iso,
    utc_now_iso,
)
from parallel_orchestrator.session.persistence import (
    SessionStore,
    add_agent_to_session,
    cancel_agent_task,
    complete_agent_task,
    complete_session,
    create_session,
    fail_session,
    interrupt_session,
    mark_tasks,
    pause_session,
    remove_agent_from_session,
    resume_session,
)

logger = logging.getLogger(__name__)

UNSATISFIABLE_REASON = "unsatisfiable dependencies"
PREVIOUS_FAILURE_REASON = "failed in a previous run"
RESTARTED_REASON = "orchestrator restarted"

EventListener = Callable[[OrchestratorEvent], None]


class SessionMismatchError(ValueError):
    """The task source no longer matches the session being resumed."""


class Orchestrator:
    """Run a dependency graph to completion with one worker per story group.

    All scheduling decisions and session writes happen on the thread that
    calls :meth:`run`. :meth:`pause`, :meth:`resume` and :meth:`stop` may be
    called from any thread or from a signal handler; they only set flags and
    wake the loop.
    """

    def __init__(
        self,
        graph: DependencyGraph,
        coordinator: WorkerCoordinator,
        *,
        settings: Settings,
        repo_root: Path,
        store: SessionStore | None = None,
    ) -> None:
        self.graph = graph
        self.coordinator = coordinator
        self.settings = settings
        self.repo_root = repo_root
        self.store = store
        self.session: PersistedSessionState | None = None
        self._policy: SchedulingPolicy | None = None
        self._listeners: list[EventListener] = []
        self._completed: list[str] = []
        self._failed: dict[str, str] = {}
        self._started_at: str | None = None
        self._phase: OrchestratorEvent | None = None
        self._paused = False
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        coordinator.add_listener(self._emit)

    def add_listener(self, listener: EventListener) -> None:
        self._listeners.append(listener)

    def pause(self) -> None:
        """Stop admitting new work; in-flight workers keep running."""

        self._paused = True
        self._wake()

    def resume(self) -> None:
        self._paused = False
        self._wake()

    def stop(self) -> None:
        """Kill in-flight workers and end the run."""

        self._stop_requested = True
        self._wake()

    def snapshot(self) -> OrchestrationSnapshot:
        total_phases = self._policy.total_phases if self._policy else 0
        return OrchestrationSnapshot(
            phase_name=self._phase.phase_name if self._phase else None,
            phase_index=self._phase.phase_index if self._phase else None,
            total_phases=total_phases,
            workers=self.coordinator.get_all_worker_states(),
            total_tasks=len(self.graph),
            completed_tasks=len(self._completed),
            failed_tasks=len(self._failed),
            started_at=self._started_at,
            paused=self._paused,
            stopping=self._stop_requested,
        )

    def run(
        self,
        *,
        session: PersistedSessionState | None = None,
        session_id: str | None = None,
    ) -> RunResult:
        """Execute the graph, resuming ``session`` when given."""

        self._started_at = utc_now_iso()
        if session is not None:
            self._restore_progress(session)
        self._policy = build_policy(
            self.settings.scheduler.policy,
            self.graph,
            max_workers=self.settings.scheduler.max_workers,
            low_confidence_threshold=self.settings.scheduler.low_confidence_threshold,
            completed=self._completed,
            failed=self._failed,
            on_event=self._on_phase_event,
        )
        self.session = self._prepare_session(session, session_id)
        if not isinstance(self._policy, PhasePolicy) and self.settings.worker.sync_before_work:
            self.coordinator.sync_before_work()

        with self._signal_handlers():
            self._loop()
        return self._finish()

    def _prepare_session(
        self,
        session: PersistedSessionState | None,
        session_id: str | None,
    ) -> PersistedSessionState:
        if session is None:
            state = create_session(
                self.graph.work_units(),
                self.settings.executor_config(),
                self.repo_root,
                session_id=session_id,
            )
            logger.info("Starting session %s with %d task(s)", state.session_id, len(self.graph))
            return self._save(state)

        logger.info(
            "Resuming session %s: %d completed, %d failed, %d to run",
            session.session_id,
            len(self._completed),
            len(self._failed),
            len(self.graph) - len(self._completed) - len(self._failed),
        )
        # Agents from an earlier process are never re-attached; their tasks
        # go back to pending and their workspaces are dropped.
        for agent in list(session.agents):
            if agent.status == TaskStatus.RUNNING:
                session = cancel_agent_task(session, agent.agent_id, reason=RESTARTED_REASON)
            session = remove_agent_from_session(session, agent.agent_id)
        return self._save(resume_session(session))

    def _restore_progress(self, session: PersistedSessionState) -> None:
        statuses = {task.id: task.status for task in session.tasks}
        missing = [task_id for task_id in self.graph.task_ids if task_id not in statuses]
        if missing:
            raise SessionMismatchError(
                f"Session {session.session_id} does not know task(s): {', '.join(missing)}",
            )
        for task_id in self.graph.task_ids:
            status = statuses[task_id]
            if status == TaskStatus.COMPLETED:
                self._completed.append(task_id)
            elif status == TaskStatus.FAILED:
                self._failed[task_id] = PREVIOUS_FAILURE_REASON

    def _loop(self) -> None:
        policy = self._require_policy()
        while True:
            if self._stop_requested:
                self._kill_workers()
                return
            self._sync_pause_state()
            if not self._paused:
                self._admit()
            self._record_skipped()
            if policy.is_finished:
                return
            if not self.coordinator.active_worker_ids and not self._paused:
                if self._stop_requested:
                    continue
                self._fail_unsatisfiable(policy.pending_task_ids)
                return
            event = self.coordinator.next_event()
            if event is not None and event.is_terminal_worker_event:
                self._on_worker_finished(event)

    def _admit(self) -> None:
        policy = self._require_policy()
        while not self._stop_requested:
            batch = policy.next_batch()
            if not batch:
                return
            for group in batch:
                self._spawn(group)

    def _spawn(self, group: StoryGroup) -> None:
        policy = self._require_policy()
        try:
            worker_id = self.coordinator.spawn_worker(group)
        except (WorkerSpawnError, WorkspaceError) as error:
            logger.error("Could not start worker for %s: %s", group.label, error)
            policy.mark_finished(group, success=False)
            for task_id in group.task_ids:
                self._failed[task_id] = str(error)
            self._update_session(
                lambda state: mark_tasks(
                    state,
                    group.task_ids,
                    TaskStatus.FAILED,
                    error=str(error),
                ),
            )
            return

        workspace = self.coordinator.get_workspace(worker_id)
        if workspace is None:
            return
        first = self.graph.get(group.task_ids[0])
        self._update_session(
            lambda state: add_agent_to_session(
                state,
                agent_id=worker_id,
                task_ids=list(group.task_ids),
                work_unit_id=first.work_unit,
                workspace=workspace,
                task_title=first.title,
            ),
        )

    def _on_worker_finished(self, event: OrchestratorEvent) -> None:
        worker_id = event.worker_id or ""
        group = self.coordinator.get_group(worker_id)
        state = self.coordinator.get_worker_state(worker_id)
        if group is None or state is None:
            return
        success = event.type == EventType.WORKER_COMPLETED
        self._require_policy().mark_finished(group, success=success)
        for task_id in group.task_ids:
            if success:
                self._completed.append(task_id)
            else:
                self._failed[task_id] = event.error or "failed"

        duration_ms = _duration_ms(state.started_at, state.ended_at)
        self._update_session(
            lambda current: remove_agent_from_session(
                complete_agent_task(
                    current,
                    worker_id,
                    success=success,
                    duration_ms=duration_ms,
                    error=event.error,
                ),
                worker_id,
            ),
        )

    def _record_skipped(self) -> None:
        for skipped in self._require_policy().drain_skipped():
            self._failed[skipped.task_id] = skipped.reason
            self._update_session(
                lambda state, item=skipped: mark_tasks(
                    state,
                    [item.task_id],
                    TaskStatus.FAILED,
                    error=item.reason,
                ),
            )

    def _fail_unsatisfiable(self, task_ids: list[str]) -> None:
        if not task_ids:
            return
        logger.error("No runnable work left; unsatisfiable tasks: %s", ", ".join(task_ids))
        for task_id in task_ids:
            self._failed[task_id] = UNSATISFIABLE_REASON
        self._update_session(
            lambda state: mark_tasks(
                state,
                task_ids,
                TaskStatus.FAILED,
                error=UNSATISFIABLE_REASON,
            ),
        )

    def _kill_workers(self) -> None:
        logger.warning(
            "Stop requested%s; terminating %d worker(s)",
            f" ({self._stop_signal_name})" if self._stop_signal_name else "",
            len(self.coordinator.active_worker_ids),
        )
        for event in self.coordinator.kill_all():
            if event.type == EventType.WORKER_COMPLETED or event.error != KILLED_ERROR:
                self._on_worker_finished(event)
                continue
            worker_id = event.worker_id or ""
            self._update_session(
                lambda state, agent_id=worker_id: cancel_agent_task(
                    state,
                    agent_id,
                    reason=KILLED_ERROR,
                ),
            )

    def _sync_pause_state(self) -> None:
        if self.session is None or self.session.is_paused == self._paused:
            return
        if self._paused:
            logger.info("Paused: no new workers will be started")
            self._update_session(pause_session)
        else:
            logger.info("Resumed")
            self._update_session(resume_session)

    def _finish(self) -> RunResult:
        if self._stop_requested:
            finalize = interrupt_session if self._completed else fail_session
        elif self._failed:
            finalize = fail_session
        else:
            finalize = complete_session
        self._update_session(finalize)

        total = len(self.graph)
        self._emit(
            OrchestratorEvent(
                type=EventType.ORCHESTRATION_COMPLETED,
                total_tasks=total,
                completed_tasks=len(self._completed),
                failed_tasks=len(self._failed),
            ),
        )
        return RunResult(
            session_id=self.session.session_id if self.session else "",
            total_tasks=total,
            completed_task_ids=list(self._completed),
            failed_task_ids=dict(self._failed),
            phases=self._require_policy().total_phases,
            interrupted=self._stop_requested,
        )

    def _on_phase_event(self, event: OrchestratorEvent) -> None:
        if event.type == EventType.PHASE_STARTED:
            self._phase = event
            logger.info("%s started", event.phase_name)
            if self.settings.worker.sync_before_work:
                self.coordinator.sync_before_work()
        else:
            logger.info("%s completed", event.phase_name)
        self._emit(event)

    def _update_session(
        self,
        mutate: Callable[[PersistedSessionState], PersistedSessionState],
    ) -> None:
        if self.session is None:
            return
        self.session = self._save(mutate(self.session))

    def _save(self, state: PersistedSessionState) -> PersistedSessionState:
        if self.store is None:
            return state
        return self.store.save_session(state)

    def _emit(self, event: OrchestratorEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Event listener failed for %s", event.type.value)

    def _wake(self) -> None:
        # Signal handlers run on the control thread, which may hold the event
        # queue's lock; wake it from a helper thread instead.
        threading.Thread(target=self.coordinator.wake, daemon=True).start()

    def _require_policy(self) -> SchedulingPolicy:
        if self._policy is None:
            raise RuntimeError("Orchestrator.run() has not started")
        return self._policy

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                self._stop_signal_name = signal.Signals(signum).name
            except ValueError:
                self._stop_signal_name = str(signum)
            self.stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _duration_ms(started_at: str | None, ended_at: str | None) -> int:
    if not started_at or not ended_at:
        return 0
    delta = from_iso(ended_at) - from_iso(started_at)
    return max(0, int(delta.total_seconds() * 1000))
