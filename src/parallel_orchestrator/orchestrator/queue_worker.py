"""Decentralized worker loop pulling tasks from the shared queue.

Any number of these may run against one state directory, each in its own
process. The queue file is the only coordination point: a task is claimed
under the queue mutex, executed through a :class:`WorkerCoordinator` and
then marked done or failed. Failing a task fails its pending dependents, so
every worker eventually sees a drained queue and exits.
"""

from __future__ import annotations

import logging
import os
import signal
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field

from parallel_orchestrator.orchestrator.coordinator import (
    KILLED_ERROR,
    WorkerCoordinator,
    WorkerSpawnError,
)
from parallel_orchestrator.orchestrator.models import EventType, OrchestratorEvent
from parallel_orchestrator.orchestrator.task_queue import QueuedTask, SharedTaskQueue
from parallel_orchestrator.orchestrator.workspace import WorkspaceError

logger = logging.getLogger(__name__)

EVENT_WAIT_SECONDS = 0.2


@dataclass(slots=True)
class QueueWorkSummary:
    """Aggregate queue worker counters for CLI reporting."""

    worker_id: str
    processed: int = 0
    completed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    released: list[str] = field(default_factory=list)
    idle_polls: int = 0
    interrupted: bool = False


class QueueWorker:
    """Claim, run and settle queue tasks one at a time."""

    def __init__(
        self,
        queue: SharedTaskQueue,
        coordinator: WorkerCoordinator,
        *,
        worker_id: str | None = None,
        poll_interval_seconds: float = 1.0,
    ) -> None:
        self.queue = queue
        self.coordinator = coordinator
        self.worker_id = worker_id or f"queue-worker-{os.getpid()}"
        self.poll_interval_seconds = poll_interval_seconds
        self._stop_requested = False
        self._stop_signal_name: str | None = None

    def request_stop(self) -> None:
        self._stop_requested = True

    def run_loop(self, *, max_tasks: int | None = None) -> QueueWorkSummary:
        """Run until the queue drains, ``max_tasks`` are processed or a stop is requested.

        While other workers still hold claimed tasks an empty claim is not the
        end: their outcome may unblock dependents, so the loop polls again.
        """

        summary = QueueWorkSummary(worker_id=self.worker_id)
        with self._signal_handlers():
            while True:
                if self._stop_requested:
                    summary.interrupted = True
                    return summary
                if max_tasks is not None and summary.processed >= max_tasks:
                    return summary

                task = self.queue.claim_next_task(self.worker_id)
                if task is not None:
                    self._process(task, summary)
                    continue

                status = self.queue.get_queue_status()
                if status.in_progress == 0:
                    if status.pending:
                        logger.warning(
                            "%d pending queue task(s) can never be claimed; "
                            "their dependencies are missing or cyclic",
                            status.pending,
                        )
                    return summary
                summary.idle_polls += 1
                self._sleep_with_stop(self.poll_interval_seconds)

    def _process(self, task: QueuedTask, summary: QueueWorkSummary) -> None:
        logger.info("Worker %s claimed queue task %s", self.worker_id, task.id)
        event = self._execute(task)
        if event.type == EventType.WORKER_COMPLETED:
            self.queue.complete_task(task.id)
            summary.processed += 1
            summary.completed.append(task.id)
            return
        error = event.error or "failed"
        if self._stop_requested and error == KILLED_ERROR:
            # Interrupted work goes back to the queue for another worker.
            self.queue.release_task(task.id)
            summary.released.append(task.id)
            return
        self.queue.fail_task(task.id, error)
        summary.processed += 1
        summary.failed[task.id] = error

    def _execute(self, task: QueuedTask) -> OrchestratorEvent:
        try:
            worker_id = self.coordinator.spawn_worker(task.id)
        except (WorkerSpawnError, WorkspaceError) as error:
            logger.error("Could not start worker for queue task %s: %s", task.id, error)
            return OrchestratorEvent(
                type=EventType.WORKER_FAILED,
                task_ids=(task.id,),
                error=str(error),
            )

        while True:
            if self._stop_requested:
                for event in self.coordinator.kill_all():
                    if event.worker_id == worker_id:
                        return event
            event = self.coordinator.next_event(timeout=EVENT_WAIT_SECONDS)
            if (
                event is not None
                and event.is_terminal_worker_event
                and event.worker_id == worker_id
            ):
                return event

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = time.monotonic() + seconds
        while not self._stop_requested and time.monotonic() < deadline:
            time.sleep(min(0.1, max(0.0, deadline - time.monotonic())))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if not hasattr(signal, "SIGINT"):
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                self._stop_signal_name = signal.Signals(signum).name
            except ValueError:
                self._stop_signal_name = str(signum)
            logger.warning("Stop requested (%s)", self._stop_signal_name)
            self.request_stop()

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Signal handlers can only be installed in main thread.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
