"""Shared JSON task queue that independent workers claim work from.

Every read-modify-write runs under the directory mutex, so any number of
worker processes can pull from the same queue file without a coordinator.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from contextlib import AbstractContextManager
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

from parallel_orchestrator.orchestrator.graph import DependencyGraph
from parallel_orchestrator.session.atomic import load_json, write_json_atomic
from parallel_orchestrator.session.models import utc_now_iso
from parallel_orchestrator.session.mutex import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_DELAY_SECONDS,
    DirectoryMutex,
    hold_mutex,
)

logger = logging.getLogger(__name__)

QUEUE_FILE_NAME = "task-queue.json"
QUEUE_MUTEX_NAME = "task-queue.lock.d"


class QueuedTaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    FAILED = "failed"


@dataclass(slots=True)
class QueuedTask:
    id: str
    title: str
    status: QueuedTaskStatus = QueuedTaskStatus.PENDING
    depends_on: list[str] = field(default_factory=list)
    worker_id: str | None = None
    claimed_at: str | None = None
    completed_at: str | None = None
    files_changed: list[str] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> QueuedTask:
        return cls(
            id=raw["id"],
            title=raw.get("title", raw["id"]),
            status=QueuedTaskStatus(raw.get("status", "pending")),
            depends_on=list(raw.get("depends_on", [])),
            worker_id=raw.get("worker_id"),
            claimed_at=raw.get("claimed_at"),
            completed_at=raw.get("completed_at"),
            files_changed=list(raw.get("files_changed", [])),
            error=raw.get("error"),
        )


@dataclass(slots=True)
class QueueStatus:
    pending: int = 0
    in_progress: int = 0
    done: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.in_progress + self.done + self.failed


class SharedTaskQueue:
    """File-backed queue under the orchestrator state directory."""

    def __init__(
        self,
        state_dir: Path,
        *,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.state_dir = state_dir
        self.path = state_dir / QUEUE_FILE_NAME
        self.retry_delay_seconds = retry_delay_seconds
        self.max_attempts = max_attempts

    def initialize_queue(self, tasks: Iterable[QueuedTask]) -> list[QueuedTask]:
        """Replace the queue with ``tasks``, all pending."""

        queued = [
            QueuedTask(id=task.id, title=task.title, depends_on=list(task.depends_on))
            for task in tasks
        ]
        with self._locked():
            self._write(queued)
        return queued

    def initialize_from_graph(self, graph: DependencyGraph) -> list[QueuedTask]:
        return self.initialize_queue(
            QueuedTask(id=node.id, title=node.title, depends_on=list(node.dependencies))
            for node in graph
        )

    def claim_next_task(self, worker_id: str) -> QueuedTask | None:
        """Claim the first pending task whose dependencies are done."""

        with self._locked():
            tasks = self._read()
            done = {task.id for task in tasks if task.status == QueuedTaskStatus.DONE}
            for task in tasks:
                if task.status != QueuedTaskStatus.PENDING:
                    continue
                if not all(dep in done for dep in task.depends_on):
                    continue
                task.status = QueuedTaskStatus.IN_PROGRESS
                task.worker_id = worker_id
                task.claimed_at = utc_now_iso()
                self._write(tasks)
                return task
        return None

    def complete_task(self, task_id: str, files_changed: Iterable[str] = ()) -> bool:
        def _done(task: QueuedTask) -> None:
            task.status = QueuedTaskStatus.DONE
            task.completed_at = utc_now_iso()
            task.files_changed = list(files_changed)

        return self._update(task_id, _done)

    def fail_task(self, task_id: str, error: str) -> bool:
        """Fail a task and every pending task that transitively depends on it."""

        with self._locked():
            tasks = self._read()
            task = next((item for item in tasks if item.id == task_id), None)
            if task is None:
                return False
            _mark_failed(task, error)
            for dependent in _cascade_failures(tasks):
                logger.info("Queue task %s failed: %s", dependent.id, dependent.error)
            self._write(tasks)
        return True

    def release_task(self, task_id: str) -> bool:
        """Put a claimed task back, e.g. after its worker died."""

        def _released(task: QueuedTask) -> None:
            task.status = QueuedTaskStatus.PENDING
            task.worker_id = None
            task.claimed_at = None

        return self._update(task_id, _released)

    def get_queue_status(self) -> QueueStatus:
        status = QueueStatus()
        for task in self._read():
            if task.status == QueuedTaskStatus.PENDING:
                status.pending += 1
            elif task.status == QueuedTaskStatus.IN_PROGRESS:
                status.in_progress += 1
            elif task.status == QueuedTaskStatus.DONE:
                status.done += 1
            else:
                status.failed += 1
        return status

    def is_queue_complete(self) -> bool:
        status = self.get_queue_status()
        return status.pending == 0 and status.in_progress == 0

    def list_tasks(self) -> list[QueuedTask]:
        return self._read()

    def _update(self, task_id: str, mutate: Callable[[QueuedTask], None]) -> bool:
        with self._locked():
            tasks = self._read()
            task = next((item for item in tasks if item.id == task_id), None)
            if task is None:
                return False
            mutate(task)
            self._write(tasks)
        return True

    def _locked(self) -> AbstractContextManager[DirectoryMutex]:
        return hold_mutex(
            self.state_dir / QUEUE_MUTEX_NAME,
            retry_delay_seconds=self.retry_delay_seconds,
            max_attempts=self.max_attempts,
        )

    def _read(self) -> list[QueuedTask]:
        try:
            raw = load_json(self.path)
            return [QueuedTask.from_dict(item) for item in raw.get("tasks", [])]
        except FileNotFoundError:
            return []
        except (OSError, json.JSONDecodeError, TypeError, KeyError, ValueError) as error:
            logger.warning("Treating corrupt task queue %s as empty: %s", self.path, error)
            return []

    def _write(self, tasks: list[QueuedTask]) -> None:
        write_json_atomic(
            self.path,
            {"tasks": [task.to_dict() for task in tasks], "updated_at": utc_now_iso()},
        )


def _mark_failed(task: QueuedTask, error: str) -> None:
    task.status = QueuedTaskStatus.FAILED
    task.completed_at = utc_now_iso()
    task.error = error


def _cascade_failures(tasks: list[QueuedTask]) -> list[QueuedTask]:
    """Fail pending tasks with a failed dependency until nothing changes."""

    by_id = {task.id: task for task in tasks}
    cascaded: list[QueuedTask] = []
    changed = True
    while changed:
        changed = False
        for task in tasks:
            if task.status != QueuedTaskStatus.PENDING:
                continue
            failed_dependency = next(
                (
                    dep
                    for dep in task.depends_on
                    if dep in by_id and by_id[dep].status == QueuedTaskStatus.FAILED
                ),
                None,
            )
            if failed_dependency is None:
                continue
            _mark_failed(task, f"dependency {failed_dependency} failed")
            cascaded.append(task)
            changed = True
    return cascaded
