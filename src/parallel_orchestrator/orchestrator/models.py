"""Domain models for scheduling and worker supervision."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class WorkerStatus(str, Enum):
    """Worker process lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    KILLED = "killed"


TERMINAL_WORKER_STATUSES = frozenset(
    {WorkerStatus.COMPLETED, WorkerStatus.FAILED, WorkerStatus.KILLED},
)


class EventType(str, Enum):
    WORKER_STARTED = "worker:started"
    WORKER_PROGRESS = "worker:progress"
    WORKER_COMPLETED = "worker:completed"
    WORKER_FAILED = "worker:failed"
    PHASE_STARTED = "phase:started"
    PHASE_COMPLETED = "phase:completed"
    ORCHESTRATION_COMPLETED = "orchestration:completed"


@dataclass(slots=True, frozen=True)
class IdRange:
    """Inclusive task-identifier range handed to one worker."""

    start: str
    end: str

    def to_dict(self) -> dict[str, str]:
        return {"from": self.start, "to": self.end}


@dataclass(slots=True, frozen=True)
class StoryGroup:
    """Contiguous run of tasks executed by a single worker invocation."""

    task_ids: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.task_ids:
            raise ValueError("A story group needs at least one task")

    @property
    def id_range(self) -> IdRange:
        return IdRange(start=self.task_ids[0], end=self.task_ids[-1])

    @property
    def label(self) -> str:
        if len(self.task_ids) == 1:
            return self.task_ids[0]
        return f"{self.task_ids[0]}..{self.task_ids[-1]}"


@dataclass(slots=True)
class Phase:
    name: str
    story_groups: list[StoryGroup]
    parallel: bool
    confidence: float = 0.5

    @property
    def task_ids(self) -> list[str]:
        return [task_id for group in self.story_groups for task_id in group.task_ids]


@dataclass(slots=True)
class SkippedTask:
    """Task that was never offered because a dependency failed."""

    task_id: str
    reason: str


@dataclass(slots=True)
class WorkerState:
    """Coordinator-owned view of one worker process."""

    id: str
    task_ids: tuple[str, ...]
    status: WorkerStatus = WorkerStatus.PENDING
    progress: int = 0
    started_at: str | None = None
    ended_at: str | None = None
    exit_code: int | None = None
    error: str | None = None
    workspace_id: str | None = None
    workspace_path: str | None = None

    @property
    def task_id(self) -> str:
        return self.task_ids[0]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_WORKER_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "task_ids": list(self.task_ids),
            "status": self.status.value,
            "progress": self.progress,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "exit_code": self.exit_code,
            "error": self.error,
            "workspace_path": self.workspace_path,
        }


@dataclass(slots=True)
class OrchestratorEvent:
    """Lifecycle notification; only the fields relevant to ``type`` are set."""

    type: EventType
    worker_id: str | None = None
    task_ids: tuple[str, ...] = ()
    progress: int | None = None
    error: str | None = None
    phase_name: str | None = None
    phase_index: int | None = None
    total_phases: int | None = None
    total_tasks: int | None = None
    completed_tasks: int | None = None
    failed_tasks: int | None = None

    @property
    def is_terminal_worker_event(self) -> bool:
        return self.type in {EventType.WORKER_COMPLETED, EventType.WORKER_FAILED}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type.value}
        for key in (
            "worker_id",
            "progress",
            "error",
            "phase_name",
            "phase_index",
            "total_phases",
            "total_tasks",
            "completed_tasks",
            "failed_tasks",
        ):
            value = getattr(self, key)
            if value is not None:
                payload[key] = value
        if self.task_ids:
            payload["task_ids"] = list(self.task_ids)
        return payload


@dataclass(slots=True)
class OrchestrationSnapshot:
    """Serializable status for observers."""

    phase_name: str | None
    phase_index: int | None
    total_phases: int
    workers: list[WorkerState]
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    started_at: str | None
    paused: bool = False
    stopping: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase_name": self.phase_name,
            "phase_index": self.phase_index,
            "total_phases": self.total_phases,
            "workers": [worker.to_dict() for worker in self.workers],
            "total_tasks": self.total_tasks,
            "completed_tasks": self.completed_tasks,
            "failed_tasks": self.failed_tasks,
            "started_at": self.started_at,
            "paused": self.paused,
            "stopping": self.stopping,
        }


@dataclass(slots=True)
class RunResult:
    """Outcome of one orchestration run."""

    session_id: str
    total_tasks: int
    completed_task_ids: list[str] = field(default_factory=list)
    failed_task_ids: dict[str, str] = field(default_factory=dict)
    phases: int = 0
    interrupted: bool = False

    @property
    def completed(self) -> int:
        return len(self.completed_task_ids)

    @property
    def failed(self) -> int:
        return len(self.failed_task_ids)

    @property
    def succeeded(self) -> bool:
        return not self.interrupted and not self.failed_task_ids
