"""Persisted session state for parallel execution runs."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

SESSION_SCHEMA_VERSION = 1


def utc_now() -> datetime:
    """Current UTC timestamp."""

    return datetime.now(tz=UTC)


def utc_now_iso() -> str:
    return utc_now().isoformat()


def from_iso(value: str) -> datetime:
    """Parse ISO datetime and ensure timezone-aware UTC fallback."""

    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed


class SessionStatus(str, Enum):
    """Run-level lifecycle states."""

    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    INTERRUPTED = "interrupted"


class TaskStatus(str, Enum):
    """Per-task (and per-agent) lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class WorkUnitStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


FINISHED_TASK_STATUSES = frozenset({TaskStatus.COMPLETED, TaskStatus.FAILED})
RESUMABLE_TASK_STATUSES = frozenset({TaskStatus.PENDING, TaskStatus.CANCELLED})


@dataclass(slots=True)
class WorkUnitTask:
    """Task reference used when creating a session."""

    id: str
    title: str


@dataclass(slots=True)
class WorkUnit:
    """Named group of related tasks tracked together."""

    id: str
    name: str
    tasks: list[WorkUnitTask]
    priority: float = 0.0


@dataclass(slots=True)
class WorkspaceDescriptor:
    """Isolated workspace as reported by a workspace provider."""

    id: str
    name: str
    path: str
    branch: str
    status: str
    created_at: str


@dataclass(slots=True)
class PersistedWorkUnit:
    id: str
    name: str
    priority: float
    task_ids: list[str]
    status: WorkUnitStatus = WorkUnitStatus.PENDING


@dataclass(slots=True)
class PersistedTask:
    id: str
    title: str
    work_unit_id: str
    status: TaskStatus = TaskStatus.PENDING


@dataclass(slots=True)
class PersistedAgentState:
    """One worker process and the workspace it occupies."""

    agent_id: str
    task_id: str
    task_ids: list[str]
    task_title: str
    work_unit_id: str
    workspace_id: str
    workspace_path: str
    workspace_branch: str
    status: TaskStatus
    started_at: str
    ended_at: str | None = None
    error: str | None = None


@dataclass(slots=True)
class PersistedWorkspaceState:
    id: str
    name: str
    path: str
    branch: str
    status: str
    created_at: str
    last_activity_at: str
    task_id: str | None = None
    agent_id: str | None = None


@dataclass(slots=True)
class CompletedTaskRecord:
    task_id: str
    success: bool
    duration_ms: int
    completed_at: str
    error: str | None = None


@dataclass(slots=True)
class SessionStats:
    total_tasks: int = 0
    completed_tasks: int = 0
    failed_tasks: int = 0
    cancelled_tasks: int = 0


@dataclass(slots=True)
class PersistedSessionState:
    """Full orchestration state, rewritten after every lifecycle transition."""

    session_id: str
    status: SessionStatus
    started_at: str
    updated_at: str
    cwd: str
    version: int = SESSION_SCHEMA_VERSION
    is_paused: bool = False
    paused_at: str | None = None
    executor_config: dict[str, Any] = field(default_factory=dict)
    work_units: list[PersistedWorkUnit] = field(default_factory=list)
    tasks: list[PersistedTask] = field(default_factory=list)
    agents: list[PersistedAgentState] = field(default_factory=list)
    workspaces: list[PersistedWorkspaceState] = field(default_factory=list)
    completed_tasks: list[CompletedTaskRecord] = field(default_factory=list)
    stats: SessionStats = field(default_factory=SessionStats)

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["status"] = self.status.value
        for raw, unit in zip(payload["work_units"], self.work_units, strict=True):
            raw["status"] = unit.status.value
        for raw, task in zip(payload["tasks"], self.tasks, strict=True):
            raw["status"] = task.status.value
        for raw, agent in zip(payload["agents"], self.agents, strict=True):
            raw["status"] = agent.status.value
        return payload

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> PersistedSessionState:
        """Deserialize a session record; raises on structurally invalid input."""

        stats_raw = raw.get("stats") or {}
        if not isinstance(stats_raw, dict):
            raise TypeError("session.stats must be an object")
        executor_config = raw.get("executor_config") or {}
        if not isinstance(executor_config, dict):
            raise TypeError("session.executor_config must be an object")
        return cls(
            version=int(raw.get("version", SESSION_SCHEMA_VERSION)),
            session_id=_require_str(raw, "session_id"),
            status=SessionStatus(raw["status"]),
            started_at=_require_str(raw, "started_at"),
            updated_at=_require_str(raw, "updated_at"),
            cwd=_require_str(raw, "cwd"),
            is_paused=bool(raw.get("is_paused", False)),
            paused_at=raw.get("paused_at"),
            executor_config=executor_config,
            work_units=[
                PersistedWorkUnit(
                    id=item["id"],
                    name=item["name"],
                    priority=float(item.get("priority", 0.0)),
                    task_ids=list(item.get("task_ids", [])),
                    status=WorkUnitStatus(item.get("status", "pending")),
                )
                for item in _require_list(raw, "work_units")
            ],
            tasks=[
                PersistedTask(
                    id=item["id"],
                    title=item.get("title", ""),
                    work_unit_id=item["work_unit_id"],
                    status=TaskStatus(item.get("status", "pending")),
                )
                for item in _require_list(raw, "tasks")
            ],
            agents=[
                PersistedAgentState(
                    agent_id=item["agent_id"],
                    task_id=item["task_id"],
                    task_ids=list(item.get("task_ids", [item["task_id"]])),
                    task_title=item.get("task_title", ""),
                    work_unit_id=item["work_unit_id"],
                    workspace_id=item["workspace_id"],
                    workspace_path=item["workspace_path"],
                    workspace_branch=item.get("workspace_branch", ""),
                    status=TaskStatus(item["status"]),
                    started_at=item["started_at"],
                    ended_at=item.get("ended_at"),
                    error=item.get("error"),
                )
                for item in _require_list(raw, "agents")
            ],
            workspaces=[
                PersistedWorkspaceState(
                    id=item["id"],
                    name=item.get("name", item["id"]),
                    path=item["path"],
                    branch=item.get("branch", ""),
                    status=item.get("status", "in_use"),
                    created_at=item["created_at"],
                    last_activity_at=item.get("last_activity_at", item["created_at"]),
                    task_id=item.get("task_id"),
                    agent_id=item.get("agent_id"),
                )
                for item in _require_list(raw, "workspaces")
            ],
            completed_tasks=[
                CompletedTaskRecord(
                    task_id=item["task_id"],
                    success=bool(item["success"]),
                    duration_ms=int(item.get("duration_ms", 0)),
                    completed_at=item["completed_at"],
                    error=item.get("error"),
                )
                for item in _require_list(raw, "completed_tasks")
            ],
            stats=SessionStats(
                total_tasks=int(stats_raw.get("total_tasks", 0)),
                completed_tasks=int(stats_raw.get("completed_tasks", 0)),
                failed_tasks=int(stats_raw.get("failed_tasks", 0)),
                cancelled_tasks=int(stats_raw.get("cancelled_tasks", 0)),
            ),
        )


@dataclass(slots=True)
class OrphanedWorkspace:
    """Workspace found on disk or in git but not recorded by the session."""

    path: str
    branch: str
    exists_on_disk: bool
    tracked_by_git: bool
    task_id: str | None = None
    agent_id: str | None = None


@dataclass(slots=True)
class SessionSummary:
    session_id: str
    status: SessionStatus
    started_at: str
    updated_at: str
    is_paused: bool
    is_resumable: bool
    total_tasks: int
    completed_tasks: int
    failed_tasks: int
    cancelled_tasks: int
    pending_tasks: int
    active_agents: int
    active_workspaces: int


def _require_str(raw: dict[str, Any], key: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"session.{key} must be a non-empty string")
    return value


def _require_list(raw: dict[str, Any], key: str) -> list[dict[str, Any]]:
    value = raw.get(key, [])
    if not isinstance(value, list):
        raise TypeError(f"session.{key} must be an array")
    return value
