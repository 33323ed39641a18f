"""Runtime configuration for the parallel orchestrator."""

from __future__ import annotations

import logging
import os
import shlex
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_WORKER_COMMAND = "task-engine run {task_args} --cwd {workdir}"
SCHEDULER_POLICIES = ("ready", "phased")
WORKSPACE_MODES = ("worktree", "shared")


@dataclass(slots=True)
class SchedulerSettings:
    """How work is admitted."""

    policy: str = "ready"
    max_workers: int = 0
    low_confidence_threshold: float = 0.5


@dataclass(slots=True)
class WorkerSettings:
    """How worker processes are launched and supervised."""

    command_template: str = DEFAULT_WORKER_COMMAND
    headless: bool = True
    extra_args: tuple[str, ...] = ()
    timeout_seconds: int = 0
    graceful_shutdown_seconds: int = 2
    sync_before_work: bool = True
    commit_on_success: bool = False
    queue_poll_seconds: float = 1.0


@dataclass(slots=True)
class WorkspaceSettings:
    """Where workers run."""

    mode: str = "worktree"
    worktree_dir: str = ".worktrees"
    base_ref: str = "HEAD"
    cleanup_on_success: bool = True
    merge_on_success: bool = True


@dataclass(slots=True)
class LockSettings:
    retry_delay_seconds: float = 0.1
    max_attempts: int = 60


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    state_dir: Path = Path(".parallel-orchestrator")
    log_level: str = "WARNING"
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    workspace: WorkspaceSettings = field(default_factory=WorkspaceSettings)
    lock: LockSettings = field(default_factory=LockSettings)

    @classmethod
    def from_env(cls, state_dir: Path | None = None) -> Settings:
        """Load settings from ``PARALLEL_ORCHESTRATOR_*`` variables."""

        return cls(
            state_dir=state_dir
            or Path(os.getenv("PARALLEL_ORCHESTRATOR_STATE_DIR", ".parallel-orchestrator")),
            log_level=os.getenv("PARALLEL_ORCHESTRATOR_LOG_LEVEL", "WARNING").strip().upper(),
            scheduler=SchedulerSettings(
                policy=os.getenv("PARALLEL_ORCHESTRATOR_POLICY", "ready").strip().lower(),
                max_workers=_env_int("PARALLEL_ORCHESTRATOR_MAX_WORKERS", 0),
                low_confidence_threshold=_env_float(
                    "PARALLEL_ORCHESTRATOR_LOW_CONFIDENCE_THRESHOLD",
                    0.5,
                ),
            ),
            worker=WorkerSettings(
                command_template=os.getenv(
                    "PARALLEL_ORCHESTRATOR_WORKER_COMMAND",
                    DEFAULT_WORKER_COMMAND,
                ),
                headless=_env_bool("PARALLEL_ORCHESTRATOR_HEADLESS", default=True),
                extra_args=tuple(shlex.split(os.getenv("PARALLEL_ORCHESTRATOR_WORKER_ARGS", ""))),
                timeout_seconds=_env_int("PARALLEL_ORCHESTRATOR_WORKER_TIMEOUT_SECONDS", 0),
                graceful_shutdown_seconds=_env_int(
                    "PARALLEL_ORCHESTRATOR_GRACEFUL_SHUTDOWN_SECONDS",
                    2,
                ),
                sync_before_work=_env_bool(
                    "PARALLEL_ORCHESTRATOR_SYNC_BEFORE_WORK",
                    default=True,
                ),
                commit_on_success=_env_bool(
                    "PARALLEL_ORCHESTRATOR_COMMIT_ON_SUCCESS",
                    default=False,
                ),
                queue_poll_seconds=_env_float("PARALLEL_ORCHESTRATOR_QUEUE_POLL_SECONDS", 1.0),
            ),
            workspace=WorkspaceSettings(
                mode=os.getenv("PARALLEL_ORCHESTRATOR_WORKSPACE_MODE", "worktree").strip().lower(),
                worktree_dir=os.getenv("PARALLEL_ORCHESTRATOR_WORKTREE_DIR", ".worktrees"),
                base_ref=os.getenv("PARALLEL_ORCHESTRATOR_BASE_REF", "HEAD"),
                cleanup_on_success=_env_bool(
                    "PARALLEL_ORCHESTRATOR_CLEANUP_ON_SUCCESS",
                    default=True,
                ),
                merge_on_success=_env_bool(
                    "PARALLEL_ORCHESTRATOR_MERGE_ON_SUCCESS",
                    default=True,
                ),
            ),
            lock=LockSettings(
                retry_delay_seconds=_env_float(
                    "PARALLEL_ORCHESTRATOR_LOCK_RETRY_DELAY_SECONDS",
                    0.1,
                ),
                max_attempts=_env_int("PARALLEL_ORCHESTRATOR_LOCK_MAX_ATTEMPTS", 60),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.scheduler.policy not in SCHEDULER_POLICIES:
            raise ValueError(
                "PARALLEL_ORCHESTRATOR_POLICY must be one of "
                f"{', '.join(SCHEDULER_POLICIES)}: {self.scheduler.policy!r}",
            )
        if self.scheduler.max_workers < 0:
            raise ValueError("PARALLEL_ORCHESTRATOR_MAX_WORKERS must be >= 0.")
        if not 0.0 <= self.scheduler.low_confidence_threshold <= 1.0:
            raise ValueError(
                "PARALLEL_ORCHESTRATOR_LOW_CONFIDENCE_THRESHOLD must be within [0, 1].",
            )
        if not self.worker.command_template.strip():
            raise ValueError("PARALLEL_ORCHESTRATOR_WORKER_COMMAND must not be empty.")
        if self.worker.timeout_seconds < 0:
            raise ValueError("PARALLEL_ORCHESTRATOR_WORKER_TIMEOUT_SECONDS must be >= 0.")
        if self.worker.graceful_shutdown_seconds < 0:
            raise ValueError("PARALLEL_ORCHESTRATOR_GRACEFUL_SHUTDOWN_SECONDS must be >= 0.")
        if self.worker.queue_poll_seconds < 0:
            raise ValueError("PARALLEL_ORCHESTRATOR_QUEUE_POLL_SECONDS must be >= 0.")
        if self.workspace.mode not in WORKSPACE_MODES:
            raise ValueError(
                "PARALLEL_ORCHESTRATOR_WORKSPACE_MODE must be one of "
                f"{', '.join(WORKSPACE_MODES)}: {self.workspace.mode!r}",
            )
        if not self.workspace.worktree_dir.strip():
            raise ValueError("PARALLEL_ORCHESTRATOR_WORKTREE_DIR must not be empty.")
        if self.lock.retry_delay_seconds < 0:
            raise ValueError("PARALLEL_ORCHESTRATOR_LOCK_RETRY_DELAY_SECONDS must be >= 0.")
        if self.lock.max_attempts <= 0:
            raise ValueError("PARALLEL_ORCHESTRATOR_LOCK_MAX_ATTEMPTS must be > 0.")
        if not isinstance(logging.getLevelName(self.log_level), int):
            raise ValueError(f"Invalid PARALLEL_ORCHESTRATOR_LOG_LEVEL: {self.log_level!r}")

    def resolve_state_dir(self, repo_root: Path) -> Path:
        if self.state_dir.is_absolute():
            return self.state_dir
        return repo_root / self.state_dir

    def executor_config(self) -> dict[str, Any]:
        """Snapshot persisted with each session so a resume can be audited."""

        return {
            "scheduler": asdict(self.scheduler),
            "worker": {**asdict(self.worker), "extra_args": list(self.worker.extra_args)},
            "workspace": asdict(self.workspace),
        }


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {value!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
