"""Session record storage and invariant-preserving state transitions.

Transition helpers are pure: they take a state and return a new one, so the
caller decides when to persist. Statistics and work-unit statuses are always
derived from task statuses, never incremented, which keeps every transition
idempotent.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import replace
from pathlib import Path
from typing import Any
from uuid import uuid4

from parallel_orchestrator.session.atomic import load_json, write_json_atomic
from parallel_orchestrator.session.models import (
    FINISHED_TASK_STATUSES,
    RESUMABLE_TASK_STATUSES,
    SESSION_SCHEMA_VERSION,
    CompletedTaskRecord,
    PersistedAgentState,
    PersistedSessionState,
    PersistedTask,
    PersistedWorkspaceState,
    PersistedWorkUnit,
    SessionStats,
    SessionStatus,
    SessionSummary,
    TaskStatus,
    WorkspaceDescriptor,
    WorkUnit,
    WorkUnitStatus,
    utc_now_iso,
)
from parallel_orchestrator.session.mutex import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_DELAY_SECONDS,
    hold_mutex,
)

logger = logging.getLogger(__name__)

SESSION_FILE_NAME = "session.json"
SESSION_MUTEX_NAME = "session.json.d"


class SessionStore:
    """Reads and writes the session record for one repository checkout."""

    def __init__(
        self,
        state_dir: Path,
        *,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> None:
        self.state_dir = state_dir
        self.path = state_dir / SESSION_FILE_NAME
        self.retry_delay_seconds = retry_delay_seconds
        self.max_attempts = max_attempts

    def has_session(self) -> bool:
        return self.path.exists()

    def load_session(self) -> PersistedSessionState | None:
        """Load the record; a missing or unparseable record reads as absent."""

        try:
            raw = load_json(self.path)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, TypeError) as error:
            logger.warning("Ignoring corrupt session record %s: %s", self.path, error)
            return None

        version = raw.get("version", SESSION_SCHEMA_VERSION)
        if version != SESSION_SCHEMA_VERSION:
            logger.warning(
                "Unknown session schema version %r in %s; loading best-effort.",
                version,
                self.path,
            )
        try:
            state = PersistedSessionState.from_dict(raw)
        except (KeyError, ValueError, TypeError) as error:
            logger.warning("Ignoring corrupt session record %s: %s", self.path, error)
            return None
        return replace(state, version=SESSION_SCHEMA_VERSION)

    def save_session(self, state: PersistedSessionState) -> PersistedSessionState:
        """Atomically replace the record, stamping ``updated_at``."""

        stamped = replace(state, updated_at=utc_now_iso())
        write_json_atomic(self.path, stamped.to_dict())
        return stamped

    def update_session(
        self,
        mutate: Callable[[PersistedSessionState], PersistedSessionState],
    ) -> PersistedSessionState | None:
        """Load, transform and save under the session mutex."""

        with hold_mutex(
            self.state_dir / SESSION_MUTEX_NAME,
            retry_delay_seconds=self.retry_delay_seconds,
            max_attempts=self.max_attempts,
        ):
            state = self.load_session()
            if state is None:
                return None
            return self.save_session(mutate(state))

    def delete_session(self) -> bool:
        try:
            self.path.unlink()
        except FileNotFoundError:
            return False
        return True


def create_session(
    work_units: Iterable[WorkUnit],
    executor_config: dict[str, Any],
    cwd: Path | str,
    *,
    session_id: str | None = None,
) -> PersistedSessionState:
    """Initial state: status running, every task and work unit pending."""

    units = list(work_units)
    now = utc_now_iso()
    tasks = [
        PersistedTask(id=task.id, title=task.title, work_unit_id=unit.id)
        for unit in units
        for task in unit.tasks
    ]
    return PersistedSessionState(
        session_id=session_id or str(uuid4()),
        status=SessionStatus.RUNNING,
        started_at=now,
        updated_at=now,
        cwd=str(cwd),
        executor_config=dict(executor_config),
        work_units=[
            PersistedWorkUnit(
                id=unit.id,
                name=unit.name,
                priority=unit.priority,
                task_ids=[task.id for task in unit.tasks],
            )
            for unit in units
        ],
        tasks=tasks,
        stats=compute_stats(tasks),
    )


def compute_stats(tasks: Iterable[PersistedTask]) -> SessionStats:
    stats = SessionStats()
    for task in tasks:
        stats.total_tasks += 1
        if task.status == TaskStatus.COMPLETED:
            stats.completed_tasks += 1
        elif task.status == TaskStatus.FAILED:
            stats.failed_tasks += 1
        elif task.status == TaskStatus.CANCELLED:
            stats.cancelled_tasks += 1
    return stats


def derive_work_unit_status(
    unit: PersistedWorkUnit,
    tasks_by_id: dict[str, PersistedTask],
) -> WorkUnitStatus:
    statuses = [tasks_by_id[task_id].status for task_id in unit.task_ids if task_id in tasks_by_id]
    if statuses and all(status in FINISHED_TASK_STATUSES for status in statuses):
        if any(status == TaskStatus.FAILED for status in statuses):
            return WorkUnitStatus.FAILED
        return WorkUnitStatus.COMPLETED
    if any(status == TaskStatus.RUNNING for status in statuses):
        return WorkUnitStatus.RUNNING
    return WorkUnitStatus.PENDING


def recompute_derived(state: PersistedSessionState) -> PersistedSessionState:
    """Re-derive work-unit statuses and aggregate statistics from tasks."""

    tasks_by_id = {task.id: task for task in state.tasks}
    return replace(
        state,
        work_units=[
            replace(unit, status=derive_work_unit_status(unit, tasks_by_id))
            for unit in state.work_units
        ],
        stats=compute_stats(state.tasks),
    )


def add_agent_to_session(  # noqa: PLR0913
    state: PersistedSessionState,
    *,
    agent_id: str,
    task_ids: list[str],
    work_unit_id: str,
    workspace: WorkspaceDescriptor,
    task_title: str = "",
) -> PersistedSessionState:
    """Record a started worker, mark its tasks running and its work unit running."""

    if not task_ids:
        raise ValueError("An agent must own at least one task")
    now = utc_now_iso()
    agent = PersistedAgentState(
        agent_id=agent_id,
        task_id=task_ids[0],
        task_ids=list(task_ids),
        task_title=task_title,
        work_unit_id=work_unit_id,
        workspace_id=workspace.id,
        workspace_path=workspace.path,
        workspace_branch=workspace.branch,
        status=TaskStatus.RUNNING,
        started_at=now,
    )
    workspace_state = PersistedWorkspaceState(
        id=workspace.id,
        name=workspace.name,
        path=workspace.path,
        branch=workspace.branch,
        status="in_use",
        created_at=workspace.created_at,
        last_activity_at=now,
        task_id=task_ids[0],
        agent_id=agent_id,
    )
    owned = set(task_ids)
    tasks = [
        replace(task, status=TaskStatus.RUNNING) if task.id in owned else task
        for task in state.tasks
    ]
    agents = [item for item in state.agents if item.agent_id != agent_id] + [agent]
    workspaces = [item for item in state.workspaces if item.id != workspace.id] + [
        workspace_state
    ]
    return recompute_derived(replace(state, agents=agents, workspaces=workspaces, tasks=tasks))


def complete_agent_task(
    state: PersistedSessionState,
    agent_id: str,
    *,
    success: bool,
    duration_ms: int,
    error: str | None = None,
) -> PersistedSessionState:
    """Mark an agent's tasks completed or failed and log the result.

    Unknown or already finished agents leave the state unchanged.
    """

    agent = _find_running_agent(state, agent_id)
    if agent is None:
        return state
    now = utc_now_iso()
    new_status = TaskStatus.COMPLETED if success else TaskStatus.FAILED
    owned = set(agent.task_ids)
    agents = [
        replace(item, status=new_status, ended_at=now, error=error)
        if item.agent_id == agent_id
        else item
        for item in state.agents
    ]
    tasks = [
        replace(task, status=new_status) if task.id in owned else task for task in state.tasks
    ]
    completed = list(state.completed_tasks) + [
        CompletedTaskRecord(
            task_id=task_id,
            success=success,
            duration_ms=duration_ms,
            completed_at=now,
            error=error,
        )
        for task_id in agent.task_ids
    ]
    return recompute_derived(
        replace(state, agents=agents, tasks=tasks, completed_tasks=completed),
    )


def cancel_agent_task(
    state: PersistedSessionState,
    agent_id: str,
    *,
    reason: str,
) -> PersistedSessionState:
    """Mark a killed agent and its tasks cancelled (resumable)."""

    agent = _find_running_agent(state, agent_id)
    if agent is None:
        return state
    owned = set(agent.task_ids)
    now = utc_now_iso()
    agents = [
        replace(item, status=TaskStatus.CANCELLED, ended_at=now, error=reason)
        if item.agent_id == agent_id
        else item
        for item in state.agents
    ]
    tasks = [
        replace(task, status=TaskStatus.CANCELLED) if task.id in owned else task
        for task in state.tasks
    ]
    return recompute_derived(replace(state, agents=agents, tasks=tasks))


def mark_tasks(
    state: PersistedSessionState,
    task_ids: Iterable[str],
    status: TaskStatus,
    *,
    error: str | None = None,
) -> PersistedSessionState:
    """Set task statuses that did not go through an agent (skipped, unsatisfiable)."""

    targets = set(task_ids)
    if not targets:
        return state
    tasks = [replace(task, status=status) if task.id in targets else task for task in state.tasks]
    completed = list(state.completed_tasks)
    if status in FINISHED_TASK_STATUSES:
        now = utc_now_iso()
        completed.extend(
            CompletedTaskRecord(
                task_id=task_id,
                success=status == TaskStatus.COMPLETED,
                duration_ms=0,
                completed_at=now,
                error=error,
            )
            for task_id in sorted(targets)
        )
    return recompute_derived(replace(state, tasks=tasks, completed_tasks=completed))


def remove_agent_from_session(
    state: PersistedSessionState,
    agent_id: str,
) -> PersistedSessionState:
    """Drop an agent and the workspace it occupied."""

    agent = next((item for item in state.agents if item.agent_id == agent_id), None)
    if agent is None:
        return state
    return replace(
        state,
        agents=[item for item in state.agents if item.agent_id != agent_id],
        workspaces=[item for item in state.workspaces if item.id != agent.workspace_id],
    )


def pause_session(state: PersistedSessionState) -> PersistedSessionState:
    return replace(state, status=SessionStatus.PAUSED, is_paused=True, paused_at=utc_now_iso())


def resume_session(state: PersistedSessionState) -> PersistedSessionState:
    return replace(state, status=SessionStatus.RUNNING, is_paused=False, paused_at=None)


def complete_session(state: PersistedSessionState) -> PersistedSessionState:
    return replace(state, status=SessionStatus.COMPLETED, is_paused=False)


def fail_session(state: PersistedSessionState) -> PersistedSessionState:
    return replace(state, status=SessionStatus.FAILED, is_paused=False)


def interrupt_session(state: PersistedSessionState) -> PersistedSessionState:
    return replace(state, status=SessionStatus.INTERRUPTED, is_paused=False)


def is_session_resumable(state: PersistedSessionState) -> bool:
    return state.status in {
        SessionStatus.PAUSED,
        SessionStatus.RUNNING,
        SessionStatus.INTERRUPTED,
    }


def get_resumable_tasks(state: PersistedSessionState) -> list[PersistedTask]:
    """Tasks that should be offered again: pending, or cancelled by an interruption."""

    return [task for task in state.tasks if task.status in RESUMABLE_TASK_STATUSES]


def get_session_summary(state: PersistedSessionState) -> SessionSummary:
    return SessionSummary(
        session_id=state.session_id,
        status=state.status,
        started_at=state.started_at,
        updated_at=state.updated_at,
        is_paused=state.is_paused,
        is_resumable=is_session_resumable(state),
        total_tasks=state.stats.total_tasks,
        completed_tasks=state.stats.completed_tasks,
        failed_tasks=state.stats.failed_tasks,
        cancelled_tasks=state.stats.cancelled_tasks,
        pending_tasks=sum(1 for task in state.tasks if task.status == TaskStatus.PENDING),
        active_agents=sum(1 for agent in state.agents if agent.status == TaskStatus.RUNNING),
        active_workspaces=len(state.workspaces),
    )


def _find_running_agent(
    state: PersistedSessionState,
    agent_id: str,
) -> PersistedAgentState | None:
    agent = next((item for item in state.agents if item.agent_id == agent_id), None)
    if agent is None or agent.status != TaskStatus.RUNNING:
        return None
    return agent
