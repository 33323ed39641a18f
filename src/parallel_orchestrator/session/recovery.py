"""Startup reconciliation of sessions left behind by a crashed run."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from pathlib import Path

from parallel_orchestrator.git import GitWorktree, list_worktrees
from parallel_orchestrator.session.lock import InstanceLock
from parallel_orchestrator.session.models import (
    OrphanedWorkspace,
    PersistedSessionState,
    SessionStatus,
    TaskStatus,
    utc_now_iso,
)
from parallel_orchestrator.session.persistence import SessionStore, recompute_derived

logger = logging.getLogger(__name__)

CRASHED_AGENT_NOTE = "Session crashed - agent was interrupted"

WorktreeLister = Callable[[Path], list[GitWorktree]]


@dataclass(slots=True)
class RecoveryResult:
    recovery_needed: bool = False
    was_stale: bool = False
    reset_agent_count: int = 0
    orphaned_workspaces: list[OrphanedWorkspace] = field(default_factory=list)
    previous_status: SessionStatus | None = None
    recovered_session: PersistedSessionState | None = None


def detect_orphaned_workspaces(
    repo_root: Path,
    *,
    session: PersistedSessionState | None,
    worktree_dir: str = ".worktrees",
    lister: WorktreeLister = list_worktrees,
) -> list[OrphanedWorkspace]:
    """Workspaces that git or the filesystem know about but the session does not.

    Only entries under ``repo_root / worktree_dir`` are considered, so the
    main checkout and unrelated worktrees are never reported.
    """

    root = (repo_root / worktree_dir).resolve()
    known = {Path(item.path).resolve() for item in session.workspaces} if session else set()
    branch_owners = (
        {agent.workspace_branch: agent for agent in session.agents if agent.workspace_branch}
        if session
        else {}
    )

    git_entries: dict[Path, GitWorktree] = {}
    for worktree in lister(repo_root):
        path = Path(worktree.path).resolve()
        if path.is_relative_to(root) and path != root:
            git_entries[path] = worktree

    on_disk: list[Path] = []
    if root.is_dir():
        on_disk = sorted(entry.resolve() for entry in root.iterdir() if entry.is_dir())

    orphans: list[OrphanedWorkspace] = []
    seen: set[Path] = set()
    for path in [*on_disk, *git_entries]:
        if path in known or path in seen:
            continue
        seen.add(path)
        tracked = git_entries.get(path)
        branch = (tracked.branch if tracked else None) or "unknown"
        owner = branch_owners.get(branch)
        orphans.append(
            OrphanedWorkspace(
                path=str(path),
                branch=branch,
                exists_on_disk=path.exists(),
                tracked_by_git=tracked is not None,
                task_id=owner.task_id if owner else None,
                agent_id=owner.agent_id if owner else None,
            ),
        )
    return orphans


def recover_crashed_session(state: PersistedSessionState) -> tuple[PersistedSessionState, int]:
    """Cancel running agents, re-queue their tasks and mark the session interrupted.

    Returns the reconciled state and the number of agents that were reset.
    Aggregates are recomputed from task statuses, so applying this twice is
    the same as applying it once.
    """

    now = utc_now_iso()
    reset = 0
    agents = []
    for agent in state.agents:
        if agent.status == TaskStatus.RUNNING:
            reset += 1
            agent = replace(
                agent,
                status=TaskStatus.CANCELLED,
                ended_at=now,
                error=CRASHED_AGENT_NOTE,
            )
        agents.append(agent)
    tasks = [
        replace(task, status=TaskStatus.PENDING) if task.status == TaskStatus.RUNNING else task
        for task in state.tasks
    ]
    recovered = recompute_derived(
        replace(
            state,
            status=SessionStatus.INTERRUPTED,
            is_paused=False,
            agents=agents,
            tasks=tasks,
        ),
    )
    return recovered, reset


def detect_and_recover_stale_session(  # noqa: PLR0913
    store: SessionStore,
    lock: InstanceLock,
    repo_root: Path,
    *,
    worktree_dir: str = ".worktrees",
    lister: WorktreeLister = list_worktrees,
) -> RecoveryResult:
    """Run once before scheduling: reconcile a crash-stale session and find orphans."""

    result = RecoveryResult()
    session = store.load_session()

    if session is None or session.status != SessionStatus.RUNNING:
        result.orphaned_workspaces = detect_orphaned_workspaces(
            repo_root,
            session=session,
            worktree_dir=worktree_dir,
            lister=lister,
        )
        result.recovery_needed = bool(result.orphaned_workspaces)
        result.recovered_session = session
        return result

    lock_status = lock.check_lock()
    if lock_status.is_locked:
        logger.info(
            "Session %s is owned by a live process (PID: %s); skipping recovery.",
            session.session_id,
            lock_status.lock.pid if lock_status.lock else "?",
        )
        return result

    recovered, reset = recover_crashed_session(session)
    recovered = store.save_session(recovered)
    logger.warning(
        "Recovered crashed session %s: %d agent(s) interrupted, tasks re-queued.",
        session.session_id,
        reset,
    )
    result.was_stale = True
    result.recovery_needed = True
    result.previous_status = session.status
    result.reset_agent_count = reset
    result.recovered_session = recovered
    result.orphaned_workspaces = detect_orphaned_workspaces(
        repo_root,
        session=recovered,
        worktree_dir=worktree_dir,
        lister=lister,
    )
    return result
