"""Isolated workspace providers handed to workers."""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Protocol
from uuid import uuid4

from parallel_orchestrator.git import commit_all, run_git
from parallel_orchestrator.orchestrator.merge import merge_branch
from parallel_orchestrator.orchestrator.models import StoryGroup
from parallel_orchestrator.session.models import WorkspaceDescriptor, utc_now_iso

logger = logging.getLogger(__name__)

BRANCH_PREFIX = "parallel/"
_SLUG_RE = re.compile(r"[^A-Za-z0-9_-]+")


class WorkspaceError(RuntimeError):
    """Provisioning or releasing an isolated workspace failed."""


class WorkspaceProvider(Protocol):
    def acquire(self, worker_id: str, group: StoryGroup) -> WorkspaceDescriptor: ...

    def release(self, workspace: WorkspaceDescriptor) -> None: ...

    def integrate(self, workspace: WorkspaceDescriptor, label: str) -> str | None: ...


class GitWorktreeProvider:
    """One ``git worktree`` per worker on a fresh branch.

    Releasing removes the worktree directory but keeps the branch, which
    carries whatever the worker committed.
    """

    def __init__(
        self,
        repo_root: Path,
        *,
        worktree_dir: str = ".worktrees",
        base_ref: str = "HEAD",
        branch_prefix: str = BRANCH_PREFIX,
    ) -> None:
        self.repo_root = repo_root
        self.root = repo_root / worktree_dir
        self.base_ref = base_ref
        self.branch_prefix = branch_prefix

    def acquire(self, worker_id: str, group: StoryGroup) -> WorkspaceDescriptor:
        span = group.id_range
        label = span.start if span.start == span.end else f"{span.start}-{span.end}"
        name = f"{_slug(label)}-{uuid4().hex[:8]}"
        path = self.root / name
        branch = f"{self.branch_prefix}{name}"
        if path.exists():
            raise WorkspaceError(f"Workspace path already exists: {path}")
        self.root.mkdir(parents=True, exist_ok=True)
        result = run_git(
            ["worktree", "add", "-b", branch, str(path), self.base_ref],
            cwd=self.repo_root,
        )
        if not result.ok:
            raise WorkspaceError(
                f"git worktree add failed for {worker_id}: {result.stderr.strip()}",
            )
        logger.info("Created worktree %s on branch %s for %s", path, branch, worker_id)
        return WorkspaceDescriptor(
            id=name,
            name=name,
            path=str(path),
            branch=branch,
            status="active",
            created_at=utc_now_iso(),
        )

    def release(self, workspace: WorkspaceDescriptor) -> None:
        result = run_git(["worktree", "remove", "--force", workspace.path], cwd=self.repo_root)
        if not result.ok:
            logger.warning(
                "Failed to remove worktree %s: %s",
                workspace.path,
                result.stderr.strip(),
            )

    def integrate(self, workspace: WorkspaceDescriptor, label: str) -> str | None:
        """Commit leftovers on the worker branch and merge it into the checkout.

        Returns an error message when the merge failed and was rolled back.
        """

        error = commit_all(Path(workspace.path), commit_message(label))
        if error is not None:
            return error
        outcome = merge_branch(
            self.repo_root,
            workspace.branch,
            message=f"Merge {workspace.branch} ({label})",
        )
        return outcome.error


class SharedWorkspaceProvider:
    """Every worker runs in the repository checkout itself."""

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root

    def acquire(self, worker_id: str, group: StoryGroup) -> WorkspaceDescriptor:
        branch = run_git(["rev-parse", "--abbrev-ref", "HEAD"], cwd=self.repo_root)
        return WorkspaceDescriptor(
            id=f"shared-{worker_id}-{uuid4().hex[:8]}",
            name=f"shared-{worker_id}",
            path=str(self.repo_root),
            branch=branch.stdout.strip() if branch.ok else "",
            status="shared",
            created_at=utc_now_iso(),
        )

    def release(self, workspace: WorkspaceDescriptor) -> None:
        return None

    def integrate(self, workspace: WorkspaceDescriptor, label: str) -> str | None:
        return None


def build_workspace_provider(
    mode: str,
    repo_root: Path,
    *,
    worktree_dir: str = ".worktrees",
    base_ref: str = "HEAD",
) -> WorkspaceProvider:
    if mode == "worktree":
        return GitWorktreeProvider(repo_root, worktree_dir=worktree_dir, base_ref=base_ref)
    if mode == "shared":
        return SharedWorkspaceProvider(repo_root)
    raise ValueError(f"Unknown workspace mode: {mode!r}")


def commit_message(label: str) -> str:
    return f"feat({label}): complete task {label}"


def _slug(value: str) -> str:
    return _SLUG_RE.sub("-", value).strip("-") or "task"
