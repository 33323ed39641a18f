"""Integrate finished worker branches into the main checkout, one at a time.

A fast-forward is tried first and a merge commit is the fallback. A merge
that stops on conflicts is aborted and the checkout is reset to the commit
it had before, so a failed integration never leaves a half-merged tree.
Callers serialize merges with the commit mutex.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from parallel_orchestrator.git import run_git

logger = logging.getLogger(__name__)


class MergeStrategy(str, Enum):
    FAST_FORWARD = "fast-forward"
    MERGE_COMMIT = "merge-commit"
    UP_TO_DATE = "up-to-date"


@dataclass(slots=True)
class MergeOutcome:
    branch: str
    success: bool
    strategy: MergeStrategy | None = None
    commit_sha: str | None = None
    conflicted_files: list[str] = field(default_factory=list)
    error: str | None = None


def merge_branch(repo_root: Path, branch: str, *, message: str) -> MergeOutcome:
    """Merge ``branch`` into whatever ``repo_root`` has checked out."""

    before = run_git(["rev-parse", "HEAD"], cwd=repo_root)
    if not before.ok:
        return MergeOutcome(
            branch=branch,
            success=False,
            error=f"Merge failed: cannot resolve HEAD: {before.stderr.strip()}",
        )
    head = before.stdout.strip()

    ahead = run_git(["rev-list", "--count", f"HEAD..{branch}"], cwd=repo_root)
    if not ahead.ok:
        return MergeOutcome(
            branch=branch,
            success=False,
            error=f"Merge failed: unknown branch {branch}: {ahead.stderr.strip()}",
        )
    if ahead.stdout.strip() == "0":
        logger.debug("Branch %s has nothing to merge", branch)
        return MergeOutcome(
            branch=branch,
            success=True,
            strategy=MergeStrategy.UP_TO_DATE,
            commit_sha=head,
        )

    if run_git(["merge", "--ff-only", branch], cwd=repo_root).ok:
        logger.info("Fast-forwarded to %s", branch)
        return _merged(repo_root, branch, MergeStrategy.FAST_FORWARD)

    merged = run_git(["merge", "--no-edit", "-m", message, branch], cwd=repo_root)
    if merged.ok:
        logger.info("Merged %s with a merge commit", branch)
        return _merged(repo_root, branch, MergeStrategy.MERGE_COMMIT)

    conflicted = conflicted_files(repo_root)
    run_git(["merge", "--abort"], cwd=repo_root)
    reset = run_git(["reset", "--hard", head], cwd=repo_root)
    if not reset.ok:
        logger.error("Could not roll back %s to %s: %s", repo_root, head, reset.stderr.strip())
    if conflicted:
        error = f"Merge conflicts in {len(conflicted)} file(s): {', '.join(conflicted)}"
    else:
        detail = merged.stderr.strip() or merged.stdout.strip() or "unknown reason"
        error = f"Merge failed: {detail}"
    logger.warning("Merging %s failed and was rolled back: %s", branch, error)
    return MergeOutcome(
        branch=branch,
        success=False,
        conflicted_files=conflicted,
        error=error,
    )


def conflicted_files(repo_root: Path) -> list[str]:
    result = run_git(["diff", "--name-only", "--diff-filter=U"], cwd=repo_root)
    if not result.ok:
        return []
    return [line.strip() for line in result.stdout.splitlines() if line.strip()]


def _merged(repo_root: Path, branch: str, strategy: MergeStrategy) -> MergeOutcome:
    sha = run_git(["rev-parse", "HEAD"], cwd=repo_root)
    return MergeOutcome(
        branch=branch,
        success=True,
        strategy=strategy,
        commit_sha=sha.stdout.strip() if sha.ok else None,
    )
