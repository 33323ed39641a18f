"""Thin helpers around the ``git`` executable."""

from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 120


@dataclass(slots=True)
class GitResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass(slots=True)
class GitWorktree:
    """One entry of ``git worktree list --porcelain``."""

    path: str
    branch: str | None = None
    head: str | None = None
    detached: bool = False


def run_git(args: list[str], *, cwd: Path, timeout_seconds: int = GIT_TIMEOUT_SECONDS) -> GitResult:
    """Run git and capture its output.

    A missing ``git`` binary is reported as a failed result (exit code 127)
    rather than raised, because every caller degrades gracefully.
    """

    try:
        completed = subprocess.run(  # noqa: S603
            ["git", *args],  # noqa: S607
            cwd=cwd,
            capture_output=True,
            text=True,
            timeout=timeout_seconds,
            check=False,
        )
    except FileNotFoundError:
        return GitResult(returncode=127, stdout="", stderr="git executable not found")
    except subprocess.TimeoutExpired:
        return GitResult(
            returncode=124,
            stdout="",
            stderr=f"git {' '.join(args)} timed out after {timeout_seconds}s",
        )
    return GitResult(
        returncode=completed.returncode,
        stdout=completed.stdout,
        stderr=completed.stderr,
    )


def parse_worktree_list(output: str) -> list[GitWorktree]:
    """Parse porcelain worktree listing into records; blank lines separate entries."""

    worktrees: list[GitWorktree] = []
    current: GitWorktree | None = None
    for line in [*output.splitlines(), ""]:
        if line.startswith("worktree "):
            current = GitWorktree(path=line[len("worktree ") :])
        elif current is None:
            continue
        elif line.startswith("branch "):
            current.branch = line[len("branch ") :].removeprefix("refs/heads/")
        elif line.startswith("HEAD "):
            current.head = line[len("HEAD ") :]
        elif line == "detached":
            current.detached = True
        elif not line:
            worktrees.append(current)
            current = None
    return worktrees


def list_worktrees(cwd: Path) -> list[GitWorktree]:
    """Worktrees git knows about; empty when git is unavailable or fails."""

    result = run_git(["worktree", "list", "--porcelain"], cwd=cwd)
    if not result.ok:
        logger.debug("git worktree list failed in %s: %s", cwd, result.stderr.strip())
        return []
    return parse_worktree_list(result.stdout)


def commit_all(workdir: Path, message: str) -> str | None:
    """Stage and commit every change in ``workdir``; returns an error message on failure.

    A clean tree is not an error and produces no commit.
    """

    status = run_git(["status", "--porcelain"], cwd=workdir)
    if not status.ok or not status.stdout.strip():
        return None
    added = run_git(["add", "-A"], cwd=workdir)
    if not added.ok:
        return f"Commit failed: git add failed: {added.stderr.strip()}"
    committed = run_git(["commit", "-m", message], cwd=workdir)
    if not committed.ok:
        return f"Commit failed: git commit failed: {committed.stderr.strip()}"
    return None
