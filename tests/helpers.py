"""Builders shared by several test modules."""

from __future__ import annotations

import json
import shutil
import sys
from pathlib import Path

import pytest

from parallel_orchestrator.git import run_git
from parallel_orchestrator.orchestrator.graph import DependencyGraph, TaskNode

STUB_WORKER_COMMAND = (
    f"{sys.executable} -m parallel_orchestrator.orchestrator.stub_worker "
    "{task_args} --cwd {workdir}"
)


class FakeProbe:
    """Liveness probe answering from a fixed set of live pids."""

    def __init__(self, *live_pids: int) -> None:
        self.live = set(live_pids)

    def is_running(self, pid: int) -> bool:
        return pid in self.live


def stub_command(*extra: str) -> str:
    return " ".join([STUB_WORKER_COMMAND, *extra])


def make_graph(*specs: tuple[str, tuple[str, ...]], confidence: float = 0.9) -> DependencyGraph:
    return DependencyGraph.from_nodes(
        TaskNode(id=task_id, title=f"Task {task_id}", depends_on=deps, confidence=confidence)
        for task_id, deps in specs
    )


def write_task_file(path: Path, tasks: list[dict]) -> Path:
    path.write_text(json.dumps({"tasks": tasks}), "utf-8")
    return path


def read_records(path: Path) -> list[str]:
    if not path.exists():
        return []
    return path.read_text("utf-8").splitlines()


requires_git = pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")


def init_repo(path: Path) -> Path:
    """Repository with one commit holding README.md."""

    path.mkdir(parents=True, exist_ok=True)
    assert run_git(["init", "-q"], cwd=path).ok
    (path / "README.md").write_text("hello\n", "utf-8")
    assert run_git(["add", "README.md"], cwd=path).ok
    commit = run_git(
        ["-c", "user.name=Test", "-c", "user.email=test@example.com", "commit", "-qm", "init"],
        cwd=path,
    )
    assert commit.ok, commit.stderr
    return path
