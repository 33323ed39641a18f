"""Shared test fixtures."""

from __future__ import annotations

import os
from pathlib import Path

import pytest

from helpers import STUB_WORKER_COMMAND
from parallel_orchestrator.config import Settings


@pytest.fixture()
def stub_settings(tmp_path: Path) -> Settings:
    """Settings running the stub worker in the shared checkout without git sync."""

    settings = Settings(state_dir=tmp_path / "state")
    settings.worker.command_template = STUB_WORKER_COMMAND
    settings.worker.sync_before_work = False
    settings.worker.graceful_shutdown_seconds = 1
    settings.workspace.mode = "shared"
    settings.lock.retry_delay_seconds = 0.01
    return settings


@pytest.fixture()
def clean_env(monkeypatch):
    """Drop PARALLEL_ORCHESTRATOR_* variables leaking from the host."""

    for name in list(os.environ):
        if name.startswith("PARALLEL_ORCHESTRATOR_"):
            monkeypatch.delenv(name, raising=False)
    return monkeypatch


@pytest.fixture()
def git_identity(monkeypatch):
    """Author and committer for commits made by workers and merges."""

    for prefix in ("GIT_AUTHOR", "GIT_COMMITTER"):
        monkeypatch.setenv(f"{prefix}_NAME", "Test")
        monkeypatch.setenv(f"{prefix}_EMAIL", "test@example.com")
    return monkeypatch
