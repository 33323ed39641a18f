from __future__ import annotations

from pathlib import Path

import allure
import pytest

from parallel_orchestrator.config import (
    DEFAULT_WORKER_COMMAND,
    LockSettings,
    SchedulerSettings,
    Settings,
    WorkerSettings,
    WorkspaceSettings,
)

pytestmark = [
    allure.epic("Configuration"),
    allure.feature("Environment Settings"),
]


def test_from_env_defaults(clean_env) -> None:
    settings = Settings.from_env()

    assert settings.state_dir == Path(".parallel-orchestrator")
    assert settings.log_level == "WARNING"
    assert settings.scheduler.policy == "ready"
    assert settings.scheduler.max_workers == 0
    assert settings.worker.command_template == DEFAULT_WORKER_COMMAND
    assert settings.worker.sync_before_work
    assert settings.workspace.mode == "worktree"
    assert settings.workspace.merge_on_success
    assert settings.worker.queue_poll_seconds == 1.0
    settings.validate()


def test_from_env_reads_every_group(clean_env) -> None:
    clean_env.setenv("PARALLEL_ORCHESTRATOR_STATE_DIR", "/tmp/po-state")
    clean_env.setenv("PARALLEL_ORCHESTRATOR_LOG_LEVEL", " debug ")
    clean_env.setenv("PARALLEL_ORCHESTRATOR_POLICY", "Phased")
    clean_env.setenv("PARALLEL_ORCHESTRATOR_MAX_WORKERS", "3")
    clean_env.setenv("PARALLEL_ORCHESTRATOR_LOW_CONFIDENCE_THRESHOLD", "0.25")
    clean_env.setenv("PARALLEL_ORCHESTRATOR_WORKER_ARGS", "--model 'fast one'")
    clean_env.setenv("PARALLEL_ORCHESTRATOR_WORKER_TIMEOUT_SECONDS", "90")
    clean_env.setenv("PARALLEL_ORCHESTRATOR_SYNC_BEFORE_WORK", "off")
    clean_env.setenv("PARALLEL_ORCHESTRATOR_WORKSPACE_MODE", "SHARED")
    clean_env.setenv("PARALLEL_ORCHESTRATOR_MERGE_ON_SUCCESS", "no")
    clean_env.setenv("PARALLEL_ORCHESTRATOR_QUEUE_POLL_SECONDS", "0.25")
    clean_env.setenv("PARALLEL_ORCHESTRATOR_LOCK_MAX_ATTEMPTS", "5")

    settings = Settings.from_env()

    assert settings.state_dir == Path("/tmp/po-state")
    assert settings.log_level == "DEBUG"
    assert settings.scheduler == SchedulerSettings(
        policy="phased",
        max_workers=3,
        low_confidence_threshold=0.25,
    )
    assert settings.worker.extra_args == ("--model", "fast one")
    assert settings.worker.timeout_seconds == 90
    assert not settings.worker.sync_before_work
    assert settings.workspace.mode == "shared"
    assert not settings.workspace.merge_on_success
    assert settings.worker.queue_poll_seconds == 0.25
    assert settings.lock.max_attempts == 5
    settings.validate()


def test_from_env_explicit_state_dir_wins(clean_env) -> None:
    clean_env.setenv("PARALLEL_ORCHESTRATOR_STATE_DIR", "/ignored")

    assert Settings.from_env(state_dir=Path("custom")).state_dir == Path("custom")


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("PARALLEL_ORCHESTRATOR_MAX_WORKERS", "many", "Invalid integer value"),
        ("PARALLEL_ORCHESTRATOR_LOW_CONFIDENCE_THRESHOLD", "high", "Invalid number"),
        ("PARALLEL_ORCHESTRATOR_HEADLESS", "maybe", "Invalid boolean value"),
    ],
)
def test_from_env_rejects_malformed_values(clean_env, name: str, value: str, message: str) -> None:
    clean_env.setenv(name, value)

    with pytest.raises(ValueError, match=f"{message} for {name}"):
        Settings.from_env()


@pytest.mark.parametrize(
    ("settings", "message"),
    [
        (Settings(scheduler=SchedulerSettings(policy="fifo")), "PARALLEL_ORCHESTRATOR_POLICY"),
        (Settings(scheduler=SchedulerSettings(max_workers=-1)), "MAX_WORKERS"),
        (
            Settings(scheduler=SchedulerSettings(low_confidence_threshold=1.5)),
            "LOW_CONFIDENCE_THRESHOLD",
        ),
        (Settings(worker=WorkerSettings(command_template="  ")), "WORKER_COMMAND"),
        (Settings(worker=WorkerSettings(timeout_seconds=-1)), "WORKER_TIMEOUT_SECONDS"),
        (Settings(worker=WorkerSettings(queue_poll_seconds=-1)), "QUEUE_POLL_SECONDS"),
        (Settings(workspace=WorkspaceSettings(mode="docker")), "WORKSPACE_MODE"),
        (Settings(lock=LockSettings(max_attempts=0)), "LOCK_MAX_ATTEMPTS"),
        (Settings(log_level="LOUD"), "LOG_LEVEL"),
    ],
)
def test_validate_names_the_offending_variable(settings: Settings, message: str) -> None:
    with pytest.raises(ValueError, match=message):
        settings.validate()


def test_resolve_state_dir_is_relative_to_repo(tmp_path: Path) -> None:
    assert Settings().resolve_state_dir(tmp_path) == tmp_path / ".parallel-orchestrator"
    absolute = tmp_path / "elsewhere"
    assert Settings(state_dir=absolute).resolve_state_dir(Path("/repo")) == absolute


def test_executor_config_is_json_friendly() -> None:
    settings = Settings(worker=WorkerSettings(extra_args=("--model", "fast")))

    config = settings.executor_config()

    assert config["worker"]["extra_args"] == ["--model", "fast"]
    assert config["scheduler"]["policy"] == "ready"
    assert config["workspace"]["mode"] == "worktree"
