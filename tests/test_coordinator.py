from __future__ import annotations

import time
from pathlib import Path

import allure
import pytest

from helpers import STUB_WORKER_COMMAND, init_repo, requires_git, stub_command
from parallel_orchestrator.config import WorkerSettings
from parallel_orchestrator.orchestrator.coordinator import (
    KILLED_ERROR,
    WorkerCoordinator,
    WorkerSpawnError,
    build_worker_command,
    parse_progress,
)
from parallel_orchestrator.orchestrator.models import (
    EventType,
    OrchestratorEvent,
    StoryGroup,
    WorkerStatus,
)
from parallel_orchestrator.orchestrator.workspace import (
    GitWorktreeProvider,
    SharedWorkspaceProvider,
)

pytestmark = [
    allure.epic("Workers"),
    allure.feature("Lifecycle Coordinator"),
]


def _coordinator(
    tmp_path: Path,
    command: str = STUB_WORKER_COMMAND,
    **overrides,
) -> tuple[WorkerCoordinator, list[OrchestratorEvent]]:
    settings = WorkerSettings(
        command_template=command,
        sync_before_work=False,
        graceful_shutdown_seconds=1,
        **overrides,
    )
    coordinator = WorkerCoordinator(
        tmp_path,
        settings,
        SharedWorkspaceProvider(tmp_path),
        state_dir=tmp_path / "state",
    )
    events: list[OrchestratorEvent] = []
    coordinator.add_listener(events.append)
    return coordinator, events


def _wait_terminal(coordinator: WorkerCoordinator, timeout: float = 30.0) -> OrchestratorEvent:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        event = coordinator.next_event(timeout=0.5)
        if event is not None and event.is_terminal_worker_event:
            return event
    raise AssertionError("worker did not finish in time")


def test_successful_worker_reports_started_progress_then_completed(tmp_path: Path) -> None:
    coordinator, events = _coordinator(tmp_path, stub_command("--steps", "2"))

    worker_id = coordinator.spawn_worker("T1")
    terminal = _wait_terminal(coordinator)

    assert terminal.type == EventType.WORKER_COMPLETED
    assert [event.type for event in events] == [
        EventType.WORKER_STARTED,
        EventType.WORKER_PROGRESS,
        EventType.WORKER_PROGRESS,
        EventType.WORKER_COMPLETED,
    ]
    assert [event.progress for event in events[1:3]] == [50, 100]
    assert {event.worker_id for event in events} == {worker_id}
    state = coordinator.get_worker_state(worker_id)
    assert state.status == WorkerStatus.COMPLETED
    assert state.exit_code == 0
    assert state.progress == 100
    assert coordinator.active_worker_ids == []
    log = (tmp_path / "state" / "logs" / f"{worker_id}.log").read_text("utf-8")
    assert "progress: 100" in log


def test_failing_worker_reports_exit_code_and_last_output(tmp_path: Path) -> None:
    coordinator, events = _coordinator(tmp_path, stub_command("--fail", "T2"))

    worker_id = coordinator.spawn_worker("T2")
    terminal = _wait_terminal(coordinator)

    assert terminal.type == EventType.WORKER_FAILED
    assert terminal.error == "Exit code 3: task T2 failed on purpose"
    assert coordinator.get_worker_state(worker_id).status == WorkerStatus.FAILED
    assert sum(1 for event in events if event.is_terminal_worker_event) == 1


def test_range_group_is_passed_as_from_to(tmp_path: Path) -> None:
    record = tmp_path / "record.txt"
    coordinator, _ = _coordinator(tmp_path, stub_command("--record", str(record)))

    coordinator.spawn_worker(StoryGroup(("A", "B", "C")))
    terminal = _wait_terminal(coordinator)

    assert terminal.type == EventType.WORKER_COMPLETED
    assert terminal.task_ids == ("A", "B", "C")
    assert record.read_text("utf-8").splitlines() == ["start A..C", "end A..C"]


def test_kill_all_emits_one_killed_event_per_worker(tmp_path: Path) -> None:
    coordinator, events = _coordinator(tmp_path, stub_command("--hang", "H1", "--hang", "H2"))
    first = coordinator.spawn_worker("H1")
    second = coordinator.spawn_worker("H2")

    killed = coordinator.kill_all()

    assert {event.worker_id for event in killed} == {first, second}
    assert all(event.type == EventType.WORKER_FAILED for event in killed)
    assert all(event.error == KILLED_ERROR for event in killed)
    assert coordinator.get_worker_state(first).status == WorkerStatus.KILLED
    assert coordinator.active_worker_ids == []
    assert coordinator.kill_all() == []
    # Exit notifications of killed workers change nothing.
    for _ in range(2):
        assert coordinator.next_event(timeout=5) is None
    terminal = [event for event in events if event.is_terminal_worker_event]
    assert len(terminal) == 2


def test_kill_all_reports_workers_that_already_exited_with_their_real_outcome(
    tmp_path: Path,
) -> None:
    coordinator, events = _coordinator(tmp_path, stub_command("--hang", "H1", "--fail", "F1"))
    finished = coordinator.spawn_worker("Q1")
    failed = coordinator.spawn_worker("F1")
    hanging = coordinator.spawn_worker("H1")
    # Both exit before their notifications are applied.
    coordinator._workers[finished].process.wait(timeout=30)
    coordinator._workers[failed].process.wait(timeout=30)

    outcome = {event.worker_id: event for event in coordinator.kill_all()}

    assert outcome[finished].type == EventType.WORKER_COMPLETED
    assert coordinator.get_worker_state(finished).status == WorkerStatus.COMPLETED
    assert outcome[failed].error == "Exit code 3: task F1 failed on purpose"
    assert coordinator.get_worker_state(failed).status == WorkerStatus.FAILED
    assert outcome[hanging].error == KILLED_ERROR
    assert coordinator.get_worker_state(hanging).status == WorkerStatus.KILLED
    terminal = [event for event in events if event.is_terminal_worker_event]
    assert len(terminal) == 3


@requires_git
def test_worktree_workers_are_merged_one_at_a_time(tmp_path: Path, git_identity) -> None:
    repo = init_repo(tmp_path / "repo")
    settings = WorkerSettings(
        command_template=stub_command("--touch", "{task_id}.txt", "--touch", "shared.txt"),
        sync_before_work=False,
        graceful_shutdown_seconds=1,
    )
    coordinator = WorkerCoordinator(
        repo,
        settings,
        GitWorktreeProvider(repo),
        state_dir=tmp_path / "state",
        merge_on_success=True,
    )
    first = coordinator.spawn_worker("T1")
    second = coordinator.spawn_worker("T2")

    outcome = {}
    for _ in range(2):
        event = _wait_terminal(coordinator)
        outcome[event.worker_id] = event

    merged, conflicted = sorted(
        (first, second),
        key=lambda worker_id: outcome[worker_id].type != EventType.WORKER_COMPLETED,
    )
    assert outcome[merged].type == EventType.WORKER_COMPLETED
    assert outcome[conflicted].type == EventType.WORKER_FAILED
    assert outcome[conflicted].error == "Merge conflicts in 1 file(s): shared.txt"
    winner = coordinator.get_group(merged).task_ids[0]
    loser = coordinator.get_group(conflicted).task_ids[0]
    assert (repo / f"{winner}.txt").exists()
    assert not (repo / f"{loser}.txt").exists()
    assert (repo / "shared.txt").read_text("utf-8") == f"{winner}\n"
    assert not Path(coordinator.get_workspace(merged).path).exists()
    assert Path(coordinator.get_workspace(conflicted).path).exists()


def test_worker_timeout_terminates_process(tmp_path: Path) -> None:
    coordinator, _ = _coordinator(tmp_path, stub_command("--hang", "T1"), timeout_seconds=1)

    worker_id = coordinator.spawn_worker("T1")
    terminal = _wait_terminal(coordinator)

    assert terminal.type == EventType.WORKER_FAILED
    assert terminal.error == "Timed out after 1 s"
    assert coordinator.get_worker_state(worker_id).status == WorkerStatus.FAILED


def test_missing_worker_binary_is_a_permanent_spawn_error(tmp_path: Path) -> None:
    coordinator, events = _coordinator(tmp_path, "definitely-not-a-worker-binary {task_args}")

    with pytest.raises(WorkerSpawnError) as excinfo:
        coordinator.spawn_worker("T1")

    assert not excinfo.value.transient
    assert events == []
    assert coordinator.active_worker_ids == []


def test_wake_unblocks_next_event(tmp_path: Path) -> None:
    coordinator, _ = _coordinator(tmp_path)

    coordinator.wake()

    assert coordinator.next_event(timeout=5) is None


def test_build_worker_command_renders_placeholders(tmp_path: Path) -> None:
    single = build_worker_command(
        "engine run {task_args} --cwd {workdir}",
        group=StoryGroup(("T1",)),
        workdir=tmp_path / "my dir",
        headless=True,
        extra_args=("--model", "fast"),
    )
    ranged = build_worker_command(
        "engine {task_id} {from_id} {to_id} {task_args}",
        group=StoryGroup(("T1", "T2", "T3")),
        workdir=tmp_path,
        headless=False,
    )

    assert single == [
        "engine",
        "run",
        "--task",
        "T1",
        "--cwd",
        str(tmp_path / "my dir"),
        "--headless",
        "--model",
        "fast",
    ]
    assert ranged == ["engine", "T1", "T1", "T3", "--from", "T1", "--to", "T3"]


def test_build_worker_command_rejects_bad_templates(tmp_path: Path) -> None:
    group = StoryGroup(("T1",))
    with pytest.raises(WorkerSpawnError, match="placeholder"):
        build_worker_command("run {prompt}", group=group, workdir=tmp_path, headless=False)
    with pytest.raises(WorkerSpawnError, match="empty"):
        build_worker_command("   ", group=group, workdir=tmp_path, headless=False)


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        ("progress: 40", 40),
        ("Progress 7%", 7),
        ('{"progress": 62.5}', 62),
        ("progress: 250", 100),
        ('{"event": "log"}', None),
        ("compiling module", None),
    ],
)
def test_parse_progress(line: str, expected: int | None) -> None:
    assert parse_progress(line) == expected
