from __future__ import annotations

import json
import logging
from pathlib import Path

import allure
import pytest

from parallel_orchestrator.session.models import (
    PersistedSessionState,
    SessionStatus,
    TaskStatus,
    WorkspaceDescriptor,
    WorkUnit,
    WorkUnitStatus,
    WorkUnitTask,
)
from parallel_orchestrator.session.persistence import (
    SESSION_FILE_NAME,
    SessionStore,
    add_agent_to_session,
    cancel_agent_task,
    complete_agent_task,
    complete_session,
    create_session,
    fail_session,
    get_resumable_tasks,
    get_session_summary,
    interrupt_session,
    is_session_resumable,
    mark_tasks,
    pause_session,
    remove_agent_from_session,
    resume_session,
)

pytestmark = [
    allure.epic("Session State"),
    allure.feature("Persistence & Transitions"),
]


def _work_units() -> list[WorkUnit]:
    return [
        WorkUnit(
            id="api",
            name="API",
            tasks=[WorkUnitTask("T1", "Add endpoint"), WorkUnitTask("T2", "Test endpoint")],
        ),
        WorkUnit(id="docs", name="Docs", tasks=[WorkUnitTask("T3", "Document endpoint")]),
    ]


def _workspace(name: str = "ws-1") -> WorkspaceDescriptor:
    return WorkspaceDescriptor(
        id=name,
        name=name,
        path=f"/repo/.worktrees/{name}",
        branch=f"parallel/{name}",
        status="active",
        created_at="2026-01-01T00:00:00+00:00",
    )


def _session() -> PersistedSessionState:
    return create_session(_work_units(), {"scheduler": {"policy": "ready"}}, "/repo")


def test_create_session_starts_running_with_everything_pending() -> None:
    state = _session()

    assert state.status == SessionStatus.RUNNING
    assert [task.id for task in state.tasks] == ["T1", "T2", "T3"]
    assert {task.status for task in state.tasks} == {TaskStatus.PENDING}
    assert [unit.task_ids for unit in state.work_units] == [["T1", "T2"], ["T3"]]
    assert state.stats.total_tasks == 3
    assert state.stats.completed_tasks == 0
    assert state.agents == [] and state.workspaces == []


def test_store_round_trip_preserves_state(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "state")
    state = add_agent_to_session(
        _session(),
        agent_id="worker-1",
        task_ids=["T1"],
        work_unit_id="api",
        workspace=_workspace(),
        task_title="Add endpoint",
    )

    saved = store.save_session(state)
    loaded = store.load_session()

    assert store.has_session()
    assert loaded == saved
    assert loaded.tasks[0].status == TaskStatus.RUNNING
    assert loaded.agents[0].workspace_branch == "parallel/ws-1"


def test_missing_and_corrupt_records_read_as_absent(tmp_path: Path, caplog) -> None:
    store = SessionStore(tmp_path / "state")
    assert store.load_session() is None

    store.path.parent.mkdir(parents=True)
    store.path.write_text("{broken", "utf-8")
    with caplog.at_level(logging.WARNING):
        assert store.load_session() is None
    assert "corrupt session record" in caplog.text

    store.path.write_text(json.dumps({"session_id": "x"}), "utf-8")
    assert store.load_session() is None


def test_unknown_schema_version_loads_best_effort(tmp_path: Path, caplog) -> None:
    store = SessionStore(tmp_path / "state")
    payload = _session().to_dict()
    payload["version"] = 99
    store.path.parent.mkdir(parents=True)
    (store.state_dir / SESSION_FILE_NAME).write_text(json.dumps(payload), "utf-8")

    with caplog.at_level(logging.WARNING):
        loaded = store.load_session()

    assert loaded is not None
    assert loaded.session_id == payload["session_id"]
    assert "schema version" in caplog.text


def test_update_and_delete_session(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "state", retry_delay_seconds=0.01)
    assert store.update_session(pause_session) is None

    store.save_session(_session())
    paused = store.update_session(pause_session)

    assert paused is not None and paused.is_paused
    assert store.load_session().status == SessionStatus.PAUSED
    assert not (store.state_dir / "session.json.d").exists()
    assert store.delete_session()
    assert not store.delete_session()


def test_agent_completion_updates_tasks_units_and_stats() -> None:
    state = add_agent_to_session(
        _session(),
        agent_id="worker-1",
        task_ids=["T1", "T2"],
        work_unit_id="api",
        workspace=_workspace(),
    )
    assert state.work_units[0].status == WorkUnitStatus.RUNNING

    done = complete_agent_task(state, "worker-1", success=True, duration_ms=1500)

    assert [task.status for task in done.tasks[:2]] == [TaskStatus.COMPLETED] * 2
    assert done.work_units[0].status == WorkUnitStatus.COMPLETED
    assert done.stats.completed_tasks == 2
    assert [record.task_id for record in done.completed_tasks] == ["T1", "T2"]
    assert done.completed_tasks[0].duration_ms == 1500

    again = complete_agent_task(done, "worker-1", success=False, duration_ms=1)
    assert again == done

    removed = remove_agent_from_session(done, "worker-1")
    assert removed.agents == [] and removed.workspaces == []


def test_failed_agent_marks_work_unit_failed() -> None:
    state = add_agent_to_session(
        _session(),
        agent_id="worker-1",
        task_ids=["T3"],
        work_unit_id="docs",
        workspace=_workspace(),
    )

    failed = complete_agent_task(state, "worker-1", success=False, duration_ms=10, error="boom")

    assert failed.tasks[2].status == TaskStatus.FAILED
    assert failed.work_units[1].status == WorkUnitStatus.FAILED
    assert failed.agents[0].error == "boom"
    assert failed.stats.failed_tasks == 1


def test_cancelled_tasks_are_resumable() -> None:
    state = add_agent_to_session(
        _session(),
        agent_id="worker-1",
        task_ids=["T1"],
        work_unit_id="api",
        workspace=_workspace(),
    )

    cancelled = cancel_agent_task(state, "worker-1", reason="killed")

    assert cancelled.tasks[0].status == TaskStatus.CANCELLED
    assert cancelled.stats.cancelled_tasks == 1
    assert [task.id for task in get_resumable_tasks(cancelled)] == ["T1", "T2", "T3"]


def test_mark_tasks_records_skipped_failures() -> None:
    state = mark_tasks(_session(), ["T2"], TaskStatus.FAILED, error="dependency T1 failed")

    assert state.tasks[1].status == TaskStatus.FAILED
    assert state.completed_tasks[0].error == "dependency T1 failed"
    assert not state.completed_tasks[0].success
    assert mark_tasks(state, [], TaskStatus.FAILED) is state


def test_agent_needs_at_least_one_task() -> None:
    with pytest.raises(ValueError, match="at least one task"):
        add_agent_to_session(
            _session(),
            agent_id="worker-1",
            task_ids=[],
            work_unit_id="api",
            workspace=_workspace(),
        )


def test_lifecycle_helpers_and_resumability() -> None:
    state = _session()
    paused = pause_session(state)

    assert paused.is_paused and paused.paused_at is not None
    assert is_session_resumable(paused)
    resumed = resume_session(paused)
    assert resumed.status == SessionStatus.RUNNING and not resumed.is_paused
    assert is_session_resumable(interrupt_session(state))
    assert not is_session_resumable(complete_session(state))
    assert not is_session_resumable(fail_session(state))


def test_summary_counts_active_work() -> None:
    state = add_agent_to_session(
        mark_tasks(_session(), ["T3"], TaskStatus.COMPLETED),
        agent_id="worker-1",
        task_ids=["T1"],
        work_unit_id="api",
        workspace=_workspace(),
    )

    summary = get_session_summary(state)

    assert summary.total_tasks == 3
    assert summary.completed_tasks == 1
    assert summary.pending_tasks == 1
    assert summary.active_agents == 1
    assert summary.active_workspaces == 1
    assert summary.is_resumable
