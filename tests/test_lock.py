from __future__ import annotations

import json
import os
from pathlib import Path

import allure
import pytest

from helpers import FakeProbe
from parallel_orchestrator.session.lock import (
    LOCK_FILE_NAME,
    LOCK_MUTEX_NAME,
    InstanceLock,
    InstanceLockGuard,
    LockHeldError,
    format_stale_lock_warning,
)
from parallel_orchestrator.session.process import (
    PosixProcessProbe,
    WindowsProcessProbe,
    default_probe,
)

pytestmark = [
    allure.epic("Session State"),
    allure.feature("Single-Instance Lock"),
]

OTHER_PID = 4242


def _seed_lock(state_dir: Path, pid: int = OTHER_PID, session_id: str = "old") -> None:
    state_dir.mkdir(parents=True, exist_ok=True)
    (state_dir / LOCK_FILE_NAME).write_text(
        json.dumps(
            {
                "pid": pid,
                "session_id": session_id,
                "acquired_at": "2026-01-01T00:00:00+00:00",
                "cwd": str(state_dir.parent),
                "hostname": "host",
            },
        ),
        "utf-8",
    )


def test_check_lock_reports_absent_live_and_stale(tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    lock = InstanceLock(state_dir, probe=FakeProbe(OTHER_PID))
    status = lock.check_lock()
    assert not status.is_locked and not status.is_stale and status.lock is None

    _seed_lock(state_dir)
    live = lock.check_lock()
    assert live.is_locked and not live.is_stale
    assert live.lock is not None and live.lock.pid == OTHER_PID

    stale = InstanceLock(state_dir, probe=FakeProbe()).check_lock()
    assert stale.is_stale and not stale.is_locked


def test_acquire_writes_holder_and_release_removes_it(tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    lock = InstanceLock(state_dir, probe=FakeProbe(), pid=1001)

    result = lock.acquire_lock_with_prompt("session-1")

    assert result.acquired and result.error is None
    holder = lock.read_lock_file()
    assert holder is not None
    assert (holder.pid, holder.session_id) == (1001, "session-1")
    assert not (state_dir / LOCK_MUTEX_NAME).exists()

    assert lock.release_lock()
    assert not (state_dir / LOCK_FILE_NAME).exists()
    assert not lock.release_lock()


def test_live_holder_blocks_acquisition(tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    _seed_lock(state_dir)
    lock = InstanceLock(state_dir, probe=FakeProbe(OTHER_PID), pid=1001)

    result = lock.acquire_lock_with_prompt("session-2")

    assert not result.acquired
    assert result.existing_pid == OTHER_PID
    assert result.error == f"Orchestrator already running in this repository (PID: {OTHER_PID})"
    assert lock.read_lock_file().session_id == "old"


def test_stale_lock_is_cleaned_without_prompt_in_non_interactive_mode(tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    _seed_lock(state_dir)
    prompts: list[str] = []
    lock = InstanceLock(state_dir, probe=FakeProbe(), pid=1001)

    result = lock.acquire_lock_with_prompt(
        "session-3",
        non_interactive=True,
        confirm=lambda text: prompts.append(text) or True,
    )

    assert result.acquired
    assert prompts == []
    assert lock.read_lock_file().pid == 1001


def test_declined_stale_cleanup_keeps_old_lock(tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    _seed_lock(state_dir)
    prompts: list[str] = []
    lock = InstanceLock(state_dir, probe=FakeProbe(), pid=1001)

    result = lock.acquire_lock_with_prompt(
        "session-4",
        confirm=lambda text: prompts.append(text) or False,
    )

    assert not result.acquired
    assert result.error == "Stale lock cleanup declined by user"
    assert result.existing_pid == OTHER_PID
    assert str(OTHER_PID) in prompts[0]
    assert lock.read_lock_file().pid == OTHER_PID


def test_force_evicts_live_holder(tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    _seed_lock(state_dir)
    lock = InstanceLock(state_dir, probe=FakeProbe(OTHER_PID), pid=1001)

    result = lock.acquire_lock_with_prompt("session-5", force=True)

    assert result.acquired
    holder = lock.read_lock_file()
    assert (holder.pid, holder.session_id) == (1001, "session-5")


def test_release_leaves_foreign_lock_unless_asked(tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    _seed_lock(state_dir)
    lock = InstanceLock(state_dir, probe=FakeProbe(OTHER_PID), pid=1001)

    assert not lock.release_lock()
    assert (state_dir / LOCK_FILE_NAME).exists()
    assert lock.release_lock(only_if_owner=False)
    assert not (state_dir / LOCK_FILE_NAME).exists()


def test_unreadable_lock_file_reads_as_absent(tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    state_dir.mkdir()
    (state_dir / LOCK_FILE_NAME).write_text("{not json", "utf-8")
    lock = InstanceLock(state_dir, probe=FakeProbe(), pid=1001)

    assert lock.read_lock_file() is None
    assert lock.acquire_lock_with_prompt("session-6").acquired


def test_guard_raises_lock_held_error_with_pid(tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    _seed_lock(state_dir)
    lock = InstanceLock(state_dir, probe=FakeProbe(OTHER_PID), pid=1001)

    with pytest.raises(LockHeldError) as excinfo, InstanceLockGuard(lock, "session-7"):
        pass

    assert excinfo.value.existing_pid == OTHER_PID
    assert not excinfo.value.result.acquired


def test_guard_releases_on_exit_even_after_error(tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    lock = InstanceLock(state_dir, probe=FakeProbe())

    with pytest.raises(RuntimeError), InstanceLockGuard(lock, "session-8"):
        assert lock.read_lock_file().pid == os.getpid()
        raise RuntimeError("boom")

    assert not (state_dir / LOCK_FILE_NAME).exists()


def test_stale_warning_mentions_holder_details(tmp_path: Path) -> None:
    state_dir = tmp_path / "state"
    _seed_lock(state_dir, session_id="abc")
    holder = InstanceLock(state_dir, probe=FakeProbe()).read_lock_file()

    text = format_stale_lock_warning(holder)

    assert str(OTHER_PID) in text
    assert "abc" in text
    assert "host" in text


def test_posix_probe_sees_current_process() -> None:
    probe = PosixProcessProbe()
    assert probe.is_running(os.getpid())
    assert not probe.is_running(0)
    assert not probe.is_running(-5)


def test_default_probe_follows_platform() -> None:
    assert isinstance(default_probe("nt"), WindowsProcessProbe)
    assert isinstance(default_probe("posix"), PosixProcessProbe)
