"""Single-instance lock preventing concurrent runs against one checkout.

The lock marker is a JSON file describing its holder. Checking and writing
it always happens while holding a :class:`DirectoryMutex`, so two starting
processes cannot both observe "no lock" and both proceed.

A process killed with an unmaskable signal cannot release anything, which
is why a lock whose holder pid no longer exists is reported as stale and
can be reclaimed instead of blocking forever.
"""

from __future__ import annotations

import atexit
import logging
import os
import signal
import socket
import sys
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from types import TracebackType
from typing import Any

from parallel_orchestrator.session.atomic import load_json, write_json_atomic
from parallel_orchestrator.session.mutex import (
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RETRY_DELAY_SECONDS,
    DirectoryMutex,
)
from parallel_orchestrator.session.process import ProcessProbe, default_probe

logger = logging.getLogger(__name__)

LOCK_FILE_NAME = "orchestrator.lock"
LOCK_MUTEX_NAME = "orchestrator.lock.d"


@dataclass(slots=True)
class LockFile:
    """Lock holder metadata."""

    pid: int
    session_id: str
    acquired_at: str
    cwd: str
    hostname: str

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> LockFile:
        pid = raw.get("pid")
        if not isinstance(pid, int) or isinstance(pid, bool):
            raise TypeError("lock.pid must be an integer")
        return cls(
            pid=pid,
            session_id=str(raw.get("session_id", "")),
            acquired_at=str(raw.get("acquired_at", "")),
            cwd=str(raw.get("cwd", "")),
            hostname=str(raw.get("hostname", "")),
        )


@dataclass(slots=True)
class LockCheckResult:
    """Lock status: absent, held by a live process, or stale."""

    is_locked: bool
    is_stale: bool
    lock: LockFile | None = None


@dataclass(slots=True)
class LockAcquisitionResult:
    """Outcome of an acquisition attempt."""

    acquired: bool
    error: str | None = None
    existing_pid: int | None = None


class LockHeldError(RuntimeError):
    """Raised by :class:`InstanceLockGuard` when the lock could not be taken."""

    def __init__(self, result: LockAcquisitionResult) -> None:
        super().__init__(result.error or "Lock acquisition failed")
        self.result = result
        self.existing_pid = result.existing_pid


def format_stale_lock_warning(lock: LockFile) -> str:
    """Human-readable description of a lock left behind by a dead process."""

    return (
        "Stale lock detected. A previous run did not exit cleanly:\n"
        f"  PID:      {lock.pid} (no longer running)\n"
        f"  Session:  {lock.session_id}\n"
        f"  Started:  {lock.acquired_at}\n"
        f"  Host:     {lock.hostname}\n"
        "This happens when the orchestrator is terminated abruptly (crash, kill -9, power loss)."
    )


class InstanceLock:
    """Single-instance lock for one repository checkout."""

    def __init__(
        self,
        state_dir: Path,
        *,
        probe: ProcessProbe | None = None,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        pid: int | None = None,
    ) -> None:
        self.state_dir = state_dir
        self.lock_path = state_dir / LOCK_FILE_NAME
        self.probe = probe or default_probe()
        self.retry_delay_seconds = retry_delay_seconds
        self.max_attempts = max_attempts
        self.pid = pid if pid is not None else os.getpid()

    def read_lock_file(self) -> LockFile | None:
        if not self.lock_path.exists():
            return None
        try:
            return LockFile.from_dict(load_json(self.lock_path))
        except (OSError, ValueError, TypeError):
            logger.warning("Ignoring unreadable lock file %s", self.lock_path)
            return None

    def check_lock(self) -> LockCheckResult:
        """Report the lock state without modifying anything."""

        lock = self.read_lock_file()
        if lock is None:
            return LockCheckResult(is_locked=False, is_stale=False)
        running = self.probe.is_running(lock.pid)
        return LockCheckResult(is_locked=running, is_stale=not running, lock=lock)

    def acquire_lock_with_prompt(
        self,
        session_id: str,
        *,
        force: bool = False,
        non_interactive: bool = False,
        confirm: Callable[[str], bool] | None = None,
    ) -> LockAcquisitionResult:
        """Acquire the lock, resolving stale and forced cases.

        ``confirm`` receives the stale-lock description and decides whether
        to reclaim it. Without a ``confirm`` callback the stale lock is
        cleaned automatically, exactly as in non-interactive mode.
        """

        with self._mutex():
            status = self.check_lock()
            if status.lock is None:
                self._write_lock_file(session_id)
                return LockAcquisitionResult(acquired=True)

            holder = status.lock
            if force:
                logger.warning(
                    "Forcing lock acquisition, evicting previous holder (PID: %d)",
                    holder.pid,
                )
                self._replace_lock_file(session_id)
                return LockAcquisitionResult(acquired=True)

            if status.is_locked:
                return LockAcquisitionResult(
                    acquired=False,
                    error=f"Orchestrator already running in this repository (PID: {holder.pid})",
                    existing_pid=holder.pid,
                )

            if non_interactive or confirm is None:
                logger.warning("Removing stale lock (PID: %d)", holder.pid)
                self._replace_lock_file(session_id)
                return LockAcquisitionResult(acquired=True)

            if not confirm(format_stale_lock_warning(holder)):
                return LockAcquisitionResult(
                    acquired=False,
                    error="Stale lock cleanup declined by user",
                    existing_pid=holder.pid,
                )
            self._replace_lock_file(session_id)
            return LockAcquisitionResult(acquired=True)

    def release_lock(self, *, only_if_owner: bool = True) -> bool:
        """Delete the lock file. Best effort: errors are logged, never raised."""

        try:
            if only_if_owner:
                holder = self.read_lock_file()
                if holder is not None and holder.pid != self.pid:
                    return False
            self.lock_path.unlink()
        except FileNotFoundError:
            return False
        except OSError as error:
            logger.warning("Failed to release lock %s: %s", self.lock_path, error)
            return False
        return True

    def _mutex(self) -> DirectoryMutex:
        return DirectoryMutex(
            self.state_dir / LOCK_MUTEX_NAME,
            retry_delay_seconds=self.retry_delay_seconds,
            max_attempts=self.max_attempts,
        )

    def _replace_lock_file(self, session_id: str) -> None:
        self.lock_path.unlink(missing_ok=True)
        self._write_lock_file(session_id)

    def _write_lock_file(self, session_id: str) -> None:
        lock = LockFile(
            pid=self.pid,
            session_id=session_id,
            acquired_at=datetime.now(tz=UTC).isoformat(),
            cwd=str(self.state_dir.parent.resolve()),
            hostname=socket.gethostname(),
        )
        write_json_atomic(self.lock_path, lock.to_dict())


class InstanceLockGuard:
    """Owns the instance lock for the lifetime of a process entry point.

    Entering acquires the lock and installs release hooks for SIGTERM,
    SIGHUP, interpreter exit and uncaught exceptions. Exiting releases the
    lock and restores the previous handlers. Hooks are installed at most
    once per guard.
    """

    _SIGNALS = ("SIGTERM", "SIGHUP")

    def __init__(  # noqa: PLR0913
        self,
        lock: InstanceLock,
        session_id: str,
        *,
        force: bool = False,
        non_interactive: bool = False,
        confirm: Callable[[str], bool] | None = None,
    ) -> None:
        self.lock = lock
        self.session_id = session_id
        self.force = force
        self.non_interactive = non_interactive
        self.confirm = confirm
        self._hooks_installed = False
        self._previous_handlers: dict[int, Any] = {}
        self._previous_excepthook: Callable[..., Any] | None = None

    def __enter__(self) -> InstanceLockGuard:
        result = self.lock.acquire_lock_with_prompt(
            self.session_id,
            force=self.force,
            non_interactive=self.non_interactive,
            confirm=self.confirm,
        )
        if not result.acquired:
            raise LockHeldError(result)
        self._install_hooks()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()

    def release(self) -> None:
        self._remove_hooks()
        self.lock.release_lock()

    def _install_hooks(self) -> None:
        if self._hooks_installed:
            return
        self._hooks_installed = True
        atexit.register(self.lock.release_lock)
        self._previous_excepthook = sys.excepthook
        sys.excepthook = self._excepthook
        for name in self._SIGNALS:
            signum = getattr(signal, name, None)
            if signum is None:
                continue
            try:
                self._previous_handlers[signum] = signal.getsignal(signum)
                signal.signal(signum, self._signal_handler)
            except ValueError:
                # Signal handlers can only be installed in main thread.
                self._previous_handlers.pop(signum, None)

    def _remove_hooks(self) -> None:
        if not self._hooks_installed:
            return
        self._hooks_installed = False
        atexit.unregister(self.lock.release_lock)
        if self._previous_excepthook is not None:
            sys.excepthook = self._previous_excepthook
            self._previous_excepthook = None
        for signum, handler in self._previous_handlers.items():
            try:
                signal.signal(signum, handler)
            except ValueError:
                pass
        self._previous_handlers.clear()

    def _signal_handler(self, signum: int, frame: object | None) -> None:
        self.lock.release_lock()
        previous = self._previous_handlers.get(signum)
        if callable(previous):
            previous(signum, frame)
            return
        raise SystemExit(128 + signum)

    def _excepthook(
        self,
        exc_type: type[BaseException],
        exc: BaseException,
        tb: TracebackType | None,
    ) -> None:
        self.lock.release_lock()
        hook = self._previous_excepthook or sys.__excepthook__
        hook(exc_type, exc, tb)
