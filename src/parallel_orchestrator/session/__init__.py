"""Cross-process session state: locking, persistence and crash recovery.

Everything here relies on two filesystem guarantees only: ``mkdir`` fails
when the directory exists, and ``os.replace`` swaps a file atomically. The
orchestrator and its workers are separate processes, possibly from
different invocations, so no in-memory lock can protect this state.
"""

from parallel_orchestrator.session.lock import (
    InstanceLock,
    InstanceLockGuard,
    LockAcquisitionResult,
    LockCheckResult,
    LockFile,
    LockHeldError,
)
from parallel_orchestrator.session.mutex import DirectoryMutex, MutexTimeoutError, hold_mutex
from parallel_orchestrator.session.persistence import SessionStore, create_session
from parallel_orchestrator.session.recovery import (
    RecoveryResult,
    detect_and_recover_stale_session,
    detect_orphaned_workspaces,
)

__all__ = [
    "DirectoryMutex",
    "InstanceLock",
    "InstanceLockGuard",
    "LockAcquisitionResult",
    "LockCheckResult",
    "LockFile",
    "LockHeldError",
    "MutexTimeoutError",
    "RecoveryResult",
    "SessionStore",
    "create_session",
    "detect_and_recover_stale_session",
    "detect_orphaned_workspaces",
    "hold_mutex",
]
