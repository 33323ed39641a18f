"""Host process liveness probes."""

from __future__ import annotations

import os
from typing import Protocol


class ProcessProbe(Protocol):
    """Answers whether a process id still refers to a running process."""

    def is_running(self, pid: int) -> bool: ...


class PosixProcessProbe:
    """Probe via signal 0, which checks existence without delivering anything."""

    def is_running(self, pid: int) -> bool:
        if pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # Exists, but owned by another user.
            return True
        except OSError:
            return False
        return True


class WindowsProcessProbe:
    """Probe via the process table (OpenProcess + GetExitCodeProcess)."""

    _PROCESS_QUERY_LIMITED_INFORMATION = 0x1000
    _STILL_ACTIVE = 259

    def is_running(self, pid: int) -> bool:
        if pid <= 0:
            return False
        import ctypes  # noqa: PLC0415
        from ctypes import wintypes  # noqa: PLC0415

        kernel32 = ctypes.windll.kernel32  # type: ignore[attr-defined]
        handle = kernel32.OpenProcess(self._PROCESS_QUERY_LIMITED_INFORMATION, False, pid)
        if not handle:
            return False
        try:
            exit_code = wintypes.DWORD()
            if not kernel32.GetExitCodeProcess(handle, ctypes.byref(exit_code)):
                return False
            return exit_code.value == self._STILL_ACTIVE
        finally:
            kernel32.CloseHandle(handle)


def default_probe(os_name: str | None = None) -> ProcessProbe:
    """Pick the probe for the current platform."""

    if (os_name or os.name) == "nt":
        return WindowsProcessProbe()
    return PosixProcessProbe()
