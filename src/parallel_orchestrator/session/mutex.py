"""Directory-based mutual exclusion shared by every process on one host.

Holding the mutex means having created its marker directory. ``mkdir`` is
atomic on every filesystem we care about, so two processes can never both
succeed. Contention is resolved by polling with a fixed delay.
"""

from __future__ import annotations

import errno
import logging
import os
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from pathlib import Path

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY_SECONDS = 0.1
DEFAULT_MAX_ATTEMPTS = 60


class MutexTimeoutError(TimeoutError):
    """Raised when the marker stayed contended for every allowed attempt."""

    def __init__(self, marker: Path, attempts: int) -> None:
        super().__init__(f"Failed to acquire lock {marker} after {attempts} attempts")
        self.marker = marker
        self.attempts = attempts


class DirectoryMutex:
    """Cross-process mutex backed by an exclusively created directory."""

    def __init__(
        self,
        marker: Path,
        *,
        retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be > 0")
        if retry_delay_seconds < 0:
            raise ValueError("retry_delay_seconds must be >= 0")
        self.marker = marker
        self.retry_delay_seconds = retry_delay_seconds
        self.max_attempts = max_attempts
        self._sleep = sleep
        self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def try_acquire(self) -> bool:
        """Single non-blocking attempt; ``False`` means somebody else holds it."""

        self.marker.parent.mkdir(parents=True, exist_ok=True)
        try:
            os.mkdir(self.marker)
        except FileExistsError:
            return False
        except OSError as error:
            # Windows may report a racing mkdir as EACCES on an existing path.
            if error.errno == errno.EEXIST:
                return False
            raise
        self._held = True
        return True

    def acquire(self) -> None:
        """Poll until the marker is created or attempts run out."""

        attempts = 0
        while attempts < self.max_attempts:
            if self.try_acquire():
                return
            attempts += 1
            if attempts < self.max_attempts:
                self._sleep(self.retry_delay_seconds)
        logger.debug("Mutex %s still contended after %d attempts", self.marker, attempts)
        raise MutexTimeoutError(self.marker, attempts)

    def release(self) -> None:
        """Remove the marker. Failures are ignored; release is best effort."""

        self._held = False
        try:
            os.rmdir(self.marker)
        except OSError:
            logger.debug("Ignoring failure to remove mutex marker %s", self.marker)

    def __enter__(self) -> DirectoryMutex:
        self.acquire()
        return self

    def __exit__(self, *_: object) -> None:
        self.release()


@contextmanager
def hold_mutex(
    marker: Path,
    *,
    retry_delay_seconds: float = DEFAULT_RETRY_DELAY_SECONDS,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
) -> Iterator[DirectoryMutex]:
    """Run a block while holding the mutex at ``marker``."""

    mutex = DirectoryMutex(
        marker,
        retry_delay_seconds=retry_delay_seconds,
        max_attempts=max_attempts,
    )
    mutex.acquire()
    try:
        yield mutex
    finally:
        mutex.release()
