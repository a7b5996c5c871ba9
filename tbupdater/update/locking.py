"""Exclusive ownership of the install root for one pipeline run."""

from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from types import TracebackType

from tbupdater.update.models import AlreadyRunningError, InstallIOError

_LOGGER = logging.getLogger(__name__)


class LockToken:
    """Advisory ``flock`` held on ``<install_root>/.lock``.

    Acquisition never waits: if another process (or another token in this
    process) owns the lock, :class:`AlreadyRunningError` is raised at once.
    """

    def __init__(self, lock_path: Path) -> None:
        self._lock_path = Path(lock_path)
        self._fd: int | None = None

    @property
    def held(self) -> bool:
        return self._fd is not None

    def acquire(self) -> "LockToken":
        if self._fd is not None:
            return self
        try:
            self._lock_path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(self._lock_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise InstallIOError(f"Failed to open lock file {self._lock_path}: {exc}") from exc
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            os.close(fd)
            raise AlreadyRunningError(
                f"Another update is already running against {self._lock_path.parent}"
            ) from exc
        except OSError as exc:
            os.close(fd)
            raise InstallIOError(f"Failed to lock {self._lock_path}: {exc}") from exc

        self._fd = fd
        _LOGGER.debug("Acquired install lock %s", self._lock_path)
        return self

    def release(self) -> None:
        fd, self._fd = self._fd, None
        if fd is None:
            return
        try:
            fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)
        _LOGGER.debug("Released install lock %s", self._lock_path)

    def __enter__(self) -> "LockToken":
        return self.acquire()

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


__all__ = ["LockToken"]
