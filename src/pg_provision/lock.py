"""Advisory lock preventing two provisioning runs on the same host."""
from __future__ import annotations

import fcntl
import logging
import os
from pathlib import Path
from typing import IO, Optional

logger = logging.getLogger(__name__)


class LockHeldError(RuntimeError):
    """Raised when another run holds the lock."""

    def __init__(self, path: Path, holder: Optional[str]) -> None:
        self.path = path
        self.holder = holder
        owner = f" by {holder}" if holder else ""
        super().__init__(f"Another provisioning run holds {path}{owner}")


class RunLock:
    """``flock`` on a pid file; released on close or process exit."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._handle: Optional[IO[str]] = None

    @property
    def path(self) -> Path:
        return self._path

    def acquire(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        handle = open(self._path, "a+", encoding="utf-8")
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except OSError as exc:
            handle.seek(0)
            holder = handle.read().strip() or None
            handle.close()
            raise LockHeldError(self._path, holder) from exc
        handle.seek(0)
        handle.truncate()
        handle.write(f"pid={os.getpid()}\n")
        handle.flush()
        self._handle = handle
        logger.debug("Acquired run lock %s", self._path)

    def release(self) -> None:
        if self._handle is None:
            return
        try:
            self._handle.seek(0)
            self._handle.truncate()
            fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
        finally:
            self._handle.close()
            self._handle = None
        logger.debug("Released run lock %s", self._path)

    def __enter__(self) -> "RunLock":
        self.acquire()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()
