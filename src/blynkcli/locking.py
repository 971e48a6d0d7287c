"""Advisory file locks guarding pid-file and installation-record updates."""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout expires."""


@dataclass(frozen=True, slots=True)
class LockHandle:
    """Details about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Hand out ``flock``-based locks stored under a runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Initialise the manager rooted at *runtime_dir*."""
        self.runtime_dir = runtime_dir.expanduser()
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = name.replace("/", "-")
        return self.runtime_dir / f"{safe}.lock"

    @contextmanager
    def server_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Serialise mutations of the managed server state."""
        with self.acquire("server", timeout=timeout) as handle:
            yield handle

    @contextmanager
    def acquire(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Acquire the exclusive lock called *name*."""
        path = self.lock_path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        limit = self.default_timeout if timeout is None else timeout
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z"),
    }
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, json.dumps(payload).encode("utf-8"))


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
