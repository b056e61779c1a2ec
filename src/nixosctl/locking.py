"""Advisory file locks serialising mutating operations per target host.

The convergence engine itself is lock-free. The CLI holds a lock per target
host while it applies a resource, so two ``nixosctl`` processes on the same
machine never run cleanup and activation against one host concurrently.
Locks are local to this machine only.
"""
from __future__ import annotations

import fcntl
import json
import os
import re
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

_POLL_INTERVAL = 0.05
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout elapses."""


@dataclass(frozen=True, slots=True)
class LockHandle:
    """Information about a held lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Create and acquire lock files beneath ``runtime_dir/locks``."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock directory and default acquisition timeout."""
        self.lock_dir = Path(runtime_dir).expanduser() / "locks"
        self.default_timeout = default_timeout

    def path_for(self, target_host: str) -> Path:
        """Return the lock file path used for *target_host*."""
        safe = _UNSAFE_CHARS.sub("_", target_host.strip()) or "_"
        return self.lock_dir / f"{safe}.lock"

    @contextmanager
    def target_lock(
        self,
        target_host: str,
        *,
        timeout: float | None = None,
    ) -> Iterator[LockHandle]:
        """Hold the lock for *target_host* for the duration of the block."""
        self.lock_dir.mkdir(parents=True, exist_ok=True)
        path = self.path_for(target_host)
        budget = self.default_timeout if timeout is None else timeout
        start = time.monotonic()
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= budget:
                        raise LockTimeoutError(
                            f"Timed out after {budget:.1f}s waiting for the lock on "
                            f"'{target_host}' ({path})."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            _write_metadata(fd, path, target_host)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path, target_host: str) -> None:
    payload = json.dumps(
        {
            "pid": os.getpid(),
            "path": str(path),
            "target_host": target_host,
            "acquired_at": datetime.now(UTC).isoformat(timespec="seconds"),
        }
    ).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, payload)


__all__ = ["LockHandle", "LockManager", "LockTimeoutError"]
