"""Advisory file locks serialising maintenance commands.

Locks are ``flock`` based so they disappear with the holding process. The
lock file itself is left behind after release; it carries JSON metadata
(pid, path, acquisition time) that helps operators identify the holder.
"""
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

GLOBAL_LOCK_NAME = "unmsctl"
_POLL_INTERVAL = 0.05


class LockError(RuntimeError):
    """Raised when a lock cannot be prepared."""


class LockTimeoutError(LockError):
    """Raised when a lock is not acquired within the timeout."""


@dataclass(frozen=True)
class LockHandle:
    """Information about an acquired lock."""

    path: Path
    wait_ms: int


class LockManager:
    """Acquire named lock files under the runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Remember where lock files live and how long to wait for them."""
        self.runtime_dir = runtime_dir.expanduser()
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = name.replace("/", "-")
        return self.runtime_dir / f"{safe}.lock"

    @contextmanager
    def maintenance_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the host-wide maintenance lock for the duration of the block."""
        with self.lock(GLOBAL_LOCK_NAME, timeout=timeout) as handle:
            yield handle

    @contextmanager
    def lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Acquire the lock called *name*, releasing it on every exit path."""
        path = self.lock_path(name)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise LockError(f"Unable to open lock file {path}: {exc}") from exc

        try:
            wait_ms = self._acquire(fd, path, self.default_timeout if timeout is None else timeout)
            try:
                self._write_metadata(fd, path)
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)

    def describe_holder(self, name: str = GLOBAL_LOCK_NAME) -> dict[str, object] | None:
        """Return the metadata last written to lock *name*, if readable."""
        path = self.lock_path(name)
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return None
        return payload if isinstance(payload, dict) else None

    # ------------------------------------------------------------------
    def _acquire(self, fd: int, path: Path, timeout: float) -> int:
        started = time.monotonic()
        deadline = started + max(timeout, 0.0)
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError:
                if time.monotonic() >= deadline:
                    holder = self.describe_holder(path.stem)
                    detail = f" (held by pid {holder.get('pid')})" if holder else ""
                    raise LockTimeoutError(
                        f"Timed out after {timeout:.1f}s waiting for lock {path}{detail}. "
                        "Another maintenance command is still running."
                    ) from None
                time.sleep(_POLL_INTERVAL)
                continue
            return int((time.monotonic() - started) * 1000)

    @staticmethod
    def _write_metadata(fd: int, path: Path) -> None:
        payload = {
            "pid": os.getpid(),
            "path": str(path),
            "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
        }
        data = json.dumps(payload).encode("utf-8")
        os.ftruncate(fd, 0)
        os.lseek(fd, 0, os.SEEK_SET)
        os.write(fd, data)


__all__ = ["LockError", "LockHandle", "LockManager", "LockTimeoutError"]
