"""Advisory file locks guarding instance mutations.

Locks are plain files under the runtime directory, held with ``fcntl.flock``.
An orchestration on one instance holds ``<site>.lock``. Work that validates
against every registered instance (a fresh install) first takes the global
``storectl.lock``, then the instance lock. Lock files stay on disk after
release so that the last holder can be inspected when diagnosing a hang.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path

GLOBAL_LOCK_NAME = "storectl"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """A held lock."""

    path: Path
    wait_ms: int
    _fd: int

    def release(self) -> None:
        """Release the underlying file lock."""
        if self._fd < 0:
            return
        try:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
        finally:
            os.close(self._fd)
            self._fd = -1


@dataclass(slots=True)
class LockBundle:
    """Several locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Return the total time spent waiting for the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire global and per-instance locks under *runtime_dir*."""

    def __init__(self, runtime_dir: Path, *, default_timeout: float = 30.0) -> None:
        """Initialise the manager; the directory is created lazily."""
        self.runtime_dir = Path(runtime_dir)
        self.default_timeout = default_timeout

    def _acquire(self, path: Path, timeout: float | None) -> LockHandle:
        path.parent.mkdir(parents=True, exist_ok=True)
        limit = self.default_timeout if timeout is None else timeout
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        started = time.monotonic()
        while True:
            try:
                fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                break
            except BlockingIOError:
                if time.monotonic() - started >= limit:
                    os.close(fd)
                    raise LockTimeoutError(
                        f"Timed out after {limit:.1f}s waiting for lock {path}."
                    ) from None
                time.sleep(_POLL_INTERVAL)
        wait_ms = int((time.monotonic() - started) * 1000)
        payload = json.dumps({"pid": os.getpid(), "path": str(path), "acquired_at": time.time()})
        os.ftruncate(fd, 0)
        os.pwrite(fd, payload.encode("utf-8"), 0)
        return LockHandle(path=path, wait_ms=wait_ms, _fd=fd)

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        return self.runtime_dir / f"{name}.lock"

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single instance."""
        handle = self._acquire(self.lock_path(name), timeout)
        try:
            yield handle
        finally:
            handle.release()

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the process-wide storectl lock."""
        with self.instance_lock(GLOBAL_LOCK_NAME, timeout=timeout) as handle:
            yield handle

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Take the global lock then each instance lock in sorted order."""
        handles: list[LockHandle] = []
        with ExitStack() as stack:
            handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.instance_lock(name, timeout=timeout)))
            yield LockBundle(handles=handles)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
