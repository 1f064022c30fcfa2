"""File-based locks guarding mutating ethnodectl commands.

A mutating command first takes the global ``ethnodectl.lock`` and then one lock
per instance it touches. Lockfiles stay on disk after release and carry the
holder's pid for diagnostics.
"""
from __future__ import annotations

import errno
import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path

_POLL_INTERVAL = 0.05
GLOBAL_LOCK_NAME = "ethnodectl"


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout."""


@dataclass(slots=True)
class LockHandle:
    """A held lock and how long it took to acquire."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of held locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Total time spent waiting for every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire global and per-instance locks under ``runtime_dir``."""

    def __init__(self, runtime_dir: Path, default_timeout: float) -> None:
        """Store the lock directory and default timeout."""
        self.runtime_dir = runtime_dir.expanduser()
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lockfile path for *name*."""
        safe = name.replace("/", "-")
        return self.runtime_dir / f"{safe}.lock"

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for a single instance."""
        with self._acquire(self.lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def global_lock(self, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global lock."""
        with self._acquire(self.lock_path(GLOBAL_LOCK_NAME), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        include_global: bool = True,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Hold the global lock (optionally) then each instance lock in sorted order."""
        handles: list[LockHandle] = []
        with ExitStack() as stack:
            if include_global:
                handles.append(stack.enter_context(self.global_lock(timeout=timeout)))
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self.instance_lock(name, timeout=timeout)))
            yield LockBundle(handles=handles)

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except OSError as exc:
                    if exc.errno not in (errno.EAGAIN, errno.EACCES):
                        raise
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from exc
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            payload = json.dumps({"pid": os.getpid(), "path": str(path)})
            os.ftruncate(fd, 0)
            os.write(fd, payload.encode("utf-8"))
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
