"""File-based locks that serialise cpctl invocations touching one instance."""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import IO

GLOBAL_LOCK_NAME = "cpctl"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired before the timeout."""


@dataclass(slots=True)
class LockHandle:
    """An acquired lock and the time spent waiting for it."""

    path: Path
    wait_ms: int
    _handle: IO[str]


@dataclass(slots=True)
class LockBundle:
    """Several locks acquired together."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Return the total wait across all handles."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Acquire advisory ``flock`` locks under the runtime directory."""

    def __init__(self, runtime_dir: Path, default_timeout: float) -> None:
        """Initialise the manager rooted at *runtime_dir*."""
        self.runtime_dir = runtime_dir
        self.default_timeout = default_timeout

    def lock_path(self, name: str) -> Path:
        """Return the lock file path for *name*."""
        safe = name.replace("/", "-")
        return self.runtime_dir / f"{safe}.lock"

    @contextmanager
    def instance_lock(self, name: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for control plane *name*."""
        with self._acquire(self.lock_path(name), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_instances(
        self,
        names: Iterable[str],
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock, then each instance lock in sorted order."""
        with ExitStack() as stack:
            handles = [stack.enter_context(self._acquire(self.lock_path(GLOBAL_LOCK_NAME), timeout))]
            for name in sorted(set(names)):
                handles.append(stack.enter_context(self._acquire(self.lock_path(name), timeout)))
            yield LockBundle(handles)

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        handle = path.open("a+", encoding="utf-8")
        started = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - started >= limit:
                        raise LockTimeoutError(
                            f"Timed out after {limit:.1f}s waiting for lock {path}."
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - started) * 1000)
            handle.seek(0)
            handle.truncate()
            handle.write(json.dumps({"pid": os.getpid(), "path": str(path)}))
            handle.flush()
            try:
                yield LockHandle(path=path, wait_ms=wait_ms, _handle=handle)
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
