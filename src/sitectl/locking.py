"""Advisory file locks guarding registry and site mutations.

Locks are ``fcntl.flock`` based and live under the runtime directory. The
global ``sitectl.lock`` serialises read-modify-write cycles on the registry
index and hosts file; per-site locks (``sites/<domain>.lock``) are acquired
after the global lock, in sorted order, so concurrent invocations cannot
deadlock.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

_POLL_INTERVAL = 0.05


class LockError(RuntimeError):
    """Raised when a lock file cannot be created or acquired."""


class LockTimeoutError(LockError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """Metadata about an acquired lock."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """A set of locks acquired together."""

    handles: list[LockHandle] = field(default_factory=list)

    @property
    def wait_ms(self) -> int:
        """Return the total time spent waiting for the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


class LockManager:
    """Create and acquire advisory locks beneath *runtime_dir*."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Initialise the manager."""
        self.runtime_dir = Path(runtime_dir).expanduser()
        self.default_timeout = default_timeout

    def global_lock_path(self) -> Path:
        """Return the path of the global lock file."""
        return self.runtime_dir / "sitectl.lock"

    def site_lock_path(self, domain: str) -> Path:
        """Return the lock file path for *domain*."""
        safe = domain.strip().lower().replace("/", "-") or "_"
        return self.runtime_dir / "sites" / f"{safe}.lock"

    @contextmanager
    def site_lock(self, domain: str, *, timeout: float | None = None) -> Iterator[LockHandle]:
        """Acquire the lock for a single site."""
        with self._acquire(self.site_lock_path(domain), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_registry(
        self,
        domains: Iterable[str] = (),
        *,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by per-site locks for *domains*."""
        bundle = LockBundle()
        with ExitStack() as stack:
            bundle.handles.append(
                stack.enter_context(self._acquire(self.global_lock_path(), timeout))
            )
            for domain in sorted({d.strip().lower() for d in domains if d.strip()}):
                bundle.handles.append(
                    stack.enter_context(self._acquire(self.site_lock_path(domain), timeout))
                )
            yield bundle

    # ------------------------------------------------------------------
    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        limit = self.default_timeout if timeout is None else timeout
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as exc:
            raise LockError(f"Unable to open lock file {path}: {exc}") from exc
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
            metadata = {
                "pid": os.getpid(),
                "path": str(path),
                "acquired_at": datetime.now(UTC).isoformat(),
            }
            try:
                os.ftruncate(fd, 0)
                os.pwrite(fd, json.dumps(metadata).encode("utf-8"), 0)
            except OSError as exc:
                raise LockError(f"Unable to record lock metadata in {path}: {exc}") from exc
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


__all__ = ["LockBundle", "LockError", "LockHandle", "LockManager", "LockTimeoutError"]
