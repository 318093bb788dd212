"""Per-path mutual exclusion for scope documents.

Locks are not hierarchical: holding ``app/stage`` does not cover
``app/stage/nested``.  Callers that touch several levels (the
finalization engine) acquire a lock at every level.

Three implementations share the ``LockManager`` interface:

* ``FileLockManager`` -- advisory ``fcntl.flock`` on a ``.lock`` sidecar
  in the scope directory.  ``flock`` locks belong to the open file
  description, so two managers in one process exclude each other just as
  two processes do.
* ``InMemoryLockManager`` -- one ``asyncio.Lock`` per path, single process.
* ``NullLockManager`` -- locking disabled; last writer wins.
"""

from __future__ import annotations

import asyncio
import fcntl
import logging
import os
import socket
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO, AsyncIterator

from .errors import LockTimeoutError
from .models import LockInfo
from .settings import RuntimeSettings
from .utils import normalize_scope_path, parse_scope_path

logger = logging.getLogger(__name__)

LOCK_FILENAME = ".lock"


@dataclass
class LockHandle:
    """Proof of holding the lock for one scope path."""

    path: str
    manager: "LockManager" = field(repr=False)
    token: str = field(default_factory=lambda: uuid.uuid4().hex)
    acquired_at: float = field(default_factory=time.monotonic)
    released: bool = False

    async def release(self) -> None:
        await self.manager.release(self)


class LockManager(ABC):
    enabled: bool = True

    def __init__(self, *, default_timeout: float = 30.0) -> None:
        self.default_timeout = default_timeout

    @abstractmethod
    async def acquire(self, path: str, timeout: float | None = None) -> LockHandle:
        """Acquire the lock for *path*, waiting cooperatively up to *timeout* seconds.

        Raises:
            LockTimeoutError: If the lock is still held when the timeout expires.
        """

    @abstractmethod
    async def release(self, handle: LockHandle) -> None:
        """Release *handle*. Releasing an already-released handle is a no-op."""

    @abstractmethod
    async def is_locked(self, path: str) -> bool:
        """Advisory check for diagnostics only; the answer may be stale on return."""

    @abstractmethod
    async def force_release(self, path: str) -> None:
        """Break the lock on *path* regardless of its holder."""

    @asynccontextmanager
    async def hold(self, path: str, timeout: float | None = None) -> AsyncIterator[LockHandle]:
        handle = await self.acquire(path, timeout)
        try:
            yield handle
        finally:
            await self.release(handle)

    def _timeout(self, timeout: float | None) -> float:
        return self.default_timeout if timeout is None else max(timeout, 0.0)


class FileLockManager(LockManager):
    """Cross-process advisory locks backed by ``flock`` sidecar files."""

    def __init__(self, root: Path, *, default_timeout: float = 30.0, poll_interval: float = 0.1) -> None:
        super().__init__(default_timeout=default_timeout)
        self.root = root
        self.poll_interval = poll_interval
        self._files: dict[str, IO[str]] = {}

    def lock_path(self, path: str) -> Path:
        return self.root.joinpath(*parse_scope_path(path)) / LOCK_FILENAME

    async def acquire(self, path: str, timeout: float | None = None) -> LockHandle:
        path = normalize_scope_path(path)
        limit = self._timeout(timeout)
        deadline = time.monotonic() + limit
        lock_path = self.lock_path(path)
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        lock_file = lock_path.open("a+", encoding="utf-8")
        try:
            while True:
                try:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        raise LockTimeoutError(path, limit) from None
                    await asyncio.sleep(min(self.poll_interval, remaining))
        except BaseException:
            lock_file.close()
            raise

        info = LockInfo(pid=os.getpid(), hostname=socket.gethostname())
        lock_file.truncate(0)
        lock_file.write(info.model_dump_json())
        lock_file.flush()

        handle = LockHandle(path=path, manager=self)
        self._files[handle.token] = lock_file
        logger.debug("Acquired file lock %s", lock_path)
        return handle

    async def release(self, handle: LockHandle) -> None:
        if handle.released:
            return
        handle.released = True
        lock_file = self._files.pop(handle.token, None)
        if lock_file is None:
            return
        try:
            lock_file.truncate(0)
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
        except OSError as exc:
            logger.warning("Failed to release lock for %s cleanly: %s", handle.path, exc)
        finally:
            lock_file.close()
        logger.debug("Released file lock for %s", handle.path)

    async def is_locked(self, path: str) -> bool:
        lock_path = self.lock_path(path)
        try:
            sidecar = lock_path.open("r", encoding="utf-8")
        except FileNotFoundError:
            return False
        with sidecar:
            try:
                fcntl.flock(sidecar.fileno(), fcntl.LOCK_SH | fcntl.LOCK_NB)
            except BlockingIOError:
                return True
            fcntl.flock(sidecar.fileno(), fcntl.LOCK_UN)
            return False

    def holder(self, path: str) -> LockInfo | None:
        """Return the metadata written by the current holder, if any."""
        lock_path = self.lock_path(path)
        try:
            text = lock_path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        if not text.strip():
            return None
        try:
            return LockInfo.model_validate_json(text)
        except ValueError:
            return None

    async def force_release(self, path: str) -> None:
        # flock cannot be revoked from outside the holder; unlinking the
        # sidecar lets the next acquirer lock a fresh inode.
        path = normalize_scope_path(path)
        lock_path = self.lock_path(path)
        holder = self.holder(path)
        lock_path.unlink(missing_ok=True)
        logger.warning("Force-released lock for %s (holder: %s)", path, holder)


class InMemoryLockManager(LockManager):
    """Single-process locks keyed by scope path."""

    def __init__(self, *, default_timeout: float = 30.0) -> None:
        super().__init__(default_timeout=default_timeout)
        self._locks: dict[str, asyncio.Lock] = {}
        self._holders: dict[str, LockHandle] = {}

    async def acquire(self, path: str, timeout: float | None = None) -> LockHandle:
        path = normalize_scope_path(path)
        limit = self._timeout(timeout)
        lock = self._locks.setdefault(path, asyncio.Lock())
        if lock.locked():
            try:
                await asyncio.wait_for(lock.acquire(), timeout=limit)
            except TimeoutError:
                raise LockTimeoutError(path, limit) from None
        else:
            await lock.acquire()
        handle = LockHandle(path=path, manager=self)
        self._holders[path] = handle
        return handle

    async def release(self, handle: LockHandle) -> None:
        if handle.released:
            return
        handle.released = True
        if self._holders.get(handle.path) is not handle:
            return
        del self._holders[handle.path]
        self._locks[handle.path].release()

    async def is_locked(self, path: str) -> bool:
        lock = self._locks.get(normalize_scope_path(path))
        return lock is not None and lock.locked()

    async def force_release(self, path: str) -> None:
        path = normalize_scope_path(path)
        handle = self._holders.pop(path, None)
        if handle is None:
            return
        handle.released = True
        self._locks[path].release()
        logger.warning("Force-released in-memory lock for %s", path)


class NullLockManager(LockManager):
    """Locking disabled: every acquire succeeds immediately."""

    enabled = False

    async def acquire(self, path: str, timeout: float | None = None) -> LockHandle:
        return LockHandle(path=normalize_scope_path(path), manager=self)

    async def release(self, handle: LockHandle) -> None:
        handle.released = True

    async def is_locked(self, path: str) -> bool:
        return False

    async def force_release(self, path: str) -> None:
        return None


def build_lock_manager(settings: RuntimeSettings, root: Path) -> LockManager:
    """Select the lock implementation described by *settings*."""
    if not settings.enable_locking:
        return NullLockManager(default_timeout=settings.lock_timeout)
    if settings.lock_backend == "memory":
        return InMemoryLockManager(default_timeout=settings.lock_timeout)
    return FileLockManager(
        root,
        default_timeout=settings.lock_timeout,
        poll_interval=settings.lock_poll_interval,
    )
