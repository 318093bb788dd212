from __future__ import annotations

import asyncio
import os
from dataclasses import replace
from pathlib import Path

import pytest

from scopeward.errors import LockTimeoutError
from scopeward.locking import (
    FileLockManager,
    InMemoryLockManager,
    NullLockManager,
    build_lock_manager,
)
from scopeward.settings import RuntimeSettings


@pytest.mark.asyncio
async def test_file_lock_excludes_other_managers(tmp_path: Path) -> None:
    first = FileLockManager(tmp_path, poll_interval=0.01)
    second = FileLockManager(tmp_path, poll_interval=0.01)

    handle = await first.acquire("acme/test")
    with pytest.raises(LockTimeoutError) as excinfo:
        await second.acquire("acme/test", timeout=0.05)
    assert excinfo.value.path == "acme/test"

    await handle.release()
    other = await second.acquire("acme/test", timeout=0.05)
    await other.release()


@pytest.mark.asyncio
async def test_file_lock_is_per_path_not_hierarchical(tmp_path: Path) -> None:
    locks = FileLockManager(tmp_path, poll_interval=0.01)
    async with locks.hold("acme/test"):
        async with locks.hold("acme/test/backend", timeout=0.05):
            assert await locks.is_locked("acme/test/backend")
        assert await locks.is_locked("acme/test")


@pytest.mark.asyncio
async def test_waiter_acquires_once_holder_releases(tmp_path: Path) -> None:
    locks = FileLockManager(tmp_path, poll_interval=0.01)
    handle = await locks.acquire("acme/test")

    waiter = asyncio.create_task(locks.acquire("acme/test", timeout=1.0))
    await asyncio.sleep(0.05)
    assert not waiter.done()

    await handle.release()
    second = await waiter
    assert await locks.is_locked("acme/test")
    await second.release()
    assert not await locks.is_locked("acme/test")


@pytest.mark.asyncio
async def test_release_is_idempotent_and_records_holder(tmp_path: Path) -> None:
    locks = FileLockManager(tmp_path)
    handle = await locks.acquire("acme/test")

    holder = locks.holder("acme/test")
    assert holder is not None
    assert holder.pid == os.getpid()

    await handle.release()
    await handle.release()
    assert handle.released
    assert locks.holder("acme/test") is None


@pytest.mark.asyncio
async def test_force_release_unblocks_new_acquirers(tmp_path: Path) -> None:
    stuck = FileLockManager(tmp_path)
    rescuer = FileLockManager(tmp_path, poll_interval=0.01)
    handle = await stuck.acquire("acme/test")

    await rescuer.force_release("acme/test")
    rescued = await rescuer.acquire("acme/test", timeout=0.05)
    await rescued.release()
    await handle.release()


@pytest.mark.asyncio
async def test_in_memory_lock_times_out_and_zero_timeout_succeeds_when_free() -> None:
    locks = InMemoryLockManager()
    handle = await locks.acquire("acme/test", timeout=0)

    with pytest.raises(LockTimeoutError):
        await locks.acquire("acme/test", timeout=0.02)

    await locks.release(handle)
    assert not await locks.is_locked("acme/test")


@pytest.mark.asyncio
async def test_in_memory_force_release() -> None:
    locks = InMemoryLockManager()
    handle = await locks.acquire("acme/test")
    await locks.force_release("acme/test")

    assert handle.released
    again = await locks.acquire("acme/test", timeout=0.02)
    # releasing the broken handle must not free the new holder
    await handle.release()
    assert await locks.is_locked("acme/test")
    await locks.release(again)
    assert not await locks.is_locked("acme/test")


@pytest.mark.asyncio
async def test_null_lock_never_contends() -> None:
    locks = NullLockManager()
    first = await locks.acquire("acme/test")
    second = await locks.acquire("acme/test", timeout=0)
    assert not await locks.is_locked("acme/test")
    await first.release()
    await second.release()


def test_build_lock_manager_selects_backend(tmp_path: Path) -> None:
    settings = RuntimeSettings(state_dir=str(tmp_path))
    assert isinstance(build_lock_manager(settings, tmp_path), FileLockManager)
    assert isinstance(build_lock_manager(replace(settings, lock_backend="memory"), tmp_path), InMemoryLockManager)
    assert isinstance(build_lock_manager(replace(settings, enable_locking=False), tmp_path), NullLockManager)
