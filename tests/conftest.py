from __future__ import annotations

from pathlib import Path

import pytest

from scopeward.errors import ResourceDeletionError
from scopeward.finalization import FinalizationEngine
from scopeward.locking import FileLockManager
from scopeward.models import ResourceRecord
from scopeward.scope import Scope
from scopeward.settings import RuntimeSettings
from scopeward.state_store import FileStateStore


class FakeProvisioner:
    """In-memory provisioner with scripted failures.

    ``failures`` maps a resource id to the number of attempts that fail
    before deletion succeeds (``None`` fails forever).  Ids in
    ``unexpected`` raise a plain ``RuntimeError`` instead of
    ``ResourceDeletionError``.
    """

    def __init__(self, failures: dict[str, int | None] | None = None, unexpected: set[str] | None = None) -> None:
        self.failures = dict(failures or {})
        self.unexpected = set(unexpected or ())
        self.calls: list[str] = []
        self.deleted: list[str] = []
        self.created: list[str] = []

    async def create(self, record: ResourceRecord) -> None:
        self.created.append(record.id)

    async def delete(self, record: ResourceRecord) -> None:
        self.calls.append(record.id)
        if record.id in self.failures:
            remaining = self.failures[record.id]
            if remaining is None or remaining > 0:
                if remaining is not None:
                    self.failures[record.id] = remaining - 1
                if record.id in self.unexpected:
                    raise RuntimeError(f"backend exploded deleting {record.id}")
                raise ResourceDeletionError(record.id, "simulated failure")
        self.deleted.append(record.id)


@pytest.fixture
def settings(tmp_path: Path) -> RuntimeSettings:
    return RuntimeSettings(
        state_dir=str(tmp_path / "state"),
        lock_timeout=1.0,
        lock_poll_interval=0.01,
        retry_delay=0.0,
        default_stage="dev",
    )


@pytest.fixture
def store(settings: RuntimeSettings) -> FileStateStore:
    return FileStateStore.from_settings(settings)


@pytest.fixture
def locks(store: FileStateStore, settings: RuntimeSettings) -> FileLockManager:
    return FileLockManager(store.root, default_timeout=settings.lock_timeout, poll_interval=settings.lock_poll_interval)


@pytest.fixture
def provisioner() -> FakeProvisioner:
    return FakeProvisioner()


@pytest.fixture
def engine(
    store: FileStateStore,
    locks: FileLockManager,
    provisioner: FakeProvisioner,
    settings: RuntimeSettings,
) -> FinalizationEngine:
    return FinalizationEngine(store, locks, provisioner, settings)


@pytest.fixture
def make_scope(store: FileStateStore, locks: FileLockManager, settings: RuntimeSettings):  # noqa: ANN201
    def _make(path: str) -> Scope:
        return Scope(path, store, locks, settings=settings)

    return _make


async def seed_scope(scope: Scope, *resource_ids: str, resource_type: str = "test") -> Scope:
    await scope.initialize()
    for resource_id in resource_ids:
        await scope.add_resource(resource_id, {"type": resource_type, "name": resource_id})
    return scope


@pytest.fixture
def seed():  # noqa: ANN201
    return seed_scope
