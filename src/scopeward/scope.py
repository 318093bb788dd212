from __future__ import annotations

import asyncio
import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable, Iterator, Mapping, Protocol

from .canonical import fingerprint, state_size
from .errors import DuplicateResourceError, ResourceNotFoundError, ScopeNotFoundError
from .locking import LockManager, build_lock_manager
from .models import (
    CostEstimate,
    Environment,
    ResourceRecord,
    ScopeMetadata,
    ScopeRecord,
    ScopeSnapshot,
    ScopeState,
    ScopeStats,
    utcnow,
)
from .settings import RuntimeSettings
from .state_store import FileStateStore
from .utils import (
    join_scope_path,
    normalize_scope_path,
    parent_scope_path,
    parse_scope_path,
    scope_kind,
    scope_name,
    stage_name,
)

logger = logging.getLogger(__name__)


class OrphanPolicy(Protocol):
    """Externally supplied rule deciding which recorded resources are no longer needed."""

    def is_orphaned(self, record: ResourceRecord) -> bool: ...


class DesiredResources:
    """Orphan policy backed by the set of resource ids the desired configuration declares."""

    def __init__(self, resource_ids: Iterable[str]) -> None:
        self.resource_ids = frozenset(resource_ids)

    def is_orphaned(self, record: ResourceRecord) -> bool:
        return record.id not in self.resource_ids


class PredicatePolicy:
    def __init__(self, predicate: Callable[[ResourceRecord], bool]) -> None:
        self.predicate = predicate

    def is_orphaned(self, record: ResourceRecord) -> bool:
        return bool(self.predicate(record))


def derive_metadata(
    path: str,
    resource_count: int,
    settings: RuntimeSettings,
    *,
    previous: ScopeMetadata | None = None,
) -> ScopeMetadata:
    """Compute advisory metadata for a scope from its stage name and size."""
    stage = stage_name(path)
    environment = Environment.UNKNOWN
    if stage is not None:
        if settings.is_protected(stage):
            environment = Environment.PRODUCTION
        elif stage.startswith("pr-"):
            environment = Environment.PREVIEW
        elif stage in {settings.default_stage, "default"}:
            environment = Environment.DEVELOPMENT

    if resource_count > 10:
        cost = CostEstimate.HIGH
    elif resource_count > 3:
        cost = CostEstimate.MEDIUM
    else:
        cost = CostEstimate.LOW

    now = utcnow()
    return ScopeMetadata(
        environment=environment,
        is_ephemeral=stage is not None and (stage.startswith("pr-") or "temp" in stage),
        estimated_cost=cost,
        created_at=previous.created_at if previous is not None else now,
        last_updated=now,
        last_activity=now,
    )


class Scope:
    """One node of the ownership hierarchy (application, stage or nested scope).

    Every mutation is a read-modify-write of the persisted document under
    the scope's lock.  Reads never lock and may observe a stale snapshot
    under concurrent writers.
    """

    def __init__(
        self,
        path: str,
        store: FileStateStore,
        locks: LockManager,
        *,
        settings: RuntimeSettings | None = None,
        orphan_policy: OrphanPolicy | None = None,
    ) -> None:
        self.path = normalize_scope_path(path)
        self.kind = scope_kind(self.path)
        self.store = store
        self.locks = locks
        self.settings = settings if settings is not None else RuntimeSettings()
        self.orphan_policy = orphan_policy
        self._finalizing = False

    @classmethod
    def from_path(
        cls,
        path: str,
        settings: RuntimeSettings,
        *,
        repo_root: Path | None = None,
        orphan_policy: OrphanPolicy | None = None,
    ) -> "Scope":
        store = FileStateStore.from_settings(settings, repo_root)
        return cls(
            path,
            store,
            build_lock_manager(settings, store.root),
            settings=settings,
            orphan_policy=orphan_policy,
        )

    def __repr__(self) -> str:
        return f"Scope({self.path!r}, kind={self.kind.value})"

    # ------------------------------------------------------------------
    # Hierarchy
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return scope_name(self.path)

    @property
    def stage(self) -> str | None:
        return stage_name(self.path)

    def child(self, name: str) -> "Scope":
        return Scope(
            join_scope_path(self.path, name),
            self.store,
            self.locks,
            settings=self.settings,
            orphan_policy=self.orphan_policy,
        )

    def parent(self) -> "Scope | None":
        parent_path = parent_scope_path(self.path)
        if parent_path is None:
            return None
        return Scope(parent_path, self.store, self.locks, settings=self.settings)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> ScopeState:
        """Lifecycle state; reads the filesystem, so async callers go through a thread."""
        return self._current_state()

    def _current_state(self) -> ScopeState:
        if self._finalizing:
            return ScopeState.FINALIZING
        if self.store.exists(self.path):
            return ScopeState.INITIALIZED
        if self.store.is_destroyed(self.path):
            return ScopeState.DESTROYED
        return ScopeState.UNINITIALIZED

    @contextmanager
    def finalizing(self) -> Iterator[None]:
        self._finalizing = True
        try:
            yield
        finally:
            self._finalizing = False

    async def initialize(self) -> bool:
        """Create the persisted document if absent.

        A destroyed path is recreated.  When the parent scope already has
        a document, this scope registers itself there.

        Returns:
            True if a new document was written.

        Raises:
            StateCorruptionError: If an existing document cannot be parsed.
            LockTimeoutError: If the scope lock cannot be acquired.
        """
        async with self.locks.hold(self.path):
            if await asyncio.to_thread(self.store.exists, self.path):
                await self.load()
                created = False
            else:
                record = ScopeRecord(path=self.path, metadata=derive_metadata(self.path, 0, self.settings))
                await self.save(record)
                created = True
                logger.info("Initialized scope %s", self.path)

        parent = self.parent()
        if parent is not None and await asyncio.to_thread(self.store.exists, parent.path):
            await parent.register_nested_scope(self.name)
        return created

    # ------------------------------------------------------------------
    # Unlocked primitives (caller holds the lock)
    # ------------------------------------------------------------------

    async def load(self) -> ScopeRecord:
        """Read the persisted document. The caller must hold the scope lock to rely on it."""
        return await asyncio.to_thread(self.store.read, self.path)

    async def load_if_exists(self) -> ScopeRecord | None:
        try:
            return await self.load()
        except ScopeNotFoundError:
            return None

    async def save(self, record: ScopeRecord) -> None:
        """Persist *record*. The caller must hold the scope lock."""
        await asyncio.to_thread(self.store.write, self.path, record)

    async def remove_state(self) -> None:
        """Delete the persisted document. The caller must hold the scope lock."""
        await asyncio.to_thread(self.store.delete, self.path)

    async def _mutate(self, change: Callable[[ScopeRecord], bool]) -> ScopeRecord:
        async with self.locks.hold(self.path):
            record = await self.load()
            if change(record):
                record.metadata = derive_metadata(
                    self.path, len(record.resources), self.settings, previous=record.metadata
                )
                await self.save(record)
            return record

    # ------------------------------------------------------------------
    # Resources
    # ------------------------------------------------------------------

    async def add_resource(self, resource_id: str, record: ResourceRecord | Mapping[str, Any]) -> ResourceRecord:
        """Record a new resource as owned by this scope.

        Raises:
            DuplicateResourceError: If *resource_id* already exists here.
            ScopeNotFoundError: If the scope is uninitialized or destroyed.
            ValueError: If *record* carries a different id.
        """
        if isinstance(record, ResourceRecord):
            if record.id != resource_id:
                raise ValueError(f"record id {record.id!r} does not match resource id {resource_id!r}")
            resource = record.model_copy(deep=True)
        else:
            resource = ResourceRecord.model_validate({**record, "id": resource_id})
        resource.updated_at = utcnow()

        def change(state: ScopeRecord) -> bool:
            if resource_id in state.resources:
                raise DuplicateResourceError(self.path, resource_id)
            state.resources[resource_id] = resource
            return True

        await self._mutate(change)
        logger.debug("Added %s resource %s to %s", resource.type, resource_id, self.path)
        return resource

    async def remove_resource(self, resource_id: str) -> ResourceRecord:
        """Forget a resource without deleting it.

        Raises:
            ResourceNotFoundError: If the scope does not own *resource_id*.
        """
        removed: list[ResourceRecord] = []

        def change(state: ScopeRecord) -> bool:
            if resource_id not in state.resources:
                raise ResourceNotFoundError(self.path, resource_id)
            removed.append(state.resources.pop(resource_id))
            return True

        await self._mutate(change)
        return removed[0]

    async def get_resources(self) -> dict[str, ResourceRecord]:
        """Return a snapshot of owned resources; empty when no document exists."""
        record = await self.load_if_exists()
        if record is None:
            return {}
        return {resource_id: resource.model_copy(deep=True) for resource_id, resource in record.resources.items()}

    async def find_orphaned_resources(self, policy: OrphanPolicy | None = None) -> list[str]:
        """Return ids of resources the orphan policy flags as no longer needed.

        Without a policy (argument or constructor) nothing is considered orphaned.
        """
        policy = policy if policy is not None else self.orphan_policy
        if policy is None:
            return []
        resources = await self.get_resources()
        return [resource_id for resource_id, resource in resources.items() if policy.is_orphaned(resource)]

    # ------------------------------------------------------------------
    # Nested scopes
    # ------------------------------------------------------------------

    async def register_nested_scope(self, name: str) -> None:
        """Register an immediate child segment. Idempotent."""
        (segment,) = _single_segment(name)

        def change(state: ScopeRecord) -> bool:
            if segment in state.nested_scope_names:
                return False
            state.nested_scope_names.add(segment)
            return True

        await self._mutate(change)

    async def unregister_nested_scope(self, name: str) -> None:
        (segment,) = _single_segment(name)

        def change(state: ScopeRecord) -> bool:
            if segment not in state.nested_scope_names:
                return False
            state.nested_scope_names.discard(segment)
            return True

        await self._mutate(change)

    async def get_nested_scopes(self) -> set[str]:
        record = await self.load_if_exists()
        return set(record.nested_scope_names) if record is not None else set()

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    async def is_locked(self) -> bool:
        return await self.locks.is_locked(self.path)

    async def get_snapshot(self) -> ScopeSnapshot:
        record = await self.load_if_exists()
        snapshot = ScopeSnapshot(
            scope_path=self.path,
            kind=self.kind,
            state=await asyncio.to_thread(self._current_state),
            is_locked=await self.is_locked(),
        )
        if record is not None:
            snapshot.total_resources = len(record.resources)
            snapshot.nested_scopes = sorted(record.nested_scope_names)
            snapshot.state_size = state_size(record)
            snapshot.fingerprint = fingerprint(record)
            snapshot.created_at = record.metadata.created_at
            snapshot.last_updated = record.metadata.last_updated
        return snapshot

    async def get_metadata(self) -> ScopeMetadata:
        """Advisory metadata recomputed from the current document."""
        record = await self.load_if_exists()
        if record is None:
            return derive_metadata(self.path, 0, self.settings)
        metadata = derive_metadata(self.path, len(record.resources), self.settings, previous=record.metadata)
        metadata.last_updated = record.metadata.last_updated
        metadata.last_activity = record.metadata.last_activity
        return metadata

    async def get_stats(self) -> ScopeStats:
        record = await self.load_if_exists()
        if record is None:
            return ScopeStats(total_resources=0, nested_scopes=0, state_size=0)
        return ScopeStats(
            total_resources=len(record.resources),
            nested_scopes=len(record.nested_scope_names),
            state_size=state_size(record),
            last_updated=record.metadata.last_updated,
        )


def _single_segment(name: str) -> tuple[str]:
    segments = parse_scope_path(name)
    if len(segments) != 1:
        raise ValueError(f"nested scope name must be a single path segment, got: {name!r}")
    return (segments[0],)
