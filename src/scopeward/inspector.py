"""Read-only views over persisted scopes for the ``list`` and ``inspect`` commands.

Nothing here acquires a lock or writes to the store.  Results reflect
whatever snapshot was on disk at read time.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from .errors import ScopeNotFoundError, StateCorruptionError
from .locking import LockManager, build_lock_manager
from .models import NestedScopeView, ScopeValidation, StageInspection, StageSummary
from .scope import OrphanPolicy, Scope
from .settings import RuntimeSettings
from .state_store import FileStateStore
from .utils import join_scope_path, normalize_scope_path

logger = logging.getLogger(__name__)


class ScopeInspector:
    def __init__(self, store: FileStateStore, locks: LockManager, settings: RuntimeSettings | None = None) -> None:
        self.store = store
        self.locks = locks
        self.settings = settings if settings is not None else RuntimeSettings()

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, *, repo_root: Path | None = None) -> "ScopeInspector":
        store = FileStateStore.from_settings(settings, repo_root)
        return cls(store, build_lock_manager(settings, store.root), settings)

    def scope(self, path: str, orphan_policy: OrphanPolicy | None = None) -> Scope:
        return Scope(path, self.store, self.locks, settings=self.settings, orphan_policy=orphan_policy)

    async def list_applications(self) -> list[str]:
        paths = await asyncio.to_thread(lambda: list(self.store.iter_scopes()))
        return sorted({path.split("/", 1)[0] for path in paths})

    async def list_stages(self, app_name: str) -> list[StageSummary]:
        app_name = normalize_scope_path(app_name)
        stages = await asyncio.to_thread(lambda: list(self.store.list_stages(app_name)))
        summaries: list[StageSummary] = []
        for stage in stages:
            scope = self.scope(join_scope_path(app_name, stage))
            try:
                snapshot = await scope.get_snapshot()
            except StateCorruptionError as exc:
                logger.warning("Skipping unreadable stage %s: %s", scope.path, exc)
                continue
            summaries.append(
                StageSummary(
                    app_name=app_name,
                    stage_name=stage,
                    scope_path=scope.path,
                    total_resources=snapshot.total_resources,
                    nested_scopes=snapshot.nested_scopes,
                    is_locked=snapshot.is_locked,
                    last_updated=snapshot.last_updated,
                )
            )
        return summaries

    async def inspect(
        self,
        app_name: str,
        stage: str,
        *,
        depth: int = 2,
        orphan_policy: OrphanPolicy | None = None,
    ) -> StageInspection:
        """Collect snapshot, metadata, resources, nested tree and orphan candidates for a stage.

        Raises:
            ScopeNotFoundError: If the stage has no persisted document.
            StateCorruptionError: If the stage document is unreadable.
        """
        scope = self.scope(join_scope_path(app_name, stage), orphan_policy)
        record = await scope.load()
        snapshot = await scope.get_snapshot()
        metadata = await scope.get_metadata()
        orphaned = await scope.find_orphaned_resources()
        inspection = StageInspection(
            snapshot=snapshot,
            metadata=metadata,
            resources=dict(record.resources),
            nested_scopes=await self.nested_tree(scope.path, depth),
            orphaned_resources=orphaned,
            validation=await self.validate(scope.path),
        )
        inspection.recommendations = recommendations(inspection)
        return inspection

    async def nested_tree(self, path: str, depth: int) -> list[NestedScopeView]:
        """Walk registered nested scopes of *path* down to *depth* levels."""
        if depth <= 0:
            return []
        views: list[NestedScopeView] = []
        for name in sorted(await self.scope(path).get_nested_scopes()):
            child = self.scope(join_scope_path(path, name))
            try:
                resources = await child.get_resources()
            except StateCorruptionError as exc:
                logger.warning("Cannot read nested scope %s: %s", child.path, exc)
                resources = {}
            views.append(
                NestedScopeView(
                    scope_name=name,
                    scope_path=child.path,
                    resource_count=len(resources),
                    resources=resources,
                    nested_scopes=await self.nested_tree(child.path, depth - 1),
                )
            )
        return views

    async def validate(self, path: str) -> ScopeValidation:
        """Check a persisted document for integrity problems without modifying it."""
        scope = self.scope(path)
        try:
            record = await scope.load()
        except ScopeNotFoundError as exc:
            return ScopeValidation(valid=False, errors=[str(exc)])
        except StateCorruptionError as exc:
            return ScopeValidation(valid=False, errors=[exc.reason])

        errors: list[str] = []
        warnings: list[str] = []
        for resource_id, resource in record.resources.items():
            if resource.id != resource_id:
                errors.append(f"Resource key {resource_id} does not match record id {resource.id}")
        for name in sorted(record.nested_scope_names):
            if not await asyncio.to_thread(self.store.exists, join_scope_path(scope.path, name)):
                warnings.append(f"Nested scope {name} is registered but has no state")
        if await scope.is_locked():
            warnings.append("Scope is currently locked")
        return ScopeValidation(valid=not errors, errors=errors, warnings=warnings)


def recommendations(inspection: StageInspection) -> list[str]:
    snapshot = inspection.snapshot
    advice: list[str] = []
    if snapshot.is_locked:
        advice.append("Stage is currently locked; another process may be working on it")
    if inspection.metadata.is_ephemeral and snapshot.total_resources > 0:
        advice.append("This appears to be an ephemeral stage; consider finalizing it when done")
    if inspection.orphaned_resources:
        advice.append(f"{len(inspection.orphaned_resources)} orphaned resources detected; consider pruning them")
    if snapshot.total_resources == 0 and not snapshot.nested_scopes:
        advice.append("Stage appears to be empty; safe to finalize if no longer needed")
    for warning in inspection.validation.warnings:
        if warning.startswith("Nested scope"):
            advice.append(f"{warning}; finalize the stage to clean up the registration")
    return advice
