"""Recursive, retryable teardown of scopes.

Finalization is post-order: every registered nested scope is finalized
(and its lock released) before the parent touches its own resources.
Resource deletion failures are recorded in the report; only lock
timeouts and state corruption escape ``finalize``.  Under the
``aggressive`` strategy a nested scope that aborts that way is recorded
in the parent's report instead and its siblings still run.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Awaitable, Iterable, TypeVar

from .errors import ProtectedStageError, ResourceDeletionError, ScopeError
from .locking import LockManager, build_lock_manager
from .models import FinalizationReport, FinalizationSummary, ResourceRecord, ScopeRecord, Strategy
from .provisioner import ResourceProvisioner, load_provisioner
from .scope import OrphanPolicy, Scope, derive_metadata
from .settings import RuntimeSettings
from .state_store import FileStateStore
from .utils import join_scope_path, normalize_scope_path, stage_name

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def _gather_bounded(
    awaitables: Iterable[Awaitable[T]],
    max_concurrent: int,
    *,
    return_exceptions: bool = False,
) -> list[T | BaseException]:
    """Await *awaitables* concurrently, at most *max_concurrent* at a time, keeping input order."""
    semaphore = asyncio.Semaphore(max_concurrent)

    async def run(awaitable: Awaitable[T]) -> T:
        async with semaphore:
            return await awaitable

    return list(await asyncio.gather(*(run(item) for item in awaitables), return_exceptions=return_exceptions))


@dataclass(frozen=True)
class FinalizeOptions:
    retry_attempts: int = 3
    strategy: Strategy = Strategy.CONSERVATIVE
    dry_run: bool = False
    force: bool = False
    remove_state_on_failure: bool = False
    retry_delay: float = 0.5
    parallel: bool = False
    max_concurrency: int = 5
    lock_timeout: float | None = None

    def __post_init__(self) -> None:
        if self.retry_attempts < 1:
            raise ValueError(f"retry_attempts must be >= 1, got: {self.retry_attempts}")
        if self.retry_delay < 0:
            raise ValueError(f"retry_delay must be >= 0, got: {self.retry_delay}")
        if self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be >= 1, got: {self.max_concurrency}")
        object.__setattr__(self, "strategy", Strategy(self.strategy))

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, **overrides: Any) -> "FinalizeOptions":
        """Build options from configured defaults; ``None`` overrides are ignored."""
        options = cls(
            retry_attempts=settings.retry_attempts,
            strategy=Strategy(settings.strategy),
            remove_state_on_failure=settings.remove_state_on_failure,
            retry_delay=settings.retry_delay,
            max_concurrency=settings.max_concurrency,
            lock_timeout=settings.lock_timeout,
        )
        return replace(options, **{key: value for key, value in overrides.items() if value is not None})

    @property
    def conservative(self) -> bool:
        return self.strategy is Strategy.CONSERVATIVE


@dataclass
class _DeletionOutcome:
    resource_id: str
    deleted: bool
    attempts: int
    error: ResourceDeletionError | None = None


@dataclass
class _ResourcePass:
    deleted: list[str] = field(default_factory=list)
    failed: list[_DeletionOutcome] = field(default_factory=list)


class FinalizationEngine:
    """Tears down scopes through an injected ``ResourceProvisioner``."""

    def __init__(
        self,
        store: FileStateStore,
        locks: LockManager,
        provisioner: ResourceProvisioner,
        settings: RuntimeSettings | None = None,
    ) -> None:
        self.store = store
        self.locks = locks
        self.provisioner = provisioner
        self.settings = settings if settings is not None else RuntimeSettings()

    @classmethod
    def from_settings(
        cls,
        settings: RuntimeSettings,
        *,
        provisioner: ResourceProvisioner | None = None,
        repo_root: Path | None = None,
    ) -> "FinalizationEngine":
        store = FileStateStore.from_settings(settings, repo_root)
        return cls(
            store,
            build_lock_manager(settings, store.root),
            provisioner if provisioner is not None else load_provisioner(settings.provisioner),
            settings,
        )

    def default_options(self, **overrides: Any) -> FinalizeOptions:
        return FinalizeOptions.from_settings(self.settings, **overrides)

    def scope(self, path: str) -> Scope:
        return Scope(path, self.store, self.locks, settings=self.settings)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def finalize(self, path: str, options: FinalizeOptions | None = None) -> FinalizationReport:
        """Finalize *path* and every registered descendant.

        Returns:
            A report; resource failures never raise.

        Raises:
            LockTimeoutError: If any lock on the way down cannot be acquired.
            StateCorruptionError: If any document on the way down is unreadable.
        """
        path = normalize_scope_path(path)
        options = options if options is not None else self.default_options()
        started = time.monotonic()
        try:
            self._check_protected(path, options)
        except ProtectedStageError as exc:
            logger.warning("%s", exc)
            return FinalizationReport(
                scope_path=path,
                strategy=options.strategy,
                dry_run=options.dry_run,
                errors=[str(exc)],
                duration=time.monotonic() - started,
            )

        report = await self._finalize_scope(path, options)
        logger.info(
            "Finalized %s: %d deleted, %d failed, %d nested scopes%s",
            path,
            report.resources_deleted,
            report.resources_failed,
            report.nested_scopes_processed,
            " (dry run)" if options.dry_run else "",
        )
        return report

    async def prune(
        self,
        path: str,
        policy: OrphanPolicy,
        options: FinalizeOptions | None = None,
    ) -> FinalizationReport:
        """Delete only the resources *policy* flags as orphaned and keep the scope."""
        path = normalize_scope_path(path)
        options = options if options is not None else self.default_options()
        started = time.monotonic()
        report = FinalizationReport(scope_path=path, strategy=options.strategy, dry_run=options.dry_run)
        try:
            self._check_protected(path, options)
        except ProtectedStageError as exc:
            report.errors.append(str(exc))
            report.duration = time.monotonic() - started
            return report

        scope = self.scope(path)
        async with self.locks.hold(path, options.lock_timeout):
            record = await scope.load_if_exists()
            if record is None:
                logger.info("Scope %s has no state; nothing to prune", path)
            else:
                orphans = {
                    resource_id: resource
                    for resource_id, resource in record.resources.items()
                    if policy.is_orphaned(resource)
                }
                logger.info("Pruning %d orphaned resources from %s", len(orphans), path)
                outcome = await self._delete_resources(path, orphans, options, report)
                if outcome.deleted and not options.dry_run:
                    for resource_id in outcome.deleted:
                        record.resources.pop(resource_id, None)
                    await self._save(scope, record)
        report.duration = time.monotonic() - started
        return report

    async def finalize_application(
        self,
        app_name: str,
        options: FinalizeOptions | None = None,
    ) -> FinalizationSummary:
        """Finalize every stage of *app_name* and total the results."""
        app_name = normalize_scope_path(app_name)
        options = options if options is not None else self.default_options()
        started = time.monotonic()
        summary = FinalizationSummary(app_name=app_name, dry_run=options.dry_run)
        stages = await asyncio.to_thread(lambda: list(self.store.list_stages(app_name)))
        if not stages:
            logger.info("No stages found for application %s", app_name)
        for stage in stages:
            stage_path = join_scope_path(app_name, stage)
            try:
                report = await self.finalize(stage_path, options)
            except ScopeError as exc:
                logger.error("Finalization of %s aborted: %s", stage_path, exc)
                summary.errors.append(f"{stage_path}: {exc}")
                continue
            summary.add(report)
        summary.duration = time.monotonic() - started
        return summary

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_protected(self, path: str, options: FinalizeOptions) -> None:
        stage = stage_name(path)
        if stage is None or options.force or options.dry_run:
            return
        if self.settings.is_protected(stage):
            raise ProtectedStageError(path, stage)

    async def _finalize_scope(self, path: str, options: FinalizeOptions) -> FinalizationReport:
        started = time.monotonic()
        report = FinalizationReport(scope_path=path, strategy=options.strategy, dry_run=options.dry_run)
        scope = self.scope(path)
        async with self.locks.hold(path, options.lock_timeout):
            record = await scope.load_if_exists()
            if record is None:
                logger.debug("Scope %s has no state; nothing to finalize", path)
            else:
                with scope.finalizing():
                    await self._finalize_record(scope, record, options, report)
        report.duration = time.monotonic() - started
        return report

    async def _finalize_record(
        self,
        scope: Scope,
        record: ScopeRecord,
        options: FinalizeOptions,
        report: FinalizationReport,
    ) -> None:
        await self._finalize_children(scope.path, record, options, report)
        outcome = await self._delete_resources(scope.path, record.resources, options, report)

        if options.dry_run:
            return

        for resource_id in outcome.deleted:
            record.resources.pop(resource_id, None)
        remaining_children = [
            name
            for name in sorted(record.nested_scope_names)
            if await asyncio.to_thread(self.store.exists, join_scope_path(scope.path, name))
        ]

        removable = not record.resources or (
            options.strategy is Strategy.AGGRESSIVE and options.remove_state_on_failure
        )
        if removable and not remaining_children:
            if record.resources:
                logger.warning(
                    "Removing state for %s with %d untracked resources left behind: %s",
                    scope.path,
                    len(record.resources),
                    ", ".join(sorted(record.resources)),
                )
            await scope.remove_state()
            report.state_removed = True
            logger.debug("Removed state for %s", scope.path)
        else:
            await self._save(scope, record)

    async def _finalize_children(
        self,
        path: str,
        record: ScopeRecord,
        options: FinalizeOptions,
        report: FinalizationReport,
    ) -> None:
        """Finalize every registered nested scope and fold the results into *report*.

        A nested scope whose finalization aborts (lock timeout, corrupt
        state) re-raises under ``conservative``.  Under ``aggressive`` the
        failure is recorded and the remaining siblings still run.
        """
        names = sorted(record.nested_scope_names)
        if not names:
            return

        results: list[FinalizationReport | BaseException] = []
        if options.parallel:
            results = await _gather_bounded(
                (self._finalize_scope(join_scope_path(path, name), options) for name in names),
                options.max_concurrency,
                return_exceptions=True,
            )
        else:
            for name in names:
                try:
                    results.append(await self._finalize_scope(join_scope_path(path, name), options))
                except ScopeError as exc:
                    if options.conservative:
                        raise
                    results.append(exc)

        for name, result in zip(names, results):
            child_path = join_scope_path(path, name)
            if isinstance(result, BaseException):
                if options.conservative or not isinstance(result, ScopeError):
                    raise result
                logger.error("Finalization of nested scope %s aborted: %s", child_path, result)
                report.errors.append(f"{child_path}: finalization aborted: {result}")
                continue
            report.nested_reports.append(result)
            report.nested_scopes_processed += 1 + result.nested_scopes_processed
            report.resources_deleted += result.resources_deleted
            report.resources_failed += result.resources_failed
            report.errors.extend(result.errors)
            if not options.dry_run and not await asyncio.to_thread(self.store.exists, child_path):
                record.nested_scope_names.discard(name)

    async def _delete_resources(
        self,
        path: str,
        resources: dict[str, ResourceRecord],
        options: FinalizeOptions,
        report: FinalizationReport,
    ) -> _ResourcePass:
        result = _ResourcePass()
        if options.dry_run:
            for resource_id, resource in resources.items():
                logger.info("[dry run] Would delete %s resource %s in %s", resource.type, resource_id, path)
                result.deleted.append(resource_id)
            report.resources_deleted += len(result.deleted)
            return result

        if options.parallel:
            outcomes = await _gather_bounded(
                (self._delete_with_retry(resource, options) for resource in resources.values()),
                options.max_concurrency,
            )
        else:
            outcomes = [await self._delete_with_retry(resource, options) for resource in resources.values()]

        for outcome in outcomes:
            if outcome.deleted:
                result.deleted.append(outcome.resource_id)
                continue
            result.failed.append(outcome)
            report.errors.append(
                f"{path}: failed to delete resource {outcome.resource_id} "
                f"after {outcome.attempts} attempt(s): {outcome.error}"
            )
        report.resources_deleted += len(result.deleted)
        report.resources_failed += len(result.failed)
        return result

    async def _delete_with_retry(self, resource: ResourceRecord, options: FinalizeOptions) -> _DeletionOutcome:
        error: ResourceDeletionError | None = None
        for attempt in range(1, options.retry_attempts + 1):
            try:
                await self._provision_delete(resource)
            except ResourceDeletionError as exc:
                error = exc
                if attempt == options.retry_attempts:
                    break
                delay = min(options.retry_delay * 2 ** (attempt - 1), self.settings.max_retry_delay)
                logger.warning(
                    "Deletion attempt %d/%d failed for %s, retrying in %.2fs: %s",
                    attempt,
                    options.retry_attempts,
                    resource.id,
                    delay,
                    exc,
                )
                await asyncio.sleep(delay)
            else:
                logger.debug("Deleted %s resource %s", resource.type, resource.id)
                return _DeletionOutcome(resource.id, deleted=True, attempts=attempt)
        logger.error("Giving up on resource %s after %d attempt(s): %s", resource.id, options.retry_attempts, error)
        return _DeletionOutcome(resource.id, deleted=False, attempts=options.retry_attempts, error=error)

    async def _provision_delete(self, resource: ResourceRecord) -> None:
        """Call the provisioner; any exception it raises becomes a ``ResourceDeletionError``."""
        try:
            await self.provisioner.delete(resource)
        except ResourceDeletionError:
            raise
        except Exception as exc:
            raise ResourceDeletionError(resource.id, f"{type(exc).__name__}: {exc}") from exc

    async def _save(self, scope: Scope, record: ScopeRecord) -> None:
        record.metadata = derive_metadata(scope.path, len(record.resources), self.settings, previous=record.metadata)
        await scope.save(record)
