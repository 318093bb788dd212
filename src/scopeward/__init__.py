from importlib.metadata import version

from .errors import (
    ConfigurationError,
    DuplicateResourceError,
    InvalidScopePathError,
    LockTimeoutError,
    ProtectedStageError,
    ResourceDeletionError,
    ResourceNotFoundError,
    ScopeError,
    ScopeNotFoundError,
    StateCorruptionError,
)
from .finalization import FinalizationEngine, FinalizeOptions
from .inspector import ScopeInspector
from .locking import FileLockManager, InMemoryLockManager, LockHandle, LockManager, NullLockManager, build_lock_manager
from .models import (
    FinalizationReport,
    FinalizationSummary,
    ResourceRecord,
    ScopeKind,
    ScopeMetadata,
    ScopeRecord,
    ScopeSnapshot,
    ScopeState,
    ScopeStats,
    Strategy,
)
from .provisioner import HandlerProvisioner, LoggingProvisioner, ResourceProvisioner, load_provisioner
from .scope import DesiredResources, OrphanPolicy, PredicatePolicy, Scope
from .settings import RuntimeSettings
from .state_store import FileStateStore


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "ConfigurationError",
    "DesiredResources",
    "DuplicateResourceError",
    "FileLockManager",
    "FileStateStore",
    "FinalizationEngine",
    "FinalizationReport",
    "FinalizationSummary",
    "FinalizeOptions",
    "HandlerProvisioner",
    "InMemoryLockManager",
    "InvalidScopePathError",
    "LockHandle",
    "LockManager",
    "LockTimeoutError",
    "LoggingProvisioner",
    "NullLockManager",
    "OrphanPolicy",
    "PredicatePolicy",
    "ProtectedStageError",
    "ResourceDeletionError",
    "ResourceNotFoundError",
    "ResourceProvisioner",
    "ResourceRecord",
    "RuntimeSettings",
    "Scope",
    "ScopeError",
    "ScopeInspector",
    "ScopeKind",
    "ScopeMetadata",
    "ScopeNotFoundError",
    "ScopeRecord",
    "ScopeSnapshot",
    "ScopeState",
    "ScopeStats",
    "StateCorruptionError",
    "Strategy",
    "build_lock_manager",
    "load_provisioner",
]
