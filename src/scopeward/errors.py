"""Error taxonomy for scope state and finalization.

Lock and state-corruption errors abort an enclosing finalize call.
Resource deletion errors are absorbed into finalization reports and never
escape the per-resource retry loop.  Duplicate-resource and not-found
errors propagate to the caller of the mutating ``Scope`` operation.
"""

from __future__ import annotations


class ScopeError(RuntimeError):
    """Base class for every error raised by scopeward."""


class LockTimeoutError(ScopeError):
    """Another holder retained a scope lock past the acquisition timeout."""

    def __init__(self, path: str, timeout: float) -> None:
        super().__init__(f"Failed to acquire lock for scope {path} within {timeout:g}s")
        self.path = path
        self.timeout = timeout


class ScopeNotFoundError(ScopeError):
    """Operation against a path with no persisted document."""

    def __init__(self, path: str, *, destroyed: bool = False) -> None:
        if destroyed:
            message = f"Scope {path} was finalized; call initialize() to recreate it"
        else:
            message = f"Scope {path} has not been initialized"
        super().__init__(message)
        self.path = path
        self.destroyed = destroyed


class DuplicateResourceError(ScopeError):
    def __init__(self, path: str, resource_id: str) -> None:
        super().__init__(f"Resource {resource_id} already exists in scope {path}")
        self.path = path
        self.resource_id = resource_id


class ResourceNotFoundError(ScopeError):
    def __init__(self, path: str, resource_id: str) -> None:
        super().__init__(f"Resource {resource_id} not found in scope {path}")
        self.path = path
        self.resource_id = resource_id


class StateCorruptionError(ScopeError):
    """A persisted scope document is unreadable or fails validation."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"State for scope {path} is corrupt: {reason}")
        self.path = path
        self.reason = reason


class ResourceDeletionError(ScopeError):
    """A provisioner failed to delete a resource.

    Transient and permanent failures are not distinguished; the engine
    retries both uniformly.
    """

    def __init__(self, resource_id: str, message: str) -> None:
        super().__init__(f"Failed to delete resource {resource_id}: {message}")
        self.resource_id = resource_id


class ProtectedStageError(ScopeError):
    def __init__(self, path: str, stage: str) -> None:
        super().__init__(
            f"Stage {stage!r} of {path} is protected; finalization requires --force (or use --dry-run)"
        )
        self.path = path
        self.stage = stage


class InvalidScopePathError(ScopeError, ValueError):
    pass


class ConfigurationError(ScopeError, ValueError):
    pass
