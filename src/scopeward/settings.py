from __future__ import annotations

import os
from dataclasses import dataclass, replace
from pathlib import Path

from .errors import ConfigurationError

STRATEGY_CHOICES = ("conservative", "aggressive")
LOCK_BACKEND_CHOICES = ("file", "memory")


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    state_dir: str = ".scopeward"
    enable_locking: bool = True
    lock_backend: str = "file"
    lock_timeout: float = 30.0
    lock_poll_interval: float = 0.1
    retry_attempts: int = 3
    retry_delay: float = 0.5
    max_retry_delay: float = 30.0
    max_concurrency: int = 5
    strategy: str = "conservative"
    protected_stages: tuple[str, ...] = ("prod",)
    default_stage: str = "default"
    remove_state_on_failure: bool = False
    enable_versioning: bool = False
    max_backup_versions: int = 10
    provisioner: str = ""

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            state_dir=os.getenv("SCOPEWARD_STATE_DIR", ".scopeward"),
            enable_locking=_get_env_bool("SCOPEWARD_ENABLE_LOCKING", default=True),
            lock_backend=os.getenv("SCOPEWARD_LOCK_BACKEND", "file"),
            lock_timeout=_get_env_float("SCOPEWARD_LOCK_TIMEOUT", default=30.0, minimum=0.0),
            lock_poll_interval=_get_env_float("SCOPEWARD_LOCK_POLL_INTERVAL", default=0.1, minimum=0.001),
            retry_attempts=_get_env_int("SCOPEWARD_RETRY_ATTEMPTS", default=3, minimum=1, maximum=100),
            retry_delay=_get_env_float("SCOPEWARD_RETRY_DELAY", default=0.5, minimum=0.0),
            max_retry_delay=_get_env_float("SCOPEWARD_MAX_RETRY_DELAY", default=30.0, minimum=0.0),
            max_concurrency=_get_env_int("SCOPEWARD_MAX_CONCURRENCY", default=5, minimum=1, maximum=1000),
            strategy=os.getenv("SCOPEWARD_STRATEGY", "conservative"),
            protected_stages=_get_env_list("SCOPEWARD_PROTECTED_STAGES", default=("prod",)),
            default_stage=os.getenv("SCOPEWARD_DEFAULT_STAGE") or os.getenv("USER") or "default",
            remove_state_on_failure=_get_env_bool("SCOPEWARD_REMOVE_STATE_ON_FAILURE", default=False),
            enable_versioning=_get_env_bool("SCOPEWARD_ENABLE_VERSIONING", default=False),
            max_backup_versions=_get_env_int("SCOPEWARD_MAX_BACKUP_VERSIONS", default=10, minimum=1),
            provisioner=os.getenv("SCOPEWARD_PROVISIONER", ""),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ConfigurationError on invalid configuration."""
        if not self.state_dir.strip():
            raise ConfigurationError("SCOPEWARD_STATE_DIR must be non-empty")

        strategy = self.strategy.strip().lower()
        if strategy not in STRATEGY_CHOICES:
            raise ConfigurationError(f"SCOPEWARD_STRATEGY must be one of: {', '.join(STRATEGY_CHOICES)}")

        lock_backend = self.lock_backend.strip().lower()
        if lock_backend not in LOCK_BACKEND_CHOICES:
            raise ConfigurationError(
                f"SCOPEWARD_LOCK_BACKEND must be one of: {', '.join(LOCK_BACKEND_CHOICES)}"
            )

        # -- Numeric bounds validation --
        if self.retry_attempts < 1:
            raise ConfigurationError(f"SCOPEWARD_RETRY_ATTEMPTS must be >= 1, got: {self.retry_attempts}")
        if self.lock_timeout < 0:
            raise ConfigurationError(f"SCOPEWARD_LOCK_TIMEOUT must be >= 0, got: {self.lock_timeout}")
        if self.lock_poll_interval <= 0:
            raise ConfigurationError(
                f"SCOPEWARD_LOCK_POLL_INTERVAL must be > 0, got: {self.lock_poll_interval}"
            )
        if self.retry_delay < 0 or self.max_retry_delay < 0:
            raise ConfigurationError("SCOPEWARD_RETRY_DELAY and SCOPEWARD_MAX_RETRY_DELAY must be >= 0")
        if self.max_concurrency < 1:
            raise ConfigurationError(f"SCOPEWARD_MAX_CONCURRENCY must be >= 1, got: {self.max_concurrency}")
        if self.max_backup_versions < 1:
            raise ConfigurationError(
                f"SCOPEWARD_MAX_BACKUP_VERSIONS must be >= 1, got: {self.max_backup_versions}"
            )

        default_stage = self.default_stage.strip()
        if not default_stage:
            raise ConfigurationError("SCOPEWARD_DEFAULT_STAGE must be non-empty")

        protected = tuple(stage.strip() for stage in self.protected_stages if stage.strip())
        provisioner = self.provisioner.strip()
        if provisioner and ":" not in provisioner:
            raise ConfigurationError("SCOPEWARD_PROVISIONER must be of the form 'module:callable'")

        return replace(
            self,
            strategy=strategy,
            lock_backend=lock_backend,
            default_stage=default_stage,
            protected_stages=protected,
            provisioner=provisioner,
        )

    def state_dir_path(self, repo_root: Path | None = None) -> Path:
        path = Path(self.state_dir)
        if path.is_absolute():
            return path
        return (repo_root if repo_root is not None else Path.cwd()) / path

    def is_protected(self, stage: str) -> bool:
        return stage in self.protected_stages


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    """Parse an integer from an environment variable with bounds checking.

    Args:
        name: Environment variable name.
        default: Value to return if the variable is unset.
        minimum: Inclusive lower bound.
        maximum: Inclusive upper bound.

    Returns:
        The parsed integer, guaranteed to be within [minimum, maximum].

    Raises:
        ConfigurationError: If the value is not an integer or is outside bounds.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got: {raw!r}") from exc
    if parsed < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got: {parsed}")
    if parsed > maximum:
        raise ConfigurationError(f"{name} must be <= {maximum}, got: {parsed}")
    return parsed


def _get_env_float(name: str, default: float, minimum: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        parsed = float(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be a number, got: {raw!r}") from exc
    if parsed < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got: {parsed}")
    return parsed


def _get_env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    raise ConfigurationError(f"{name} must be a boolean, got: {raw!r}")


def _get_env_list(name: str, default: tuple[str, ...]) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())
