from __future__ import annotations

import json
import logging
import os
import re
import shutil
import tempfile
from pathlib import Path
from typing import Iterator

from pydantic import ValidationError

from .errors import ScopeNotFoundError, StateCorruptionError
from .models import ScopeRecord, utcnow
from .settings import RuntimeSettings
from .utils import parse_scope_path

logger = logging.getLogger(__name__)

STATE_FILENAME = "state.json"
TOMBSTONE_FILENAME = ".finalized"
BACKUP_DIRNAME = "backups"
_BACKUP_NAME_RE = re.compile(r"^state-\d{8}T\d{12}\.json$")


def _atomic_write_text(path: Path, content: str) -> None:
    """Write *content* to *path* atomically.

    Writes to a temporary file in the same directory, then renames
    (``os.replace``) into place so no reader ever observes a partially
    written document.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=str(path.parent),
        prefix=f".{path.name}.",
        suffix=".tmp",
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as tmp_handle:
            tmp_handle.write(content)
            tmp_handle.flush()
            os.fsync(tmp_handle.fileno())
        os.replace(tmp_path, str(path))
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def _safe_read_json(path: Path, scope_path: str) -> str:
    """Read a state document and raise a clear error if missing or unreadable.

    Raises:
        ScopeNotFoundError: If the file does not exist.
        StateCorruptionError: If the file is empty or contains non-UTF-8 data.
    """
    if not path.is_file():
        raise ScopeNotFoundError(scope_path)
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as exc:
        raise StateCorruptionError(scope_path, f"{path} contains invalid UTF-8 data") from exc
    if not text.strip():
        raise StateCorruptionError(scope_path, f"{path} is empty")
    return text


class FileStateStore:
    """Filesystem store holding one JSON document per scope path.

    Layout mirrors the scope path: ``<root>/<app>/<stage>/.../state.json``.
    The store performs no locking and no retries; ``Scope`` and the
    finalization engine serialize writers through a ``LockManager``.
    """

    def __init__(
        self,
        root: Path,
        *,
        enable_versioning: bool = False,
        max_backup_versions: int = 10,
    ) -> None:
        self.root = root
        self.enable_versioning = enable_versioning
        self.max_backup_versions = max_backup_versions

    @classmethod
    def from_settings(cls, settings: RuntimeSettings, repo_root: Path | None = None) -> "FileStateStore":
        return cls(
            settings.state_dir_path(repo_root),
            enable_versioning=settings.enable_versioning,
            max_backup_versions=settings.max_backup_versions,
        )

    # ------------------------------------------------------------------
    # Path helpers
    # ------------------------------------------------------------------

    def scope_dir(self, path: str) -> Path:
        return self.root.joinpath(*parse_scope_path(path))

    def state_path(self, path: str) -> Path:
        return self.scope_dir(path) / STATE_FILENAME

    def tombstone_path(self, path: str) -> Path:
        return self.scope_dir(path) / TOMBSTONE_FILENAME

    def backup_dir(self, path: str) -> Path:
        return self.scope_dir(path) / BACKUP_DIRNAME

    # ------------------------------------------------------------------
    # Documents
    # ------------------------------------------------------------------

    def exists(self, path: str) -> bool:
        return self.state_path(path).is_file()

    def is_destroyed(self, path: str) -> bool:
        """True when the scope existed and was finalized, as opposed to never created."""
        return not self.exists(path) and self.tombstone_path(path).is_file()

    def read(self, path: str) -> ScopeRecord:
        """Read and validate the persisted document for *path*.

        Raises:
            ScopeNotFoundError: If no document exists.
            StateCorruptionError: If the document is unreadable or fails validation.
        """
        state_file = self.state_path(path)
        if not state_file.is_file():
            raise ScopeNotFoundError(path, destroyed=self.tombstone_path(path).is_file())
        text = _safe_read_json(state_file, path)
        try:
            record = ScopeRecord.model_validate_json(text)
        except ValidationError as exc:
            raise StateCorruptionError(path, f"{state_file} failed validation: {exc}") from exc
        if record.path != path:
            raise StateCorruptionError(path, f"{state_file} belongs to scope {record.path!r}")
        return record

    def write(self, path: str, record: ScopeRecord) -> Path:
        """Replace the document for *path* atomically.

        Writing a document clears any tombstone left by an earlier
        finalization of the same path.
        """
        if record.path != path:
            raise ValueError(f"record for {record.path!r} cannot be written to {path!r}")
        state_file = self.state_path(path)
        if self.enable_versioning and state_file.is_file():
            self._create_backup(path)
        _atomic_write_text(state_file, record.model_dump_json(indent=2))
        self.clear_tombstone(path)
        return state_file

    def delete(self, path: str) -> None:
        """Remove the document for *path* and leave a tombstone behind.

        Raises:
            ScopeNotFoundError: If no document exists.
        """
        state_file = self.state_path(path)
        try:
            state_file.unlink()
        except FileNotFoundError as exc:
            raise ScopeNotFoundError(path, destroyed=self.tombstone_path(path).is_file()) from exc
        tombstone = {"path": path, "finalized_at": utcnow().isoformat()}
        _atomic_write_text(self.tombstone_path(path), json.dumps(tombstone, indent=2, sort_keys=True))
        logger.debug("Removed state document %s", state_file)

    def clear_tombstone(self, path: str) -> None:
        self.tombstone_path(path).unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Enumeration
    # ------------------------------------------------------------------

    def list_stages(self, app_name: str) -> Iterator[str]:
        """Yield stage names of *app_name* that currently hold a document.

        The directory listing is taken when this method is called; the
        returned iterator walks that snapshot lazily.
        """
        app_dir = self.scope_dir(app_name)
        try:
            entries = sorted(entry.name for entry in os.scandir(app_dir) if entry.is_dir())
        except FileNotFoundError:
            entries = []
        return (name for name in entries if (app_dir / name / STATE_FILENAME).is_file())

    def iter_scopes(self) -> Iterator[str]:
        """Yield every persisted scope path under the store root, sorted."""
        if not self.root.is_dir():
            return iter(())
        paths = sorted(
            "/".join(state_file.parent.relative_to(self.root).parts)
            for state_file in self.root.rglob(STATE_FILENAME)
            if state_file.parent != self.root
        )
        return iter(paths)

    # ------------------------------------------------------------------
    # Backups
    # ------------------------------------------------------------------

    def list_backups(self, path: str) -> list[str]:
        """Return backup filenames for *path*, newest first."""
        backup_dir = self.backup_dir(path)
        if not backup_dir.is_dir():
            return []
        return sorted(
            (entry.name for entry in backup_dir.iterdir() if _BACKUP_NAME_RE.match(entry.name)),
            reverse=True,
        )

    def restore_backup(self, path: str, backup_name: str) -> ScopeRecord:
        """Restore the document for *path* from a named backup.

        Raises:
            ValueError: If the backup name is malformed.
            FileNotFoundError: If the backup does not exist.
            StateCorruptionError: If the backup fails validation.
        """
        if not _BACKUP_NAME_RE.match(backup_name):
            raise ValueError(f"invalid backup name: {backup_name!r}")
        backup_file = self.backup_dir(path) / backup_name
        if not backup_file.is_file():
            raise FileNotFoundError(f"backup not found: {backup_file}")
        text = _safe_read_json(backup_file, path)
        try:
            record = ScopeRecord.model_validate_json(text)
        except ValidationError as exc:
            raise StateCorruptionError(path, f"backup {backup_file} failed validation: {exc}") from exc
        _atomic_write_text(self.state_path(path), record.model_dump_json(indent=2))
        self.clear_tombstone(path)
        logger.info("Restored scope %s from backup %s", path, backup_name)
        return record

    def _create_backup(self, path: str) -> None:
        backup_dir = self.backup_dir(path)
        backup_dir.mkdir(parents=True, exist_ok=True)
        stamp = utcnow().strftime("%Y%m%dT%H%M%S%f")
        shutil.copyfile(self.state_path(path), backup_dir / f"state-{stamp}.json")
        for stale in self.list_backups(path)[self.max_backup_versions:]:
            (backup_dir / stale).unlink(missing_ok=True)
