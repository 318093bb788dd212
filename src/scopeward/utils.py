from __future__ import annotations

import json
import logging
import re
import tomllib
from pathlib import Path

from .errors import InvalidScopePathError
from .models import ScopeKind

logger = logging.getLogger(__name__)

SEGMENT_RE = re.compile(r"^[A-Za-z0-9._-]+$")
# names the state store uses inside a scope directory
RESERVED_SEGMENTS = frozenset({"state.json", "backups"})


def parse_scope_path(path: str) -> tuple[str, ...]:
    """Split a scope path into validated segments.

    Args:
        path: Slash-delimited scope path such as ``acme/prod/backend``.

    Returns:
        The path segments in order.

    Raises:
        InvalidScopePathError: If the path is empty, any segment is not
            filesystem-safe, starts with a dot, or names one of the state
            store's own files.
    """
    segments = tuple(part for part in path.strip().split("/") if part)
    if not segments:
        raise InvalidScopePathError("Scope path cannot be empty")
    for segment in segments:
        if segment.startswith(".") or not SEGMENT_RE.match(segment):
            raise InvalidScopePathError(f"Invalid scope path segment {segment!r} in {path!r}")
        if segment in RESERVED_SEGMENTS:
            raise InvalidScopePathError(f"Scope path segment {segment!r} in {path!r} is reserved")
    return segments


def normalize_scope_path(path: str) -> str:
    return "/".join(parse_scope_path(path))


def join_scope_path(*segments: str) -> str:
    return normalize_scope_path("/".join(segments))


def parent_scope_path(path: str) -> str | None:
    segments = parse_scope_path(path)
    if len(segments) == 1:
        return None
    return "/".join(segments[:-1])


def scope_name(path: str) -> str:
    return parse_scope_path(path)[-1]


def stage_name(path: str) -> str | None:
    """Return the stage segment of *path*, or ``None`` for an application scope."""
    segments = parse_scope_path(path)
    return segments[1] if len(segments) >= 2 else None


def scope_kind(path: str) -> ScopeKind:
    depth = len(parse_scope_path(path))
    if depth == 1:
        return ScopeKind.APPLICATION
    if depth == 2:
        return ScopeKind.STAGE
    return ScopeKind.NESTED


def sanitize_segment(value: str) -> str:
    """Turn an arbitrary project name into a single path segment.

    Raises:
        InvalidScopePathError: If the value contains no safe characters.
    """
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "-", value.strip()).strip("-.")
    if not cleaned:
        raise InvalidScopePathError(f"{value!r} contains no filesystem-safe characters")
    return cleaned[:128]


def detect_app_name(directory: Path) -> str | None:
    """Detect the current application name from local project files.

    Checks ``scopeward.toml`` (``[app] name``), ``pyproject.toml``
    (``[project] name``) and ``package.json`` (``name``) in that order.
    Unreadable files are skipped with a warning.
    """
    candidates: list[tuple[Path, tuple[str, ...]]] = [
        (directory / "scopeward.toml", ("app", "name")),
        (directory / "pyproject.toml", ("project", "name")),
        (directory / "package.json", ("name",)),
    ]
    for path, keys in candidates:
        if not path.is_file():
            continue
        try:
            text = path.read_text(encoding="utf-8")
            data = json.loads(text) if path.suffix == ".json" else tomllib.loads(text)
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable project file %s: %s", path, exc)
            continue
        value: object = data
        for key in keys:
            value = value.get(key) if isinstance(value, dict) else None
        if isinstance(value, str) and value.strip():
            return sanitize_segment(value)
    return None
