"""Resource provisioner capability injected into the finalization engine.

The engine never knows how a resource type is created or deleted; it
calls ``delete`` and treats any exception as a failed attempt.  Any
exception other than ``ResourceDeletionError`` is wrapped in one, with
the original kept as ``__cause__``.
"""

from __future__ import annotations

import importlib
import logging
from typing import Awaitable, Callable, Protocol, runtime_checkable

from .errors import ConfigurationError, ResourceDeletionError
from .models import ResourceRecord

logger = logging.getLogger(__name__)

DeleteHandler = Callable[[ResourceRecord], Awaitable[None]]


@runtime_checkable
class ResourceProvisioner(Protocol):
    async def create(self, record: ResourceRecord) -> None: ...

    async def delete(self, record: ResourceRecord) -> None: ...


class LoggingProvisioner:
    """Provisioner that only logs. Used when no real provisioner is configured."""

    async def create(self, record: ResourceRecord) -> None:
        logger.info("Creating %s resource %s", record.type, record.id)

    async def delete(self, record: ResourceRecord) -> None:
        logger.info("Deleting %s resource %s", record.type, record.id)


class HandlerProvisioner:
    """Dispatches deletions to handlers registered per resource type."""

    def __init__(self, handlers: dict[str, DeleteHandler] | None = None) -> None:
        self._handlers: dict[str, DeleteHandler] = dict(handlers or {})

    def register(self, resource_type: str, handler: DeleteHandler) -> None:
        self._handlers[resource_type] = handler

    def can_delete(self, resource_type: str) -> bool:
        return resource_type in self._handlers

    async def create(self, record: ResourceRecord) -> None:
        raise NotImplementedError(f"HandlerProvisioner cannot create {record.type} resources")

    async def delete(self, record: ResourceRecord) -> None:
        handler = self._handlers.get(record.type)
        if handler is None:
            raise ResourceDeletionError(record.id, f"no deletion handler registered for type {record.type!r}")
        await handler(record)


def load_provisioner(reference: str) -> ResourceProvisioner:
    """Build a provisioner from a ``module:callable`` factory reference.

    Raises:
        ConfigurationError: If the reference cannot be imported or the
            factory does not return a provisioner.
    """
    if not reference:
        return LoggingProvisioner()
    module_name, _, attr = reference.partition(":")
    try:
        module = importlib.import_module(module_name)
        factory = getattr(module, attr)
    except (ImportError, AttributeError) as exc:
        raise ConfigurationError(f"Cannot load provisioner factory {reference!r}: {exc}") from exc
    provisioner = factory()
    if not isinstance(provisioner, ResourceProvisioner):
        raise ConfigurationError(f"Provisioner factory {reference!r} returned {type(provisioner).__name__}")
    return provisioner
