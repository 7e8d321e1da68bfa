"""Storage driver abstraction and registry.

This module provides:
- StorageDriver: Abstract base class for all storage drivers
- FileInfo: Result of a stat call
- Driver registry: Register and retrieve driver factories
- get_driver(): Factory function returning a validated, cached driver
"""

from __future__ import annotations

import hashlib
import json
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, BinaryIO, Callable, Dict, List, Mapping, Optional

from blobstore.errors import InvalidConfigurationError

logger = logging.getLogger(__name__)

__all__ = [
    "FileInfo",
    "StorageDriver",
    "DRIVER_REGISTRY",
    "register_driver",
    "list_drivers",
    "get_driver_factory",
    "get_driver",
]


# =============================================================================
# Storage Driver Base Class
# =============================================================================


@dataclass(frozen=True)
class FileInfo:
    """Information about a path, produced fresh by every stat call.

    Attributes:
        path: Logical path that was stat'ed
        size: Object size in bytes (0 for directories)
        mod_time: Last modification time (None for directories)
        is_dir: True when the path is a prefix of other keys but not a key
    """

    path: str
    size: int = 0
    mod_time: Optional[datetime] = None
    is_dir: bool = False


class StorageDriver(ABC):
    """Abstract storage contract for registry blobs.

    Paths are slash-rooted logical paths. Drivers raise the errors in
    ``blobstore.errors``; ``PathNotFoundError`` when nothing exists at a path.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the registry name of this driver (e.g. 's3')."""

    @abstractmethod
    def get_content(self, path: str) -> bytes:
        """Return the whole object stored at ``path``."""

    @abstractmethod
    def put_content(self, path: str, content: bytes) -> None:
        """Store ``content`` at ``path``, replacing any existing object."""

    @abstractmethod
    def read_stream(self, path: str, offset: int) -> BinaryIO:
        """Return a stream positioned at ``offset``.

        An offset at or past the end of the object yields an empty stream.
        """

    @abstractmethod
    def write_stream(self, path: str, offset: int, source: BinaryIO) -> int:
        """Write ``source`` at ``offset`` and return the bytes consumed.

        The result is ``current[0:offset]`` (zero-padded when the object is
        shorter) followed by everything read from ``source``.

        Raises:
            WriteStreamError: carrying ``bytes_consumed`` on any failure.
        """

    @abstractmethod
    def stat(self, path: str) -> FileInfo:
        """Return FileInfo for ``path``."""

    @abstractmethod
    def list(self, path: str) -> List[str]:
        """Return the direct children of ``path``: files first, then directories."""

    @abstractmethod
    def move(self, source_path: str, dest_path: str) -> None:
        """Move an object, removing the original."""

    @abstractmethod
    def delete(self, path: str) -> None:
        """Recursively delete ``path`` and everything beneath it."""

    @abstractmethod
    def url_for(self, path: str, options: Optional[Mapping[str, Any]] = None) -> str:
        """Return a URL granting direct access to ``path``."""


# =============================================================================
# Driver Registry
# =============================================================================

DriverFactory = Callable[[Dict[str, Any]], StorageDriver]

DRIVER_REGISTRY: Dict[str, DriverFactory] = {}


def register_driver(name: str) -> Callable[[DriverFactory], DriverFactory]:
    """Decorator to register a storage driver factory.

    Usage:
        @register_driver("my_driver")
        def my_driver_factory(parameters: Dict[str, Any]) -> StorageDriver:
            return MyDriver(parameters)
    """

    def decorator(factory: DriverFactory) -> DriverFactory:
        DRIVER_REGISTRY[name.lower()] = factory
        return factory

    return decorator


def list_drivers() -> List[str]:
    """Return all registered storage driver names."""
    return sorted(DRIVER_REGISTRY.keys())


def get_driver_factory(name: str) -> DriverFactory:
    """Get the factory function for a driver name."""
    factory = DRIVER_REGISTRY.get(name.lower())
    if not factory:
        available = list_drivers()
        raise InvalidConfigurationError(
            f"Storage driver '{name}' is not available. "
            f"Available drivers: {', '.join(available) or 'none'}.",
            driver=name,
        )
    return factory


# =============================================================================
# Driver Factory Function
# =============================================================================

_DRIVER_CACHE: Dict[str, StorageDriver] = {}
_DRIVER_CACHE_LOCK = threading.Lock()


def _cache_key(name: str, parameters: Mapping[str, Any]) -> str:
    normalized = json.dumps({"driver": name.lower(), "parameters": dict(parameters)}, sort_keys=True, default=str)
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def get_driver(
    name: str,
    parameters: Optional[Mapping[str, Any]] = None,
    use_cache: bool = True,
    max_depth: Optional[int] = None,
) -> StorageDriver:
    """Get a validated storage driver for the given name and parameters.

    Args:
        name: Registered driver name (e.g. 's3')
        parameters: Driver parameters, passed to the factory
        use_cache: Reuse one instance per (name, parameters)
        max_depth: Optional maximum path depth enforced by the facade

    Returns:
        The driver wrapped in a ValidatingDriver
    """
    from blobstore.storage.validating import ValidatingDriver

    parameters = dict(parameters or {})
    cache_key = _cache_key(name, {**parameters, "__max_depth__": max_depth})

    with _DRIVER_CACHE_LOCK:
        if use_cache and cache_key in _DRIVER_CACHE:
            return _DRIVER_CACHE[cache_key]

        factory = get_driver_factory(name)
        driver = ValidatingDriver(factory(parameters), max_depth=max_depth)
        logger.info("Created %s storage driver", driver.name)

        if use_cache:
            _DRIVER_CACHE[cache_key] = driver
    return driver
