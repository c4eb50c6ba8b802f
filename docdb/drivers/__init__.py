"""
Storage drivers, selected by URL scheme.

    memory://name             InMemoryDriver
    sqlite:///path/file.db    SQLiteDriver

Additional schemes are registered per World with World.register_driver().
"""

from __future__ import annotations

from typing import Any, Callable, Dict

from .base import (
    DriverConnectionError,
    DriverError,
    DuplicateKeyError,
    Patch,
    StorageDriver,
)
from .memory import InMemoryDriver
from .sqlite import SQLiteDriver

DriverFactory = Callable[..., Any]

DEFAULT_DRIVERS: Dict[str, DriverFactory] = {
    "memory": InMemoryDriver,
    "sqlite": SQLiteDriver,
}


def url_scheme(url: str) -> str:
    """Return the scheme of a driver URL.

    Raises:
        ValueError: If the URL has no scheme
    """
    scheme, sep, _ = url.partition("://")
    if not sep or not scheme:
        raise ValueError(f"Driver URL has no scheme: '{url}'")
    return scheme.lower()


def create_driver(
    url: str,
    *,
    collection_name: str,
    drivers: Dict[str, DriverFactory] | None = None,
) -> StorageDriver:
    """Factory function to create a storage driver from a URL.

    Args:
        url: Driver URL
        collection_name: Name of the collection the driver serves
        drivers: Scheme registry (defaults to the bundled drivers)

    Returns:
        Appropriate StorageDriver implementation

    Raises:
        ValueError: If the scheme is not supported
    """
    registry = drivers if drivers is not None else DEFAULT_DRIVERS
    scheme = url_scheme(url)
    try:
        factory = registry[scheme]
    except KeyError:
        raise ValueError(f"Unsupported storage driver: '{scheme}'") from None
    return factory(url, collection_name=collection_name)


__all__ = [
    "DEFAULT_DRIVERS",
    "DriverConnectionError",
    "DriverError",
    "DuplicateKeyError",
    "InMemoryDriver",
    "Patch",
    "SQLiteDriver",
    "StorageDriver",
    "create_driver",
    "url_scheme",
]
