"""
Base protocol and types for storage drivers.

This module defines the StorageDriver protocol that every backend must
implement, the Patch type exchanged with drivers, and driver errors.

A driver owns exactly one storage-native table (one collection). It stores
and returns plain raw records; it never sees Document instances. Records
returned by a driver are never aliased with the driver's own storage.

Invariants:
    - "_id" is unique within a driver's table
    - patch() only touches the listed paths
    - lock() is a single conditional update: acquire iff unlocked or expired
    - Unique indexes are sparse: records missing an indexed property are
      not constrained by that index

How to change safely:
    - Protocol changes require updating all implementations
    - Keep raw records JSON-compatible so every backend can store them
"""

from __future__ import annotations

import time
import uuid
from abc import abstractmethod
from dataclasses import dataclass, field
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

from ..schema.types import IndexDef

RawRecord = Dict[str, Any]
Query = Dict[str, Any]


class DriverError(Exception):
    """Base exception for storage driver operations."""

    pass


class DriverConnectionError(DriverError):
    """Connection to the storage backend failed."""

    pass


class DuplicateKeyError(DriverError):
    """A write violated the primary key or a unique index.

    Attributes:
        index_name: Name of the violated index ("_id" for the primary key)
        index_fields: Properties of the violated index
    """

    def __init__(self, message: str, index_name: str, index_fields: Sequence[str]) -> None:
        super().__init__(message)
        self.index_name = index_name
        self.index_fields = tuple(index_fields)


@dataclass
class Patch:
    """Minimal update of a raw record, keyed by dot path.

    Attributes:
        set: Values to write, keyed by dot path
        unset: Dot paths to remove
    """

    set: Dict[str, Any] = field(default_factory=dict)
    unset: List[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.set) or bool(self.unset)

    def paths(self) -> List[str]:
        return list(self.set) + list(self.unset)

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {}
        if self.set:
            result["set"] = dict(self.set)
        if self.unset:
            result["unset"] = list(self.unset)
        return result


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


@runtime_checkable
class StorageDriver(Protocol):
    """Protocol for storage driver implementations.

    Every method is a coroutine; implementations that use blocking
    client libraries must not block the event loop for long.
    """

    @abstractmethod
    async def connect(self) -> None:
        """Open the backend connection and make sure the table exists.

        Raises:
            DriverConnectionError: If the backend is unreachable
        """
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release backend resources. Idempotent."""
        ...

    @abstractmethod
    def create_id(self) -> str:
        """Return a fresh identifier for a new record."""
        ...

    @abstractmethod
    async def get(self, id: str) -> Optional[RawRecord]:
        """Return the record with this id, or None."""
        ...

    @abstractmethod
    async def get_unique(self, fingerprint: Dict[str, Any]) -> Optional[RawRecord]:
        """Return the record matching a flat {dot.path: value} fingerprint."""
        ...

    @abstractmethod
    async def multi_get(self, ids: Sequence[str]) -> List[RawRecord]:
        """Return the existing records among ids, in no particular order."""
        ...

    @abstractmethod
    async def collect(self, fingerprint: Dict[str, Any]) -> List[RawRecord]:
        """Return every record matching a flat fingerprint."""
        ...

    @abstractmethod
    async def find(self, query: Query) -> List[RawRecord]:
        """Return every record matching a query."""
        ...

    @abstractmethod
    async def create(self, raw: RawRecord, lock_id: Optional[str] = None) -> None:
        """Insert a new record.

        Args:
            raw: Record including its "_id"
            lock_id: If given, the record is created already locked by it

        Raises:
            DuplicateKeyError: On primary key or unique index violation
        """
        ...

    @abstractmethod
    async def update(self, id: str, raw: RawRecord) -> None:
        """Replace a whole record, creating it if missing.

        Raises:
            DuplicateKeyError: On unique index violation
        """
        ...

    @abstractmethod
    async def patch(self, id: str, patch: Patch) -> None:
        """Apply set/unset operations to one record.

        Raises:
            DuplicateKeyError: On unique index violation
        """
        ...

    @abstractmethod
    async def delete(self, id: str) -> None:
        """Delete one record. Missing records are ignored."""
        ...

    @abstractmethod
    async def lock(self, id: str, timeout_ms: int) -> Optional[str]:
        """Try to lock one record.

        Returns:
            The new lock id, or None if the record is missing or held by a
            lock younger than timeout_ms
        """
        ...

    @abstractmethod
    async def unlock(self, id: str, holder_id: str) -> bool:
        """Clear a lock if holder_id matches the stored one."""
        ...

    @abstractmethod
    async def lock_many(self, query: Query, timeout_ms: int) -> Tuple[str, int]:
        """Lock every free record matching a query under one new lock id.

        Returns:
            (lock id, number of records locked)
        """
        ...

    @abstractmethod
    async def release_locks(self, lock_id: str) -> int:
        """Unlock every record held by lock_id; returns how many."""
        ...

    @abstractmethod
    async def increment(
        self, match: Dict[str, Any], path: str, amount: int, defaults: RawRecord
    ) -> int:
        """Atomically add amount to the integer at path of one record.

        The record is the first one matching match; when none does, a copy
        of defaults holding amount at path is created.

        Returns:
            The value stored after the increment

        Raises:
            DuplicateKeyError: If the created record violates a unique index
        """
        ...

    @abstractmethod
    async def get_indexes(self) -> Dict[str, IndexDef]:
        """Return upstream indexes keyed by name."""
        ...

    @abstractmethod
    async def build_index(self, index: IndexDef) -> None:
        """Create an index.

        Raises:
            DuplicateKeyError: If existing records violate a unique index
        """
        ...

    @abstractmethod
    async def drop_index(self, name: str) -> None:
        """Drop an index by name. Missing indexes are ignored."""
        ...
