"""
In-memory storage driver.

This module provides a driver that keeps one table in a dict for:
- Unit tests
- Integration tests
- Local development without a database

URL form: memory://<name>. Each driver instance owns its own table; two
collections never share data even if their URLs are equal.

Invariants:
    - All data is lost when the driver is closed
    - Records are deep-copied on the way in and on the way out
    - Unique indexes are enforced on every write once built
    - Every operation runs under one asyncio lock, so each call is atomic
      with respect to other coroutines

How to change safely:
    - Keep behavior identical to the SQLite driver, the integration tests
      run against both
"""

from __future__ import annotations

import asyncio
import copy
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ..paths import UNSET, get_path, set_path, unset_path
from ..schema.types import ID_KEY, LOCKED_AT, LOCKED_BY, IndexDef, canonical_json
from .base import DuplicateKeyError, Patch, Query, RawRecord, new_id, now_ms
from .query import matches

logger = logging.getLogger(__name__)


def index_key(raw: RawRecord, index: IndexDef) -> Optional[Tuple[str, ...]]:
    """Comparable key of a record for an index, None when not indexed."""
    values = []
    for path in index.properties:
        value = get_path(raw, path)
        if value is UNSET or value is None:
            return None
        values.append(canonical_json(value))
    return tuple(values)


def lock_is_free(raw: RawRecord, timeout_ms: int, now: int) -> bool:
    locked_by = raw.get(LOCKED_BY)
    locked_at = raw.get(LOCKED_AT)
    if locked_by is None:
        return True
    return locked_at is None or now - locked_at >= timeout_ms


class InMemoryDriver:
    """In-memory implementation of StorageDriver.

    Attributes:
        name: Table name, from the URL

    Example:
        >>> driver = InMemoryDriver("memory://users")
        >>> await driver.connect()
        >>> await driver.create({"_id": "u1", "firstName": "Jack"})
        >>> await driver.get("u1")
        {'_id': 'u1', 'firstName': 'Jack'}
    """

    def __init__(self, url: str = "memory://default", **options: Any) -> None:
        self.url = url
        self.name = url.split("://", 1)[-1] or "default"
        self._records: Dict[str, RawRecord] = {}
        self._indexes: Dict[str, IndexDef] = {}
        self._lock = asyncio.Lock()
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        """Connect (no-op for in-memory)."""
        self._connected = True
        logger.debug("InMemoryDriver connected", extra={"table": self.name})

    async def close(self) -> None:
        """Close and clear all data."""
        self._connected = False
        self._records.clear()
        self._indexes.clear()
        logger.debug("InMemoryDriver closed", extra={"table": self.name})

    def create_id(self) -> str:
        return new_id()

    def _check_unique(self, raw: RawRecord, skip_id: Optional[str] = None) -> None:
        for name, index in self._indexes.items():
            if not index.unique:
                continue
            key = index_key(raw, index)
            if key is None:
                continue
            for other_id, other in self._records.items():
                if other_id == skip_id:
                    continue
                if index_key(other, index) == key:
                    raise DuplicateKeyError(
                        f"Duplicate key on index {name} {list(index.properties)}",
                        index_name=name,
                        index_fields=index.properties,
                    )

    async def get(self, id: str) -> Optional[RawRecord]:
        async with self._lock:
            raw = self._records.get(str(id))
            return copy.deepcopy(raw) if raw is not None else None

    async def get_unique(self, fingerprint: Dict[str, Any]) -> Optional[RawRecord]:
        async with self._lock:
            for raw in self._records.values():
                if matches(raw, fingerprint):
                    return copy.deepcopy(raw)
            return None

    async def multi_get(self, ids: Sequence[str]) -> List[RawRecord]:
        async with self._lock:
            return [
                copy.deepcopy(self._records[str(id)])
                for id in dict.fromkeys(ids)
                if str(id) in self._records
            ]

    async def collect(self, fingerprint: Dict[str, Any]) -> List[RawRecord]:
        return await self.find(fingerprint)

    async def find(self, query: Query) -> List[RawRecord]:
        async with self._lock:
            return [copy.deepcopy(raw) for raw in self._records.values() if matches(raw, query)]

    async def create(self, raw: RawRecord, lock_id: Optional[str] = None) -> None:
        async with self._lock:
            record = copy.deepcopy(raw)
            id = str(record[ID_KEY])
            if id in self._records:
                raise DuplicateKeyError(
                    f"Duplicate key {ID_KEY}={id}", index_name=ID_KEY, index_fields=(ID_KEY,)
                )
            if lock_id is not None:
                record[LOCKED_BY] = lock_id
                record[LOCKED_AT] = now_ms()
            self._check_unique(record)
            self._records[id] = record

    async def update(self, id: str, raw: RawRecord) -> None:
        async with self._lock:
            record = copy.deepcopy(raw)
            record[ID_KEY] = str(id)
            self._check_unique(record, skip_id=str(id))
            self._records[str(id)] = record

    async def patch(self, id: str, patch: Patch) -> None:
        async with self._lock:
            current = self._records.get(str(id))
            if current is None:
                logger.debug("Patch on missing record ignored", extra={"table": self.name, "id": id})
                return
            record = copy.deepcopy(current)
            for path, value in patch.set.items():
                set_path(record, path, copy.deepcopy(value))
            for path in patch.unset:
                unset_path(record, path)
            self._check_unique(record, skip_id=str(id))
            self._records[str(id)] = record

    async def delete(self, id: str) -> None:
        async with self._lock:
            self._records.pop(str(id), None)

    async def lock(self, id: str, timeout_ms: int) -> Optional[str]:
        async with self._lock:
            record = self._records.get(str(id))
            now = now_ms()
            if record is None or not lock_is_free(record, timeout_ms, now):
                return None
            lock_id = new_id()
            record[LOCKED_BY] = lock_id
            record[LOCKED_AT] = now
            return lock_id

    async def unlock(self, id: str, holder_id: str) -> bool:
        async with self._lock:
            record = self._records.get(str(id))
            if record is None or record.get(LOCKED_BY) != holder_id:
                return False
            record[LOCKED_BY] = None
            record[LOCKED_AT] = None
            return True

    async def lock_many(self, query: Query, timeout_ms: int) -> Tuple[str, int]:
        async with self._lock:
            lock_id = new_id()
            now = now_ms()
            count = 0
            for record in self._records.values():
                if matches(record, query) and lock_is_free(record, timeout_ms, now):
                    record[LOCKED_BY] = lock_id
                    record[LOCKED_AT] = now
                    count += 1
            return lock_id, count

    async def release_locks(self, lock_id: str) -> int:
        async with self._lock:
            count = 0
            for record in self._records.values():
                if record.get(LOCKED_BY) == lock_id:
                    record[LOCKED_BY] = None
                    record[LOCKED_AT] = None
                    count += 1
            return count

    async def increment(
        self, match: Dict[str, Any], path: str, amount: int, defaults: RawRecord
    ) -> int:
        async with self._lock:
            for id, current in self._records.items():
                if matches(current, match):
                    record = copy.deepcopy(current)
                    value = get_path(record, path, None)
                    value = (value or 0) + amount
                    set_path(record, path, value)
                    self._records[id] = record
                    return value

            record = copy.deepcopy(defaults)
            record[ID_KEY] = str(record.get(ID_KEY) or new_id())
            set_path(record, path, amount)
            self._check_unique(record)
            self._records[record[ID_KEY]] = record
            return amount

    async def get_indexes(self) -> Dict[str, IndexDef]:
        return dict(self._indexes)

    async def build_index(self, index: IndexDef) -> None:
        async with self._lock:
            if index.unique:
                seen: Dict[Tuple[str, ...], str] = {}
                for id, raw in self._records.items():
                    key = index_key(raw, index)
                    if key is None:
                        continue
                    if key in seen:
                        raise DuplicateKeyError(
                            f"Cannot build unique index {index.name}: "
                            f"records {seen[key]} and {id} collide",
                            index_name=index.name,
                            index_fields=index.properties,
                        )
                    seen[key] = id
            self._indexes[index.name] = index

    async def drop_index(self, name: str) -> None:
        async with self._lock:
            self._indexes.pop(name, None)

    # =========================================================================
    # Testing helpers
    # =========================================================================

    def record_count(self) -> int:
        """Get number of stored records."""
        return len(self._records)

    def peek(self, id: str) -> Optional[RawRecord]:
        """Read a stored record without copying or locking."""
        return self._records.get(str(id))
