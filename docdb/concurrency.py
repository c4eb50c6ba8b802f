"""
Concurrency controller: optimistic version archival and pessimistic locks.

Versioning (collections with versioning=True):
    Before a mutating write of an existing record, the pre-mutation record
    is copied into the version-history collection, tagged with its
    `_version` and an `_activeVersion` link back to the live record. The
    history has a unique index on (_activeVersion, _version); when two
    writers archive the same version, the loser gets a duplicate key and
    retries with the next number. The live record then gets
    `_version = archived + 1` and a fresh `_lastModified`.

Locking (collections with can_lock=True):
    lock() is one conditional update that succeeds iff the record is
    unlocked or its lock is older than the timeout. unlock() only clears a
    lock whose holder matches. lock_retrieve_release() locks a whole query
    result under one lock id and hands back a release handle.

Invariants:
    - Version numbers are never reused for one record
    - The archive retry loop is bounded by max_version_retries
    - Lock acquisition failure is a normal result (None), not an error
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, Optional

from .batch import Batch
from .config import ConcurrencyConfig
from .drivers.base import now_ms
from .errors import BadRequestError, ConflictError
from .schema.types import (
    ACTIVE_VERSION,
    COLLECTION_KEY,
    ID_KEY,
    LAST_MODIFIED,
    LOCKED_AT,
    LOCKED_BY,
    VERSION,
)

if TYPE_CHECKING:
    from .collection import Collection
    from .document import Document
    from .world import World

logger = logging.getLogger(__name__)


@dataclass
class LockedBatch:
    """Result of lock_retrieve_release().

    Usable as an async context manager that releases on exit:

        async with await collection.lock_retrieve_release(query) as batch:
            ...

    Attributes:
        batch: Documents locked by this call
        lock_id: Shared lock id
    """

    batch: Batch
    lock_id: str
    collection: Collection = field(repr=False)
    released: bool = False

    async def release(self) -> int:
        """Release every lock taken by this call. Idempotent."""
        if self.released:
            return 0
        count = await self.batch.release_locks(self.lock_id)
        self.released = True
        logger.debug(
            "Locks released",
            extra={"collection": self.collection.name, "lock_id": self.lock_id, "count": count},
        )
        return count

    async def __aenter__(self) -> Batch:
        return self.batch

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.release()


class ConcurrencyController:
    """Guards writes with version archival and locks.

    Attributes:
        world: Registry owning the version-history collection
        max_version_retries: Bound of the archive retry loop
    """

    def __init__(self, world: World, config: Optional[ConcurrencyConfig] = None) -> None:
        self.world = world
        self.config = config or ConcurrencyConfig()
        self.max_version_retries = self.config.max_version_retries

    # =========================================================================
    # Versioning
    # =========================================================================

    async def archive(self, document: Document) -> Optional[int]:
        """Archive the pre-mutation record of a document.

        Uses the document snapshot, or the stored record when no snapshot
        was taken (mutations declared with stage()).

        Returns:
            The archived version number, or None if nothing was archived

        Raises:
            ConflictError: kind "version_race", when every retry collided
        """
        collection = document.collection
        if not collection.schema.versioning:
            return None

        snapshot = document.snapshot
        if snapshot is None:
            snapshot = await collection.call_driver("get", collection.driver.get, document.id)
            if snapshot is None:
                return None

        versions = await self.world.versions_collection()
        version = int(snapshot.get(VERSION) or 1)
        attempts = 0

        while True:
            record: Dict[str, Any] = copy.deepcopy(snapshot)
            record.pop(LOCKED_BY, None)
            record.pop(LOCKED_AT, None)
            record[ID_KEY] = versions.create_id()
            record[VERSION] = version
            record.setdefault(LAST_MODIFIED, now_ms())
            record[ACTIVE_VERSION] = {ID_KEY: document.id, COLLECTION_KEY: collection.name}
            try:
                await versions.call_driver(
                    "create", versions.driver.create, record, expected_codes=("CONFLICT",)
                )
                break
            except ConflictError as e:
                if attempts >= self.max_version_retries:
                    raise ConflictError(
                        f"Could not archive a version of {document.id} "
                        f"after {attempts + 1} attempts",
                        collection=collection.name,
                        kind=ConflictError.VERSION_RACE,
                        index_fields=e.index_fields,
                    ) from e
                attempts += 1
                logger.debug(
                    "Version archive race, retrying",
                    extra={"collection": collection.name, "id": document.id, "version": version},
                )
                version += 1

        document.raw[VERSION] = version + 1
        document.raw[LAST_MODIFIED] = now_ms()
        logger.debug(
            "Version archived",
            extra={"collection": collection.name, "id": document.id, "version": version},
        )
        return version

    # =========================================================================
    # Locking
    # =========================================================================

    @staticmethod
    def _require_lockable(collection: Collection) -> None:
        if not collection.schema.can_lock:
            raise BadRequestError("Collection cannot lock documents", collection=collection.name)

    async def lock(self, document: Document, timeout_ms: Optional[int] = None) -> Optional[str]:
        """Try to lock a stored document.

        Returns:
            The lock id, or None if another holder has a valid lock
        """
        collection = document.collection
        self._require_lockable(collection)
        timeout = timeout_ms if timeout_ms is not None else collection.lock_timeout_ms
        lock_id = await collection.call_driver("lock", collection.driver.lock, document.id, timeout)
        if lock_id is None:
            logger.debug("Lock not acquired", extra={"collection": collection.name, "id": document.id})
            return None
        document._set_lock(lock_id, now_ms())
        logger.debug(
            "Lock acquired",
            extra={"collection": collection.name, "id": document.id, "lock_id": lock_id},
        )
        return lock_id

    async def unlock(self, document: Document, holder_id: Optional[str] = None) -> bool:
        """Release a lock if holder_id (default: the document's own) holds it."""
        collection = document.collection
        self._require_lockable(collection)
        holder = holder_id or document.lock_id
        if holder is None:
            return False
        released = await collection.call_driver("unlock", collection.driver.unlock, document.id, holder)
        if released:
            document._set_lock(None, None)
        return released

    async def lock_retrieve_release(
        self,
        collection: Collection,
        query: Dict[str, Any],
        timeout_ms: Optional[int] = None,
    ) -> LockedBatch:
        """Lock every free record matching query and return them.

        Raises:
            BadRequestError: If the collection cannot lock
        """
        self._require_lockable(collection)
        timeout = timeout_ms if timeout_ms is not None else collection.lock_timeout_ms
        lock_id, count = await collection.call_driver(
            "lock_many", collection.driver.lock_many, query, timeout
        )
        raws = await collection.call_driver("find", collection.driver.find, {LOCKED_BY: lock_id})
        batch = collection.create_batch(collection.wrap_upstream(raw) for raw in raws)
        for document in batch:
            document._lock_id = lock_id
        logger.debug(
            "Locked query result",
            extra={"collection": collection.name, "lock_id": lock_id, "count": count},
        )
        return LockedBatch(batch=batch, lock_id=lock_id, collection=collection)
