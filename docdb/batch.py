"""
Batch: an ordered list of Documents with bulk operations.

Bulk writes run concurrently with asyncio.gather(); each document still
issues its own minimal patch, so documents never clobber each other.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional

if TYPE_CHECKING:
    from .collection import Collection
    from .document import Document
    from .population import Population

logger = logging.getLogger(__name__)


class Batch(list):
    """Ordered collection of Document instances.

    Attributes:
        collection: Collection of the documents, None for mixed batches
    """

    def __init__(self, collection: Optional[Collection] = None, documents: Iterable[Document] = ()) -> None:
        super().__init__(documents)
        self.collection = collection

    def __repr__(self) -> str:
        name = self.collection.name if self.collection is not None else "*"
        return f"<{type(self).__name__} {name} x{len(self)}>"

    def ids(self) -> List[str]:
        return [document.id for document in self]

    def index_by_id(self) -> Dict[str, Document]:
        return {document.id: document for document in self}

    def export(self, **options: Any) -> List[Dict[str, Any]]:
        return [document.export(**options) for document in self]

    async def save(self, *, overwrite: bool = False) -> Batch:
        await asyncio.gather(*(document.save(overwrite=overwrite) for document in self))
        return self

    async def commit(self) -> Batch:
        await asyncio.gather(*(document.commit() for document in self))
        return self

    async def delete(self) -> None:
        await asyncio.gather(*(document.delete() for document in self))

    async def release_locks(self, lock_id: Optional[str] = None) -> int:
        """Release locks of the batch.

        Args:
            lock_id: A lock id shared by the whole batch (as returned by
                lock_retrieve_release); when omitted each document
                releases its own lock

        Returns:
            Number of records unlocked
        """
        if lock_id is not None:
            if self.collection is None:
                raise ValueError("A shared lock id needs a single-collection batch")
            count = await self.collection.call_driver(
                "release_locks", self.collection.driver.release_locks, lock_id
            )
            for document in self:
                if document.locked_by == lock_id:
                    document._set_lock(None, None)
            return count

        results = await asyncio.gather(*(document.unlock() for document in self))
        return sum(1 for released in results if released)

    async def populate(
        self,
        paths: Iterable[str],
        *,
        deep: Optional[Dict[str, List[str]]] = None,
        population: Optional[Population] = None,
    ) -> Batch:
        """Resolve link paths of every document in one population session."""
        if not self:
            return self
        world = self[0].collection.world
        await world.populate(list(self), list(paths), deep=deep, population=population)
        return self
