"""
Identity map for Document instances.

A MemoryModel guarantees at most one live Document per (collection, id).
It is owned by whoever created it (usually a population session, or a
caller that wants several reads to share instances) and is discarded with
it; nothing here is global.

Invariants:
    - add() never replaces an already registered instance
    - Keys are normalized to strings, so equal ids in different
      representations share one slot
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Dict, Iterable, Iterator, List, Optional, Tuple

if TYPE_CHECKING:
    from .document import Document

logger = logging.getLogger(__name__)

Key = Tuple[str, str]


class MemoryModel:
    """Session-scoped identity map keyed by (collection name, id)."""

    def __init__(self) -> None:
        self._documents: Dict[Key, Document] = {}

    @staticmethod
    def key(collection_name: str, id: object) -> Key:
        return (collection_name, str(id))

    def add(self, document: Document) -> Document:
        """Register a document unless its identity is already known.

        Returns:
            The registered instance: document itself, or the instance that
            was already there
        """
        key = self.key(document.collection.name, document.id)
        existing = self._documents.get(key)
        if existing is not None:
            return existing
        self._documents[key] = document
        return document

    def get(self, collection_name: str, id: object) -> Optional[Document]:
        return self._documents.get(self.key(collection_name, id))

    def multi_get(
        self, collection_name: str, ids: Iterable[object]
    ) -> Tuple[List[Document], List[str]]:
        """Split ids into cached documents and ids still to fetch.

        Returns:
            (found documents in ids order, missing ids)
        """
        found: List[Document] = []
        missing: List[str] = []
        for id in ids:
            document = self.get(collection_name, id)
            if document is not None:
                found.append(document)
            else:
                missing.append(str(id))
        return found, missing

    def remove(self, collection_name: str, id: object) -> None:
        self._documents.pop(self.key(collection_name, id), None)

    def clear(self) -> None:
        self._documents.clear()

    def __contains__(self, key: object) -> bool:
        if not isinstance(key, tuple) or len(key) != 2:
            return False
        return self.key(key[0], key[1]) in self._documents

    def __len__(self) -> int:
        return len(self._documents)

    def __iter__(self) -> Iterator[Document]:
        return iter(list(self._documents.values()))
