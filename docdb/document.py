"""
Document: one raw record plus its change-tracking wrapper.

Mutation goes through typed operations (set / unset / patch / stage), each
recording the touched leaf path in a DirtyPathTree. commit() turns the tree
into a minimal {set, unset} patch; save() writes the whole record.

Lifecycle:
    DETACHED --save-->                 SAVED    (first full write)
    LOADED   --commit (dirty)-->       SAVED    (minimal patch)
    LOADED   --commit (clean)-->       LOADED   (no-op)
    any      --delete-->               DELETED  (terminal)
    any      --reload-->               LOADED

Link properties hold raw link shapes ({"_id": ...}). When a link target is
known as a live Document (set from a Document, or resolved by population),
reads return that Document instead; the mapping is keyed by the target's
(collection, id), so two properties holding the same link resolve to the
same instance.

Invariants:
    - A Document is the only owner of its raw record
    - Writing a value deep-equal to the current one is a no-op
    - The snapshot used for version archival is taken at most once between
      two persistences, before the first mutation
    - Nothing can be written from a DELETED document; nothing can be
      mutated locally on a frozen one

How to change safely:
    - Every new mutating method must call _check_mutable() and
      _before_mutation() before touching the raw record
    - Keep population-facing helpers (_attach, _mark_populated, _repair)
      free of I/O
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    Iterable,
    List,
    Mapping,
    Optional,
    Set,
    Tuple,
    Union,
)

from .attachments import Attachment, Source
from .drivers.base import Patch, now_ms
from .errors import BadRequestError, DocDbError, DocumentStateError, NotFoundError, ValidationError
from .paths import UNSET, DirtyPathTree, get_path, set_path, unset_path
from .schema.types import (
    COLLECTION_KEY,
    FROZEN,
    ID_KEY,
    LAST_MODIFIED,
    LOCKED_AT,
    LOCKED_BY,
    VERSION,
    FieldDef,
    FieldKind,
)
from .schema.validator import tag_mask, tier_mask

if TYPE_CHECKING:
    from .batch import Batch
    from .collection import Collection
    from .memory import MemoryModel
    from .population import Population

logger = logging.getLogger(__name__)

LinkKey = Tuple[str, str]


class DocumentState(Enum):
    """Lifecycle state of a Document."""

    DETACHED = "detached"
    LOADED = "loaded"
    SAVED = "saved"
    DELETED = "deleted"


@dataclass(frozen=True)
class LinkDetails:
    """Description of a link property of one document.

    Attributes:
        kind: LINK, MULTI_LINK or BACK_LINK
        host_path: Path of the property in the host document
        foreign_collection: Target collection name, None when unknown
        foreign_id: Target id of a link, or the host id a back-link matches
        foreign_ids: Target ids of a multi-link
        foreign_path: Foreign property a back-link matches against
        schema: FieldDef of the property
    """

    kind: FieldKind
    host_path: str
    foreign_collection: Optional[str]
    foreign_id: Optional[str]
    foreign_ids: Tuple[str, ...]
    foreign_path: Optional[str]
    schema: FieldDef


def _link_target(fd: FieldDef, link: Dict[str, Any]) -> Optional[LinkKey]:
    collection = fd.collection or link.get(COLLECTION_KEY)
    if not collection or link.get(ID_KEY) is None:
        return None
    return (collection, str(link[ID_KEY]))


class Document:
    """Change-tracked wrapper around one raw record.

    Attributes:
        collection: Owning collection
        upstream_exists: Whether the record exists in storage
    """

    def __init__(
        self,
        collection: Collection,
        raw: Optional[Dict[str, Any]] = None,
        *,
        from_upstream: bool = False,
        skip_validation: bool = False,
    ) -> None:
        """Wrap a raw record.

        Args:
            collection: Owning collection
            raw: Raw record; an id is generated when missing
            from_upstream: The record comes from storage (state LOADED)
            skip_validation: Take raw as-is (used for trusted storage reads)

        Raises:
            ValidationError: If raw violates the schema
        """
        self.collection = collection
        self._links: Dict[LinkKey, Document] = {}
        self._back_links: Dict[str, Batch] = {}
        self._populated: Set[str] = set()
        self._dirty = DirtyPathTree()
        self._snapshot: Optional[Dict[str, Any]] = None
        self._lock_id: Optional[str] = None

        raw = dict(raw or {})
        if raw.get(ID_KEY) is None:
            raw[ID_KEY] = collection.create_id()
        raw[ID_KEY] = str(raw[ID_KEY])

        if not (skip_validation or collection.schema.skip_validation):
            raw = collection.validate(raw, link_sink=self._remember_link)
        self._raw: Dict[str, Any] = raw

        self.upstream_exists = from_upstream
        self._state = DocumentState.LOADED if from_upstream else DocumentState.DETACHED

    # =========================================================================
    # Identity and state
    # =========================================================================

    @property
    def id(self) -> str:
        return self._raw[ID_KEY]

    @property
    def raw(self) -> Dict[str, Any]:
        """The live raw record. Direct mutations must be declared with stage()."""
        return self._raw

    @property
    def state(self) -> DocumentState:
        return self._state

    @property
    def is_dirty(self) -> bool:
        return bool(self._dirty)

    @property
    def dirty_paths(self) -> List[str]:
        return self._dirty.paths()

    @property
    def snapshot(self) -> Optional[Dict[str, Any]]:
        """Pre-mutation copy of the record, when versioning is enabled."""
        return self._snapshot

    @property
    def frozen(self) -> bool:
        return bool(self._raw.get(FROZEN))

    @property
    def lock_id(self) -> Optional[str]:
        """Lock id held by this instance, if any."""
        return self._lock_id

    @property
    def locked_by(self) -> Optional[str]:
        """Lock holder as last seen in the raw record."""
        return self._raw.get(LOCKED_BY)

    def to_link(self) -> Dict[str, Any]:
        """Raw link shape pointing to this document."""
        return {ID_KEY: self.id, COLLECTION_KEY: self.collection.name}

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.collection.name}:{self.id} {self._state.value}>"

    def _check_not_deleted(self, operation: str) -> None:
        if self._state == DocumentState.DELETED:
            raise DocumentStateError(
                f"Cannot {operation} a deleted document ({self.id})",
                collection=self.collection.name,
                state=self._state.value,
            )

    def _check_mutable(self) -> None:
        self._check_not_deleted("modify")
        if self.frozen:
            raise DocumentStateError(
                f"Document {self.id} is frozen",
                collection=self.collection.name,
                state="frozen",
            )

    def _before_mutation(self) -> None:
        if self.collection.schema.versioning and self.upstream_exists and self._snapshot is None:
            self._snapshot = copy.deepcopy(self._raw)

    def _after_persist(self) -> None:
        self._dirty.clear()
        self._snapshot = None
        self.upstream_exists = True
        self._state = DocumentState.SAVED

    # =========================================================================
    # Field access
    # =========================================================================

    def _field_or_none(self, path: str) -> Optional[FieldDef]:
        try:
            return self.collection.field_at(path)
        except ValidationError:
            return None

    def get(self, path: str, default: Any = None) -> Any:
        """Read a property.

        Resolved link, multi-link and back-link properties return the live
        Document or Batch instead of the raw link shapes.
        """
        value = get_path(self._raw, path)
        fd = self._field_or_none(path)

        if fd is not None and fd.is_link:
            resolved = self._resolved_value(fd, path, value)
            if resolved is not UNSET:
                return resolved

        if value is UNSET:
            return default
        return value

    def __getitem__(self, path: str) -> Any:
        value = self.get(path, UNSET)
        if value is UNSET:
            raise KeyError(path)
        return value

    def _resolved_value(self, fd: FieldDef, path: str, value: Any) -> Any:
        if fd.kind == FieldKind.LINK:
            if isinstance(value, dict):
                key = _link_target(fd, value)
                if key is not None and key in self._links:
                    return self._links[key]
            return UNSET

        if fd.kind == FieldKind.MULTI_LINK:
            if not isinstance(value, list):
                return UNSET
            keys = [_link_target(fd, item) for item in value if isinstance(item, dict)]
            if path not in self._populated and not (keys and all(k in self._links for k in keys)):
                return UNSET
            return self._new_batch(
                fd.collection,
                [self._links[key] for key in keys if key is not None and key in self._links],
            )

        if fd.kind == FieldKind.BACK_LINK:
            return self._back_links.get(path, UNSET)

        return UNSET

    def _new_batch(self, collection_name: Optional[str], documents: Iterable[Document]) -> Batch:
        from .batch import Batch

        if collection_name:
            return self.collection.world.get_collection(collection_name).create_batch(documents)
        return Batch(None, documents)

    def _remember_link(self, link: Dict[str, Any], document: Any) -> None:
        self._links[(document.collection.name, str(document.id))] = document

    def _prepare_value(self, path: str, value: Any) -> Tuple[FieldDef, Any, List[Document]]:
        fd = self.collection.field_at(path)
        if fd.kind == FieldKind.BACK_LINK:
            raise BadRequestError(
                f"'{path}' is a back-link and cannot be written",
                collection=self.collection.name,
                path=path,
            )

        linked: List[Document] = []

        def sink(link: Dict[str, Any], document: Any) -> None:
            linked.append(document)

        new = self.collection.validate_path(path, value, link_sink=sink)
        return fd, new, linked

    def _apply_value(self, path: str, new: Any, linked: List[Document]) -> bool:
        for document in linked:
            self._remember_link({}, document)

        if new is UNSET:
            return self._apply_unset(path)

        current = get_path(self._raw, path)
        if current is not UNSET and current == new:
            return False

        self._before_mutation()
        set_path(self._raw, path, new)
        self._touch(path)
        return True

    def _apply_unset(self, path: str) -> bool:
        if get_path(self._raw, path) is UNSET:
            return False
        self._before_mutation()
        unset_path(self._raw, path)
        self._touch(path)
        return True

    def _touch(self, path: str) -> None:
        self._dirty.add(path)
        prefix = path + "."
        self._populated = {
            p for p in self._populated if p != path and not p.startswith(prefix) and not path.startswith(p + ".")
        }
        self._back_links.pop(path, None)

    def set(self, path: str, value: Any) -> bool:
        """Write a property.

        A Document (or a list of Documents for a multi-link) is stored as
        its link shape, and remembered for later reads.

        Returns:
            False if the value was deep-equal to the current one

        Raises:
            ValidationError: If the path is unknown or the value invalid
            DocumentStateError: If the document is deleted or frozen
        """
        self._check_mutable()
        _, new, linked = self._prepare_value(path, value)
        return self._apply_value(path, new, linked)

    def __setitem__(self, path: str, value: Any) -> None:
        self.set(path, value)

    def unset(self, path: str) -> bool:
        """Remove a property.

        Raises:
            ValidationError: If the property is required
        """
        self._check_mutable()
        fd = self.collection.field_at(path)
        if fd.required:
            raise ValidationError(
                f"Path '{path}' is required and cannot be unset",
                collection=self.collection.name,
                path=path,
            )
        return self._apply_unset(path)

    def patch(self, values: Mapping[str, Any]) -> List[str]:
        """Write several properties at once.

        All values are validated before any of them is applied. UNSET as a
        value removes the property.

        Returns:
            Paths that actually changed
        """
        self._check_mutable()
        prepared = []
        for path, value in values.items():
            if value is UNSET:
                fd = self.collection.field_at(path)
                if fd.required:
                    raise ValidationError(
                        f"Path '{path}' is required and cannot be unset",
                        collection=self.collection.name,
                        path=path,
                    )
                prepared.append((path, UNSET, []))
            else:
                _, new, linked = self._prepare_value(path, value)
                prepared.append((path, new, linked))

        return [path for path, new, linked in prepared if self._apply_value(path, new, linked)]

    def stage(self, paths: Union[str, Iterable[str]]) -> None:
        """Declare paths mutated directly through raw.

        The current values are validated. No snapshot can be taken for
        those mutations; version archival then uses the stored record.
        """
        self._check_mutable()
        if isinstance(paths, str):
            paths = [paths]
        for path in paths:
            value = get_path(self._raw, path)
            if value is not UNSET and not self.collection.schema.skip_validation:
                sanitized = self.collection.validate_path(path, value)
                set_path(self._raw, path, sanitized)
            self._touch(path)

    def build_patch(self) -> Optional[Patch]:
        """Compute the minimal patch for the dirty paths.

        Returns:
            The patch, or None if nothing is dirty
        """
        if not self._dirty:
            return None
        patch = Patch()
        for path in self._dirty.paths():
            value = get_path(self._raw, path)
            if value is UNSET:
                patch.unset.append(path)
            else:
                patch.set[path] = copy.deepcopy(value)
        return patch

    def export(self, *, tags: Optional[Iterable[str]] = None, tier: Optional[int] = None) -> Dict[str, Any]:
        """Deep copy of the raw record, optionally masked by tags or tier."""
        if tags is not None:
            return tag_mask(self.collection.schema, self._raw, tags)
        if tier is not None:
            return tier_mask(self.collection.schema, self._raw, tier)
        return copy.deepcopy(self._raw)

    # =========================================================================
    # Persistence
    # =========================================================================

    async def save(self, *, overwrite: bool = False) -> Document:
        """Write the whole record.

        Creates the record if it does not exist upstream, unless overwrite
        is set, in which case it is written unconditionally.

        Raises:
            DocumentStateError: If the document is deleted
            ConflictError: On unique index violation
        """
        self._check_not_deleted("save")
        collection = self.collection

        if self.upstream_exists or overwrite:
            if self.upstream_exists and (self._snapshot is not None or self._dirty):
                await collection.concurrency.archive(self)
            await collection.call_driver("update", collection.driver.update, self.id, self._raw)
        else:
            if collection.schema.versioning:
                self._raw.setdefault(VERSION, 1)
                self._raw[LAST_MODIFIED] = now_ms()
            await collection.call_driver("create", collection.driver.create, self._raw, self._lock_id)

        logger.debug(
            "Document saved",
            extra={"collection": collection.name, "id": self.id, "overwrite": overwrite},
        )
        self._after_persist()
        return self

    async def commit(self) -> Document:
        """Persist pending changes as a minimal patch.

        A document that does not exist upstream is saved instead.

        Raises:
            DocumentStateError: If the document is deleted
            ConflictError: On unique index violation
        """
        self._check_not_deleted("commit")
        if not self.upstream_exists:
            return await self.save()

        patch = self.build_patch()
        if patch is None:
            return self

        collection = self.collection
        if collection.schema.versioning:
            await collection.concurrency.archive(self)
            patch.set[VERSION] = self._raw[VERSION]
            patch.set[LAST_MODIFIED] = self._raw[LAST_MODIFIED]

        await collection.call_driver("patch", collection.driver.patch, self.id, patch)
        logger.debug(
            "Document committed",
            extra={"collection": collection.name, "id": self.id, "paths": patch.paths()},
        )
        self._after_persist()
        return self

    async def delete(self) -> None:
        """Delete the record and its attachments. Terminal."""
        self._check_not_deleted("delete")
        collection = self.collection
        if self.upstream_exists:
            await collection.call_driver("delete", collection.driver.delete, self.id)
        attachment_driver = collection.attachment_driver
        if attachment_driver is not None:
            await attachment_driver.delete_all_in_document(collection.name, self.id)
        self._dirty.clear()
        self._snapshot = None
        self._state = DocumentState.DELETED
        logger.debug("Document deleted", extra={"collection": collection.name, "id": self.id})

    async def reload(self) -> Document:
        """Replace the local record with the stored one.

        Raises:
            NotFoundError: If the record no longer exists
        """
        self._check_not_deleted("reload")
        collection = self.collection
        raw = await collection.call_driver("get", collection.driver.get, self.id)
        if raw is None:
            raise NotFoundError(
                f"Document {self.id} not found",
                collection=collection.name,
                document_id=self.id,
            )
        self._raw = raw
        self._dirty.clear()
        self._snapshot = None
        self._populated.clear()
        self._back_links.clear()
        if self._lock_id is not None and raw.get(LOCKED_BY) != self._lock_id:
            self._lock_id = None
        self.upstream_exists = True
        self._state = DocumentState.LOADED
        return self

    # =========================================================================
    # Locking and freezing
    # =========================================================================

    async def lock(self, timeout_ms: Optional[int] = None) -> Optional[str]:
        """Acquire the document lock.

        A document not yet saved reserves a lock id that is written with
        its first save.

        Returns:
            The lock id, or None if another holder has a valid lock
        """
        self._check_not_deleted("lock")
        if not self.upstream_exists:
            if not self.collection.schema.can_lock:
                raise BadRequestError(
                    "Collection cannot lock documents", collection=self.collection.name
                )
            self._set_lock(self.collection.create_id(), now_ms())
            return self._lock_id
        return await self.collection.concurrency.lock(self, timeout_ms)

    async def unlock(self) -> bool:
        """Release the lock held by this instance."""
        self._check_not_deleted("unlock")
        if not self.upstream_exists:
            had_lock = self._lock_id is not None
            self._set_lock(None, None)
            return had_lock
        return await self.collection.concurrency.unlock(self)

    def _set_lock(self, lock_id: Optional[str], locked_at: Optional[int]) -> None:
        self._lock_id = lock_id
        self._raw[LOCKED_BY] = lock_id
        self._raw[LOCKED_AT] = locked_at

    async def freeze(self) -> None:
        """Block local mutation and record the flag upstream.

        The remote write is best effort: failures are logged. Other loaded
        copies of this record are not blocked until they reload.
        """
        await self._set_frozen(True)

    async def unfreeze(self) -> None:
        await self._set_frozen(False)

    async def _set_frozen(self, frozen: bool) -> None:
        self._check_not_deleted("freeze")
        collection = self.collection
        if not collection.schema.freezable:
            raise BadRequestError("Collection is not freezable", collection=collection.name)
        self._raw[FROZEN] = frozen
        if not self.upstream_exists:
            return
        try:
            await collection.call_driver(
                "patch", collection.driver.patch, self.id, Patch(set={FROZEN: frozen})
            )
        except DocDbError as e:
            logger.warning(
                f"Could not persist frozen={frozen}: {e}",
                extra={"collection": collection.name, "id": self.id},
            )

    # =========================================================================
    # Links
    # =========================================================================

    def get_link_details(self, path: str) -> LinkDetails:
        """Describe a link property.

        Raises:
            BadRequestError: If the property is not a link
        """
        fd = self.collection.link_field(path)
        value = get_path(self._raw, path, None)

        if fd.kind == FieldKind.LINK:
            key = _link_target(fd, value) if isinstance(value, dict) else None
            return LinkDetails(
                kind=fd.kind,
                host_path=path,
                foreign_collection=key[0] if key else fd.collection,
                foreign_id=key[1] if key else None,
                foreign_ids=(),
                foreign_path=None,
                schema=fd,
            )

        if fd.kind == FieldKind.MULTI_LINK:
            items = value if isinstance(value, list) else []
            return LinkDetails(
                kind=fd.kind,
                host_path=path,
                foreign_collection=fd.collection,
                foreign_id=None,
                foreign_ids=tuple(str(item[ID_KEY]) for item in items if isinstance(item, dict)),
                foreign_path=None,
                schema=fd,
            )

        return LinkDetails(
            kind=fd.kind,
            host_path=path,
            foreign_collection=fd.collection,
            foreign_id=self.id,
            foreign_ids=(),
            foreign_path=fd.path,
            schema=fd,
        )

    def _expect_kind(self, path: str, kind: FieldKind) -> FieldDef:
        fd = self.collection.link_field(path)
        if fd.kind != kind:
            raise BadRequestError(
                f"'{path}' is a {fd.kind.value}, not a {kind.value}",
                collection=self.collection.name,
                path=path,
            )
        return fd

    def set_link(self, path: str, document: Optional[Document]) -> bool:
        """Point a single link to a document (None clears it)."""
        self._expect_kind(path, FieldKind.LINK)
        return self.set(path, document)

    def add_link(self, path: str, document: Document) -> bool:
        """Append a document to a multi-link, unless already present."""
        self._expect_kind(path, FieldKind.MULTI_LINK)
        current = get_path(self._raw, path, None)
        items = list(current) if isinstance(current, list) else []
        if any(isinstance(item, dict) and str(item.get(ID_KEY)) == document.id for item in items):
            self._remember_link({}, document)
            return False
        return self.set(path, items + [document])

    def remove_link(self, path: str, target: Union[Document, str]) -> bool:
        """Remove a document (or id) from a multi-link."""
        self._expect_kind(path, FieldKind.MULTI_LINK)
        target_id = target.id if isinstance(target, Document) else str(target)
        current = get_path(self._raw, path, None)
        items = list(current) if isinstance(current, list) else []
        kept = [item for item in items if not (isinstance(item, dict) and str(item.get(ID_KEY)) == target_id)]
        if len(kept) == len(items):
            return False
        return self.set(path, kept)

    async def get_link(
        self,
        path: str,
        *,
        cache: Optional[MemoryModel] = None,
        populate: Optional[List[str]] = None,
        deep_populate: Optional[Dict[str, List[str]]] = None,
    ) -> Optional[Document]:
        """Fetch the target of a single link.

        Raises:
            BadRequestError: If the property is not a single link
            NotFoundError: If the target does not exist
        """
        fd = self._expect_kind(path, FieldKind.LINK)
        value = get_path(self._raw, path, None)
        if not isinstance(value, dict):
            return None
        key = _link_target(fd, value)
        if key is None:
            raise BadRequestError(
                f"Link '{path}' has no resolvable target collection",
                collection=self.collection.name,
                path=path,
            )
        if key in self._links and not populate and not deep_populate:
            return self._links[key]

        target = self.collection.world.get_collection(key[0])
        document = await target.get(key[1], cache=cache, populate=populate, deep_populate=deep_populate)
        self._links[key] = document
        return document

    async def get_links(
        self,
        path: str,
        *,
        cache: Optional[MemoryModel] = None,
        populate: Optional[List[str]] = None,
        deep_populate: Optional[Dict[str, List[str]]] = None,
    ) -> Batch:
        """Fetch the targets of a multi-link or a back-link.

        Raises:
            BadRequestError: If the property is a single link
        """
        fd = self.collection.link_field(path)
        if fd.kind == FieldKind.LINK:
            raise BadRequestError(
                f"'{path}' is a single link, use get_link()",
                collection=self.collection.name,
                path=path,
            )

        options = {"cache": cache, "populate": populate, "deep_populate": deep_populate}

        if fd.kind == FieldKind.BACK_LINK:
            target = self.collection.world.get_collection(fd.collection or "")
            batch = await target.find({f"{fd.path}.{ID_KEY}": self.id}, **options)
            self._back_links[path] = batch
            self._populated.add(path)
            return batch

        details = self.get_link_details(path)
        if fd.any_collection:
            value = get_path(self._raw, path, None) or []
            documents = []
            for item in value:
                key = _link_target(fd, item)
                if key is None:
                    continue
                documents.append(await self.collection.world.get_collection(key[0]).get(key[1], **options))
            for document in documents:
                self._remember_link({}, document)
            self._populated.add(path)
            return self._new_batch(None, documents)

        target = self.collection.world.get_collection(details.foreign_collection or "")
        batch = await target.multi_get(list(details.foreign_ids), **options)
        for document in batch:
            self._remember_link({}, document)
        self._populated.add(path)
        return batch

    async def populate(
        self,
        paths: Iterable[str],
        *,
        deep: Optional[Dict[str, List[str]]] = None,
        population: Optional[Population] = None,
    ) -> Document:
        """Resolve link paths of this document (see Population)."""
        await self.collection.world.populate([self], list(paths), deep=deep, population=population)
        return self

    # Population-facing helpers, no I/O.

    def is_populated(self, path: str) -> bool:
        return path in self._populated

    def _mark_populated(self, path: str) -> None:
        self._populated.add(path)

    def _attach(self, document: Document) -> None:
        self._links[(document.collection.name, str(document.id))] = document

    def _set_back_link(self, path: str, batch: Batch) -> None:
        self._back_links[path] = batch
        self._populated.add(path)

    def _repair(self, path: str, value: Any) -> None:
        """Rewrite a malformed or dangling link value, bypassing freeze."""
        self._before_mutation()
        if value is UNSET:
            unset_path(self._raw, path)
        else:
            set_path(self._raw, path, value)
        self._dirty.add(path)

    def _repaired(self, paths: Iterable[str]) -> None:
        """Forget repaired paths once they are stored."""
        for path in paths:
            self._dirty.discard(path)
        if not self._dirty:
            self._snapshot = None

    # =========================================================================
    # Attachments
    # =========================================================================

    async def set_attachment(
        self,
        path: str,
        source: Source,
        *,
        filename: str,
        content_type: str = "application/octet-stream",
    ) -> Attachment:
        """Store content and point an attachment property to it.

        The previous attachment of the property, if any, is deleted once
        the new one is written. The record itself is only changed locally;
        commit() or save() persists the descriptor.
        """
        self._check_mutable()
        fd = self.collection.field_at(path)
        if fd.kind != FieldKind.ATTACHMENT:
            raise BadRequestError(
                f"'{path}' is not an attachment", collection=self.collection.name, path=path
            )
        driver = self.collection.attachment_driver
        if driver is None:
            raise BadRequestError(
                "Collection has no attachment storage", collection=self.collection.name
            )

        previous = self.get_attachment(path)
        attachment = driver.init_attachment(
            self.collection.name, self.id, filename=filename, content_type=content_type
        )
        await driver.save(attachment, source)
        self.set(path, attachment.to_raw())
        if previous is not None:
            await driver.delete(previous)
        return attachment

    def get_attachment(self, path: str) -> Optional[Attachment]:
        value = get_path(self._raw, path, None)
        if not isinstance(value, dict):
            return None
        return Attachment.from_raw(
            value,
            collection_name=self.collection.name,
            document_id=self.id,
            driver=self.collection.attachment_driver,
        )
