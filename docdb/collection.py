"""
Collection: a named, schema-bound set of documents on one storage driver.

Reads wrap raw records into Documents; when a cache (identity map) or a
population session is given, reads go through it so that one
(collection, id) maps to one instance. Writes are issued by Documents
through call_driver(), which annotates driver failures with the
collection name and, for duplicate keys, the violated index fields.

Invariants:
    - Driver errors never leave a Collection unannotated
    - multi_get() with every id cached performs no I/O
    - Hooks run only for documents created locally, never for reads
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    List,
    Optional,
    Sequence,
    Tuple,
    Type,
    Union,
)

from .attachments import FileAttachmentDriver, create_attachment_driver
from .batch import Batch
from .concurrency import ConcurrencyController, LockedBatch
from .document import Document
from .drivers.base import DriverError, DuplicateKeyError, StorageDriver
from .errors import BadRequestError, ConflictError, NotFoundError, StorageError, ValidationError
from .fingerprint import Fingerprint
from .memory import MemoryModel
from .schema.types import ID_KEY, CollectionSchema, FieldDef
from .schema.validator import LinkSink, sub_schema, validate, validate_path

if TYPE_CHECKING:
    from .population import Population
    from .world import World

logger = logging.getLogger(__name__)

FingerprintLike = Union[Fingerprint, Dict[str, Any]]


class Collection:
    """Named set of documents.

    Attributes:
        world: Owning registry
        name: Collection name
        schema: Collection schema
        driver: Storage driver
        url: Driver URL
    """

    def __init__(
        self,
        world: World,
        name: str,
        schema: CollectionSchema,
        driver: StorageDriver,
        *,
        url: str,
    ) -> None:
        self.world = world
        self.name = name
        self.schema = schema
        self.driver = driver
        self.url = url
        self.document_class: Type[Document] = schema.document_class or Document
        self.batch_class: Type[Batch] = schema.batch_class or Batch
        self._fields: Dict[str, FieldDef] = {}
        self._connected = False
        self._attachment_driver: Optional[FileAttachmentDriver] = None

    def __repr__(self) -> str:
        return f"<Collection {self.name} {self.url}>"

    # =========================================================================
    # Schema helpers
    # =========================================================================

    @property
    def uniques(self) -> List[Tuple[str, ...]]:
        return self.schema.uniques()

    @property
    def lock_timeout_ms(self) -> int:
        if self.schema.lock_timeout_ms is not None:
            return self.schema.lock_timeout_ms
        return self.world.config.concurrency.lock_timeout_ms

    @property
    def concurrency(self) -> ConcurrencyController:
        return self.world.concurrency

    @property
    def attachment_driver(self) -> Optional[FileAttachmentDriver]:
        if self._attachment_driver is None:
            if self.schema.attachment_url:
                self._attachment_driver = create_attachment_driver(self.schema.attachment_url)
            elif self.world.config.storage.attachment_dir:
                self._attachment_driver = FileAttachmentDriver(Path(self.world.config.storage.attachment_dir))
        return self._attachment_driver

    def field_at(self, path: str) -> FieldDef:
        """FieldDef governing a dot path.

        Raises:
            ValidationError: If the schema does not describe the path
        """
        fd = self._fields.get(path)
        if fd is None:
            try:
                fd = sub_schema(self.schema, path)
            except ValidationError as e:
                raise e.for_collection(self.name) from e
            self._fields[path] = fd
        return fd

    def link_field(self, path: str) -> FieldDef:
        """FieldDef of a link, multi-link or back-link path.

        Raises:
            BadRequestError: If the path is unknown or not a link
        """
        try:
            fd = self.field_at(path)
        except ValidationError as e:
            raise BadRequestError(e.message, collection=self.name, path=path) from e
        if not fd.is_link:
            raise BadRequestError(f"'{path}' is not a link", collection=self.name, path=path)
        return fd

    def validate(self, raw: Dict[str, Any], *, link_sink: Optional[LinkSink] = None) -> Dict[str, Any]:
        try:
            return validate(self.schema, raw, link_sink=link_sink)
        except ValidationError as e:
            raise e.for_collection(self.name) from e

    def validate_path(self, path: str, value: Any, *, link_sink: Optional[LinkSink] = None) -> Any:
        try:
            return validate_path(self.schema, path, value, link_sink=link_sink)
        except ValidationError as e:
            raise e.for_collection(self.name) from e

    # =========================================================================
    # Driver access
    # =========================================================================

    async def connect(self) -> None:
        if not self._connected:
            await self.driver.connect()
            self._connected = True

    async def close(self) -> None:
        if self._connected:
            await self.driver.close()
            self._connected = False

    async def call_driver(
        self,
        operation: str,
        method: Callable[..., Awaitable[Any]],
        *args: Any,
        expected_codes: Tuple[str, ...] = (),
    ) -> Any:
        """Call a driver method, annotating failures.

        Args:
            operation: Operation name for logs and errors
            method: Bound driver coroutine function
            *args: Arguments of method
            expected_codes: Error codes the caller handles itself; they are
                logged at DEBUG instead of ERROR, and still raised

        Raises:
            ConflictError: On duplicate key
            StorageError: On any other driver failure
        """
        await self.connect()
        try:
            return await method(*args)
        except DuplicateKeyError as e:
            error: Union[ConflictError, StorageError] = ConflictError(
                f"Collection '{self.name}': duplicate key on {list(e.index_fields)} ({operation})",
                collection=self.name,
                index_fields=e.index_fields,
            )
            cause: Exception = e
        except DriverError as e:
            error = StorageError(
                f"Collection '{self.name}': {operation} failed: {e}",
                collection=self.name,
                operation=operation,
            )
            cause = e

        level = logging.DEBUG if error.code in expected_codes else logging.ERROR
        logger.log(level, error.message, extra={"collection": self.name, "operation": operation})
        raise error from cause

    # =========================================================================
    # Factories
    # =========================================================================

    def create_id(self) -> str:
        return self.driver.create_id()

    def create_document(
        self,
        raw: Optional[Dict[str, Any]] = None,
        *,
        from_upstream: bool = False,
        skip_validation: bool = False,
    ) -> Document:
        """Create a Document.

        For new documents, before_create_document hooks receive the raw
        record (and may modify it) before validation, and
        after_create_document hooks receive the Document.

        Raises:
            ValidationError: If the record violates the schema
        """
        raw = dict(raw or {})
        is_new = not from_upstream
        if is_new:
            for hook in self.schema.hooks.before_create_document:
                hook(raw)

        document = self.document_class(
            self, raw, from_upstream=from_upstream, skip_validation=skip_validation
        )

        if is_new:
            for hook in self.schema.hooks.after_create_document:
                hook(document)
        return document

    def wrap_upstream(self, raw: Dict[str, Any], *, cache: Optional[MemoryModel] = None) -> Document:
        """Wrap a stored record, reusing the cached instance if any."""
        if cache is not None:
            existing = cache.get(self.name, raw[ID_KEY])
            if existing is not None:
                return existing
        document = self.create_document(raw, from_upstream=True, skip_validation=True)
        if cache is not None:
            cache.add(document)
        return document

    def create_batch(self, documents: Iterable[Any] = ()) -> Batch:
        """Create a Batch from Documents or raw records (new documents)."""
        items = [
            item if isinstance(item, Document) else self.create_document(item)
            for item in documents
        ]
        return self.batch_class(self, items)

    def create_fingerprint(self, raw: Dict[str, Any], *, is_partial: bool = False) -> Fingerprint:
        return Fingerprint(self, raw, is_partial=is_partial)

    def _fingerprint(self, fingerprint: FingerprintLike, is_partial: bool) -> Fingerprint:
        if isinstance(fingerprint, Fingerprint):
            return fingerprint
        return self.create_fingerprint(fingerprint, is_partial=is_partial)

    # =========================================================================
    # Reads
    # =========================================================================

    @staticmethod
    def _session_cache(
        cache: Optional[MemoryModel], population: Optional[Population]
    ) -> Optional[MemoryModel]:
        if population is not None:
            return population.cache
        return cache

    async def _post_retrieve(
        self,
        documents: List[Document],
        *,
        cache: Optional[MemoryModel],
        populate: Optional[Sequence[str]],
        deep_populate: Optional[Dict[str, List[str]]],
        population: Optional[Population],
    ) -> None:
        if not documents or not (populate or deep_populate):
            return
        if population is None:
            population = self.world.create_population(cache=cache, deep=deep_populate)
        await self.world.populate(documents, list(populate or []), deep=deep_populate, population=population)

    async def get(
        self,
        id: str,
        *,
        cache: Optional[MemoryModel] = None,
        populate: Optional[Sequence[str]] = None,
        deep_populate: Optional[Dict[str, List[str]]] = None,
        population: Optional[Population] = None,
    ) -> Document:
        """Get one document by id.

        Raises:
            NotFoundError: If no record has this id
        """
        cache = self._session_cache(cache, population)
        document = cache.get(self.name, id) if cache is not None else None
        if document is None:
            raw = await self.call_driver("get", self.driver.get, str(id))
            if raw is None:
                raise NotFoundError(
                    f"Document {id} not found in '{self.name}'",
                    collection=self.name,
                    document_id=str(id),
                )
            document = self.wrap_upstream(raw, cache=cache)

        await self._post_retrieve(
            [document], cache=cache, populate=populate, deep_populate=deep_populate, population=population
        )
        return document

    async def get_unique(
        self,
        fingerprint: FingerprintLike,
        *,
        is_partial: bool = False,
        cache: Optional[MemoryModel] = None,
        populate: Optional[Sequence[str]] = None,
        deep_populate: Optional[Dict[str, List[str]]] = None,
        population: Optional[Population] = None,
    ) -> Document:
        """Get the one document matching a unique fingerprint.

        Raises:
            BadRequestError: If the fingerprint covers no unique index
            NotFoundError: If nothing matches
        """
        fp = self._fingerprint(fingerprint, is_partial)
        if not fp.unique:
            raise BadRequestError(
                f"Fingerprint {fp.definition} does not cover a unique index of '{self.name}'",
                collection=self.name,
            )
        raw = await self.call_driver("get_unique", self.driver.get_unique, fp.definition)
        if raw is None:
            raise NotFoundError(f"No document matches {fp.definition} in '{self.name}'", collection=self.name)

        cache = self._session_cache(cache, population)
        document = self.wrap_upstream(raw, cache=cache)
        await self._post_retrieve(
            [document], cache=cache, populate=populate, deep_populate=deep_populate, population=population
        )
        return document

    async def multi_get(
        self,
        ids: Sequence[str],
        *,
        cache: Optional[MemoryModel] = None,
        populate: Optional[Sequence[str]] = None,
        deep_populate: Optional[Dict[str, List[str]]] = None,
        population: Optional[Population] = None,
    ) -> Batch:
        """Get documents by ids, in ids order; missing ids are dropped."""
        ids = [str(id) for id in ids]
        if not ids:
            return self.create_batch()

        cache = self._session_cache(cache, population)
        by_id: Dict[str, Document] = {}
        missing = ids
        if cache is not None:
            found, missing = cache.multi_get(self.name, ids)
            by_id = {document.id: document for document in found}

        if missing:
            raws = await self.call_driver("multi_get", self.driver.multi_get, missing)
            for raw in raws:
                document = self.wrap_upstream(raw, cache=cache)
                by_id[document.id] = document

        ordered = [by_id[id] for id in dict.fromkeys(ids) if id in by_id]
        batch = self.create_batch(ordered)
        await self._post_retrieve(
            list(batch), cache=cache, populate=populate, deep_populate=deep_populate, population=population
        )
        return batch

    async def collect(
        self,
        fingerprint: FingerprintLike,
        *,
        is_partial: bool = False,
        cache: Optional[MemoryModel] = None,
        populate: Optional[Sequence[str]] = None,
        deep_populate: Optional[Dict[str, List[str]]] = None,
        population: Optional[Population] = None,
    ) -> Batch:
        """Get every document matching a fingerprint."""
        fp = self._fingerprint(fingerprint, is_partial)
        raws = await self.call_driver("collect", self.driver.collect, fp.definition)
        return await self._batch_from(raws, cache, populate, deep_populate, population)

    async def find(
        self,
        query: Dict[str, Any],
        *,
        cache: Optional[MemoryModel] = None,
        populate: Optional[Sequence[str]] = None,
        deep_populate: Optional[Dict[str, List[str]]] = None,
        population: Optional[Population] = None,
    ) -> Batch:
        """Get every document matching a driver query."""
        raws = await self.call_driver("find", self.driver.find, query)
        return await self._batch_from(raws, cache, populate, deep_populate, population)

    async def _batch_from(
        self,
        raws: List[Dict[str, Any]],
        cache: Optional[MemoryModel],
        populate: Optional[Sequence[str]],
        deep_populate: Optional[Dict[str, List[str]]],
        population: Optional[Population],
    ) -> Batch:
        cache = self._session_cache(cache, population)
        batch = self.create_batch(self.wrap_upstream(raw, cache=cache) for raw in raws)
        await self._post_retrieve(
            list(batch), cache=cache, populate=populate, deep_populate=deep_populate, population=population
        )
        return batch

    async def lock_retrieve_release(
        self,
        query: Dict[str, Any],
        *,
        timeout_ms: Optional[int] = None,
    ) -> LockedBatch:
        """Lock every free document matching query and return them.

        Raises:
            BadRequestError: If the collection cannot lock
        """
        return await self.concurrency.lock_retrieve_release(self, query, timeout_ms)

    # =========================================================================
    # Indexes
    # =========================================================================

    async def build_indexes(self) -> None:
        """Make upstream indexes match the declared ones.

        Obsolete upstream indexes are dropped, missing ones are built.
        """
        upstream = await self.call_driver("get_indexes", self.driver.get_indexes)
        declared = {index.name: index for index in self.schema.all_indexes()}

        for name in upstream:
            if name not in declared:
                await self.call_driver("drop_index", self.driver.drop_index, name)
                logger.info("Index dropped", extra={"collection": self.name, "index": name})

        for name, index in declared.items():
            if name not in upstream:
                await self.call_driver("build_index", self.driver.build_index, index)
                logger.info(
                    "Index built",
                    extra={
                        "collection": self.name,
                        "index": name,
                        "properties": list(index.properties),
                        "unique": index.unique,
                    },
                )
