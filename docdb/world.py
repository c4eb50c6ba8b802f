"""
World: the explicit registry of collections.

A World owns the configuration, the driver scheme registry, every declared
Collection, the lazily created version-history collection and the
concurrency controller. Nothing is process-global: two Worlds never share
collections or storage.

Example:
    >>> async with World() as world:
    ...     world.load_collections(DESCRIPTOR_YAML)
    ...     users = world.get_collection("users")
    ...     user = await users.get(user_id, populate=["job"])

Invariants:
    - A collection name is declared at most once per World
    - The version-history collection is created at most once
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Type, Union, cast

from .collection import Collection
from .concurrency import ConcurrencyController
from .config import DocDbConfig
from .counters import CountersCollection, counters_schema
from .document import Document
from .drivers import DEFAULT_DRIVERS, DriverFactory, create_driver
from .errors import BadRequestError
from .memory import MemoryModel
from .population import Population
from .schema.descriptor import parse_collection_schema, parse_yaml
from .schema.types import ACTIVE_VERSION, VERSION, CollectionSchema, IndexDef

logger = logging.getLogger(__name__)

SchemaLike = Union[CollectionSchema, Mapping[str, Any], None]


class World:
    """Registry of collections sharing one configuration.

    Attributes:
        config: Configuration in use
        concurrency: Version archival and lock controller
    """

    def __init__(
        self,
        config: Optional[DocDbConfig] = None,
        *,
        drivers: Optional[Dict[str, DriverFactory]] = None,
    ) -> None:
        self.config = config or DocDbConfig()
        self.config.validate()
        self.config.log_config()
        self._drivers: Dict[str, DriverFactory] = dict(DEFAULT_DRIVERS)
        self._drivers.update(drivers or {})
        self._collections: Dict[str, Collection] = {}
        self._versions: Optional[Collection] = None
        self._versions_lock = asyncio.Lock()
        self.concurrency = ConcurrencyController(self, self.config.concurrency)

    def __repr__(self) -> str:
        return f"<World collections={sorted(self._collections)}>"

    # =========================================================================
    # Registry
    # =========================================================================

    @property
    def collections(self) -> Dict[str, Collection]:
        return dict(self._collections)

    @property
    def versions(self) -> Optional[Collection]:
        """The version-history collection, once created."""
        return self._versions

    def register_driver(self, scheme: str, factory: DriverFactory) -> None:
        """Make a driver available for URLs with this scheme."""
        self._drivers[scheme.lower()] = factory

    def create_collection(
        self,
        name: str,
        schema: SchemaLike = None,
        *,
        collection_class: Type[Collection] = Collection,
    ) -> Collection:
        """Declare a collection.

        Args:
            name: Collection name
            schema: CollectionSchema, plain descriptor mapping, or None for
                an empty schema accepting any property
            collection_class: Collection subclass to instantiate

        Raises:
            BadRequestError: If the name is already declared or the driver
                URL is not supported
            ValidationError: If a descriptor is invalid
        """
        if name in self._collections:
            raise BadRequestError(f"Collection '{name}' is already declared", collection=name)

        if schema is None:
            schema = CollectionSchema(extra_properties=True)
        elif not isinstance(schema, CollectionSchema):
            schema = parse_collection_schema(dict(schema))

        url = schema.url or self.config.storage.default_url
        try:
            driver = create_driver(url, collection_name=name, drivers=self._drivers)
        except ValueError as e:
            raise BadRequestError(str(e), collection=name) from e

        collection = collection_class(self, name, schema, driver, url=url)
        self._collections[name] = collection
        logger.debug("Collection declared", extra={"collection": name, "url": url})
        return collection

    def create_counters_collection(
        self, name: Optional[str] = None, schema: SchemaLike = None
    ) -> CountersCollection:
        """Declare a counters collection.

        Args:
            name: Collection name (defaults to the configured one)
            schema: Extra schema settings; the counter properties and the
                unique name index are always added

        Raises:
            BadRequestError: If the name is already declared
        """
        name = name or self.config.storage.counters_collection
        if schema is not None and not isinstance(schema, CollectionSchema):
            schema = parse_collection_schema(dict(schema))
        schema = counters_schema(schema, url=self.config.storage.counters_url)
        return cast(CountersCollection, self.create_collection(name, schema, collection_class=CountersCollection))

    def get_collection(self, name: str) -> Collection:
        """Look up a declared collection.

        Raises:
            BadRequestError: If no collection has this name
        """
        try:
            return self._collections[name]
        except KeyError:
            raise BadRequestError(f"Collection '{name}' is not declared", collection=name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._collections

    def load_collections(self, yaml_str: str) -> List[Collection]:
        """Declare every collection of a YAML descriptor."""
        schemas = parse_yaml(yaml_str)
        return [self.create_collection(name, schema) for name, schema in schemas.items()]

    async def versions_collection(self) -> Collection:
        """The version-history collection, created and indexed on first use."""
        if self._versions is not None:
            return self._versions
        async with self._versions_lock:
            if self._versions is None:
                schema = CollectionSchema(
                    url=self.config.storage.versions_url,
                    indexes=(
                        IndexDef((ACTIVE_VERSION,)),
                        IndexDef((ACTIVE_VERSION, VERSION), unique=True),
                    ),
                    skip_validation=True,
                    extra_properties=True,
                )
                versions = self.create_collection(self.config.storage.versions_collection, schema)
                await versions.build_indexes()
                self._versions = versions
        return self._versions

    # =========================================================================
    # Population
    # =========================================================================

    def create_memory_model(self) -> MemoryModel:
        return MemoryModel()

    def create_population(
        self,
        *,
        cache: Optional[MemoryModel] = None,
        deep: Optional[Dict[str, List[str]]] = None,
    ) -> Population:
        return Population(self, cache=cache, deep=deep)

    async def populate(
        self,
        documents: Iterable[Document],
        paths: Iterable[str],
        *,
        deep: Optional[Dict[str, List[str]]] = None,
        population: Optional[Population] = None,
    ) -> Population:
        """Resolve link paths of documents in one population session.

        Roots are registered in the identity map before any fetch, so links
        back to a root resolve to the root instance itself.
        """
        if population is None:
            population = self.create_population(deep=deep)
        elif deep:
            for name, extra in deep.items():
                known = population.deep.setdefault(name, [])
                known.extend(path for path in extra if path not in known)

        documents = list(documents)
        paths = list(paths)
        for document in documents:
            population.register(document)
        for document in documents:
            population.prepare(document, paths)
        await population.resolve()
        return population

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def build_indexes(self) -> None:
        """Build the declared indexes of every collection."""
        for collection in list(self._collections.values()):
            await collection.build_indexes()
        logger.info("Indexes built", extra={"collections": sorted(self._collections)})

    async def close(self) -> None:
        """Close every driver."""
        for collection in list(self._collections.values()):
            await collection.close()
        logger.info("World closed", extra={"collections": len(self._collections)})

    async def __aenter__(self) -> World:
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.close()
