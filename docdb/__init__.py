"""
docdb - Document-store data access layer.

This package provides change-tracked documents on top of pluggable storage
drivers:
- Collections declared in a World, from code or YAML descriptors
- Documents that commit minimal {set, unset} patches
- Population of link, multi-link and back-link properties in batched rounds
- Optimistic version archival and pessimistic locks
- Named counters with atomic increments

Example:
    >>> from docdb import World, CollectionSchema, field
    >>>
    >>> async with World() as world:
    ...     jobs = world.create_collection("jobs", CollectionSchema(
    ...         fields=(field("title", "string", required=True),),
    ...     ))
    ...     users = world.create_collection("users", CollectionSchema(
    ...         fields=(field("name", "string"), field("job", "link", collection="jobs")),
    ...     ))
    ...     job = jobs.create_document({"title": "Plumber"})
    ...     await job.save()
    ...     user = users.create_document({"name": "Jack", "job": job})
    ...     await user.save()
    ...     loaded = await users.get(user.id, populate=["job"])
    ...     loaded.get("job").get("title")
    'Plumber'

Invariants:
    - One (collection, id) maps to one Document per identity map
    - commit() writes only the dirty paths
    - Lock acquisition failure is a result, not an error

Version: 1.0.0
"""

__version__ = "1.0.0"

from .attachments import Attachment, FileAttachmentDriver
from .batch import Batch
from .collection import Collection
from .concurrency import ConcurrencyController, LockedBatch
from .config import (
    ConcurrencyConfig,
    DocDbConfig,
    ObservabilityConfig,
    PopulationConfig,
    StorageConfig,
)
from .counters import CountersCollection
from .document import Document, DocumentState, LinkDetails
from .drivers import InMemoryDriver, Patch, SQLiteDriver, StorageDriver
from .errors import (
    BadRequestError,
    ConflictError,
    DocDbError,
    DocumentStateError,
    InternalError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from .fingerprint import Fingerprint
from .memory import MemoryModel
from .observability import setup_logging
from .paths import UNSET
from .population import Population
from .schema import (
    CollectionHooks,
    CollectionSchema,
    FieldDef,
    FieldKind,
    IndexDef,
    field,
)
from .world import World

__all__ = [
    # Version
    "__version__",
    # Registry
    "World",
    "Collection",
    "CountersCollection",
    # Documents
    "Document",
    "DocumentState",
    "LinkDetails",
    "Batch",
    "Fingerprint",
    "MemoryModel",
    "Population",
    "UNSET",
    # Concurrency
    "ConcurrencyController",
    "LockedBatch",
    # Schema
    "CollectionHooks",
    "CollectionSchema",
    "FieldDef",
    "FieldKind",
    "IndexDef",
    "field",
    # Storage
    "StorageDriver",
    "InMemoryDriver",
    "SQLiteDriver",
    "Patch",
    "Attachment",
    "FileAttachmentDriver",
    # Config
    "DocDbConfig",
    "StorageConfig",
    "ConcurrencyConfig",
    "PopulationConfig",
    "ObservabilityConfig",
    "setup_logging",
    # Errors
    "DocDbError",
    "ValidationError",
    "NotFoundError",
    "BadRequestError",
    "DocumentStateError",
    "ConflictError",
    "InternalError",
    "StorageError",
]
