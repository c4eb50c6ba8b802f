"""
Schema types for docdb collections.

This module provides the declarative description of a collection:
- FieldKind: Data type of a property
- FieldDef: One property (possibly nested, possibly a link)
- IndexDef: A declared index, named by its fingerprint
- CollectionHooks: Document lifecycle callbacks
- CollectionSchema: Everything a Collection is built from

Raw records use "_id" as identity key. Links are stored as {"_id": id};
links whose target collection is dynamic are stored as
{"_id": id, "_collection": name}. Multi-links are ordered lists of links.
Back-links are derived and always stored as an empty list.

Invariants:
    - An IndexDef name only depends on its properties and uniqueness
    - System properties are added from the schema flags, never declared
    - Tier masks are cumulative: tier N sees every property of tier <= N

Example:
    >>> users = CollectionSchema(
    ...     url="memory://users",
    ...     fields=(
    ...         field("firstName", "string", default="Joe"),
    ...         field("job", "link", collection="jobs"),
    ...     ),
    ...     indexes=(IndexDef(("job",)),),
    ... )
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Type

ID_KEY = "_id"
COLLECTION_KEY = "_collection"
LOCKED_BY = "_lockedBy"
LOCKED_AT = "_lockedAt"
VERSION = "_version"
LAST_MODIFIED = "_lastModified"
ACTIVE_VERSION = "_activeVersion"
FROZEN = "_frozen"

MAX_TIER = 5
DEFAULT_TIER = 3


class FieldKind(Enum):
    """Supported property types."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    OBJECT = "object"
    ARRAY = "array"
    ANY = "any"
    ID = "id"
    LINK = "link"
    MULTI_LINK = "multiLink"
    BACK_LINK = "backLink"
    ATTACHMENT = "attachment"

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert string to FieldKind."""
        for kind in cls:
            if kind.value == value:
                return kind
        raise ValueError(f"Invalid field kind: {value}")

    @property
    def is_link(self) -> bool:
        return self in (FieldKind.LINK, FieldKind.MULTI_LINK, FieldKind.BACK_LINK)


@dataclass(frozen=True)
class FieldDef:
    """Property definition within a collection.

    Attributes:
        name: Property name (key in the parent object)
        kind: Data type
        required: Whether the property must be present and not None
        default: Default value, deep-copied into new records
        enum_values: Allowed values
        max_length: Maximum string length
        minimum: Minimum numeric value
        maximum: Maximum numeric value
        properties: Nested properties of an object
        of: Element definition of an array, or value definition of a
            free-keyed object
        collection: Target collection of a link, multi-link or back-link
        any_collection: The link target collection is stored in the link
        path: Foreign property a back-link matches against
        tier: Visibility tier (1..5) for export masks
        tags: Tags for tag masks
        system: Property is managed by docdb itself
        extra_properties: Object accepts undeclared keys
        description: Documentation
    """

    name: str
    kind: FieldKind
    required: bool = False
    default: Any = None
    enum_values: Optional[Tuple[Any, ...]] = None
    max_length: Optional[int] = None
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    properties: Tuple[FieldDef, ...] = ()
    of: Optional[FieldDef] = None
    collection: Optional[str] = None
    any_collection: bool = False
    path: Optional[str] = None
    tier: int = DEFAULT_TIER
    tags: Tuple[str, ...] = ("content",)
    system: bool = False
    extra_properties: bool = False
    description: str = ""

    def __post_init__(self) -> None:
        """Validate field definition."""
        if not self.name:
            raise ValueError("Field name cannot be empty")
        if not 1 <= self.tier <= MAX_TIER:
            raise ValueError(f"tier must be 1-{MAX_TIER}, got {self.tier} for '{self.name}'")
        if self.kind == FieldKind.BACK_LINK and not self.path:
            raise ValueError(f"backLink field '{self.name}' requires a foreign path")

    @property
    def is_link(self) -> bool:
        return self.kind.is_link

    def property(self, name: str) -> Optional[FieldDef]:
        """Return the nested property called name, if declared."""
        for prop in self.properties:
            if prop.name == name:
                return prop
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a descriptor dictionary."""
        result: Dict[str, Any] = {"name": self.name, "kind": self.kind.value}
        if self.required:
            result["required"] = True
        if self.default is not None:
            result["default"] = self.default
        if self.enum_values:
            result["enum_values"] = list(self.enum_values)
        if self.max_length is not None:
            result["max_length"] = self.max_length
        if self.minimum is not None:
            result["minimum"] = self.minimum
        if self.maximum is not None:
            result["maximum"] = self.maximum
        if self.properties:
            result["properties"] = [prop.to_dict() for prop in self.properties]
        if self.of is not None:
            result["of"] = self.of.to_dict()
        if self.collection:
            result["collection"] = self.collection
        if self.any_collection:
            result["any_collection"] = True
        if self.path:
            result["path"] = self.path
        if self.tier != DEFAULT_TIER:
            result["tier"] = self.tier
        if self.tags != ("content",):
            result["tags"] = list(self.tags)
        if self.extra_properties:
            result["extra_properties"] = True
        if self.description:
            result["description"] = self.description
        return result


def field(
    name: str,
    kind: str | FieldKind,
    **options: Any,
) -> FieldDef:
    """Convenience function to create a FieldDef.

    Args:
        name: Property name
        kind: Field type, as a FieldKind or its string value
        **options: Any other FieldDef attribute; lists are converted to
            tuples

    Returns:
        FieldDef instance

    Example:
        >>> title = field("title", "string", default="unemployed")
        >>> users = field("users", "backLink", collection="users", path="job")
    """
    if isinstance(kind, str):
        kind = FieldKind.from_str(kind)
    for key in ("enum_values", "properties", "tags"):
        if isinstance(options.get(key), list):
            options[key] = tuple(options[key])
    return FieldDef(name=name, kind=kind, **options)


def canonical_json(value: Any) -> str:
    """Stable JSON text used for fingerprints and value comparison."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


@dataclass(frozen=True)
class IndexDef:
    """A declared index.

    Attributes:
        properties: Indexed dot paths, in order
        unique: Whether the combination must be unique
    """

    properties: Tuple[str, ...]
    unique: bool = False

    def __post_init__(self) -> None:
        if not self.properties:
            raise ValueError("An index needs at least one property")

    @property
    def name(self) -> str:
        """Deterministic name derived from the definition."""
        digest = hashlib.sha256(canonical_json(self.to_dict()).encode()).hexdigest()
        return f"idx_{digest[:16]}"

    def to_dict(self) -> Dict[str, Any]:
        return {"properties": list(self.properties), "unique": self.unique}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> IndexDef:
        return cls(properties=tuple(data["properties"]), unique=bool(data.get("unique", False)))


Hook = Callable[..., Any]


@dataclass
class CollectionHooks:
    """Document lifecycle callbacks.

    Hooks are plain callables, run in registration order.

    Attributes:
        before_create_document: Called with the raw record before validation
        after_create_document: Called with the new Document
    """

    before_create_document: List[Hook] = dataclass_field(default_factory=list)
    after_create_document: List[Hook] = dataclass_field(default_factory=list)


@dataclass
class CollectionSchema:
    """Everything a Collection is built from.

    Attributes:
        url: Storage driver URL; the scheme selects the driver
        fields: Declared top-level properties
        indexes: Declared indexes
        hooks: Lifecycle callbacks
        can_lock: Enable pessimistic locking
        lock_timeout_ms: Lock validity window (None uses the config default)
        versioning: Enable optimistic version archival
        freezable: Enable freeze()/unfreeze()
        attachment_url: Attachment driver URL (file:///base/dir)
        skip_validation: Never validate records of this collection
        extra_properties: Top-level object accepts undeclared keys
        document_class: Document subclass used for this collection
        batch_class: Batch subclass used for this collection
    """

    url: Optional[str] = None
    fields: Tuple[FieldDef, ...] = ()
    indexes: Tuple[IndexDef, ...] = ()
    hooks: CollectionHooks = dataclass_field(default_factory=CollectionHooks)
    can_lock: bool = False
    lock_timeout_ms: Optional[int] = None
    versioning: bool = False
    freezable: bool = False
    attachment_url: Optional[str] = None
    skip_validation: bool = False
    extra_properties: bool = False
    document_class: Optional[Type[Any]] = None
    batch_class: Optional[Type[Any]] = None

    def system_fields(self) -> List[FieldDef]:
        """System properties implied by the schema flags."""
        system = [
            FieldDef(ID_KEY, FieldKind.ID, tier=1, tags=("id",), system=True),
        ]
        if self.can_lock:
            system.append(FieldDef(LOCKED_BY, FieldKind.ID, tier=4, tags=("system",), system=True))
            system.append(
                FieldDef(LOCKED_AT, FieldKind.INTEGER, tier=4, tags=("system",), system=True)
            )
        if self.versioning:
            system.append(
                FieldDef(VERSION, FieldKind.INTEGER, default=1, tier=4, tags=("system",), system=True)
            )
            system.append(
                FieldDef(LAST_MODIFIED, FieldKind.INTEGER, tier=4, tags=("system",), system=True)
            )
        if self.freezable:
            system.append(
                FieldDef(FROZEN, FieldKind.BOOLEAN, default=False, tier=4, tags=("system",), system=True)
            )
        return system

    def root_field(self) -> FieldDef:
        """The whole record as one object FieldDef."""
        declared = {prop.name for prop in self.fields}
        system = [prop for prop in self.system_fields() if prop.name not in declared]
        return FieldDef(
            name="$root",
            kind=FieldKind.OBJECT,
            properties=tuple(system) + tuple(self.fields),
            extra_properties=self.extra_properties,
        )

    def all_indexes(self) -> List[IndexDef]:
        """Declared indexes plus the ones implied by the schema flags."""
        indexes = list(self.indexes)
        if self.can_lock:
            indexes.append(IndexDef((LOCKED_BY,)))
            indexes.append(IndexDef((LOCKED_BY, LOCKED_AT)))
        seen = set()
        unique_list = []
        for index in indexes:
            if index.name not in seen:
                seen.add(index.name)
                unique_list.append(index)
        return unique_list

    def uniques(self) -> List[Tuple[str, ...]]:
        """Property lists that identify at most one record."""
        return [(ID_KEY,)] + [index.properties for index in self.all_indexes() if index.unique]

    def tier_mask(self, tier: int) -> set:
        """Top-level properties visible at a tier."""
        if not 1 <= tier <= MAX_TIER:
            raise ValueError(f"tier must be 1-{MAX_TIER}, got {tier}")
        return {prop.name for prop in self.root_field().properties if prop.tier <= tier}
