"""
Schema layer: collection descriptions, validation and descriptors.
"""

from .descriptor import parse_collection_schema, parse_json, parse_yaml
from .types import (
    ACTIVE_VERSION,
    COLLECTION_KEY,
    FROZEN,
    ID_KEY,
    LAST_MODIFIED,
    LOCKED_AT,
    LOCKED_BY,
    VERSION,
    CollectionHooks,
    CollectionSchema,
    FieldDef,
    FieldKind,
    IndexDef,
    field,
)
from .validator import apply_patch, sub_schema, tag_mask, tier_mask, validate, validate_path

__all__ = [
    "ACTIVE_VERSION",
    "COLLECTION_KEY",
    "FROZEN",
    "ID_KEY",
    "LAST_MODIFIED",
    "LOCKED_AT",
    "LOCKED_BY",
    "VERSION",
    "CollectionHooks",
    "CollectionSchema",
    "FieldDef",
    "FieldKind",
    "IndexDef",
    "apply_patch",
    "field",
    "parse_collection_schema",
    "parse_json",
    "parse_yaml",
    "sub_schema",
    "tag_mask",
    "tier_mask",
    "validate",
    "validate_path",
]
