"""
YAML/JSON collection descriptors.

Collections can be declared in code with CollectionSchema, or from plain
descriptors, which is convenient for configuration files.

Example descriptor:
    collections:
      users:
        url: memory://users
        fields:
          - name: firstName
            kind: string
            default: Joe
          - name: job
            kind: link
            collection: jobs
        indexes:
          - properties: [job]
          - properties: [job, memberSid]
            unique: true
      lockables:
        url: memory://lockables
        can_lock: true
        lock_timeout_ms: 40
        extra_properties: true

Hooks and custom Document/Batch classes cannot be expressed in a
descriptor; attach them to the returned schema in code.
"""

from __future__ import annotations

import json
from typing import Any, Dict

import yaml

from ..errors import ValidationError
from .types import CollectionSchema, FieldDef, IndexDef, field

_SCHEMA_FLAGS = (
    "url",
    "can_lock",
    "lock_timeout_ms",
    "versioning",
    "freezable",
    "attachment_url",
    "skip_validation",
    "extra_properties",
)


def parse_field(data: Dict[str, Any]) -> FieldDef:
    """Parse a field descriptor, recursively."""
    data = dict(data)
    try:
        name = data.pop("name")
        kind = data.pop("kind")
    except KeyError as e:
        raise ValidationError(f"Field descriptor is missing {e}") from e

    if "properties" in data:
        data["properties"] = tuple(parse_field(prop) for prop in data["properties"])
    if "of" in data:
        of = dict(data["of"])
        of.setdefault("name", "*")
        data["of"] = parse_field(of)
    try:
        return field(name, kind, **data)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid field '{name}': {e}") from e


def parse_collection_schema(data: Dict[str, Any]) -> CollectionSchema:
    """Parse one collection descriptor."""
    unknown = set(data) - set(_SCHEMA_FLAGS) - {"fields", "indexes"}
    if unknown:
        raise ValidationError(f"Unknown collection options: {sorted(unknown)}")

    options = {key: data[key] for key in _SCHEMA_FLAGS if key in data}
    return CollectionSchema(
        fields=tuple(parse_field(item) for item in data.get("fields", [])),
        indexes=tuple(IndexDef.from_dict(item) for item in data.get("indexes", [])),
        **options,
    )


def parse_collections(data: Dict[str, Any]) -> Dict[str, CollectionSchema]:
    """Parse a {"collections": {name: descriptor}} document."""
    collections = data.get("collections") or {}
    return {name: parse_collection_schema(item or {}) for name, item in collections.items()}


def parse_yaml(yaml_str: str) -> Dict[str, CollectionSchema]:
    """Parse collection descriptors from a YAML string."""
    data = yaml.safe_load(yaml_str)
    return parse_collections(data or {})


def parse_json(json_str: str) -> Dict[str, CollectionSchema]:
    """Parse collection descriptors from a JSON string."""
    data = json.loads(json_str)
    return parse_collections(data or {})
