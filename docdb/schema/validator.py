"""
Validation and sanitization of raw records.

Operations:
- validate(schema, raw): full record check, returns the sanitized copy
- sub_schema(schema, path): FieldDef governing a dot path
- validate_path(schema, path, value): single value check for a path
- apply_patch(schema, target, patch): validated set/unset application
- tag_mask / tier_mask: masked export of a record

Sanitizers run before type checks: integer-like strings become integers,
datetimes become ISO strings, bare ids and Document instances become link
shapes, multi-links are de-duplicated, back-links are reset to [].

Invariants:
    - validate() never mutates its input
    - All problems of a record are reported in one ValidationError
    - Defaults are deep-copied, never shared between records
"""

from __future__ import annotations

import copy
import logging
from datetime import date, datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from ..errors import ValidationError
from ..paths import UNSET, WILDCARD, set_path, split_path, unset_path
from .types import (
    COLLECTION_KEY,
    ID_KEY,
    CollectionSchema,
    FieldDef,
    FieldKind,
)

logger = logging.getLogger(__name__)

LinkSink = Callable[[Dict[str, Any], Any], None]


def link_key(link: Dict[str, Any]) -> tuple:
    """Hashable identity of a link shape."""
    return (str(link.get(ID_KEY)), link.get(COLLECTION_KEY))


def _to_link(
    fd: FieldDef,
    value: Any,
    path: str,
    errors: List[str],
    link_sink: Optional[LinkSink],
) -> Optional[Dict[str, Any]]:
    if value is None:
        return None

    document = None
    if hasattr(value, "to_link"):
        document = value
        value = value.to_link()

    if isinstance(value, str):
        value = {ID_KEY: value}

    if not isinstance(value, dict) or ID_KEY not in value:
        errors.append(f"'{path}': expecting a link, got {type(value).__name__}")
        return None

    link: Dict[str, Any] = {ID_KEY: str(value[ID_KEY])}
    if fd.any_collection:
        if not value.get(COLLECTION_KEY):
            errors.append(f"'{path}': link to any collection requires '{COLLECTION_KEY}'")
            return None
        link[COLLECTION_KEY] = value[COLLECTION_KEY]
    elif fd.collection and value.get(COLLECTION_KEY) not in (None, fd.collection):
        errors.append(
            f"'{path}': link should point to '{fd.collection}', "
            f"got '{value.get(COLLECTION_KEY)}'"
        )
        return None

    if document is not None and link_sink is not None:
        link_sink(link, document)
    return link


def _sanitize_integer(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str):
        stripped = value.strip()
        if stripped.lstrip("-").isdigit():
            return int(stripped)
    return value


def _sanitize_number(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError:
            return value
    return value


def _check(
    fd: FieldDef,
    value: Any,
    path: str,
    errors: List[str],
    link_sink: Optional[LinkSink] = None,
) -> Any:
    """Check and sanitize one value against its FieldDef."""
    kind = fd.kind

    if kind == FieldKind.BACK_LINK:
        return []

    if value is UNSET or value is None:
        if kind == FieldKind.MULTI_LINK:
            return []
        if value is UNSET and fd.default is not None:
            return copy.deepcopy(fd.default)
        if fd.required:
            errors.append(f"'{path}': is required")
        return None if value is None else UNSET

    if kind == FieldKind.ANY:
        return copy.deepcopy(value)

    if kind == FieldKind.LINK:
        return _to_link(fd, value, path, errors, link_sink)

    if kind == FieldKind.MULTI_LINK:
        if not isinstance(value, (list, tuple)):
            errors.append(f"'{path}': expecting a list of links, got {type(value).__name__}")
            return []
        links: List[Dict[str, Any]] = []
        seen = set()
        for index, item in enumerate(value):
            link = _to_link(fd, item, f"{path}.{index}", errors, link_sink)
            if link is None:
                continue
            key = link_key(link)
            if key not in seen:
                seen.add(key)
                links.append(link)
        return links

    if kind in (FieldKind.STRING, FieldKind.ID):
        if not isinstance(value, str):
            errors.append(f"'{path}': expecting a string, got {type(value).__name__}")
            return value
        if fd.max_length is not None and len(value) > fd.max_length:
            errors.append(f"'{path}': longer than {fd.max_length} characters")
        if fd.enum_values is not None and value not in fd.enum_values:
            errors.append(f"'{path}': must be one of {list(fd.enum_values)}")
        return value

    if kind == FieldKind.INTEGER:
        value = _sanitize_integer(value)
        if isinstance(value, bool) or not isinstance(value, int):
            errors.append(f"'{path}': expecting an integer, got {type(value).__name__}")
            return value
        return _check_range(fd, value, path, errors)

    if kind == FieldKind.NUMBER:
        value = _sanitize_number(value)
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors.append(f"'{path}': expecting a number, got {type(value).__name__}")
            return value
        return _check_range(fd, value, path, errors)

    if kind == FieldKind.BOOLEAN:
        if isinstance(value, str) and value.lower() in ("true", "false"):
            return value.lower() == "true"
        if not isinstance(value, bool):
            errors.append(f"'{path}': expecting a boolean, got {type(value).__name__}")
        return value

    if kind == FieldKind.DATE:
        if isinstance(value, (datetime, date)):
            return value.isoformat()
        if isinstance(value, str):
            try:
                datetime.fromisoformat(value)
            except ValueError:
                errors.append(f"'{path}': not an ISO date: '{value}'")
            return value
        errors.append(f"'{path}': expecting a date, got {type(value).__name__}")
        return value

    if kind == FieldKind.ATTACHMENT:
        if not isinstance(value, dict) or "id" not in value:
            errors.append(f"'{path}': expecting an attachment descriptor")
            return value
        return copy.deepcopy(value)

    if kind == FieldKind.ARRAY:
        if not isinstance(value, (list, tuple)):
            errors.append(f"'{path}': expecting an array, got {type(value).__name__}")
            return value
        if fd.of is None:
            return copy.deepcopy(list(value))
        return [
            _check(fd.of, item, f"{path}.{index}", errors, link_sink)
            for index, item in enumerate(value)
        ]

    if kind == FieldKind.OBJECT:
        if not isinstance(value, dict):
            errors.append(f"'{path}': expecting an object, got {type(value).__name__}")
            return value
        return _check_object(fd, value, path, errors, link_sink)

    errors.append(f"'{path}': unsupported kind {kind.value}")
    return value


def _check_range(fd: FieldDef, value: Any, path: str, errors: List[str]) -> Any:
    if fd.minimum is not None and value < fd.minimum:
        errors.append(f"'{path}': lower than {fd.minimum}")
    if fd.maximum is not None and value > fd.maximum:
        errors.append(f"'{path}': greater than {fd.maximum}")
    return value


def _check_object(
    fd: FieldDef,
    value: Dict[str, Any],
    path: str,
    errors: List[str],
    link_sink: Optional[LinkSink],
) -> Dict[str, Any]:
    def child_path(name: str) -> str:
        return f"{path}.{name}" if path else name

    if not fd.properties and fd.of is None:
        return copy.deepcopy(value)

    result: Dict[str, Any] = {}
    for prop in fd.properties:
        checked = _check(prop, value.get(prop.name, UNSET), child_path(prop.name), errors, link_sink)
        if checked is not UNSET:
            result[prop.name] = checked

    declared = {prop.name for prop in fd.properties}
    for key, item in value.items():
        if key in declared:
            continue
        if fd.of is not None:
            result[key] = _check(fd.of, item, child_path(key), errors, link_sink)
        elif fd.extra_properties:
            result[key] = copy.deepcopy(item)
        else:
            errors.append(f"'{child_path(key)}': unknown property")
    return result


def validate(
    schema: CollectionSchema,
    raw: Dict[str, Any],
    *,
    link_sink: Optional[LinkSink] = None,
) -> Dict[str, Any]:
    """Validate and sanitize a whole raw record.

    Args:
        schema: Collection schema
        raw: Raw record (not modified)
        link_sink: Called with (link shape, Document) for each Document
            instance found in a link property

    Returns:
        Sanitized deep copy of the record

    Raises:
        ValidationError: Listing every problem found
    """
    errors: List[str] = []
    sanitized = _check_object(schema.root_field(), raw, "", errors, link_sink)
    if errors:
        raise ValidationError(
            f"Validation failed: {'; '.join(errors)}",
            errors=errors,
        )
    return sanitized


def _link_part(fd: FieldDef, segment: str) -> FieldDef:
    if segment == ID_KEY:
        return FieldDef(ID_KEY, FieldKind.ID, required=True)
    if segment == COLLECTION_KEY and fd.any_collection:
        return FieldDef(COLLECTION_KEY, FieldKind.STRING, required=True)
    raise ValidationError(f"Path segment '{segment}' does not exist in link '{fd.name}'")


def sub_schema(schema: CollectionSchema, path: str) -> FieldDef:
    """Return the FieldDef governing a dot path.

    Numeric and "*" segments walk into arrays and multi-links.

    Raises:
        ValidationError: If the path is not described by the schema
    """
    current = schema.root_field()
    for segment in split_path(path):
        kind = current.kind
        if kind == FieldKind.OBJECT:
            prop = current.property(segment)
            if prop is None:
                if current.of is not None:
                    prop = current.of
                elif current.extra_properties or not current.properties:
                    prop = FieldDef(segment, FieldKind.ANY)
                else:
                    raise ValidationError(f"Path '{path}' does not exist in the schema", path=path)
            current = prop
        elif kind in (FieldKind.ARRAY, FieldKind.MULTI_LINK, FieldKind.BACK_LINK):
            if segment != WILDCARD and not segment.isdigit():
                raise ValidationError(f"Path '{path}': '{segment}' is not an index", path=path)
            if kind == FieldKind.MULTI_LINK:
                current = FieldDef(
                    segment,
                    FieldKind.LINK,
                    collection=current.collection,
                    any_collection=current.any_collection,
                )
            elif kind == FieldKind.BACK_LINK:
                raise ValidationError(f"Path '{path}': back-links have no elements", path=path)
            else:
                current = current.of or FieldDef(segment, FieldKind.ANY)
        elif kind == FieldKind.LINK:
            current = _link_part(current, segment)
        elif kind in (FieldKind.ANY, FieldKind.ATTACHMENT):
            current = FieldDef(segment, FieldKind.ANY)
        else:
            raise ValidationError(
                f"Path '{path}': cannot walk into a {kind.value} at '{segment}'", path=path
            )
    return current


def validate_path(
    schema: CollectionSchema,
    path: str,
    value: Any,
    *,
    link_sink: Optional[LinkSink] = None,
) -> Any:
    """Validate and sanitize one value against the FieldDef at path.

    Raises:
        ValidationError: If the path is unknown or the value is invalid
    """
    fd = sub_schema(schema, path)
    errors: List[str] = []
    sanitized = _check(fd, value, path, errors, link_sink)
    if errors:
        raise ValidationError(f"Validation failed: {'; '.join(errors)}", path=path, errors=errors)
    return sanitized


def apply_patch(
    schema: CollectionSchema,
    target: Dict[str, Any],
    patch: Dict[str, Any],
) -> Dict[str, Any]:
    """Apply a {"set": {...}, "unset": [...]} patch after validating it.

    Args:
        schema: Collection schema
        target: Raw record, modified in place
        patch: Patch operations keyed by dot path

    Returns:
        The target record

    Raises:
        ValidationError: On the first invalid operation; target is left
            unchanged in that case
    """
    sets = {
        path: validate_path(schema, path, value)
        for path, value in (patch.get("set") or {}).items()
    }
    unsets: Iterable[str] = patch.get("unset") or ()
    for path in unsets:
        if sub_schema(schema, path).required:
            raise ValidationError(f"Path '{path}' is required and cannot be unset", path=path)

    for path, value in sets.items():
        set_path(target, path, value)
    for path in unsets:
        unset_path(target, path)
    return target


def tag_mask(schema: CollectionSchema, value: Dict[str, Any], tags: Iterable[str]) -> Dict[str, Any]:
    """Keep the top-level properties whose tags intersect tags.

    The id is always kept. Undeclared properties are dropped.
    """
    wanted = set(tags)
    kept = {
        prop.name
        for prop in schema.root_field().properties
        if prop.name == ID_KEY or wanted.intersection(prop.tags)
    }
    return {key: copy.deepcopy(item) for key, item in value.items() if key in kept}


def tier_mask(schema: CollectionSchema, value: Dict[str, Any], tier: int) -> Dict[str, Any]:
    """Keep the top-level properties visible at a tier."""
    kept = schema.tier_mask(tier)
    return {key: copy.deepcopy(item) for key, item in value.items() if key in kept}
