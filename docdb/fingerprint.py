"""
Fingerprints: partial records used as lookup keys.

A fingerprint can be given flat ({"meta.country": "FR"}) or nested
({"meta": {"country": "FR"}}); the other form is derived lazily. Link
values ({"_id": ...}) are kept whole in the flat form.
"""

from __future__ import annotations

import copy
from functools import cached_property
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

from .paths import flatten, unflatten
from .schema.types import ID_KEY

if TYPE_CHECKING:
    from .collection import Collection


def _is_link(value: Dict[str, Any]) -> bool:
    return ID_KEY in value


class Fingerprint:
    """Partial-record query descriptor.

    Attributes:
        collection: Collection the fingerprint applies to
        definition: Flat form, {dot.path: value}
        partial: Nested form
        unique: Whether the fingerprint covers a unique index
    """

    def __init__(
        self,
        collection: Collection,
        raw: Optional[Dict[str, Any]] = None,
        *,
        is_partial: bool = False,
    ) -> None:
        self.collection = collection
        raw = copy.deepcopy(raw or {})
        if is_partial:
            self.__dict__["partial"] = raw
        else:
            self.__dict__["definition"] = raw

    @cached_property
    def definition(self) -> Dict[str, Any]:
        return flatten(self.partial, is_leaf=_is_link)

    @cached_property
    def partial(self) -> Dict[str, Any]:
        return unflatten(self.definition)

    @cached_property
    def unique(self) -> bool:
        return self.matching_unique() is not None

    def matching_unique(self) -> Optional[Tuple[str, ...]]:
        """Return the first unique property list fully covered, if any."""
        keys = list(self.definition)
        for properties in self.collection.uniques:
            if all(self._covers(keys, path) for path in properties):
                return properties
        return None

    @staticmethod
    def _covers(keys: list, path: str) -> bool:
        # A link index is also covered by its "._id" key.
        return path in keys or f"{path}.{ID_KEY}" in keys

    def __repr__(self) -> str:
        return f"Fingerprint({self.collection.name!r}, {self.definition!r})"
