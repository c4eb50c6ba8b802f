"""
Counters: named integer sequences stored as records.

A counters collection holds one record per counter name,
{"_id", "name", "counter"}, with a unique index on name.
get_next_counter_for() increments a counter in one atomic driver call and
creates the record on first use, so concurrent callers never receive the
same value.

Example:
    >>> counters = world.create_counters_collection()
    >>> await counters.get_next_counter_for("invoices")
    1
    >>> await counters.get_next_counter_for("invoices")
    2

Invariants:
    - A counter name maps to at most one record
    - Values handed out for one name are strictly increasing from 1
"""

from __future__ import annotations

import dataclasses
import logging
from typing import Optional

from .collection import Collection
from .schema.types import CollectionSchema, IndexDef, field

logger = logging.getLogger(__name__)

COUNTER_FIELDS = (
    field("name", "string", default="auto", system=True, tags=("system-content",)),
    field("counter", "integer", default=0, minimum=0, system=True, tags=("system-content",)),
)
NAME_INDEX = IndexDef(("name",), unique=True)


def counters_schema(schema: Optional[CollectionSchema] = None, *, url: Optional[str] = None) -> CollectionSchema:
    """Add the counter properties and the unique name index to a schema.

    url is used when the schema declares none.
    """
    schema = schema or CollectionSchema()
    reserved = {prop.name for prop in COUNTER_FIELDS}
    fields = COUNTER_FIELDS + tuple(prop for prop in schema.fields if prop.name not in reserved)
    indexes = tuple(schema.indexes)
    if all(index.name != NAME_INDEX.name for index in indexes):
        indexes += (NAME_INDEX,)
    return dataclasses.replace(schema, url=schema.url or url, fields=fields, indexes=indexes)


class CountersCollection(Collection):
    """Collection of named counters."""

    is_counters = True

    async def get_next_counter_for(self, name: str) -> int:
        """Increment a counter and return its new value.

        A counter that does not exist yet starts at 1.

        Raises:
            StorageError: On driver failure
        """
        name = str(name)
        defaults = self.validate({"name": name})
        value = await self.call_driver(
            "increment", self.driver.increment, {"name": name}, "counter", 1, defaults
        )
        logger.debug("Counter incremented", extra={"collection": self.name, "counter": name, "value": value})
        return value
