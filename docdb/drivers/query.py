"""
Query matcher shared by the bundled drivers.

Queries are Mongo-style: {dot.path: value} equality, {dot.path: {op: arg}}
comparisons and top-level "$and" / "$or" / "$nor" clause lists.

A path crossing a list matches if any element matches, so
{"jobs._id": "j1"} matches {"jobs": [{"_id": "j0"}, {"_id": "j1"}]}, and
equality against a list-valued property matches either the whole list or
any of its elements.

Supported operators: $eq $ne $in $nin $lt $lte $gt $gte $exists.
"""

from __future__ import annotations

from typing import Any, Dict, List

from .base import DriverError

LOGICAL = {"$and", "$or", "$nor"}
COMPARATORS = {"$eq", "$ne", "$in", "$nin", "$lt", "$lte", "$gt", "$gte", "$exists"}


class InvalidQueryError(DriverError):
    """Query syntax is invalid."""

    pass


def _candidates(value: Any, segments: List[str]) -> List[Any]:
    """Every value reachable by a path, walking through lists."""
    if not segments:
        if isinstance(value, list):
            return [value] + list(value)
        return [value]

    head, rest = segments[0], segments[1:]
    if isinstance(value, dict):
        if head not in value:
            return []
        return _candidates(value[head], rest)
    if isinstance(value, list):
        if head.isdigit() and int(head) < len(value):
            return _candidates(value[int(head)], rest)
        found: List[Any] = []
        for item in value:
            if isinstance(item, (dict, list)):
                found.extend(_candidates(item, segments))
        return found
    return []


def _compare(value: Any, op: str, arg: Any) -> bool:
    try:
        if op == "$lt":
            return value is not None and value < arg
        if op == "$lte":
            return value is not None and value <= arg
        if op == "$gt":
            return value is not None and value > arg
        if op == "$gte":
            return value is not None and value >= arg
    except TypeError:
        return False
    raise InvalidQueryError(f"Unsupported operator: {op}")


def _eval_op(candidates: List[Any], op: str, arg: Any) -> bool:
    if op == "$eq":
        return any(value == arg for value in candidates) or (arg is None and not candidates)
    if op == "$ne":
        return not _eval_op(candidates, "$eq", arg)
    if op == "$in":
        if not isinstance(arg, (list, tuple, set)):
            raise InvalidQueryError("$in requires a list")
        return any(_eval_op(candidates, "$eq", item) for item in arg)
    if op == "$nin":
        return not _eval_op(candidates, "$in", arg)
    if op == "$exists":
        present = any(value is not None for value in candidates)
        return present if arg else not present
    return any(_compare(value, op, arg) for value in candidates)


def _eval_field(doc: Dict[str, Any], dotted_key: str, cond: Any) -> bool:
    candidates = _candidates(doc, dotted_key.split("."))
    if isinstance(cond, dict) and cond and all(key.startswith("$") for key in cond):
        for op, arg in cond.items():
            if op not in COMPARATORS:
                raise InvalidQueryError(f"Unsupported operator: {op}")
            if not _eval_op(candidates, op, arg):
                return False
        return True
    return _eval_op(candidates, "$eq", cond)


def _eval_logical(doc: Dict[str, Any], op: str, clauses: Any) -> bool:
    if not isinstance(clauses, list):
        raise InvalidQueryError(f"{op} requires a list of clauses.")
    results = [matches(doc, clause) for clause in clauses]
    if op == "$and":
        return all(results)
    if op == "$or":
        return any(results)
    return not any(results)


def matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    """Return True if a raw record satisfies a query.

    Raises:
        InvalidQueryError: On malformed queries or unknown operators
    """
    if not isinstance(query, dict):
        raise InvalidQueryError("Query must be a dict.")
    for key, cond in query.items():
        if key in LOGICAL:
            if not _eval_logical(doc, key, cond):
                return False
        elif key.startswith("$"):
            raise InvalidQueryError(f"Unsupported logical operator: {key}")
        elif not _eval_field(doc, key, cond):
            return False
    return True
