"""
Dot-path helpers over raw records.

A path is a dot-separated list of segments: object keys, or decimal indexes
when the container is a list ("jobs.2._id"). A "*" segment in a pattern
matches every index of a list (or every key of an object) and is expanded
against a concrete record by expand_wildcards().

DirtyPathTree is the prefix tree a Document uses to remember which leaf
paths were touched since the last persistence.

Invariants:
    - Adding a path already covered by itself or by an ancestor is a no-op
    - Adding an ancestor drops every descendant it covers
    - paths() never yields two paths where one is a prefix of the other
"""

from __future__ import annotations

from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple


class _Unset:
    """Marker for "no value at this path" (distinct from None)."""

    _instance: Optional[_Unset] = None

    def __new__(cls) -> _Unset:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNSET"

    def __bool__(self) -> bool:
        return False


UNSET: Any = _Unset()

WILDCARD = "*"


def split_path(path: str) -> List[str]:
    """Split a dot path into segments.

    Raises:
        ValueError: If the path is empty or has an empty segment
    """
    if not path:
        raise ValueError("Empty path")
    segments = path.split(".")
    if any(not segment for segment in segments):
        raise ValueError(f"Invalid path: '{path}'")
    return segments


def _step(container: Any, segment: str) -> Any:
    if isinstance(container, dict):
        return container.get(segment, UNSET)
    if isinstance(container, list) and segment.isdigit():
        index = int(segment)
        return container[index] if index < len(container) else UNSET
    return UNSET


def get_path(obj: Any, path: str, default: Any = UNSET) -> Any:
    """Read the value at a dot path, or default when absent."""
    current = obj
    for segment in split_path(path):
        current = _step(current, segment)
        if current is UNSET:
            return default
    return current


def has_path(obj: Any, path: str) -> bool:
    return get_path(obj, path) is not UNSET


def set_path(obj: Dict[str, Any], path: str, value: Any) -> None:
    """Write a value at a dot path, creating intermediate objects.

    Raises:
        ValueError: If an intermediate value is a scalar, or a list index is
            past the end of the list
    """
    segments = split_path(path)
    current: Any = obj
    for segment in segments[:-1]:
        nxt = _step(current, segment)
        if nxt is UNSET or nxt is None:
            if isinstance(current, list):
                raise ValueError(f"Cannot create list element '{segment}' in path '{path}'")
            nxt = {}
            current[segment] = nxt
        elif not isinstance(nxt, (dict, list)):
            raise ValueError(f"Cannot traverse scalar at '{segment}' in path '{path}'")
        current = nxt

    last = segments[-1]
    if isinstance(current, list):
        if not last.isdigit():
            raise ValueError(f"Non-numeric index '{last}' for a list in path '{path}'")
        index = int(last)
        if index < len(current):
            current[index] = value
        elif index == len(current):
            current.append(value)
        else:
            raise ValueError(f"Index {index} out of range in path '{path}'")
    else:
        current[last] = value


def unset_path(obj: Dict[str, Any], path: str) -> bool:
    """Remove the value at a dot path.

    List elements are set to None rather than removed so that sibling
    indexes stay stable.

    Returns:
        True if something was removed
    """
    segments = split_path(path)
    parent = get_path(obj, ".".join(segments[:-1])) if len(segments) > 1 else obj
    last = segments[-1]
    if isinstance(parent, dict) and last in parent:
        del parent[last]
        return True
    if isinstance(parent, list) and last.isdigit() and int(last) < len(parent):
        parent[int(last)] = None
        return True
    return False


def expand_wildcards(obj: Any, path: str) -> List[str]:
    """Expand "*" segments of a path against the actual record.

    Args:
        obj: Raw record to expand against
        path: Path possibly containing "*" segments

    Returns:
        Concrete paths, in index order. A path without wildcards is returned
        as-is even when it does not exist in the record.

    Example:
        >>> expand_wildcards({"a": [{"b": 1}, {"b": 2}]}, "a.*.b")
        ['a.0.b', 'a.1.b']
    """
    segments = split_path(path)
    if WILDCARD not in segments:
        return [path]

    results: List[str] = []

    def walk(container: Any, index: int, prefix: List[str]) -> None:
        if index == len(segments):
            results.append(".".join(prefix))
            return
        segment = segments[index]
        if segment != WILDCARD:
            walk(_step(container, segment), index + 1, prefix + [segment])
            return
        if isinstance(container, list):
            keys = [str(i) for i in range(len(container))]
        elif isinstance(container, dict):
            keys = list(container)
        else:
            return
        for key in keys:
            walk(_step(container, key), index + 1, prefix + [key])

    walk(obj, 0, [])
    return results


def flatten(
    obj: Dict[str, Any],
    *,
    is_leaf: Optional[Callable[[Any], bool]] = None,
    prefix: str = "",
) -> Dict[str, Any]:
    """Flatten nested objects into a {dot.path: value} mapping.

    Lists are kept as values. is_leaf lets callers stop descent on objects
    that must be compared as a whole.
    """
    flat: Dict[str, Any] = {}
    for key, value in obj.items():
        path = f"{prefix}.{key}" if prefix else key
        if isinstance(value, dict) and value and not (is_leaf and is_leaf(value)):
            flat.update(flatten(value, is_leaf=is_leaf, prefix=path))
        else:
            flat[path] = value
    return flat


def unflatten(flat: Dict[str, Any]) -> Dict[str, Any]:
    """Inverse of flatten()."""
    nested: Dict[str, Any] = {}
    for path, value in flat.items():
        set_path(nested, path, value)
    return nested


class _Node:
    __slots__ = ("children", "terminal")

    def __init__(self) -> None:
        self.children: Dict[str, _Node] = {}
        self.terminal = False


class DirtyPathTree:
    """Prefix tree of touched leaf paths.

    Example:
        >>> tree = DirtyPathTree()
        >>> tree.add("meta.country")
        True
        >>> tree.add("meta")
        True
        >>> tree.add("meta.city")
        False
        >>> tree.paths()
        ['meta']
    """

    def __init__(self) -> None:
        self._root = _Node()

    def add(self, path: str) -> bool:
        """Mark a path dirty.

        Returns:
            False if the path was already covered
        """
        node = self._root
        for segment in split_path(path):
            if node.terminal:
                return False
            node = node.children.setdefault(segment, _Node())
        if node.terminal:
            return False
        node.terminal = True
        node.children.clear()
        return True

    def __contains__(self, path: object) -> bool:
        if not isinstance(path, str):
            return False
        node = self._root
        for segment in split_path(path):
            node = node.children.get(segment)  # type: ignore[assignment]
            if node is None:
                return False
            if node.terminal:
                return True
        return False

    def discard(self, path: str) -> bool:
        """Unmark a path marked exactly as given.

        A path covered by a dirty ancestor stays covered.

        Returns:
            True if the path was removed
        """
        trail: List[Tuple[_Node, str]] = []
        node = self._root
        for segment in split_path(path):
            if node.terminal:
                return False
            child = node.children.get(segment)
            if child is None:
                return False
            trail.append((node, segment))
            node = child
        if not node.terminal:
            return False
        node.terminal = False
        for parent, segment in reversed(trail):
            child = parent.children[segment]
            if child.terminal or child.children:
                break
            del parent.children[segment]
        return True

    def paths(self) -> List[str]:
        """Return the covering leaf paths."""
        out: List[str] = []

        def walk(node: _Node, prefix: List[str]) -> None:
            for segment, child in node.children.items():
                if child.terminal:
                    out.append(".".join(prefix + [segment]))
                else:
                    walk(child, prefix + [segment])

        walk(self._root, [])
        return out

    def __iter__(self) -> Iterator[str]:
        return iter(self.paths())

    def __len__(self) -> int:
        return len(self.paths())

    def __bool__(self) -> bool:
        return bool(self._root.children)

    def clear(self) -> None:
        self._root = _Node()

    def __repr__(self) -> str:
        return f"DirtyPathTree({self.paths()!r})"
