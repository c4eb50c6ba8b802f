"""
Population engine: resolves link properties into live Documents.

A Population is one resolution session. It runs in rounds:

1. prepare(document, paths): for every requested path (wildcards expanded
   against the record), record what must be fetched:
   - link / multi-link: (foreign collection, id) pairs, grouped per
     collection in `refs`
   - back-link: the host id as a match value, grouped per
     (foreign collection, foreign path) in `complex_refs`
   Targets already in the identity map are not fetched again.
2. resolve(): one multi-id fetch per foreign collection and one filtered
   query per (foreign collection, foreign path), all run concurrently.
   Every fetched record goes through the identity map, so a (collection,
   id) always maps to one instance. Then every recorded target is
   substituted into its host document.
3. Deep population: each newly resolved document is prepared again with
   the paths requested for its collection in `deep`, and a new round runs.

Termination: every (document instance, path) pair is prepared at most once
per session, and roots are registered in the identity map before anything
is fetched, so self-links and A->B->A cycles end without refetching. Two
root instances of one record are both prepared and share the resolved
targets.

Dangling links (target missing) are logged and removed from the host
record. At the end of the session only the repaired paths are patched
upstream, best effort; other pending changes of the host stay pending.

Invariants:
    - At most one fetch per foreign collection and one query per
      (foreign collection, foreign path) in each round
    - Two references to the same (collection, id) in one session resolve
      to the same Document instance
    - A (document, path) already populated triggers no fetch
"""

from __future__ import annotations

import asyncio
import copy
import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Optional, Set, Tuple

from .drivers.base import Patch
from .errors import DocDbError, InternalError
from .memory import MemoryModel
from .paths import UNSET, expand_wildcards, get_path
from .schema.types import COLLECTION_KEY, ID_KEY, FieldDef, FieldKind

if TYPE_CHECKING:
    from .document import Document
    from .world import World

logger = logging.getLogger(__name__)

Ref = Tuple[str, str]


@dataclass
class LinkTarget:
    """A pending link or multi-link substitution."""

    host: Document
    path: str
    refs: List[Ref]
    multi: bool


@dataclass
class BackLinkTarget:
    """A pending back-link substitution."""

    host: Document
    path: str
    collection: str
    foreign_path: str
    match: str


class Population:
    """One population session.

    Attributes:
        world: Registry used to find foreign collections
        cache: Identity map of the session
        deep: Paths to populate on resolved documents, per collection
        depth: Number of fetch rounds run so far
        db_queries: Number of storage requests issued
        repaired: Hosts whose dangling links were removed

    Example:
        >>> population = world.create_population(deep={"jobs": ["users"]})
        >>> population.prepare(user, ["job"])
        >>> await population.resolve()
        >>> population.db_queries
        2
    """

    def __init__(
        self,
        world: World,
        *,
        cache: Optional[MemoryModel] = None,
        deep: Optional[Dict[str, Iterable[str]]] = None,
        max_depth: Optional[int] = None,
        repair_dangling_links: Optional[bool] = None,
    ) -> None:
        self.world = world
        self.cache = cache if cache is not None else MemoryModel()
        self.deep: Dict[str, List[str]] = {name: list(paths) for name, paths in (deep or {}).items()}
        self.max_depth = max_depth if max_depth is not None else world.config.population.max_depth
        self.repair_dangling_links = (
            repair_dangling_links
            if repair_dangling_links is not None
            else world.config.concurrency.repair_dangling_links
        )

        self.refs: Dict[str, Set[str]] = defaultdict(set)
        self.complex_refs: Dict[str, Dict[str, Set[str]]] = defaultdict(lambda: defaultdict(set))
        self.targets: List[LinkTarget] = []
        self.complex_targets: List[BackLinkTarget] = []

        self.depth = 0
        self.db_queries = 0
        self.repaired: List[Document] = []
        self._prepared: Set[Tuple[int, str]] = set()
        self._hosts: Dict[int, Document] = {}
        self._repair_paths: Dict[int, Set[str]] = {}

    # =========================================================================
    # Prepare
    # =========================================================================

    def register(self, document: Document) -> Document:
        """Add a root to the identity map; returns the registered instance."""
        return self.cache.add(document)

    def prepare(self, document: Document, paths: Iterable[str]) -> None:
        """Plan the resolution of paths on a document.

        Raises:
            BadRequestError: If a path is not a link or targets an
                undeclared collection
            InternalError: If a link has no resolvable target collection
        """
        self.register(document)
        for pattern in paths:
            for path in expand_wildcards(document.raw, pattern):
                key = (id(document), path)
                if key in self._prepared:
                    continue
                self._prepared.add(key)
                self._hosts[id(document)] = document

                if document.is_populated(path):
                    self._prepare_deep_from(document.get(path))
                    continue
                self._prepare_path(document, path)

    def _foreign_collection(self, document: Document, fd: FieldDef, link: Dict[str, Any], path: str) -> str:
        name = fd.collection or link.get(COLLECTION_KEY)
        if not name:
            raise InternalError(
                f"Link '{path}' has no target collection",
                collection=document.collection.name,
                path=path,
            )
        # Raises BadRequestError for undeclared collections
        self.world.get_collection(name)
        return name

    def _prepare_path(self, document: Document, path: str) -> None:
        fd = document.collection.link_field(path)
        value = get_path(document.raw, path, None)

        if fd.kind == FieldKind.LINK:
            if value is None:
                document._mark_populated(path)
                return
            if not isinstance(value, dict) or value.get(ID_KEY) is None:
                logger.warning(
                    "Malformed link removed",
                    extra={"collection": document.collection.name, "id": document.id, "path": path},
                )
                document._repair(path, None)
                self._schedule_repair(document, path)
                document._mark_populated(path)
                return
            ref = (self._foreign_collection(document, fd, value, path), str(value[ID_KEY]))
            self._add_target(LinkTarget(document, path, [ref], multi=False))
            return

        if fd.kind == FieldKind.MULTI_LINK:
            if not isinstance(value, list):
                document._repair(path, [])
                self._schedule_repair(document, path)
                value = []
            refs = [
                (self._foreign_collection(document, fd, item, path), str(item[ID_KEY]))
                for item in value
                if isinstance(item, dict) and item.get(ID_KEY) is not None
            ]
            self._add_target(LinkTarget(document, path, refs, multi=True))
            return

        # Back-link
        name = fd.collection
        if not name or not fd.path:
            raise InternalError(
                f"Back-link '{path}' has no target collection or path",
                collection=document.collection.name,
                path=path,
            )
        self.world.get_collection(name)
        match = str(document.id)
        self.complex_refs[name][fd.path].add(match)
        self.complex_targets.append(BackLinkTarget(document, path, name, fd.path, match))

    def _add_target(self, target: LinkTarget) -> None:
        for name, id in target.refs:
            if self.cache.get(name, id) is None:
                self.refs[name].add(id)
        self.targets.append(target)

    def _prepare_deep(self, document: Document) -> None:
        paths = self.deep.get(document.collection.name)
        if paths:
            self.prepare(document, paths)

    def _prepare_deep_from(self, resolved: Any) -> None:
        from .document import Document

        if isinstance(resolved, Document):
            self._prepare_deep(resolved)
        elif isinstance(resolved, list):
            for document in resolved:
                self._prepare_deep(document)

    def _schedule_repair(self, document: Document, path: str) -> None:
        paths = self._repair_paths.setdefault(id(document), set())
        if not paths:
            self.repaired.append(document)
        paths.add(path)

    # =========================================================================
    # Resolve
    # =========================================================================

    @property
    def pending(self) -> bool:
        return bool(self.targets or self.complex_targets)

    async def resolve(self) -> Population:
        """Run fetch rounds until nothing is pending, then repair hosts.

        Raises:
            InternalError: If more than max_depth rounds are needed
        """
        while self.pending:
            if self.depth >= self.max_depth:
                raise InternalError(f"Population exceeded {self.max_depth} rounds")
            self.depth += 1

            targets, self.targets = self.targets, []
            complex_targets, self.complex_targets = self.complex_targets, []
            refs, self.refs = self.refs, defaultdict(set)
            complex_refs, self.complex_refs = self.complex_refs, defaultdict(lambda: defaultdict(set))

            fetches = [self._fetch(name, ids) for name, ids in refs.items() if ids]
            queries = [
                self._query(name, foreign_path, values)
                for name, by_path in complex_refs.items()
                for foreign_path, values in by_path.items()
            ]
            results = await asyncio.gather(*fetches, *queries)
            matched: Dict[Tuple[str, str], Dict[str, List[Document]]] = {}
            for result in results[len(fetches) :]:
                matched.update(result)

            logger.debug(
                "Population round done",
                extra={
                    "depth": self.depth,
                    "db_queries": self.db_queries,
                    "targets": len(targets),
                    "back_link_targets": len(complex_targets),
                },
            )

            for target in targets:
                self._substitute(target)
            for target in complex_targets:
                self._substitute_back_link(target, matched)

        await self._repair()
        return self

    def _wrap(self, name: str, raws: List[Dict[str, Any]]) -> List[Document]:
        collection = self.world.get_collection(name)
        return [collection.wrap_upstream(raw, cache=self.cache) for raw in raws]

    async def _fetch(self, name: str, ids: Set[str]) -> None:
        collection = self.world.get_collection(name)
        self.db_queries += 1
        raws = await collection.call_driver("multi_get", collection.driver.multi_get, sorted(ids))
        self._wrap(name, raws)

    async def _query(
        self, name: str, foreign_path: str, values: Set[str]
    ) -> Dict[Tuple[str, str], Dict[str, List[Document]]]:
        collection = self.world.get_collection(name)
        self.db_queries += 1
        query = {f"{foreign_path}.{ID_KEY}": {"$in": sorted(values)}}
        raws = await collection.call_driver("find", collection.driver.find, query)

        by_value: Dict[str, List[Document]] = defaultdict(list)
        for document in self._wrap(name, raws):
            linked = get_path(document.raw, foreign_path, None)
            items = linked if isinstance(linked, list) else [linked]
            for item in items:
                if isinstance(item, dict) and str(item.get(ID_KEY)) in values:
                    bucket = by_value[str(item[ID_KEY])]
                    if all(document is not other for other in bucket):
                        bucket.append(document)
        return {(name, foreign_path): by_value}

    def _substitute(self, target: LinkTarget) -> None:
        host = target.host
        resolved: List[Document] = []
        dangling: Set[Ref] = set()
        for name, id in target.refs:
            document = self.cache.get(name, id)
            if document is None:
                dangling.add((name, id))
            else:
                resolved.append(document)

        if dangling:
            logger.warning(
                "Dangling link",
                extra={
                    "collection": host.collection.name,
                    "id": host.id,
                    "path": target.path,
                    "missing": sorted(id for _, id in dangling),
                },
            )
            if target.multi:
                fd = host.collection.link_field(target.path)
                current = get_path(host.raw, target.path, None) or []
                kept = [
                    item
                    for item in current
                    if isinstance(item, dict)
                    and (fd.collection or item.get(COLLECTION_KEY), str(item.get(ID_KEY))) not in dangling
                ]
                host._repair(target.path, kept)
            else:
                host._repair(target.path, None)
            self._schedule_repair(host, target.path)

        for document in resolved:
            host._attach(document)
        host._mark_populated(target.path)

        for document in resolved:
            self._prepare_deep(document)

    def _substitute_back_link(
        self,
        target: BackLinkTarget,
        matched: Dict[Tuple[str, str], Dict[str, List[Document]]],
    ) -> None:
        documents = matched.get((target.collection, target.foreign_path), {}).get(target.match, [])
        batch = self.world.get_collection(target.collection).create_batch(documents)
        target.host._set_back_link(target.path, batch)
        for document in documents:
            self._prepare_deep(document)

    async def _repair(self) -> None:
        if not self.repaired or not self.repair_dangling_links:
            return
        hosts = [document for document in self.repaired if document.upstream_exists]
        results = await asyncio.gather(
            *(self._patch_repaired(document) for document in hosts), return_exceptions=True
        )
        for document, result in zip(hosts, results):
            if isinstance(result, DocDbError):
                logger.warning(
                    f"Dangling link repair failed: {result}",
                    extra={"collection": document.collection.name, "id": document.id},
                )
            elif isinstance(result, BaseException):
                raise result

    async def _patch_repaired(self, document: Document) -> None:
        """Write only the repaired paths; other dirty paths stay pending."""
        paths = sorted(self._repair_paths.get(id(document), ()))
        patch = Patch()
        for path in paths:
            value = get_path(document.raw, path)
            if value is UNSET:
                patch.unset.append(path)
            else:
                patch.set[path] = copy.deepcopy(value)
        collection = document.collection
        await collection.call_driver("patch", collection.driver.patch, document.id, patch)
        document._repaired(paths)
        logger.info(
            "Dangling links repaired",
            extra={"collection": collection.name, "id": document.id, "paths": paths},
        )
