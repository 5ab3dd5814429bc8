"""
Edge Graph
==========

Directed, typed, weighted edges between node ids.

INDICES:
========
- by source:  source_id -> ordered edge ids
- by target:  target_id -> ordered edge ids
- by type:    edge_type -> ordered edge ids
- by key:     (source_id, target_id, edge_type) -> edge id (uniqueness)

plus a networkx MultiDiGraph projection (edge key = edge id) used for
structural analysis. All five are updated together under the write lock;
reads take the read lock. Ordered dicts stand in for sets so traversal
order is insertion order and therefore deterministic.

INVARIANTS:
===========
- source_id != target_id
- at most one edge per (source, target, type)
- edges hold node ids only
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import replace
from collections import deque
from typing import Dict, Iterable, Iterator, List, Optional, Tuple, Union
import logging

import networkx as nx

from ..concurrency import ReadWriteLock
from ..config import EdgeGraphConfig
from ..contracts.base import ErrorKind, IdFactory, Result, clamp, fail, is_score
from ..contracts.model import Edge, EdgeHop, EdgePath, EdgeType, Neighborhood
from ..observability import ObservabilityEngine
from ..temporal.clock import Clock, SystemClock


logger = logging.getLogger(__name__)

EdgeKey = Tuple[str, str, EdgeType]


def _unscored(**values) -> Optional[str]:
    """Name of the first given value that is set but cannot be a score."""
    for name, value in values.items():
        if value is not None and not is_score(value):
            return name
    return None


class GraphView:
    """
    Read access to the live graph, valid only inside `EdgeGraph.reading()`.

    Returned edges are the stored objects; callers must not mutate them.
    """

    def __init__(self, graph: 'EdgeGraph'):
        self._graph = graph

    def outgoing(self, node_id: str) -> Tuple[Edge, ...]:
        ids = self._graph._by_source.get(node_id, {})
        return tuple(self._graph._edges[eid] for eid in ids)

    def incoming(self, node_id: str) -> Tuple[Edge, ...]:
        ids = self._graph._by_target.get(node_id, {})
        return tuple(self._graph._edges[eid] for eid in ids)


class EdgeGraph:
    """
    Edge store with four secondary indices and bounded path search.

    Mutations are serialized globally through a writer lock; path search
    and neighborhood reads share the reader side.
    """

    def __init__(
        self,
        config: Optional[EdgeGraphConfig] = None,
        clock: Optional[Clock] = None,
        ids: Optional[IdFactory] = None,
        observability: Optional[ObservabilityEngine] = None
    ):
        self._config = config or EdgeGraphConfig()
        self._clock = clock or SystemClock()
        self._ids = ids or IdFactory("edges")
        self._obs = observability or ObservabilityEngine(clock=self._clock)

        self._edges: Dict[str, Edge] = {}
        self._by_source: Dict[str, Dict[str, None]] = {}
        self._by_target: Dict[str, Dict[str, None]] = {}
        self._by_type: Dict[EdgeType, Dict[str, None]] = {}
        self._by_key: Dict[EdgeKey, str] = {}
        self._graph = nx.MultiDiGraph()

        self._lock = ReadWriteLock()

    # =========================================================================
    # LOCKING
    # =========================================================================

    @contextmanager
    def reading(self) -> Iterator[GraphView]:
        """Hold the read lock and expose a live view."""
        with self._lock.read():
            yield GraphView(self)

    # =========================================================================
    # MUTATIONS
    # =========================================================================

    def create_edge(
        self,
        source_id: str,
        target_id: str,
        edge_type: Union[EdgeType, str] = EdgeType.REFERENCES,
        weight: Optional[float] = None,
        confidence: Optional[float] = None,
        creator: str = "unknown",
        creator_source: str = "emergent",
        evidence_refs: Iterable[str] = (),
        label: Optional[str] = None
    ) -> Result[Edge]:
        if not source_id or not target_id:
            return fail(ErrorKind.INVALID_INPUT, "source_and_target_required",
                        "Edge requires both source_id and target_id")
        if source_id == target_id:
            return fail(ErrorKind.INVALID_INPUT, "self_edge",
                        f"Self edges are not allowed ({source_id})", node_id=source_id)
        try:
            edge_type = EdgeType.parse(edge_type)
        except ValueError:
            return fail(ErrorKind.INVALID_INPUT, "invalid_edge_type",
                        f"Unknown edge type: {edge_type}",
                        allowed=",".join(t.value for t in EdgeType))
        bad = _unscored(weight=weight, confidence=confidence)
        if bad:
            return fail(ErrorKind.INVALID_INPUT, "invalid_score",
                        f"Edge {bad} is not a number", field=bad)

        cfg = self._config
        with self._lock.write():
            key = (source_id, target_id, edge_type)
            existing = self._by_key.get(key)
            if existing is not None:
                return fail(ErrorKind.DUPLICATE, "duplicate_edge",
                            f"Edge {source_id} -[{edge_type.value}]-> {target_id} already exists",
                            existing_edge_id=existing)

            now = self._clock.now()
            edge = Edge(
                edge_id=self._ids.next_id("edge", f"{source_id}|{target_id}|{edge_type.value}"),
                source_id=source_id,
                target_id=target_id,
                edge_type=edge_type,
                weight=clamp(cfg.default_weight if weight is None else weight),
                confidence=clamp(cfg.default_confidence if confidence is None else confidence),
                creator=creator or "unknown",
                creator_source=creator_source,
                evidence_refs=tuple(evidence_refs)[:cfg.max_evidence_refs],
                label=str(label)[:cfg.max_label_length] if label else None,
                created_at=now,
                last_validated_at=now,
            )
            self._index(edge)

        logger.debug("edge created %s %s -[%s]-> %s", edge.edge_id, source_id, edge_type.value, target_id)
        self._obs.increment("edges_created_total")
        self._obs.log_audit("edges", "create_edge", edge.edge_id,
                            source=source_id, target=target_id, type=edge_type.value)
        return Result.success(edge.snapshot())

    def load_edge(self, edge: Edge) -> Result[Edge]:
        """Insert a previously persisted edge verbatim (snapshot restore)."""
        with self._lock.write():
            if edge.edge_id in self._edges:
                return fail(ErrorKind.DUPLICATE, "duplicate_edge_id",
                            f"Edge id {edge.edge_id} already loaded")
            if edge.key in self._by_key:
                return fail(ErrorKind.DUPLICATE, "duplicate_edge",
                            "Edge triple already loaded", existing_edge_id=self._by_key[edge.key])
            self._index(edge.snapshot())
        return Result.success(edge)

    def update_edge(
        self,
        edge_id: str,
        weight: Optional[float] = None,
        confidence: Optional[float] = None,
        evidence_refs: Optional[Iterable[str]] = None,
        validate: bool = False
    ) -> Result[Edge]:
        with self._lock.write():
            edge = self._edges.get(edge_id)
            if edge is None:
                return fail(ErrorKind.NOT_FOUND, "not_found", f"Edge {edge_id} not found")
            bad = _unscored(weight=weight, confidence=confidence)
            if bad:
                return fail(ErrorKind.INVALID_INPUT, "invalid_score",
                            f"Edge {bad} is not a number", field=bad)

            changes = {}
            if weight is not None:
                changes['weight'] = clamp(weight)
            if confidence is not None:
                changes['confidence'] = clamp(confidence)
            if evidence_refs is not None:
                merged = dict.fromkeys(edge.evidence_refs)
                merged.update(dict.fromkeys(evidence_refs))
                changes['evidence_refs'] = tuple(merged)[:self._config.max_evidence_refs]
            if validate:
                changes['last_validated_at'] = self._clock.now()
                changes['validation_count'] = edge.validation_count + 1

            updated = replace(edge, **changes)
            self._edges[edge_id] = updated
            self._graph.edges[updated.source_id, updated.target_id, edge_id]['weight'] = updated.weight

        self._obs.increment("edges_updated_total")
        self._obs.log_audit("edges", "update_edge", edge_id, fields=",".join(sorted(changes)))
        return Result.success(updated.snapshot())

    def remove_edge(self, edge_id: str) -> Result[Edge]:
        with self._lock.write():
            edge = self._edges.pop(edge_id, None)
            if edge is None:
                return fail(ErrorKind.NOT_FOUND, "not_found", f"Edge {edge_id} not found")
            self._by_source.get(edge.source_id, {}).pop(edge_id, None)
            self._by_target.get(edge.target_id, {}).pop(edge_id, None)
            self._by_type.get(edge.edge_type, {}).pop(edge_id, None)
            self._by_key.pop(edge.key, None)
            self._graph.remove_edge(edge.source_id, edge.target_id, key=edge_id)
            for node_id in (edge.source_id, edge.target_id):
                if self._graph.has_node(node_id) and self._graph.degree(node_id) == 0:
                    self._graph.remove_node(node_id)

        logger.debug("edge removed %s", edge_id)
        self._obs.increment("edges_removed_total")
        self._obs.log_audit("edges", "remove_edge", edge_id)
        return Result.success(edge.snapshot())

    def _index(self, edge: Edge) -> None:
        """Caller holds the write lock."""
        self._edges[edge.edge_id] = edge
        self._by_source.setdefault(edge.source_id, {})[edge.edge_id] = None
        self._by_target.setdefault(edge.target_id, {})[edge.edge_id] = None
        self._by_type.setdefault(edge.edge_type, {})[edge.edge_id] = None
        self._by_key[edge.key] = edge.edge_id
        self._graph.add_edge(
            edge.source_id, edge.target_id, key=edge.edge_id,
            edge_type=edge.edge_type.value, weight=edge.weight
        )

    # =========================================================================
    # READS
    # =========================================================================

    def get_edge(self, edge_id: str) -> Result[Edge]:
        self._obs.increment("edge_queries_total")
        with self._lock.read():
            edge = self._edges.get(edge_id)
            if edge is None:
                return fail(ErrorKind.NOT_FOUND, "not_found", f"Edge {edge_id} not found")
            return Result.success(edge.snapshot())

    def query_edges(
        self,
        source_id: Optional[str] = None,
        target_id: Optional[str] = None,
        edge_type: Optional[Union[EdgeType, str]] = None,
        min_weight: Optional[float] = None,
        min_confidence: Optional[float] = None,
        creator: Optional[str] = None,
        limit: Optional[int] = None
    ) -> Result[Tuple[Edge, ...]]:
        """Matching edges sorted by weight descending, at most `limit` (cap 500)."""
        self._obs.increment("edge_queries_total")
        if edge_type is not None:
            try:
                edge_type = EdgeType.parse(edge_type)
            except ValueError:
                return fail(ErrorKind.INVALID_INPUT, "invalid_edge_type", f"Unknown edge type: {edge_type}")
        cfg = self._config
        if limit is None:
            limit = cfg.default_query_limit
        limit = min(limit, cfg.max_query_limit)
        if limit < 1:
            return fail(ErrorKind.INVALID_INPUT, "invalid_limit", "limit must be positive")

        with self._lock.read():
            # Start with the most restrictive index
            if source_id is not None:
                candidate_ids: Iterable[str] = self._by_source.get(source_id, {})
            elif target_id is not None:
                candidate_ids = self._by_target.get(target_id, {})
            elif edge_type is not None:
                candidate_ids = self._by_type.get(edge_type, {})
            else:
                candidate_ids = self._edges

            matches: List[Edge] = []
            for eid in candidate_ids:
                e = self._edges[eid]
                if source_id is not None and e.source_id != source_id:
                    continue
                if target_id is not None and e.target_id != target_id:
                    continue
                if edge_type is not None and e.edge_type != edge_type:
                    continue
                if min_weight is not None and e.weight < min_weight:
                    continue
                if min_confidence is not None and e.confidence < min_confidence:
                    continue
                if creator is not None and e.creator != creator:
                    continue
                matches.append(e.snapshot())

        # Stable sort keeps insertion order among equal weights
        matches.sort(key=lambda e: -e.weight)
        return Result.success(tuple(matches[:limit]))

    def get_neighborhood(self, node_id: str) -> Result[Neighborhood]:
        self._obs.increment("edge_queries_total")
        with self.reading() as view:
            outgoing = tuple(e.snapshot() for e in view.outgoing(node_id))
            incoming = tuple(e.snapshot() for e in view.incoming(node_id))
        return Result.success(Neighborhood(node_id=node_id, outgoing=outgoing, incoming=incoming))

    def find_paths(self, from_id: str, to_id: str, max_depth: int = 4) -> Result[Tuple[EdgePath, ...]]:
        """
        Cycle-avoiding BFS over outgoing edges.

        Returns up to `max_paths` simple paths of at most `max_depth` edges,
        in the order the search reaches them. Earlier paths are never
        longer than later ones, but the set is not exhaustive once the
        result cap is hit.
        """
        self._obs.increment("edge_queries_total")
        if max_depth < 1:
            return fail(ErrorKind.INVALID_INPUT, "invalid_depth", "max_depth must be at least 1")
        max_depth = min(max_depth, self._config.max_path_depth)

        paths: List[EdgePath] = []
        with self.reading() as view:
            queue: deque = deque([(EdgeHop(node_id=from_id, via_edge=None),)])
            while queue and len(paths) < self._config.max_paths:
                path = queue.popleft()
                current = path[-1].node_id

                if current == to_id and len(path) > 1:
                    paths.append(EdgePath(hops=tuple(
                        EdgeHop(h.node_id, h.via_edge.snapshot() if h.via_edge else None)
                        for h in path
                    )))
                    continue

                if len(path) > max_depth:
                    continue

                visited = {h.node_id for h in path}
                for edge in view.outgoing(current):
                    if edge.target_id in visited:
                        continue
                    queue.append(path + (EdgeHop(node_id=edge.target_id, via_edge=edge),))

        return Result.success(tuple(paths))

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    def projection(self) -> nx.MultiDiGraph:
        """Detached copy of the networkx projection."""
        with self._lock.read():
            return self._graph.copy()

    def all_edges(self) -> Tuple[Edge, ...]:
        with self._lock.read():
            return tuple(e.snapshot() for e in self._edges.values())

    def __len__(self) -> int:
        return len(self._edges)

    def metrics(self) -> Dict:
        with self._lock.read():
            distribution = {t.value: len(ids) for t, ids in self._by_type.items() if ids}
            total = len(self._edges)
        metrics = self._obs.get_metrics()
        counters = {}
        if metrics:
            for name in ("edges_created_total", "edges_updated_total",
                         "edges_removed_total", "edge_queries_total"):
                counters[name] = metrics.value(name)
        return {
            'total_edges': total,
            'type_distribution': distribution,
            'counters': counters,
        }
