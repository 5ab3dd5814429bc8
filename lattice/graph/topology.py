"""
Topology Engine
===============

Structural analysis of the edge graph using graph topology.

FENCE POST:
===========
This engine computes TOPOLOGY (geometry), not IMPORTANCE (judgment).

ALLOWED:
- Connected components (clustering)
- Shortest path (traceability)
- Structural metrics (density, diameter)
- Cycle detection

FORBIDDEN:
- Centrality measures (PageRank, Betweenness) - relevance belongs to
  the ActivationSystem, per session
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import List, Optional, Set, Tuple
import networkx as nx

from .edge_graph import EdgeGraph


@dataclass(frozen=True)
class GraphMetrics:
    """Immutable structural metrics for the lattice graph."""
    node_count: int
    edge_count: int
    density: float
    is_weakly_connected: bool
    component_count: int
    has_cycles: bool
    diameter: Optional[int] = None  # only for connected graphs


class TopologyEngine:
    """
    Read-only structural view over an EdgeGraph.

    Works on a detached copy of the graph's networkx projection taken at
    `refresh()`, so analysis never holds the graph lock.
    """

    def __init__(self, edges: EdgeGraph):
        self._edges = edges
        self._graph: nx.MultiDiGraph = edges.projection()

    def refresh(self) -> None:
        self._graph = self._edges.projection()

    def connected_components(self) -> List[Set[str]]:
        """Weakly connected components, largest first, ties by smallest id."""
        if not self._graph:
            return []
        components = [set(c) for c in nx.weakly_connected_components(self._graph)]
        components.sort(key=lambda c: (-len(c), min(c)))
        return components

    def find_cycles(self, limit: int = 10) -> List[Tuple[str, ...]]:
        """Up to `limit` simple directed cycles (e.g. contradicts loops)."""
        cycles = []
        for cycle in nx.simple_cycles(nx.DiGraph(self._graph)):
            cycles.append(tuple(cycle))
            if len(cycles) >= limit:
                break
        return cycles

    def shortest_path(self, start_id: str, end_id: str) -> Optional[List[str]]:
        """Shortest directed path by hop count, or None."""
        try:
            return nx.shortest_path(self._graph, source=start_id, target=end_id)
        except (nx.NetworkXNoPath, nx.NodeNotFound):
            return None

    def compute_metrics(self) -> GraphMetrics:
        if not self._graph:
            return GraphMetrics(0, 0, 0.0, False, 0, False, None)

        connected = nx.is_weakly_connected(self._graph)
        diameter = None
        if connected and len(self._graph) > 1:
            diameter = nx.diameter(nx.Graph(self._graph.to_undirected()))

        return GraphMetrics(
            node_count=self._graph.number_of_nodes(),
            edge_count=self._graph.number_of_edges(),
            density=nx.density(self._graph),
            is_weakly_connected=connected,
            component_count=nx.number_weakly_connected_components(self._graph),
            has_cycles=not nx.is_directed_acyclic_graph(self._graph),
            diameter=diameter
        )
