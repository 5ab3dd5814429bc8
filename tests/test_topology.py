"""
Topology Engine Tests
=====================

Structural metrics over the EdgeGraph's networkx projection.
"""

import pytest

from lattice.contracts.model import EdgeType
from lattice.graph import EdgeGraph, TopologyEngine
from tests.fixtures import make_clock


@pytest.fixture
def graph():
    return EdgeGraph(clock=make_clock())


class TestTopologyEngine:

    def test_empty_graph(self, graph):
        metrics = TopologyEngine(graph).compute_metrics()
        assert metrics.node_count == 0
        assert metrics.edge_count == 0
        assert metrics.is_weakly_connected is False
        assert metrics.diameter is None

    def test_chain_metrics(self, graph):
        """A -> B -> C is one component without cycles."""
        graph.create_edge("A", "B", EdgeType.SUPPORTS).unwrap()
        graph.create_edge("B", "C", EdgeType.SUPPORTS).unwrap()
        metrics = TopologyEngine(graph).compute_metrics()
        assert metrics.node_count == 3
        assert metrics.edge_count == 2
        assert metrics.is_weakly_connected is True
        assert metrics.component_count == 1
        assert metrics.has_cycles is False
        assert metrics.diameter == 2

    def test_components_largest_first(self, graph):
        graph.create_edge("A", "B").unwrap()
        graph.create_edge("B", "C").unwrap()
        graph.create_edge("X", "Y").unwrap()
        components = TopologyEngine(graph).connected_components()
        assert components == [{"A", "B", "C"}, {"X", "Y"}]

    def test_contradiction_cycle_detected(self, graph):
        graph.create_edge("A", "B", EdgeType.CONTRADICTS).unwrap()
        graph.create_edge("B", "A", EdgeType.CONTRADICTS).unwrap()
        topology = TopologyEngine(graph)
        assert topology.compute_metrics().has_cycles is True
        cycles = topology.find_cycles()
        assert len(cycles) == 1
        assert set(cycles[0]) == {"A", "B"}

    def test_refresh_picks_up_new_edges(self, graph):
        topology = TopologyEngine(graph)
        graph.create_edge("A", "B").unwrap()
        assert topology.compute_metrics().edge_count == 0
        topology.refresh()
        assert topology.compute_metrics().edge_count == 1

    def test_shortest_path(self, graph):
        graph.create_edge("A", "B").unwrap()
        graph.create_edge("B", "C").unwrap()
        graph.create_edge("A", "C", EdgeType.DERIVES).unwrap()
        topology = TopologyEngine(graph)
        assert topology.shortest_path("A", "C") == ["A", "C"]
        assert topology.shortest_path("C", "A") is None
        assert topology.shortest_path("A", "missing") is None
