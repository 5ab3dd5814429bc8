"""
Graph Layer
===========

EdgeGraph owns every edge; TopologyEngine analyses a detached projection.
"""

from .edge_graph import EdgeGraph, GraphView
from .topology import GraphMetrics, TopologyEngine

__all__ = [
    'EdgeGraph',
    'GraphMetrics',
    'GraphView',
    'TopologyEngine',
]
