"""
Lattice Engine
==============

Knowledge graph of nodes and typed, weighted edges with a governed write
path.

LAYERS:
=======
- graph:      EdgeGraph (indexed edges, bounded path search) + topology
- activation: per-session relevance that spreads over edges and decays
- merge:      per-field last-writer-wins with explicit conflicts
- journal:    append-only, hash-chained record of every mutation
- gates:      ordered fail-closed validators for turns and proposals
- ops:        propose -> validate -> commit pipeline

`LatticeEngine` wires them together; `persistence` saves and restores a
whole engine as JSON.
"""

from .config import LatticeConfig
from .contracts import ErrorKind, Error, LatticeFatalError, Result
from .engine import LatticeEngine
from .temporal import ManualClock, SystemClock

__version__ = "0.1.0"

__all__ = [
    'Error',
    'ErrorKind',
    'LatticeConfig',
    'LatticeEngine',
    'LatticeFatalError',
    'ManualClock',
    'Result',
    'SystemClock',
    '__version__',
]
