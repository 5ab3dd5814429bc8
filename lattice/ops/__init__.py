"""
Lattice Operations
==================

Propose / commit pipeline for canonical mutations.
"""

from .lattice_ops import CommitRecord, LatticeOps

__all__ = ['CommitRecord', 'LatticeOps']
