"""
Activation Layer
================

Transient per-session relevance over the lattice.
"""

from .system import ActivationSystem, GlobalActivation, SpreadProfile

__all__ = [
    'ActivationSystem',
    'GlobalActivation',
    'SpreadProfile',
]
