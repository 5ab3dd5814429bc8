"""
Gate Layer
==========

Deterministic, fail-closed validation run before anything becomes
canonical or reaches a session.
"""

from .chain import GateChain, GateState
from .rules import (
    CONFIDENCE_LABELS,
    RateDecision,
    TraceFactory,
    content_hash,
    normalize_content,
    scope_covers,
)

__all__ = [
    'CONFIDENCE_LABELS',
    'GateChain',
    'GateState',
    'RateDecision',
    'TraceFactory',
    'content_hash',
    'normalize_content',
    'scope_covers',
]
