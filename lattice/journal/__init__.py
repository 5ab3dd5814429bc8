"""
Journal Layer
=============

The append-only event record of the lattice.
"""

from .event_log import (
    CompactionMarker,
    EventPage,
    EventSummary,
    Explanation,
    Journal,
    compute_event_hash,
    hash_of,
    summarize_event,
)

__all__ = [
    'CompactionMarker',
    'EventPage',
    'EventSummary',
    'Explanation',
    'Journal',
    'compute_event_hash',
    'hash_of',
    'summarize_event',
]
