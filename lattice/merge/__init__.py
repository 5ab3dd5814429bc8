"""
Merge Layer
===========

Field-granularity last-writer-wins with explicit conflicts.
"""

from .field_merge import (
    ADDITIVE_FIELDS,
    EDITABLE_FIELDS,
    IMMUTABLE_FIELDS,
    SCALAR_FIELDS,
    ConflictKind,
    FieldConflict,
    FieldMerge,
    FieldStamp,
    MergeOutcome,
    coerce_field,
    deep_merge,
    validate_edits,
)

__all__ = [
    'ADDITIVE_FIELDS',
    'EDITABLE_FIELDS',
    'IMMUTABLE_FIELDS',
    'SCALAR_FIELDS',
    'ConflictKind',
    'FieldConflict',
    'FieldMerge',
    'FieldStamp',
    'MergeOutcome',
    'coerce_field',
    'deep_merge',
    'validate_edits',
]
