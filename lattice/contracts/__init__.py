"""
Contracts Module

Shared types passed between lattice services. Services import types from
here and never reach into each other's internals.

DESIGN PRINCIPLES:
==================
1. Errors are values (Result / Error), never exceptions across the boundary
2. Edges and journal events refer to nodes by id only
3. Journal events and gate traces are frozen once created
"""

from .base import (
    ErrorKind,
    Error,
    Result,
    LatticeFatalError,
    IdFactory,
    clamp,
    is_score,
    fail,
    utc,
)
from .model import (
    Actor,
    ActivationEntry,
    Candidate,
    ConfidenceLabel,
    CreatePayload,
    Edge,
    EdgeHop,
    EdgePath,
    EdgePayload,
    EdgeType,
    EditPayload,
    GateDisposition,
    GateResult,
    GateRule,
    GateTrace,
    JournalEvent,
    JournalEventType,
    Neighborhood,
    Node,
    NodeScores,
    NodeStatus,
    NodeTier,
    ParticipantRole,
    Proposal,
    ProposalKind,
    ProposalPayload,
    ProposalStatus,
    SCORE_FIELDS,
    SessionContext,
    SpreadStep,
    freeze_mapping,
)

__all__ = [
    'ErrorKind', 'Error', 'Result', 'LatticeFatalError', 'IdFactory',
    'clamp', 'fail', 'is_score', 'utc',
    'Actor', 'ActivationEntry', 'Candidate', 'ConfidenceLabel',
    'CreatePayload', 'Edge', 'EdgeHop', 'EdgePath', 'EdgePayload',
    'EdgeType', 'EditPayload', 'GateDisposition', 'GateResult', 'GateRule',
    'GateTrace', 'JournalEvent', 'JournalEventType', 'Neighborhood', 'Node',
    'NodeScores', 'NodeStatus', 'NodeTier', 'ParticipantRole', 'Proposal',
    'ProposalKind', 'ProposalPayload', 'ProposalStatus', 'SCORE_FIELDS',
    'SessionContext', 'SpreadStep', 'freeze_mapping',
]
