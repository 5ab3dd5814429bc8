"""
Lattice Data Model

Nodes and edges live in flat id-keyed maps (arena + index). Edges hold
ids only, never references to Node objects.

IMMUTABILITY:
=============
- JournalEvent, GateTrace, payloads: frozen, never modified after creation
- Node, Edge, Proposal, ActivationEntry: owned by exactly one service and
  only mutated by that service under its lock; callers receive copies
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union
import copy


# =============================================================================
# NODES
# =============================================================================

class NodeTier(Enum):
    """Coarse trust classification of a node."""
    HYPER = "hyper"
    MEGA = "mega"
    REGULAR = "regular"
    SHADOW = "shadow"


class NodeStatus(Enum):
    """Nodes are never physically deleted, only status-flagged."""
    ACTIVE = "active"
    ARCHIVED = "archived"
    SUPERSEDED = "superseded"


SCORE_FIELDS = ("resonance", "coherence", "stability")


@dataclass(frozen=True)
class NodeScores:
    resonance: float = 0.0
    coherence: float = 0.0
    stability: float = 0.0

    def __post_init__(self):
        for name in SCORE_FIELDS:
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be between 0.0 and 1.0")


@dataclass
class Node:
    """A knowledge unit stored in the lattice."""
    node_id: str
    title: str
    tier: NodeTier
    created_at: datetime
    updated_at: datetime
    scope: str = ""
    content: Any = None  # opaque, never interpreted by the core
    summary: str = ""
    resonance: float = 0.0
    coherence: float = 0.0
    stability: float = 0.0
    version: int = 1
    status: NodeStatus = NodeStatus.ACTIVE
    tags: List[str] = field(default_factory=list)
    related_ids: List[str] = field(default_factory=list)
    meta: Dict[str, Any] = field(default_factory=dict)
    owner_id: Optional[str] = None

    @property
    def scores(self) -> NodeScores:
        return NodeScores(self.resonance, self.coherence, self.stability)

    def snapshot(self) -> Node:
        """Detached deep copy for read paths."""
        return copy.deepcopy(self)


# =============================================================================
# EDGES
# =============================================================================

class EdgeType(Enum):
    SUPPORTS = "supports"
    CONTRADICTS = "contradicts"
    DERIVES = "derives"
    REFERENCES = "references"
    SIMILAR = "similar"
    PARENT_OF = "parentOf"
    CAUSES = "causes"
    ENABLES = "enables"
    REQUIRES = "requires"

    @classmethod
    def parse(cls, value: Union[str, "EdgeType"]) -> "EdgeType":
        """Accept an EdgeType or its wire value; raise ValueError otherwise."""
        if isinstance(value, EdgeType):
            return value
        return cls(value)


@dataclass
class Edge:
    """Directed, typed, weighted relation between two node ids."""
    edge_id: str
    source_id: str
    target_id: str
    edge_type: EdgeType
    weight: float
    confidence: float
    creator: str
    created_at: datetime
    last_validated_at: datetime
    creator_source: str = "emergent"
    evidence_refs: Tuple[str, ...] = field(default_factory=tuple)
    label: Optional[str] = None
    validation_count: int = 0

    def __post_init__(self):
        if self.source_id == self.target_id:
            raise ValueError("Edge source and target must differ")
        if not 0.0 <= self.weight <= 1.0:
            raise ValueError("weight must be between 0.0 and 1.0")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError("confidence must be between 0.0 and 1.0")

    @property
    def key(self) -> Tuple[str, str, EdgeType]:
        return (self.source_id, self.target_id, self.edge_type)

    def snapshot(self) -> Edge:
        return replace(self)


@dataclass(frozen=True)
class EdgeHop:
    """One step of a path: the node reached and the edge used to reach it."""
    node_id: str
    via_edge: Optional[Edge]


@dataclass(frozen=True)
class EdgePath:
    hops: Tuple[EdgeHop, ...]

    @property
    def length(self) -> int:
        """Number of edges traversed."""
        return max(0, len(self.hops) - 1)

    @property
    def node_ids(self) -> Tuple[str, ...]:
        return tuple(h.node_id for h in self.hops)


@dataclass(frozen=True)
class Neighborhood:
    node_id: str
    outgoing: Tuple[Edge, ...]
    incoming: Tuple[Edge, ...]

    @property
    def total_edges(self) -> int:
        return len(self.outgoing) + len(self.incoming)


# =============================================================================
# ACTIVATION
# =============================================================================

@dataclass
class ActivationEntry:
    """Per-(session, node) relevance score."""
    session_id: str
    node_id: str
    score: float
    last_activated_at: datetime
    activation_count: int = 1
    reasons: Tuple[str, ...] = field(default_factory=tuple)

    def snapshot(self) -> ActivationEntry:
        return replace(self)


@dataclass(frozen=True)
class SpreadStep:
    target_id: str
    score: float
    via_edge_type: EdgeType
    hop: int


# =============================================================================
# GATES
# =============================================================================

class GateRule(Enum):
    IDENTITY_BINDING = "gate.identity_binding"
    SCOPE_BINDING = "gate.scope_binding"
    DISCLOSURE_ENFORCEMENT = "gate.disclosure_enforcement"
    RISK_CHECK = "gate.risk_check"
    NOVELTY_CHECK = "gate.novelty_check"
    RATE_LIMIT = "gate.rate_limit"
    ECONOMIC_CHECK = "gate.economic_check"
    ANTI_ECHO = "gate.anti_echo"


class GateDisposition(Enum):
    ALLOWED = "allowed"
    BLOCKED = "blocked"


class ConfidenceLabel(Enum):
    FACT = "fact"
    DERIVED = "derived"
    HYPOTHESIS = "hypothesis"
    SPECULATIVE = "speculative"


class ParticipantRole(Enum):
    BUILDER = "builder"
    CRITIC = "critic"
    HISTORIAN = "historian"
    ECONOMIST = "economist"
    ETHICIST = "ethicist"
    ENGINEER = "engineer"
    SYNTHESIZER = "synthesizer"
    AUDITOR = "auditor"
    ADVERSARY = "adversary"


@dataclass(frozen=True)
class GateTrace:
    """Outcome of one gate check. Persisted whether it passed or not."""
    trace_id: str
    rule_id: GateRule
    passed: bool
    reason: str
    timestamp: datetime
    evidence: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)
    session_id: Optional[str] = None
    actor_id: Optional[str] = None

    @property
    def disposition(self) -> GateDisposition:
        return GateDisposition.ALLOWED if self.passed else GateDisposition.BLOCKED


@dataclass(frozen=True)
class GateResult:
    passed: bool
    traces: Tuple[GateTrace, ...]
    blocking_rule: Optional[GateRule] = None


@dataclass(frozen=True)
class Actor:
    """A participant able to speak or propose."""
    actor_id: str
    active: bool = True
    role: ParticipantRole = ParticipantRole.BUILDER
    scope: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class Candidate:
    """
    A turn or mutation candidate presented to the gate chain.

    `confidence_label` stays a plain string so malformed labels can be
    reported by the disclosure gate rather than rejected at construction.
    """
    speaker_id: str
    claim: str
    confidence_label: Optional[str] = None
    citation: Optional[str] = None
    domains: Tuple[str, ...] = field(default_factory=tuple)
    intent: str = "suggestion"
    session_id: Optional[str] = None


@dataclass(frozen=True)
class SessionContext:
    """Session facts the gates need; owned by the dialogue layer."""
    session_id: str
    participants: Tuple[str, ...] = field(default_factory=tuple)
    participant_roles: Tuple[Tuple[str, ParticipantRole], ...] = field(default_factory=tuple)
    turn_count: int = 0
    critique_turns: int = 0
    contradictions_total: int = 0
    unresolved_contradictions: int = 0

    def role_of(self, actor_id: str) -> Optional[ParticipantRole]:
        for pid, role in self.participant_roles:
            if pid == actor_id:
                return role
        return None


# =============================================================================
# PROPOSALS
# =============================================================================

class ProposalKind(Enum):
    CREATE = "create"
    EDIT = "edit"
    EDGE = "edge"


class ProposalStatus(Enum):
    PENDING = "pending"
    COMMITTED = "committed"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self is not ProposalStatus.PENDING


@dataclass(frozen=True)
class CreatePayload:
    title: str
    tier: NodeTier = NodeTier.REGULAR
    scope: str = ""
    content: Any = None
    summary: str = ""
    tags: Tuple[str, ...] = field(default_factory=tuple)
    related_ids: Tuple[str, ...] = field(default_factory=tuple)
    resonance: float = 0.0
    coherence: float = 0.0
    stability: float = 0.0
    meta: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)
    opaque: Any = None


@dataclass(frozen=True)
class EditPayload:
    """
    A field edit set. `edited_at` is the timestamp of the read the edit
    was based on; FieldMerge applies a field only if it is strictly newer
    than the field's last write.
    """
    edits: Tuple[Tuple[str, Any], ...]
    edited_at: datetime
    reason: str = ""
    opaque: Any = None

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.edits)


@dataclass(frozen=True)
class EdgePayload:
    source_id: str
    target_id: str
    edge_type: EdgeType = EdgeType.REFERENCES
    weight: float = 0.5
    confidence: float = 0.5
    evidence_refs: Tuple[str, ...] = field(default_factory=tuple)
    label: Optional[str] = None
    opaque: Any = None


ProposalPayload = Union[CreatePayload, EditPayload, EdgePayload]


@dataclass
class Proposal:
    """A staged mutation awaiting gate validation and commit."""
    proposal_id: str
    kind: ProposalKind
    payload: ProposalPayload
    proposer: str
    created_at: datetime
    target_id: Optional[str] = None
    session_id: Optional[str] = None
    confidence_label: str = ConfidenceLabel.HYPOTHESIS.value
    status: ProposalStatus = ProposalStatus.PENDING
    gate_trace: Tuple[GateTrace, ...] = field(default_factory=tuple)
    reviewed_at: Optional[datetime] = None
    committed_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    result_entity_id: Optional[str] = None

    def snapshot(self) -> Proposal:
        return replace(self)


# =============================================================================
# JOURNAL
# =============================================================================

class JournalEventType(Enum):
    NODE_CREATED = "NODE_CREATED"
    NODE_UPDATED = "NODE_UPDATED"
    NODE_SCORE_MUTATED = "NODE_SCORE_MUTATED"
    NODE_STATUS_CHANGED = "NODE_STATUS_CHANGED"
    EDGE_ADDED = "EDGE_ADDED"
    PROPOSAL_CREATED = "PROPOSAL_CREATED"
    PROPOSAL_REJECTED = "PROPOSAL_REJECTED"
    MERGE_CONFLICT = "MERGE_CONFLICT"
    CONFLICT_RESOLVED = "CONFLICT_RESOLVED"
    TURN_ACCEPTED = "TURN_ACCEPTED"
    TURN_REJECTED = "TURN_REJECTED"
    ACTIVATION_SPREAD = "ACTIVATION_SPREAD"
    JOURNAL_COMPACTED = "JOURNAL_COMPACTED"
    SYSTEM_INIT = "SYSTEM_INIT"


@dataclass(frozen=True)
class JournalEvent:
    """Immutable once appended."""
    seq: int
    event_type: JournalEventType
    timestamp: datetime
    entity_id: Optional[str] = None
    session_id: Optional[str] = None
    actor: Optional[str] = None
    payload: Tuple[Tuple[str, Any], ...] = field(default_factory=tuple)
    related_ids: Tuple[str, ...] = field(default_factory=tuple)
    previous_hash: str = ""
    event_hash: str = ""

    def payload_dict(self) -> Dict[str, Any]:
        return dict(self.payload)

    def touches(self, entity_id: str) -> bool:
        return self.entity_id == entity_id or entity_id in self.related_ids


def freeze_mapping(values: Optional[Mapping[str, Any]]) -> Tuple[Tuple[str, Any], ...]:
    """Turn a mapping into the sorted pair-tuple form used by frozen types."""
    if not values:
        return ()
    return tuple(sorted(values.items(), key=lambda kv: kv[0]))


