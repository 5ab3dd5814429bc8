"""
Test Fixtures

Fixed timestamps and small builders shared by the lattice tests.
All fixtures are explicit - no random generation.
"""

from datetime import datetime, timezone
from typing import Optional, Sequence, Tuple

from lattice.config import LatticeConfig
from lattice.contracts.base import IdFactory
from lattice.contracts.model import (
    Actor,
    Candidate,
    GateRule,
    GateTrace,
    ParticipantRole,
    SessionContext,
)
from lattice.engine import LatticeEngine
from lattice.graph import EdgeGraph
from lattice.journal import Journal
from lattice.merge import FieldMerge
from lattice.observability import ObservabilityEngine
from lattice.ops import LatticeOps
from lattice.store import NodeStore
from lattice.temporal import ManualClock


# =============================================================================
# FIXED TIMESTAMPS (deterministic)
# =============================================================================

EPOCH = datetime(2026, 1, 1, 0, 0, 0, tzinfo=timezone.utc)
T1 = datetime(2026, 1, 1, 10, 0, 0, tzinfo=timezone.utc)
T2 = datetime(2026, 1, 1, 10, 5, 0, tzinfo=timezone.utc)
T3 = datetime(2026, 1, 1, 10, 10, 0, tzinfo=timezone.utc)


# =============================================================================
# SERVICE BUILDERS
# =============================================================================

def make_clock(start: datetime = EPOCH) -> ManualClock:
    return ManualClock(start)


def make_engine(clock: Optional[ManualClock] = None, config: Optional[LatticeConfig] = None) -> LatticeEngine:
    return LatticeEngine(config=config, clock=clock or make_clock())


def make_ops(clock: Optional[ManualClock] = None) -> Tuple[LatticeOps, NodeStore, EdgeGraph, FieldMerge, Journal]:
    """LatticeOps with its collaborators, sharing one clock and sink."""
    clock = clock or make_clock()
    obs = ObservabilityEngine(clock=clock)
    ids = IdFactory("test")
    store = NodeStore()
    edges = EdgeGraph(clock=clock, ids=ids, observability=obs)
    merge = FieldMerge(store, clock, obs)
    journal = Journal(clock=clock, observability=obs)
    ops = LatticeOps(store, edges, merge, journal, clock=clock, ids=ids, observability=obs)
    return ops, store, edges, merge, journal


# =============================================================================
# GATE FIXTURES
# =============================================================================

def passing_trace(rule: GateRule = GateRule.IDENTITY_BINDING, at: datetime = EPOCH) -> GateTrace:
    return GateTrace(trace_id=f"gt_pass_{rule.name.lower()}", rule_id=rule, passed=True,
                     reason="ok", timestamp=at)


def failing_trace(rule: GateRule = GateRule.RISK_CHECK, at: datetime = EPOCH) -> GateTrace:
    return GateTrace(trace_id=f"gt_fail_{rule.name.lower()}", rule_id=rule, passed=False,
                     reason="blocked", timestamp=at)


def approved() -> Tuple[GateTrace, ...]:
    return (passing_trace(GateRule.IDENTITY_BINDING), passing_trace(GateRule.SCOPE_BINDING))


def make_actor(actor_id: str = "alice", role: ParticipantRole = ParticipantRole.BUILDER,
               scope: Sequence[str] = ("*",), active: bool = True) -> Actor:
    return Actor(actor_id=actor_id, active=active, role=role, scope=tuple(scope))


def make_context(session_id: str = "s1", participants: Sequence[Actor] = (),
                 turn_count: int = 0, critique_turns: int = 0,
                 contradictions_total: int = 0, unresolved: int = 0) -> SessionContext:
    return SessionContext(
        session_id=session_id,
        participants=tuple(a.actor_id for a in participants),
        participant_roles=tuple((a.actor_id, a.role) for a in participants),
        turn_count=turn_count,
        critique_turns=critique_turns,
        contradictions_total=contradictions_total,
        unresolved_contradictions=unresolved
    )


def make_candidate(claim: str = "Edges carry typed weights", speaker_id: str = "alice",
                   label: Optional[str] = "hypothesis", citation: Optional[str] = None,
                   domains: Sequence[str] = (), intent: str = "suggestion",
                   session_id: str = "s1") -> Candidate:
    return Candidate(speaker_id=speaker_id, claim=claim, confidence_label=label, citation=citation,
                     domains=tuple(domains), intent=intent, session_id=session_id)
