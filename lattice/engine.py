"""
Engine Orchestration Module

Unified entry point that constructs every lattice service and wires them
together. Services own their state; the engine owns the services.

DESIGN PRINCIPLES:
==================
1. Services communicate ONLY through contracts and Results
2. No hidden singletons: every dependency is passed in here
3. One clock, one id factory, one observability sink per engine

FLOWS:
======
- Turn:      submit_turn -> GateChain -> TURN_ACCEPTED / TURN_REJECTED
- Promotion: promote -> AntiEcho -> GateChain -> LatticeOps.commit_proposal
- Retrieval: activate -> spread_activation -> get_working_set
"""

from __future__ import annotations
from typing import Dict, Iterable, Optional, Tuple
import logging

from .activation import ActivationSystem, SpreadProfile
from .config import LatticeConfig
from .contracts.base import ErrorKind, IdFactory, Result, fail
from .contracts.model import (
    ActivationEntry,
    Actor,
    Candidate,
    GateResult,
    JournalEventType,
    Proposal,
    ProposalStatus,
    SessionContext,
    SpreadStep,
)
from .graph import EdgeGraph, TopologyEngine
from .journal import Journal
from .merge import FieldMerge
from .observability import AuditEventType, ObservabilityConfig, ObservabilityEngine
from .ops import LatticeOps
from .gates import GateChain, GateState
from .store import NodeStore
from .temporal.clock import Clock, SystemClock


logger = logging.getLogger(__name__)


class LatticeEngine:
    """
    Facade over the lattice services.

    Pass-through accessors expose each service for callers that need the
    full API; the methods here cover the cross-service flows.
    """

    def __init__(
        self,
        config: Optional[LatticeConfig] = None,
        clock: Optional[Clock] = None,
        observability_config: Optional[ObservabilityConfig] = None,
        record_init: bool = True
    ):
        self._config = config or LatticeConfig()
        self._clock = clock or SystemClock()
        self._observability = ObservabilityEngine(observability_config, clock=self._clock)
        self._ids = IdFactory("lattice")

        obs = self._observability
        self._store = NodeStore()
        self._edges = EdgeGraph(self._config.edges, self._clock, self._ids, obs)
        self._journal = Journal(self._config.journal, self._clock, obs)
        self._merge = FieldMerge(self._store, self._clock, obs)
        self._activation = ActivationSystem(self._edges, self._config.activation, self._clock, obs)
        self._gates = GateChain(self._config.gates, self._clock, self._ids, obs, GateState())
        self._ops = LatticeOps(
            self._store, self._edges, self._merge, self._journal,
            self._config.ops, self._clock, self._ids, obs
        )
        self._topology = TopologyEngine(self._edges)

        if record_init:
            self._journal.append(
                JournalEventType.SYSTEM_INIT,
                actor="system",
                payload={'clock': type(self._clock).__name__}
            )
        obs.log_audit("engine", "init", None, AuditEventType.SYSTEM)

    # =========================================================================
    # TURNS
    # =========================================================================

    def submit_turn(self, candidate: Candidate, actor: Optional[Actor], context: SessionContext) -> GateResult:
        """
        Validate one dialogue turn. Accepted turns register their content
        hash; both outcomes are journaled.
        """
        result = self._gates.run_all(candidate, actor, context, register=True)
        payload = {
            'passed': result.passed,
            'rules': tuple(t.rule_id.value for t in result.traces),
            'confidence_label': candidate.confidence_label,
        }
        if result.passed:
            event_type = JournalEventType.TURN_ACCEPTED
        else:
            event_type = JournalEventType.TURN_REJECTED
            payload['blocking_rule'] = result.blocking_rule.value
            payload['reason'] = result.traces[-1].reason
        self._journal.append(
            event_type,
            entity_id=candidate.speaker_id,
            session_id=context.session_id,
            actor=candidate.speaker_id,
            payload=payload
        )
        return result

    # =========================================================================
    # PROMOTION
    # =========================================================================

    def promote(
        self,
        proposal_id: str,
        actor: Optional[Actor],
        candidate: Candidate,
        context: SessionContext,
        committer: str = "governance"
    ) -> Result[Proposal]:
        """
        Run the session check and the gate chain, then hand the assembled
        trace to commit_proposal. A failed check is passed through so the
        proposal is rejected and journaled there.

        The candidate's content hash is registered only once the commit
        succeeds, so a failed promotion can be retried.
        """
        current = self._ops.get_proposal(proposal_id)
        if current.is_failure:
            return current
        if current.value.status is not ProposalStatus.PENDING:
            return fail(ErrorKind.CONFLICT, "proposal_not_pending",
                        f"Proposal {proposal_id} is {current.value.status.value}",
                        status=current.value.status.value)

        echo = self._gates.run_anti_echo(context)
        traces = (echo,)
        if echo.passed:
            traces += self._gates.run_all(candidate, actor, context, register=False).traces
        committed = self._ops.commit_proposal(proposal_id, traces, committer)
        if committed.is_success:
            self._gates.register(candidate)
        return committed

    # =========================================================================
    # RETRIEVAL
    # =========================================================================

    def activate(self, session_id: str, node_id: str, score: float = 1.0,
                 reason: str = "direct") -> Result[ActivationEntry]:
        return self._activation.activate(session_id, node_id, score, reason)

    def spread_activation(
        self,
        session_id: str,
        source_id: str,
        max_hops: int = 2,
        profile: Optional[SpreadProfile] = None
    ) -> Result[Tuple[SpreadStep, ...]]:
        result = self._activation.spread_activation(session_id, source_id, max_hops, profile)
        if result.is_success:
            self._journal.append(
                JournalEventType.ACTIVATION_SPREAD,
                entity_id=source_id,
                session_id=session_id,
                actor="activation",
                payload={'max_hops': max_hops, 'reached': len(result.value)},
                related_ids=tuple(step.target_id for step in result.value)
            )
        return result

    def get_working_set(self, session_id: str, k: Optional[int] = None,
                        pinned_ids: Iterable[str] = ()) -> Result[Tuple[ActivationEntry, ...]]:
        return self._activation.get_working_set(session_id, k, pinned_ids)

    # =========================================================================
    # SERVICE ACCESS
    # =========================================================================

    @property
    def config(self) -> LatticeConfig:
        return self._config

    @property
    def clock(self) -> Clock:
        return self._clock

    @property
    def ids(self) -> IdFactory:
        return self._ids

    @property
    def store(self) -> NodeStore:
        return self._store

    @property
    def edges(self) -> EdgeGraph:
        return self._edges

    @property
    def journal(self) -> Journal:
        return self._journal

    @property
    def merge(self) -> FieldMerge:
        return self._merge

    @property
    def activation(self) -> ActivationSystem:
        return self._activation

    @property
    def gates(self) -> GateChain:
        return self._gates

    @property
    def ops(self) -> LatticeOps:
        return self._ops

    @property
    def topology(self) -> TopologyEngine:
        return self._topology

    @property
    def observability(self) -> ObservabilityEngine:
        return self._observability

    # =========================================================================
    # STATE INTROSPECTION
    # =========================================================================

    def metrics(self) -> Dict:
        """Per-service metrics plus graph structure."""
        self._topology.refresh()
        graph = self._topology.compute_metrics()
        return {
            'edges': self._edges.metrics(),
            'activation': self._activation.metrics(),
            'merge': self._merge.metrics(),
            'journal': self._journal.metrics(),
            'gates': self._gates.metrics(),
            'ops': self._ops.metrics(),
            'topology': {
                'node_count': graph.node_count,
                'edge_count': graph.edge_count,
                'density': graph.density,
                'is_weakly_connected': graph.is_weakly_connected,
                'component_count': graph.component_count,
                'has_cycles': graph.has_cycles,
                'diameter': graph.diameter,
            },
        }

    def get_audit_report(self) -> Dict:
        return self._observability.generate_audit_report()
