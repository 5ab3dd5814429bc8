"""
Activation System
=================

Per-session relevance scores over nodes.

- activate() raises a node's score in one session (and a damped global
  aggregate)
- spread_activation() pushes score along outgoing edges, decaying by hop
- decay_session() / apply_time_decay() shrink scores, evicting the dust
- get_working_set() is the top-K context handed to a session

CONCURRENCY:
============
Each session has its own lock; sessions never contend with each other.
Spreading holds the session lock and the EdgeGraph read lock, in that
order. Nothing here writes to the EdgeGraph.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple
from collections import deque
import logging
import math
import threading

import numpy as np

from ..config import ActivationConfig
from ..contracts.base import ErrorKind, Result, clamp, fail
from ..contracts.model import ActivationEntry, EdgeType, SpreadStep
from ..graph.edge_graph import EdgeGraph
from ..observability import AuditEventType, ObservabilityEngine
from ..temporal.clock import Clock, SystemClock


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpreadProfile:
    """How strongly activation crosses each edge type."""
    spread_decay: float = 0.6
    prune_threshold: float = 0.01
    fallback_type_weight: float = 0.3
    type_weights: Tuple[Tuple[str, float], ...] = field(default_factory=tuple)

    @classmethod
    def from_config(cls, config: ActivationConfig) -> 'SpreadProfile':
        return cls(
            spread_decay=config.spread_decay,
            prune_threshold=config.prune_threshold,
            fallback_type_weight=config.fallback_type_weight,
            type_weights=tuple(config.type_weights)
        )

    def weight_for(self, edge_type: EdgeType) -> float:
        for name, weight in self.type_weights:
            if name == edge_type.value:
                return weight
        return self.fallback_type_weight


@dataclass
class GlobalActivation:
    """Cross-session aggregate for one node."""
    node_id: str
    score: float
    last_updated: datetime
    access_count: int = 0


class _Session:
    """Activation map of one session. Guard everything with `lock`."""

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.entries: Dict[str, ActivationEntry] = {}
        # Point up to which time decay has been applied, per node
        self.decayed_through: Dict[str, datetime] = {}
        self.lock = threading.Lock()


class ActivationSystem:
    """
    Session-scoped attention over the lattice.

    Scores always stay within [0, 1]; entries below the prune threshold
    are evicted by decay.
    """

    def __init__(
        self,
        edges: EdgeGraph,
        config: Optional[ActivationConfig] = None,
        clock: Optional[Clock] = None,
        observability: Optional[ObservabilityEngine] = None
    ):
        self._edges = edges
        self._config = config or ActivationConfig()
        self._clock = clock or SystemClock()
        self._obs = observability or ObservabilityEngine(clock=self._clock)
        self._default_profile = SpreadProfile.from_config(self._config)

        self._sessions: Dict[str, _Session] = {}
        self._registry = threading.Lock()
        self._global: Dict[str, GlobalActivation] = {}
        self._global_lock = threading.Lock()

    def _session(self, session_id: str, create: bool = False) -> Optional[_Session]:
        with self._registry:
            session = self._sessions.get(session_id)
            if session is None and create:
                session = _Session(session_id)
                self._sessions[session_id] = session
            return session

    def _remember(self, entries: List[str], reason: str) -> Tuple[str, ...]:
        kept = self._config.reasons_kept
        return tuple((list(entries) + [reason])[-kept:])

    # =========================================================================
    # ACTIVATE / SPREAD
    # =========================================================================

    def activate(
        self,
        session_id: str,
        node_id: str,
        score: float = 1.0,
        reason: str = "direct"
    ) -> Result[ActivationEntry]:
        if not session_id or not node_id:
            return fail(ErrorKind.INVALID_INPUT, "session_and_node_required",
                        "activate requires session_id and node_id")
        try:
            score = float(score)
        except (TypeError, ValueError):
            return fail(ErrorKind.INVALID_INPUT, "invalid_score", f"Score is not a number: {score!r}")
        if math.isnan(score):
            return fail(ErrorKind.INVALID_INPUT, "invalid_score", "Score is NaN")
        score = clamp(score)

        now = self._clock.now()
        session = self._session(session_id, create=True)
        with session.lock:
            existing = session.entries.get(node_id)
            if existing is None:
                entry = ActivationEntry(
                    session_id=session_id,
                    node_id=node_id,
                    score=score,
                    last_activated_at=now,
                    activation_count=1,
                    reasons=self._remember([], reason)
                )
            else:
                entry = ActivationEntry(
                    session_id=session_id,
                    node_id=node_id,
                    score=clamp(min(1.0, existing.score + score)),
                    last_activated_at=now,
                    activation_count=existing.activation_count + 1,
                    reasons=self._remember(list(existing.reasons), reason)
                )
            session.entries[node_id] = entry
            session.decayed_through[node_id] = now
            result = entry.snapshot()

        with self._global_lock:
            agg = self._global.get(node_id)
            if agg is None:
                agg = GlobalActivation(node_id=node_id, score=0.0, last_updated=now)
                self._global[node_id] = agg
            agg.score = min(1.0, agg.score + score * self._config.global_factor)
            agg.last_updated = now
            agg.access_count += 1

        self._obs.increment("activations_total")
        return Result.success(result)

    def spread_activation(
        self,
        session_id: str,
        source_id: str,
        max_hops: int = 2,
        profile: Optional[SpreadProfile] = None
    ) -> Result[Tuple[SpreadStep, ...]]:
        """
        BFS from an activated source along outgoing edges.

        Each hop carries `carried * spread_decay * type_weight * edge.weight`;
        amounts under the prune threshold stop there. A node is reached at
        most once per spread (global visited set), so a second path never
        re-strengthens it.
        """
        if max_hops < 1:
            return fail(ErrorKind.INVALID_INPUT, "invalid_max_hops", "max_hops must be at least 1")
        max_hops = min(max_hops, self._config.max_hops)
        profile = profile or self._default_profile

        session = self._session(session_id)
        if session is None:
            return fail(ErrorKind.NOT_FOUND, "source_not_activated",
                        f"{source_id} is not activated in session {session_id}",
                        session_id=session_id, node_id=source_id)

        steps: List[SpreadStep] = []
        with session.lock:
            source = session.entries.get(source_id)
            if source is None:
                return fail(ErrorKind.NOT_FOUND, "source_not_activated",
                            f"{source_id} is not activated in session {session_id}",
                            session_id=session_id, node_id=source_id)

            now = self._clock.now()
            visited = {source_id}
            queue = deque([(source_id, source.score, 0)])
            with self._edges.reading() as graph:
                while queue:
                    node_id, carried, hop = queue.popleft()
                    if hop >= max_hops:
                        continue
                    for edge in graph.outgoing(node_id):
                        if edge.target_id in visited:
                            continue
                        visited.add(edge.target_id)

                        propagated = carried * profile.spread_decay * profile.weight_for(edge.edge_type) * edge.weight
                        if propagated < profile.prune_threshold:
                            continue

                        existing = session.entries.get(edge.target_id)
                        reason = f"spread_from:{source_id}_via:{edge.edge_type.value}"
                        entry = ActivationEntry(
                            session_id=session_id,
                            node_id=edge.target_id,
                            score=clamp(min(1.0, (existing.score if existing else 0.0) + propagated)),
                            last_activated_at=now,
                            activation_count=(existing.activation_count if existing else 0) + 1,
                            reasons=self._remember(list(existing.reasons) if existing else [], reason)
                        )
                        session.entries[edge.target_id] = entry
                        session.decayed_through[edge.target_id] = now
                        steps.append(SpreadStep(
                            target_id=edge.target_id,
                            score=entry.score,
                            via_edge_type=edge.edge_type,
                            hop=hop + 1
                        ))
                        queue.append((edge.target_id, propagated, hop + 1))

        self._obs.increment("spreads_total")
        self._obs.log_audit("activation", "spread", source_id, AuditEventType.QUERY,
                            session=session_id, reached=len(steps))
        logger.debug("spread from %s in %s reached %d nodes", source_id, session_id, len(steps))
        return Result.success(tuple(steps))

    # =========================================================================
    # DECAY
    # =========================================================================

    def decay_session(
        self,
        session_id: str,
        factor: Optional[float] = None,
        rate: Optional[float] = None,
        elapsed: Optional[float] = None
    ) -> Result[int]:
        """
        Multiply every score by `factor`, or by exp(-rate * elapsed).

        Entries that fall below the prune threshold are evicted. A factor
        of exactly 1.0 changes nothing. Returns the number of entries left.
        """
        if factor is None:
            if rate is None or elapsed is None:
                return fail(ErrorKind.INVALID_INPUT, "decay_parameters_required",
                            "Provide factor, or rate and elapsed")
            if rate < 0 or elapsed < 0:
                return fail(ErrorKind.INVALID_INPUT, "invalid_decay", "rate and elapsed must be >= 0")
            factor = math.exp(-rate * elapsed)
        if not 0.0 <= factor <= 1.0:
            return fail(ErrorKind.INVALID_INPUT, "invalid_decay", "factor must be within [0, 1]")

        session = self._session(session_id)
        if session is None:
            return fail(ErrorKind.NOT_FOUND, "session_not_found", f"Session {session_id} not found")

        with session.lock:
            if factor < 1.0 and session.entries:
                node_ids = list(session.entries)
                scores = np.fromiter((session.entries[n].score for n in node_ids), dtype=float, count=len(node_ids))
                self._rescale(session, node_ids, scores * factor)
            remaining = len(session.entries)

        self._obs.increment("decays_total")
        return Result.success(remaining)

    def apply_time_decay(self, session_id: str, rate: Optional[float] = None) -> Result[int]:
        """
        Wall-clock decay: each entry decays by exp(-rate * seconds elapsed
        since it was last activated or decayed).
        """
        rate = self._config.time_decay_rate if rate is None else rate
        if rate < 0:
            return fail(ErrorKind.INVALID_INPUT, "invalid_decay", "rate must be >= 0")
        session = self._session(session_id)
        if session is None:
            return fail(ErrorKind.NOT_FOUND, "session_not_found", f"Session {session_id} not found")

        now = self._clock.now()
        with session.lock:
            node_ids = list(session.entries)
            if node_ids:
                scores = np.fromiter((session.entries[n].score for n in node_ids), dtype=float, count=len(node_ids))
                elapsed = np.fromiter(
                    (max(0.0, (now - session.decayed_through.get(n, session.entries[n].last_activated_at)).total_seconds())
                     for n in node_ids),
                    dtype=float, count=len(node_ids)
                )
                self._rescale(session, node_ids, scores * np.exp(-rate * elapsed))
                for n in session.entries:
                    session.decayed_through[n] = now
            remaining = len(session.entries)

        self._obs.increment("decays_total")
        return Result.success(remaining)

    def _rescale(self, session: _Session, node_ids: List[str], new_scores: np.ndarray) -> None:
        """Caller holds the session lock."""
        threshold = self._config.prune_threshold
        evicted = 0
        for node_id, score in zip(node_ids, new_scores.tolist()):
            if score < threshold:
                del session.entries[node_id]
                session.decayed_through.pop(node_id, None)
                evicted += 1
            else:
                entry = session.entries[node_id]
                entry.score = clamp(score)
        if evicted:
            logger.debug("decay evicted %d entries from %s", evicted, session.session_id)

    def clear_session(self, session_id: str) -> Result[int]:
        """End a session; returns the number of entries dropped."""
        with self._registry:
            session = self._sessions.pop(session_id, None)
        if session is None:
            return Result.success(0)
        with session.lock:
            return Result.success(len(session.entries))

    # =========================================================================
    # READS
    # =========================================================================

    def get_working_set(
        self,
        session_id: str,
        k: Optional[int] = None,
        pinned_ids: Iterable[str] = ()
    ) -> Result[Tuple[ActivationEntry, ...]]:
        """
        Pinned nodes first (in the order given, not counted against k),
        then the top-k remaining entries by score, ties in activation order.

        A pinned node with no entry appears with score 0.0.
        """
        self._obs.increment("working_set_queries_total")
        k = self._config.max_working_set if k is None else k
        if k < 0:
            return fail(ErrorKind.INVALID_INPUT, "invalid_k", "k must be >= 0")
        pinned = list(dict.fromkeys(pinned_ids))

        session = self._session(session_id)
        entries: Dict[str, ActivationEntry] = {}
        if session is not None:
            with session.lock:
                entries = {n: e.snapshot() for n, e in session.entries.items()}

        now = self._clock.now()
        working: List[ActivationEntry] = []
        for node_id in pinned:
            entry = entries.get(node_id)
            if entry is None:
                entry = ActivationEntry(session_id=session_id, node_id=node_id, score=0.0,
                                        last_activated_at=now, activation_count=0, reasons=("pinned",))
            working.append(entry)

        pinned_set = set(pinned)
        rest = [e for n, e in entries.items() if n not in pinned_set]
        if rest and k:
            scores = np.fromiter((e.score for e in rest), dtype=float, count=len(rest))
            order = np.argsort(-scores, kind="stable")[:k]
            working.extend(rest[i] for i in order.tolist())
        return Result.success(tuple(working))

    def get_entry(self, session_id: str, node_id: str) -> Result[ActivationEntry]:
        session = self._session(session_id)
        if session is not None:
            with session.lock:
                entry = session.entries.get(node_id)
                if entry is not None:
                    return Result.success(entry.snapshot())
        return fail(ErrorKind.NOT_FOUND, "not_activated", f"{node_id} is not activated in {session_id}")

    def get_global_activation(self, k: int = 20) -> Tuple[GlobalActivation, ...]:
        with self._global_lock:
            items = [GlobalActivation(g.node_id, g.score, g.last_updated, g.access_count)
                     for g in self._global.values()]
        items.sort(key=lambda g: -g.score)
        return tuple(items[:max(0, k)])

    def global_entries(self) -> Tuple[GlobalActivation, ...]:
        """Every global aggregate, in first-activation order."""
        with self._global_lock:
            return tuple(GlobalActivation(g.node_id, g.score, g.last_updated, g.access_count)
                         for g in self._global.values())

    def session_ids(self) -> Tuple[str, ...]:
        with self._registry:
            return tuple(self._sessions)

    def session_entries(self, session_id: str) -> Tuple[ActivationEntry, ...]:
        session = self._session(session_id)
        if session is None:
            return ()
        with session.lock:
            return tuple(e.snapshot() for e in session.entries.values())

    # =========================================================================
    # RESTORE (snapshot hydration)
    # =========================================================================

    def restore_entry(self, entry: ActivationEntry) -> None:
        session = self._session(entry.session_id, create=True)
        with session.lock:
            session.entries[entry.node_id] = entry.snapshot()
            session.decayed_through[entry.node_id] = entry.last_activated_at

    def restore_global(self, aggregate: GlobalActivation) -> None:
        with self._global_lock:
            self._global[aggregate.node_id] = aggregate

    def metrics(self) -> Dict:
        metrics = self._obs.get_metrics()
        counters = {}
        if metrics:
            for name in ("activations_total", "spreads_total", "decays_total", "working_set_queries_total"):
                counters[name] = metrics.value(name)
        with self._registry:
            sessions = len(self._sessions)
        with self._global_lock:
            global_nodes = len(self._global)
        return {
            'active_sessions': sessions,
            'global_nodes': global_nodes,
            'counters': counters,
        }
