"""
Gate Chain
==========

Composite, fail-closed runner over the gate rules.

ORDER:
======
1. identity binding      5. novelty check
2. scope binding         6. rate limit
3. disclosure            7. economic check
4. risk check

The first failing rule stops the run and becomes `blocking_rule`. Every
run, passed or blocked, lands in the trace history. Anti-echo is not
part of the chain; promotion calls `run_anti_echo` separately.
"""

from __future__ import annotations
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Deque, Dict, Iterator, List, Optional, Set, Tuple
import logging
import re
import threading

from ..config import GateConfig
from ..contracts.base import IdFactory
from ..contracts.model import Actor, Candidate, GateResult, GateRule, GateTrace, SessionContext
from ..observability import AuditEventType, ObservabilityEngine
from ..temporal.clock import Clock, SystemClock
from . import rules
from .rules import RateDecision, TraceFactory


logger = logging.getLogger(__name__)


class GateState:
    """
    Counters shared by every session: seen content hashes and per-actor
    fixed-window rate buckets. All access goes through `locked()`.
    """

    def __init__(self):
        self._hashes: Set[str] = set()
        self._buckets: Dict[str, Tuple[datetime, int]] = {}
        self._lock = threading.RLock()

    @contextmanager
    def locked(self) -> Iterator['GateState']:
        with self._lock:
            yield self

    def has_hash(self, digest: str) -> bool:
        with self._lock:
            return digest in self._hashes

    def register(self, digest: str) -> bool:
        """Record a hash; False if it was already known."""
        with self._lock:
            if digest in self._hashes:
                return False
            self._hashes.add(digest)
            return True

    def consume_rate(self, actor_id: str, now: datetime, max_per_window: int, window: timedelta) -> RateDecision:
        with self._lock:
            bucket = self._buckets.get(actor_id)
            if bucket is None or now - bucket[0] >= window:
                bucket = (now, 0)
            start, count = bucket
            if count >= max_per_window:
                self._buckets[actor_id] = bucket
                return RateDecision(allowed=False, remaining=0, resets_at=start + window)
            self._buckets[actor_id] = (start, count + 1)
            return RateDecision(allowed=True, remaining=max_per_window - count - 1, resets_at=start + window)

    def hashes(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(sorted(self._hashes))

    def buckets(self) -> Dict[str, Tuple[datetime, int]]:
        with self._lock:
            return dict(self._buckets)

    def restore_bucket(self, actor_id: str, window_start: datetime, count: int) -> None:
        with self._lock:
            self._buckets[actor_id] = (window_start, count)


class GateChain:
    """Runs the rules in order and keeps every trace."""

    def __init__(
        self,
        config: Optional[GateConfig] = None,
        clock: Optional[Clock] = None,
        ids: Optional[IdFactory] = None,
        observability: Optional[ObservabilityEngine] = None,
        state: Optional[GateState] = None
    ):
        self._config = config or GateConfig()
        self._clock = clock or SystemClock()
        self._obs = observability or ObservabilityEngine(clock=self._clock)
        self._state = state or GateState()
        self._traces = TraceFactory(self._clock, ids or IdFactory("gates"), self._config.evidence_truncate)
        self._authority = tuple(re.compile(p, re.IGNORECASE) for p in self._config.authority_patterns)
        self._impersonation = tuple(re.compile(p, re.IGNORECASE) for p in self._config.impersonation_patterns)
        self._window = timedelta(seconds=self._config.rate_limit_window_seconds)

        self._history: Deque[GateTrace] = deque()
        self._history_lock = threading.Lock()
        self._history_dropped = 0

    @property
    def state(self) -> GateState:
        return self._state

    def run_all(
        self,
        candidate: Candidate,
        actor: Optional[Actor],
        context: SessionContext,
        register: bool = False
    ) -> GateResult:
        """
        Evaluate the chain. With `register=True` a passing candidate's
        content hash is recorded, so an identical later candidate fails
        the novelty check.
        """
        cfg = self._config
        t = self._traces
        traces: List[GateTrace] = []

        def blocked(rule: GateRule) -> GateResult:
            return self._finish(GateResult(passed=False, traces=tuple(traces), blocking_rule=rule), context)

        trace = rules.identity_binding(t, actor, context)
        traces.append(trace)
        if not trace.passed:
            return blocked(GateRule.IDENTITY_BINDING)

        ordered = (
            (GateRule.SCOPE_BINDING, lambda: rules.scope_binding(t, actor, candidate, context)),
            (GateRule.DISCLOSURE_ENFORCEMENT, lambda: rules.disclosure_enforcement(t, candidate, context)),
            (GateRule.RISK_CHECK, lambda: rules.risk_check(
                t, candidate, context, self._authority, self._impersonation)),
        )
        for rule, check in ordered:
            trace = check()
            traces.append(trace)
            if not trace.passed:
                return blocked(rule)

        digest = rules.content_hash(candidate.claim)
        # Novelty, rate and registration are one atomic step against shared counters
        with self._state.locked() as state:
            trace = rules.novelty_check(t, candidate, context, digest, state.has_hash(digest))
            traces.append(trace)
            if not trace.passed:
                return blocked(GateRule.NOVELTY_CHECK)

            decision = state.consume_rate(candidate.speaker_id, self._clock.now(), cfg.rate_limit_max, self._window)
            trace = rules.rate_limit(t, candidate, context, decision)
            traces.append(trace)
            if not trace.passed:
                self._obs.increment("rate_limit_blocks_total")
                return blocked(GateRule.RATE_LIMIT)

            trace = rules.economic_check(t, candidate, context, cfg.economic_prefixes, cfg.economic_allowed_intents)
            traces.append(trace)
            if not trace.passed:
                return blocked(GateRule.ECONOMIC_CHECK)

            if register:
                state.register(digest)

        return self._finish(GateResult(passed=True, traces=tuple(traces), blocking_rule=None), context)

    def run_anti_echo(self, context: SessionContext) -> GateTrace:
        trace = rules.anti_echo(self._traces, context, self._config.anti_echo_min_turns,
                                self._config.anti_echo_max_unresolved)
        self._remember((trace,))
        if not trace.passed:
            self._obs.increment("gate_blocks_total", rule=GateRule.ANTI_ECHO.value)
            logger.warning("anti-echo blocked session %s: %s", context.session_id, trace.reason)
        return trace

    def register(self, candidate: Candidate) -> bool:
        """Record a candidate's content hash after the caller accepted it."""
        return self._state.register(rules.content_hash(candidate.claim))

    def _finish(self, result: GateResult, context: SessionContext) -> GateResult:
        self._remember(result.traces)
        self._obs.increment("gate_runs_total")
        if not result.passed:
            last = result.traces[-1]
            self._obs.increment("gate_blocks_total", rule=result.blocking_rule.value)
            self._obs.log_audit("gates", "blocked", last.actor_id, AuditEventType.GATE,
                                rule=result.blocking_rule.value, reason=last.reason,
                                session=context.session_id)
            logger.warning("gate %s blocked %s in %s: %s", result.blocking_rule.value,
                           last.actor_id, context.session_id, last.reason)
        return result

    def _remember(self, traces: Tuple[GateTrace, ...]) -> None:
        limit = self._config.trace_history_max
        with self._history_lock:
            self._history.extend(traces)
            overflow = len(self._history) - limit
            for _ in range(max(0, overflow)):
                self._history.popleft()
            if overflow > 0:
                self._history_dropped += overflow
        if overflow > 0:
            logger.info("gate trace history full, dropped %d oldest traces", overflow)

    def trace_history(self, session_id: Optional[str] = None, limit: Optional[int] = None) -> Tuple[GateTrace, ...]:
        with self._history_lock:
            items = [tr for tr in self._history if session_id is None or tr.session_id == session_id]
        if limit is not None:
            items = items[-limit:] if limit > 0 else []
        return tuple(items)

    def metrics(self) -> Dict:
        metrics = self._obs.get_metrics()
        counters = {}
        if metrics:
            for name in ("gate_runs_total", "gate_blocks_total", "rate_limit_blocks_total"):
                counters[name] = metrics.value(name)
        with self._history_lock:
            retained = len(self._history)
            dropped = self._history_dropped
        return {
            'known_hashes': len(self._state.hashes()),
            'rate_buckets': len(self._state.buckets()),
            'traces_retained': retained,
            'traces_dropped': dropped,
            'counters': counters,
        }
