"""
Gate Rules
==========

Deterministic validation checks. Each rule is a pure function over the
candidate, the actor and the session context (plus facts the chain looked
up for it) and returns exactly one GateTrace, passed or not.

Shared counters (content hashes, rate buckets) are read by GateChain and
handed in as plain values, so nothing here touches mutable state.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional, Pattern, Sequence
import hashlib
import re

from ..contracts.base import IdFactory
from ..contracts.model import (
    Actor,
    Candidate,
    ConfidenceLabel,
    GateRule,
    GateTrace,
    ParticipantRole,
    SessionContext,
)
from ..temporal.clock import Clock


CONFIDENCE_LABELS = tuple(label.value for label in ConfidenceLabel)

_WHITESPACE = re.compile(r"\s+")


def normalize_content(text: Any) -> str:
    return _WHITESPACE.sub(" ", str(text or "")).strip().lower()


def content_hash(text: Any) -> str:
    """sha256 of the normalized text; equal after normalization means duplicate."""
    return hashlib.sha256(normalize_content(text).encode("utf-8")).hexdigest()


def truncate(text: Any, max_len: int = 100) -> str:
    s = str(text or "")
    return s[:max_len] + "..." if len(s) > max_len else s


def scope_covers(ref: str, scope: Sequence[str]) -> bool:
    """
    `*` grants everything; otherwise an exact match, a dotted prefix
    (`a` covers `a.b`) or a wildcard suffix (`a.*` covers `a.b.c`).
    """
    if "*" in scope:
        return True
    for granted in scope:
        if ref == granted or ref.startswith(granted + "."):
            return True
        if granted.endswith(".*") and ref.startswith(granted[:-2]):
            return True
    return False


@dataclass(frozen=True)
class RateDecision:
    allowed: bool
    remaining: int
    resets_at: datetime


class TraceFactory:
    """Stamps traces with ids and clock time."""

    def __init__(self, clock: Clock, ids: IdFactory, evidence_truncate: int = 100):
        self._clock = clock
        self._ids = ids
        self._truncate = evidence_truncate

    def make(
        self,
        rule: GateRule,
        passed: bool,
        reason: str,
        session_id: Optional[str],
        actor_id: Optional[str],
        **evidence: Any
    ) -> GateTrace:
        return GateTrace(
            trace_id=self._ids.next_id("gt", rule.value),
            rule_id=rule,
            passed=passed,
            reason=reason,
            timestamp=self._clock.now(),
            evidence=tuple(
                (k, truncate(v, self._truncate)) for k, v in sorted(evidence.items())
            ),
            session_id=session_id,
            actor_id=actor_id
        )


# =============================================================================
# RULES (priority order)
# =============================================================================

def identity_binding(traces: TraceFactory, actor: Optional[Actor], context: SessionContext) -> GateTrace:
    rule = GateRule.IDENTITY_BINDING
    sid = context.session_id
    if actor is None:
        return traces.make(rule, False, "actor_not_found", sid, None)
    if not actor.active:
        return traces.make(rule, False, "actor_inactive", sid, actor.actor_id)
    if actor.actor_id not in context.participants:
        return traces.make(rule, False, "not_session_participant", sid, actor.actor_id)
    return traces.make(rule, True, "identity_verified", sid, actor.actor_id, role=actor.role.value)


def scope_binding(traces: TraceFactory, actor: Actor, candidate: Candidate, context: SessionContext) -> GateTrace:
    rule = GateRule.SCOPE_BINDING
    sid = context.session_id
    if not actor.scope:
        return traces.make(rule, False, "no_scope_defined", sid, actor.actor_id)
    out_of_scope = [ref for ref in candidate.domains if not scope_covers(ref, actor.scope)]
    if out_of_scope:
        return traces.make(rule, False, "out_of_scope_reference", sid, actor.actor_id,
                           out_of_scope=",".join(out_of_scope), allowed_scope=",".join(actor.scope))
    return traces.make(rule, True, "scope_verified", sid, actor.actor_id, scope=",".join(actor.scope))


def disclosure_enforcement(traces: TraceFactory, candidate: Candidate, context: SessionContext) -> GateTrace:
    rule = GateRule.DISCLOSURE_ENFORCEMENT
    sid = context.session_id
    label = candidate.confidence_label
    if not label or label not in CONFIDENCE_LABELS:
        return traces.make(rule, False, "missing_confidence_label", sid, candidate.speaker_id,
                           provided=label, allowed=",".join(CONFIDENCE_LABELS))
    if label == ConfidenceLabel.FACT.value and not candidate.citation:
        return traces.make(rule, False, "fact_without_citation", sid, candidate.speaker_id,
                           claim=candidate.claim)
    return traces.make(rule, True, "disclosure_verified", sid, candidate.speaker_id, label=label)


def risk_check(
    traces: TraceFactory,
    candidate: Candidate,
    context: SessionContext,
    authority_patterns: Sequence[Pattern],
    impersonation_patterns: Sequence[Pattern]
) -> GateTrace:
    rule = GateRule.RISK_CHECK
    sid = context.session_id
    claim = str(candidate.claim or "").lower()
    for pattern in authority_patterns:
        if pattern.search(claim):
            return traces.make(rule, False, "authority_assertion_blocked", sid, candidate.speaker_id,
                               pattern=pattern.pattern, claim=candidate.claim)
    for pattern in impersonation_patterns:
        if pattern.search(claim):
            return traces.make(rule, False, "impersonation_blocked", sid, candidate.speaker_id,
                               claim=candidate.claim)
    return traces.make(rule, True, "risk_check_passed", sid, candidate.speaker_id)


def novelty_check(traces: TraceFactory, candidate: Candidate, context: SessionContext,
                  digest: str, already_seen: bool) -> GateTrace:
    rule = GateRule.NOVELTY_CHECK
    if already_seen:
        return traces.make(rule, False, "duplicate_content", context.session_id, candidate.speaker_id, hash=digest)
    return traces.make(rule, True, "novel_content", context.session_id, candidate.speaker_id, hash=digest)


def rate_limit(traces: TraceFactory, candidate: Candidate, context: SessionContext,
               decision: RateDecision) -> GateTrace:
    rule = GateRule.RATE_LIMIT
    if not decision.allowed:
        return traces.make(rule, False, "rate_limit_exceeded", context.session_id, candidate.speaker_id,
                           remaining=decision.remaining, resets_at=decision.resets_at.isoformat())
    return traces.make(rule, True, "rate_within_budget", context.session_id, candidate.speaker_id,
                       remaining=decision.remaining)


def economic_check(
    traces: TraceFactory,
    candidate: Candidate,
    context: SessionContext,
    prefixes: Sequence[str],
    allowed_intents: Sequence[str]
) -> GateTrace:
    rule = GateRule.ECONOMIC_CHECK
    sid = context.session_id
    if not any(ref.startswith(p) for ref in candidate.domains for p in prefixes):
        return traces.make(rule, True, "no_economic_reference", sid, candidate.speaker_id)
    if candidate.intent in allowed_intents:
        return traces.make(rule, True, "economic_suggestion_only", sid, candidate.speaker_id,
                           intent=candidate.intent)
    return traces.make(rule, False, "economic_mutation_blocked", sid, candidate.speaker_id,
                       intent=candidate.intent)


def anti_echo(traces: TraceFactory, context: SessionContext, min_turns: int, max_unresolved: int) -> GateTrace:
    """Session-level check, run at promotion time rather than per turn."""
    rule = GateRule.ANTI_ECHO
    sid = context.session_id
    if context.turn_count == 0:
        return traces.make(rule, True, "no_turns_yet", sid, None)

    critique_ratio = context.critique_turns / context.turn_count
    has_critic = any(
        context.role_of(pid) in (ParticipantRole.CRITIC, ParticipantRole.ADVERSARY)
        for pid in context.participants
    )
    if not has_critic and context.turn_count >= min_turns:
        return traces.make(rule, False, "no_critic_or_adversary", sid, None,
                           participant_count=len(context.participants))
    if context.unresolved_contradictions > max_unresolved:
        return traces.make(rule, False, "unresolved_contradictions_escalating", sid, None,
                           total=context.contradictions_total,
                           unresolved=context.unresolved_contradictions,
                           critique_ratio=f"{critique_ratio:.3f}")
    return traces.make(rule, True, "anti_echo_passed", sid, None,
                       critique_ratio=f"{critique_ratio:.3f}", has_critic=has_critic,
                       unresolved=context.unresolved_contradictions)
