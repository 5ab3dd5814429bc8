"""
Lattice Operations
==================

The governed write path into the canonical lattice.

OPERATION CLASSES:
==================
- READ:    read_node, read_staging, query_lattice (side-effect free)
- PROPOSE: propose_create / propose_edit / propose_edge stage a Proposal
- COMMIT:  commit_proposal / reject_proposal move it to a terminal state

LIFECYCLE:
==========
pending -> committed | rejected. Terminal states never change.

INVARIANTS:
===========
- Every canonical mutation comes from exactly one committed Proposal (or
  the explicit score fast path / conflict resolution) and is recorded by
  exactly one journal event
- A gate trace with any failed check rejects with no canonical mutation
- A failure while applying rejects the proposal; nothing is half-applied
- Nodes are never deleted, only status-flagged through edits

LOCK ORDER:
===========
proposal lock -> node lock -> EdgeGraph / Journal internal locks
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
import logging
import threading

from ..concurrency import KeyedLocks
from ..config import OpsConfig
from ..contracts.base import ErrorKind, IdFactory, Result, clamp, fail, is_score, utc
from ..contracts.model import (
    SCORE_FIELDS,
    ConfidenceLabel,
    CreatePayload,
    EdgePayload,
    EdgeType,
    EditPayload,
    GateTrace,
    JournalEventType,
    Node,
    NodeStatus,
    NodeTier,
    Proposal,
    ProposalKind,
    ProposalPayload,
    ProposalStatus,
    freeze_mapping,
)
from ..graph.edge_graph import EdgeGraph
from ..journal.event_log import Journal
from ..merge.field_merge import FieldMerge, FieldStamp, validate_edits
from ..observability import AuditEventType, ObservabilityEngine
from ..store import NodeStore
from ..temporal.clock import Clock, SystemClock


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CommitRecord:
    """One line of the commit log."""
    proposal_id: str
    kind: ProposalKind
    proposer: str
    committed_by: str
    entity_id: str
    journal_seq: int
    timestamp: datetime
    gate_rules: Tuple[str, ...] = ()


class LatticeOps:
    """
    Staging area, proposal registry and commit pipeline.

    Owns proposals and the commit log; mutates nodes through NodeStore
    and FieldMerge, edges through EdgeGraph; journals through Journal.
    """

    def __init__(
        self,
        store: NodeStore,
        edges: EdgeGraph,
        merge: FieldMerge,
        journal: Journal,
        config: Optional[OpsConfig] = None,
        clock: Optional[Clock] = None,
        ids: Optional[IdFactory] = None,
        observability: Optional[ObservabilityEngine] = None
    ):
        self._store = store
        self._edges = edges
        self._merge = merge
        self._journal = journal
        self._config = config or OpsConfig()
        self._clock = clock or SystemClock()
        self._ids = ids or IdFactory("ops")
        self._obs = observability or ObservabilityEngine(clock=self._clock)

        self._proposals: Dict[str, Proposal] = {}
        self._staging: Dict[str, ProposalPayload] = {}
        self._commit_log: List[CommitRecord] = []
        self._registry = threading.RLock()
        self._proposal_locks = KeyedLocks()

    # =========================================================================
    # READ
    # =========================================================================

    def read_node(self, node_id: str) -> Result[Node]:
        self._obs.increment("lattice_reads_total")
        return self._store.read(node_id)

    def read_staging(self, proposal_id: str) -> Result[ProposalPayload]:
        """Payload of a pending proposal; gone once it commits or is rejected."""
        self._obs.increment("lattice_reads_total")
        with self._registry:
            payload = self._staging.get(proposal_id)
        if payload is None:
            return fail(ErrorKind.NOT_FOUND, "not_found_in_staging", f"{proposal_id} is not staged")
        return Result.success(payload)

    def query_lattice(
        self,
        tags: Optional[Iterable[str]] = None,
        tier: Optional[Union[NodeTier, str]] = None,
        status: Optional[Union[NodeStatus, str]] = None,
        scope: Optional[str] = None,
        min_resonance: Optional[float] = None,
        min_coherence: Optional[float] = None,
        limit: Optional[int] = None
    ) -> Result[Tuple[Node, ...]]:
        """Snapshots of matching nodes in creation order (default 50, cap 200)."""
        self._obs.increment("lattice_reads_total")
        try:
            tier = NodeTier(tier) if isinstance(tier, str) else tier
            status = NodeStatus(status) if isinstance(status, str) else status
        except ValueError as exc:
            return fail(ErrorKind.INVALID_INPUT, "invalid_filter", str(exc))
        if limit is None:
            limit = self._config.default_query_limit
        limit = min(limit, self._config.max_query_limit)
        if limit < 1:
            return fail(ErrorKind.INVALID_INPUT, "invalid_limit", "limit must be positive")
        wanted_tags = set(tags) if tags else None

        def matches(node: Node) -> bool:
            if wanted_tags is not None and not wanted_tags.intersection(node.tags):
                return False
            if tier is not None and node.tier is not tier:
                return False
            if status is not None and node.status is not status:
                return False
            if scope is not None and node.scope != scope and not node.scope.startswith(scope + "."):
                return False
            if min_resonance is not None and node.resonance < min_resonance:
                return False
            if min_coherence is not None and node.coherence < min_coherence:
                return False
            return True

        return Result.success(self._store.select(matches, limit))

    def get_proposal(self, proposal_id: str) -> Result[Proposal]:
        with self._registry:
            proposal = self._proposals.get(proposal_id)
            if proposal is None:
                return fail(ErrorKind.NOT_FOUND, "proposal_not_found", f"Proposal {proposal_id} not found")
            return Result.success(proposal.snapshot())

    def list_proposals(
        self,
        status: Optional[ProposalStatus] = None,
        kind: Optional[ProposalKind] = None,
        proposer: Optional[str] = None
    ) -> Tuple[Proposal, ...]:
        with self._registry:
            items = list(self._proposals.values())
        return tuple(
            p.snapshot() for p in items
            if (status is None or p.status is status)
            and (kind is None or p.kind is kind)
            and (proposer is None or p.proposer == proposer)
        )

    def commit_log(self) -> Tuple[CommitRecord, ...]:
        with self._registry:
            return tuple(self._commit_log)

    # =========================================================================
    # PROPOSE
    # =========================================================================

    def propose_create(
        self,
        proposer: str,
        title: str,
        tier: Union[NodeTier, str] = NodeTier.REGULAR,
        scope: str = "",
        content: Any = None,
        summary: str = "",
        tags: Iterable[str] = (),
        related_ids: Iterable[str] = (),
        resonance: float = 0.0,
        coherence: float = 0.0,
        stability: float = 0.0,
        meta: Optional[Mapping[str, Any]] = None,
        opaque: Any = None,
        session_id: Optional[str] = None,
        confidence_label: str = ConfidenceLabel.HYPOTHESIS.value
    ) -> Result[Proposal]:
        cfg = self._config
        if not proposer:
            return fail(ErrorKind.INVALID_INPUT, "proposer_required", "Proposal needs a proposer")
        if not title or not str(title).strip():
            return fail(ErrorKind.INVALID_INPUT, "title_required", "Node title must not be empty")
        try:
            tier = NodeTier(tier) if isinstance(tier, str) else tier
        except ValueError:
            return fail(ErrorKind.INVALID_INPUT, "invalid_tier", f"Unknown tier: {tier}")
        for name, value in (("resonance", resonance), ("coherence", coherence), ("stability", stability)):
            if not is_score(value):
                return fail(ErrorKind.INVALID_INPUT, "invalid_score", f"{name} is not a number", field=name)

        payload = CreatePayload(
            title=str(title)[:cfg.max_title_length],
            tier=tier,
            scope=scope or "",
            content=self._cap_content(content),
            summary=str(summary or "")[:cfg.max_summary_length],
            tags=tuple(str(t) for t in tags)[:cfg.max_tags],
            related_ids=tuple(related_ids),
            resonance=clamp(resonance),
            coherence=clamp(coherence),
            stability=clamp(stability),
            meta=freeze_mapping(meta),
            opaque=opaque
        )
        return self._stage(ProposalKind.CREATE, payload, proposer, None, session_id, confidence_label)

    def propose_edit(
        self,
        proposer: str,
        target_id: str,
        edits: Mapping[str, Any],
        reason: str = "",
        edited_at: Optional[datetime] = None,
        opaque: Any = None,
        session_id: Optional[str] = None,
        confidence_label: str = ConfidenceLabel.HYPOTHESIS.value
    ) -> Result[Proposal]:
        """
        Stage a field edit. `edited_at` is when the edit's author read the
        node; it defaults to now.
        """
        if not proposer:
            return fail(ErrorKind.INVALID_INPUT, "proposer_required", "Proposal needs a proposer")
        if not self._store.exists(target_id):
            return fail(ErrorKind.NOT_FOUND, "target_not_found", f"Node {target_id} not found",
                        target_id=target_id)
        if not edits:
            return fail(ErrorKind.INVALID_INPUT, "empty_edit", "Edit proposal has no fields")
        checked = validate_edits(edits)
        if checked.is_failure:
            return Result.failure(checked.error.with_context("target_id", target_id))

        payload = EditPayload(
            edits=freeze_mapping(self._cap_edits(edits)),
            edited_at=utc(edited_at) if edited_at else self._clock.now(),
            reason=str(reason or "")[:self._config.max_reason_length],
            opaque=opaque
        )
        return self._stage(ProposalKind.EDIT, payload, proposer, target_id, session_id, confidence_label)

    def propose_edge(
        self,
        proposer: str,
        source_id: str,
        target_id: str,
        edge_type: Union[EdgeType, str] = EdgeType.REFERENCES,
        weight: float = 0.5,
        confidence: float = 0.5,
        evidence_refs: Iterable[str] = (),
        label: Optional[str] = None,
        opaque: Any = None,
        session_id: Optional[str] = None,
        confidence_label: str = ConfidenceLabel.HYPOTHESIS.value
    ) -> Result[Proposal]:
        if not proposer:
            return fail(ErrorKind.INVALID_INPUT, "proposer_required", "Proposal needs a proposer")
        if not source_id or not target_id:
            return fail(ErrorKind.INVALID_INPUT, "source_and_target_required",
                        "Edge requires both source_id and target_id")
        if source_id == target_id:
            return fail(ErrorKind.INVALID_INPUT, "self_edge", f"Self edges are not allowed ({source_id})")
        try:
            edge_type = EdgeType.parse(edge_type)
        except ValueError:
            return fail(ErrorKind.INVALID_INPUT, "invalid_edge_type", f"Unknown edge type: {edge_type}")
        for name, value in (("weight", weight), ("confidence", confidence)):
            if not is_score(value):
                return fail(ErrorKind.INVALID_INPUT, "invalid_score", f"Edge {name} is not a number", field=name)

        payload = EdgePayload(
            source_id=source_id,
            target_id=target_id,
            edge_type=edge_type,
            weight=clamp(weight),
            confidence=clamp(confidence),
            evidence_refs=tuple(evidence_refs),
            label=label,
            opaque=opaque
        )
        return self._stage(ProposalKind.EDGE, payload, proposer, source_id, session_id, confidence_label)

    def _stage(
        self,
        kind: ProposalKind,
        payload: ProposalPayload,
        proposer: str,
        target_id: Optional[str],
        session_id: Optional[str],
        confidence_label: str
    ) -> Result[Proposal]:
        proposal = Proposal(
            proposal_id=self._ids.next_id("prop", f"{kind.value}|{proposer}|{target_id or ''}"),
            kind=kind,
            payload=payload,
            proposer=proposer,
            created_at=self._clock.now(),
            target_id=target_id,
            session_id=session_id,
            confidence_label=confidence_label
        )
        with self._registry:
            self._proposals[proposal.proposal_id] = proposal
            self._staging[proposal.proposal_id] = payload

        self._journal.append(
            JournalEventType.PROPOSAL_CREATED,
            entity_id=proposal.proposal_id,
            session_id=session_id,
            actor=proposer,
            payload={'kind': kind.value, 'target_id': target_id},
            related_ids=(target_id,) if target_id else ()
        )
        self._obs.increment("proposals_created_total", kind=kind.value)
        logger.debug("staged %s proposal %s by %s", kind.value, proposal.proposal_id, proposer)
        return Result.success(proposal.snapshot())

    def _cap_content(self, content: Any) -> Any:
        if isinstance(content, str):
            return content[:self._config.max_content_length]
        return content

    def _cap_edits(self, edits: Mapping[str, Any]) -> Dict[str, Any]:
        cfg = self._config
        capped = dict(edits)
        if isinstance(capped.get("title"), str):
            capped["title"] = capped["title"][:cfg.max_title_length]
        if isinstance(capped.get("summary"), str):
            capped["summary"] = capped["summary"][:cfg.max_summary_length]
        if "content" in capped:
            capped["content"] = self._cap_content(capped["content"])
        if isinstance(capped.get("tags"), (list, tuple)):
            capped["tags"] = list(capped["tags"])[:cfg.max_tags]
        return capped

    # =========================================================================
    # COMMIT / REJECT
    # =========================================================================

    def commit_proposal(
        self,
        proposal_id: str,
        gate_trace: Sequence[GateTrace],
        committer: str = "governance"
    ) -> Result[Proposal]:
        """
        Apply a pending proposal to the canonical lattice.

        Fail-closed: an empty trace is refused, and a trace with any failed
        check rejects the proposal (journaled) without touching canonical
        state.
        """
        gate_trace = tuple(gate_trace or ())
        with self._proposal_locks.hold(proposal_id):
            with self._registry:
                proposal = self._proposals.get(proposal_id)
            if proposal is None:
                return fail(ErrorKind.NOT_FOUND, "proposal_not_found", f"Proposal {proposal_id} not found")
            if proposal.status is not ProposalStatus.PENDING:
                return fail(ErrorKind.CONFLICT, "proposal_not_pending",
                            f"Proposal {proposal_id} is {proposal.status.value}", status=proposal.status.value)
            if not gate_trace:
                return fail(ErrorKind.INVALID_INPUT, "gate_trace_required",
                            "Commit requires the gate trace that approved it")

            failed = [t for t in gate_trace if not t.passed]
            if failed:
                rule = failed[0].rule_id.value
                self._reject_locked(proposal, f"gate_failed:{rule}", committer, gate_trace)
                return fail(ErrorKind.GATE_REJECTED, "gate_rejected",
                            f"Gate {rule} failed: {failed[0].reason}",
                            blocking_rule=rule, proposal_id=proposal_id)

            if proposal.kind is ProposalKind.CREATE:
                applied = self._apply_create(proposal, committer)
            elif proposal.kind is ProposalKind.EDIT:
                applied = self._apply_edit(proposal, committer)
            else:
                applied = self._apply_edge(proposal, committer)

            if applied.is_failure:
                self._reject_locked(proposal, f"apply_failed:{applied.error.code}", committer, gate_trace)
                return Result.failure(applied.error.with_context("proposal_id", proposal_id))

            entity_id, journal_seq = applied.value
            now = self._clock.now()
            with self._registry:
                proposal.status = ProposalStatus.COMMITTED
                proposal.gate_trace = gate_trace
                proposal.reviewed_at = now
                proposal.committed_by = committer
                proposal.result_entity_id = entity_id
                self._staging.pop(proposal_id, None)
                self._commit_log.append(CommitRecord(
                    proposal_id=proposal_id,
                    kind=proposal.kind,
                    proposer=proposal.proposer,
                    committed_by=committer,
                    entity_id=entity_id,
                    journal_seq=journal_seq,
                    timestamp=now,
                    gate_rules=tuple(t.rule_id.value for t in gate_trace)
                ))
                result = proposal.snapshot()

        self._obs.increment("proposals_committed_total", kind=proposal.kind.value)
        self._obs.log_audit("ops", "commit", entity_id, AuditEventType.MUTATION,
                            proposal=proposal_id, kind=proposal.kind.value, committer=committer)
        logger.info("committed %s proposal %s -> %s", proposal.kind.value, proposal_id, entity_id)
        return Result.success(result)

    def reject_proposal(self, proposal_id: str, reason: str, rejected_by: Optional[str] = None) -> Result[Proposal]:
        with self._proposal_locks.hold(proposal_id):
            with self._registry:
                proposal = self._proposals.get(proposal_id)
            if proposal is None:
                return fail(ErrorKind.NOT_FOUND, "proposal_not_found", f"Proposal {proposal_id} not found")
            if proposal.status is not ProposalStatus.PENDING:
                return fail(ErrorKind.CONFLICT, "proposal_not_pending",
                            f"Proposal {proposal_id} is {proposal.status.value}", status=proposal.status.value)
            self._reject_locked(proposal, reason, rejected_by, proposal.gate_trace)
            with self._registry:
                return Result.success(proposal.snapshot())

    def _reject_locked(
        self,
        proposal: Proposal,
        reason: str,
        rejected_by: Optional[str],
        gate_trace: Tuple[GateTrace, ...]
    ) -> None:
        """Caller holds the proposal lock."""
        reason = str(reason or "")[:self._config.max_reason_length]
        with self._registry:
            proposal.status = ProposalStatus.REJECTED
            proposal.rejection_reason = reason
            proposal.reviewed_at = self._clock.now()
            proposal.gate_trace = tuple(gate_trace)
            self._staging.pop(proposal.proposal_id, None)

        self._journal.append(
            JournalEventType.PROPOSAL_REJECTED,
            entity_id=proposal.proposal_id,
            session_id=proposal.session_id,
            actor=rejected_by or proposal.proposer,
            payload={'kind': proposal.kind.value, 'reason': reason},
            related_ids=(proposal.target_id,) if proposal.target_id else ()
        )
        self._obs.increment("proposals_rejected_total", kind=proposal.kind.value)
        logger.info("rejected proposal %s: %s", proposal.proposal_id, reason)

    # =========================================================================
    # APPLY HELPERS (return (entity_id, journal seq))
    # =========================================================================

    def _apply_create(self, proposal: Proposal, committer: str) -> Result[Tuple[str, int]]:
        data: CreatePayload = proposal.payload
        now = self._clock.now()
        node_id = self._ids.next_id("node", f"{proposal.proposal_id}|{data.title}")
        meta = dict(data.meta)
        meta["_proposal_id"] = proposal.proposal_id
        node = Node(
            node_id=node_id,
            title=data.title,
            tier=data.tier,
            created_at=now,
            updated_at=now,
            scope=data.scope,
            content=data.content,
            summary=data.summary,
            resonance=data.resonance,
            coherence=data.coherence,
            stability=data.stability,
            version=1,
            tags=list(data.tags),
            related_ids=list(data.related_ids),
            meta=meta,
            owner_id=proposal.proposer
        )
        with self._store.lock(node_id):
            inserted = self._store.insert(node)
            if inserted.is_failure:
                return Result.failure(inserted.error)
            event = self._journal.append(
                JournalEventType.NODE_CREATED,
                entity_id=node_id,
                session_id=proposal.session_id,
                actor=proposal.proposer,
                payload={
                    'proposal_id': proposal.proposal_id,
                    'committed_by': committer,
                    'title': data.title,
                    'tier': data.tier.value,
                    'version': 1,
                },
                related_ids=(proposal.proposal_id,)
            )
        return Result.success((node_id, event.seq))

    def _apply_edit(self, proposal: Proposal, committer: str) -> Result[Tuple[str, int]]:
        data: EditPayload = proposal.payload
        node_id = proposal.target_id
        with self._store.lock(node_id):
            merged = self._merge.merge(node_id, data.as_dict(), data.edited_at, proposal.proposer,
                                       strict=True)
            if merged.is_failure:
                return Result.failure(merged.error)
            outcome = merged.value

            for conflict in outcome.pending:
                self._journal.append(
                    JournalEventType.MERGE_CONFLICT,
                    entity_id=node_id,
                    session_id=proposal.session_id,
                    actor=proposal.proposer,
                    payload={
                        'proposal_id': proposal.proposal_id,
                        'field': conflict.field,
                        'existing_writer': conflict.existing_writer,
                    },
                    related_ids=(proposal.proposal_id,)
                )

            if not outcome.applied:
                return fail(ErrorKind.CONFLICT, "merge_conflict",
                            "No field of the edit could be applied",
                            fields=",".join(f"{c.field}:{c.kind.value}" for c in outcome.conflicts))

            node = self._store.live(node_id)
            node.version += 1
            event_type = (JournalEventType.NODE_STATUS_CHANGED if "status" in outcome.applied
                          else JournalEventType.NODE_UPDATED)
            event = self._journal.append(
                event_type,
                entity_id=node_id,
                session_id=proposal.session_id,
                actor=proposal.proposer,
                payload={
                    'proposal_id': proposal.proposal_id,
                    'committed_by': committer,
                    'fields': outcome.applied,
                    'status': node.status.value,
                    'version': node.version,
                    'held': tuple(c.field for c in outcome.conflicts),
                },
                related_ids=(proposal.proposal_id,)
            )
        return Result.success((node_id, event.seq))

    def _apply_edge(self, proposal: Proposal, committer: str) -> Result[Tuple[str, int]]:
        data: EdgePayload = proposal.payload
        missing = [n for n in (data.source_id, data.target_id) if not self._store.exists(n)]
        if missing:
            return fail(ErrorKind.NOT_FOUND, "endpoint_not_found",
                        f"Edge endpoints not found: {', '.join(missing)}", missing=",".join(missing))

        with self._store.lock(data.source_id):
            created = self._edges.create_edge(
                data.source_id,
                data.target_id,
                data.edge_type,
                weight=data.weight,
                confidence=data.confidence,
                creator=proposal.proposer,
                creator_source="proposal",
                evidence_refs=data.evidence_refs,
                label=data.label
            )
            if created.is_failure:
                return Result.failure(created.error)
            edge = created.value
            event = self._journal.append(
                JournalEventType.EDGE_ADDED,
                entity_id=edge.edge_id,
                session_id=proposal.session_id,
                actor=proposal.proposer,
                payload={
                    'proposal_id': proposal.proposal_id,
                    'committed_by': committer,
                    'source_id': edge.source_id,
                    'target_id': edge.target_id,
                    'edge_type': edge.edge_type.value,
                    'weight': edge.weight,
                },
                related_ids=(edge.source_id, edge.target_id, proposal.proposal_id)
            )
        return Result.success((edge.edge_id, event.seq))

    # =========================================================================
    # DIRECT PATHS (journaled, no proposal)
    # =========================================================================

    def apply_score_mutation(
        self,
        node_id: str,
        actor: str,
        reason: str,
        deltas: Optional[Mapping[str, float]] = None,
        values: Optional[Mapping[str, float]] = None,
        session_id: Optional[str] = None
    ) -> Result[Node]:
        """
        Fast path for cascade logic: adjust score fields without a proposal.

        Bypasses the gates, never the journal. Pass either `deltas` (added,
        then clamped) or `values` (set, clamped), not both.
        """
        if (deltas is None) == (values is None):
            return fail(ErrorKind.INVALID_INPUT, "deltas_or_values_required",
                        "Pass exactly one of deltas or values")
        changes = dict(deltas if deltas is not None else values)
        unknown = sorted(set(changes) - set(SCORE_FIELDS))
        if not changes or unknown:
            return fail(ErrorKind.INVALID_INPUT, "invalid_score_field",
                        f"Score fields are {', '.join(SCORE_FIELDS)}", fields=",".join(unknown))
        bad = sorted(f for f, amount in changes.items() if not is_score(amount))
        if bad:
            return fail(ErrorKind.INVALID_INPUT, "invalid_score",
                        f"Score changes must be numbers: {', '.join(bad)}", fields=",".join(bad))
        if not actor:
            return fail(ErrorKind.INVALID_INPUT, "actor_required", "Score mutations need an actor")

        with self._store.lock(node_id):
            node = self._store.live(node_id)
            if node is None:
                return fail(ErrorKind.NOT_FOUND, "node_not_found", f"Node {node_id} not found")
            now = self._clock.now()
            before = {f: getattr(node, f) for f in changes}
            for field_name, amount in changes.items():
                current = getattr(node, field_name)
                new_value = current + float(amount) if deltas is not None else float(amount)
                setattr(node, field_name, clamp(new_value))
                self._merge.record_stamp(node_id, field_name, FieldStamp(now, actor))
            node.version += 1
            node.updated_at = now
            self._journal.append(
                JournalEventType.NODE_SCORE_MUTATED,
                entity_id=node_id,
                session_id=session_id,
                actor=actor,
                payload={
                    'reason': str(reason or "")[:self._config.max_reason_length],
                    'before': before,
                    'after': {f: getattr(node, f) for f in changes},
                    'version': node.version,
                }
            )
            result = node.snapshot()

        self._obs.increment("score_mutations_total")
        logger.debug("score mutation on %s by %s: %s", node_id, actor, reason)
        return Result.success(result)

    def resolve_conflict(self, node_id: str, field_name: str, value: Any, resolver: str) -> Result[Node]:
        """Settle a held field, bump the version and journal the resolution."""
        with self._store.lock(node_id):
            resolved = self._merge.resolve_conflict(node_id, field_name, value, resolver)
            if resolved.is_failure:
                return Result.failure(resolved.error)
            node = self._store.live(node_id)
            node.version += 1
            self._journal.append(
                JournalEventType.CONFLICT_RESOLVED,
                entity_id=node_id,
                actor=resolver,
                payload={
                    'field': field_name,
                    'version': node.version,
                    'rejected_writer': resolved.value.proposed_by,
                }
            )
            return Result.success(node.snapshot())

    # =========================================================================
    # RESTORE (snapshot hydration)
    # =========================================================================

    def load_proposal(self, proposal: Proposal) -> None:
        with self._registry:
            self._proposals[proposal.proposal_id] = proposal.snapshot()
            if proposal.status is ProposalStatus.PENDING:
                self._staging[proposal.proposal_id] = proposal.payload

    def load_commit_record(self, record: CommitRecord) -> None:
        with self._registry:
            self._commit_log.append(record)

    def metrics(self) -> Dict:
        with self._registry:
            by_status: Dict[str, int] = {}
            for p in self._proposals.values():
                by_status[p.status.value] = by_status.get(p.status.value, 0) + 1
            staged = len(self._staging)
            commits = len(self._commit_log)
        metrics = self._obs.get_metrics()
        counters = {}
        if metrics:
            for name in ("lattice_reads_total", "proposals_created_total", "proposals_committed_total",
                         "proposals_rejected_total", "score_mutations_total"):
                counters[name] = metrics.value(name)
        return {
            'nodes': len(self._store),
            'proposals_by_status': by_status,
            'staged': staged,
            'commit_log_size': commits,
            'counters': counters,
        }
