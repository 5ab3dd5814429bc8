"""
Snapshot Persistence
====================

JSON export and import of a whole LatticeEngine.

SNAPSHOT SHAPE:
===============
{
  "format": "lattice-snapshot", "version": 1, "exported_at": ...,
  "ids_issued": int,
  "nodes": [...], "edges": [...], "proposals": [...], "commit_log": [...],
  "journal": {"markers": [...], "events": [...]},
  "activation": {"entries": [...], "global": [...]},
  "merge": {"stamps": {node_id: {field: stamp}}, "conflicts": [...]},
  "gates": {"hashes": [...], "buckets": {actor_id: [window_start, count]}}
}

Loading replays the journal through `Journal.load_verified_event`, so a
tampered or reordered event file fails to load instead of loading quietly.
"""

from __future__ import annotations
from dataclasses import asdict
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional, Union
import json
import logging

from .activation import GlobalActivation
from .config import LatticeConfig
from .contracts.model import (
    ActivationEntry,
    CreatePayload,
    Edge,
    EdgePayload,
    EdgeType,
    EditPayload,
    GateRule,
    GateTrace,
    JournalEvent,
    JournalEventType,
    Node,
    NodeStatus,
    NodeTier,
    Proposal,
    ProposalKind,
    ProposalStatus,
)
from .engine import LatticeEngine
from .journal import CompactionMarker
from .merge import ConflictKind, FieldConflict, FieldStamp
from .ops import CommitRecord
from .temporal.clock import Clock


logger = logging.getLogger(__name__)

SNAPSHOT_FORMAT = "lattice-snapshot"
SNAPSHOT_VERSION = 1


class SnapshotError(ValueError):
    """A snapshot file is unreadable, of the wrong format, or fails verification."""
    pass


class StrictLatticeEncoder(json.JSONEncoder):
    """
    JSON encoder that prioritizes fidelity over flexibility.

    RULES:
    1. Dates MUST be ISO 8601 strings (UTC).
    2. Enums MUST use their .value.
    3. Decimals become floats.
    4. Sets -> sorted lists (deterministic output).
    5. Dataclasses -> dicts.
    """

    def default(self, obj: Any) -> Any:
        if isinstance(obj, (datetime, date)):
            return obj.isoformat()
        if isinstance(obj, Enum):
            return obj.value
        if isinstance(obj, Decimal):
            return float(obj)
        if isinstance(obj, (set, frozenset)):
            return sorted(obj)
        if hasattr(obj, "__dataclass_fields__"):
            return asdict(obj)
        return super().default(obj)


# =============================================================================
# EXPORT
# =============================================================================

def export_snapshot(engine: LatticeEngine) -> Dict[str, Any]:
    """
    Capture the engine's state as plain data.

    Values are JSON-ready after a round trip through StrictLatticeEncoder
    (datetimes and enums are still native objects here).
    """
    journal = engine.journal
    return {
        'format': SNAPSHOT_FORMAT,
        'version': SNAPSHOT_VERSION,
        'exported_at': engine.clock.now(),
        'ids_issued': engine.ids.issued,
        'nodes': [asdict(n) for n in engine.store.all_nodes()],
        'edges': [asdict(e) for e in engine.edges.all_edges()],
        'proposals': [asdict(p) for p in engine.ops.list_proposals()],
        'commit_log': [asdict(r) for r in engine.ops.commit_log()],
        'journal': {
            'markers': [asdict(m) for m in journal.compaction_markers()],
            'events': [asdict(e) for e in journal.all_events()],
        },
        'activation': {
            'entries': [
                asdict(entry)
                for sid in engine.activation.session_ids()
                for entry in engine.activation.session_entries(sid)
            ],
            'global': [asdict(g) for g in engine.activation.global_entries()],
        },
        'merge': {
            'stamps': {
                node_id: {f: asdict(s) for f, s in stamps.items()}
                for node_id, stamps in engine.merge.all_stamps().items()
            },
            'conflicts': [asdict(c) for c in engine.merge.all_conflicts()],
        },
        'gates': {
            'hashes': list(engine.gates.state.hashes()),
            'buckets': {actor: [start, count] for actor, (start, count) in engine.gates.state.buckets().items()},
        },
    }


def dumps_snapshot(engine: LatticeEngine, indent: Optional[int] = 2) -> str:
    return json.dumps(export_snapshot(engine), cls=StrictLatticeEncoder, indent=indent, sort_keys=True)


def save_snapshot(engine: LatticeEngine, path: Union[str, Path]) -> Path:
    path = Path(path)
    text = dumps_snapshot(engine)
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(text, encoding="utf-8")
    tmp.replace(path)
    logger.info("saved snapshot to %s (%d journal events)", path, len(engine.journal))
    return path


# =============================================================================
# IMPORT
# =============================================================================

def read_snapshot(path: Union[str, Path]) -> Dict[str, Any]:
    """Parse and format-check a snapshot file without building an engine."""
    try:
        data = json.loads(Path(path).read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise SnapshotError(f"Cannot read snapshot {path}: {exc}") from exc
    if not isinstance(data, dict) or data.get('format') != SNAPSHOT_FORMAT:
        raise SnapshotError(f"{path} is not a lattice snapshot")
    if data.get('version') != SNAPSHOT_VERSION:
        raise SnapshotError(f"Unsupported snapshot version: {data.get('version')}")
    return data


def load_snapshot(
    path: Union[str, Path],
    config: Optional[LatticeConfig] = None,
    clock: Optional[Clock] = None
) -> LatticeEngine:
    """Build a fresh engine from a snapshot file. Raises SnapshotError."""
    return restore_snapshot(read_snapshot(path), config, clock)


def restore_snapshot(
    data: Dict[str, Any],
    config: Optional[LatticeConfig] = None,
    clock: Optional[Clock] = None
) -> LatticeEngine:
    engine = LatticeEngine(config, clock, record_init=False)
    try:
        _hydrate(engine, data)
    except (KeyError, TypeError, ValueError) as exc:
        raise SnapshotError(f"Snapshot failed to load: {exc}") from exc
    logger.info("restored snapshot: %d nodes, %d edges, %d journal events",
                len(engine.store), len(engine.edges), len(engine.journal))
    return engine


def _hydrate(engine: LatticeEngine, data: Dict[str, Any]) -> None:
    engine.ids.resume(data.get('ids_issued', 0))

    for raw in data.get('nodes', []):
        inserted = engine.store.insert(node_from_dict(raw))
        if inserted.is_failure:
            raise ValueError(inserted.error.message)

    for raw in data.get('edges', []):
        loaded = engine.edges.load_edge(edge_from_dict(raw))
        if loaded.is_failure:
            raise ValueError(loaded.error.message)

    journal = data.get('journal', {})
    for raw in journal.get('markers', []):
        engine.journal.load_marker(marker_from_dict(raw))
    for raw in journal.get('events', []):
        engine.journal.load_verified_event(event_from_dict(raw))

    for raw in data.get('proposals', []):
        engine.ops.load_proposal(proposal_from_dict(raw))
    for raw in data.get('commit_log', []):
        engine.ops.load_commit_record(CommitRecord(
            proposal_id=raw['proposal_id'],
            kind=ProposalKind(raw['kind']),
            proposer=raw['proposer'],
            committed_by=raw['committed_by'],
            entity_id=raw['entity_id'],
            journal_seq=int(raw['journal_seq']),
            timestamp=_dt(raw['timestamp']),
            gate_rules=tuple(raw.get('gate_rules', ()))
        ))

    activation = data.get('activation', {})
    for raw in activation.get('entries', []):
        engine.activation.restore_entry(ActivationEntry(
            session_id=raw['session_id'],
            node_id=raw['node_id'],
            score=float(raw['score']),
            last_activated_at=_dt(raw['last_activated_at']),
            activation_count=int(raw['activation_count']),
            reasons=tuple(raw.get('reasons', ()))
        ))
    for raw in activation.get('global', []):
        engine.activation.restore_global(GlobalActivation(
            node_id=raw['node_id'],
            score=float(raw['score']),
            last_updated=_dt(raw['last_updated']),
            access_count=int(raw['access_count'])
        ))

    merge = data.get('merge', {})
    for node_id, stamps in merge.get('stamps', {}).items():
        for field_name, raw in stamps.items():
            engine.merge.record_stamp(node_id, field_name, FieldStamp(_dt(raw['updated_at']), raw['updated_by']))
    for raw in merge.get('conflicts', []):
        engine.merge.restore_conflict(FieldConflict(
            node_id=raw['node_id'],
            field=raw['field'],
            kind=ConflictKind(raw['kind']),
            current_value=raw.get('current_value'),
            proposed_value=raw.get('proposed_value'),
            proposed_by=raw['proposed_by'],
            proposed_at=_dt(raw['proposed_at']),
            existing_writer=raw.get('existing_writer'),
            existing_at=_dt(raw['existing_at']) if raw.get('existing_at') else None,
            message=raw.get('message', '')
        ))

    gates = data.get('gates', {})
    for digest in gates.get('hashes', []):
        engine.gates.state.register(digest)
    for actor, (start, count) in gates.get('buckets', {}).items():
        engine.gates.state.restore_bucket(actor, _dt(start), int(count))


# =============================================================================
# DECODERS
# =============================================================================

def _dt(value: Union[str, datetime]) -> datetime:
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


def _enum(enum_cls, value):
    return value if isinstance(value, enum_cls) else enum_cls(value)


def _freeze(value: Any) -> Any:
    """JSON lists back to tuples, recursively, for frozen containers."""
    if isinstance(value, list):
        return tuple(_freeze(v) for v in value)
    if isinstance(value, dict):
        return {k: _freeze(v) for k, v in value.items()}
    return value


def _pairs(raw: Any) -> tuple:
    return tuple((k, _freeze(v)) for k, v in (raw or ()))


def node_from_dict(raw: Dict[str, Any]) -> Node:
    return Node(
        node_id=raw['node_id'],
        title=raw['title'],
        tier=_enum(NodeTier, raw['tier']),
        created_at=_dt(raw['created_at']),
        updated_at=_dt(raw['updated_at']),
        scope=raw.get('scope', ''),
        content=raw.get('content'),
        summary=raw.get('summary', ''),
        resonance=float(raw.get('resonance', 0.0)),
        coherence=float(raw.get('coherence', 0.0)),
        stability=float(raw.get('stability', 0.0)),
        version=int(raw.get('version', 1)),
        status=_enum(NodeStatus, raw.get('status', NodeStatus.ACTIVE.value)),
        tags=list(raw.get('tags', [])),
        related_ids=list(raw.get('related_ids', [])),
        meta=dict(raw.get('meta') or {}),
        owner_id=raw.get('owner_id')
    )


def edge_from_dict(raw: Dict[str, Any]) -> Edge:
    return Edge(
        edge_id=raw['edge_id'],
        source_id=raw['source_id'],
        target_id=raw['target_id'],
        edge_type=EdgeType.parse(raw['edge_type']),
        weight=float(raw['weight']),
        confidence=float(raw['confidence']),
        creator=raw['creator'],
        created_at=_dt(raw['created_at']),
        last_validated_at=_dt(raw['last_validated_at']),
        creator_source=raw.get('creator_source', 'emergent'),
        evidence_refs=tuple(raw.get('evidence_refs', ())),
        label=raw.get('label'),
        validation_count=int(raw.get('validation_count', 0))
    )


def trace_from_dict(raw: Dict[str, Any]) -> GateTrace:
    return GateTrace(
        trace_id=raw['trace_id'],
        rule_id=GateRule(raw['rule_id']),
        passed=bool(raw['passed']),
        reason=raw['reason'],
        timestamp=_dt(raw['timestamp']),
        evidence=tuple((k, v) for k, v in raw.get('evidence', ())),
        session_id=raw.get('session_id'),
        actor_id=raw.get('actor_id')
    )


def payload_from_dict(kind: ProposalKind, raw: Dict[str, Any]):
    if kind is ProposalKind.CREATE:
        return CreatePayload(
            title=raw['title'],
            tier=_enum(NodeTier, raw.get('tier', NodeTier.REGULAR.value)),
            scope=raw.get('scope', ''),
            content=raw.get('content'),
            summary=raw.get('summary', ''),
            tags=tuple(raw.get('tags', ())),
            related_ids=tuple(raw.get('related_ids', ())),
            resonance=float(raw.get('resonance', 0.0)),
            coherence=float(raw.get('coherence', 0.0)),
            stability=float(raw.get('stability', 0.0)),
            meta=_pairs(raw.get('meta')),
            opaque=raw.get('opaque')
        )
    if kind is ProposalKind.EDIT:
        return EditPayload(
            edits=_pairs(raw['edits']),
            edited_at=_dt(raw['edited_at']),
            reason=raw.get('reason', ''),
            opaque=raw.get('opaque')
        )
    return EdgePayload(
        source_id=raw['source_id'],
        target_id=raw['target_id'],
        edge_type=EdgeType.parse(raw.get('edge_type', EdgeType.REFERENCES.value)),
        weight=float(raw.get('weight', 0.5)),
        confidence=float(raw.get('confidence', 0.5)),
        evidence_refs=tuple(raw.get('evidence_refs', ())),
        label=raw.get('label'),
        opaque=raw.get('opaque')
    )


def proposal_from_dict(raw: Dict[str, Any]) -> Proposal:
    kind = ProposalKind(raw['kind'])
    return Proposal(
        proposal_id=raw['proposal_id'],
        kind=kind,
        payload=payload_from_dict(kind, raw['payload']),
        proposer=raw['proposer'],
        created_at=_dt(raw['created_at']),
        target_id=raw.get('target_id'),
        session_id=raw.get('session_id'),
        confidence_label=raw.get('confidence_label', 'hypothesis'),
        status=ProposalStatus(raw.get('status', ProposalStatus.PENDING.value)),
        gate_trace=tuple(trace_from_dict(t) for t in raw.get('gate_trace', ())),
        reviewed_at=_dt(raw['reviewed_at']) if raw.get('reviewed_at') else None,
        committed_by=raw.get('committed_by'),
        rejection_reason=raw.get('rejection_reason'),
        result_entity_id=raw.get('result_entity_id')
    )


def event_from_dict(raw: Dict[str, Any]) -> JournalEvent:
    return JournalEvent(
        seq=int(raw['seq']),
        event_type=JournalEventType(raw['event_type']),
        timestamp=_dt(raw['timestamp']),
        entity_id=raw.get('entity_id'),
        session_id=raw.get('session_id'),
        actor=raw.get('actor'),
        payload=_pairs(raw.get('payload')),
        related_ids=tuple(raw.get('related_ids', ())),
        previous_hash=raw.get('previous_hash', ''),
        event_hash=raw.get('event_hash', '')
    )


def marker_from_dict(raw: Dict[str, Any]) -> CompactionMarker:
    return CompactionMarker(
        seq_from=int(raw['seq_from']),
        seq_to=int(raw['seq_to']),
        event_count=int(raw['event_count']),
        compacted_at=_dt(raw['compacted_at']),
        last_hash=raw['last_hash'],
        type_counts=tuple((k, int(v)) for k, v in raw.get('type_counts', ())),
        entity_ids=tuple(raw.get('entity_ids', ()))
    )
