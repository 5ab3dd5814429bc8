"""
Lattice Journal
===============

Append-only, strictly ordered record of every mutating operation.

INVARIANTS:
- No updates or deletes; compaction is the only way events leave, and it
  leaves a marker plus a JOURNAL_COMPACTED event behind
- Every event has a strictly increasing sequence number (contiguous)
- Hash chain for integrity verification
- One writer at a time; reads run against an immutable tuple snapshot

This is the answer to "why did the lattice change?".
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union
import hashlib
import json
import logging
import threading

from ..config import JournalConfig
from ..contracts.base import ErrorKind, LatticeFatalError, Result, fail
from ..contracts.model import JournalEvent, JournalEventType, freeze_mapping
from ..observability import AuditEventType, ObservabilityEngine
from ..temporal.clock import Clock, SystemClock


logger = logging.getLogger(__name__)


def _canonical(value: Any) -> Any:
    """JSON fallback matching what a snapshot stores for the same value."""
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


def compute_event_hash(
    seq: int,
    event_type: JournalEventType,
    entity_id: Optional[str],
    timestamp: datetime,
    previous_hash: str,
    session_id: Optional[str] = None,
    actor: Optional[str] = None,
    payload: Iterable[Tuple[str, Any]] = (),
    related_ids: Iterable[str] = ()
) -> str:
    """
    SHA-256 over every recorded field of an event plus the previous hash.

    The body is serialized with sorted keys, so a payload hashes the same
    before and after a snapshot round trip.
    """
    body = json.dumps(
        {
            'actor': actor,
            'payload': dict(payload),
            'related_ids': list(related_ids),
            'session_id': session_id,
        },
        sort_keys=True,
        default=_canonical
    )
    hash_content = (
        f"{seq}|"
        f"{event_type.value}|"
        f"{entity_id or ''}|"
        f"{timestamp.isoformat()}|"
        f"{previous_hash}|"
        f"{body}"
    )
    return hashlib.sha256(hash_content.encode()).hexdigest()


def hash_of(event: JournalEvent) -> str:
    """Recompute the hash an event should carry."""
    return compute_event_hash(
        event.seq, event.event_type, event.entity_id, event.timestamp, event.previous_hash,
        session_id=event.session_id, actor=event.actor, payload=event.payload,
        related_ids=event.related_ids
    )


@dataclass(frozen=True)
class CompactionMarker:
    """
    What a compaction dropped.

    `last_hash` is the hash of the last dropped event; the first retained
    event chains from it, so integrity stays verifiable after compaction.
    """
    seq_from: int
    seq_to: int
    event_count: int
    compacted_at: datetime
    last_hash: str
    type_counts: Tuple[Tuple[str, int], ...] = field(default_factory=tuple)
    entity_ids: Tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class EventSummary:
    seq: int
    event_type: JournalEventType
    actor: Optional[str]
    timestamp: datetime
    summary: str


@dataclass(frozen=True)
class Explanation:
    """
    Ordered history of one entity.

    `truncated` is True when compaction dropped events touching the entity;
    history then starts at `compacted_before_seq`.
    """
    entity_id: str
    history: Tuple[EventSummary, ...]
    truncated: bool = False
    compacted_before_seq: Optional[int] = None

    @property
    def event_count(self) -> int:
        return len(self.history)


@dataclass(frozen=True)
class EventPage:
    events: Tuple[JournalEvent, ...]
    total: int
    offset: int

    @property
    def count(self) -> int:
        return len(self.events)


def summarize_event(event: JournalEvent) -> str:
    """One-line human summary of an event."""
    payload = event.payload_dict()
    actor = event.actor or "unknown"
    t = event.event_type
    if t is JournalEventType.NODE_CREATED:
        return f"Node created by {actor}"
    if t is JournalEventType.NODE_UPDATED:
        return f"Node updated: {', '.join(payload.get('fields', ())) or 'no fields'}"
    if t is JournalEventType.NODE_SCORE_MUTATED:
        return f"Scores mutated by {actor}: {payload.get('reason', '')}"
    if t is JournalEventType.NODE_STATUS_CHANGED:
        return f"Status changed to {payload.get('status', 'unknown')}"
    if t is JournalEventType.EDGE_ADDED:
        return f"Edge added: {payload.get('edge_type', 'link')} to {payload.get('target_id', '?')}"
    if t is JournalEventType.PROPOSAL_CREATED:
        return f"Proposal created by {actor}"
    if t is JournalEventType.PROPOSAL_REJECTED:
        return f"Proposal rejected: {payload.get('reason', '')}"
    if t is JournalEventType.MERGE_CONFLICT:
        return f"Merge conflict on {payload.get('field', '?')}"
    if t is JournalEventType.CONFLICT_RESOLVED:
        return f"Conflict on {payload.get('field', '?')} resolved by {actor}"
    if t is JournalEventType.TURN_ACCEPTED:
        return f"Turn accepted from {actor}"
    if t is JournalEventType.TURN_REJECTED:
        return f"Turn rejected: {payload.get('blocking_rule') or 'unknown rule'}"
    if t is JournalEventType.JOURNAL_COMPACTED:
        return f"Journal compacted: seq {payload.get('seq_from')}..{payload.get('seq_to')}"
    return t.value


class Journal:
    """
    Append-only event journal.

    GUARANTEES:
    ===========
    1. NO updates - events are frozen once appended
    2. Monotonic - seq increases by exactly one per append
    3. Verifiable - hash chain, surviving compaction via markers
    4. Honest - compaction is recorded, and Explain reports truncation

    EXPLICIT FAILURE STATE:
    - An append that cannot complete raises LatticeFatalError
    """

    def __init__(
        self,
        config: Optional[JournalConfig] = None,
        clock: Optional[Clock] = None,
        observability: Optional[ObservabilityEngine] = None
    ):
        self._config = config or JournalConfig()
        self._clock = clock or SystemClock()
        self._obs = observability or ObservabilityEngine(clock=self._clock)

        self._events: List[JournalEvent] = []
        self._snapshot: Optional[Tuple[JournalEvent, ...]] = ()
        self._seq = 0
        self._head_hash = ""

        # Derived indices of seq numbers (not authoritative)
        self._by_type: Dict[JournalEventType, List[int]] = {}
        self._by_entity: Dict[str, List[int]] = {}
        self._by_session: Dict[str, List[int]] = {}

        self._markers: List[CompactionMarker] = []
        self._compacted = 0
        self._type_totals: Dict[str, int] = {}

        self._lock = threading.Lock()

    # =========================================================================
    # WRITE PATH
    # =========================================================================

    def append(
        self,
        event_type: Union[JournalEventType, str],
        entity_id: Optional[str] = None,
        session_id: Optional[str] = None,
        actor: Optional[str] = None,
        payload: Optional[Mapping[str, Any]] = None,
        related_ids: Iterable[str] = ()
    ) -> JournalEvent:
        """
        Append one event. This is the ONLY write operation.

        Raises LatticeFatalError if the event cannot be recorded.
        """
        try:
            event_type = JournalEventType(event_type) if isinstance(event_type, str) else event_type
            with self._lock:
                event = self._append_locked(
                    event_type, entity_id, session_id, actor,
                    freeze_mapping(payload), tuple(dict.fromkeys(r for r in related_ids if r))
                )
        except Exception as exc:
            logger.error("journal append failed for %s: %s", event_type, exc)
            raise LatticeFatalError(f"Journal append failed: {exc}") from exc

        self._obs.increment("journal_events_total", event_type=event.event_type.value)
        logger.debug("journal #%d %s entity=%s", event.seq, event.event_type.value, entity_id)
        return event

    def _append_locked(
        self,
        event_type: JournalEventType,
        entity_id: Optional[str],
        session_id: Optional[str],
        actor: Optional[str],
        payload: Tuple[Tuple[str, Any], ...],
        related_ids: Tuple[str, ...]
    ) -> JournalEvent:
        seq = self._seq + 1
        timestamp = self._clock.now()
        event = JournalEvent(
            seq=seq,
            event_type=event_type,
            timestamp=timestamp,
            entity_id=entity_id,
            session_id=session_id,
            actor=actor,
            payload=payload,
            related_ids=related_ids,
            previous_hash=self._head_hash,
            event_hash=compute_event_hash(
                seq, event_type, entity_id, timestamp, self._head_hash,
                session_id=session_id, actor=actor, payload=payload, related_ids=related_ids
            )
        )
        self._store(event)
        return event

    def _store(self, event: JournalEvent) -> None:
        """Caller holds the lock."""
        self._events.append(event)
        self._snapshot = None
        self._seq = event.seq
        self._head_hash = event.event_hash
        self._index(event)
        key = event.event_type.value
        self._type_totals[key] = self._type_totals.get(key, 0) + 1

    def _index(self, event: JournalEvent) -> None:
        self._by_type.setdefault(event.event_type, []).append(event.seq)
        for entity in dict.fromkeys((event.entity_id,) + event.related_ids):
            if entity:
                self._by_entity.setdefault(entity, []).append(event.seq)
        if event.session_id:
            self._by_session.setdefault(event.session_id, []).append(event.seq)

    def load_verified_event(self, event: JournalEvent) -> None:
        """
        Load a persisted event during hydration.

        VERIFIES sequence continuity, the previous-hash link and the
        event's own hash. Raises ValueError on any mismatch.
        """
        with self._lock:
            if event.seq != self._seq + 1:
                raise ValueError(f"Invalid sequence load: expected {self._seq + 1}, got {event.seq}")
            if event.previous_hash != self._head_hash:
                raise ValueError(f"Broken hash chain at {event.seq}")
            if hash_of(event) != event.event_hash:
                raise ValueError(f"Corrupt event at {event.seq}: hash mismatch")
            self._store(event)

    def load_marker(self, marker: CompactionMarker) -> None:
        """Restore a compaction marker before loading the retained events."""
        with self._lock:
            self._markers.append(marker)
            self._compacted += marker.event_count
            self._seq = max(self._seq, marker.seq_to)
            self._head_hash = marker.last_hash

    def compact(self, retain_count: Optional[int] = None) -> Result[Optional[CompactionMarker]]:
        """
        Drop all but the newest `retain_count` events.

        The dropped range is summarized in a CompactionMarker and recorded
        as a JOURNAL_COMPACTED event. Returns success(None) when nothing
        had to be dropped.
        """
        retain = self._config.default_retain_count if retain_count is None else retain_count
        if retain < 0:
            return fail(ErrorKind.INVALID_INPUT, "invalid_retain_count", "retain_count must be >= 0")

        with self._lock:
            if len(self._events) <= retain:
                return Result.success(None)
            cutoff = len(self._events) - retain
            dropped = self._events[:cutoff]

            type_counts: Dict[str, int] = {}
            entities: Dict[str, None] = {}
            for e in dropped:
                type_counts[e.event_type.value] = type_counts.get(e.event_type.value, 0) + 1
                for entity in (e.entity_id,) + e.related_ids:
                    if entity:
                        entities[entity] = None

            marker = CompactionMarker(
                seq_from=dropped[0].seq,
                seq_to=dropped[-1].seq,
                event_count=len(dropped),
                compacted_at=self._clock.now(),
                last_hash=dropped[-1].event_hash,
                type_counts=tuple(sorted(type_counts.items())),
                entity_ids=tuple(sorted(entities))
            )
            self._markers.append(marker)
            self._compacted += len(dropped)
            self._events = self._events[cutoff:]
            self._snapshot = None
            self._rebuild_indices()

            try:
                self._append_locked(
                    JournalEventType.JOURNAL_COMPACTED, None, None, "system",
                    freeze_mapping({
                        'seq_from': marker.seq_from,
                        'seq_to': marker.seq_to,
                        'event_count': marker.event_count,
                    }),
                    ()
                )
            except Exception as exc:
                logger.error("journal append failed while compacting: %s", exc)
                raise LatticeFatalError(f"Journal append failed: {exc}") from exc

        logger.warning(
            "journal compacted: dropped %d events (seq %d..%d); explain() is truncated for %d entities",
            marker.event_count, marker.seq_from, marker.seq_to, len(marker.entity_ids)
        )
        self._obs.increment("journal_compacted_total", float(marker.event_count))
        self._obs.increment("journal_events_total", event_type=JournalEventType.JOURNAL_COMPACTED.value)
        self._obs.log_audit("journal", "compact", None, AuditEventType.SYSTEM,
                            seq_from=marker.seq_from, seq_to=marker.seq_to, count=marker.event_count)
        return Result.success(marker)

    def _rebuild_indices(self) -> None:
        self._by_type.clear()
        self._by_entity.clear()
        self._by_session.clear()
        for event in self._events:
            self._index(event)

    # =========================================================================
    # READ PATH (snapshot based)
    # =========================================================================

    def _read(self, index: Optional[Dict] = None, key: Any = None) -> Tuple[Tuple[JournalEvent, ...], List[int]]:
        with self._lock:
            if self._snapshot is None:
                self._snapshot = tuple(self._events)
            seqs = list(index.get(key, ())) if index is not None else []
            return self._snapshot, seqs

    def _page(self, events: Tuple[JournalEvent, ...], seqs: List[int],
              limit: Optional[int], offset: int) -> Result[EventPage]:
        if offset < 0:
            return fail(ErrorKind.INVALID_INPUT, "invalid_offset", "offset must be >= 0")
        if limit is None:
            limit = self._config.default_query_limit
        limit = min(limit, self._config.max_query_limit)
        if limit < 1:
            return fail(ErrorKind.INVALID_INPUT, "invalid_limit", "limit must be positive")
        first = events[0].seq if events else 0
        selected = tuple(events[s - first] for s in seqs[offset:offset + limit])
        return Result.success(EventPage(events=selected, total=len(seqs), offset=offset))

    def query_by_type(self, event_type: Union[JournalEventType, str],
                      limit: Optional[int] = None, offset: int = 0) -> Result[EventPage]:
        try:
            event_type = JournalEventType(event_type) if isinstance(event_type, str) else event_type
        except ValueError:
            return fail(ErrorKind.INVALID_INPUT, "invalid_event_type", f"Unknown event type: {event_type}")
        events, seqs = self._read(self._by_type, event_type)
        return self._page(events, seqs, limit, offset)

    def query_by_entity(self, entity_id: str, limit: Optional[int] = None, offset: int = 0) -> Result[EventPage]:
        events, seqs = self._read(self._by_entity, entity_id)
        return self._page(events, seqs, limit, offset)

    def query_by_session(self, session_id: str, limit: Optional[int] = None, offset: int = 0) -> Result[EventPage]:
        events, seqs = self._read(self._by_session, session_id)
        return self._page(events, seqs, limit, offset)

    def get_recent_events(self, count: int = 50) -> Tuple[JournalEvent, ...]:
        events, _ = self._read()
        if count <= 0:
            return ()
        return events[-count:]

    def all_events(self) -> Tuple[JournalEvent, ...]:
        events, _ = self._read()
        return events

    def explain(self, entity_id: str) -> Result[Explanation]:
        """Full retained history of an entity, flagged if compaction cut into it."""
        events, seqs = self._read(self._by_entity, entity_id)
        first = events[0].seq if events else 0
        history = tuple(
            EventSummary(
                seq=e.seq,
                event_type=e.event_type,
                actor=e.actor,
                timestamp=e.timestamp,
                summary=summarize_event(e)
            )
            for e in (events[s - first] for s in seqs)
        )
        with self._lock:
            touched = [m for m in self._markers if entity_id in m.entity_ids]
        truncated = bool(touched)
        return Result.success(Explanation(
            entity_id=entity_id,
            history=history,
            truncated=truncated,
            compacted_before_seq=(touched[-1].seq_to + 1) if truncated else None
        ))

    def verify_integrity(self) -> Result[int]:
        """
        Recompute every hash and check the chain.

        Returns the number of events verified, or a CONFLICT error naming
        the first broken sequence.
        """
        events, _ = self._read()
        with self._lock:
            markers = list(self._markers)

        # The retained chain starts from the newest marker cut before it
        expected_previous = ""
        if events:
            for m in markers:
                if m.seq_to < events[0].seq:
                    expected_previous = m.last_hash

        for event in events:
            if event.previous_hash != expected_previous:
                return fail(ErrorKind.CONFLICT, "hash_chain_broken",
                            f"Hash chain broken at sequence {event.seq}",
                            expected_hash=expected_previous, actual_hash=event.previous_hash)
            if hash_of(event) != event.event_hash:
                return fail(ErrorKind.CONFLICT, "event_hash_mismatch",
                            f"Event {event.seq} does not match its hash", seq=event.seq)
            expected_previous = event.event_hash
        return Result.success(len(events))

    # =========================================================================
    # INTROSPECTION
    # =========================================================================

    @property
    def head_hash(self) -> str:
        return self._head_hash

    @property
    def last_seq(self) -> int:
        return self._seq

    def compaction_markers(self) -> Tuple[CompactionMarker, ...]:
        with self._lock:
            return tuple(self._markers)

    def __len__(self) -> int:
        return len(self._events)

    def metrics(self) -> Dict:
        with self._lock:
            return {
                'total_events': sum(self._type_totals.values()),
                'retained_events': len(self._events),
                'events_by_type': dict(self._type_totals),
                'tracked_entities': len(self._by_entity),
                'tracked_sessions': len(self._by_session),
                'compacted': self._compacted,
                'compaction_markers': len(self._markers),
                'last_seq': self._seq,
            }
