"""
Field-Level Merge
=================

Conflict-safe application of concurrent edits to a canonical node.

FIELD CLASSES:
==============
- scalar:    last-writer-wins per field, by edit timestamp
- additive:  set union (order preserving), commutative so never conflicts
- meta:      deep merge, timestamped like a scalar
- immutable: identity and bookkeeping fields, never applied

RULES:
======
1. A field with no recorded write accepts the first edit
2. A strictly newer edit applies and advances the field timestamp
3. An older edit is stale and dropped
4. An equal-timestamp edit with a different value is a Conflict: the
   field keeps its prior value until resolve_conflict() is called
5. While a Conflict is pending the field is held; later edits are
   reported, not applied

Callers mutate through here only while holding the node's store lock;
merge() takes it itself (the lock is re-entrant).
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple
import copy
import logging
import threading

from ..contracts.base import ErrorKind, Result, clamp, fail, is_score, utc
from ..contracts.model import SCORE_FIELDS, Node, NodeStatus, NodeTier
from ..observability import AuditEventType, ObservabilityEngine
from ..store import NodeStore
from ..temporal.clock import Clock, SystemClock


logger = logging.getLogger(__name__)


SCALAR_FIELDS = frozenset({"title", "content", "summary", "tier", "status"} | set(SCORE_FIELDS))
ADDITIVE_FIELDS = frozenset({"tags", "related_ids"})
DEEP_MERGE_FIELDS = frozenset({"meta"})
IMMUTABLE_FIELDS = frozenset({"id", "node_id", "created_at", "updated_at", "owner_id", "version"})

EDITABLE_FIELDS = SCALAR_FIELDS | ADDITIVE_FIELDS | DEEP_MERGE_FIELDS


class ConflictKind(Enum):
    CONCURRENT = "concurrent"        # equal timestamps, pending resolution
    HELD = "held"                    # field already has a pending conflict
    STALE = "stale"                  # older than the field's last write
    IMMUTABLE = "immutable"
    UNKNOWN_FIELD = "unknown_field"
    INVALID_VALUE = "invalid_value"


@dataclass(frozen=True)
class FieldStamp:
    updated_at: datetime
    updated_by: str


@dataclass(frozen=True)
class FieldConflict:
    node_id: str
    field: str
    kind: ConflictKind
    current_value: Any
    proposed_value: Any
    proposed_by: str
    proposed_at: datetime
    existing_writer: Optional[str] = None
    existing_at: Optional[datetime] = None
    message: str = ""

    @property
    def is_pending(self) -> bool:
        return self.kind is ConflictKind.CONCURRENT


@dataclass(frozen=True)
class MergeOutcome:
    node_id: str
    applied: Tuple[str, ...]
    conflicts: Tuple[FieldConflict, ...]
    node: Node

    @property
    def changed(self) -> bool:
        return bool(self.applied)

    @property
    def pending(self) -> Tuple[FieldConflict, ...]:
        return tuple(c for c in self.conflicts if c.is_pending)


def coerce_field(field_name: str, value: Any) -> Any:
    """Normalize an edit value for a field; raises ValueError/TypeError."""
    if field_name in ("title", "summary"):
        return str(value)
    if field_name == "tier":
        return value if isinstance(value, NodeTier) else NodeTier(value)
    if field_name == "status":
        return value if isinstance(value, NodeStatus) else NodeStatus(value)
    if field_name in SCORE_FIELDS:
        if not is_score(value):
            raise ValueError(f"{field_name} must be a number, got {value!r}")
        return clamp(float(value))
    if field_name in ADDITIVE_FIELDS:
        if isinstance(value, (list, tuple, set, frozenset)):
            return [str(v) for v in value]
        return [str(value)]
    if field_name == "meta":
        if not isinstance(value, Mapping):
            raise TypeError("meta must be a mapping")
        return dict(value)
    return value


def validate_edits(edits: Mapping[str, Any]) -> Result[Dict[str, Any]]:
    """
    Check a whole edit set before any of it is applied.

    Fails INVALID_INPUT on a field that cannot be edited or a value that
    does not coerce; otherwise returns the coerced values.
    """
    rejected = sorted(f for f in edits if f not in EDITABLE_FIELDS)
    if rejected:
        return fail(ErrorKind.INVALID_INPUT, "non_editable_field",
                    f"Fields cannot be edited: {', '.join(rejected)}", fields=",".join(rejected))
    coerced: Dict[str, Any] = {}
    for name in sorted(edits):
        try:
            coerced[name] = coerce_field(name, edits[name])
        except (TypeError, ValueError) as exc:
            return fail(ErrorKind.INVALID_INPUT, "invalid_value",
                        f"Invalid value for '{name}': {exc}", field=name)
    return Result.success(coerced)


def deep_merge(base: Dict[str, Any], overlay: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overlay.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class FieldMerge:
    """
    Per-node, per-field timestamps and pending conflicts.

    Does not bump versions or journal; LatticeOps owns both.
    """

    def __init__(
        self,
        store: NodeStore,
        clock: Optional[Clock] = None,
        observability: Optional[ObservabilityEngine] = None
    ):
        self._store = store
        self._clock = clock or SystemClock()
        self._obs = observability or ObservabilityEngine(clock=self._clock)
        self._stamps: Dict[str, Dict[str, FieldStamp]] = {}
        self._pending: Dict[str, Dict[str, FieldConflict]] = {}
        self._guard = threading.Lock()

    # =========================================================================
    # MERGE
    # =========================================================================

    def merge(
        self,
        node_id: str,
        edits: Mapping[str, Any],
        edited_at: datetime,
        editor: str,
        strict: bool = False
    ) -> Result[MergeOutcome]:
        """
        Apply an edit set field by field.

        Without `strict`, bad fields come back as conflict entries next to
        the fields that applied. With `strict`, a bad field fails the whole
        set with INVALID_INPUT before anything is written.
        """
        self._obs.increment("merges_attempted_total")
        if strict:
            checked = validate_edits(edits)
            if checked.is_failure:
                return Result.failure(checked.error)
        edited_at = utc(edited_at)

        with self._store.lock(node_id):
            node = self._store.live(node_id)
            if node is None:
                return fail(ErrorKind.NOT_FOUND, "node_not_found", f"Node {node_id} not found")

            applied: List[str] = []
            conflicts: List[FieldConflict] = []
            with self._guard:
                stamps = self._stamps.setdefault(node_id, {})
                pending = self._pending.setdefault(node_id, {})
                for field_name, raw in edits.items():
                    conflict = self._merge_field(node, stamps, pending, field_name, raw, edited_at, editor)
                    if conflict is None:
                        applied.append(field_name)
                    else:
                        conflicts.append(conflict)

            if applied:
                node.updated_at = self._clock.now()
            outcome = MergeOutcome(
                node_id=node_id,
                applied=tuple(applied),
                conflicts=tuple(conflicts),
                node=node.snapshot()
            )

        if applied:
            self._obs.increment("merges_succeeded_total")
            logger.debug("merged %s into %s by %s", applied, node_id, editor)
        if outcome.pending:
            self._obs.increment("merge_conflicts_total", float(len(outcome.pending)))
            for c in outcome.pending:
                logger.warning("field conflict on %s.%s: %r vs %r (by %s)",
                               node_id, c.field, c.current_value, c.proposed_value, editor)
                self._obs.log_audit("merge", "conflict", node_id, AuditEventType.CONFLICT,
                                    field=c.field, editor=editor)
        return Result.success(outcome)

    def _merge_field(
        self,
        node: Node,
        stamps: Dict[str, FieldStamp],
        pending: Dict[str, FieldConflict],
        field_name: str,
        raw: Any,
        edited_at: datetime,
        editor: str
    ) -> Optional[FieldConflict]:
        """Apply one field to the live node; return a conflict or None."""

        def conflict(kind: ConflictKind, message: str, current: Any = None,
                     stamp: Optional[FieldStamp] = None) -> FieldConflict:
            return FieldConflict(
                node_id=node.node_id,
                field=field_name,
                kind=kind,
                current_value=copy.deepcopy(current),
                proposed_value=raw,
                proposed_by=editor,
                proposed_at=edited_at,
                existing_writer=stamp.updated_by if stamp else None,
                existing_at=stamp.updated_at if stamp else None,
                message=message
            )

        if field_name in IMMUTABLE_FIELDS:
            return conflict(ConflictKind.IMMUTABLE, f"Field '{field_name}' cannot be modified",
                            getattr(node, field_name, None))
        if field_name not in EDITABLE_FIELDS:
            return conflict(ConflictKind.UNKNOWN_FIELD, f"Unknown field '{field_name}'")

        current = getattr(node, field_name)
        try:
            value = coerce_field(field_name, raw)
        except (TypeError, ValueError) as exc:
            return conflict(ConflictKind.INVALID_VALUE, str(exc), current)

        stamp = stamps.get(field_name)

        if field_name in ADDITIVE_FIELDS:
            union = list(dict.fromkeys(list(current) + value))
            setattr(node, field_name, union)
            if stamp is None or edited_at > stamp.updated_at:
                stamps[field_name] = FieldStamp(edited_at, editor)
            return None

        held = pending.get(field_name)
        if held is not None:
            return conflict(ConflictKind.HELD,
                            f"Field '{field_name}' has a pending conflict from {held.proposed_by}",
                            current, stamp)

        if stamp is not None:
            if edited_at < stamp.updated_at:
                return conflict(ConflictKind.STALE,
                                f"Edit of '{field_name}' is older than the last write by {stamp.updated_by}",
                                current, stamp)
            if edited_at == stamp.updated_at:
                if self._same_value(field_name, current, value):
                    return None
                c = conflict(ConflictKind.CONCURRENT,
                             f"Concurrent edit on '{field_name}' by {stamp.updated_by}",
                             current, stamp)
                pending[field_name] = c
                return c

        if field_name in DEEP_MERGE_FIELDS:
            value = deep_merge(current or {}, value)
        setattr(node, field_name, value)
        stamps[field_name] = FieldStamp(edited_at, editor)
        return None

    @staticmethod
    def _same_value(field_name: str, current: Any, value: Any) -> bool:
        if field_name in DEEP_MERGE_FIELDS:
            return deep_merge(current or {}, value) == current
        return current == value

    # =========================================================================
    # CONFLICTS
    # =========================================================================

    def resolve_conflict(self, node_id: str, field_name: str, value: Any, resolver: str) -> Result[FieldConflict]:
        """
        Settle a pending conflict by writing `value` explicitly.

        Returns the conflict that was cleared.
        """
        with self._store.lock(node_id):
            node = self._store.live(node_id)
            if node is None:
                return fail(ErrorKind.NOT_FOUND, "node_not_found", f"Node {node_id} not found")
            with self._guard:
                held = self._pending.get(node_id, {}).get(field_name)
            if held is None:
                return fail(ErrorKind.NOT_FOUND, "conflict_not_found",
                            f"No pending conflict on {node_id}.{field_name}")
            try:
                value = coerce_field(field_name, value)
            except (TypeError, ValueError) as exc:
                return fail(ErrorKind.INVALID_INPUT, "invalid_value", str(exc), field=field_name)

            now = self._clock.now()
            # Resolution writes the whole value, including for meta
            setattr(node, field_name, value)
            node.updated_at = now
            with self._guard:
                self._stamps.setdefault(node_id, {})[field_name] = FieldStamp(now, resolver)
                del self._pending[node_id][field_name]

        self._obs.increment("conflicts_resolved_total")
        self._obs.log_audit("merge", "resolve_conflict", node_id, AuditEventType.CONFLICT,
                            field=field_name, resolver=resolver)
        logger.info("conflict on %s.%s resolved by %s", node_id, field_name, resolver)
        return Result.success(held)

    def get_conflicts(self, node_id: str) -> Tuple[FieldConflict, ...]:
        with self._guard:
            return tuple(self._pending.get(node_id, {}).values())

    def get_field_timestamps(self, node_id: str) -> Dict[str, FieldStamp]:
        with self._guard:
            return dict(self._stamps.get(node_id, {}))

    # =========================================================================
    # STAMPS / RESTORE
    # =========================================================================

    def record_stamp(self, node_id: str, field_name: str, stamp: FieldStamp) -> None:
        """Advance a field timestamp for a write made outside merge()."""
        with self._guard:
            self._stamps.setdefault(node_id, {})[field_name] = stamp

    def restore_conflict(self, conflict: FieldConflict) -> None:
        with self._guard:
            self._pending.setdefault(conflict.node_id, {})[conflict.field] = conflict

    def all_stamps(self) -> Dict[str, Dict[str, FieldStamp]]:
        with self._guard:
            return {nid: dict(s) for nid, s in self._stamps.items() if s}

    def all_conflicts(self) -> Tuple[FieldConflict, ...]:
        with self._guard:
            return tuple(c for by_field in self._pending.values() for c in by_field.values())

    def metrics(self) -> Dict:
        metrics = self._obs.get_metrics()
        counters = {}
        if metrics:
            for name in ("merges_attempted_total", "merges_succeeded_total",
                         "merge_conflicts_total", "conflicts_resolved_total"):
                counters[name] = metrics.value(name)
        with self._guard:
            tracked = len(self._stamps)
            pending = sum(len(p) for p in self._pending.values())
        return {
            'tracked_nodes': tracked,
            'pending_conflicts': pending,
            'counters': counters,
        }
