"""
Observability & Audit Layer

RESPONSIBILITY: Operational audit entries and counters for every service
ALLOWED INPUTS: Copies of events from other services
OUTPUTS: AuditLogEntry streams, metric points, audit reports

WHAT THIS LAYER MUST NOT DO:
============================
- Modify system behavior
- Filter or interpret events (only record them)
- Stand in for the Journal: the Journal is the record of canonical
  mutations, this layer records operational activity (queries, gate
  blocks, conflicts) for operators

Python `logging` output goes to module loggers; this layer keeps the
queryable in-memory copy.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional, Tuple
import itertools
import logging
import threading

from ..temporal.clock import Clock, SystemClock


class AuditEventType(Enum):
    MUTATION = "mutation"
    QUERY = "query"
    GATE = "gate"
    CONFLICT = "conflict"
    ERROR = "error"
    SYSTEM = "system"


@dataclass(frozen=True)
class AuditLogEntry:
    """Immutable audit log entry."""
    entry_id: str
    event_type: AuditEventType
    timestamp: datetime
    layer: str
    action: str
    entity_id: Optional[str] = None
    metadata: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class MetricPoint:
    metric_name: str
    value: float
    timestamp: datetime
    labels: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)


# =============================================================================
# LOG COLLECTORS (One per layer)
# =============================================================================

class LogCollector:
    """
    Append-only collector for one layer.

    Bounded: once `max_entries` is reached the oldest entries are dropped
    and counted in `dropped`.
    """

    def __init__(self, layer_name: str, max_entries: int = 10000):
        self._layer_name = layer_name
        self._entries: List[AuditLogEntry] = []
        self._max_entries = max_entries
        self._dropped = 0
        self._lock = threading.Lock()

    def collect(self, entry: AuditLogEntry):
        with self._lock:
            self._entries.append(entry)
            overflow = len(self._entries) - self._max_entries
            if overflow > 0:
                del self._entries[:overflow]
                self._dropped += overflow

    def get_entries(
        self,
        event_type: Optional[AuditEventType] = None,
        entity_id: Optional[str] = None
    ) -> List[AuditLogEntry]:
        with self._lock:
            entries = list(self._entries)
        if event_type:
            entries = [e for e in entries if e.event_type == event_type]
        if entity_id:
            entries = [e for e in entries if e.entity_id == entity_id]
        return entries

    @property
    def layer_name(self) -> str:
        return self._layer_name

    @property
    def entry_count(self) -> int:
        return len(self._entries)

    @property
    def dropped(self) -> int:
        return self._dropped


# =============================================================================
# METRICS COLLECTOR
# =============================================================================

class MetricType(Enum):
    COUNTER = "counter"
    GAUGE = "gauge"


@dataclass
class MetricDefinition:
    name: str
    metric_type: MetricType
    description: str
    labels: Tuple[str, ...] = field(default_factory=tuple)


DEFAULT_METRICS: Tuple[MetricDefinition, ...] = (
    MetricDefinition("edges_created_total", MetricType.COUNTER, "Edges created"),
    MetricDefinition("edges_updated_total", MetricType.COUNTER, "Edges updated"),
    MetricDefinition("edges_removed_total", MetricType.COUNTER, "Edges removed"),
    MetricDefinition("edge_queries_total", MetricType.COUNTER, "Edge reads"),
    MetricDefinition("activations_total", MetricType.COUNTER, "Direct activations"),
    MetricDefinition("spreads_total", MetricType.COUNTER, "Activation spreads"),
    MetricDefinition("decays_total", MetricType.COUNTER, "Session decays"),
    MetricDefinition("working_set_queries_total", MetricType.COUNTER, "Working set reads"),
    MetricDefinition("proposals_created_total", MetricType.COUNTER, "Proposals staged", ("kind",)),
    MetricDefinition("proposals_committed_total", MetricType.COUNTER, "Proposals committed", ("kind",)),
    MetricDefinition("proposals_rejected_total", MetricType.COUNTER, "Proposals rejected", ("kind",)),
    MetricDefinition("lattice_reads_total", MetricType.COUNTER, "Canonical reads"),
    MetricDefinition("merges_attempted_total", MetricType.COUNTER, "Field merges attempted"),
    MetricDefinition("merges_succeeded_total", MetricType.COUNTER, "Field merges that applied a field"),
    MetricDefinition("merge_conflicts_total", MetricType.COUNTER, "Field conflicts detected"),
    MetricDefinition("conflicts_resolved_total", MetricType.COUNTER, "Field conflicts resolved"),
    MetricDefinition("gate_runs_total", MetricType.COUNTER, "Gate chain runs"),
    MetricDefinition("gate_blocks_total", MetricType.COUNTER, "Gate chain blocks", ("rule",)),
    MetricDefinition("rate_limit_blocks_total", MetricType.COUNTER, "Rate limit blocks"),
    MetricDefinition("journal_events_total", MetricType.COUNTER, "Journal appends", ("event_type",)),
    MetricDefinition("journal_compacted_total", MetricType.COUNTER, "Events dropped by compaction"),
    MetricDefinition("score_mutations_total", MetricType.COUNTER, "Fast-path score mutations"),
)


class MetricsCollector:
    """
    Counters and gauges keyed by (name, labels).

    Points are kept as the running value per label set; `history()`
    returns every recorded point for a metric.
    """

    def __init__(self, clock: Optional[Clock] = None):
        self._clock = clock or SystemClock()
        self._definitions: Dict[str, MetricDefinition] = {}
        self._values: Dict[Tuple[str, Tuple[Tuple[str, str], ...]], float] = {}
        self._points: Dict[str, List[MetricPoint]] = {}
        self._lock = threading.Lock()
        for definition in DEFAULT_METRICS:
            self.register_metric(definition)

    def register_metric(self, definition: MetricDefinition):
        self._definitions[definition.name] = definition
        self._points.setdefault(definition.name, [])

    def increment(self, name: str, amount: float = 1.0, labels: Optional[Dict[str, str]] = None):
        self._record(name, amount, labels, additive=True)

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None):
        self._record(name, value, labels, additive=False)

    def _record(self, name: str, value: float, labels: Optional[Dict[str, str]], additive: bool):
        if name not in self._definitions:
            metric_type = MetricType.COUNTER if additive else MetricType.GAUGE
            self.register_metric(MetricDefinition(name, metric_type, name))
        label_tuple = tuple(sorted((labels or {}).items()))
        key = (name, label_tuple)
        with self._lock:
            current = self._values.get(key, 0.0)
            new_value = current + value if additive else value
            self._values[key] = new_value
            self._points[name].append(MetricPoint(
                metric_name=name,
                value=new_value,
                timestamp=self._clock.now(),
                labels=label_tuple
            ))

    def value(self, name: str, labels: Optional[Dict[str, str]] = None) -> float:
        """Current value for one label set; without labels, the sum across all."""
        with self._lock:
            if labels is not None:
                return self._values.get((name, tuple(sorted(labels.items()))), 0.0)
            return sum(v for (n, _), v in self._values.items() if n == name)

    def history(self, name: str) -> List[MetricPoint]:
        with self._lock:
            return list(self._points.get(name, []))

    def summary(self) -> Dict[str, float]:
        with self._lock:
            totals: Dict[str, float] = {}
            for (name, _), v in self._values.items():
                totals[name] = totals.get(name, 0.0) + v
            return totals


# =============================================================================
# OBSERVABILITY ENGINE (Orchestrates all observability)
# =============================================================================

@dataclass
class ObservabilityConfig:
    enable_metrics: bool = True
    max_entries_per_layer: int = 10000


class ObservabilityEngine:
    """
    Central observability sink shared by the lattice services.

    - ONLY observes, never modifies
    - Every collected entry is also emitted to the `lattice.audit` logger
      at DEBUG level
    """

    LAYERS = ('edges', 'activation', 'merge', 'journal', 'gates', 'ops', 'engine')

    def __init__(self, config: Optional[ObservabilityConfig] = None, clock: Optional[Clock] = None):
        self._config = config or ObservabilityConfig()
        self._clock = clock or SystemClock()
        self._collectors: Dict[str, LogCollector] = {
            name: LogCollector(name, self._config.max_entries_per_layer)
            for name in self.LAYERS
        }
        self._metrics = MetricsCollector(self._clock) if self._config.enable_metrics else None
        self._counter = itertools.count(1)
        self._audit_logger = logging.getLogger("lattice.audit")

    def log_audit(
        self,
        layer: str,
        action: str,
        entity_id: Optional[str] = None,
        event_type: AuditEventType = AuditEventType.MUTATION,
        **metadata: object
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            entry_id=f"audit_{next(self._counter):08d}",
            event_type=event_type,
            timestamp=self._clock.now(),
            layer=layer,
            action=action,
            entity_id=entity_id,
            metadata=tuple((k, str(v)) for k, v in sorted(metadata.items()))
        )
        collector = self._collectors.get(layer)
        if collector is None:
            collector = self._collectors.setdefault(
                layer, LogCollector(layer, self._config.max_entries_per_layer)
            )
        collector.collect(entry)
        self._audit_logger.debug("%s.%s entity=%s %s", layer, action, entity_id, dict(entry.metadata))
        return entry

    def increment(self, name: str, amount: float = 1.0, **labels: str):
        if self._metrics:
            self._metrics.increment(name, amount, labels or None)

    def set_gauge(self, name: str, value: float, **labels: str):
        if self._metrics:
            self._metrics.set_gauge(name, value, labels or None)

    def get_metrics(self) -> Optional[MetricsCollector]:
        return self._metrics

    def get_layer_log(self, layer_name: str) -> List[AuditLogEntry]:
        collector = self._collectors.get(layer_name)
        if not collector:
            return []
        return collector.get_entries()

    def get_unified_log(self, layers: Optional[List[str]] = None) -> List[AuditLogEntry]:
        target_layers = layers or list(self._collectors.keys())
        all_entries: List[AuditLogEntry] = []
        for layer_name in target_layers:
            collector = self._collectors.get(layer_name)
            if collector:
                all_entries.extend(collector.get_entries())
        all_entries.sort(key=lambda e: (e.timestamp, e.entry_id))
        return all_entries

    def generate_audit_report(self) -> Dict:
        entries = self.get_unified_log()
        by_layer: Dict[str, int] = {}
        by_type: Dict[str, int] = {}
        for entry in entries:
            by_layer[entry.layer] = by_layer.get(entry.layer, 0) + 1
            by_type[entry.event_type.value] = by_type.get(entry.event_type.value, 0) + 1

        return {
            'total_entries': len(entries),
            'by_layer': by_layer,
            'by_event_type': by_type,
            'dropped': {name: c.dropped for name, c in self._collectors.items() if c.dropped},
            'metrics': self._metrics.summary() if self._metrics else {},
            'generated_at': self._clock.now().isoformat()
        }


__all__ = [
    'AuditEventType',
    'AuditLogEntry',
    'LogCollector',
    'MetricDefinition',
    'MetricPoint',
    'MetricType',
    'MetricsCollector',
    'ObservabilityConfig',
    'ObservabilityEngine',
]
