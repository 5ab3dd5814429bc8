"""
Lattice Configuration
=====================

One dataclass per service, composed by LatticeConfig. Defaults match the
production constants; overrides come from a JSON file (see
`LatticeConfig.from_json_file`) or the LATTICE_CONFIG environment variable.
"""

from __future__ import annotations
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any, Dict, Tuple
import json
import os

from .contracts.model import EdgeType


DEFAULT_TYPE_WEIGHTS: Tuple[Tuple[str, float], ...] = (
    (EdgeType.SUPPORTS.value, 1.0),
    (EdgeType.DERIVES.value, 0.9),
    (EdgeType.CAUSES.value, 0.8),
    (EdgeType.ENABLES.value, 0.7),
    (EdgeType.REQUIRES.value, 0.6),
    (EdgeType.REFERENCES.value, 0.5),
    (EdgeType.SIMILAR.value, 0.4),
    (EdgeType.PARENT_OF.value, 0.3),
    (EdgeType.CONTRADICTS.value, 0.2),
)

DEFAULT_AUTHORITY_PATTERNS: Tuple[str, ...] = (
    r"\bi (?:have )?decide[ds]?\b",
    r"\bi (?:am |have )?authoriz",
    r"\bby my authority\b",
    r"\bi (?:hereby )?order\b",
    r"\bi (?:hereby )?grant\b",
    r"\bthis is (?:now )?(?:official|binding|final)\b",
)

DEFAULT_IMPERSONATION_PATTERNS: Tuple[str, ...] = (
    r"\b(?:speaking as|i am) (?:the system|the lattice|admin|an admin|owner|the owner|founder|the founder)\b",
)


@dataclass
class EdgeGraphConfig:
    default_weight: float = 0.5
    default_confidence: float = 0.5
    default_query_limit: int = 100
    max_query_limit: int = 500
    max_evidence_refs: int = 50
    max_label_length: int = 200
    max_path_depth: int = 4
    max_paths: int = 10


@dataclass
class ActivationConfig:
    spread_decay: float = 0.6
    prune_threshold: float = 0.01
    max_hops: int = 2
    max_working_set: int = 50
    reasons_kept: int = 3
    time_decay_rate: float = 0.001  # per second
    global_factor: float = 0.3
    fallback_type_weight: float = 0.3
    type_weights: Tuple[Tuple[str, float], ...] = DEFAULT_TYPE_WEIGHTS

    def type_weight(self, edge_type: EdgeType) -> float:
        for name, weight in self.type_weights:
            if name == edge_type.value:
                return weight
        return self.fallback_type_weight


@dataclass
class GateConfig:
    rate_limit_max: int = 100
    rate_limit_window_seconds: float = 3600.0
    authority_patterns: Tuple[str, ...] = DEFAULT_AUTHORITY_PATTERNS
    impersonation_patterns: Tuple[str, ...] = DEFAULT_IMPERSONATION_PATTERNS
    economic_prefixes: Tuple[str, ...] = ("marketplace", "economy")
    economic_allowed_intents: Tuple[str, ...] = ("suggestion", "hypothesis")
    anti_echo_min_turns: int = 5
    anti_echo_max_unresolved: int = 3
    evidence_truncate: int = 100
    trace_history_max: int = 10000


@dataclass
class JournalConfig:
    default_retain_count: int = 1000
    default_query_limit: int = 100
    max_query_limit: int = 500


@dataclass
class OpsConfig:
    max_title_length: int = 500
    max_content_length: int = 10000
    max_summary_length: int = 500
    max_tags: int = 20
    max_reason_length: int = 2000
    default_query_limit: int = 50
    max_query_limit: int = 200


@dataclass
class LatticeConfig:
    """Unified configuration for the entire lattice."""
    edges: EdgeGraphConfig = None
    activation: ActivationConfig = None
    gates: GateConfig = None
    journal: JournalConfig = None
    ops: OpsConfig = None

    def __post_init__(self):
        self.edges = self.edges or EdgeGraphConfig()
        self.activation = self.activation or ActivationConfig()
        self.gates = self.gates or GateConfig()
        self.journal = self.journal or JournalConfig()
        self.ops = self.ops or OpsConfig()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'LatticeConfig':
        """
        Build a config from a nested dict; unknown keys raise ValueError.

        Tuple-typed settings accept JSON lists; `activation.type_weights`
        accepts an object mapping edge type to weight.
        """
        sections = {
            'edges': EdgeGraphConfig,
            'activation': ActivationConfig,
            'gates': GateConfig,
            'journal': JournalConfig,
            'ops': OpsConfig,
        }
        kwargs = {}
        for name, section_data in (data or {}).items():
            if name not in sections:
                raise ValueError(f"Unknown config section: {name}")
            kwargs[name] = _build_section(sections[name], section_data or {})
        return cls(**kwargs)

    @classmethod
    def from_json_file(cls, path: Path) -> 'LatticeConfig':
        with open(path, 'r') as f:
            return cls.from_dict(json.load(f))

    @classmethod
    def from_env(cls, var: str = "LATTICE_CONFIG") -> 'LatticeConfig':
        """Load from the JSON file named by `var`, or defaults if unset."""
        path = os.environ.get(var)
        if not path:
            return cls()
        return cls.from_json_file(Path(path))


def _build_section(section_cls, values: Dict[str, Any]):
    known = {f.name: f for f in fields(section_cls)}
    kwargs = {}
    for key, value in values.items():
        if key not in known:
            raise ValueError(f"Unknown setting {section_cls.__name__}.{key}")
        if key == 'type_weights' and isinstance(value, dict):
            for type_name in value:
                EdgeType(type_name)
            value = tuple((k, float(v)) for k, v in value.items())
        elif isinstance(value, list):
            value = tuple(tuple(v) if isinstance(v, list) else v for v in value)
        kwargs[key] = value
    return section_cls(**kwargs)
