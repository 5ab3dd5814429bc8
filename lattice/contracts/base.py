"""
Base Contracts and Shared Types

These are the foundational types used across every lattice service.
Errors are data, not exceptions: every public operation returns a
Result carrying either a value or an Error.

BOUNDARY ENFORCEMENT:
=====================
- No exception crosses the core boundary except LatticeFatalError
- Error kinds are an enum, never bare strings
- All timestamps are UTC
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Optional, Tuple, TypeVar
import hashlib
import math
import threading


# =============================================================================
# ERROR STATES (Explicit, never silent)
# =============================================================================

class ErrorKind(Enum):
    """
    Explicit error kinds for deterministic error handling.
    No silent fallbacks - every error state is enumerated.
    """
    NOT_FOUND = "not_found"
    INVALID_INPUT = "invalid_input"
    DUPLICATE = "duplicate"
    CONFLICT = "conflict"
    GATE_REJECTED = "gate_rejected"
    RATE_LIMITED = "rate_limited"
    FORBIDDEN = "forbidden"


@dataclass(frozen=True)
class Error:
    """
    Immutable error representation with full context.

    `code` is the machine-readable reason (e.g. "self_edge"),
    `message` is for humans. Errors carry no time of their own; the journal
    stamps anything worth auditing from the service clock.
    """
    kind: ErrorKind
    code: str
    message: str
    context: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    def with_context(self, key: str, value: Any) -> Error:
        """Return new Error with additional context (immutable)."""
        return Error(
            kind=self.kind,
            code=self.code,
            message=self.message,
            context=self.context + ((key, str(value)),)
        )

    def context_value(self, key: str) -> Optional[str]:
        for k, v in self.context:
            if k == key:
                return v
        return None


T = TypeVar("T")


@dataclass(frozen=True)
class Result(Generic[T]):
    """
    Tagged result for operations that can fail.
    Either contains a value OR an error, never both.
    """
    value: Optional[T] = None
    error: Optional[Error] = None

    @property
    def is_success(self) -> bool:
        return self.error is None

    @property
    def is_failure(self) -> bool:
        return self.error is not None

    def unwrap(self) -> T:
        """Return the value or raise ValueError. Intended for tests and scripts."""
        if self.error is not None:
            raise ValueError(f"{self.error.kind.value}/{self.error.code}: {self.error.message}")
        return self.value

    @staticmethod
    def success(value: T = None) -> "Result[T]":
        return Result(value=value, error=None)

    @staticmethod
    def failure(error: Error) -> "Result[T]":
        return Result(value=None, error=error)


def fail(kind: ErrorKind, code: str, message: str, **context: Any) -> Result:
    """Shorthand for building a failed Result with context pairs."""
    return Result.failure(Error(
        kind=kind,
        code=code,
        message=message,
        context=tuple((k, str(v)) for k, v in context.items())
    ))


class LatticeFatalError(RuntimeError):
    """
    The one fatal condition in the core: the journal could not append.

    Raised rather than returned because a canonical mutation without its
    journal record breaks the audit invariant.
    """
    pass


# =============================================================================
# HELPERS
# =============================================================================

def clamp(value: float, lo: float = 0.0, hi: float = 1.0) -> float:
    return max(lo, min(hi, float(value)))


def is_score(value: Any) -> bool:
    """True if `value` can be clamped into [0, 1]; NaN and non-numbers cannot."""
    if isinstance(value, bool):
        return False
    try:
        value = float(value)
    except (TypeError, ValueError):
        return False
    return not math.isnan(value)


def utc(dt: datetime) -> datetime:
    """Force a datetime to UTC (naive values are assumed UTC)."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


class IdFactory:
    """
    Deterministic id generator.

    Ids are `<prefix>_<hash>` where the hash covers a process-local
    counter and the seed, so ids are unique per factory and stable across
    replays that feed the same seeds in the same order. A reloaded
    factory must `resume()` from the persisted `issued` count.
    """

    def __init__(self, namespace: str = "lattice"):
        self._namespace = namespace
        self._issued = 0
        self._lock = threading.Lock()

    def next_id(self, prefix: str, seed: str = "") -> str:
        with self._lock:
            self._issued += 1
            n = self._issued
        digest = hashlib.sha256(
            f"{self._namespace}|{prefix}|{n}|{seed}".encode("utf-8")
        ).hexdigest()[:12]
        return f"{prefix}_{digest}"

    @property
    def namespace(self) -> str:
        return self._namespace

    @property
    def issued(self) -> int:
        with self._lock:
            return self._issued

    def resume(self, issued: int) -> None:
        with self._lock:
            self._issued = max(self._issued, int(issued))
