"""
Injectable Clocks
=================

Every wall-clock read in the lattice (decay, rate windows, journal
timestamps, field-merge timestamps) goes through one of these.

MODES:
======
1. SystemClock: real UTC time
2. ManualClock: time only moves when a test moves it
3. RecordingClock: real time that logs every tick, or replays a saved log
"""

from __future__ import annotations
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional
import json
import threading


class ClockExhausted(Exception):
    """Raised when replay clock runs out of ticks."""
    pass


class Clock:
    """Clock interface. `now()` is always timezone-aware UTC."""

    def now(self) -> datetime:
        raise NotImplementedError

    def monotonic(self) -> float:
        """Seconds since the epoch as seen by this clock."""
        return self.now().timestamp()

    def seconds_since(self, earlier: datetime) -> float:
        return (self.now() - earlier).total_seconds()


class SystemClock(Clock):
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def __repr__(self) -> str:
        return "SystemClock()"


class ManualClock(Clock):
    """
    Deterministic clock for tests.

    Reading the clock never advances it; two reads without an advance()
    return identical timestamps.
    """

    def __init__(self, start: Optional[datetime] = None):
        start = start or datetime(2026, 1, 1, tzinfo=timezone.utc)
        if start.tzinfo is None:
            start = start.replace(tzinfo=timezone.utc)
        self._current = start
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def advance(self, seconds: float) -> datetime:
        with self._lock:
            self._current = self._current + timedelta(seconds=seconds)
            return self._current

    def set(self, when: datetime) -> None:
        if when.tzinfo is None:
            when = when.replace(tzinfo=timezone.utc)
        with self._lock:
            self._current = when

    def __repr__(self) -> str:
        return f"ManualClock({self._current.isoformat()})"


class RecordingClock(Clock):
    """
    Clock that records ticks for later replay.

    GUARANTEES:
    ===========
    - In live mode every read is appended to the tick log
    - In replay mode reads return the saved ticks in order
    - Given same tick sequence, the lattice produces identical journals
    """

    def __init__(self, ticks: Optional[List[datetime]] = None, is_live: bool = True):
        self._ticks: List[datetime] = list(ticks or [])
        self._current_index = 0 if not is_live else len(self._ticks)
        self._is_live = is_live
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            if self._is_live:
                current = datetime.now(timezone.utc)
                self._ticks.append(current)
                self._current_index = len(self._ticks)
                return current
            if self._current_index >= len(self._ticks):
                raise ClockExhausted(
                    f"Replay clock exhausted at index {self._current_index}. "
                    f"Original execution had {len(self._ticks)} ticks."
                )
            tick = self._ticks[self._current_index]
            self._current_index += 1
            return tick

    def tick_count(self) -> int:
        return self._current_index

    def is_live(self) -> bool:
        return self._is_live

    @classmethod
    def from_log(cls, tick_log_path: Path) -> 'RecordingClock':
        """Create clock in replay mode from a recorded log."""
        with open(tick_log_path, 'r') as f:
            data = json.load(f)
        ticks = [datetime.fromisoformat(t) for t in data['ticks']]
        return cls(ticks=ticks, is_live=False)

    def save_log(self, tick_log_path: Path) -> None:
        tick_log_path = Path(tick_log_path)
        tick_log_path.parent.mkdir(parents=True, exist_ok=True)

        data = {
            'version': '1.0',
            'mode': 'live' if self._is_live else 'replay',
            'tick_count': len(self._ticks),
            'ticks': [t.isoformat() for t in self._ticks]
        }

        with open(tick_log_path, 'w') as f:
            json.dump(data, f, indent=2)

    def __repr__(self) -> str:
        mode = "LIVE" if self._is_live else "REPLAY"
        return f"RecordingClock({mode}, ticks={len(self._ticks)}, index={self._current_index})"
