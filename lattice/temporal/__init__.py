"""
Temporal Layer
==============

Clock abstraction shared by every service that reads wall-clock time.
"""

from .clock import Clock, ClockExhausted, ManualClock, RecordingClock, SystemClock

__all__ = [
    'Clock',
    'ClockExhausted',
    'ManualClock',
    'RecordingClock',
    'SystemClock',
]
