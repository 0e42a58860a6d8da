"""
Road Recorder Clock Coordination
Network time synchronization and session clock anchors
"""

from .clock import ClockSynchronizer, SessionClockAnchor, monotonic_ms, wall_clock_ms
from .config import ClockConfig
from .ntp import NtpTimeProvider

__all__ = [
    'ClockSynchronizer',
    'SessionClockAnchor',
    'ClockConfig',
    'NtpTimeProvider',
    'monotonic_ms',
    'wall_clock_ms',
]

__version__ = '1.0.0'
