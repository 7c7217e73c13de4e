"""
Time helpers.

All persisted timestamps are naive UTC so they compare the same way on
PostgreSQL and SQLite.
"""

import threading
import time
from datetime import UTC, datetime

_sequence_lock = threading.Lock()
_last_sequence = 0


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(UTC).replace(tzinfo=None)


def next_sequence() -> int:
    """
    Return a strictly increasing enqueue-order key for this process.

    Based on wall-clock nanoseconds so keys from different processes
    interleave roughly by enqueue time.
    """
    global _last_sequence
    with _sequence_lock:
        _last_sequence = max(time.time_ns(), _last_sequence + 1)
        return _last_sequence
