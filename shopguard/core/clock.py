# shopguard/core/clock.py
"""
Time source shared by all security stores.

Stores never call datetime.now() or time.monotonic() directly; they ask
their clock. Tests swap in a manual clock to move time forward.
"""

import time
from datetime import datetime, timezone


class SystemClock:
    """Wall clock for timestamps, monotonic clock for windows"""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


system_clock = SystemClock()
