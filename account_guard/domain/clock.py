"""Time source abstraction used by every delay check."""

from __future__ import annotations

import time
from typing import Protocol


class Clock(Protocol):
    """Non-decreasing wall clock returning whole seconds since the epoch."""

    def now(self) -> int: ...


class SystemClock:
    """Clock backed by the host's wall time."""

    def now(self) -> int:
        return int(time.time())
