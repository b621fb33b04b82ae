"""Master clock boundary.

The host timeline is an integer tick counter running at ``frequency`` ticks
per second.  ``LslMasterClock`` derives it from ``pylsl.local_clock()`` so
the engine can be run against the same clock domain LSL streams use.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Protocol

try:
    import pylsl
except (ImportError, RuntimeError):
    pylsl = None  # allow import for testing without pylsl or liblsl installed


@dataclass(frozen=True)
class MasterTimestamp:
    """Current position on the host timeline."""

    ticks: int
    frequency: float


class MasterClock(Protocol):
    def master_timestamp(self) -> MasterTimestamp: ...
    def acquisition_start_time(self) -> int:
        """Wall-clock acquisition start in nanoseconds since 1970."""
        ...


class LslMasterClock:
    """Master clock counting ticks since construction on ``local_clock()``.

    Parameters
    ----------
    frequency : float
        Tick rate of the host timeline in Hz (default 1 MHz).
    """

    def __init__(self, frequency: float = 1_000_000.0) -> None:
        if pylsl is None:
            raise RuntimeError(
                "pylsl is not installed.  Install with: pip install pylsl"
            )
        self.frequency = frequency
        self._t0 = pylsl.local_clock()
        self._start_ns = time.time_ns()

    def master_timestamp(self) -> MasterTimestamp:
        elapsed = pylsl.local_clock() - self._t0
        return MasterTimestamp(ticks=int(elapsed * self.frequency), frequency=self.frequency)

    def acquisition_start_time(self) -> int:
        return self._start_ns

    def restart(self) -> None:
        """Start a new acquisition: tick 0 is now."""
        self._t0 = pylsl.local_clock()
        self._start_ns = time.time_ns()
