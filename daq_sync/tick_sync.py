"""Tick synchronizer — place emitted samples on the host timeline.

Two phases per session:

- **Unlocked**: ``next_tick`` holds the ``UNSET_TICK`` sentinel.
- **Locked**: on the first processing cycle after a reset, ``next_tick`` is
  set once from the master clock: ``round(master_ticks * samplerate /
  frequency)``.  From then on it only advances by the number of samples
  emitted per frame.

The free-running ``next_tick`` is never pulled towards the clock.  Each
cycle the clock-derived ``target_tick`` is computed and the difference is
reported as drift, so channel-to-channel phase stays exact while long-run
drift stays visible.
"""

from __future__ import annotations

import logging
from typing import Tuple

import numpy as np

from .clock import MasterTimestamp


logger = logging.getLogger(__name__)

UNSET_TICK = int(np.iinfo(np.uint64).max)


class TickSynchronizer:
    """Per-session sample tick with a one-time lock to the master clock."""

    def __init__(self) -> None:
        self.next_tick: int = UNSET_TICK

    # ------------------------------------------------------------------
    # Session state
    # ------------------------------------------------------------------

    @property
    def is_locked(self) -> bool:
        return self.next_tick != UNSET_TICK

    def reset(self) -> None:
        """Return to the unlocked phase (new session)."""
        self.next_tick = UNSET_TICK

    @staticmethod
    def target_tick(ts: MasterTimestamp, samplerate: float) -> int:
        """Sample tick the master clock says we should be at."""
        rate_factor = samplerate / ts.frequency
        return int(round(ts.ticks * rate_factor))

    def lock(self, ts: MasterTimestamp, samplerate: float) -> bool:
        """Lock ``next_tick`` to the master clock if still unlocked.

        Returns
        -------
        bool
            ``True`` if this call performed the lock.
        """
        if self.is_locked:
            return False
        self.next_tick = self.target_tick(ts, samplerate)
        logger.info(
            "Locked sample tick %d (master ticks=%d @ %.1f Hz, samplerate=%.1f Hz)",
            self.next_tick, ts.ticks, ts.frequency, samplerate,
        )
        return True

    def drift(self, ts: MasterTimestamp, samplerate: float) -> Tuple[int, int]:
        """Return ``(target_tick, next_tick - target_tick)``.

        Must only be called while locked.
        """
        if not self.is_locked:
            raise RuntimeError("drift is undefined before the tick is locked")
        target = self.target_tick(ts, samplerate)
        return target, self.next_tick - target

    # ------------------------------------------------------------------
    # Per frame
    # ------------------------------------------------------------------

    def placement(self, normalized_delay: int) -> Tuple[int, int]:
        """Return ``(start_tick, n_drop)`` for a channel with *normalized_delay*.

        The block starts ``normalized_delay`` ticks before ``next_tick``.  If
        that would be before tick 0, the leading samples are dropped instead
        and the block starts at 0.
        """
        if not self.is_locked:
            raise RuntimeError("placement is undefined before the tick is locked")
        delay = int(normalized_delay)
        if self.next_tick >= delay:
            return self.next_tick - delay, 0
        return 0, delay - self.next_tick

    def advance(self, n_samples: int) -> None:
        if n_samples < 0:
            raise ValueError("n_samples must be non-negative")
        self.next_tick += n_samples

    def __repr__(self) -> str:
        state = self.next_tick if self.is_locked else "unset"
        return f"TickSynchronizer(next_tick={state})"
