"""CycleReport — summary produced by one host processing cycle.

Returned by ``DaqSyncEngine.process()`` so callers (and tests) can see what
a drain did without inspecting the host.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class CycleReport:
    """Outcome of one processing cycle.

    Attributes
    ----------
    master_ticks : int
        Host master tick at the start of the cycle.
    target_tick : int or None
        Clock-derived sample tick (``None`` without a session).
    next_tick_before : int or None
        Engine tick before the first frame of the cycle.
    drift : int or None
        ``next_tick_before - target_tick``.
    frames_processed : int
        Frames demultiplexed and emitted.
    frames_dropped : int
        Frames rejected (shape or decoding errors).
    samples_emitted : int
        Per-channel samples emitted over all frames.
    frames_pending : bool
        ``True`` if a drain budget stopped the loop before the queue was empty.
    locked : bool
        ``True`` if this cycle performed the tick lock.
    """

    master_ticks: int = 0
    target_tick: Optional[int] = None
    next_tick_before: Optional[int] = None
    drift: Optional[int] = None
    frames_processed: int = 0
    frames_dropped: int = 0
    samples_emitted: int = 0
    frames_pending: bool = False
    locked: bool = False
    warnings: List[str] = field(default_factory=list)

    @property
    def idle(self) -> bool:
        return self.frames_processed == 0 and self.frames_dropped == 0

    def __repr__(self) -> str:
        return (
            f"CycleReport(frames={self.frames_processed}, "
            f"dropped={self.frames_dropped}, "
            f"samples={self.samples_emitted}, drift={self.drift})"
        )
