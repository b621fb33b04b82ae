"""Demultiplexer — split interleaved int16 blocks into calibrated channels.

A block holds ``C`` interleaved columns; channel ``k`` owns the elements
``k, k + C, k + 2C, ...``.  Every channel of a frame yields the same number
of samples, ``len(block) // C``.  A block whose length is not a multiple of
``C`` is rejected as a whole.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Iterator, Mapping, Tuple

import numpy as np

from .calibration import EffectiveCalibration, apply_calibration
from .errors import FrameShapeError
from .host import ChannelHandle


@dataclass
class ChannelState:
    """Per-channel state kept for the lifetime of a session.

    Attributes
    ----------
    name : str
    column_index : int
    calibration : EffectiveCalibration
    handle : ChannelHandle
        Identity of the channel in the host registry.
    buffer : ndarray
        Reusable float32 sample buffer; holds the last demultiplexed frame.
    """

    name: str
    column_index: int
    calibration: EffectiveCalibration
    handle: ChannelHandle
    buffer: np.ndarray = field(default_factory=lambda: np.empty(0, dtype=np.float32))

    def buffer_for(self, n_samples: int) -> np.ndarray:
        if self.buffer.shape[0] != n_samples:
            self.buffer = np.empty(n_samples, dtype=np.float32)
        return self.buffer


class Demultiplexer:
    """Demultiplex and calibrate blocks for a fixed channel set."""

    def __init__(self, states: Mapping[str, ChannelState]) -> None:
        self.states = states

    @property
    def channel_count(self) -> int:
        return len(self.states)

    def samples_per_channel(self, block: np.ndarray) -> int:
        """Return the per-channel sample count of *block*.

        Raises
        ------
        FrameShapeError
            If there are no channels or the block does not split evenly.
        """
        n = self.channel_count
        if n == 0 or len(block) % n != 0:
            raise FrameShapeError(len(block), n)
        return len(block) // n

    def split(self, block: np.ndarray) -> Iterator[Tuple[ChannelState, np.ndarray]]:
        """Yield ``(state, calibrated_samples)`` for every channel.

        The shape is validated before anything is yielded, so a rejected
        block never reaches any channel.  The yielded array is the state's
        reusable buffer and is overwritten by the next frame.
        """
        n_samples = self.samples_per_channel(block)
        stride = self.channel_count
        for state in self.states.values():
            raw = block[state.column_index::stride][:n_samples]
            out = state.buffer_for(n_samples)
            apply_calibration(raw, state.calibration.gain, state.calibration.offset, out=out)
            yield state, out

    def demux(self, block: np.ndarray) -> Dict[str, np.ndarray]:
        """Return a copy of every channel's calibrated samples keyed by name."""
        return {state.name: samples.copy() for state, samples in self.split(block)}
