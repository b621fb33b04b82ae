"""Tests for the demultiplexer and per-channel state."""

import numpy as np
import pytest

from daq_sync.calibration import EffectiveCalibration
from daq_sync.demux import ChannelState, Demultiplexer
from daq_sync.errors import FrameShapeError
from daq_sync.host import ChannelHandle
from tests.simulators.daq_simulator import interleave


def _state(name, column, gain=1.0, offset=0.0, local_id=1):
    return ChannelState(
        name=name,
        column_index=column,
        calibration=EffectiveCalibration(
            gain=np.float32(gain), offset=np.float32(offset), delay=0
        ),
        handle=ChannelHandle(local_id=local_id, _key=f"DATACHANNEL_{name}"),
    )


class TestDemultiplexer:

    def test_two_channel_example(self):
        demux = Demultiplexer({
            "A": _state("A", 0, gain=2.0, offset=1.0),
            "B": _state("B", 1, gain=2.0, offset=1.0),
        })
        block = np.array([10, 20, 30, 40], dtype=np.int16)
        out = demux.demux(block)
        np.testing.assert_array_equal(out["A"], [19.0, 59.0])
        np.testing.assert_array_equal(out["B"], [39.0, 79.0])

    def test_columns_follow_column_index(self):
        demux = Demultiplexer({
            "A": _state("A", 2),
            "B": _state("B", 0),
            "C": _state("C", 1),
        })
        block = interleave([[1, 2], [10, 20], [100, 200]])
        out = demux.demux(block)
        np.testing.assert_array_equal(out["A"], [100, 200])
        np.testing.assert_array_equal(out["B"], [1, 2])
        np.testing.assert_array_equal(out["C"], [10, 20])

    def test_equal_sample_counts(self):
        demux = Demultiplexer({"A": _state("A", 0), "B": _state("B", 1), "C": _state("C", 2)})
        block = np.arange(30, dtype=np.int16)
        assert demux.samples_per_channel(block) == 10
        assert {len(v) for v in demux.demux(block).values()} == {10}

    def test_float32_output(self):
        demux = Demultiplexer({"A": _state("A", 0, gain=0.5)})
        out = demux.demux(np.array([1, 3], dtype=np.int16))
        assert out["A"].dtype == np.float32
        np.testing.assert_array_equal(out["A"], [0.5, 1.5])

    def test_rejects_uneven_block(self):
        demux = Demultiplexer({"A": _state("A", 0), "B": _state("B", 1)})
        with pytest.raises(FrameShapeError) as exc:
            demux.demux(np.arange(5, dtype=np.int16))
        assert exc.value.length == 5
        assert exc.value.channel_count == 2

    def test_rejected_block_leaves_buffers_alone(self):
        states = {"A": _state("A", 0), "B": _state("B", 1)}
        demux = Demultiplexer(states)
        demux.demux(np.array([1, 2, 3, 4], dtype=np.int16))
        with pytest.raises(FrameShapeError):
            list(demux.split(np.arange(5, dtype=np.int16)))
        np.testing.assert_array_equal(states["A"].buffer, [1, 3])

    def test_no_channels(self):
        with pytest.raises(FrameShapeError):
            Demultiplexer({}).samples_per_channel(np.arange(4, dtype=np.int16))

    def test_empty_block(self):
        demux = Demultiplexer({"A": _state("A", 0)})
        assert demux.demux(np.array([], dtype=np.int16))["A"].size == 0


class TestChannelState:

    def test_buffer_reused_for_same_size(self):
        state = _state("A", 0)
        first = state.buffer_for(4)
        assert state.buffer_for(4) is first

    def test_buffer_resized(self):
        state = _state("A", 0)
        state.buffer_for(4)
        assert state.buffer_for(8).shape == (8,)
