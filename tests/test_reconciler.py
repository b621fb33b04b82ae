"""Tests for the channel set reconciler against the in-memory host registry."""

import pytest

from daq_sync.calibration import resolve_calibrations
from daq_sync.host import (
    DATA_SAMPLE_FORMAT,
    DRIFT_SAMPLE_FORMAT,
    ChannelConfig,
    MemoryHost,
)
from daq_sync.metadata import BoardDescriptor, parse_metadata
from daq_sync.reconciler import ChannelSetReconciler, channel_range
from tests.simulators.daq_simulator import make_metadata


def _reconcile(reconciler, channels, **kwargs):
    parsed = parse_metadata(make_metadata(channels, **kwargs))
    cals = resolve_calibrations(parsed.channels, parsed.sensors)
    return reconciler.reconcile(parsed.board, parsed.channels, cals)


# ======================================================================
# Range
# ======================================================================

class TestChannelRange:

    def test_single_ended(self):
        board = BoardDescriptor(samplerate=1000.0, adc_range=(-100.0, 200.0), differential=False)
        assert channel_range(board, gain=2.0, offset=1.0) == (-201.0, 399.0)

    def test_differential(self):
        board = BoardDescriptor(samplerate=1000.0, adc_range=(-100.0, 200.0), differential=True)
        lo, hi = channel_range(board, gain=2.0, offset=1.0)
        assert lo == pytest.approx(((-100.0 - 200.0) / 2 - 0.5) * 2.0 - 1.0)
        assert hi == pytest.approx(((200.0 + 100.0) / 2 - 0.5) * 2.0 - 1.0)


# ======================================================================
# Reconciliation
# ======================================================================

class TestReconcile:

    def test_creates_missing_channels(self):
        host = MemoryHost()
        result = _reconcile(
            ChannelSetReconciler(host),
            {"A": {"gain": 2.0, "offset": 1.0, "unit": "mV"}},
            samplerate=500.0,
            adc_range=(-10, 10),
        )
        assert result.created == ["A"]
        handle = host.lookup("DATACHANNEL_A")
        assert handle is result.handles["A"]
        config = host.config_of(handle)
        assert config.name == "A"
        assert config.sample_format == DATA_SAMPLE_FORMAT
        assert config.samplerate == 500.0
        assert config.value_range == (-21.0, 19.0)
        assert config.unit == "mV"
        assert config.deletable

    def test_diff_keeps_removes_and_creates(self):
        host = MemoryHost()
        reconciler = ChannelSetReconciler(host)
        first = _reconcile(reconciler, {"A": {}, "B": {}})
        handle_a = first.handles["A"]

        second = _reconcile(reconciler, {"A": {}, "C": {"unit": "A"}})

        assert second.removed == ["B"]
        assert second.created == ["C"]
        assert second.reused == ["A"]
        assert second.handles["A"] is handle_a
        assert host.lookup("DATACHANNEL_B") is None
        assert host.config_of(host.lookup("DATACHANNEL_C")).unit == "A"
        assert sorted(host.keys()) == ["DATACHANNEL_A", "DATACHANNEL_C"]

    def test_reused_channel_is_reconfigured(self):
        host = MemoryHost()
        reconciler = ChannelSetReconciler(host)
        _reconcile(reconciler, {"A": {"unit": "V"}}, samplerate=100.0)
        _reconcile(reconciler, {"A": {"unit": "kV"}}, samplerate=200.0)
        config = host.config_of(host.lookup("DATACHANNEL_A"))
        assert config.unit == "kV"
        assert config.samplerate == 200.0

    def test_range_uses_sensor_chain(self):
        host = MemoryHost()
        _reconcile(
            ChannelSetReconciler(host),
            {"A": {"gain": 2.0, "offset": 0.0, "sensor": "s"}},
            adc_range=(0, 10),
            sensors={"s": {"gain": 3.0, "offset": 1.0, "delay": 0}},
        )
        config = host.config_of(host.lookup("DATACHANNEL_A"))
        assert config.value_range == (-1.0, 59.0)

    def test_non_data_channels_untouched(self):
        host = MemoryHost()
        drift = host.create("DEBUG_TICK_DRIFT", ChannelConfig("drift", DRIFT_SAMPLE_FORMAT))
        manual = host.add_output_channel(ChannelConfig("math", DATA_SAMPLE_FORMAT))
        _reconcile(ChannelSetReconciler(host), {"A": {}})
        handles = host.list()
        assert drift in handles
        assert manual in handles

    def test_custom_prefix(self):
        host = MemoryHost()
        _reconcile(ChannelSetReconciler(host, key_prefix="DAQ_"), {"A": {}})
        assert host.keys() == ["DAQ_A"]
