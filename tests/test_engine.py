"""Tests for the engine — update/process cycles against the in-memory host.

A FakeTransport serves prepared frames, so no ZMQ endpoint is needed.
"""

import warnings

import numpy as np
import pytest

from daq_sync.clock import MasterTimestamp
from daq_sync.engine import KEY_ZMQ_CONN_STR, DaqSyncEngine, EngineConfig
from daq_sync.errors import MetadataDriftWarning
from daq_sync.frame import Frame
from daq_sync.host import DRIFT_SAMPLE_FORMAT, MemoryHost, Severity
from tests.simulators.daq_simulator import FakeTransport, make_metadata


class FakeClock:
    def __init__(self, ticks=1000, frequency=1000.0):
        self.ticks = ticks
        self.frequency = frequency

    def master_timestamp(self):
        return MasterTimestamp(ticks=self.ticks, frequency=self.frequency)

    def acquisition_start_time(self):
        return 1_700_000_000_000_000_000


def _meta(channels=None, **kwargs):
    channels = channels if channels is not None else {
        "A": {"gain": 2.0, "offset": 1.0},
        "B": {"gain": 2.0, "offset": 1.0},
    }
    kwargs.setdefault("samplerate", 500.0)
    return make_metadata(channels, **kwargs)


def _frame(meta, data):
    return Frame(metadata=meta, data=np.asarray(data, dtype=np.int16))


def _engine(transports, clock=None, **config):
    host = MemoryHost()
    sleeps = []
    factory = iter(transports).__next__
    engine = DaqSyncEngine(
        host,
        host,
        clock or FakeClock(),
        diagnostics=host,
        config=EngineConfig(address="tcp://127.0.0.1:50001", **config),
        transport_factory=factory,
        sleep=sleeps.append,
    )
    return engine, host, sleeps


# ======================================================================
# Update
# ======================================================================

class TestUpdate:

    def test_update_builds_channel_set(self):
        meta = _meta()
        engine, host, _ = _engine([FakeTransport([_frame(meta, [0, 0])])])
        assert engine.update()
        assert engine.channel_names == ["A", "B"]
        assert host.lookup("DATACHANNEL_A") is not None
        assert host.lookup("DATACHANNEL_B") is not None
        assert not engine.is_locked

    def test_drift_channel_created(self):
        engine, host, _ = _engine([FakeTransport([_frame(_meta(), [0, 0])])])
        engine.update()
        handle = host.lookup("DEBUG_TICK_DRIFT")
        assert handle is not None
        assert host.config_of(handle).sample_format == DRIFT_SAMPLE_FORMAT

    def test_drift_channel_disabled(self):
        engine, host, _ = _engine(
            [FakeTransport([_frame(_meta(), [0, 0])])], drift_channel_enabled=False
        )
        engine.update()
        assert host.lookup("DEBUG_TICK_DRIFT") is None

    def test_first_frame_after_retry(self):
        transport = FakeTransport()
        engine, _, sleeps = _engine([transport])
        plain_receive = transport.receive

        def late_receive(blocking=False):
            if transport.receive_calls == 1:
                transport.push(_meta(), [0, 0])
            return plain_receive(blocking)

        transport.receive = late_receive
        assert engine.update()
        assert sleeps == [0.5]

    def test_reconnect_failure_leaves_state(self):
        first = FakeTransport([_frame(_meta(), [0, 0])])
        empty = FakeTransport()
        engine, host, sleeps = _engine([first, empty])
        engine.update()
        keys_before = sorted(host.keys())

        assert not engine.update()

        assert empty.receive_calls == 2
        assert sleeps == [0.5]
        assert empty.closed
        assert not first.closed
        assert sorted(host.keys()) == keys_before
        errors = [msg for sev, msg in host.reports if sev == Severity.ERROR]
        assert len(errors) == 1
        assert "tcp://127.0.0.1:50001" in errors[0]
        assert "2 attempt" in errors[0]

    def test_connect_failure(self):
        engine, host, _ = _engine([FakeTransport(fail_connect=True)])
        assert not engine.update()
        assert host.keys() == []
        assert [sev for sev, _ in host.reports] == [Severity.ERROR]

    def test_metadata_error_creates_nothing(self):
        bad = _meta()
        del bad["daq_info"]["board"]["samplerate"]
        engine, host, _ = _engine([FakeTransport([_frame(bad, [0, 0])])])
        assert not engine.update()
        assert host.keys() == []
        assert engine.metadata is None
        assert "samplerate" in host.reports[0][1]

    def test_delay_outside_int16_fails_update(self):
        meta = _meta({"A": {"delay": 40000}, "B": {}})
        transport = FakeTransport([_frame(meta, [0, 0])])
        engine, host, _ = _engine([transport])
        assert not engine.update()
        assert transport.closed
        assert host.keys() == []
        assert engine.metadata is None
        errors = [msg for sev, msg in host.reports if sev == Severity.ERROR]
        assert len(errors) == 1
        assert "daq_info.channel.A.delay" in errors[0]

    def test_unexpected_error_closes_new_transport(self):
        first = FakeTransport([_frame(_meta(), [0, 0])])
        second = FakeTransport([_frame(_meta({"A": {}, "C": {}}), [0, 0])])
        engine, host, _ = _engine([first, second])
        engine.update()

        def broken_create(key, config):
            raise RuntimeError("registry unavailable")

        host.create = broken_create
        with pytest.raises(RuntimeError):
            engine.update()
        assert second.closed
        assert not first.closed

    def test_frame_without_metadata_does_not_count(self):
        transport = FakeTransport([_frame(None, [0, 0]), _frame(None, [0, 0])])
        engine, _, _ = _engine([transport])
        assert not engine.update()

    def test_update_resets_tick_and_reuses_handles(self):
        first = FakeTransport([_frame(_meta(), [0, 0])])
        second = FakeTransport([_frame(_meta({"A": {}, "C": {}}), [0, 0])])
        engine, host, _ = _engine([first, second])
        engine.update()
        handle_a = host.lookup("DATACHANNEL_A")
        engine.process()
        assert engine.is_locked

        assert engine.update()
        assert first.closed
        assert not engine.is_locked
        assert host.lookup("DATACHANNEL_A") is handle_a
        assert host.lookup("DATACHANNEL_B") is None
        assert host.lookup("DATACHANNEL_C") is not None

    def test_init_with_properties(self):
        engine, _, _ = _engine([FakeTransport([_frame(_meta(), [0, 0])])])
        engine.config.address = ""
        assert engine.init({KEY_ZMQ_CONN_STR: "tcp://10.0.0.2:50001"})
        assert engine.config.address == "tcp://10.0.0.2:50001"
        assert engine.channel_names == ["A", "B"]

    def test_init_without_address(self):
        engine, host, _ = _engine([])
        assert engine.init({})
        assert host.keys() == []


# ======================================================================
# Process
# ======================================================================

class TestProcess:

    def _ready(self, frames, meta=None, clock=None, **config):
        meta = meta or _meta()
        transport = FakeTransport([_frame(meta, [0] * len(meta["daq_info"]["channel"]))])
        for data in frames:
            transport.push(meta, data)
        engine, host, _ = _engine([transport], clock=clock, **config)
        assert engine.update()
        return engine, host, transport

    def test_process_without_session(self):
        engine, _, _ = _engine([])
        report = engine.process()
        assert report.idle
        assert report.drift is None

    def test_locks_on_first_cycle(self):
        engine, _, _ = self._ready([])
        report = engine.process()
        assert report.locked
        assert engine.next_tick == 500
        assert not engine.process().locked

    def test_prepare_processing_locks(self):
        engine, _, _ = self._ready([])
        engine.prepare_processing()
        assert engine.next_tick == 500
        assert not engine.process().locked

    def test_emits_calibrated_samples_at_tick(self):
        engine, host, _ = self._ready([[10, 20, 30, 40]])
        report = engine.process()
        assert report.frames_processed == 1
        assert report.samples_emitted == 2
        [(tick_a, data_a)] = host.blocks_of(host.lookup("DATACHANNEL_A"))
        [(tick_b, data_b)] = host.blocks_of(host.lookup("DATACHANNEL_B"))
        assert tick_a == tick_b == 500
        np.testing.assert_array_equal(data_a, [19.0, 59.0])
        np.testing.assert_array_equal(data_b, [39.0, 79.0])
        assert engine.next_tick == 502

    def test_drains_all_queued_frames(self):
        engine, host, transport = self._ready([[1, 2, 3, 4]] * 5)
        report = engine.process()
        assert report.frames_processed == 5
        assert not transport.queue
        ticks = [t for t, _ in host.blocks_of(host.lookup("DATACHANNEL_A"))]
        assert ticks == [500, 502, 504, 506, 508]

    def test_bad_frame_dropped_without_breaking_ticks(self):
        engine, host, _ = self._ready([[1, 2, 3, 4], [1, 2, 3, 4, 5], [5, 6, 7, 8]])
        report = engine.process()
        assert report.frames_processed == 2
        assert report.frames_dropped == 1
        assert engine.next_tick == 504
        ticks = [t for t, _ in host.blocks_of(host.lookup("DATACHANNEL_B"))]
        assert ticks == [500, 502]

    def test_drift_reported_per_cycle(self):
        clock = FakeClock(ticks=1000)
        engine, host, _ = self._ready([[0] * 40], clock=clock)
        first = engine.process()
        assert first.drift == 0
        clock.ticks = 1100
        second = engine.process()
        assert second.next_tick_before == 520
        assert second.target_tick == 550
        assert second.drift == -30
        drift_blocks = host.blocks_of(host.lookup("DEBUG_TICK_DRIFT"))
        assert [t for t, _ in drift_blocks] == [1000, 1100]
        assert [float(v[0]) for _, v in drift_blocks] == [0.0, -30.0]

    def test_delay_shifts_start_tick(self):
        meta = _meta({"A": {"delay": 0}, "B": {"delay": -2}})
        engine, host, _ = self._ready([[1, 2, 3, 4]], meta=meta)
        engine.process()
        [(tick_a, _)] = host.blocks_of(host.lookup("DATACHANNEL_A"))
        [(tick_b, _)] = host.blocks_of(host.lookup("DATACHANNEL_B"))
        assert tick_a == 498
        assert tick_b == 500
        status = engine.channel_status()
        assert status["A"]["normalized_delay"] == 2
        assert status["B"]["normalized_delay"] == 0

    def test_delay_at_tick_zero_drops_samples(self):
        meta = _meta({"A": {"delay": 0}, "B": {"delay": -2}})
        engine, host, _ = self._ready(
            [[1, 2, 3, 4, 5, 6, 7, 8]], meta=meta, clock=FakeClock(ticks=0)
        )
        engine.process()
        [(tick_a, data_a)] = host.blocks_of(host.lookup("DATACHANNEL_A"))
        [(tick_b, data_b)] = host.blocks_of(host.lookup("DATACHANNEL_B"))
        assert tick_a == 0
        np.testing.assert_array_equal(data_a, [5.0, 7.0])
        assert tick_b == 0
        np.testing.assert_array_equal(data_b, [2.0, 4.0, 6.0, 8.0])
        assert engine.next_tick == 4

    def test_metadata_drift_warns_once(self):
        meta = _meta()
        changed = _meta({"A": {"gain": 5.0, "offset": 0.0}, "B": {"gain": 2.0, "offset": 1.0}})
        engine, host, transport = self._ready([], meta=meta)
        transport.push(changed, [10, 20])
        transport.push(changed, [10, 20])
        with pytest.warns(MetadataDriftWarning):
            report = engine.process()
        assert report.frames_processed == 2
        warning_reports = [msg for sev, msg in host.reports if sev == Severity.WARNING]
        assert len(warning_reports) == 1
        # calibration captured at update time is still used
        data = host.samples_of("DATACHANNEL_A")
        np.testing.assert_array_equal(data, [19.0, 19.0])

    def test_metadata_drift_warning_after_drain(self):
        changed = _meta({"A": {"gain": 5.0, "offset": 0.0}, "B": {"gain": 2.0, "offset": 1.0}})
        engine, host, transport = self._ready([])
        transport.push(changed, [10, 20])
        transport.push(changed, [10, 20])
        with warnings.catch_warnings():
            warnings.simplefilter("error", MetadataDriftWarning)
            with pytest.raises(MetadataDriftWarning):
                engine.process()
        assert not transport.queue
        assert len(host.blocks_of(host.lookup("DATACHANNEL_A"))) == 2
        assert engine.next_tick == 502
        assert [sev for sev, _ in host.reports] == [Severity.WARNING]

    def test_transport_fault_ends_drain(self):
        engine, host, transport = self._ready([[1, 2, 3, 4]])
        transport.push_fault()
        transport.push(_meta(), [5, 6, 7, 8])

        report = engine.process()
        assert report.frames_processed == 1
        assert report.frames_dropped == 0
        assert len(transport.queue) == 1
        assert engine.next_tick == 502

        report = engine.process()
        assert report.frames_processed == 1
        assert not report.locked
        assert engine.next_tick == 504
        ticks = [t for t, _ in host.blocks_of(host.lookup("DATACHANNEL_A"))]
        assert ticks == [500, 502]
        assert not transport.closed
        assert host.reports == []

    def test_drain_budget(self):
        engine, _, transport = self._ready([[1, 2]] * 3, max_frames_per_cycle=2)
        report = engine.process()
        assert report.frames_processed == 2
        assert report.frames_pending
        assert len(transport.queue) == 1
        assert engine.process().frames_processed == 1

    def test_close(self):
        engine, _, transport = self._ready([])
        engine.close()
        assert transport.closed
        assert engine.process().idle


class TestEngineConfig:

    def test_defaults(self):
        cfg = EngineConfig()
        assert cfg.retry_count == 2
        assert cfg.retry_delay == 0.5
        assert cfg.data_key_prefix == "DATACHANNEL_"

    def test_from_properties(self):
        cfg = EngineConfig.from_properties({KEY_ZMQ_CONN_STR: "tcp://host:1"}, retry_count=5)
        assert cfg.address == "tcp://host:1"
        assert cfg.retry_count == 5
