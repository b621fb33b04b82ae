"""Acquisition engine — metadata-driven demultiplexing synchronized to a host clock.

The engine is driven by two host-invoked cycles and never spawns threads:

- ``update()``: (re)connect the transport, wait for the first frame, parse
  its metadata, resolve calibrations, reconcile the host channel set and
  reset the sample tick.  Nothing is published unless every step succeeds.
- ``process()``: lock the tick on the first cycle of a session, report
  drift against the master clock, then drain every queued frame without
  blocking: demultiplex, calibrate, emit at the synchronized tick.

Data flow:
  Transport → Frame → Demultiplexer → TickSynchronizer → SampleSink
"""

from __future__ import annotations

import logging
import time
import warnings
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from transport.zmq_subscriber import ZmqSubscriber

from .calibration import resolve_calibrations
from .clock import MasterClock
from .cycle_report import CycleReport
from .demux import ChannelState, Demultiplexer
from .errors import (
    FrameShapeError,
    MetadataDriftWarning,
    MetadataParseError,
    TransportConnectError,
)
from .frame import Frame
from .host import (
    DRIFT_SAMPLE_FORMAT,
    ChannelConfig,
    ChannelHandle,
    ChannelRegistry,
    Diagnostics,
    LoggingDiagnostics,
    SampleSink,
    Severity,
)
from .metadata import ParsedMetadata, daq_info_of, parse_metadata
from .reconciler import DATA_CH_KEY_PREFIX, ChannelSetReconciler
from .tick_sync import TickSynchronizer


logger = logging.getLogger(__name__)

# Persisted host property holding the connection string
KEY_ZMQ_CONN_STR = "DAQOPEN_ZMQ_SUB/ZmqConnStr"


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

@dataclass
class EngineConfig:
    """Engine settings.

    Parameters
    ----------
    address : str
        Transport endpoint (e.g. ``"tcp://127.0.0.1:50001"``).
    retry_count : int
        Non-blocking receive attempts for the first frame after connecting.
    retry_delay : float
        Seconds between those attempts.
    data_key_prefix : str
        Registry key prefix marking data channels owned by the engine.
    drift_channel_key : str
        Registry key of the asynchronous drift channel.
    drift_channel_enabled : bool
        Create the drift channel and emit drift into it.
    max_frames_per_cycle : int or None
        Drain budget per ``process()`` call; ``None`` drains until empty.
    """

    address: str = ""
    retry_count: int = 2
    retry_delay: float = 0.5
    data_key_prefix: str = DATA_CH_KEY_PREFIX
    drift_channel_key: str = "DEBUG_TICK_DRIFT"
    drift_channel_enabled: bool = True
    max_frames_per_cycle: Optional[int] = None

    @classmethod
    def from_properties(cls, properties: Mapping[str, Any], **overrides: Any) -> "EngineConfig":
        """Build a config from persisted host properties."""
        return cls(address=str(properties.get(KEY_ZMQ_CONN_STR, "") or ""), **overrides)


class Transport(Protocol):
    """Receive side of the two-part message transport."""

    def connect(self, address: str) -> None: ...
    def receive(self, blocking: bool = False) -> Optional[Frame]: ...
    def close(self) -> None: ...


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class DaqSyncEngine:
    """Turn a stream of DAQ frames into calibrated, tick-aligned channels.

    Usage::

        host = MemoryHost()
        engine = DaqSyncEngine(host, host, LslMasterClock(), diagnostics=host,
                               config=EngineConfig(address="tcp://127.0.0.1:50001"))
        if engine.update():
            engine.prepare_processing()
            while True:
                report = engine.process()   # once per host acquisition tick

    Parameters
    ----------
    registry : ChannelRegistry
        Host channel registry.
    sink : SampleSink
        Host sample emission boundary.
    clock : MasterClock
        Host master clock.
    diagnostics : Diagnostics or None
        Asynchronous diagnostics sink; defaults to :class:`LoggingDiagnostics`.
    config : EngineConfig or None
    transport_factory : callable or None
        Returns a fresh, unconnected transport; defaults to ``ZmqSubscriber``.
    sleep : callable
        Used between first-frame attempts.
    """

    def __init__(
        self,
        registry: ChannelRegistry,
        sink: SampleSink,
        clock: MasterClock,
        diagnostics: Optional[Diagnostics] = None,
        config: Optional[EngineConfig] = None,
        transport_factory: Optional[Callable[[], Transport]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.registry = registry
        self.sink = sink
        self.clock = clock
        self.diagnostics = diagnostics if diagnostics is not None else LoggingDiagnostics()
        self.config = config if config is not None else EngineConfig()
        self._transport_factory = transport_factory or ZmqSubscriber
        self._sleep = sleep

        self._reconciler = ChannelSetReconciler(registry, self.config.data_key_prefix)
        self._synchronizer = TickSynchronizer()
        self._transport: Optional[Transport] = None
        self._metadata: Optional[ParsedMetadata] = None
        self._states: Dict[str, ChannelState] = {}
        self._demux = Demultiplexer(self._states)
        self._drift_handle: Optional[ChannelHandle] = None
        self._drift_warned = False

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def init(self, properties: Mapping[str, Any]) -> bool:
        """Apply persisted host properties; update if an address is set."""
        address = properties.get(KEY_ZMQ_CONN_STR)
        if address:
            self.config = replace(self.config, address=str(address))
            return self.update()
        return True

    def update(self) -> bool:
        """Reconnect and rebuild the channel set from the first received frame.

        Returns
        -------
        bool
            ``False`` if connecting, receiving or parsing failed.  The
            previous channel set, transport and tick are then left as they
            were and one error is reported to the diagnostics sink.
        """
        address = self.config.address
        logger.info("Connect to %s", address)

        transport = self._transport_factory()
        try:
            transport.connect(address)
            frame = self._first_frame(transport, address)
            parsed = parse_metadata(frame.metadata)
            calibrations = resolve_calibrations(parsed.channels, parsed.sensors)
            logger.debug("Metadata: %s", parsed.daq_info)
            reconciled = self._reconciler.reconcile(parsed.board, parsed.channels, calibrations)
            self._drift_handle = self._ensure_drift_channel()
        except (TransportConnectError, MetadataParseError, FrameShapeError) as exc:
            transport.close()
            self.diagnostics.report(Severity.ERROR, f"Update of '{address}' failed: {exc}")
            return False
        except Exception:
            transport.close()
            raise

        if self._transport is not None:
            self._transport.close()
        self._transport = transport
        self._metadata = parsed
        self._states = {
            name: ChannelState(
                name=name,
                column_index=descriptor.column_index,
                calibration=calibrations[name],
                handle=reconciled.handles[name],
            )
            for name, descriptor in parsed.channels.items()
        }
        self._demux = Demultiplexer(self._states)
        self._synchronizer.reset()
        self._drift_warned = False

        logger.info(
            "Channel set rebuilt: %d channel(s) @ %.1f Hz",
            len(self._states), parsed.board.samplerate,
        )
        return True

    def prepare_processing(self) -> None:
        """Lock the sample tick at acquisition start (no-op if already locked)."""
        if self._metadata is None:
            return
        self._synchronizer.lock(self.clock.master_timestamp(), self._metadata.board.samplerate)

    def process(self) -> CycleReport:
        """Run one processing cycle: report drift, then drain all queued frames."""
        ts = self.clock.master_timestamp()
        report = CycleReport(master_ticks=ts.ticks)
        if self._transport is None or self._metadata is None:
            return report

        samplerate = self._metadata.board.samplerate
        report.locked = self._synchronizer.lock(ts, samplerate)
        report.next_tick_before = self._synchronizer.next_tick
        report.target_tick, report.drift = self._synchronizer.drift(ts, samplerate)
        if self._drift_handle is not None:
            self.sink.add_async_sample(self._drift_handle, ts.ticks, float(report.drift))

        budget = self.config.max_frames_per_cycle
        drift_msg: Optional[str] = None
        while True:
            if budget is not None and report.frames_processed + report.frames_dropped >= budget:
                report.frames_pending = True
                break
            try:
                frame = self._transport.receive(blocking=False)
                if frame is None:
                    break
                if frame.metadata is not None and drift_msg is None:
                    drift_msg = self._check_metadata_drift(frame.metadata)
                n_samples = self._emit(frame)
            except (FrameShapeError, MetadataParseError) as exc:
                logger.warning("Dropped frame: %s", exc)
                report.frames_dropped += 1
                report.warnings.append(str(exc))
                continue
            report.frames_processed += 1
            report.samples_emitted += n_samples

        # Raised only after the drain so an error filter cannot cut it short
        if drift_msg is not None:
            report.warnings.append(drift_msg)
            self.diagnostics.report(Severity.WARNING, drift_msg)
            warnings.warn(drift_msg, MetadataDriftWarning, stacklevel=2)

        if not report.idle:
            logger.debug(
                "Cycle: %d frame(s), %d sample(s), next_tick=%d, drift=%d, acq_start_ts=%d",
                report.frames_processed, report.samples_emitted,
                self._synchronizer.next_tick, report.drift,
                self.clock.acquisition_start_time(),
            )
        return report

    def close(self) -> None:
        """Close the transport; the channel set stays published."""
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def metadata(self) -> Optional[ParsedMetadata]:
        return self._metadata

    @property
    def channel_names(self):
        return list(self._states.keys())

    @property
    def next_tick(self) -> int:
        return self._synchronizer.next_tick

    @property
    def is_locked(self) -> bool:
        return self._synchronizer.is_locked

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _first_frame(self, transport: Transport, address: str) -> Frame:
        """Poll non-blockingly for the first frame carrying metadata."""
        attempts = max(1, self.config.retry_count)
        for attempt in range(1, attempts + 1):
            try:
                frame = transport.receive(blocking=False)
            except FrameShapeError as exc:
                logger.warning("Discarded malformed first frame: %s", exc)
                frame = None
            if frame is not None and frame.metadata is not None:
                logger.info("First frame received after %d attempt(s)", attempt)
                return frame
            if attempt < attempts:
                self._sleep(self.config.retry_delay)
        raise TransportConnectError(address, attempts)

    def _ensure_drift_channel(self) -> Optional[ChannelHandle]:
        if not self.config.drift_channel_enabled:
            return None
        key = self.config.drift_channel_key
        handle = self.registry.lookup(key)
        if handle is None:
            handle = self.registry.create(
                key,
                ChannelConfig(name="Tick Drift", sample_format=DRIFT_SAMPLE_FORMAT, unit="ticks"),
            )
        return handle

    def _emit(self, frame: Frame) -> int:
        """Demultiplex *frame* and emit every channel at its synchronized tick."""
        n_samples = self._demux.samples_per_channel(frame.data)
        for state, samples in self._demux.split(frame.data):
            start_tick, n_drop = self._synchronizer.placement(state.calibration.normalized_delay)
            block = samples[n_drop:]
            if len(block):
                self.sink.add_samples(state.handle, start_tick, block)
        self._synchronizer.advance(n_samples)
        return n_samples

    def _check_metadata_drift(self, metadata: Dict[str, Any]) -> Optional[str]:
        """Return a warning message the first time *metadata* differs per session."""
        if self._drift_warned or daq_info_of(metadata) == self._metadata.daq_info:
            return None
        self._drift_warned = True
        return (
            f"Metadata from '{self.config.address}' differs from the snapshot of the "
            f"last update; keeping the current channel set until the next update"
        )

    # ------------------------------------------------------------------
    # Diagnostics
    # ------------------------------------------------------------------

    def channel_status(self) -> Dict[str, dict]:
        """Return per-channel diagnostic info."""
        status = {}
        for name, state in self._states.items():
            cal = state.calibration
            status[name] = {
                "column_index": state.column_index,
                "gain": float(cal.gain),
                "offset": float(cal.offset),
                "delay": cal.delay,
                "normalized_delay": int(cal.normalized_delay),
                "handle": state.handle,
            }
        return status
