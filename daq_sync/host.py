"""Host boundaries — channel registry, sample sink and diagnostics.

The engine never talks to a measurement application directly.  It is given
objects implementing the protocols below:

- ``ChannelRegistry``: create / look up / configure / remove output channels
  by stable key.
- ``SampleSink``: push calibrated sample blocks and single asynchronous
  samples at a tick.
- ``Diagnostics``: asynchronous error/log messages with a severity.

``MemoryHost`` implements all three in-process; the demo runner and the
tests drive the engine against it.
"""

from __future__ import annotations

import enum
import itertools
import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional, Protocol, Tuple

import numpy as np


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Channel description
# ---------------------------------------------------------------------------

class SampleOccurrence(enum.Enum):
    SYNC = "sync"
    ASYNC = "async"


class SampleValueType(enum.Enum):
    FLOAT = "float32"
    DOUBLE = "float64"


@dataclass(frozen=True)
class SampleFormat:
    occurrence: SampleOccurrence
    value_type: SampleValueType
    dimension: int = 1


DATA_SAMPLE_FORMAT = SampleFormat(SampleOccurrence.SYNC, SampleValueType.FLOAT, 1)
DRIFT_SAMPLE_FORMAT = SampleFormat(SampleOccurrence.ASYNC, SampleValueType.DOUBLE, 1)


@dataclass
class ChannelConfig:
    """Host-visible settings of one output channel.

    Attributes
    ----------
    name : str
        Default display name.
    sample_format : SampleFormat
    samplerate : float or None
        Hz; ``None`` for asynchronous channels.
    value_range : tuple(float, float)
        Expected (min, max) of calibrated values.
    unit : str
    deletable : bool
        Whether the operator may delete the channel.
    """

    name: str
    sample_format: SampleFormat
    samplerate: Optional[float] = None
    value_range: Tuple[float, float] = (0.0, 0.0)
    unit: str = ""
    deletable: bool = True


@dataclass(frozen=True, eq=False)
class ChannelHandle:
    """Identity of a channel in the host registry.

    The instance key is stored explicitly so it can be read back without
    probing channel properties.
    """

    local_id: int
    _key: Optional[str] = None

    def instance_key(self) -> Optional[str]:
        """Return the key the channel was created with, if it has one."""
        return self._key

    def __repr__(self) -> str:
        return f"ChannelHandle(id={self.local_id}, key={self._key!r})"


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------

class ChannelRegistry(Protocol):
    """Host-held output channel registry."""

    def lookup(self, key: str) -> Optional[ChannelHandle]: ...
    def create(self, key: str, config: ChannelConfig) -> ChannelHandle: ...
    def configure(self, handle: ChannelHandle, config: ChannelConfig) -> None: ...
    def remove(self, handle: ChannelHandle) -> None: ...
    def list(self) -> List[ChannelHandle]: ...


class SampleSink(Protocol):
    """Host sample emission boundary."""

    def add_samples(self, handle: ChannelHandle, start_tick: int, samples: np.ndarray) -> None: ...
    def add_async_sample(self, handle: ChannelHandle, tick: int, value: float) -> None: ...


class Severity(enum.IntEnum):
    INFO = logging.INFO
    WARNING = logging.WARNING
    ERROR = logging.ERROR


class Diagnostics(Protocol):
    """Host diagnostics boundary (asynchronous messages)."""

    def report(self, severity: Severity, message: str) -> None: ...


class LoggingDiagnostics:
    """Diagnostics sink that forwards every report to :mod:`logging`."""

    def __init__(self, name: str = "daq_sync.diagnostics") -> None:
        self._logger = logging.getLogger(name)

    def report(self, severity: Severity, message: str) -> None:
        self._logger.log(int(severity), message)


# ---------------------------------------------------------------------------
# In-process host
# ---------------------------------------------------------------------------

@dataclass
class _HostChannel:
    handle: ChannelHandle
    config: ChannelConfig
    blocks: Deque[Tuple[int, np.ndarray]] = field(default_factory=deque)


class MemoryHost:
    """Registry, sample sink and diagnostics kept in memory.

    Parameters
    ----------
    max_blocks : int
        Sample blocks retained per channel; the oldest are evicted first.
    """

    def __init__(self, max_blocks: int = 1000) -> None:
        self.max_blocks = max_blocks
        self._channels: Dict[int, _HostChannel] = {}
        self._ids = itertools.count(1)
        self.reports: List[Tuple[Severity, str]] = []

    # -- ChannelRegistry ------------------------------------------------

    def lookup(self, key: str) -> Optional[ChannelHandle]:
        for ch in self._channels.values():
            if ch.handle.instance_key() == key:
                return ch.handle
        return None

    def create(self, key: str, config: ChannelConfig) -> ChannelHandle:
        handle = ChannelHandle(local_id=next(self._ids), _key=key)
        self._channels[handle.local_id] = _HostChannel(
            handle=handle, config=config, blocks=deque(maxlen=self.max_blocks)
        )
        return handle

    def configure(self, handle: ChannelHandle, config: ChannelConfig) -> None:
        self._channels[handle.local_id].config = config

    def remove(self, handle: ChannelHandle) -> None:
        del self._channels[handle.local_id]

    def list(self) -> List[ChannelHandle]:
        return [ch.handle for ch in self._channels.values()]

    def add_output_channel(self, config: ChannelConfig, key: Optional[str] = None) -> ChannelHandle:
        """Create a channel the way an operator would (optionally without key)."""
        handle = ChannelHandle(local_id=next(self._ids), _key=key)
        self._channels[handle.local_id] = _HostChannel(
            handle=handle, config=config, blocks=deque(maxlen=self.max_blocks)
        )
        return handle

    # -- SampleSink -----------------------------------------------------

    def add_samples(self, handle: ChannelHandle, start_tick: int, samples: np.ndarray) -> None:
        self._channels[handle.local_id].blocks.append((start_tick, np.array(samples, copy=True)))

    def add_async_sample(self, handle: ChannelHandle, tick: int, value: float) -> None:
        self._channels[handle.local_id].blocks.append((tick, np.array([value])))

    # -- Diagnostics ----------------------------------------------------

    def report(self, severity: Severity, message: str) -> None:
        logger.log(int(severity), "[host] %s", message)
        self.reports.append((severity, message))

    # -- Inspection -----------------------------------------------------

    def config_of(self, handle: ChannelHandle) -> ChannelConfig:
        return self._channels[handle.local_id].config

    def blocks_of(self, handle: ChannelHandle) -> List[Tuple[int, np.ndarray]]:
        return list(self._channels[handle.local_id].blocks)

    def keys(self) -> List[Optional[str]]:
        return [ch.handle.instance_key() for ch in self._channels.values()]

    def samples_of(self, key: str) -> np.ndarray:
        """Concatenate every retained block of the channel with *key*."""
        handle = self.lookup(key)
        if handle is None:
            raise KeyError(f"Unknown channel key: {key}")
        blocks = [b for _, b in self._channels[handle.local_id].blocks]
        if not blocks:
            return np.array([], dtype=np.float32)
        return np.concatenate(blocks)

    def __repr__(self) -> str:
        return f"MemoryHost(channels={len(self._channels)}, reports={len(self.reports)})"
