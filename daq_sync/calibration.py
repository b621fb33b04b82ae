"""Calibration resolver — chain channel calibration through optional sensors.

For channel ``c`` with optional sensor ``s``::

    gain   = c.gain * s.gain
    offset = c.offset * s.gain + s.offset
    delay  = c.delay + s.delay

Samples are calibrated as ``value = raw * gain - offset`` (multiply first).

Delay normalization:
  ``delay_min`` starts at 0 and is only ever lowered by a negative effective
  delay.  An all-positive delay set therefore keeps its delays as they are;
  only a negative delay shifts every channel up.  Normalized delays are
  captured once per channel-set rebuild.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Mapping, Optional

import numpy as np

from .errors import MetadataParseError
from .metadata import ChannelDescriptor, SensorDescriptor

_INT16_MIN = int(np.iinfo(np.int16).min)
_INT16_MAX = int(np.iinfo(np.int16).max)


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EffectiveCalibration:
    """Per-channel calibration after sensor chaining.

    ``delay`` is the raw effective delay; ``normalized_delay`` is relative to
    the baseline of the channel set it was resolved with and is never
    negative.
    """

    gain: np.float32
    offset: np.float32
    delay: int
    normalized_delay: np.int16 = np.int16(0)


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

def chain_calibration(
    channel: ChannelDescriptor,
    sensor: Optional[SensorDescriptor] = None,
) -> EffectiveCalibration:
    """Combine *channel* calibration with its *sensor* (if any)."""
    if sensor is None:
        return EffectiveCalibration(
            gain=np.float32(channel.gain),
            offset=np.float32(channel.offset),
            delay=int(channel.delay),
        )
    return EffectiveCalibration(
        gain=np.float32(channel.gain * sensor.gain),
        offset=np.float32(channel.offset * sensor.gain + sensor.offset),
        delay=int(channel.delay + sensor.delay),
    )


def delay_baseline(delays: Mapping[str, int]) -> int:
    """Return the normalization baseline: 0, lowered by any negative delay."""
    delay_min = 0
    for d in delays.values():
        if d < delay_min:
            delay_min = d
    return delay_min


def normalize_delays(delays: Mapping[str, int]) -> Dict[str, int]:
    """Shift *delays* by :func:`delay_baseline` so none is negative."""
    delay_min = delay_baseline(delays)
    return {name: d - delay_min for name, d in delays.items()}


def resolve_calibrations(
    channels: Mapping[str, ChannelDescriptor],
    sensors: Mapping[str, SensorDescriptor],
) -> Dict[str, EffectiveCalibration]:
    """Resolve effective calibration and normalized delay for a channel set.

    Parameters
    ----------
    channels : dict[str, ChannelDescriptor]
        The full channel set of one metadata snapshot.
    sensors : dict[str, SensorDescriptor]
        Sensors referenced by name from the channels.

    Returns
    -------
    dict[str, EffectiveCalibration]
        Keyed like *channels*.

    Raises
    ------
    MetadataParseError
        If a normalized delay does not fit the int16 delay storage.
    """
    raw = {
        name: chain_calibration(
            ch, sensors[ch.sensor_name] if ch.sensor_name is not None else None
        )
        for name, ch in channels.items()
    }
    normalized = normalize_delays({name: cal.delay for name, cal in raw.items()})
    for name, delay in normalized.items():
        if not _INT16_MIN <= delay <= _INT16_MAX:
            raise MetadataParseError(
                f"daq_info.channel.{name}.delay",
                f"normalized delay {delay} outside int16 range",
            )
    return {
        name: EffectiveCalibration(
            gain=cal.gain,
            offset=cal.offset,
            delay=cal.delay,
            normalized_delay=np.int16(normalized[name]),
        )
        for name, cal in raw.items()
    }


# ---------------------------------------------------------------------------
# Sample calibration
# ---------------------------------------------------------------------------

def apply_calibration(
    raw: np.ndarray,
    gain: float,
    offset: float,
    out: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Return ``raw * gain - offset`` as float32.

    Parameters
    ----------
    raw : ndarray
        Raw integer samples (any stride).
    gain, offset : float
        Effective calibration.
    out : ndarray or None
        Optional float32 buffer of the same length to write into.
    """
    if out is None:
        out = np.empty(len(raw), dtype=np.float32)
    np.multiply(raw, np.float32(gain), out=out)
    np.subtract(out, np.float32(offset), out=out)
    return out
