"""Metadata parser — turns a DAQ metadata document into channel descriptors.

The publisher sends a JSON document with every frame::

    {
      "daq_info": {
        "board":   {"samplerate": 48000, "adc_range": [-32768, 32767],
                    "differential": false},
        "channel": {"U1": {"ai_pin": "A0", "gain": 0.01, "offset": 0.0,
                           "delay": 0, "unit": "V", "sensor": "div1"}},
        "sensor":  {"div1": {"gain": 100.0, "offset": 0.0, "delay": 2}}
      },
      "data_columns": {"A0": 0}
    }

Notes:
- Column assignment is explicit through ``data_columns[pin]``, never taken
  from the iteration order of ``channel``.
- A document without the ``daq_info`` wrapper (board/channel/sensor at the
  top level) is accepted as well.
- The schema is validated by pydantic; the first failing field is reported
  as a ``MetadataParseError`` carrying its dotted location.  Parsing is pure:
  nothing outside the returned object is touched.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
)

from .errors import MetadataParseError


# ---------------------------------------------------------------------------
# Wire schema
# ---------------------------------------------------------------------------

# Strict types: ints are accepted for floats, but bools and numeric strings
# are rejected rather than coerced.

class _BoardModel(BaseModel):
    samplerate: StrictFloat = Field(gt=0)
    adc_range: Tuple[StrictFloat, StrictFloat]
    differential: StrictBool


class _SensorModel(BaseModel):
    gain: StrictFloat
    offset: StrictFloat
    delay: StrictInt


class _ChannelModel(BaseModel):
    pin: Union[StrictInt, StrictStr] = Field(validation_alias=AliasChoices("ai_pin", "pin"))
    gain: StrictFloat
    offset: StrictFloat
    delay: StrictInt
    unit: StrictStr
    sensor: Optional[StrictStr] = None


class _DaqInfoModel(BaseModel):
    board: _BoardModel
    channel: Dict[str, _ChannelModel]
    sensor: Dict[str, _SensorModel] = Field(default_factory=dict)


class _MetadataDocument(BaseModel):
    daq_info: _DaqInfoModel
    data_columns: Dict[str, StrictInt]


# ---------------------------------------------------------------------------
# Descriptors
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class BoardDescriptor:
    """Acquisition board properties, immutable per metadata snapshot."""

    samplerate: float
    adc_range: Tuple[float, float]
    differential: bool


@dataclass(frozen=True)
class SensorDescriptor:
    """Calibration of an external sensor referenced by a channel."""

    name: str
    gain: float
    offset: float
    delay: int


@dataclass(frozen=True)
class ChannelDescriptor:
    """One physical channel as described by the metadata.

    Attributes
    ----------
    name : str
        Unique key, stable across frames.
    column_index : int
        Position of this channel's samples within an interleaved block.
    unit : str
        Physical unit after calibration.
    gain, offset : float
        Channel calibration (``value = raw * gain - offset``).
    delay : int
        Channel delay in samples.
    sensor_name : str or None
        Name of the referenced sensor, if any.
    """

    name: str
    column_index: int
    unit: str
    gain: float
    offset: float
    delay: int
    sensor_name: Optional[str] = None


@dataclass(frozen=True)
class ParsedMetadata:
    """Result of :func:`parse_metadata`.

    ``daq_info`` keeps the raw board/channel/sensor document so later frames
    can be checked for drift against this snapshot.
    """

    board: BoardDescriptor
    channels: Dict[str, ChannelDescriptor]
    sensors: Dict[str, SensorDescriptor] = field(default_factory=dict)
    daq_info: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def channel_count(self) -> int:
        return len(self.channels)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

def daq_info_of(payload: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    """Return the board/channel/sensor part of a raw metadata document."""
    if "daq_info" in payload:
        return payload["daq_info"]
    if "board" in payload or "channel" in payload:
        return {k: payload[k] for k in ("board", "channel", "sensor") if k in payload}
    return None


def _normalize(payload: Mapping[str, Any]) -> Dict[str, Any]:
    info = daq_info_of(payload)
    doc = {"daq_info": info}
    if "data_columns" in payload:
        doc["data_columns"] = payload["data_columns"]
    return doc


def _first_error(exc: ValidationError) -> MetadataParseError:
    err = exc.errors()[0]
    loc = ".".join(str(part) for part in err.get("loc", ())) or "<document>"
    return MetadataParseError(loc, err.get("msg", "invalid value"))


def parse_metadata(payload: Union[Mapping[str, Any], str, bytes]) -> ParsedMetadata:
    """Validate *payload* and build the board and channel descriptors.

    Parameters
    ----------
    payload : mapping, str or bytes
        Decoded metadata document, or its JSON text.

    Returns
    -------
    ParsedMetadata

    Raises
    ------
    MetadataParseError
        If a required field is missing or malformed, a channel references an
        unknown sensor, or a pin has no valid column.
    """
    if isinstance(payload, (str, bytes, bytearray)):
        try:
            payload = json.loads(payload)
        except ValueError as exc:
            raise MetadataParseError("<document>", f"invalid JSON ({exc})") from exc
    if not isinstance(payload, Mapping):
        raise MetadataParseError("<document>", "expected an object")

    try:
        doc = _MetadataDocument.model_validate(_normalize(payload))
    except ValidationError as exc:
        raise _first_error(exc) from exc

    info = doc.daq_info
    board = BoardDescriptor(
        samplerate=info.board.samplerate,
        adc_range=(info.board.adc_range[0], info.board.adc_range[1]),
        differential=info.board.differential,
    )
    sensors = {
        name: SensorDescriptor(name=name, gain=s.gain, offset=s.offset, delay=s.delay)
        for name, s in info.sensor.items()
    }

    n_channels = len(info.channel)
    channels: Dict[str, ChannelDescriptor] = {}
    used_columns: Dict[int, str] = {}
    for name, ch in info.channel.items():
        sensor_name = ch.sensor or None
        if sensor_name is not None and sensor_name not in sensors:
            raise MetadataParseError(
                f"daq_info.channel.{name}.sensor", f"unknown sensor '{sensor_name}'"
            )

        pin = str(ch.pin)
        if pin not in doc.data_columns:
            raise MetadataParseError(f"data_columns.{pin}", f"no column for channel '{name}'")
        column = doc.data_columns[pin]
        if not 0 <= column < n_channels:
            raise MetadataParseError(
                f"data_columns.{pin}",
                f"column {column} outside [0, {n_channels}) for channel '{name}'",
            )
        if column in used_columns:
            raise MetadataParseError(
                f"data_columns.{pin}",
                f"column {column} already used by channel '{used_columns[column]}'",
            )
        used_columns[column] = name

        channels[name] = ChannelDescriptor(
            name=name,
            column_index=column,
            unit=ch.unit,
            gain=ch.gain,
            offset=ch.offset,
            delay=ch.delay,
            sensor_name=sensor_name,
        )

    return ParsedMetadata(
        board=board,
        channels=channels,
        sensors=sensors,
        daq_info=dict(daq_info_of(payload)),
    )
