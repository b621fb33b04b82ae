"""Frame — one atomic metadata + data message.

Wire format: part 1 is the UTF-8 JSON metadata document, part 2 is the raw
sample block as little-endian signed 16-bit integers.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np

from .errors import FrameShapeError, MetadataParseError


RAW_DTYPE = np.dtype("<i2")


@dataclass
class Frame:
    """One received message.

    Attributes
    ----------
    metadata : dict or None
        Decoded metadata document, if the message carried one.
    data : ndarray
        Interleaved raw samples (int16).
    """

    metadata: Optional[Dict[str, Any]]
    data: np.ndarray

    def __repr__(self) -> str:
        return f"Frame(samples={len(self.data)}, metadata={'yes' if self.metadata else 'no'})"


def decode_frame(meta_part: Optional[bytes], data_part: bytes) -> Frame:
    """Decode the two wire parts into a :class:`Frame`.

    Raises
    ------
    MetadataParseError
        If the metadata part is not a JSON object.
    FrameShapeError
        If the data part holds an odd number of bytes.
    """
    metadata = None
    if meta_part:
        try:
            metadata = json.loads(meta_part)
        except ValueError as exc:
            raise MetadataParseError("<document>", f"invalid JSON ({exc})") from exc
        if not isinstance(metadata, dict):
            raise MetadataParseError("<document>", "expected an object")

    if len(data_part) % RAW_DTYPE.itemsize:
        raise FrameShapeError(len(data_part), RAW_DTYPE.itemsize)
    data = np.frombuffer(data_part, dtype=RAW_DTYPE)
    return Frame(metadata=metadata, data=data)


def encode_frame(metadata: Dict[str, Any], data: np.ndarray) -> list:
    """Encode *metadata* and *data* as the two wire parts."""
    return [
        json.dumps(metadata).encode("utf-8"),
        np.asarray(data, dtype=RAW_DTYPE).tobytes(),
    ]
