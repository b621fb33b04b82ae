"""Error kinds raised and reported by the acquisition engine.

Fatal kinds (connect, metadata) abort the current update cycle and leave the
previously published channel set untouched.  ``FrameShapeError`` only drops
the offending frame.  ``MetadataDriftWarning`` is logged, never raised.
"""

from __future__ import annotations

from typing import Optional


class DaqSyncError(Exception):
    """Base class for all engine errors."""


class MetadataParseError(DaqSyncError):
    """A required metadata field is missing or has the wrong shape.

    Parameters
    ----------
    field : str
        Dotted location of the offending field (e.g.
        ``"daq_info.channel.U1.gain"``).
    reason : str
        Human readable description of what is wrong.
    """

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"metadata field '{field}': {reason}")


class TransportConnectError(DaqSyncError):
    """The transport could not deliver a first frame within the retry budget."""

    def __init__(self, address: str, attempts: int, reason: Optional[str] = None) -> None:
        self.address = address
        self.attempts = attempts
        self.reason = reason
        msg = f"no frame from '{address}' after {attempts} attempt(s)"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class FrameShapeError(DaqSyncError):
    """A data block does not split evenly across the known channels."""

    def __init__(self, length: int, channel_count: int) -> None:
        self.length = length
        self.channel_count = channel_count
        super().__init__(
            f"block of {length} samples is not divisible by "
            f"{channel_count} channel(s)"
        )


class MetadataDriftWarning(UserWarning):
    """Frame metadata differs from the snapshot captured at the last rebuild."""
