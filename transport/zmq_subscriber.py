"""ZMQ subscriber — receive side of the DAQopen two-part message stream.

Notes:
- One logical message = two ZMQ frames sent as a multipart message:
  JSON metadata, then the raw int16 block.  Multipart delivery is atomic.
- Non-blocking receive returns ``None`` when nothing is queued.  Any other
  transport fault on that path is logged and also reported as ``None``;
  it never aborts the caller's drain loop.
- Blocking receive waits indefinitely.
"""

from __future__ import annotations

import logging
from typing import Optional

import zmq

from daq_sync.errors import TransportConnectError
from daq_sync.frame import Frame, decode_frame


logger = logging.getLogger(__name__)


class ZmqSubscriber:
    """SUB socket subscribed to every topic of one publisher.

    Parameters
    ----------
    context : zmq.Context or None
        Shared context; a private one is created (and terminated on
        ``close()``) when omitted.
    """

    def __init__(self, context: Optional[zmq.Context] = None) -> None:
        self._own_context = context is None
        self._context = context if context is not None else zmq.Context()
        self._socket: Optional[zmq.Socket] = None
        self.address: Optional[str] = None

    def connect(self, address: str) -> None:
        """Connect to *address* and subscribe to all messages."""
        socket = self._context.socket(zmq.SUB)
        try:
            socket.setsockopt(zmq.SUBSCRIBE, b"")
            socket.connect(address)
        except zmq.ZMQError as exc:
            socket.close(linger=0)
            raise TransportConnectError(address, 0, str(exc)) from exc
        self._socket = socket
        self.address = address
        logger.info("Subscribed to %s", address)

    def receive(self, blocking: bool = False) -> Optional[Frame]:
        """Return the next frame, or ``None`` if none is available."""
        if self._socket is None:
            return None

        if blocking:
            parts = self._socket.recv_multipart()
        else:
            try:
                parts = self._socket.recv_multipart(flags=zmq.NOBLOCK)
            except zmq.Again:
                return None
            except zmq.ZMQError as exc:
                logger.debug("Receive fault on %s treated as no message: %s", self.address, exc)
                return None

        if len(parts) == 1:
            return decode_frame(None, parts[0])
        if len(parts) > 2:
            logger.warning("Ignoring %d extra message part(s)", len(parts) - 2)
        return decode_frame(parts[0], parts[1])

    def close(self) -> None:
        if self._socket is not None:
            self._socket.close(linger=0)
            self._socket = None
        if self._own_context:
            self._context.term()
            self._own_context = False

    def __repr__(self) -> str:
        return f"ZmqSubscriber(address={self.address!r}, connected={self._socket is not None})"
