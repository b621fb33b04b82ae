"""DAQopen publisher — DAQ board → ZMQ PUB socket.

Notes:
- Every message carries the full metadata document followed by one
  interleaved int16 block, so subscribers can join at any time.
- The board is read through the ``DaqBoard`` protocol; the simulator in
  ``tests/simulators`` implements it for demos without hardware.
"""

from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional, Protocol

import numpy as np
import zmq

from daq_sync.frame import encode_frame


logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Abstract board interface
# ---------------------------------------------------------------------------

class DaqBoard(Protocol):
    """Protocol for an acquisition board delivering interleaved blocks."""

    def metadata(self) -> Dict[str, Any]: ...
    def read_block(self) -> np.ndarray:
        """Return one interleaved int16 block (blocks until available)."""
        ...


# ---------------------------------------------------------------------------
# Board → ZMQ publisher
# ---------------------------------------------------------------------------

class DaqOpenPublisher:
    """Reads blocks from a board and publishes them as two-part messages.

    Parameters
    ----------
    board : DaqBoard
    address : str
        Endpoint to bind (e.g. ``"tcp://*:50001"``).
    context : zmq.Context or None
    """

    def __init__(
        self,
        board: DaqBoard,
        address: str = "tcp://*:50001",
        context: Optional[zmq.Context] = None,
    ) -> None:
        self.board = board
        self.address = address
        self._context = context or zmq.Context.instance()
        self._socket: Optional[zmq.Socket] = None
        self._running = False

    def start(self) -> None:
        """Bind the PUB socket."""
        self._socket = self._context.socket(zmq.PUB)
        self._socket.bind(self.address)
        self._running = True
        logger.info("Publishing on %s", self.address)

    def stop(self) -> None:
        """Ask ``run()`` to return after the current block."""
        self._running = False

    def close(self) -> None:
        """Close the socket; call after ``run()`` has returned."""
        self._running = False
        if self._socket is not None:
            self._socket.close(linger=0)
            self._socket = None
        logger.info("Stopped publishing on %s", self.address)

    def publish(self, block: np.ndarray, metadata: Optional[Dict[str, Any]] = None) -> None:
        """Send one message with *metadata* (board metadata by default)."""
        if self._socket is None:
            raise RuntimeError("Call start() before publish()")
        meta = metadata if metadata is not None else self.board.metadata()
        self._socket.send_multipart(encode_frame(meta, block))

    def run(self) -> None:
        """Main loop: read blocks from the board and publish them.

        Call from a dedicated thread or as the main loop.
        """
        if self._socket is None:
            raise RuntimeError("Call start() before run()")

        while self._running:
            block = self.board.read_block()
            if block is None or len(block) == 0:
                time.sleep(0.001)
                continue
            self.publish(block)
