"""Transport seam between the relay core and the network.

The core only needs a handful of operations from a connection: blocking
receive with a timeout, fallible send, protocol keepalives and close. The
WebSocket adapter here maps a ``websockets`` synchronous server connection onto
that contract; tests substitute an in-memory implementation.
"""

from __future__ import annotations

import logging
import threading
from typing import Protocol

from websockets.exceptions import ConnectionClosed
from websockets.sync.server import ServerConnection

from .constants import SUBPROTOCOL_CBOR
from .util import fmt_addr


class TransportClosed(Exception):
    """The peer closed the connection or the connection failed."""


class DeliveryError(Exception):
    """A frame could not be written to a connection."""


class Transport(Protocol):
    peer_address: str
    binary: bool

    def recv(self, timeout: float | None = None) -> str | bytes:
        """Return the next data frame.

        Raises TimeoutError if nothing arrives within ``timeout`` seconds and
        TransportClosed once the connection is gone.
        """
        ...

    def send(self, frame: str | bytes) -> None:
        """Write one frame. Raises DeliveryError on failure."""
        ...

    def send_keepalive(self) -> None: ...

    def keepalive_acked(self) -> bool: ...

    def close(self) -> None: ...


class WebSocketTransport:
    def __init__(self, conn: ServerConnection) -> None:
        self._conn = conn
        self.log = logging.getLogger("chatrelay.transport")
        self.peer_address = fmt_addr(conn.remote_address)
        self.binary = conn.subprotocol == SUBPROTOCOL_CBOR
        # Broadcasts from other connection threads write here concurrently.
        self._send_lock = threading.Lock()
        self._pong_waiter: threading.Event | None = None

    def recv(self, timeout: float | None = None) -> str | bytes:
        try:
            return self._conn.recv(timeout=timeout)
        except ConnectionClosed as e:
            raise TransportClosed(str(e)) from e

    def send(self, frame: str | bytes) -> None:
        try:
            with self._send_lock:
                self._conn.send(frame)
        except (ConnectionClosed, OSError, RuntimeError) as e:
            raise DeliveryError(str(e)) from e

    def send_keepalive(self) -> None:
        try:
            self._pong_waiter = self._conn.ping()
        except (ConnectionClosed, OSError, RuntimeError) as e:
            raise DeliveryError(str(e)) from e

    def keepalive_acked(self) -> bool:
        waiter = self._pong_waiter
        if waiter is not None and waiter.is_set():
            self._pong_waiter = None
            return True
        return False

    def close(self) -> None:
        try:
            self._conn.close()
        except (OSError, RuntimeError):
            self.log.debug("Close failed peer=%s", self.peer_address, exc_info=True)
