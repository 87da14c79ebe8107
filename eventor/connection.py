"""
Broker Connection Handling

Frame reading and writing over a connected socket, and the per-connection
session loop that drives one client from its first request until it goes
away:

    AWAITING_FRAME -> HEADER_DECODED -> DISPATCHED -> RESPONSE_WRITTEN -> AWAITING_FRAME
                                                                        ...
    any state -> CLOSED   on FramingError, TruncatedRead, MalformedField
                          or WriteFailure

Requests on one connection are strictly sequential: a full frame is read,
answered and written before the next read starts. Nothing is shared
between sessions.
"""

import socket
import struct
import threading
import time
from enum import Enum
from typing import Optional

from loguru import logger

from eventor.errors import FramingError, MalformedField, TruncatedRead, WriteFailure
from eventor.handlers import Dispatcher
from eventor.protocol import HEADER_SIZE, LENGTH_PREFIX_SIZE, RequestParser

RECV_CHUNK_SIZE = 65536


# =========================================================================
#  Frame I/O
# =========================================================================

def recv_exact(sock: socket.socket, n: int) -> bytes:
    """Read exactly `n` bytes or raise TruncatedRead."""
    buf = bytearray()
    while len(buf) < n:
        try:
            chunk = sock.recv(min(n - len(buf), RECV_CHUNK_SIZE))
        except OSError as e:
            raise TruncatedRead(n, len(buf), str(e)) from e
        if not chunk:
            raise TruncatedRead(n, len(buf))
        buf += chunk
    return bytes(buf)


def read_frame(sock: socket.socket) -> bytes:
    """Read one length-prefixed frame and return the bytes after the prefix."""
    prefix = recv_exact(sock, LENGTH_PREFIX_SIZE)
    length = struct.unpack('>I', prefix)[0]
    if length < HEADER_SIZE:
        raise FramingError(length, HEADER_SIZE)
    return recv_exact(sock, length)


def write_frame(sock: socket.socket, data: bytes) -> None:
    try:
        sock.sendall(data)
    except OSError as e:
        raise WriteFailure(f"Failed to write {len(data)} bytes: {e}", e) from e


# =========================================================================
#  Client Session
# =========================================================================

class SessionState(Enum):
    AWAITING_FRAME = "awaiting_frame"
    HEADER_DECODED = "header_decoded"
    DISPATCHED = "dispatched"
    RESPONSE_WRITTEN = "response_written"
    CLOSED = "closed"


def _peer_name(sock: socket.socket) -> str:
    try:
        host, port = sock.getpeername()[:2]
        return f"{host}:{port}"
    except (OSError, ValueError, TypeError):
        return "unknown"


class ClientSession:
    """Serves one accepted connection until the peer leaves or errs."""

    def __init__(self, sock: socket.socket, dispatcher: Dispatcher,
                 peer: Optional[str] = None):
        self._sock = sock
        self.dispatcher = dispatcher
        self.peer = peer or _peer_name(sock)
        self.state = SessionState.AWAITING_FRAME
        self.requests_handled = 0
        self._connect_time = time.time()
        self._lock = threading.Lock()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def run(self) -> None:
        """Request/response loop. Returns once the connection is closed."""
        try:
            while True:
                self.state = SessionState.AWAITING_FRAME
                data = read_frame(self._sock)
                header = RequestParser.parse_header(data)
                self.state = SessionState.HEADER_DECODED

                response = self.dispatcher.dispatch(header)
                self.state = SessionState.DISPATCHED

                write_frame(self._sock, response)
                self.state = SessionState.RESPONSE_WRITTEN
                self.requests_handled += 1
        except TruncatedRead as e:
            if e.received == 0 and e.expected == LENGTH_PREFIX_SIZE:
                logger.debug("Peer {} disconnected after {} request(s)",
                             self.peer, self.requests_handled)
            else:
                logger.warning("Peer {}: {}", self.peer, e)
        except FramingError as e:
            logger.warning("Peer {}: {}; closing without response", self.peer, e)
        except MalformedField as e:
            logger.warning("Peer {}: {}; closing", self.peer, e)
        except WriteFailure as e:
            logger.warning("Peer {}: {}", self.peer, e)
        finally:
            self.close()

    def close(self) -> None:
        """Close the socket. Safe to call from another thread, and more than once."""
        with self._lock:
            self.state = SessionState.CLOSED
            if self._closed:
                return
            self._closed = True
        try:
            # wakes a reader blocked in recv() on another thread
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()

    def status(self) -> dict:
        return {
            "peer": self.peer,
            "state": self.state.value,
            "requests_handled": self.requests_handled,
            "uptime_seconds": round(time.time() - self._connect_time, 1),
        }
