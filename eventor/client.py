"""
Broker Client

Minimal blocking client for the wire subset the broker speaks. Used by the
`probe` command and by the test suite to talk to a running broker.
"""

import socket
import threading
import time
from typing import Optional, Dict, Any, List

from eventor.protocol import LENGTH_PREFIX_SIZE, RequestBuilder, ResponseParser, decode_uint32
from eventor.config import DEFAULT_HOST, DEFAULT_PORT
from eventor.connection import recv_exact
from eventor.errors import TruncatedRead


class BrokerClient:
    """A single TCP connection to a broker."""

    def __init__(self, host: str = DEFAULT_HOST, port: int = DEFAULT_PORT,
                 first_correlation_id: int = 0):
        self.host = host
        self.port = port
        self.builder = RequestBuilder(first_correlation_id)
        self.parser = ResponseParser()

        self._sock: Optional[socket.socket] = None
        self._lock = threading.RLock()
        self._connected = False
        self._connect_time: Optional[float] = None
        self._request_count = 0

    @property
    def connected(self) -> bool:
        return self._connected

    def __enter__(self) -> "BrokerClient":
        self.connect()
        return self

    def __exit__(self, *exc) -> None:
        self.disconnect()

    def connect(self, timeout: float = 10.0) -> Dict[str, Any]:
        with self._lock:
            if self._connected:
                return {"status": "already_connected", "host": self.host, "port": self.port}

            sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
            sock.settimeout(timeout)
            try:
                sock.connect((self.host, self.port))
            except OSError as e:
                sock.close()
                raise ConnectionError(f"Failed to connect to {self.host}:{self.port}: {e}")

            self._sock = sock
            self._connected = True
            self._connect_time = time.time()
            return {"status": "connected", "host": self.host, "port": self.port}

    def disconnect(self) -> Dict[str, Any]:
        with self._lock:
            if self._sock is not None:
                self._sock.close()
                self._sock = None
            was_connected = self._connected
            self._connected = False
            return {"status": "disconnected" if was_connected else "not_connected",
                    "requests_sent": self._request_count}

    def send(self, data: bytes) -> None:
        with self._lock:
            if not self._connected or self._sock is None:
                raise ConnectionError("Not connected")
            self._sock.sendall(data)
            self._request_count += 1

    def recv_response(self, timeout: float = 10.0) -> bytes:
        """Read one response frame; returns everything after the length prefix."""
        with self._lock:
            if not self._connected or self._sock is None:
                raise ConnectionError("Not connected")
            self._sock.settimeout(timeout)
            try:
                prefix = recv_exact(self._sock, LENGTH_PREFIX_SIZE)
                length, _ = decode_uint32(prefix, 0, "message_size")
                return recv_exact(self._sock, length)
            except TruncatedRead as e:
                self._connected = False
                raise ConnectionError(f"Failed reading response: {e}") from e

    def send_recv(self, data: bytes, timeout: float = 10.0) -> bytes:
        with self._lock:
            self.send(data)
            return self.recv_response(timeout)

    # =====================================================================
    #  Requests
    # =====================================================================

    def api_versions(self, api_version: int = 4) -> Dict[str, Any]:
        req, corr = self.builder.api_versions(api_version)
        result = self.parser.parse_api_versions(self.send_recv(req))
        self._check_correlation(corr, result)
        return result

    def describe_topic_partitions(self, topics: List[str]) -> Dict[str, Any]:
        req, corr = self.builder.describe_topic_partitions(topics)
        result = self.parser.parse_describe_topic_partitions(self.send_recv(req))
        self._check_correlation(corr, result)
        return result

    def raw_request(self, api_key: int, api_version: int = 0, body: bytes = b'') -> Dict[str, Any]:
        """Send an arbitrary request and parse the reply as an error frame."""
        req, corr = self.builder.raw(api_key, api_version, body)
        resp = self.send_recv(req)
        result = self.parser.parse_error(resp)
        result["raw"] = resp
        self._check_correlation(corr, result)
        return result

    @staticmethod
    def _check_correlation(expected: int, result: Dict[str, Any]) -> None:
        if result["correlation_id"] != expected:
            raise ValueError(
                f"Correlation id mismatch: sent {expected}, got {result['correlation_id']}"
            )
