"""End-to-end tests against a live broker on an ephemeral port."""

import socket
import struct
import threading
import time

import pytest

from eventor.client import BrokerClient
from eventor.config import BrokerConfig
from eventor.protocol import NULL_TOPIC_ID, ResponseParser
from eventor.server import BrokerServer
from wire_helpers import build_request, describe_body, read_response, recv_all


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.time() + timeout
    while time.time() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


class TestBrokerRequests:
    """Requests over a real TCP connection."""

    def test_api_versions(self, broker) -> None:
        host, port = broker.address
        with BrokerClient(host, port) as client:
            result = client.api_versions(4)
        assert result["error_code"] == 0
        assert set(result["apis"]) == {18, 75}

    def test_api_versions_unsupported_version(self, broker) -> None:
        host, port = broker.address
        with BrokerClient(host, port) as client:
            result = client.api_versions(5)
        assert result["error_code"] == 35
        assert result["apis"][18]["max_version"] == 4

    def test_describe_unknown_topic(self, broker) -> None:
        host, port = broker.address
        with BrokerClient(host, port) as client:
            result = client.describe_topic_partitions(["foo"])
        (topic,) = result["topics"]
        assert topic["error_code"] == 3
        assert topic["name"] == "foo"
        assert topic["topic_id"] == NULL_TOPIC_ID
        assert topic["partition_count"] == 0

    def test_sequential_requests_one_connection(self, raw_conn) -> None:
        raw_conn.sendall(build_request(18, 3, 0x11111111))
        first = read_response(raw_conn)
        raw_conn.sendall(build_request(75, 0, 0x22222222, describe_body(b"test-topic")))
        second = read_response(raw_conn)

        assert first[:4] == b"\x11\x11\x11\x11"
        assert second[:4] == b"\x22\x22\x22\x22"
        assert ResponseParser.parse_describe_topic_partitions(second)["topics"][0]["name"] == "test-topic"

    def test_pipelined_requests_not_combined(self, raw_conn) -> None:
        raw_conn.sendall(build_request(18, 4, 1) + build_request(18, 4, 2))
        first = read_response(raw_conn)
        second = read_response(raw_conn)
        assert len(first) == 26
        assert len(second) == 26
        assert struct.unpack(">I", first[:4])[0] == 1
        assert struct.unpack(">I", second[:4])[0] == 2

    def test_unknown_api_key_then_valid_request(self, broker) -> None:
        host, port = broker.address
        with BrokerClient(host, port) as client:
            error = client.raw_request(3, 0)
            assert error["error_code"] == 35
            assert error["raw"][4:] == b"\x00\x23\x00\x00"
            assert client.api_versions()["error_code"] == 0


class TestBrokerFailures:
    """Connection-level failures stay local to their connection."""

    def test_short_frame_closes_with_no_bytes(self, broker, raw_conn) -> None:
        raw_conn.sendall(struct.pack(">I", 7))
        assert recv_all(raw_conn) == b""

        host, port = broker.address
        with BrokerClient(host, port) as client:
            assert client.api_versions()["error_code"] == 0

    def test_peer_disconnect_mid_frame(self, broker) -> None:
        sock = socket.create_connection(broker.address, timeout=5)
        sock.sendall(struct.pack(">I", 100) + b"\x00" * 10)
        sock.close()

        host, port = broker.address
        with BrokerClient(host, port) as client:
            assert client.describe_topic_partitions(["x"])["topics"][0]["name"] == "x"

    def test_client_sees_truncated_response(self) -> None:
        listener = socket.socket()
        listener.bind(("127.0.0.1", 0))
        listener.listen(1)
        host, port = listener.getsockname()[:2]

        def answer_half() -> None:
            conn, _ = listener.accept()
            read_response(conn)
            conn.sendall(struct.pack(">I", 26) + b"\x00\x00\x00\x01")
            conn.close()

        peer = threading.Thread(target=answer_half, daemon=True)
        peer.start()
        client = BrokerClient(host, port)
        client.connect(timeout=5)
        try:
            with pytest.raises(ConnectionError, match="Failed reading response"):
                client.api_versions()
            assert not client.connected
        finally:
            client.disconnect()
            peer.join(timeout=5)
            listener.close()

    def test_concurrent_clients(self, broker) -> None:
        host, port = broker.address
        results = []
        lock = threading.Lock()

        def worker(offset: int) -> None:
            with BrokerClient(host, port, first_correlation_id=offset * 1000) as client:
                ok = all(client.api_versions()["error_code"] == 0 for _ in range(5))
                ok = ok and client.describe_topic_partitions([f"t{offset}"])["topics"][0]["name"] == f"t{offset}"
            with lock:
                results.append(ok)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=10)
        assert results == [True] * 5


class TestBrokerLifecycle:
    """Start, session tracking and shutdown."""

    def test_session_tracking(self, broker) -> None:
        host, port = broker.address
        client = BrokerClient(host, port)
        client.connect()
        client.api_versions()
        assert _wait_for(lambda: broker.active_sessions == 1)
        assert _wait_for(lambda: broker.status()[0]["requests_handled"] == 1)
        client.disconnect()
        assert _wait_for(lambda: broker.active_sessions == 0)

    def test_shutdown_closes_sessions(self) -> None:
        server = BrokerServer(BrokerConfig(port=0))
        server.start()
        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()

        sock = socket.create_connection(server.address, timeout=5)
        assert _wait_for(lambda: server.active_sessions == 1)
        server.shutdown()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert recv_all(sock) == b""
        sock.close()
        with pytest.raises(RuntimeError):
            server.address

    def test_no_restart_after_shutdown(self) -> None:
        server = BrokerServer(BrokerConfig(port=0))
        host, port = server.start()
        server.shutdown()

        thread = threading.Thread(target=server.serve_forever, daemon=True)
        thread.start()
        thread.join(timeout=1)

        assert not thread.is_alive()
        with pytest.raises(RuntimeError, match="shut down"):
            server.start()
        with pytest.raises(ConnectionError):
            BrokerClient(host, port).connect(timeout=1)

    def test_connect_refused(self) -> None:
        probe = socket.socket()
        probe.bind(("127.0.0.1", 0))
        port = probe.getsockname()[1]
        probe.close()
        with pytest.raises(ConnectionError):
            BrokerClient("127.0.0.1", port).connect(timeout=1)

    def test_invalid_config_rejected(self) -> None:
        with pytest.raises(ValueError):
            BrokerServer(BrokerConfig(port=70000))
