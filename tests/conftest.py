"""Shared fixtures for the Eventor test suite."""

import socket
import sys
import threading

import pytest
from loguru import logger

from eventor.config import BrokerConfig
from eventor.server import BrokerServer


@pytest.fixture(autouse=True)
def _reset_logging():
    """Undo any sinks a test (or the CLI) installed."""
    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def broker():
    """A running broker on an ephemeral port."""
    server = BrokerServer(BrokerConfig(host="127.0.0.1", port=0))
    server.start()
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    thread.join(timeout=5)


@pytest.fixture
def raw_conn(broker):
    """A plain socket connected to the running broker."""
    sock = socket.create_connection(broker.address, timeout=5)
    yield sock
    sock.close()
