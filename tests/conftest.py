"""Shared fixtures: a DUT server on an ephemeral loopback port and a client for it."""

import socket

import pytest

from dut.client import DutClient
from dut.config import CONFIG
from dut.rpc_server import DutServer


@pytest.fixture
def server():
    cfg = CONFIG.copy()
    cfg.update({"RPC_HOST": "127.0.0.1", "RPC_PORT": 0})
    srv = DutServer(cfg=cfg)
    srv.start()
    yield srv
    srv.stop()


@pytest.fixture
def client(server):
    host, port = server.address
    return DutClient(host, port, timeout=5.0)


@pytest.fixture
def fds():
    """Collects raw descriptors created by a test and closes whatever is left."""
    opened = []
    yield opened
    for fd in opened:
        try:
            socket.close(fd)
        except OSError:
            pass
