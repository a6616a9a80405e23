"""
Shared fixtures for the tunnel tests.
"""
import os
import socket

import pytest

from common.utils.config import ClientConfig, ServerConfig
from server.server import TunnelServer

TESTDATA = os.path.join(os.path.dirname(os.path.abspath(__file__)), "server", "testdata")


@pytest.fixture
def testdata():
    return {
        "ca": os.path.join(TESTDATA, "ca.pem"),
        "cert": os.path.join(TESTDATA, "server.pem"),
        "key": os.path.join(TESTDATA, "server-key.pem"),
    }


@pytest.fixture
def wireguard():
    """UDP socket standing in for the server-side WireGuard endpoint"""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.settimeout(5.0)
    yield sock
    sock.close()


@pytest.fixture
def tunnel_server(testdata, wireguard):
    port = wireguard.getsockname()[1]
    config = ServerConfig(
        tls_cert_file=testdata["cert"],
        tls_key_file=testdata["key"],
        listen_addr="127.0.0.1:0",
        wireguard_remote_addr=f"127.0.0.1:{port}"
    )
    server = TunnelServer(config)
    server.start()
    yield server
    server.close()


@pytest.fixture
def client_config(testdata, tunnel_server):
    """Build client configurations pointing at the test server"""
    def make(**overrides):
        host, port = tunnel_server.address
        settings = {
            "server_addr": f"{host}:{port}",
            "ca_cert_file": testdata["ca"],
            "wireguard_local_addr": "127.0.0.1:0",
            "connect_timeout": 5.0,
        }
        settings.update(overrides)
        return ClientConfig(**settings)
    return make
