"""
Tests for the tunnel client session.
"""
import socket
import threading

import pytest

import client.client as client_module
from client.client import STATE_CLOSED, STATE_CONNECTED, TunnelClient, main
from common.crypto.fingerprint import pem_file_fingerprint
from common.networking.mux import SessionClosedError
from common.networking.tunnel import TunnelError
from common.utils.config import ClientConfig


class FakeConnection:
    def __init__(self):
        self.close_calls = 0

    def getpeercert(self, binary_form=False):
        return None

    def close(self):
        self.close_calls += 1


class FakeStream:
    def __init__(self):
        self.cond = threading.Condition()
        self.is_closed = False
        self.close_calls = 0
        self.reset_calls = 0

    def read(self, size=65536):
        with self.cond:
            while not self.is_closed:
                self.cond.wait()
        return b""

    def write(self, data):
        raise BrokenPipeError("not used")

    def close(self):
        with self.cond:
            self.close_calls += 1
            self.is_closed = True
            self.cond.notify_all()

    def reset(self):
        with self.cond:
            self.reset_calls += 1
            self.is_closed = True
            self.cond.notify_all()


class FakeMux:
    instances = []
    fail_open = False
    fail_close = False

    def __init__(self, conn, client, name=None):
        self.conn = conn
        self.client = client
        self.closed = False
        self.close_calls = 0
        self.stream = FakeStream()
        FakeMux.instances.append(self)

    def open_stream(self):
        if FakeMux.fail_open:
            raise SessionClosedError("peer went away")
        return self.stream

    def close(self):
        self.close_calls += 1
        self.closed = True
        if FakeMux.fail_close:
            raise OSError("injected close failure")


@pytest.fixture
def fake_transport(monkeypatch):
    conn = FakeConnection()
    FakeMux.instances = []
    FakeMux.fail_open = False
    FakeMux.fail_close = False
    monkeypatch.setattr(client_module, "dial_tls", lambda address, context, timeout: conn)
    monkeypatch.setattr(client_module, "MuxSession", FakeMux)
    return conn


def make_config(**overrides):
    settings = {"server_addr": "127.0.0.1:8443", "wireguard_local_addr": "127.0.0.1:0"}
    settings.update(overrides)
    return ClientConfig(**settings)


def test_start_opens_one_stream_and_bridge(fake_transport):
    client = TunnelClient(make_config())
    client.start()
    try:
        assert client.state == STATE_CONNECTED
        assert len(FakeMux.instances) == 1
        assert FakeMux.instances[0].client is True
        assert client.bridge.alive
        assert client.local_address[0] == "127.0.0.1"
        assert client.get_status()["session_open"] is True
    finally:
        client.close()


def test_close_releases_everything_once(fake_transport):
    client = TunnelClient(make_config())
    client.start()
    mux = FakeMux.instances[0]
    udp_socket = client.udp_socket

    client.close()
    client.close()

    assert client.state == STATE_CLOSED
    assert udp_socket.fileno() == -1
    assert mux.stream.close_calls == 1
    assert mux.stream.reset_calls == 1
    assert mux.close_calls == 1
    assert fake_transport.close_calls == 1
    assert client.bridge.join(timeout=5.0)
    assert client.local_address is None


def test_close_continues_after_a_failing_step(fake_transport):
    FakeMux.fail_close = True
    client = TunnelClient(make_config())
    client.start()

    client.close()

    assert FakeMux.instances[0].close_calls == 1
    assert fake_transport.close_calls == 1


def test_stream_open_failure_fails_fast(fake_transport):
    FakeMux.fail_open = True
    client = TunnelClient(make_config())

    with pytest.raises(TunnelError):
        client.start()

    assert client.bridge is None
    assert client.udp_socket is None
    assert client.state == STATE_CLOSED
    assert fake_transport.close_calls == 1

    with pytest.raises(TunnelError):
        client.start()


def test_udp_bind_failure_closes_stream(fake_transport):
    taken = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    taken.bind(("127.0.0.1", 0))
    try:
        port = taken.getsockname()[1]
        client = TunnelClient(make_config(wireguard_local_addr=f"127.0.0.1:{port}"))

        with pytest.raises(TunnelError):
            client.start()

        assert FakeMux.instances[0].stream.close_calls == 1
        assert fake_transport.close_calls == 1
    finally:
        taken.close()


def test_connect_to_real_server(client_config):
    client = TunnelClient(client_config())
    client.start()
    try:
        assert client.running
        assert client.server_fingerprint is not None
    finally:
        client.close()


def test_untrusted_server_is_rejected(client_config):
    client = TunnelClient(client_config(ca_cert_file=None))

    with pytest.raises(TunnelError):
        client.start()
    assert client.state == STATE_CLOSED


def test_pinned_fingerprint(client_config, testdata):
    pinned = pem_file_fingerprint(testdata["cert"]).replace(":", "").lower()
    client = TunnelClient(client_config(server_cert_fingerprint=pinned))
    client.start()
    client.close()

    wrong = "00" * 32
    client = TunnelClient(client_config(server_cert_fingerprint=wrong))
    with pytest.raises(TunnelError):
        client.start()


def test_main_fails_without_config(monkeypatch, tmp_path):
    monkeypatch.setattr(client_module, "setup_logging", lambda *args, **kwargs: None)

    assert main(["--config", str(tmp_path / "missing.yaml")]) == 1


def test_main_fails_when_server_unreachable(monkeypatch, tmp_path):
    monkeypatch.setattr(client_module, "setup_logging", lambda *args, **kwargs: None)

    listener = socket.socket()
    listener.bind(("127.0.0.1", 0))
    port = listener.getsockname()[1]
    listener.close()

    path = tmp_path / "client.yaml"
    path.write_text("wireguard_local_addr: '127.0.0.1:0'\nconnect_timeout: 2\n")

    assert main(["--config", str(path), "--server", f"127.0.0.1:{port}"]) == 1
