"""
Tests for the server-side session: accepting streams and bridging each one.
"""
import threading
import time

import pytest

import server.session as session_module
from common.networking.address import resolve_udp_address
from common.networking.framing import FrameReader, encode_frame
from common.networking.mux import MuxSession
from common.networking.tunnel import create_client_context, dial_tls
from server.session import ServerSession, SessionRegistry


@pytest.fixture
def mux_client(testdata, tunnel_server):
    """Raw client-side multiplexed session to the test server"""
    host, port = tunnel_server.address
    conn = dial_tls(f"{host}:{port}", create_client_context(testdata["ca"]), timeout=5.0)
    mux = MuxSession(conn, client=True, name="test-client")
    yield mux
    mux.close()
    conn.close()


def wait_for(condition, timeout=5.0):
    deadline = time.time() + timeout
    while time.time() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return condition()


def test_every_stream_goes_to_the_same_target(mux_client, wireguard):
    first = mux_client.open_stream()
    second = mux_client.open_stream()

    first.write(encode_frame(b"one"))
    second.write(encode_frame(b"two"))

    senders = {}
    for _ in range(2):
        data, sender = wireguard.recvfrom(2048)
        senders[data] = sender

    assert set(senders) == {b"one", b"two"}
    assert senders[b"one"] != senders[b"two"]

    wireguard.sendto(b"back to two", senders[b"two"])
    assert FrameReader(second).read_frame() == b"back to two"


def test_udp_dial_failure_closes_only_that_stream(monkeypatch, mux_client, wireguard, tunnel_server):
    real_dialer = session_module.open_udp_dialer
    calls = []

    def flaky_dialer(address):
        calls.append(address)
        if len(calls) == 1:
            raise OSError("injected dial failure")
        return real_dialer(address)

    monkeypatch.setattr(session_module, "open_udp_dialer", flaky_dialer)

    failed = mux_client.open_stream()
    assert failed.read() == b""

    working = mux_client.open_stream()
    working.write(encode_frame(b"after failure"))
    assert wireguard.recvfrom(2048)[0] == b"after failure"

    session = tunnel_server.sessions.list()[0]
    assert session.streams_accepted == 2
    assert session.streams_failed == 1
    assert not session.closed


def test_session_ends_when_connection_closes(mux_client, tunnel_server):
    stream = mux_client.open_stream()
    stream.write(encode_frame(b"hello"))
    assert wait_for(lambda: len(tunnel_server.sessions) == 1)
    session = tunnel_server.sessions.list()[0]
    assert wait_for(lambda: len(session.bridges) == 1)
    bridge = session.bridges[0]

    mux_client.close()

    assert wait_for(lambda: session.closed)
    assert bridge.join(timeout=5.0)
    assert wait_for(lambda: len(tunnel_server.sessions) == 0)


class FailingHandshakeConnection:
    def __init__(self):
        self.closed = threading.Event()

    def settimeout(self, timeout):
        pass

    def do_handshake(self):
        raise OSError("handshake reset")

    def shutdown(self, how):
        pass

    def close(self):
        self.closed.set()


def test_failed_handshake_closes_connection():
    conn = FailingHandshakeConnection()
    session = ServerSession(1, conn, ("192.0.2.1", 40000),
                            resolve_udp_address("127.0.0.1:51820"))

    session.run()

    assert session.closed
    assert conn.closed.is_set()
    assert session.mux is None


def test_registry():
    registry = SessionRegistry()
    conn = FailingHandshakeConnection()
    session = ServerSession(7, conn, ("192.0.2.1", 40000),
                            resolve_udp_address("127.0.0.1:51820"))

    registry.add(session)
    assert len(registry) == 1
    assert registry.get(7) is session
    assert registry.get_all_stats()[0]["peer"] == "192.0.2.1:40000"

    registry.close_all()
    assert session.closed
    assert conn.closed.is_set()

    assert registry.remove(7) is session
    assert len(registry) == 0


class ClosableStream:
    stream_id = 1

    def close(self):
        pass


def test_failed_dials_are_all_counted(monkeypatch):
    def refuse(address):
        raise OSError("no route")

    monkeypatch.setattr(session_module, "open_udp_dialer", refuse)
    session = ServerSession(1, FailingHandshakeConnection(), ("192.0.2.1", 40000),
                            resolve_udp_address("127.0.0.1:51820"))
    start = threading.Barrier(50)

    def bridge_one():
        start.wait()
        session._bridge_stream(ClosableStream())

    threads = [threading.Thread(target=bridge_one) for _ in range(50)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5.0)

    assert session.streams_failed == 50
    assert session.bridges == []
