"""
Tests for endpoint address parsing and UDP socket helpers.
"""
import socket

import pytest

from common.networking.address import (
    open_udp_dialer, open_udp_listener, parse_host_port, resolve_udp_address
)
from common.utils.config import ConfigError


@pytest.mark.parametrize("address, expected", [
    ("127.0.0.1:51820", ("127.0.0.1", 51820)),
    (":8443", ("", 8443)),
    ("localhost:0", ("localhost", 0)),
    ("[::1]:443", ("::1", 443)),
])
def test_parse_host_port(address, expected):
    assert parse_host_port(address) == expected


@pytest.mark.parametrize("address", [
    "", "127.0.0.1", "host:port", "host:70000", "::1:443", "[::1]443",
])
def test_parse_host_port_rejects(address):
    with pytest.raises(ValueError):
        parse_host_port(address)


def test_resolve_udp_address():
    addr = resolve_udp_address("127.0.0.1:51820")

    assert addr.host == "127.0.0.1"
    assert addr.port == 51820
    assert addr.family == socket.AF_INET
    assert str(addr) == "127.0.0.1:51820"


def test_resolve_invalid_address_is_config_error():
    with pytest.raises(ConfigError):
        resolve_udp_address("no-port-here")


def test_listener_and_dialer_talk():
    listener = open_udp_listener(resolve_udp_address("127.0.0.1:0"))
    listener.settimeout(5.0)
    try:
        port = listener.getsockname()[1]
        dialer = open_udp_dialer(resolve_udp_address(f"127.0.0.1:{port}"))
        try:
            dialer.send(b"ping")
            data, sender = listener.recvfrom(64)
            assert data == b"ping"
            assert sender == dialer.getsockname()
        finally:
            dialer.close()
    finally:
        listener.close()


def test_listener_bind_conflict_raises():
    first = open_udp_listener(resolve_udp_address("127.0.0.1:0"))
    try:
        port = first.getsockname()[1]
        with pytest.raises(OSError):
            open_udp_listener(resolve_udp_address(f"127.0.0.1:{port}"))
    finally:
        first.close()
