"""
Endpoint address handling for the tunnel.
Parses "host:port" strings and opens the UDP sockets that face WireGuard.
"""
import socket
from typing import NamedTuple, Tuple

from common.utils.config import ConfigError


class EndpointAddress(NamedTuple):
    """A resolved UDP endpoint"""
    host: str
    port: int
    family: int

    @property
    def sockaddr(self) -> Tuple[str, int]:
        return (self.host, self.port)

    def __str__(self) -> str:
        if self.family == socket.AF_INET6:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"


def parse_host_port(address: str) -> Tuple[str, int]:
    """
    Split an address of the form "host:port", ":port" or "[v6]:port"

    Args:
        address: The address string

    Returns:
        Tuple of (host, port); host is "" when omitted

    Raises:
        ValueError: If the string is not a valid address
    """
    if not address or ":" not in address:
        raise ValueError(f"Missing port in address: {address!r}")

    if address.startswith("["):
        end = address.find("]")
        if end < 0 or address[end + 1:end + 2] != ":":
            raise ValueError(f"Invalid IPv6 address: {address!r}")
        host = address[1:end]
        port_str = address[end + 2:]
    else:
        host, _, port_str = address.rpartition(":")
        if ":" in host:
            raise ValueError(f"IPv6 addresses must be bracketed: {address!r}")

    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"Invalid port in address: {address!r}")

    if not 0 <= port <= 65535:
        raise ValueError(f"Port out of range in address: {address!r}")

    return host, port


def resolve_udp_address(address: str) -> EndpointAddress:
    """
    Resolve a UDP address once, at startup

    Raises:
        ConfigError: If the address is malformed or cannot be resolved
    """
    try:
        host, port = parse_host_port(address)
    except ValueError as e:
        raise ConfigError(f"Invalid UDP address: {e}") from e

    try:
        infos = socket.getaddrinfo(host or None, port, type=socket.SOCK_DGRAM,
                                   flags=socket.AI_PASSIVE if not host else 0)
    except socket.gaierror as e:
        raise ConfigError(f"Cannot resolve UDP address {address}: {e}") from e

    family, _, _, _, sockaddr = infos[0]
    return EndpointAddress(sockaddr[0], sockaddr[1], family)


def open_udp_listener(address: EndpointAddress) -> socket.socket:
    """Bind a UDP socket at address for local applications to talk to"""
    sock = socket.socket(address.family, socket.SOCK_DGRAM)
    try:
        sock.bind(address.sockaddr)
    except OSError:
        sock.close()
        raise
    return sock


def open_udp_dialer(address: EndpointAddress) -> socket.socket:
    """Create a UDP socket connected to address"""
    sock = socket.socket(address.family, socket.SOCK_DGRAM)
    try:
        sock.connect(address.sockaddr)
    except OSError:
        sock.close()
        raise
    return sock
