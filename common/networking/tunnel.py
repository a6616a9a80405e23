"""
Encrypted transport for the tunnel.
Builds the TLS contexts for both ends, dials the server and accepts
incoming TLS connections.
"""
import socket
import ssl
import logging
from typing import Optional, Tuple

from common.networking.address import parse_host_port


class TunnelConfig:
    """Configuration settings for the tunnel"""
    # TLS settings
    MIN_TLS_VERSION = ssl.TLSVersion.TLSv1_2

    # Timeouts (seconds)
    CONNECT_TIMEOUT = 10.0
    HANDSHAKE_TIMEOUT = 10.0

    # Listener
    LISTEN_BACKLOG = 128
    ACCEPT_RETRY_DELAY = 0.1

    # How often a pump blocked on UDP receive checks for bridge shutdown
    UDP_POLL_INTERVAL = 1.0


class TunnelError(Exception):
    """Raised when the encrypted connection cannot be set up"""


logger = logging.getLogger("tunnel")


def create_client_context(ca_cert_file: Optional[str] = None) -> ssl.SSLContext:
    """
    Create the client-side TLS context

    Trusts the system roots plus an optional extra CA certificate. An extra
    CA file that cannot be loaded is reported and skipped.

    Args:
        ca_cert_file: Path to a PEM CA certificate (None for system roots only)

    Returns:
        Configured SSL context
    """
    context = ssl.create_default_context(ssl.Purpose.SERVER_AUTH)
    context.minimum_version = TunnelConfig.MIN_TLS_VERSION
    context.options |= ssl.OP_NO_RENEGOTIATION

    if ca_cert_file:
        try:
            context.load_verify_locations(cafile=ca_cert_file)
            logger.info(f"Loaded CA certificate from {ca_cert_file}")
        except (OSError, ssl.SSLError) as e:
            logger.warning(f"Could not load CA certificate file {ca_cert_file}: {e}")

    return context


def create_server_context(cert_file: str, key_file: str) -> ssl.SSLContext:
    """
    Create the server-side TLS context

    Args:
        cert_file: Path to the PEM certificate chain
        key_file: Path to the PEM private key

    Returns:
        Configured SSL context

    Raises:
        TunnelError: If the certificate or key cannot be loaded
    """
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = TunnelConfig.MIN_TLS_VERSION
    # Nothing but application data after the handshake, see mux.py
    context.options |= ssl.OP_NO_RENEGOTIATION
    context.num_tickets = 0

    try:
        context.load_cert_chain(certfile=cert_file, keyfile=key_file)
    except (OSError, ssl.SSLError) as e:
        raise TunnelError(f"Failed to load server certificate/key ({cert_file}, {key_file}): {e}") from e

    return context


def _set_nodelay(sock: socket.socket) -> None:
    try:
        sock.setsockopt(socket.IPPROTO_TCP, socket.TCP_NODELAY, 1)
    except OSError as e:
        logger.debug(f"Could not set TCP_NODELAY: {e}")


def dial_tls(address: str, context: ssl.SSLContext,
             timeout: float = TunnelConfig.CONNECT_TIMEOUT) -> ssl.SSLSocket:
    """
    Connect to a tunnel server and complete the TLS handshake

    Args:
        address: Server address as "host:port"
        context: Client TLS context
        timeout: Connect and handshake timeout in seconds

    Returns:
        Connected TLS socket in blocking mode

    Raises:
        TunnelError: If the connection or handshake fails
    """
    try:
        host, port = parse_host_port(address)
    except ValueError as e:
        raise TunnelError(f"Invalid server address: {e}") from e

    if not host:
        raise TunnelError(f"Server address needs a host: {address!r}")

    try:
        sock = socket.create_connection((host, port), timeout=timeout)
    except OSError as e:
        raise TunnelError(f"Cannot connect to {address}: {e}") from e

    _set_nodelay(sock)

    try:
        conn = context.wrap_socket(sock, server_hostname=host)
    except (OSError, ssl.SSLError) as e:
        sock.close()
        raise TunnelError(f"TLS handshake with {address} failed: {e}") from e

    conn.settimeout(None)
    logger.info(f"TLS connection to {address} established ({conn.version()})")
    return conn


class TLSListener:
    """
    TCP listener handing out server-side TLS connections

    accept() does not perform the handshake; the caller runs it on its own
    thread so a slow client cannot stall the listener.
    """
    def __init__(self, address: str, context: ssl.SSLContext,
                 backlog: int = TunnelConfig.LISTEN_BACKLOG):
        """
        Bind and listen

        Args:
            address: Listen address as "host:port" or ":port"
            context: Server TLS context
            backlog: Connection backlog

        Raises:
            TunnelError: If the address cannot be bound
        """
        self.context = context

        try:
            host, port = parse_host_port(address)
        except ValueError as e:
            raise TunnelError(f"Invalid listen address: {e}") from e

        try:
            if host:
                family = socket.getaddrinfo(host, port, type=socket.SOCK_STREAM)[0][0]
                self.sock = socket.create_server((host, port), family=family, backlog=backlog)
            elif socket.has_dualstack_ipv6():
                self.sock = socket.create_server(("", port), family=socket.AF_INET6,
                                                 backlog=backlog, dualstack_ipv6=True)
            else:
                self.sock = socket.create_server(("", port), backlog=backlog)
        except OSError as e:
            raise TunnelError(f"Cannot listen on {address}: {e}") from e

    @property
    def address(self) -> Tuple[str, int]:
        return self.sock.getsockname()[:2]

    def accept(self) -> Tuple[ssl.SSLSocket, Tuple[str, int]]:
        """
        Accept one connection

        Returns:
            Tuple of (TLS socket awaiting handshake, peer address)
        """
        raw_sock, peer = self.sock.accept()
        _set_nodelay(raw_sock)

        try:
            conn = self.context.wrap_socket(raw_sock, server_side=True,
                                            do_handshake_on_connect=False)
        except (OSError, ssl.SSLError):
            raw_sock.close()
            raise

        return conn, peer[:2]

    def close(self) -> None:
        """Stop listening; a thread blocked in accept() gets an error"""
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Not connected; closing below still releases the port
            pass
        self.sock.close()


def server_handshake(conn: ssl.SSLSocket,
                     timeout: float = TunnelConfig.HANDSHAKE_TIMEOUT) -> None:
    """
    Run the server side of the TLS handshake on an accepted connection

    Raises:
        TunnelError: If the handshake fails or times out
    """
    conn.settimeout(timeout)
    try:
        conn.do_handshake()
    except (OSError, ssl.SSLError) as e:
        raise TunnelError(f"TLS handshake failed: {e}") from e
    conn.settimeout(None)
