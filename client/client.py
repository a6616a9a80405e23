"""
Tunnel client implementation.
Connects to the tunnel server over TLS, opens one multiplexed stream and
bridges it to a local UDP socket that WireGuard talks to.
"""
import sys
import time
import signal
import logging
import argparse
import threading
from typing import Optional, Dict, Any, List, Tuple

from common.crypto.fingerprint import (
    FingerprintMismatchError, peer_fingerprint, verify_peer_fingerprint
)
from common.networking.address import open_udp_listener, resolve_udp_address
from common.networking.bridge import UDPTunnelBridge
from common.networking.mux import MuxError, MuxSession
from common.networking.tunnel import TunnelError, create_client_context, dial_tls
from common.utils.config import ClientConfig, ConfigError, load_client_config
from common.utils.logging_setup import setup_logging

STATE_UNSTARTED = "unstarted"
STATE_CONNECTED = "connected"
STATE_CLOSED = "closed"


class TunnelClient:
    """
    Client side of the tunnel: one TLS connection, one session, one bridge
    """
    def __init__(self, config: ClientConfig):
        """
        Initialize the tunnel client

        Args:
            config: Client configuration

        Raises:
            ConfigError: If the local WireGuard address cannot be resolved
        """
        self.config = config
        self.logger = logging.getLogger("tunnel_client")

        self.local_addr = resolve_udp_address(config.wireguard_local_addr)
        self.tls_context = create_client_context(config.ca_cert_file)

        self.connection = None
        self.session: Optional[MuxSession] = None
        self.udp_socket = None
        self.bridge: Optional[UDPTunnelBridge] = None

        self.state = STATE_UNSTARTED
        self.server_fingerprint: Optional[str] = None
        self.started_at = 0.0

    @property
    def running(self) -> bool:
        return self.state == STATE_CONNECTED

    @property
    def local_address(self) -> Optional[Tuple[str, int]]:
        """Address of the bound local UDP socket"""
        if self.udp_socket is None or self.udp_socket.fileno() < 0:
            return None
        return self.udp_socket.getsockname()[:2]

    def start(self) -> None:
        """
        Connect to the server and start forwarding in the background

        On failure every resource acquired so far is released and the client
        is left closed.

        Raises:
            TunnelError: If the connection, session, stream or UDP socket
                cannot be set up
        """
        if self.state != STATE_UNSTARTED:
            raise TunnelError(f"Client cannot start from state {self.state}")

        try:
            self._connect()
        except Exception:
            self.close()
            raise

        self.state = STATE_CONNECTED
        self.started_at = time.time()

    def _connect(self) -> None:
        server_addr = self.config.server_addr

        self.logger.info(f"Connecting to server at {server_addr}")
        self.connection = dial_tls(server_addr, self.tls_context,
                                   timeout=self.config.connect_timeout)

        try:
            if self.config.server_cert_fingerprint:
                self.server_fingerprint = verify_peer_fingerprint(
                    self.connection, self.config.server_cert_fingerprint
                )
            else:
                self.server_fingerprint = peer_fingerprint(self.connection)
        except FingerprintMismatchError as e:
            raise TunnelError(str(e)) from e

        self.logger.info(f"Server certificate fingerprint: {self.server_fingerprint}")

        try:
            self.session = MuxSession(self.connection, client=True, name=f"client {server_addr}")
            stream = self.session.open_stream()
        except MuxError as e:
            raise TunnelError(f"Open tunnel stream for WireGuard: {e}") from e

        try:
            self.udp_socket = open_udp_listener(self.local_addr)
        except OSError as e:
            stream.close()
            raise TunnelError(f"Listen UDP for WireGuard on {self.local_addr}: {e}") from e

        self.bridge = UDPTunnelBridge(
            self.udp_socket,
            stream,
            name=f"wireguard {self.local_addr}",
            max_datagram_size=self.config.max_datagram_size
        )
        self.bridge.start()

        self.logger.info(f"Forwarding WireGuard UDP on {self.local_addr} through {server_addr}")

    def close(self) -> None:
        """
        Close the UDP socket, the session and the connection, in that order

        Every step is attempted even if an earlier one fails.
        """
        if self.state == STATE_CLOSED:
            return
        self.state = STATE_CLOSED

        self.logger.info("Closing tunnel client")

        # The bridge owns the UDP socket (and the stream) once it exists
        try:
            if self.bridge is not None:
                self.bridge.close("client shutting down")
            elif self.udp_socket is not None:
                self.udp_socket.close()
        except Exception as e:
            self.logger.error(f"Error closing UDP socket: {e}")

        try:
            if self.session is not None:
                self.session.close()
        except Exception as e:
            self.logger.error(f"Error closing session: {e}")

        try:
            if self.connection is not None:
                self.connection.close()
        except Exception as e:
            self.logger.error(f"Error closing connection: {e}")

        self.logger.info("Tunnel client closed")

    def get_status(self) -> Dict[str, Any]:
        """
        Get the current client status

        Returns:
            Dictionary with status information
        """
        return {
            "state": self.state,
            "server_addr": self.config.server_addr,
            "server_fingerprint": self.server_fingerprint,
            "wireguard_local_addr": str(self.local_addr),
            "uptime": time.time() - self.started_at if self.started_at else 0,
            "session_open": self.session is not None and not self.session.closed,
            "bridge": self.bridge.get_stats() if self.bridge else None,
            "timestamp": time.time()
        }


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="WireGuard-over-TLS tunnel client")
    parser.add_argument("--config", default="tunnel-client.yaml",
                        help="Path to client config file")
    parser.add_argument("--server", default=None,
                        help="Tunnel server address, overrides server_addr in the config")
    parser.add_argument("--log-level", default=None,
                        help="Log level, overrides log_level in the config")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the tunnel client

    Returns:
        Exit code
    """
    args = parse_args(argv)
    setup_logging("tunnel_client", log_level=args.log_level or "INFO")
    logger = logging.getLogger("tunnel_client")

    try:
        config = load_client_config(args.config, args.server)
    except ConfigError as e:
        logger.error(f"Failed to load client config: {e}")
        return 1

    setup_logging("tunnel_client",
                  log_level=args.log_level or config.log_level,
                  log_file=config.log_file)

    try:
        client = TunnelClient(config)
        client.start()
    except (ConfigError, TunnelError) as e:
        logger.error(f"Failed to start client: {e}")
        return 1

    logger.info(f"Tunnel client connected to {config.server_addr}")

    shutdown = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        shutdown.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        while not shutdown.is_set():
            shutdown.wait(1.0)
    finally:
        client.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
