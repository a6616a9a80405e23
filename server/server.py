"""
Tunnel server implementation.
Accepts TLS connections from tunnel clients and forwards the datagrams of
every multiplexed stream to the WireGuard endpoint over UDP.
"""
import sys
import time
import signal
import logging
import argparse
import itertools
import threading
from typing import Dict, Any, Optional, List, Tuple

from common.crypto.fingerprint import pem_file_fingerprint
from common.networking.address import parse_host_port, resolve_udp_address
from common.networking.tunnel import (
    TLSListener, TunnelConfig, TunnelError, create_server_context
)
from common.utils.config import ConfigError, ServerConfig, load_server_config
from common.utils.logging_setup import setup_logging
from server.session import ServerSession, SessionRegistry
from server.web.app import start_web_server


class TunnelServer:
    """
    Main tunnel server class
    """
    def __init__(self, config: ServerConfig):
        """
        Initialize the tunnel server

        Args:
            config: Server configuration

        Raises:
            ConfigError: If an address in the configuration is unusable
            TunnelError: If the certificate or key cannot be loaded
        """
        self.config = config
        self.logger = logging.getLogger("tunnel_server")

        self.remote_addr = resolve_udp_address(config.wireguard_remote_addr)
        self.tls_context = create_server_context(config.tls_cert_file, config.tls_key_file)

        try:
            self.certificate_fingerprint: Optional[str] = pem_file_fingerprint(config.tls_cert_file)
        except (OSError, ValueError) as e:
            self.logger.warning(f"Could not fingerprint {config.tls_cert_file}: {e}")
            self.certificate_fingerprint = None

        self.status_addr: Optional[Tuple[str, int]] = None
        if config.status_addr:
            try:
                host, port = parse_host_port(config.status_addr)
            except ValueError as e:
                raise ConfigError(f"Invalid status_addr: {e}") from e
            self.status_addr = (host or "0.0.0.0", port)

        self.listener: Optional[TLSListener] = None
        self.sessions = SessionRegistry()
        self.web_server = None
        self.accept_thread: Optional[threading.Thread] = None
        self.running = False
        self._session_ids = itertools.count(1)

        self.stats = {
            "start_time": 0,
            "connections_accepted": 0,
            "accept_errors": 0,
        }

    @property
    def address(self) -> Optional[Tuple[str, int]]:
        """Address the listener is bound to"""
        return self.listener.address if self.listener else None

    def start(self) -> None:
        """
        Bind the listener and start accepting connections in the background

        Raises:
            TunnelError: If the listen address cannot be bound
        """
        if self.running:
            self.logger.warning("Tunnel server already running")
            return

        self.logger.info(f"Server certificate fingerprint: {self.certificate_fingerprint}")

        self.listener = TLSListener(self.config.listen_addr, self.tls_context)
        self.running = True
        self.stats["start_time"] = time.time()

        self.accept_thread = threading.Thread(target=self._accept_thread, name="accept")
        self.accept_thread.daemon = True
        self.accept_thread.start()

        if self.status_addr:
            host, port = self.status_addr
            try:
                self.web_server = start_web_server(host, port, self)
            except OSError as e:
                self.logger.error(f"Failed to start status API on {host}:{port}: {e}")

        host, port = self.address
        self.logger.info(f"Tunnel server listening on {host}:{port}, forwarding to {self.remote_addr}")

    def _accept_thread(self) -> None:
        """Accept connections until the listener is closed"""
        while self.running:
            try:
                conn, peer = self.listener.accept()
            except OSError as e:
                if not self.running:
                    break
                self.stats["accept_errors"] += 1
                self.logger.error(f"Accept error: {e}")
                time.sleep(TunnelConfig.ACCEPT_RETRY_DELAY)
                continue

            if not self.running:
                conn.close()
                break

            self.stats["connections_accepted"] += 1
            self.logger.info(f"Accepted connection from {peer[0]}:{peer[1]}")

            session = ServerSession(
                next(self._session_ids),
                conn,
                peer,
                self.remote_addr,
                max_datagram_size=self.config.max_datagram_size
            )
            self.sessions.add(session)

            thread = threading.Thread(target=self._session_thread, args=(session,), name=session.name)
            thread.daemon = True
            thread.start()

        self.logger.info("Accept loop stopped")

    def _session_thread(self, session: ServerSession) -> None:
        try:
            session.run()
        finally:
            self.sessions.remove(session.session_id)

    def close(self) -> None:
        """Stop accepting, then close every live session"""
        if not self.running:
            return

        self.logger.info("Stopping tunnel server")
        self.running = False

        if self.web_server is not None:
            try:
                self.web_server.shutdown()
                self.web_server.server_close()
            except Exception as e:
                self.logger.error(f"Error stopping status API: {e}")

        try:
            self.listener.close()
        except OSError as e:
            self.logger.error(f"Error closing listener: {e}")

        if self.accept_thread is not None:
            self.accept_thread.join(timeout=5.0)

        self.sessions.close_all()
        self.logger.info("Tunnel server stopped")

    def get_status(self) -> Dict[str, Any]:
        """
        Get the current server status

        Returns:
            Dictionary with status information
        """
        uptime = 0
        if self.stats["start_time"] > 0:
            uptime = time.time() - self.stats["start_time"]

        address = self.address if self.running else None

        return {
            "running": self.running,
            "listen_addr": f"{address[0]}:{address[1]}" if address else self.config.listen_addr,
            "wireguard_remote_addr": str(self.remote_addr),
            "certificate_fingerprint": self.certificate_fingerprint,
            "uptime": uptime,
            "connections_accepted": self.stats["connections_accepted"],
            "accept_errors": self.stats["accept_errors"],
            "session_count": len(self.sessions),
            "sessions": self.sessions.get_all_stats(),
            "timestamp": time.time()
        }


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="WireGuard-over-TLS tunnel server")
    parser.add_argument("--config", default="tunnel-server.yaml",
                        help="Path to server config file")
    parser.add_argument("--listen", default=None,
                        help="Listen address, overrides listen_addr in the config")
    parser.add_argument("--log-level", default=None,
                        help="Log level, overrides log_level in the config")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the tunnel server

    Returns:
        Exit code
    """
    args = parse_args(argv)
    setup_logging("tunnel_server", log_level=args.log_level or "INFO")
    logger = logging.getLogger("tunnel_server")

    try:
        config = load_server_config(args.config, args.listen)
    except ConfigError as e:
        logger.error(f"Failed to load server config: {e}")
        return 1

    setup_logging("tunnel_server",
                  log_level=args.log_level or config.log_level,
                  log_file=config.log_file)

    try:
        server = TunnelServer(config)
        server.start()
    except (ConfigError, TunnelError) as e:
        logger.error(f"Failed to start server: {e}")
        return 1

    shutdown = threading.Event()

    def signal_handler(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        shutdown.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        logger.info("Tunnel server running, press Ctrl+C to stop")
        while not shutdown.is_set():
            shutdown.wait(1.0)
    finally:
        server.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
