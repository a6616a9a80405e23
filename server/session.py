"""
Per-connection session handling for the tunnel server.
Each accepted TLS connection becomes a ServerSession: a multiplexed session
whose every incoming stream is bridged to its own UDP socket connected to
the WireGuard endpoint.
"""
import time
import socket
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from common.networking.address import EndpointAddress, open_udp_dialer
from common.networking.bridge import UDPTunnelBridge
from common.networking.framing import MAX_DATAGRAM_SIZE
from common.networking.mux import MuxError, MuxSession
from common.networking.tunnel import TunnelError, server_handshake

STATE_HANDSHAKE = "handshake"
STATE_ACTIVE = "active"
STATE_CLOSED = "closed"


class ServerSession:
    """
    Server side of one client connection
    """
    def __init__(self, session_id: int, conn: Any, peer: Tuple[str, int],
                 remote_addr: EndpointAddress,
                 max_datagram_size: int = MAX_DATAGRAM_SIZE):
        """
        Initialize the session

        Args:
            session_id: Identifier unique within the server process
            conn: Accepted TLS connection, handshake not yet done; the session
                takes ownership
            peer: Client address
            remote_addr: WireGuard endpoint every stream is bridged to
            max_datagram_size: Largest datagram accepted from the tunnel
        """
        self.session_id = session_id
        self.conn = conn
        self.peer = peer
        self.remote_addr = remote_addr
        self.max_datagram_size = max_datagram_size
        self.name = f"session {session_id} {peer[0]}:{peer[1]}"
        self.logger = logging.getLogger("tunnel_session")

        self.mux: Optional[MuxSession] = None
        self.bridges: List[UDPTunnelBridge] = []
        self.streams_accepted = 0
        self.streams_failed = 0

        self.state = STATE_HANDSHAKE
        self.created_at = time.time()
        self._lock = threading.Lock()

    @property
    def closed(self) -> bool:
        return self.state == STATE_CLOSED

    def run(self) -> None:
        """
        Handshake, then bridge incoming streams until the session ends

        Always leaves the session closed when it returns.
        """
        try:
            server_handshake(self.conn)
            self.logger.info(f"[{self.name}] TLS established ({self.conn.version()})")

            with self._lock:
                if self.state == STATE_CLOSED:
                    return
                self.mux = MuxSession(self.conn, client=False, name=self.name)
                self.state = STATE_ACTIVE

            self._accept_loop()
        except TunnelError as e:
            self.logger.warning(f"[{self.name}] {e}")
        except Exception as e:
            self.logger.exception(f"[{self.name}] Unexpected session error: {e}")
        finally:
            self.close()

    def _accept_loop(self) -> None:
        while True:
            try:
                stream = self.mux.accept_stream()
            except MuxError as e:
                self.logger.info(f"[{self.name}] No more streams: {e}")
                return

            self.streams_accepted += 1

            thread = threading.Thread(
                target=self._bridge_stream,
                args=(stream,),
                name=f"{self.name} stream {stream.stream_id}"
            )
            thread.daemon = True
            thread.start()

    def _bridge_stream(self, stream: Any) -> None:
        """Connect a UDP socket to WireGuard and bridge it with the stream"""
        try:
            sock = open_udp_dialer(self.remote_addr)
        except OSError as e:
            with self._lock:
                self.streams_failed += 1
            self.logger.error(f"[{self.name}] Dial WireGuard UDP {self.remote_addr} failed: {e}")
            stream.close()
            return

        bridge = UDPTunnelBridge(
            sock,
            stream,
            name=f"{self.name} stream {stream.stream_id}",
            connected=True,
            max_datagram_size=self.max_datagram_size
        )

        with self._lock:
            if self.state == STATE_CLOSED:
                bridge.close("session closed")
                return
            self.bridges = [b for b in self.bridges if not b.closed.is_set()]
            self.bridges.append(bridge)

        bridge.start()

    def close(self) -> None:
        """Close the session, its bridges and the connection"""
        with self._lock:
            if self.state == STATE_CLOSED:
                return
            self.state = STATE_CLOSED
            bridges = list(self.bridges)

        if self.mux is not None:
            try:
                self.mux.close()
            except Exception as e:
                self.logger.error(f"[{self.name}] Error closing multiplexed session: {e}")
        else:
            # Wake a handshake blocked on this connection
            try:
                self.conn.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass

        for bridge in bridges:
            bridge.close("session closed")

        try:
            self.conn.close()
        except Exception as e:
            self.logger.error(f"[{self.name}] Error closing connection: {e}")

        self.logger.info(f"[{self.name}] Session closed")

    def get_stats(self) -> Dict[str, Any]:
        """Get session statistics"""
        with self._lock:
            bridges = list(self.bridges)

        return {
            "session_id": self.session_id,
            "peer": f"{self.peer[0]}:{self.peer[1]}",
            "state": self.state,
            "uptime": time.time() - self.created_at,
            "streams_accepted": self.streams_accepted,
            "streams_failed": self.streams_failed,
            "bridges": [bridge.get_stats() for bridge in bridges],
        }


class SessionRegistry:
    """Track the live sessions of a server"""

    def __init__(self):
        self.sessions: Dict[int, ServerSession] = {}
        self.lock = threading.RLock()

    def add(self, session: ServerSession) -> None:
        with self.lock:
            self.sessions[session.session_id] = session

    def remove(self, session_id: int) -> Optional[ServerSession]:
        with self.lock:
            return self.sessions.pop(session_id, None)

    def get(self, session_id: int) -> Optional[ServerSession]:
        with self.lock:
            return self.sessions.get(session_id)

    def list(self) -> List[ServerSession]:
        with self.lock:
            return list(self.sessions.values())

    def __len__(self) -> int:
        with self.lock:
            return len(self.sessions)

    def get_all_stats(self) -> List[Dict[str, Any]]:
        return [session.get_stats() for session in self.list()]

    def close_all(self) -> None:
        """Close every session; sessions remove themselves as they finish"""
        for session in self.list():
            session.close()
