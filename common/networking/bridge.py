"""
UDP bridging over a tunnel stream.
A bridge pairs one UDP socket with one multiplexed stream and runs two
pumps, one per direction. The directions share fate: whichever pump stops
first half-closes the stream, which the peer answers by closing its side.
The stream->udp pump keeps delivering frames already in flight until that
end of stream, so one direction failing never drops what the other
direction still has queued. The UDP socket is closed when the last pump
exits. close() from outside tears everything down at once.
"""
import socket
import time
import logging
import threading
from typing import Any, Dict, List, Optional, Tuple

from common.networking.framing import (
    MAX_DATAGRAM_SIZE, DatagramTooLargeError, FrameReader, encode_frame
)
from common.networking.tunnel import TunnelConfig

# One byte more than a frame can carry, so oversized datagrams are detectable
RECV_BUFFER_SIZE = MAX_DATAGRAM_SIZE + 1


class ForwardingPump:
    """
    Base class for one direction of a bridge
    """
    direction = "pump"

    def __init__(self, bridge: 'UDPTunnelBridge'):
        self.bridge = bridge
        self.logger = logging.getLogger("bridge")

        self.datagrams = 0
        self.bytes = 0
        self.dropped = 0
        self.error: Optional[BaseException] = None

    def run(self) -> None:
        """Pump until an I/O error or end of stream, then report to the bridge"""
        try:
            self._pump()
        except OSError as e:
            self.error = e
            if self.bridge.closing.is_set():
                self.logger.debug(f"[{self.bridge.name}] {self.direction} stopped after shutdown: {e}")
            else:
                self.logger.warning(f"[{self.bridge.name}] {self.direction} failed: {e}")
        except Exception as e:
            self.error = e
            self.logger.exception(f"[{self.bridge.name}] Unexpected error in {self.direction}: {e}")
        finally:
            self.bridge._pump_stopped(self)

    def _pump(self) -> None:
        raise NotImplementedError("Subclasses must implement _pump")

    def get_stats(self) -> Dict[str, Any]:
        return {
            "datagrams": self.datagrams,
            "bytes": self.bytes,
            "dropped": self.dropped,
        }


class DatagramToStreamPump(ForwardingPump):
    """
    Reads datagrams from the UDP socket and writes them to the stream as frames
    """
    direction = "udp->stream"

    def _pump(self) -> None:
        bridge = self.bridge

        while not bridge.closing.is_set():
            try:
                data, sender = bridge.sock.recvfrom(RECV_BUFFER_SIZE)
            except socket.timeout:
                continue

            if bridge.closing.is_set():
                break

            # Empty datagrams carry nothing to forward
            if not data:
                continue

            if not bridge.connected:
                bridge.peer_addr = sender

            try:
                frame = encode_frame(data)
            except DatagramTooLargeError as e:
                self.dropped += 1
                self.logger.warning(f"[{bridge.name}] {e} from {sender}, dropping")
                continue

            bridge.stream.write(frame)
            self.datagrams += 1
            self.bytes += len(data)


class StreamToDatagramPump(ForwardingPump):
    """
    Decodes frames from the stream and sends each one as a UDP datagram

    Runs until the stream ends or fails, not until the bridge starts
    closing, so frames already on the stream are still delivered.
    """
    direction = "stream->udp"

    def __init__(self, bridge: 'UDPTunnelBridge'):
        super().__init__(bridge)
        self.reader = FrameReader(bridge.stream, bridge.max_datagram_size, name=bridge.name)

    def _pump(self) -> None:
        bridge = self.bridge

        while True:
            payload = self.reader.read_frame()

            if bridge.connected:
                bridge.sock.send(payload)
            else:
                peer = bridge.peer_addr
                if peer is None:
                    self.dropped += 1
                    self.logger.warning(
                        f"[{bridge.name}] No local UDP peer yet, dropping {len(payload)} byte datagram"
                    )
                    continue
                bridge.sock.sendto(payload, peer)

            self.datagrams += 1
            self.bytes += len(payload)

    def get_stats(self) -> Dict[str, Any]:
        stats = super().get_stats()
        stats["dropped"] += self.reader.frames_dropped
        return stats


class UDPTunnelBridge:
    """
    Live pairing of one UDP socket and one tunnel stream

    The stream must offer read(), write(), close() as a half-close and
    reset() as an abort.
    """
    def __init__(self, sock: socket.socket, stream: Any, name: str = "bridge",
                 connected: bool = False,
                 max_datagram_size: int = MAX_DATAGRAM_SIZE,
                 poll_interval: float = TunnelConfig.UDP_POLL_INTERVAL):
        """
        Initialize the bridge

        Args:
            sock: Bound UDP socket; the bridge takes ownership
            stream: Open tunnel stream; the bridge takes ownership
            name: Label used in log messages
            connected: True if sock is connected to its destination,
                otherwise datagrams from the tunnel go to the last local sender
            max_datagram_size: Largest datagram accepted from the tunnel
            poll_interval: How often a pump idle on UDP checks for shutdown
        """
        self.sock = sock
        self.stream = stream
        self.name = name
        self.connected = connected
        self.max_datagram_size = max_datagram_size
        self.poll_interval = poll_interval
        self.logger = logging.getLogger("bridge")

        self.peer_addr: Optional[Tuple[str, int]] = None
        # Set once shutdown begins; both pumps watch it
        self.closing = threading.Event()
        # Set once the socket is closed and no pump is running
        self.closed = threading.Event()
        self.close_reason: Optional[str] = None
        self.started_at: Optional[float] = None

        self._lock = threading.Lock()
        self._running_pumps = 0
        self._stream_closed = False
        self._aborted = False

        self.inbound = DatagramToStreamPump(self)
        self.outbound = StreamToDatagramPump(self)
        self._threads: List[threading.Thread] = []

    def start(self) -> None:
        """Start both pumps on their own threads"""
        self.sock.settimeout(self.poll_interval)
        self.started_at = time.time()

        with self._lock:
            self._running_pumps = 2

        for pump in (self.inbound, self.outbound):
            thread = threading.Thread(target=pump.run, name=f"{self.name} {pump.direction}")
            thread.daemon = True
            thread.start()
            self._threads.append(thread)

        self.logger.info(f"[{self.name}] Bridge started")

    def close(self, reason: str = "closed") -> None:
        """
        Tear the bridge down now, dropping anything still in flight

        Only the first call has any effect.

        Args:
            reason: Why the bridge is closing, for the log
        """
        with self._lock:
            if self._aborted or self.closed.is_set():
                return
            self._aborted = True
            self._begin_closing(reason)
            idle = self._running_pumps == 0

        self._close_socket()
        self._close_stream()

        try:
            self.stream.reset()
        except OSError as e:
            self.logger.error(f"[{self.name}] Error resetting stream: {e}")

        if idle:
            self._finish()

    def _begin_closing(self, reason: str) -> bool:
        """Record the first shutdown reason; caller holds _lock"""
        if self.closing.is_set():
            return False
        self.closing.set()
        self.close_reason = reason
        return True

    def _pump_stopped(self, pump: ForwardingPump) -> None:
        """Called by each pump as it exits"""
        with self._lock:
            self._running_pumps -= 1
            last = self._running_pumps == 0
            self._begin_closing(f"{pump.direction} stopped")

        # FIN tells the peer, whose own bridge then closes its side
        self._close_stream()

        if last:
            self._finish()
        elif pump is self.outbound:
            # Nothing left to deliver, so the UDP reader can go
            self._wake_udp_reader()

    def _close_stream(self) -> None:
        with self._lock:
            if self._stream_closed:
                return
            self._stream_closed = True

        try:
            self.stream.close()
        except OSError as e:
            self.logger.error(f"[{self.name}] Error closing stream: {e}")

    def _wake_udp_reader(self) -> None:
        try:
            self.sock.shutdown(socket.SHUT_RD)
        except OSError:
            # Unconnected UDP sockets report ENOTCONN but are still woken
            pass

    def _close_socket(self) -> None:
        self._wake_udp_reader()
        try:
            self.sock.close()
        except OSError as e:
            self.logger.error(f"[{self.name}] Error closing UDP socket: {e}")

    def _finish(self) -> None:
        self._close_socket()
        self.closed.set()
        self.logger.info(f"[{self.name}] Bridge closed: {self.close_reason}")

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for both pumps to finish

        Returns:
            True if both pumps have stopped
        """
        deadline = None if timeout is None else time.time() + timeout
        for thread in self._threads:
            remaining = None if deadline is None else max(0.0, deadline - time.time())
            thread.join(remaining)
        return not any(thread.is_alive() for thread in self._threads)

    @property
    def alive(self) -> bool:
        return self.started_at is not None and not self.closed.is_set()

    def get_stats(self) -> Dict[str, Any]:
        """Bridge statistics for status reporting"""
        return {
            "name": self.name,
            "alive": self.alive,
            "peer": f"{self.peer_addr[0]}:{self.peer_addr[1]}" if self.peer_addr else None,
            "uptime": time.time() - self.started_at if self.started_at else 0,
            "close_reason": self.close_reason,
            "udp_to_stream": self.inbound.get_stats(),
            "stream_to_udp": self.outbound.get_stats(),
        }
