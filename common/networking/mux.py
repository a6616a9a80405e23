"""
Stream multiplexing over a single tunnel connection.
Speaks the yamux protocol (as implemented by hashicorp/yamux) so either end
can be replaced by a yamux peer written in another language.

Frame format (12-byte header + body):
    [version:1][type:1][flags:2][stream_id:4][length:4][body:N]

Client sessions open odd stream ids, server sessions even ones.

Each session reads the connection on one thread and writes it on another.
On a TLS connection this means one SSL object is read and written
concurrently; renegotiation and session tickets are disabled on the tunnel
contexts (see tunnel.py) so no handshake messages arrive after setup.
No other thread touches the connection while the session is open.
"""
import queue
import socket
import struct
import logging
import threading
from collections import deque
from typing import Any, Deque, Dict, List, Optional

PROTOCOL_VERSION = 0

# Frame types
TYPE_DATA = 0
TYPE_WINDOW_UPDATE = 1
TYPE_PING = 2
TYPE_GO_AWAY = 3

# Frame flags
FLAG_SYN = 0x1
FLAG_ACK = 0x2
FLAG_FIN = 0x4
FLAG_RST = 0x8

# GO_AWAY codes
GO_AWAY_NORMAL = 0
GO_AWAY_PROTOCOL_ERROR = 1
GO_AWAY_INTERNAL_ERROR = 2

HEADER = struct.Struct("!BBHII")
HEADER_SIZE = HEADER.size

INITIAL_WINDOW = 256 * 1024
ACCEPT_BACKLOG = 256
MAX_STREAM_ID = 0xFFFFFFFF

# How long close() waits for queued frames to reach the peer
SHUTDOWN_FLUSH_TIMEOUT = 1.0


class MuxError(ConnectionError):
    """Base class for multiplexer errors"""


class SessionClosedError(MuxError):
    """Raised when the session (or its connection) is no longer usable"""


class StreamResetError(MuxError):
    """Raised when the peer aborted a stream"""


class ProtocolError(MuxError):
    """Raised when the peer violates the framing protocol"""


class MuxStream:
    """
    One logical bidirectional byte stream inside a MuxSession
    """
    def __init__(self, session: 'MuxSession', stream_id: int):
        self.session = session
        self.stream_id = stream_id

        self._cond = threading.Condition()
        self._recv_buffer = bytearray()
        self._recv_window = INITIAL_WINDOW
        self._send_window = INITIAL_WINDOW

        self._local_closed = False
        self._remote_closed = False
        self._reset = False
        self._aborted = False
        self._session_closed = False

    def __repr__(self) -> str:
        return f"<MuxStream {self.session.name}/{self.stream_id}>"

    @property
    def closed(self) -> bool:
        """True once this end can no longer write"""
        with self._cond:
            return self._local_closed or self._reset or self._aborted or self._session_closed

    def read(self, size: int = 65536) -> bytes:
        """
        Read up to size bytes, blocking until data is available

        A local close() does not end reading: buffered and in-flight data
        is still delivered until the peer closes its side.

        Returns:
            The bytes read, or b'' once the stream has ended

        Raises:
            StreamResetError: If the peer reset the stream
        """
        with self._cond:
            while not self._recv_buffer:
                if self._reset:
                    raise StreamResetError(f"Stream {self.stream_id} reset by peer")
                if self._remote_closed or self._aborted or self._session_closed:
                    return b""
                self._cond.wait()

            data = bytes(self._recv_buffer[:size])
            del self._recv_buffer[:size]

        self._update_recv_window()
        return data

    def write(self, data: bytes) -> int:
        """
        Write all of data, blocking while the peer's receive window is full

        Returns:
            Number of bytes written

        Raises:
            BrokenPipeError: If the stream was closed locally
            StreamResetError: If the peer reset the stream
            SessionClosedError: If the session is gone
        """
        view = memoryview(data)
        total = len(view)
        sent = 0

        while sent < total:
            with self._cond:
                while True:
                    self._check_writable()
                    if self._send_window > 0:
                        break
                    self._cond.wait()

                chunk = min(self._send_window, total - sent)
                self._send_window -= chunk

            self.session._send_frame(TYPE_DATA, 0, self.stream_id, chunk,
                                     view[sent:sent + chunk])
            sent += chunk

        return total

    def close(self) -> None:
        """Half-close the stream: send FIN, keep reading until the peer's FIN"""
        with self._cond:
            if self._local_closed or self._reset or self._aborted or self._session_closed:
                return
            self._local_closed = True
            finished = self._remote_closed
            self._cond.notify_all()

        try:
            self.session._send_frame(TYPE_WINDOW_UPDATE, FLAG_FIN, self.stream_id, 0)
        except MuxError as e:
            self.session.logger.debug(f"[{self.session.name}] FIN for stream {self.stream_id} not sent: {e}")
        finally:
            if finished:
                self.session._forget_stream(self.stream_id)

    def reset(self) -> None:
        """Abort the stream in both directions; pending reads return EOF"""
        with self._cond:
            if self._reset or self._aborted or self._session_closed:
                return
            self._aborted = True
            self._recv_buffer.clear()
            self._cond.notify_all()

        try:
            self.session._send_frame(TYPE_WINDOW_UPDATE, FLAG_RST, self.stream_id, 0)
        except MuxError as e:
            self.session.logger.debug(f"[{self.session.name}] RST for stream {self.stream_id} not sent: {e}")
        finally:
            self.session._forget_stream(self.stream_id)

    def _check_writable(self) -> None:
        if self._reset:
            raise StreamResetError(f"Stream {self.stream_id} reset by peer")
        if self._session_closed:
            raise SessionClosedError(f"Session closed under stream {self.stream_id}")
        if self._local_closed or self._aborted:
            raise BrokenPipeError(f"Stream {self.stream_id} is closed")

    def _update_recv_window(self) -> None:
        with self._cond:
            if self._reset or self._aborted or self._session_closed or self._remote_closed:
                return
            delta = INITIAL_WINDOW - len(self._recv_buffer) - self._recv_window
            if delta < INITIAL_WINDOW // 2:
                return
            self._recv_window += delta

        try:
            self.session._send_frame(TYPE_WINDOW_UPDATE, 0, self.stream_id, delta)
        except MuxError as e:
            self.session.logger.debug(f"[{self.session.name}] Window update for stream {self.stream_id} not sent: {e}")

    # Called from the session's receiver thread

    def _process_flags(self, flags: int) -> bool:
        """Apply FIN/RST; returns True when the stream is finished"""
        with self._cond:
            if flags & FLAG_FIN:
                self._remote_closed = True
            if flags & FLAG_RST:
                self._reset = True
            if flags & (FLAG_FIN | FLAG_RST):
                self._cond.notify_all()
            return self._reset or (self._local_closed and self._remote_closed)

    def _receive_data(self, payload: bytes) -> None:
        with self._cond:
            if len(payload) > self._recv_window:
                raise ProtocolError(
                    f"Stream {self.stream_id} received {len(payload)} bytes "
                    f"with only {self._recv_window} bytes of window"
                )
            self._recv_window -= len(payload)
            if self._reset or self._aborted or self._session_closed:
                return
            self._recv_buffer.extend(payload)
            self._cond.notify_all()

    def _grow_send_window(self, delta: int) -> None:
        with self._cond:
            self._send_window += delta
            self._cond.notify_all()

    def _force_close(self) -> None:
        with self._cond:
            self._session_closed = True
            self._cond.notify_all()


class MuxSession:
    """
    A yamux session layered on one connected socket

    The connection stays owned by the caller: close() shuts it down so the
    sender and receiver threads exit, but closing the descriptor is left to the owner.
    """
    def __init__(self, conn: Any, client: bool, name: Optional[str] = None):
        """
        Initialize the session and start its sender and receiver threads

        Args:
            conn: Connected socket (plain or TLS)
            client: True for the dialing side, False for the accepting side
            name: Label used in log messages
        """
        self.conn = conn
        self.client = client
        self.name = name or ("client" if client else "server")
        self.logger = logging.getLogger("mux")

        self._streams: Dict[int, MuxStream] = {}
        self._accept_queue: Deque[MuxStream] = deque()
        self._lock = threading.Condition()
        self._send_queue: "queue.Queue[Optional[bytes]]" = queue.Queue()
        self._next_stream_id = 1 if client else 2

        self._closed = False
        self._local_go_away = False
        self._remote_go_away = False
        self.close_reason: Optional[str] = None

        self._sender = threading.Thread(
            target=self._sender_thread,
            name=f"mux-{self.name}-send"
        )
        self._sender.daemon = True
        self._sender.start()

        self._receiver = threading.Thread(
            target=self._receiver_thread,
            name=f"mux-{self.name}"
        )
        self._receiver.daemon = True
        self._receiver.start()

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    @property
    def num_streams(self) -> int:
        with self._lock:
            return len(self._streams)

    def open_stream(self) -> MuxStream:
        """
        Open a new outbound stream

        Raises:
            SessionClosedError: If the session is closed or the peer sent GO_AWAY
        """
        with self._lock:
            if self._closed:
                raise SessionClosedError(f"[{self.name}] Session is closed")
            if self._remote_go_away:
                raise SessionClosedError(f"[{self.name}] Remote end is not accepting streams")
            if self._next_stream_id > MAX_STREAM_ID:
                raise MuxError(f"[{self.name}] Stream ids exhausted")

            stream_id = self._next_stream_id
            self._next_stream_id += 2
            stream = MuxStream(self, stream_id)
            self._streams[stream_id] = stream

        try:
            self._send_frame(TYPE_WINDOW_UPDATE, FLAG_SYN, stream_id, 0)
        except MuxError:
            self._forget_stream(stream_id)
            raise

        self.logger.debug(f"[{self.name}] Opened stream {stream_id}")
        return stream

    def accept_stream(self) -> MuxStream:
        """
        Block until the peer opens a stream

        Raises:
            SessionClosedError: Once the session is closed
        """
        with self._lock:
            while True:
                if self._closed:
                    raise SessionClosedError(
                        f"[{self.name}] Session is closed ({self.close_reason})"
                    )
                if self._accept_queue:
                    stream = self._accept_queue.popleft()
                    break
                self._lock.wait()

        self._send_frame(TYPE_WINDOW_UPDATE, FLAG_ACK, stream.stream_id, 0)
        self.logger.debug(f"[{self.name}] Accepted stream {stream.stream_id}")
        return stream

    def go_away(self) -> None:
        """Tell the peer no further streams will be accepted"""
        with self._lock:
            self._local_go_away = True
        self._send_frame(TYPE_GO_AWAY, 0, 0, GO_AWAY_NORMAL)

    def close(self) -> None:
        """Close the session and every stream in it"""
        self._shutdown("closed locally", GO_AWAY_NORMAL)

    def _shutdown(self, reason: str, go_away_code: Optional[int] = None) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self.close_reason = reason
            streams: List[MuxStream] = list(self._streams.values())
            self._streams.clear()
            self._accept_queue.clear()
            self._lock.notify_all()

        # Frames queued before this point are flushed ahead of GO_AWAY
        if go_away_code is not None:
            self._send_queue.put(HEADER.pack(PROTOCOL_VERSION, TYPE_GO_AWAY, 0, 0, go_away_code))
        self._send_queue.put(None)

        if threading.current_thread() is not self._sender:
            self._sender.join(SHUTDOWN_FLUSH_TIMEOUT)
            if self._sender.is_alive():
                self.logger.warning(f"[{self.name}] Peer is not reading, dropping unsent frames")

        # Also wakes a sender stuck on a peer that stopped reading
        try:
            self.conn.shutdown(socket.SHUT_RDWR)
        except OSError as e:
            self.logger.debug(f"[{self.name}] Connection shutdown: {e}")

        for stream in streams:
            stream._force_close()

        self.logger.info(f"[{self.name}] Session closed: {reason}")

    def _send_frame(self, frame_type: int, flags: int, stream_id: int,
                   length: int, body: Any = b"") -> None:
        """Queue one frame for the sender thread; never blocks on the network"""
        frame = HEADER.pack(PROTOCOL_VERSION, frame_type, flags, stream_id, length)
        if body:
            frame += bytes(body)

        with self._lock:
            if self._closed:
                raise SessionClosedError(f"[{self.name}] Session is closed")
            self._send_queue.put(frame)

    def _sender_thread(self) -> None:
        """Thread for writing queued frames to the connection"""
        while True:
            frame = self._send_queue.get()
            if frame is None:
                return

            try:
                self.conn.sendall(frame)
            except OSError as e:
                self._shutdown(f"write failed: {e}")
                return

    def _forget_stream(self, stream_id: int) -> None:
        with self._lock:
            self._streams.pop(stream_id, None)

    def _recv_exact(self, size: int) -> bytes:
        buffer = bytearray()
        while len(buffer) < size:
            chunk = self.conn.recv(size - len(buffer))
            if not chunk:
                raise SessionClosedError("connection closed by peer")
            buffer.extend(chunk)
        return bytes(buffer)

    def _receiver_thread(self) -> None:
        """Thread for reading frames from the connection"""
        try:
            while True:
                header = self._recv_exact(HEADER_SIZE)
                version, frame_type, flags, stream_id, length = HEADER.unpack(header)

                if version != PROTOCOL_VERSION:
                    raise ProtocolError(f"Unsupported protocol version {version}")

                if frame_type in (TYPE_DATA, TYPE_WINDOW_UPDATE):
                    self._handle_stream_frame(frame_type, flags, stream_id, length)
                elif frame_type == TYPE_PING:
                    self._handle_ping(flags, length)
                elif frame_type == TYPE_GO_AWAY:
                    self._handle_go_away(length)
                else:
                    raise ProtocolError(f"Unknown frame type {frame_type}")

        except ProtocolError as e:
            self.logger.error(f"[{self.name}] Protocol error: {e}")
            self._shutdown(f"protocol error: {e}", GO_AWAY_PROTOCOL_ERROR)

        except OSError as e:
            self._shutdown(f"connection lost: {e}")

    def _handle_stream_frame(self, frame_type: int, flags: int,
                             stream_id: int, length: int) -> None:
        if flags & FLAG_SYN:
            self._incoming_stream(stream_id)

        with self._lock:
            stream = self._streams.get(stream_id)

        if stream is None:
            # Late frame for a stream that is already gone
            if frame_type == TYPE_DATA and length:
                self._recv_exact(length)
            return

        # Data before flags so a reader never sees FIN ahead of the last bytes
        if frame_type == TYPE_DATA:
            payload = self._recv_exact(length) if length else b""
            if payload:
                stream._receive_data(payload)
        else:
            stream._grow_send_window(length)

        finished = stream._process_flags(flags)

        if finished:
            self._forget_stream(stream_id)

    def _incoming_stream(self, stream_id: int) -> None:
        reject = False

        with self._lock:
            if self._closed:
                return
            if stream_id in self._streams:
                raise ProtocolError(f"Duplicate stream id {stream_id}")

            if self._local_go_away or len(self._accept_queue) >= ACCEPT_BACKLOG:
                reject = True
            else:
                stream = MuxStream(self, stream_id)
                self._streams[stream_id] = stream
                self._accept_queue.append(stream)
                self._lock.notify_all()

        if reject:
            self.logger.warning(f"[{self.name}] Rejecting stream {stream_id}: backlog full or going away")
            self._send_frame(TYPE_WINDOW_UPDATE, FLAG_RST, stream_id, 0)

    def _handle_ping(self, flags: int, opaque: int) -> None:
        if flags & FLAG_SYN:
            self._send_frame(TYPE_PING, FLAG_ACK, 0, opaque)

    def _handle_go_away(self, code: int) -> None:
        with self._lock:
            self._remote_go_away = True

        if code == GO_AWAY_NORMAL:
            self.logger.info(f"[{self.name}] Peer is going away")
        elif code == GO_AWAY_PROTOCOL_ERROR:
            self.logger.error(f"[{self.name}] Peer reported a protocol error")
        elif code == GO_AWAY_INTERNAL_ERROR:
            self.logger.error(f"[{self.name}] Peer reported an internal error")
        else:
            self.logger.error(f"[{self.name}] Peer sent unknown GO_AWAY code {code}")
