"""
Datagram framing for the tunnel sub-channel.
Each UDP datagram travels as a 2-byte big-endian length followed by the
datagram bytes, so datagram boundaries survive the byte-oriented stream.
"""
import struct
import logging
from typing import Any

logger = logging.getLogger(__name__)

# Largest datagram a 16-bit length prefix can describe
MAX_DATAGRAM_SIZE = 0xFFFF

LENGTH_PREFIX = struct.Struct("!H")
LENGTH_PREFIX_SIZE = LENGTH_PREFIX.size

# Oversized frames are drained in pieces of this size
DRAIN_CHUNK_SIZE = 4096


class FrameError(Exception):
    """Base class for framing errors"""


class DatagramTooLargeError(FrameError, ValueError):
    """Raised when a datagram cannot be described by the length prefix"""


class StreamClosedError(FrameError, ConnectionError):
    """Raised when the stream ends in the middle of a read"""


def encode_frame(payload: bytes) -> bytes:
    """
    Encode one datagram as a frame

    Args:
        payload: The datagram bytes

    Returns:
        Length prefix followed by the payload

    Raises:
        DatagramTooLargeError: If the payload is longer than MAX_DATAGRAM_SIZE
    """
    length = len(payload)
    if length > MAX_DATAGRAM_SIZE:
        raise DatagramTooLargeError(f"Datagram too large: {length} bytes")

    return LENGTH_PREFIX.pack(length) + bytes(payload)


def read_exact(source: Any, size: int) -> bytes:
    """
    Read exactly size bytes from a stream

    Args:
        source: Object with a read(n) method returning b'' at end of stream
        size: Number of bytes to read

    Returns:
        The bytes read

    Raises:
        StreamClosedError: If the stream ends before size bytes arrived
    """
    buffer = bytearray()
    while len(buffer) < size:
        chunk = source.read(size - len(buffer))
        if not chunk:
            raise StreamClosedError(
                f"Short read: got {len(buffer)} of {size} bytes before end of stream"
            )
        buffer.extend(chunk)

    return bytes(buffer)


def discard_exact(source: Any, size: int) -> None:
    """Consume and drop exactly size bytes from a stream"""
    remaining = size
    while remaining > 0:
        chunk = read_exact(source, min(remaining, DRAIN_CHUNK_SIZE))
        remaining -= len(chunk)


class FrameReader:
    """
    Decodes frames from a stream, one datagram at a time
    """
    def __init__(self, source: Any, max_datagram_size: int = MAX_DATAGRAM_SIZE,
                name: str = "stream"):
        """
        Initialize the frame reader

        Args:
            source: Stream to read frames from
            max_datagram_size: Largest payload this reader delivers
            name: Label used in log messages
        """
        self.source = source
        self.max_datagram_size = max_datagram_size
        self.name = name

        self.frames_read = 0
        self.frames_empty = 0
        self.frames_dropped = 0

    def read_frame(self) -> bytes:
        """
        Read the next deliverable datagram

        Empty frames are skipped. Frames longer than max_datagram_size are
        consumed in full and dropped so the next frame starts on a boundary.

        Returns:
            The datagram payload (never empty)

        Raises:
            StreamClosedError: If the stream ends or fails mid-frame
        """
        while True:
            header = read_exact(self.source, LENGTH_PREFIX_SIZE)
            (length,) = LENGTH_PREFIX.unpack(header)

            if length == 0:
                self.frames_empty += 1
                continue

            if length > self.max_datagram_size:
                logger.warning(
                    f"[{self.name}] Frame length {length} exceeds buffer capacity "
                    f"{self.max_datagram_size}, dropping"
                )
                discard_exact(self.source, length)
                self.frames_dropped += 1
                continue

            payload = read_exact(self.source, length)
            self.frames_read += 1
            return payload
