"""
Tests for datagram framing on the tunnel stream.
"""
import io
import os
import struct

import pytest

from common.networking.framing import (
    MAX_DATAGRAM_SIZE, DatagramTooLargeError, FrameReader, StreamClosedError,
    encode_frame, read_exact
)


class TrickleStream:
    """Stream that hands out at most one byte per read"""

    def __init__(self, data):
        self.buffer = io.BytesIO(data)

    def read(self, size):
        return self.buffer.read(min(size, 1))


def test_encode_frame_layout():
    assert encode_frame(b"\x01\x02\x03") == b"\x00\x03\x01\x02\x03"
    assert encode_frame(b"") == b"\x00\x00"


@pytest.mark.parametrize("size", [1, 255, 256, 1420, MAX_DATAGRAM_SIZE])
def test_round_trip(size):
    payload = os.urandom(size)
    reader = FrameReader(io.BytesIO(encode_frame(payload)))

    assert reader.read_frame() == payload
    assert reader.frames_read == 1


def test_oversized_datagram_is_rejected():
    with pytest.raises(DatagramTooLargeError):
        encode_frame(b"x" * (MAX_DATAGRAM_SIZE + 1))


def test_empty_frames_are_skipped():
    stream = io.BytesIO(encode_frame(b"") + encode_frame(b"") + encode_frame(b"data"))
    reader = FrameReader(stream)

    assert reader.read_frame() == b"data"
    assert reader.frames_empty == 2


def test_frame_over_capacity_is_drained():
    oversized = struct.pack("!H", 70) + b"A" * 70
    stream = io.BytesIO(oversized + encode_frame(b"next"))
    reader = FrameReader(stream, max_datagram_size=64)

    assert reader.read_frame() == b"next"
    assert reader.frames_dropped == 1
    assert stream.read() == b""


def test_reader_handles_partial_reads():
    frames = encode_frame(b"first") + encode_frame(b"") + encode_frame(b"second")
    reader = FrameReader(TrickleStream(frames))

    assert reader.read_frame() == b"first"
    assert reader.read_frame() == b"second"


def test_frames_come_out_in_order():
    payloads = [bytes([i]) * (i + 1) for i in range(20)]
    reader = FrameReader(io.BytesIO(b"".join(encode_frame(p) for p in payloads)))

    assert [reader.read_frame() for _ in payloads] == payloads


def test_truncated_header_is_fatal():
    reader = FrameReader(io.BytesIO(b"\x00"))

    with pytest.raises(StreamClosedError):
        reader.read_frame()


def test_truncated_payload_is_fatal():
    reader = FrameReader(io.BytesIO(b"\x00\x05abc"))

    with pytest.raises(StreamClosedError):
        reader.read_frame()


def test_end_of_stream_is_a_connection_error():
    reader = FrameReader(io.BytesIO(b""))

    with pytest.raises(ConnectionError):
        reader.read_frame()


def test_read_exact():
    stream = TrickleStream(b"abcdef")

    assert read_exact(stream, 4) == b"abcd"
    with pytest.raises(StreamClosedError):
        read_exact(stream, 4)
