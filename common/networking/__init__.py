"""
Networking package for the tunnel.
Includes the TLS transport, stream multiplexer, datagram framing and the
UDP bridge.
"""

from common.networking.tunnel import (
    TunnelConfig, TunnelError, TLSListener, dial_tls
)
from common.networking.mux import MuxSession, MuxStream, SessionClosedError
from common.networking.framing import FrameReader, encode_frame
from common.networking.bridge import UDPTunnelBridge

__all__ = [
    'TunnelConfig',
    'TunnelError',
    'TLSListener',
    'dial_tls',
    'MuxSession',
    'MuxStream',
    'SessionClosedError',
    'FrameReader',
    'encode_frame',
    'UDPTunnelBridge'
]
