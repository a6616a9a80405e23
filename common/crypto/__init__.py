"""
Cryptography helpers for the tunnel.
Certificate fingerprinting and pinning on top of the TLS transport.
"""

from common.crypto.fingerprint import (
    FingerprintMismatchError,
    certificate_fingerprint,
    pem_file_fingerprint,
    peer_fingerprint,
    verify_peer_fingerprint
)

__all__ = [
    'FingerprintMismatchError',
    'certificate_fingerprint',
    'pem_file_fingerprint',
    'peer_fingerprint',
    'verify_peer_fingerprint'
]
