"""
Certificate fingerprints for the tunnel's TLS endpoints.
Uses PyCryptodome for hashing.
"""
import ssl
from typing import Optional

from Crypto.Hash import SHA256


class FingerprintMismatchError(ssl.SSLError):
    """Raised when the peer certificate does not match the pinned fingerprint"""


def certificate_fingerprint(der_cert: bytes) -> str:
    """
    Compute the SHA-256 fingerprint of a certificate

    Args:
        der_cert: Certificate in DER encoding

    Returns:
        Upper-case hex digest with colon separators
    """
    digest = SHA256.new(der_cert).hexdigest().upper()
    return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))


def normalize_fingerprint(fingerprint: str) -> str:
    """Accept fingerprints with or without separators, in any case"""
    digest = fingerprint.replace(":", "").replace(" ", "").upper()
    return ":".join(digest[i:i + 2] for i in range(0, len(digest), 2))


def pem_file_fingerprint(cert_file: str) -> str:
    """
    Fingerprint of the first certificate in a PEM file

    Args:
        cert_file: Path to the PEM file

    Returns:
        The certificate's SHA-256 fingerprint
    """
    with open(cert_file, "r") as f:
        pem_data = f.read()

    end_marker = "-----END CERTIFICATE-----"
    end = pem_data.find(end_marker)
    if end < 0:
        raise ValueError(f"No certificate found in {cert_file}")

    der_cert = ssl.PEM_cert_to_DER_cert(pem_data[:end + len(end_marker)] + "\n")
    return certificate_fingerprint(der_cert)


def peer_fingerprint(conn: ssl.SSLSocket) -> Optional[str]:
    """Fingerprint of the certificate presented by the other end, if any"""
    der_cert = conn.getpeercert(binary_form=True)
    if not der_cert:
        return None
    return certificate_fingerprint(der_cert)


def verify_peer_fingerprint(conn: ssl.SSLSocket, expected: str) -> str:
    """
    Check the peer certificate against a pinned fingerprint

    Args:
        conn: Connected TLS socket
        expected: Pinned fingerprint (any separator style)

    Returns:
        The peer's fingerprint

    Raises:
        FingerprintMismatchError: If the fingerprints differ
    """
    actual = peer_fingerprint(conn)
    if actual is None or actual != normalize_fingerprint(expected):
        raise FingerprintMismatchError(
            f"Server certificate fingerprint {actual} does not match pinned {normalize_fingerprint(expected)}"
        )
    return actual
