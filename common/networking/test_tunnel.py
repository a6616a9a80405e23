"""
Tests for the TLS transport.
"""
import ssl
import threading

import pytest

from common.networking.tunnel import (
    TLSListener, TunnelConfig, TunnelError, create_client_context,
    create_server_context, dial_tls, server_handshake
)


def test_server_context_allows_only_application_data(testdata):
    context = create_server_context(testdata["cert"], testdata["key"])

    assert context.options & ssl.OP_NO_RENEGOTIATION
    assert context.num_tickets == 0
    assert context.minimum_version == TunnelConfig.MIN_TLS_VERSION


def test_client_context_refuses_renegotiation(testdata):
    context = create_client_context(testdata["ca"])

    assert context.options & ssl.OP_NO_RENEGOTIATION
    assert context.verify_mode == ssl.CERT_REQUIRED
    assert context.check_hostname


def test_unreadable_ca_file_is_skipped(tmp_path):
    context = create_client_context(str(tmp_path / "missing.pem"))

    assert context.verify_mode == ssl.CERT_REQUIRED


def test_missing_server_key_is_fatal(testdata, tmp_path):
    with pytest.raises(TunnelError):
        create_server_context(testdata["cert"], str(tmp_path / "missing-key.pem"))


def test_dial_rejects_address_without_host(testdata):
    with pytest.raises(TunnelError):
        dial_tls(":8443", create_client_context(testdata["ca"]))


def test_dial_and_accept(testdata):
    listener = TLSListener("127.0.0.1:0", create_server_context(testdata["cert"], testdata["key"]))
    accepted = []

    def accept():
        conn, peer = listener.accept()
        server_handshake(conn, timeout=5.0)
        accepted.append(conn)

    acceptor = threading.Thread(target=accept)
    acceptor.daemon = True
    acceptor.start()

    host, port = listener.address
    conn = dial_tls(f"{host}:{port}", create_client_context(testdata["ca"]), timeout=5.0)
    try:
        acceptor.join(timeout=5.0)
        assert len(accepted) == 1

        conn.sendall(b"ping")
        assert accepted[0].recv(4) == b"ping"
        assert conn.version() in ("TLSv1.2", "TLSv1.3")
    finally:
        conn.close()
        for server_conn in accepted:
            server_conn.close()
        listener.close()


def test_untrusted_server_is_rejected(testdata):
    listener = TLSListener("127.0.0.1:0", create_server_context(testdata["cert"], testdata["key"]))

    def accept():
        conn, _ = listener.accept()
        try:
            server_handshake(conn, timeout=5.0)
        except TunnelError:
            pass
        finally:
            conn.close()

    acceptor = threading.Thread(target=accept)
    acceptor.daemon = True
    acceptor.start()

    host, port = listener.address
    try:
        with pytest.raises(TunnelError):
            dial_tls(f"{host}:{port}", create_client_context(), timeout=5.0)
    finally:
        acceptor.join(timeout=5.0)
        listener.close()
