"""
Status API for the tunnel server.
Read-only JSON endpoints reporting listener, session and bridge state.
"""
import logging
import threading
from typing import Any, Optional

from flask import Flask, jsonify
from werkzeug.serving import make_server

# Initialize Flask application
app = Flask(__name__)

# Tunnel server being reported on
tunnel_server: Optional[Any] = None

logger = logging.getLogger("web_interface")


def initialize_web_app(server_instance: Any) -> None:
    """
    Attach the web application to a running tunnel server

    Args:
        server_instance: Object providing get_status()
    """
    global tunnel_server
    tunnel_server = server_instance


@app.route('/api/health')
def health():
    """API endpoint for liveness checks"""
    return jsonify({'status': 'ok'})


@app.route('/api/status')
def server_status():
    """API endpoint to get server status"""
    if not tunnel_server:
        return jsonify({'error': 'Server not initialized'}), 500

    return jsonify(tunnel_server.get_status())


@app.route('/api/sessions')
def list_sessions():
    """API endpoint to list live sessions"""
    if not tunnel_server:
        return jsonify({'error': 'Server not initialized'}), 500

    return jsonify(tunnel_server.get_status()["sessions"])


@app.route('/api/sessions/<int:session_id>')
def get_session(session_id):
    """API endpoint to get one session"""
    if not tunnel_server:
        return jsonify({'error': 'Server not initialized'}), 500

    for session in tunnel_server.get_status()["sessions"]:
        if session["session_id"] == session_id:
            return jsonify(session)

    return jsonify({'error': 'Session not found'}), 404


def start_web_server(host: str = '127.0.0.1', port: int = 8080,
                     server_instance: Optional[Any] = None):
    """
    Serve the status API on a background thread

    Args:
        host: Host to bind to
        port: Port to bind to
        server_instance: Tunnel server to report on

    Returns:
        The werkzeug server; call shutdown() to stop it
    """
    if server_instance is not None:
        initialize_web_app(server_instance)

    web_server = make_server(host, port, app, threaded=True)

    thread = threading.Thread(target=web_server.serve_forever, name="status-api")
    thread.daemon = True
    thread.start()

    logger.info(f"Status API listening on http://{host}:{web_server.server_port}")
    return web_server
