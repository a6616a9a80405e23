"""
Web interface package for the tunnel server.
Provides a read-only JSON status API.
"""

from server.web.app import app, initialize_web_app, start_web_server

__all__ = ['app', 'initialize_web_app', 'start_web_server']
