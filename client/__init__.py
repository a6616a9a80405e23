"""
Tunnel client package.
"""
