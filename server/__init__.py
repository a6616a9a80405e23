"""
Tunnel server package.
"""
