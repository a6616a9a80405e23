"""
Code shared by the tunnel server and client.
"""
