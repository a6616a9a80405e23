#!/usr/bin/env python3
"""
Main entry point for the WireGuard-over-TLS tunnel.
Provides command-line interfaces for the server and the client.
"""
import sys


def server_main() -> int:
    """Run the tunnel server"""
    from server.server import main
    return main()


def client_main() -> int:
    """Run the tunnel client"""
    from client.client import main
    return main()


if __name__ == "__main__":
    if len(sys.argv) < 2 or sys.argv[1] not in ("server", "client"):
        print("usage: main.py {server|client} [options]", file=sys.stderr)
        sys.exit(2)

    role = sys.argv.pop(1)
    sys.exit(server_main() if role == "server" else client_main())
