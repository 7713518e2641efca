"""
Veil Proxy Server Package

This package contains the forwarding proxy that:
- Accepts plain HTTP proxy requests and CONNECT tunnel requests on one port
- Relays plain requests to the origin with hop-by-hop headers stripped
- Tunnels CONNECT requests as raw bytes in both directions
- Optionally XORs the client leg with a per-process secret key

Main Components:
- server.py: request dispatcher, threaded listener and command line
- http_relay.py: HTTP relay over http.client
- tunnel.py: CONNECT tunnel relay
"""

from .server import ProxyServer, ProxyHandler, __version__
from .http_relay import HTTPRelay
from .tunnel import TunnelRelay, TunnelResult

__description__ = "Forwarding HTTP/CONNECT proxy with XOR stream obfuscation"

# Export main classes for external use
__all__ = ['ProxyServer', 'ProxyHandler', 'HTTPRelay', 'TunnelRelay', 'TunnelResult']
