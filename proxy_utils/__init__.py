"""
Utils package for the veil proxy.

Leaf helpers shared by the HTTP relay and the tunnel relay: the XOR stream
transform, hop-by-hop header handling and raw socket channels.
"""

# Import main helpers and constants for easy access
from .transform import (
    KEY_SIZE,
    generate_key,
    parse_key,
    xor_bytes,
    wrap_reader,
    wrap_writer,
)
from .headers import HOP_BY_HOP_HEADERS, remove_proxy_headers, copy_response_headers
from .channels import (
    BUFFER_SIZE,
    CONFIRMATION_LINE,
    BodyReader,
    ClientChannel,
    SocketChannel,
    close_connection,
    create_tcp_connection,
    parse_target,
    pump,
    read_chunked_body,
    format_http_message,
)

# Package metadata
__version__ = "1.0.0"
__description__ = "Shared utilities for the veil forwarding proxy"

__all__ = [
    'KEY_SIZE',
    'generate_key',
    'parse_key',
    'xor_bytes',
    'wrap_reader',
    'wrap_writer',
    'HOP_BY_HOP_HEADERS',
    'remove_proxy_headers',
    'copy_response_headers',
    'BUFFER_SIZE',
    'CONFIRMATION_LINE',
    'BodyReader',
    'ClientChannel',
    'SocketChannel',
    'close_connection',
    'create_tcp_connection',
    'parse_target',
    'pump',
    'read_chunked_body',
    'format_http_message',
]
