"""
Test Suite for Veil Proxy

Test Modules:
- test_transform.py: XOR stream transform and key handling
- test_headers.py: hop-by-hop header sanitizing
- test_channels.py: socket channels, target parsing, body de-chunking
- test_http_requests.py: HTTP relay end to end (requests through the proxy)
- test_https_connect.py: CONNECT tunnelling end to end (raw sockets)
- test_server.py: command line, key selection and server lifecycle

Every test runs against in-process origin servers bound to ephemeral ports
on 127.0.0.1; no network access is needed.

Usage:
    # Run all tests
    pytest tests/

    # Run specific test module
    pytest tests/test_https_connect.py -v
"""

import sys
import os

# Add project root to Python path for imports
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Test configuration constants
TEST_CONFIG = {
    'PROXY_HOST': '127.0.0.1',
    'IDLE_TIMEOUT': 5,
    'SOCKET_TIMEOUT': 5,
    'CLOSE_WAIT': 5,
}

__all__ = ['TEST_CONFIG']
