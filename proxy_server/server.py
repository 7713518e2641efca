"""
Veil Proxy Server - forwarding HTTP proxy with optional stream obfuscation.

This server:
1. Listens on one port for HTTP proxy requests and CONNECT tunnel requests
2. Relays plain requests to the origin after stripping hop-by-hop headers
3. Tunnels CONNECT requests as raw bytes in both directions
4. XORs the client leg with a per-process secret key unless run with --plain
"""

import argparse
import logging
import os
import signal
import sys
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn

from proxy_utils.channels import BodyReader, ClientChannel, read_chunked_body
from proxy_utils.headers import remove_proxy_headers
from proxy_utils.transform import generate_key, parse_key

from .http_relay import HTTPRelay
from .tunnel import TunnelRelay

__version__ = "1.0.0"

DEFAULT_LISTEN = '0.0.0.0'
DEFAULT_PORT = 8081
DEFAULT_IDLE_TIMEOUT = 60
MAX_BODY_SIZE = 64 * 1024 * 1024

logger = logging.getLogger(__name__)


class ProxyHTTPServer(ThreadingMixIn, HTTPServer):
    """HTTP Server with one thread per connection, carrying the relay settings."""
    daemon_threads = True
    allow_reuse_address = True

    def __init__(self, server_address, handler_class, secret=None, idle_timeout=DEFAULT_IDLE_TIMEOUT):
        # Read-only for the server's lifetime; shared by every handler thread
        self.secret = secret
        self.idle_timeout = idle_timeout
        super().__init__(server_address, handler_class)


class ProxyHandler(BaseHTTPRequestHandler):
    """Request dispatcher - CONNECT goes to the tunnel relay, everything else to the HTTP relay."""

    protocol_version = "HTTP/1.1"
    server_version = f"VeilProxy/{__version__}"

    def setup(self):
        # StreamRequestHandler applies this as the client socket timeout
        self.timeout = self.server.idle_timeout
        super().setup()

    def __getattr__(self, name):
        # http.server looks up do_<METHOD>; route every method, standard or not, to dispatch
        if name.startswith('do_'):
            return self.dispatch
        raise AttributeError(f"{type(self).__name__!r} object has no attribute {name!r}")

    def log_message(self, format, *args):
        """Override to use our logger instead of stderr."""
        logger.info(f"{self.address_string()} - {format % args}")

    @property
    def request_id(self):
        return f"{self.client_address[0]}:{self.client_address[1]}"

    def dispatch(self):
        """Single entry point for every inbound request."""
        self.log_request_details()
        secret = self.server.secret

        try:
            if self.command == 'CONNECT':
                TunnelRelay(self, secret).relay()
                return

            try:
                body = self.read_body()
            except (ValueError, ConnectionError) as e:
                logger.warning(f"[{self.request_id}] Could not read request body: {e}")
                self.send_error(400, "Bad Request", f"Could not read request body: {e}")
                return

            remove_proxy_headers(self.headers)
            HTTPRelay(self, secret).relay(body)
            if isinstance(body, BodyReader) and body.remaining:
                # Unread body bytes would be parsed as the next request
                self.close_connection = True
        except Exception:
            # Whatever went wrong stays inside this connection
            logger.exception(f"[{self.request_id}] Error handling {self.command} {self.path}")
            self.close_connection = True

    def read_body(self):
        """
        Prepare the request body for forwarding.

        A body with a Content-Length is returned as a ``BodyReader`` and
        streamed to the origin.  A chunked body is de-chunked in memory, up to
        MAX_BODY_SIZE, so it can be re-sent with a Content-Length.
        """
        transfer_encoding = self.headers.get('Transfer-Encoding', '')
        if 'chunked' in transfer_encoding.lower():
            return read_chunked_body(self.rfile, max_size=MAX_BODY_SIZE)

        content_length = self.headers.get('Content-Length')
        if not content_length:
            return b''
        length = int(content_length)
        if length < 0:
            raise ValueError(f"Unacceptable Content-Length: {content_length}")
        if length == 0:
            return b''
        return BodyReader(self.rfile, length)

    def hijack(self):
        """
        Take the client connection away from HTTP handling.

        Returns:
            ClientChannel over the raw connection

        Raises:
            OSError: If the connection is no longer usable
        """
        if self.connection.fileno() == -1:
            raise ConnectionError("Client connection already closed")
        self.wfile.flush()
        # The idle timeout covers HTTP handling only; a quiet direction must not end the tunnel
        self.connection.settimeout(None)
        # No further request parsing on this connection
        self.close_connection = True
        return ClientChannel(self.connection, self.rfile, name=self.request_id)

    def log_request_details(self):
        logger.debug(
            f"[{self.request_id}] Received request: method={self.command} url={self.path} "
            f"protocol={self.request_version} host={self.headers.get('Host')} "
            f"headers={dict(self.headers.items())}"
        )


class ProxyServer:
    """
    Veil Proxy Server - owns the listener and the secret key.

    Args:
        host: Interface to listen on
        port: Port to listen on (0 picks a free one)
        secret: Stream transform key, or None to relay bytes unchanged
        idle_timeout: Client socket timeout while handling HTTP, in seconds (None
            disables it); tunnels clear it once relaying
    """

    def __init__(self, host=DEFAULT_LISTEN, port=DEFAULT_PORT, secret=None,
                 idle_timeout=DEFAULT_IDLE_TIMEOUT):
        self.host = host
        self.port = port
        self.secret = secret
        self.idle_timeout = idle_timeout
        self.httpd = None
        self._thread = None

    @property
    def address(self):
        """(host, port) actually bound, once bound."""
        if self.httpd is None:
            return self.host, self.port
        return self.httpd.server_address[:2]

    def bind(self):
        if self.httpd is None:
            self.httpd = ProxyHTTPServer(
                (self.host, self.port), ProxyHandler,
                secret=self.secret, idle_timeout=self.idle_timeout,
            )
        return self.httpd

    def start(self):
        """Bind and serve in the calling thread until stopped."""
        httpd = self.bind()
        host, port = self.address
        logger.info(f"Starting proxy server on {host}:{port}")
        try:
            httpd.serve_forever()
        finally:
            self.stop()

    def start_background(self):
        """Bind and serve from a daemon thread; returns the bound (host, port)."""
        httpd = self.bind()
        self._thread = threading.Thread(
            target=httpd.serve_forever,
            daemon=True,
            name="ProxyServer",
        )
        self._thread.start()
        host, port = self.address
        logger.info(f"Proxy server listening on {host}:{port}")
        return host, port

    def stop(self):
        """Stop accepting connections and release the listening socket."""
        if self.httpd is None:
            return
        logger.info("Stopping proxy server...")
        if self._thread is not None:
            self.httpd.shutdown()
            self._thread.join(timeout=5)
            self._thread = None
        self.httpd.server_close()
        self.httpd = None
        logger.info("Proxy server stopped")


def _key_argument(value):
    try:
        return parse_key(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from None


def build_parser():
    parser = argparse.ArgumentParser(
        description='Veil Proxy - forwarding HTTP/CONNECT proxy with XOR stream obfuscation',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s --listen=127.0.0.1 --port=8081
  %(prog)s --key=<64 hex chars>
  %(prog)s --plain

Test with curl (plain mode):
  curl -x http://localhost:8081 http://example.com/
        """
    )

    parser.add_argument(
        '--listen',
        default=os.getenv('PROXY_LISTEN', DEFAULT_LISTEN),
        help=f'Address to listen on (default: {DEFAULT_LISTEN}, env: PROXY_LISTEN)'
    )

    parser.add_argument(
        '--port',
        type=int,
        default=int(os.getenv('PROXY_PORT', str(DEFAULT_PORT))),
        help=f'Port to listen on (default: {DEFAULT_PORT}, env: PROXY_PORT)'
    )

    parser.add_argument(
        '--key',
        type=_key_argument,
        default=os.getenv('PROXY_KEY'),
        help='Secret key as 64 hex characters (default: generated at startup, env: PROXY_KEY)'
    )

    parser.add_argument(
        '--plain',
        action='store_true',
        help='Relay bytes unchanged, without the stream transform'
    )

    parser.add_argument(
        '--idle-timeout',
        type=float,
        default=float(os.getenv('PROXY_IDLE_TIMEOUT', str(DEFAULT_IDLE_TIMEOUT))),
        help=f'Client socket timeout while handling HTTP, in seconds (default: {DEFAULT_IDLE_TIMEOUT}, env: PROXY_IDLE_TIMEOUT)'
    )

    parser.add_argument(
        '--log-level',
        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
        default=os.getenv('LOG_LEVEL', 'INFO'),
        help='Set logging level (default: INFO, env: LOG_LEVEL)'
    )

    return parser


def resolve_secret(args, parser):
    """Pick the process key from the parsed arguments; None in plain mode."""
    if args.plain:
        if args.key is not None:
            parser.error('--key cannot be combined with --plain')
        return None
    if args.key is not None:
        return args.key
    return generate_key()


def signal_handler(signum, frame):
    """Handle shutdown signals."""
    logger.info(f"Received signal {signum}")
    global server_instance
    if server_instance:
        server_instance.stop()
    sys.exit(0)


# Global server instance for signal handling
server_instance = None


def main(argv=None):
    """Main function with command line argument parsing."""
    global server_instance

    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    try:
        secret = resolve_secret(args, parser)
    except (OSError, NotImplementedError) as e:
        logger.error(f"Failed to generate stream key: {e}")
        sys.exit(1)

    if secret is not None:
        logger.info(f"Stream key: {secret.hex()}")
    else:
        logger.info("Stream transform disabled (plain mode)")

    # Set up signal handlers for graceful shutdown
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    server_instance = ProxyServer(
        host=args.listen,
        port=args.port,
        secret=secret,
        idle_timeout=args.idle_timeout or None,
    )

    try:
        server_instance.start()
    except OSError as e:
        logger.error(f"Server error: {e}")
        sys.exit(1)
    finally:
        if server_instance:
            server_instance.stop()


if __name__ == "__main__":
    main()
