"""
HTTP relay - forwards a plain (non-CONNECT) proxy request to the origin.

The relay acts as an HTTP client on the caller's behalf:
1. Rebuilds the request from the absolute target URL and the sanitized headers
2. Executes it against the origin with a bounded timeout
3. Copies status, headers and body back to the client, transforming the
   body when a secret key is set
"""

import http.client
import logging
import socket
import ssl
from urllib.parse import urlsplit

from proxy_utils.channels import BUFFER_SIZE, BodyReader, format_http_message
from proxy_utils.headers import copy_response_headers
from proxy_utils.transform import wrap_writer

RELAY_TIMEOUT = 30

# Responses that never carry a body, whatever their headers say
_BODILESS_STATUSES = (204, 304)

logger = logging.getLogger(__name__)


class HTTPRelay:
    """
    Relays one request through ``http.client``.

    Args:
        handler: The ``ProxyHandler`` serving the client connection
        secret: Stream transform key for the response body, or None
        timeout: Origin connect/read timeout in seconds
    """

    def __init__(self, handler, secret=None, timeout=RELAY_TIMEOUT):
        self.handler = handler
        self.secret = secret
        self.timeout = timeout

    @property
    def request_id(self):
        return self.handler.request_id

    def relay(self, body=b''):
        """
        Forward the request.

        Args:
            body: Request body as bytes, or a ``BodyReader`` streamed to the origin
        """
        target = urlsplit(self.handler.path)
        try:
            host, port = target.hostname, target.port
        except ValueError as e:
            self.fail(502, "Bad Gateway", f"Target server error: {e}")
            return
        if target.scheme not in ('http', 'https') or not host:
            self.fail(502, "Bad Gateway",
                      f"Target server error: unsupported target {self.handler.path!r}")
            return

        use_ssl = target.scheme == 'https'
        port = port or (443 if use_ssl else 80)
        path = target.path or '/'
        if target.query:
            path += '?' + target.query

        connection = self.open_connection(host, port, use_ssl)
        try:
            try:
                self.send_request(connection, target, path, body)
                response = connection.getresponse()
            except socket.timeout:
                logger.error(f"[{self.request_id}] Timeout talking to {host}:{port}")
                self.fail(504, "Gateway Timeout", f"Target server error: timed out after {self.timeout}s")
                return
            except socket.gaierror as e:
                logger.error(f"[{self.request_id}] DNS resolution failed for {host}: {e}")
                self.fail(502, "Bad Gateway", f"Target server error: DNS resolution failed: {host}")
                return
            except ConnectionRefusedError:
                logger.error(f"[{self.request_id}] Connection refused by {host}:{port}")
                self.fail(502, "Bad Gateway", f"Target server error: connection refused: {host}:{port}")
                return
            except ssl.SSLError as e:
                logger.error(f"[{self.request_id}] SSL error connecting to {host}:{port}: {e}")
                self.fail(502, "Bad Gateway", f"Target server error: SSL error: {e}")
                return
            except (OSError, http.client.HTTPException) as e:
                logger.error(f"[{self.request_id}] Error making request to {host}:{port}: {e}")
                self.fail(502, "Bad Gateway", f"Target server error: {e}")
                return

            logger.info(f"[{self.request_id}] {self.handler.command} {host}:{port}{path} -> "
                        f"{response.status} {response.reason}")
            try:
                self.copy_response(response)
            finally:
                response.close()
        finally:
            connection.close()

    def open_connection(self, host, port, use_ssl):
        if use_ssl:
            return http.client.HTTPSConnection(
                host, port, timeout=self.timeout, context=ssl.create_default_context()
            )
        return http.client.HTTPConnection(host, port, timeout=self.timeout)

    def send_request(self, connection, target, path, body):
        """Send request line, headers (duplicates and order kept) and body."""
        headers = self.handler.headers
        connection.putrequest(self.handler.command, path,
                              skip_host=True, skip_accept_encoding=True)

        for name, value in headers.items():
            # Recomputed below from the body actually read
            if name.lower() == 'content-length':
                continue
            connection.putheader(name, value)

        if 'Host' not in headers:
            connection.putheader('Host', target.netloc.rpartition('@')[2])

        streamed = isinstance(body, BodyReader)
        length = body.length if streamed else len(body)
        if length or 'Content-Length' in headers:
            connection.putheader('Content-Length', str(length))

        if streamed:
            logger.debug(f"[{self.request_id}] Streaming request body ({length} bytes)")
        elif body:
            logger.debug(f"[{self.request_id}] Request body ({length} bytes): "
                         f"{format_http_message(body)}")
        # http.client sends a readable body in blocks
        connection.endheaders(body if length else None)

    def copy_response(self, response):
        """
        Write the origin response back to the client.

        Once the status line is out nothing can change it: body errors are
        logged and the client connection is dropped.
        """
        handler = self.handler
        handler.send_response_only(response.status, response.reason)

        has_length = False
        for name, value in copy_response_headers(response.getheaders()):
            if name.lower() == 'content-length':
                has_length = True
            handler.send_header(name, value)

        expects_body = (handler.command != 'HEAD'
                        and response.status >= 200
                        and response.status not in _BODILESS_STATUSES)
        if expects_body and not has_length:
            # No length to frame with: the end of the body is the end of the connection
            handler.send_header('Connection', 'close')
        handler.end_headers()

        if not expects_body:
            return

        writer = wrap_writer(handler.wfile, self.secret)
        copied = 0
        try:
            while True:
                chunk = response.read1(BUFFER_SIZE)
                if not chunk:
                    break
                writer.write(chunk)
                copied += len(chunk)
            if response.length:
                # read1 reports a short body as end of stream
                raise http.client.IncompleteRead(b'', response.length)
            handler.wfile.flush()
        except (OSError, http.client.HTTPException) as e:
            logger.warning(f"[{self.request_id}] Body copy aborted after {copied} bytes: {e}")
            handler.close_connection = True
            return

        logger.debug(f"[{self.request_id}] Relayed {copied} body bytes")

    def fail(self, code, message, explain):
        """Report an origin failure to the client before any response was sent."""
        try:
            self.handler.send_error(code, message, explain)
        except OSError as e:
            logger.debug(f"[{self.request_id}] Could not send error response: {e}")
