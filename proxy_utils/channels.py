"""
Raw byte channels for the relay.

A channel is anything with ``read(size)``, ``write(data)`` and ``close()``:

- ``read`` returns up to ``size`` bytes, ``b''`` at end of stream
- ``write`` sends the whole buffer or raises
- ``close`` shuts the socket down for both directions, which wakes any
  thread blocked on it, and may be called more than once from any thread

``SocketChannel`` owns an outbound socket.  ``ClientChannel`` takes over a
client connection accepted by ``http.server`` once HTTP handling on it is
finished (tunnel mode).
"""

import socket
import threading
import logging

BUFFER_SIZE = 65536

# Sent verbatim to the client once the origin is reachable
CONFIRMATION_LINE = b"HTTP/1.1 200 Connection Established\r\n\r\n"

logger = logging.getLogger(__name__)


class _Channel:
    """Shared close logic: shutdown once, ignore errors from a peer that is already gone."""

    def __init__(self, sock, name):
        self.sock = sock
        self.name = name
        self._closed = False
        self._close_lock = threading.Lock()

    @property
    def closed(self):
        return self._closed

    def write(self, data):
        self.sock.sendall(data)
        return len(data)

    def close(self):
        with self._close_lock:
            if self._closed:
                return
            self._closed = True
        try:
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            # Peer already reset or socket never connected
            pass
        self._release()

    def _release(self):
        pass

    def __repr__(self):
        return f"<{type(self).__name__} {self.name}>"


class SocketChannel(_Channel):
    """Channel over a socket this process dialed and owns."""

    def read(self, size=BUFFER_SIZE):
        return self.sock.recv(size)

    def _release(self):
        self.sock.close()


class ClientChannel(_Channel):
    """
    Channel over a hijacked client connection.

    Reads go through the handler's buffered ``rfile`` so that bytes the
    client pipelined behind the request headers are not lost.  The socket
    itself stays owned by the HTTP server, which closes it after the handler
    returns; closing the channel only shuts it down.
    """

    def __init__(self, sock, rfile, name):
        super().__init__(sock, name)
        self.rfile = rfile

    def read(self, size=BUFFER_SIZE):
        return self.rfile.read1(size)


def parse_target(target, default_port=None):
    """
    Split a CONNECT target into (host, port).

    Accepts ``host:port`` and ``[v6addr]:port``.

    Raises:
        ValueError: If the target has no usable host or port
    """
    target = target.strip()
    if target.startswith('['):
        host, sep, rest = target[1:].partition(']')
        if not sep:
            raise ValueError(f"Unterminated IPv6 literal in target: {target!r}")
        port_str = rest[1:] if rest.startswith(':') else ''
    else:
        host, _, port_str = target.rpartition(':')
        if not host:
            host, port_str = port_str, ''

    if not host:
        raise ValueError(f"Missing host in target: {target!r}")
    if not port_str:
        if default_port is None:
            raise ValueError(f"Missing port in target: {target!r}")
        return host, default_port

    try:
        port = int(port_str)
    except ValueError:
        raise ValueError(f"Invalid port in target: {target!r}") from None
    if not 0 < port < 65536:
        raise ValueError(f"Port out of range in target: {target!r}")
    return host, port


def create_tcp_connection(host, port, timeout=10):
    """
    Open a TCP connection to host:port.

    Args:
        host: Target hostname/IP
        port: Target port
        timeout: Connect timeout in seconds

    Returns:
        socket: Connected socket

    Raises:
        OSError: On DNS failure, refusal or timeout
    """
    sock = socket.create_connection((host, port), timeout=timeout)
    logger.debug(f"Connected to {host}:{port}")
    return sock


def close_connection(sock):
    """
    Safely close a socket connection.

    Args:
        sock: Socket to close (None is ignored)
    """
    if sock is None:
        return
    try:
        sock.close()
    except OSError as e:
        logger.debug(f"Error closing connection: {e}")


def pump(src, dst, buffer_size=BUFFER_SIZE):
    """
    Copy src to dst until end of stream, then close both.

    Closing both ends on exit lets the opposite pump of the same session
    return promptly instead of waiting on its own peer.

    Returns:
        int: Number of bytes copied

    Raises:
        OSError: Whatever the underlying read/write raised, after both ends are closed
    """
    total = 0
    try:
        while True:
            data = src.read(buffer_size)
            if not data:
                break
            dst.write(data)
            total += len(data)
    finally:
        dst.close()
        src.close()
    return total


class BodyReader:
    """
    File-like view of a request body with a known length.

    Hands out at most ``length`` bytes from the client's ``rfile`` and then
    reports end of stream, so the body can be streamed to the origin in
    blocks and the next pipelined request stays in ``rfile``.
    """

    def __init__(self, rfile, length):
        self.rfile = rfile
        self.length = length
        self.remaining = length

    def read(self, size=BUFFER_SIZE):
        if self.remaining <= 0:
            return b''
        if size is None or size < 0 or size > self.remaining:
            size = self.remaining
        data = self.rfile.read(size)
        if not data:
            raise ConnectionError(
                f"Connection closed with {self.remaining} request body bytes outstanding"
            )
        self.remaining -= len(data)
        return data


def read_chunked_body(rfile, max_size=None):
    """
    Read a ``Transfer-Encoding: chunked`` body and return it de-chunked.

    Trailer fields are consumed and discarded.

    Raises:
        ValueError: On a malformed chunk header or a body above max_size
        ConnectionError: If the stream ends mid-body
    """
    body = bytearray()
    while True:
        line = rfile.readline(BUFFER_SIZE)
        if not line:
            raise ConnectionError("Connection closed while reading chunked body")
        size_field = line.split(b';', 1)[0].strip()
        try:
            size = int(size_field, 16)
        except ValueError:
            raise ValueError(f"Invalid chunk size: {size_field!r}") from None
        if size < 0:
            raise ValueError(f"Invalid chunk size: {size_field!r}")

        if size == 0:
            break
        if max_size is not None and len(body) + size > max_size:
            raise ValueError(f"Chunked body exceeds {max_size} bytes")

        chunk = rfile.read(size)
        if len(chunk) != size:
            raise ConnectionError("Connection closed while reading chunked body")
        body.extend(chunk)

        terminator = rfile.readline(BUFFER_SIZE)
        if not terminator:
            raise ConnectionError("Connection closed while reading chunked body")
        if terminator not in (b"\r\n", b"\n"):
            raise ValueError(f"Missing CRLF after chunk data: {terminator[:20]!r}")

    # Trailers end with an empty line
    while True:
        line = rfile.readline(BUFFER_SIZE)
        if not line or line in (b'\r\n', b'\n'):
            break
    return bytes(body)


def format_http_message(data, max_length=200):
    """
    Format HTTP message bytes for logging (truncate if too long).

    Args:
        data: HTTP message bytes
        max_length: Maximum length to display

    Returns:
        str: Printable excerpt
    """
    decoded = data.decode('latin-1')
    if len(decoded) > max_length:
        return decoded[:max_length] + '...'
    return decoded
