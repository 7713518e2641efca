"""Shared fixtures: in-process origin servers and a proxy running in the background."""

import socket
import threading
from http.server import BaseHTTPRequestHandler, HTTPServer
from socketserver import ThreadingMixIn

import pytest
import requests

from proxy_server import ProxyServer
from proxy_utils.channels import CONFIRMATION_LINE
from proxy_utils.transform import generate_key
from tests import TEST_CONFIG


class ThreadingHTTPServer(ThreadingMixIn, HTTPServer):
    daemon_threads = True
    allow_reuse_address = True


class OriginHandler(BaseHTTPRequestHandler):
    """Origin web server: a few fixed routes, every request recorded on the server."""

    def log_message(self, format, *args):
        pass

    def record(self, body=b''):
        self.server.records.append({
            'method': self.command,
            'path': self.path,
            'headers': list(self.headers.items()),
            'body': body,
        })

    def read_body(self):
        length = int(self.headers.get('Content-Length') or 0)
        return self.rfile.read(length) if length else b''

    def reply(self, status, body, headers=()):
        self.send_response(status)
        for name, value in headers:
            self.send_header(name, value)
        self.send_header('Content-Length', str(len(body)))
        self.end_headers()
        if self.command != 'HEAD':
            self.wfile.write(body)

    def do_GET(self):
        self.record()
        if self.path == '/hello':
            self.reply(200, b'hello', [('Content-Type', 'text/plain')])
        elif self.path == '/cookies':
            self.reply(200, b'ok', [
                ('Set-Cookie', 'a=1'),
                ('X-Multi', 'first'),
                ('Set-Cookie', 'b=2'),
                ('X-Multi', 'second'),
            ])
        elif self.path == '/stream':
            # No Content-Length: body ends when the connection closes
            self.send_response(200)
            self.send_header('Content-Type', 'application/octet-stream')
            self.end_headers()
            self.wfile.write(b'x' * 100000)
            self.close_connection = True
        elif self.path == '/truncated':
            # Promises 100 bytes, sends 10, then hangs up
            self.send_response(200)
            self.send_header('Content-Length', '100')
            self.end_headers()
            self.wfile.write(b'x' * 10)
            self.close_connection = True
        elif self.path.startswith('/query'):
            self.reply(200, self.path.encode())
        else:
            self.reply(404, b'not found')

    def do_HEAD(self):
        self.record()
        self.reply(200, b'hello', [('Content-Type', 'text/plain')])

    def do_POST(self):
        body = self.read_body()
        self.record(body)
        self.reply(201, body)

    def do_PROPFIND(self):
        self.record()
        self.reply(207, b'multistatus')


class RawOrigin:
    """
    TCP origin for tunnel tests.

    Records what every accepted connection sends and echoes it back.
    ``connections`` holds one dict per accepted connection with the
    received bytes and an event set when the peer closed.
    """

    def __init__(self, echo=True):
        self.echo = echo
        self.sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self.sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self.sock.bind(('127.0.0.1', 0))
        self.sock.listen(16)
        self.port = self.sock.getsockname()[1]
        self.connections = []
        self.accepted = threading.Condition()
        self.running = True
        threading.Thread(target=self._accept_loop, daemon=True).start()

    def _accept_loop(self):
        while self.running:
            try:
                conn, _ = self.sock.accept()
            except OSError:
                break
            record = {'sock': conn, 'received': bytearray(), 'closed': threading.Event()}
            with self.accepted:
                self.connections.append(record)
                self.accepted.notify_all()
            threading.Thread(target=self._serve, args=(record,), daemon=True).start()

    def _serve(self, record):
        conn = record['sock']
        try:
            while True:
                data = conn.recv(65536)
                if not data:
                    break
                record['received'].extend(data)
                if self.echo:
                    conn.sendall(data)
        except OSError:
            pass
        finally:
            record['closed'].set()
            conn.close()

    def wait_for_connections(self, count, timeout=TEST_CONFIG['SOCKET_TIMEOUT']):
        with self.accepted:
            self.accepted.wait_for(lambda: len(self.connections) >= count, timeout=timeout)
        return self.connections

    def close(self):
        self.running = False
        try:
            # Wakes the accept loop
            self.sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self.sock.close()
        for record in self.connections:
            try:
                record['sock'].shutdown(socket.SHUT_RDWR)
            except OSError:
                pass
            record['sock'].close()


def free_port():
    """A port nothing listens on (bound, then released)."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(('127.0.0.1', 0))
        return sock.getsockname()[1]


def recv_exact(sock, count):
    data = b''
    while len(data) < count:
        chunk = sock.recv(count - len(data))
        if not chunk:
            break
        data += chunk
    return data


def recv_until_closed(sock):
    data = b''
    while True:
        chunk = sock.recv(65536)
        if not chunk:
            return data
        data += chunk


def open_tunnel(proxy_address, target, extra=b''):
    """
    Send a CONNECT request and return (socket, reply head).

    The reply head is exactly as many bytes as the confirmation line, so
    nothing from the tunnelled stream is consumed.
    """
    sock = socket.create_connection(proxy_address, timeout=TEST_CONFIG['SOCKET_TIMEOUT'])
    request = f"CONNECT {target} HTTP/1.1\r\nHost: {target}\r\n\r\n".encode() + extra
    sock.sendall(request)
    head = recv_exact(sock, len(CONFIRMATION_LINE))
    return sock, head


@pytest.fixture
def origin():
    """HTTP origin server on an ephemeral port."""
    server = ThreadingHTTPServer(('127.0.0.1', 0), OriginHandler)
    server.records = []
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def origin_url(origin):
    host, port = origin.server_address[:2]
    return f"http://{host}:{port}"


@pytest.fixture
def raw_origin():
    server = RawOrigin()
    yield server
    server.close()


@pytest.fixture
def secret():
    return generate_key()


def _start_proxy(secret):
    proxy = ProxyServer(
        host=TEST_CONFIG['PROXY_HOST'],
        port=0,
        secret=secret,
        idle_timeout=TEST_CONFIG['IDLE_TIMEOUT'],
    )
    proxy.start_background()
    return proxy


@pytest.fixture
def proxy(secret):
    """Proxy with the stream transform enabled."""
    server = _start_proxy(secret)
    yield server
    server.stop()


@pytest.fixture
def plain_proxy():
    """Proxy relaying bytes unchanged."""
    server = _start_proxy(None)
    yield server
    server.stop()


def make_session(proxy_server):
    """requests session routed through the proxy, ignoring *_PROXY / NO_PROXY env vars."""
    host, port = proxy_server.address
    session = requests.Session()
    session.trust_env = False
    session.proxies = {'http': f"http://{host}:{port}"}
    return session


@pytest.fixture
def session(proxy):
    with make_session(proxy) as s:
        yield s


@pytest.fixture
def plain_session(plain_proxy):
    with make_session(plain_proxy) as s:
        yield s
