"""
Tunnel relay - serves CONNECT requests with a raw bidirectional byte pipe.

Session states: Dialing -> Confirming -> Relaying -> Closed

- Dialing:    TCP connect to the requested host:port (503 on failure)
- Confirming: take over the client connection and send the confirmation line
- Relaying:   two pumps, client->origin and origin->client, run concurrently;
              the first one to stop closes both channels, which ends the other
- Closed:     both pumps have been joined

With a secret key the client leg is obfuscated: bytes from the client are
decoded before they reach the origin and bytes from the origin are encoded
before they reach the client.  Each direction keeps its own position counter.
"""

import logging
from concurrent.futures import ThreadPoolExecutor, wait

from proxy_utils.channels import (
    CONFIRMATION_LINE,
    SocketChannel,
    close_connection,
    create_tcp_connection,
    parse_target,
    pump,
)
from proxy_utils.transform import wrap_reader, wrap_writer

DIAL_TIMEOUT = 10

logger = logging.getLogger(__name__)


class TunnelResult:
    """Outcome of a finished tunnel session."""

    def __init__(self):
        self.bytes_up = 0      # client -> origin
        self.bytes_down = 0    # origin -> client
        self.errors = []       # (direction, exception)

    @property
    def ok(self):
        return not self.errors

    def __repr__(self):
        return (f"<TunnelResult up={self.bytes_up} down={self.bytes_down} "
                f"errors={len(self.errors)}>")


class TunnelRelay:
    """
    Relays one CONNECT session.

    Args:
        handler: The ``ProxyHandler`` serving the client connection
        secret: Stream transform key for the client leg, or None
        dial_timeout: Origin connect timeout in seconds

    Once relaying, neither socket has a timeout: a session stays up while
    either direction can still move bytes, and ends only when one side
    closes or fails.
    """

    def __init__(self, handler, secret=None, dial_timeout=DIAL_TIMEOUT):
        self.handler = handler
        self.secret = secret
        self.dial_timeout = dial_timeout

    @property
    def request_id(self):
        return self.handler.request_id

    def relay(self):
        """
        Run the session to completion.

        Returns:
            TunnelResult once relaying finished, or None if the session
            ended before the relaying stage
        """
        origin_sock = self.dial()
        if origin_sock is None:
            return None
        origin = SocketChannel(origin_sock, self.handler.path)

        try:
            client = self.handler.hijack()
        except OSError as e:
            logger.error(f"[{self.request_id}] Hijacking failed: {e}")
            origin.close()
            self.handler.send_error(500, "Internal Server Error", f"Hijacking failed: {e}")
            return None

        try:
            client.write(CONFIRMATION_LINE)
        except OSError as e:
            logger.error(f"[{self.request_id}] Confirmation error: {e}")
            client.close()
            origin.close()
            return None

        logger.info(f"[{self.request_id}] Tunnel established to {self.handler.path}")
        result = self.run_pumps(client, origin)
        logger.info(f"[{self.request_id}] Tunnel to {self.handler.path} closed "
                    f"({result.bytes_up} bytes up, {result.bytes_down} bytes down)")
        return result

    def dial(self):
        """Connect to the CONNECT target, answering 503 on failure."""
        try:
            host, port = parse_target(self.handler.path)
        except ValueError as e:
            logger.warning(f"[{self.request_id}] Bad CONNECT target: {e}")
            self.handler.send_error(503, "Service Unavailable", f"Connection failed: {e}")
            return None

        try:
            sock = create_tcp_connection(host, port, timeout=self.dial_timeout)
        except OSError as e:
            logger.error(f"[{self.request_id}] Failed to connect to {host}:{port}: {e}")
            self.handler.send_error(503, "Service Unavailable", f"Connection failed: {e}")
            return None

        try:
            # The dial timeout must not outlive the connect
            sock.settimeout(None)
        except OSError as e:
            logger.error(f"[{self.request_id}] Origin connection unusable: {e}")
            close_connection(sock)
            self.handler.send_error(503, "Service Unavailable", f"Connection failed: {e}")
            return None
        return sock

    def run_pumps(self, client, origin):
        """Pump both directions concurrently and join them."""
        upstream = (wrap_reader(client, self.secret), origin)
        downstream = (origin, wrap_writer(client, self.secret))

        with ThreadPoolExecutor(max_workers=2,
                                thread_name_prefix=f"Tunnel-{self.request_id}") as pool:
            futures = {
                'client->origin': pool.submit(pump, *upstream),
                'origin->client': pool.submit(pump, *downstream),
            }
            wait(futures.values())

        result = TunnelResult()
        for direction, future in futures.items():
            error = future.exception()
            if error is not None:
                # Nobody left to tell; a mid-stream error is only logged
                logger.debug(f"[{self.request_id}] {direction} ended with error: {error}")
                result.errors.append((direction, error))
                continue
            if direction == 'client->origin':
                result.bytes_up = future.result()
            else:
                result.bytes_down = future.result()
        return result
