"""
Hop-by-hop header handling.

Headers are ``http.client.HTTPMessage`` objects (what ``http.server`` and
``http.client`` hand out): names match case-insensitively and repeated
fields keep their order.
"""

# Meaningful only to a single connection leg; never forwarded to the origin
HOP_BY_HOP_HEADERS = (
    'Proxy-Connection',
    'Proxy-Authenticate',
    'Proxy-Authorization',
    'Connection',
    'Keep-Alive',
    'TE',
    'Trailers',
    'Transfer-Encoding',
    'Upgrade',
)

# Re-done by the relay when it writes the body back to the client
_REFRAMED_RESPONSE_HEADERS = ('transfer-encoding',)


def remove_proxy_headers(headers):
    """
    Strip hop-by-hop and proxy-specific fields from a request in place.

    Every occurrence is removed regardless of letter case.  Other fields are
    left untouched, in their original order.  Safe to call repeatedly.

    Args:
        headers: HTTPMessage (or any email.message.Message) to sanitize
    """
    for name in HOP_BY_HOP_HEADERS:
        del headers[name]


def copy_response_headers(response_headers):
    """
    Yield (name, value) pairs of an origin response, in order, duplicates kept.

    Args:
        response_headers: List of (name, value) tuples, as from HTTPResponse.getheaders()
    """
    for name, value in response_headers:
        if name.lower() in _REFRAMED_RESPONSE_HEADERS:
            continue
        yield name, value
