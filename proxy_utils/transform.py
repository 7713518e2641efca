"""
Repeating-key XOR stream transform.

Byte ``i`` of a stream is combined with ``key[i % len(key)]``.  Running the
same transform twice over the same positions gives back the original bytes,
so one function serves as both encoder and decoder.

This is obfuscation, not encryption: a repeating XOR key falls to any
known-plaintext guess.  Do not rely on it for confidentiality.

Wrappers
--------
``wrap_reader`` and ``wrap_writer`` decorate any object exposing
``read(size)`` or ``write(data)`` (sockets adapted by ``channels``, file
objects, ``http.client.HTTPResponse``...).  Each wrapper keeps its own
position counter starting at 0, so the two directions of a connection are
transformed independently.
"""

import binascii
import os

KEY_SIZE = 32


def generate_key(size=KEY_SIZE):
    """
    Generate a random secret key.

    Args:
        size: Key length in bytes (default 32)

    Returns:
        bytes: Fresh random key

    Raises:
        ValueError: If size is not positive
        OSError / NotImplementedError: If the OS randomness source fails
    """
    if size <= 0:
        raise ValueError(f"Key size must be positive, got {size}")
    return os.urandom(size)


def parse_key(text):
    """
    Parse a hex-encoded key as printed in the startup log.

    Raises:
        ValueError: If text is not hex or does not decode to KEY_SIZE bytes
    """
    try:
        key = binascii.unhexlify(text.strip())
    except (binascii.Error, ValueError) as e:
        raise ValueError(f"Key is not valid hex: {e}") from e
    if len(key) != KEY_SIZE:
        raise ValueError(f"Key must be {KEY_SIZE} bytes ({KEY_SIZE * 2} hex characters), got {len(key)}")
    return key


def xor_bytes(data, key, offset=0):
    """
    XOR data with the key stream starting at stream position offset.

    Args:
        data: Bytes-like input
        key: Non-empty key
        offset: Stream position of data[0]

    Returns:
        bytes: Transformed copy, same length as data
    """
    length = len(data)
    if not length:
        return b''

    key_len = len(key)
    start = offset % key_len
    # Rotate so the stream begins at the right key byte, then repeat to cover data
    rotated = key[start:] + key[:start]
    keystream = (rotated * (length // key_len + 1))[:length]

    mixed = int.from_bytes(data, 'big') ^ int.from_bytes(keystream, 'big')
    return mixed.to_bytes(length, 'big')


class TransformReader:
    """Reader decorator that transforms every byte it hands out."""

    def __init__(self, underlying, key):
        self.underlying = underlying
        self.key = key
        self.position = 0

    def read(self, size=-1):
        # An exception from the underlying read propagates with the counter untouched
        data = self.underlying.read(size)
        if not data:
            return b''
        out = xor_bytes(data, self.key, self.position)
        self.position += len(data)
        return out

    def close(self):
        close = getattr(self.underlying, 'close', None)
        if close is not None:
            close()


class TransformWriter:
    """Writer decorator that transforms a copy of each buffer before delegating."""

    def __init__(self, underlying, key):
        self.underlying = underlying
        self.key = key
        self.position = 0

    def write(self, data):
        out = xor_bytes(data, self.key, self.position)
        # Advance by what was requested, not by what the underlying write reports
        self.position += len(data)
        self.underlying.write(out)
        return len(data)

    def flush(self):
        flush = getattr(self.underlying, 'flush', None)
        if flush is not None:
            flush()

    def close(self):
        close = getattr(self.underlying, 'close', None)
        if close is not None:
            close()


def wrap_reader(underlying, key):
    """Wrap a readable so reads come back transformed. A None key disables the transform."""
    if key is None:
        return underlying
    return TransformReader(underlying, key)


def wrap_writer(underlying, key):
    """Wrap a writable so writes go out transformed. A None key disables the transform."""
    if key is None:
        return underlying
    return TransformWriter(underlying, key)
