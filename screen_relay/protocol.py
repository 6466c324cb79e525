"""
Wire protocol between the relay and the display client.

Every message on the wire is a frame:

    [1-byte tag][optional 4-byte length][optional payload]

Tags:
    1 = NOTIFY   a photo was just taken (no length, no payload)
    2 = DELIVER  photo data follows (length + payload)
    3 = PROBE    heartbeat probe (no length, no payload)

The length field is four base-255 digits, least significant first. Deployed
display clients decode exactly this scheme, so it must not be changed to
base-256 without updating them. The largest length it can carry is
255**4 - 1 bytes.
"""

import enum
import socket
from dataclasses import dataclass
from typing import Optional

from .errors import ProtocolError

LENGTH_PREFIX_SIZE = 4
LENGTH_BASE = 255
MAX_PAYLOAD_LENGTH = LENGTH_BASE ** LENGTH_PREFIX_SIZE - 1  # 4_228_250_624


class FrameKind(enum.IntEnum):
    NOTIFY = 1
    DELIVER = 2
    PROBE = 3


@dataclass
class Frame:
    """A decoded frame."""
    kind: FrameKind
    payload: bytes = b""


def encode_length_prefix(n: int) -> bytes:
    """Encode a payload length as four base-255 digits, least significant first."""
    if n < 0:
        raise ValueError(f"Length must be non-negative, got {n}")
    if n > MAX_PAYLOAD_LENGTH:
        raise ValueError(
            f"Length {n} exceeds the largest encodable length {MAX_PAYLOAD_LENGTH}"
        )
    digits = bytearray(LENGTH_PREFIX_SIZE)
    for i in range(LENGTH_PREFIX_SIZE):
        digits[i] = (n % LENGTH_BASE) & 0xFF
        n //= LENGTH_BASE
    return bytes(digits)


def decode_length_prefix(data: bytes) -> int:
    """Inverse of encode_length_prefix."""
    if len(data) != LENGTH_PREFIX_SIZE:
        raise ProtocolError(
            f"Length prefix must be {LENGTH_PREFIX_SIZE} bytes, got {len(data)}"
        )
    value = 0
    for i, digit in enumerate(data):
        value += digit * LENGTH_BASE ** i
    return value


def encode_notify() -> bytes:
    return bytes([FrameKind.NOTIFY])


def encode_probe() -> bytes:
    return bytes([FrameKind.PROBE])


def encode_deliver(payload: bytes) -> bytes:
    """Tag, length prefix, then the raw payload."""
    return bytes([FrameKind.DELIVER]) + encode_length_prefix(len(payload)) + payload


class FrameReader:
    """Reads frames off a connected socket, one at a time."""

    def __init__(self, sock: socket.socket):
        self.sock = sock

    def _recv_exactly(self, size: int, allow_eof: bool = False) -> Optional[bytes]:
        chunks = []
        remaining = size
        while remaining > 0:
            chunk = self.sock.recv(min(remaining, 65536))
            if not chunk:
                if allow_eof and remaining == size:
                    return None
                raise ProtocolError(
                    f"Connection closed with {remaining} of {size} bytes outstanding"
                )
            chunks.append(chunk)
            remaining -= len(chunk)
        return b"".join(chunks)

    def read_frame(self) -> Optional[Frame]:
        """
        Read the next frame.

        Returns:
            The frame, or None if the peer closed the connection cleanly
            between frames.

        Raises:
            ProtocolError: unknown tag or connection closed mid-frame
            socket.timeout: if the socket has a timeout and it expires
                before the tag byte arrives
        """
        tag = self._recv_exactly(1, allow_eof=True)
        if tag is None:
            return None
        try:
            kind = FrameKind(tag[0])
        except ValueError:
            raise ProtocolError(f"Unknown frame tag {tag[0]}")

        if kind != FrameKind.DELIVER:
            return Frame(kind)

        length = decode_length_prefix(self._recv_exactly(LENGTH_PREFIX_SIZE))
        payload = self._recv_exactly(length) if length else b""
        return Frame(kind, payload)
