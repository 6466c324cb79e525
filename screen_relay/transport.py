"""TCP plumbing: binding listening sockets, accepting clients, full writes."""

import logging
import socket
from typing import Optional, Tuple

from .errors import BindError

logger = logging.getLogger(__name__)

DEFAULT_BACKLOG = 0
ACCEPT_POLL_S = 1.0


def write_fully(sock: socket.socket, data: bytes) -> bool:
    """
    Write all of data to sock, blocking until it is sent.

    A socket timeout bounds each send call, so it only trips when the peer
    stops reading, not when a large payload is slow to transmit.

    Returns:
        True on success, False if the connection broke (reset, broken pipe,
        no progress within the send timeout).
    """
    view = memoryview(data)
    try:
        while view:
            sent = sock.send(view)
            view = view[sent:]
        return True
    except OSError as e:
        logger.warning(f"Write of {len(data)} bytes failed: {e}")
        return False


def close_quietly(sock: Optional[socket.socket]):
    if sock is None:
        return
    try:
        sock.close()
    except OSError as e:
        logger.warning(f"close: {e}")


class Transport:
    """
    Binds a fresh listening socket per session and accepts one client on it.

    Listening sockets are never reused across sessions.
    """

    def __init__(
        self,
        host: Optional[str] = None,
        backlog: int = DEFAULT_BACKLOG,
        send_timeout: Optional[float] = None,
        accept_poll: float = ACCEPT_POLL_S,
    ):
        self.host = host or None
        self.backlog = backlog
        self.send_timeout = send_timeout
        self.accept_poll = accept_poll

    def bind(self, port: int) -> socket.socket:
        """Bind and listen on the first usable address for port."""
        logger.info(f"Binding server socket to port {port}")
        try:
            candidates = socket.getaddrinfo(
                self.host, port, socket.AF_UNSPEC, socket.SOCK_STREAM, 0,
                socket.AI_PASSIVE | socket.AI_NUMERICSERV,
            )
        except socket.gaierror as e:
            raise BindError(f"getaddrinfo failed for port {port}: {e}") from e

        last_error: Optional[OSError] = None
        for family, socktype, proto, _, addr in candidates:
            try:
                lsock = socket.socket(family, socktype, proto)
            except OSError as e:
                last_error = e
                continue
            try:
                lsock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
                lsock.bind(addr)
                lsock.listen(self.backlog)
            except OSError as e:
                last_error = e
                lsock.close()
                continue
            lsock.settimeout(self.accept_poll)
            return lsock

        raise BindError(f"Could not bind socket to any address on port {port}: {last_error}")

    def accept(self, lsock: socket.socket) -> Tuple[socket.socket, tuple]:
        """
        Wait for one client.

        Raises:
            socket.timeout: nobody connected within accept_poll seconds
            OSError: the accept itself failed
        """
        conn, addr = lsock.accept()
        conn.settimeout(self.send_timeout)
        return conn, addr
