"""
Forwards mailbox commands to the connected display client.

One Forwarder.run() call is one session: it ends when a write to the client
fails, or when the mailbox stays idle and the liveness flag reports the
client dead. A photo that cannot be read is skipped without ending the
session.
"""

import enum
import logging
import os
import socket
import threading
from typing import Optional

from .liveness import LivenessFlag
from .mailbox import CommandKind, CommandMailbox
from .protocol import MAX_PAYLOAD_LENGTH, encode_deliver, encode_notify
from .transport import close_quietly, write_fully

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 0.5


class SessionEnd(enum.Enum):
    CLIENT_DEAD = "client_dead"
    WRITE_FAILED = "write_failed"
    STOPPED = "stopped"


def read_payload(path: str) -> bytes:
    """
    Read the whole file at path.

    Raises:
        OSError: the file is missing or unreadable, or changed size while
            being read
    """
    with open(path, "rb") as f:
        expected = os.fstat(f.fileno()).st_size
        data = f.read()
    if len(data) != expected:
        raise OSError(f"Read only {len(data)} of {expected} bytes from {path}")
    return data


class Forwarder:
    """Drains the mailbox into one client socket."""

    def __init__(
        self,
        mailbox: CommandMailbox,
        flag: LivenessFlag,
        poll_interval: float = DEFAULT_POLL_INTERVAL_S,
        stop_event: Optional[threading.Event] = None,
    ):
        self.mailbox = mailbox
        self.flag = flag
        self.poll_interval = poll_interval
        self._stop_event = stop_event or threading.Event()

        # Stats
        self.notifications_sent = 0
        self.files_sent = 0
        self.files_skipped = 0

    def run(self, conn: socket.socket) -> SessionEnd:
        """Serve conn until the session ends. Always closes conn."""
        try:
            return self._forward(conn)
        finally:
            close_quietly(conn)

    def _forward(self, conn: socket.socket) -> SessionEnd:
        while True:
            if self._stop_event.is_set():
                return SessionEnd.STOPPED

            command = self.mailbox.take(self.poll_interval)

            if command is None:
                if not self.flag.is_alive:
                    logger.info("While waiting for commands, the heartbeat signaled that the client is dead")
                    return SessionEnd.CLIENT_DEAD
                continue

            if command.kind == CommandKind.EMPTY:
                logger.debug("Ignoring empty command")
                continue

            if command.kind == CommandKind.NOTIFY:
                logger.info("Sending 'image taken' notification")
                if not write_fully(conn, encode_notify()):
                    logger.error("Error on write of notification, ending session")
                    return SessionEnd.WRITE_FAILED
                self.notifications_sent += 1
                continue

            frame = self._build_deliver_frame(command.path)
            if frame is None:
                self.files_skipped += 1
                continue

            logger.info(f"Transmitting file {command.path} ({len(frame)} bytes framed)")
            if not write_fully(conn, frame):
                logger.error(f"Error on write of file {command.path}, ending session")
                return SessionEnd.WRITE_FAILED
            self.files_sent += 1
            logger.info("File has been transmitted")

    def _build_deliver_frame(self, path: str) -> Optional[bytes]:
        logger.info(f"Trying to read file {path}")
        try:
            data = read_payload(path)
        except OSError as e:
            logger.warning(f"Could not read file {path}: {e}")
            return None
        if len(data) > MAX_PAYLOAD_LENGTH:
            logger.warning(
                f"File {path} is {len(data)} bytes, larger than the protocol maximum "
                f"{MAX_PAYLOAD_LENGTH}; skipping"
            )
            return None
        return encode_deliver(data)
