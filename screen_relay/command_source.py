"""
Command sources - feed command lines into the mailbox.

The photobooth script writes one line per event into a named pipe:
"+" when a photo has just been taken, then the path of the photo file
once it is on disk. FifoCommandSource reads those lines. ZmqCommandSource
accepts the same commands as ZeroMQ messages for producers that are not on
the same filesystem.

Usage:
    source = FifoCommandSource("/tmp/photobooth.fifo", mailbox)
    source.start()

    # From a producer process:
    send_command("tcp://127.0.0.1:5560", "/srv/photos/img_0042.jpg")
"""

import logging
import os
import stat
import threading
from typing import BinaryIO, Callable, Optional

import zmq

from .errors import CommandSourceError, exit_on_fatal
from .mailbox import MAX_COMMAND_LENGTH, CommandMailbox

logger = logging.getLogger(__name__)

COMMAND_TOPIC = b"command"
RETRY_DELAY_S = 0.1
DISCARD_CHUNK = 4096


def create_fifo(path: str):
    """Create the named pipe at path. An existing pipe is reused."""
    logger.info(f"Creating named pipe {path} for accepting new file names")
    old_umask = os.umask(0)
    try:
        os.mkfifo(path, 0o600)
    except FileExistsError:
        if not stat.S_ISFIFO(os.stat(path).st_mode):
            raise CommandSourceError(f"{path} exists and is not a named pipe")
    except OSError as e:
        raise CommandSourceError(f"mkfifo {path}: {e}") from e
    finally:
        os.umask(old_umask)


def read_line(stream: BinaryIO, max_length: int = MAX_COMMAND_LENGTH) -> Optional[str]:
    """
    Read one line, without its newline.

    Bytes beyond max_length are discarded as they are read, so a producer
    that never sends a newline cannot grow memory. Returns None at end of
    input.
    """
    line = stream.readline(max_length + 1)
    if not line:
        return None
    if line.endswith(b"\n"):
        line = line[:-1]
    elif len(line) > max_length:
        # Skip the rest of the over-long line
        while True:
            rest = stream.readline(DISCARD_CHUNK)
            if not rest or rest.endswith(b"\n"):
                break
    return line[:max_length].decode("utf-8", errors="replace")


class CommandSource:
    """Background thread that publishes commands into a mailbox."""

    name = "command-source"

    def __init__(
        self,
        mailbox: CommandMailbox,
        stop_event: Optional[threading.Event] = None,
        on_fatal: Callable[[BaseException], None] = exit_on_fatal,
    ):
        self.mailbox = mailbox
        self.on_fatal = on_fatal
        self._stop_event = stop_event or threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.lines_read = 0

    def start(self):
        self._thread = threading.Thread(target=self.run, daemon=True, name=self.name)
        self._thread.start()

    def stop(self, timeout: float = 2.0):
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._wake()
            self._thread.join(timeout=timeout)
        self._thread = None

    def run(self):
        try:
            self._read_loop()
        except CommandSourceError as e:
            self.on_fatal(e)

    def _read_loop(self):
        raise NotImplementedError

    def _wake(self):
        """Unblock a reader stuck in blocking I/O so it sees the stop event."""

    def _deliver(self, text: str):
        self.lines_read += 1
        logger.debug(f"Received command {text!r}")
        self.mailbox.publish(text)


class FifoCommandSource(CommandSource):
    """
    Reads commands from a named pipe.

    An extra write descriptor is held open on the pipe so that producers
    closing their end do not produce EOF. If EOF is seen anyway the pipe is
    reopened.
    """

    name = "fifo-reader"

    def __init__(
        self,
        path: str,
        mailbox: CommandMailbox,
        stop_event: Optional[threading.Event] = None,
        on_fatal: Callable[[BaseException], None] = exit_on_fatal,
    ):
        super().__init__(mailbox, stop_event, on_fatal)
        self.path = path
        self._stream: Optional[BinaryIO] = None
        self._dummy_fd: Optional[int] = None

    def _open(self):
        # Blocks until a writer opens the pipe
        fd = os.open(self.path, os.O_RDONLY)
        try:
            self._dummy_fd = os.open(self.path, os.O_WRONLY)
        except OSError as e:
            os.close(fd)
            raise CommandSourceError(f"Open dummy writer on {self.path}: {e}") from e
        self._stream = os.fdopen(fd, "rb")

    def _wake(self):
        # O_RDWR never blocks on a FIFO and counts as a writer, which releases
        # a reader blocked in open(); the newline releases one blocked in readline()
        try:
            fd = os.open(self.path, os.O_RDWR | os.O_NONBLOCK)
        except OSError as e:
            logger.debug(f"Could not open {self.path} to wake the reader: {e}")
            return
        try:
            os.write(fd, b"\n")
        except OSError as e:
            logger.debug(f"Could not wake the FIFO reader: {e}")
        finally:
            os.close(fd)

    def _close(self):
        if self._stream is not None:
            self._stream.close()
            self._stream = None
        if self._dummy_fd is not None:
            os.close(self._dummy_fd)
            self._dummy_fd = None

    def _read_loop(self):
        try:
            while not self._stop_event.is_set():
                if self._stream is None:
                    logger.info(f"Waiting for a command on the FIFO {self.path}")
                    try:
                        self._open()
                    except OSError as e:
                        raise CommandSourceError(f"Open fifo {self.path}: {e}") from e

                try:
                    line = read_line(self._stream, self.mailbox.max_length)
                except OSError as e:
                    logger.warning(f"Error while reading from FIFO, trying again: {e}")
                    self._stop_event.wait(RETRY_DELAY_S)
                    continue

                if line is None:
                    logger.warning("Received EOF on the FIFO, reopening")
                    self._close()
                    continue

                if self._stop_event.is_set():
                    break
                self._deliver(line)
        finally:
            self._close()


class ZmqCommandSource(CommandSource):
    """
    Receives commands over ZeroMQ.

    Binds a PULL socket; producers connect with PUSH and send two-part
    messages [b"command", text].
    """

    name = "zmq-reader"

    def __init__(
        self,
        endpoint: str,
        mailbox: CommandMailbox,
        stop_event: Optional[threading.Event] = None,
        timeout_ms: int = 500,
        on_fatal: Callable[[BaseException], None] = exit_on_fatal,
    ):
        super().__init__(mailbox, stop_event, on_fatal)
        self.endpoint = endpoint
        self.timeout_ms = timeout_ms

        self.context: Optional[zmq.Context] = None
        self.socket: Optional[zmq.Socket] = None

    def bind(self):
        """Set up the PULL socket. Called by run() if not done already."""
        if self.socket is not None:
            return
        self.context = zmq.Context()
        self.socket = self.context.socket(zmq.PULL)
        self.socket.setsockopt(zmq.RCVTIMEO, self.timeout_ms)
        self.socket.setsockopt(zmq.LINGER, 0)
        try:
            self.socket.bind(self.endpoint)
        except zmq.ZMQError as e:
            self.close()
            raise CommandSourceError(f"Failed to bind to {self.endpoint}: {e}") from e
        logger.info(f"ZMQ command source bound to {self.endpoint}")

    def close(self):
        if self.socket:
            self.socket.close()
            self.socket = None
        if self.context:
            self.context.term()
            self.context = None

    def _read_loop(self):
        self.bind()
        try:
            while not self._stop_event.is_set():
                try:
                    parts = self.socket.recv_multipart()
                except zmq.Again:
                    continue

                if len(parts) != 2 or parts[0] != COMMAND_TOPIC:
                    logger.warning(f"Ignoring malformed command message ({len(parts)} parts)")
                    continue

                text = parts[1][:self.mailbox.max_length].decode("utf-8", errors="replace")
                self._deliver(text.rstrip("\n"))
        finally:
            self.close()


def send_command(endpoint: str, text: str, timeout_ms: int = 2000) -> bool:
    """
    Send one command to a ZmqCommandSource.

    Returns:
        True if the message was handed to ZeroMQ within timeout_ms
    """
    context = zmq.Context()
    socket = context.socket(zmq.PUSH)
    socket.setsockopt(zmq.SNDTIMEO, timeout_ms)
    socket.setsockopt(zmq.LINGER, timeout_ms)
    try:
        socket.connect(endpoint)
        socket.send_multipart([COMMAND_TOPIC, text.encode("utf-8")])
        return True
    except zmq.Again:
        logger.error(f"Timed out sending command to {endpoint}")
        return False
    finally:
        socket.close()
        context.term()
