"""
Client liveness tracking.

The display app connects to the heartbeat channel as well as the data
channel. LivenessMonitor keeps that heartbeat connection busy with probe
frames; the first probe that cannot be written means the app is gone, even
if it never closed its socket. The result is published through a
LivenessFlag that the data-channel session loop reads.

Usage:
    flag = LivenessFlag()
    monitor = LivenessMonitor(flag, transport, port=1339)
    monitor.start()
    flag.wait_until_alive()
"""

import enum
import logging
import socket
import threading
from typing import Callable, Optional

from .errors import BindError, exit_on_fatal
from .protocol import encode_probe
from .transport import Transport, close_quietly, write_fully

logger = logging.getLogger(__name__)

DEFAULT_PROBE_INTERVAL_S = 0.5
ACCEPT_RETRY_DELAY_S = 0.2


class ClientStatus(enum.Enum):
    DEAD = 0
    ALIVE = 1


class LivenessFlag:
    """
    Process-wide ALIVE/DEAD indicator guarded by its own lock.

    Starts DEAD. Waiters are woken once per DEAD -> ALIVE transition.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._alive_cond = threading.Condition(self._lock)
        self._status = ClientStatus.DEAD
        self._transitions = 0

    @property
    def status(self) -> ClientStatus:
        with self._lock:
            return self._status

    @property
    def is_alive(self) -> bool:
        return self.status == ClientStatus.ALIVE

    @property
    def transitions(self) -> int:
        """Number of status changes so far."""
        with self._lock:
            return self._transitions

    def set_status(self, status: ClientStatus) -> bool:
        """Set the status. Returns True if this changed it."""
        with self._lock:
            if status == self._status:
                return False
            self._status = status
            self._transitions += 1
            if status == ClientStatus.ALIVE:
                self._alive_cond.notify_all()
            return True

    def wait_until_alive(self, timeout: Optional[float] = None) -> bool:
        """
        Block until the client is ALIVE.

        Returns immediately if it already is. With a timeout, returns False
        if the client did not come alive in time.
        """
        with self._lock:
            return self._alive_cond.wait_for(
                lambda: self._status == ClientStatus.ALIVE, timeout
            )


class LivenessMonitor:
    """
    Background thread serving the heartbeat channel.

    AwaitingClient: bind a fresh listening socket, accept one client,
    set the flag ALIVE. Connected: write a probe every probe_interval until a
    write fails, then set the flag DEAD, close both sockets and go back to
    AwaitingClient.
    """

    def __init__(
        self,
        flag: LivenessFlag,
        transport: Transport,
        port: int,
        probe_interval: float = DEFAULT_PROBE_INTERVAL_S,
        stop_event: Optional[threading.Event] = None,
        on_fatal: Callable[[BaseException], None] = exit_on_fatal,
    ):
        self.flag = flag
        self.transport = transport
        self.port = port
        self.probe_interval = probe_interval
        self.on_fatal = on_fatal

        self._stop_event = stop_event or threading.Event()
        self._thread: Optional[threading.Thread] = None

        # Stats
        self.clients_seen = 0
        self.probes_sent = 0

    def start(self):
        self._thread = threading.Thread(
            target=self.run, daemon=True, name="liveness-monitor"
        )
        self._thread.start()

    def stop(self, timeout: float = 2.0):
        self._stop_event.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout=timeout)
        self._thread = None

    def run(self):
        """Serve heartbeat clients until stopped."""
        try:
            while not self._stop_event.is_set():
                self._serve_one_client()
        except BindError as e:
            self.on_fatal(e)

    def _serve_one_client(self):
        lsock = self.transport.bind(self.port)
        try:
            logger.info(f"Waiting for a client to connect to the heartbeat channel (port {self.port})")
            conn = None
            while conn is None:
                if self._stop_event.is_set():
                    return
                try:
                    conn, addr = self.transport.accept(lsock)
                except socket.timeout:
                    continue
                except OSError as e:
                    logger.warning(f"accept heartbeat: {e}")
                    self._stop_event.wait(ACCEPT_RETRY_DELAY_S)
                    continue

            logger.info(f"Heartbeat connection accepted from {addr}")
            self.clients_seen += 1
            self.flag.set_status(ClientStatus.ALIVE)
            self._probe_until_failure(conn)
        finally:
            close_quietly(lsock)

    def _probe_until_failure(self, conn):
        probe = encode_probe()
        try:
            while True:
                if not write_fully(conn, probe):
                    logger.warning("Error on write of heartbeat probe, client is gone")
                    break
                self.probes_sent += 1
                if self._stop_event.wait(self.probe_interval):
                    break
        finally:
            self.flag.set_status(ClientStatus.DEAD)
            close_quietly(conn)
