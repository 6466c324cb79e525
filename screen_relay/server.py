#!/usr/bin/env python3
"""
Screen relay server - forwards photobooth events to the display app.

Three threads cooperate:
    command source    reads "+" / photo paths and publishes them to the mailbox
    liveness monitor  serves the heartbeat channel and maintains the liveness flag
    session loop      (main thread) serves the data channel, one client at a time

Usage:
    python -m screen_relay.server /tmp/photobooth.fifo [options]

    Or as systemd service:
    systemctl --user start screen-relay
"""

import argparse
import logging
import signal
import socket
import sys
import threading
from typing import Optional

from .command_source import CommandSource, FifoCommandSource, ZmqCommandSource, create_fifo
from .config import LOG_LEVELS, RelayConfig
from .errors import BindError, CommandSourceError
from .forwarder import Forwarder, SessionEnd
from .liveness import LivenessFlag, LivenessMonitor
from .mailbox import CommandMailbox
from .transport import Transport, close_quietly

logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

# How often blocking waits wake up to check for shutdown
SHUTDOWN_POLL_S = 1.0

# Pause after a failed accept before the next bind
ACCEPT_RETRY_DELAY_S = 0.2


class SessionLoop:
    """
    Serves the data channel.

    Waits for the liveness flag, binds a fresh listening socket, accepts one
    client and forwards commands to it until the session ends. The listening
    socket is closed before the next one is bound, so a second client is never
    accepted while a session is active.
    """

    def __init__(
        self,
        flag: LivenessFlag,
        mailbox: CommandMailbox,
        transport: Transport,
        port: int,
        poll_interval: float = 0.5,
        stop_event: Optional[threading.Event] = None,
    ):
        self.flag = flag
        self.transport = transport
        self.port = port
        self._stop_event = stop_event or threading.Event()
        self.forwarder = Forwarder(mailbox, flag, poll_interval, self._stop_event)

        self.sessions_served = 0
        self.last_session_end: Optional[SessionEnd] = None

    def run(self):
        """Serve sessions until stopped. BindError propagates."""
        while not self._stop_event.is_set():
            self.run_once()

    def run_once(self) -> Optional[SessionEnd]:
        """
        Serve at most one session.

        Returns:
            How the session ended, or None if no client was accepted
            (shutdown, or the accept failed).
        """
        logger.info("Waiting for the client heartbeat")
        while not self.flag.wait_until_alive(timeout=SHUTDOWN_POLL_S):
            if self._stop_event.is_set():
                return None

        lsock = self.transport.bind(self.port)
        try:
            conn = self._accept(lsock)
            if conn is None:
                return None
            reason = self.forwarder.run(conn)
        finally:
            close_quietly(lsock)

        self.sessions_served += 1
        self.last_session_end = reason
        logger.info(f"Session ended: {reason.value}")
        return reason

    def _accept(self, lsock: socket.socket) -> Optional[socket.socket]:
        logger.info(f"Waiting for an image receiver to connect (port {self.port})")
        while not self._stop_event.is_set():
            try:
                conn, addr = self.transport.accept(lsock)
            except socket.timeout:
                continue
            except OSError as e:
                logger.warning(f"accept: {e}")
                self._stop_event.wait(ACCEPT_RETRY_DELAY_S)
                return None
            logger.info(f"Connection accepted from {addr}")
            return conn
        return None


class RelayServer:
    """Wires the mailbox, liveness monitor, command source and session loop together."""

    def __init__(self, config: Optional[RelayConfig] = None):
        self.config = config or RelayConfig()
        self.stop_event = threading.Event()

        self.flag = LivenessFlag()
        self.mailbox = CommandMailbox()
        self.transport = Transport(
            host=self.config.host,
            backlog=self.config.backlog,
            send_timeout=self.config.send_timeout,
            accept_poll=SHUTDOWN_POLL_S,
        )
        self.monitor = LivenessMonitor(
            self.flag,
            self.transport,
            self.config.heartbeat_port,
            probe_interval=self.config.probe_interval,
            stop_event=self.stop_event,
        )
        self.source = self._make_source()
        self.session_loop = SessionLoop(
            self.flag,
            self.mailbox,
            self.transport,
            self.config.data_port,
            poll_interval=self.config.poll_interval,
            stop_event=self.stop_event,
        )

    def _make_source(self) -> CommandSource:
        if self.config.zmq_endpoint:
            return ZmqCommandSource(self.config.zmq_endpoint, self.mailbox, self.stop_event)
        return FifoCommandSource(self.config.fifo_path, self.mailbox, self.stop_event)

    def start(self):
        """Create the FIFO if needed and start the background threads."""
        if isinstance(self.source, FifoCommandSource):
            create_fifo(self.config.fifo_path)
        self.source.start()
        self.monitor.start()

    def run(self):
        """Start the background threads and serve sessions until stopped."""
        self.start()
        try:
            self.session_loop.run()
        finally:
            self.stop()

    def stop(self):
        self.stop_event.set()
        self.monitor.stop()
        self.source.stop()
        logger.info("Screen relay stopped")


def build_config(args: argparse.Namespace) -> RelayConfig:
    """Environment first, then whatever was given on the command line."""
    config = RelayConfig.from_env()
    overrides = {
        "fifo_path": args.fifo,
        "host": args.host,
        "data_port": args.data_port,
        "heartbeat_port": args.heartbeat_port,
        "probe_interval": args.probe_interval,
        "poll_interval": args.poll_interval,
        "send_timeout": args.send_timeout,
        "zmq_endpoint": args.zmq_endpoint,
        "log_level": args.log_level,
    }
    for name, value in overrides.items():
        if value is not None:
            setattr(config, name, value)
    if config.send_timeout is not None and config.send_timeout <= 0:
        config.send_timeout = None
    return config


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Send image data to the screen of the photobooth."
    )
    parser.add_argument(
        "fifo",
        nargs="?",
        help="Named pipe on which this server receives commands "
             "(default: $SCREEN_RELAY_FIFO or /tmp/screen-relay.fifo)"
    )
    parser.add_argument(
        "--host",
        type=str,
        help="Address to bind (default: all interfaces)"
    )
    parser.add_argument(
        "--data-port",
        type=int,
        help="Data channel port (default: 1338)"
    )
    parser.add_argument(
        "--heartbeat-port",
        type=int,
        help="Heartbeat channel port (default: 1339)"
    )
    parser.add_argument(
        "--probe-interval",
        type=float,
        help="Seconds between heartbeat probes (default: 0.5)"
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        help="Seconds between liveness checks while idle (default: 0.5)"
    )
    parser.add_argument(
        "--send-timeout",
        type=float,
        help="Seconds before a blocked write counts as failed, 0 to disable (default: 10)"
    )
    parser.add_argument(
        "-z", "--zmq-endpoint",
        type=str,
        help="Read commands from this ZeroMQ endpoint instead of the FIFO"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=LOG_LEVELS,
        help="Log level (default: INFO)"
    )
    return parser.parse_args(argv)


def main(argv=None):
    """CLI entry point."""
    args = parse_args(argv)
    try:
        config = build_config(args)
    except ValueError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(2)

    logging.basicConfig(level=config.log_level, format=LOG_FORMAT)
    logger.info(f"Configuration: {config.to_dict()}")

    server = RelayServer(config)

    # Handle signals for graceful shutdown
    def signal_handler(sig, frame):
        logger.info(f"Received signal {sig}")
        server.stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        server.run()
    except (BindError, CommandSourceError) as e:
        logger.critical(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
