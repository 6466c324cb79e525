"""
Display client - receives photobooth events from the screen relay.

Speaks the same protocol as the display app, which makes it useful for
testing a relay without the app and for headless displays.

Usage:
    from screen_relay.client import ScreenClient

    client = ScreenClient("photobooth.local")
    client.connect()
    frame = client.receive(timeout=5.0)
    image = client.get_image(timeout=30.0)
    client.disconnect()
"""

import argparse
import logging
import select
import socket
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import cv2
import numpy as np

from .config import DATA_PORT, HEARTBEAT_PORT
from .errors import ProtocolError
from .protocol import Frame, FrameKind, FrameReader

logger = logging.getLogger(__name__)

CONNECT_RETRY_S = 0.1


@dataclass
class ClientInfo:
    """Connection information for the display client."""
    connected: bool
    host: str
    probes_received: int
    notifications: int
    photos: int


class ScreenClient:
    """Connects to both relay channels and reads frames from the data channel."""

    def __init__(
        self,
        host: str = "127.0.0.1",
        data_port: int = DATA_PORT,
        heartbeat_port: int = HEARTBEAT_PORT,
        connect_timeout: float = 10.0,
    ):
        """
        Initialize display client.

        Args:
            host: Relay host
            data_port: Data channel port
            heartbeat_port: Heartbeat channel port
            connect_timeout: How long to keep retrying refused connections; the
                relay opens each channel only when it is ready for a client
        """
        self.host = host
        self.data_port = data_port
        self.heartbeat_port = heartbeat_port
        self.connect_timeout = connect_timeout

        self.heartbeat_socket: Optional[socket.socket] = None
        self.data_socket: Optional[socket.socket] = None
        self._reader: Optional[FrameReader] = None
        self._heartbeat_thread: Optional[threading.Thread] = None
        self.connected = False

        # Stats
        self.probes_received = 0
        self.notifications = 0
        self.photos = 0

    def connect(self) -> bool:
        """Open the heartbeat channel, then the data channel."""
        if self.connected:
            return True

        deadline = time.monotonic() + self.connect_timeout
        self.heartbeat_socket = self._connect_retry(self.heartbeat_port, "heartbeat", deadline)
        if self.heartbeat_socket is None:
            self.disconnect()
            return False

        self._heartbeat_thread = threading.Thread(
            target=self._drain_heartbeat,
            args=(self.heartbeat_socket,),
            daemon=True,
            name="heartbeat-drain",
        )
        self._heartbeat_thread.start()

        # The relay only opens the data channel once the heartbeat is up
        self.data_socket = self._connect_retry(self.data_port, "data", deadline)
        if self.data_socket is None:
            self.disconnect()
            return False

        self._reader = FrameReader(self.data_socket)
        self.connected = True
        logger.info(f"Connected to screen relay at {self.host}")
        return True

    def _connect_retry(self, port: int, channel: str, deadline: float) -> Optional[socket.socket]:
        """Connect to port, retrying while the relay is not listening yet."""
        while True:
            try:
                sock = socket.create_connection(
                    (self.host, port), timeout=max(0.1, deadline - time.monotonic())
                )
            except ConnectionRefusedError:
                if time.monotonic() >= deadline:
                    logger.error(f"{channel.capitalize()} channel {self.host}:{port} never opened")
                    return None
                time.sleep(CONNECT_RETRY_S)
                continue
            except OSError as e:
                logger.error(f"Could not connect to {channel} channel {self.host}:{port}: {e}")
                return None
            sock.settimeout(None)
            return sock

    def disconnect(self):
        """Close both channels."""
        self.connected = False
        self._reader = None
        for sock in (self.data_socket, self.heartbeat_socket):
            if sock is None:
                continue
            try:
                sock.shutdown(socket.SHUT_RDWR)
            except OSError:
                pass  # already disconnected
            sock.close()
        self.data_socket = None
        self.heartbeat_socket = None

        if self._heartbeat_thread and self._heartbeat_thread.is_alive():
            self._heartbeat_thread.join(timeout=2.0)
        self._heartbeat_thread = None

    def _drain_heartbeat(self, sock: socket.socket):
        """Read probes so the relay's writes keep succeeding."""
        reader = FrameReader(sock)
        while True:
            try:
                frame = reader.read_frame()
            except (OSError, ProtocolError) as e:
                logger.debug(f"Heartbeat channel closed: {e}")
                return
            if frame is None:
                logger.info("Relay closed the heartbeat channel")
                return
            if frame.kind == FrameKind.PROBE:
                self.probes_received += 1
            else:
                logger.warning(f"Unexpected {frame.kind.name} frame on heartbeat channel")

    def receive(self, timeout: Optional[float] = None) -> Optional[Frame]:
        """
        Wait for the next frame on the data channel.

        Returns:
            The frame, or None on timeout or if the relay closed the session
        """
        if not self.connected:
            return None

        ready, _, _ = select.select([self.data_socket], [], [], timeout)
        if not ready:
            return None

        try:
            frame = self._reader.read_frame()
        except (OSError, ProtocolError) as e:
            logger.error(f"Error receiving frame: {e}")
            self.disconnect()
            return None

        if frame is None:
            logger.info("Relay closed the data channel")
            self.disconnect()
            return None

        if frame.kind == FrameKind.NOTIFY:
            self.notifications += 1
        elif frame.kind == FrameKind.DELIVER:
            self.photos += 1
        return frame

    def get_image_bytes(self, timeout: Optional[float] = None) -> Optional[bytes]:
        """
        Wait for the next delivered photo, skipping notifications.

        Returns:
            Raw file bytes, or None on timeout/disconnect
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
            frame = self.receive(remaining)
            if frame is None:
                return None
            if frame.kind == FrameKind.DELIVER:
                return frame.payload

    def get_image(self, timeout: Optional[float] = None) -> Optional[np.ndarray]:
        """
        Wait for the next delivered photo and decode it.

        Returns:
            numpy array (BGR format) or None on timeout/disconnect/undecodable data
        """
        data = self.get_image_bytes(timeout)
        if data is None:
            return None
        image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
        if image is None:
            logger.warning(f"Could not decode {len(data)} byte photo")
        return image

    def get_info(self) -> ClientInfo:
        return ClientInfo(
            connected=self.connected,
            host=self.host,
            probes_received=self.probes_received,
            notifications=self.notifications,
            photos=self.photos,
        )


def main():
    """CLI entry point."""
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    parser = argparse.ArgumentParser(
        description="Display client - prints events from a screen relay"
    )
    parser.add_argument(
        "host",
        nargs="?",
        default="127.0.0.1",
        help="Relay host (default: 127.0.0.1)"
    )
    parser.add_argument(
        "--data-port",
        type=int,
        default=DATA_PORT,
        help=f"Data channel port (default: {DATA_PORT})"
    )
    parser.add_argument(
        "--heartbeat-port",
        type=int,
        default=HEARTBEAT_PORT,
        help=f"Heartbeat channel port (default: {HEARTBEAT_PORT})"
    )
    parser.add_argument(
        "-o", "--save-dir",
        type=str,
        help="Save delivered photos into this directory"
    )
    args = parser.parse_args()

    save_dir = Path(args.save_dir) if args.save_dir else None
    if save_dir:
        save_dir.mkdir(parents=True, exist_ok=True)

    client = ScreenClient(args.host, args.data_port, args.heartbeat_port)
    try:
        while True:
            if not client.connect():
                time.sleep(1.0)
                continue
            frame = client.receive(timeout=1.0)
            if frame is None:
                continue
            if frame.kind == FrameKind.NOTIFY:
                logger.info("Photo taken")
                continue

            image = cv2.imdecode(np.frombuffer(frame.payload, dtype=np.uint8), cv2.IMREAD_COLOR)
            if image is not None:
                height, width = image.shape[:2]
                logger.info(f"Photo received: {len(frame.payload)} bytes, {width}x{height}")
            else:
                logger.info(f"Photo received: {len(frame.payload)} bytes (not an image)")
            if save_dir:
                path = save_dir / f"photo_{client.photos:04d}.jpg"
                path.write_bytes(frame.payload)
                logger.info(f"Saved {path}")
    except KeyboardInterrupt:
        logger.info("Interrupted")
    finally:
        client.disconnect()


if __name__ == "__main__":
    main()
