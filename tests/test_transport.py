"""Tests for the TCP plumbing."""

import os
import socket
import threading
import time

import pytest
from screen_relay.errors import BindError
from screen_relay.transport import Transport, write_fully


def slow_reader(sock: socket.socket, size: int, chunk: int, pause: float, out: list):
    """Reads size bytes in small chunks with a pause between them."""
    data = bytearray()
    while len(data) < size:
        part = sock.recv(min(chunk, size - len(data)))
        if not part:
            break
        data += part
        time.sleep(pause)
    out.append(bytes(data))


class TestWriteFully:
    def setup_method(self):
        self.sender, self.receiver = socket.socketpair()

    def teardown_method(self):
        self.sender.close()
        self.receiver.close()

    def test_small_write(self):
        assert write_fully(self.sender, b"\x01")
        assert self.receiver.recv(1) == b"\x01"

    def test_slow_reader_longer_than_timeout(self):
        # About 2 s to drain with a 0.3 s send timeout
        payload = os.urandom(2 * 1024 * 1024)
        self.sender.settimeout(0.3)
        received = []
        reader = threading.Thread(
            target=slow_reader,
            args=(self.receiver, len(payload), 50 * 1024, 0.025, received),
        )
        reader.start()
        try:
            assert write_fully(self.sender, payload)
        finally:
            reader.join(timeout=30.0)
        assert received[0] == payload

    def test_stalled_reader_fails(self):
        self.sender.settimeout(0.2)
        start = time.monotonic()
        assert not write_fully(self.sender, b"x" * (16 * 1024 * 1024))
        assert time.monotonic() - start < 5.0

    def test_closed_peer_fails(self):
        self.receiver.close()
        assert not write_fully(self.sender, b"\x01" * 1024)


class TestTransport:
    def test_bind_and_accept(self, free_port):
        port = free_port()
        transport = Transport(host="127.0.0.1", send_timeout=3.0, accept_poll=0.1)
        lsock = transport.bind(port)
        try:
            client = socket.create_connection(("127.0.0.1", port), timeout=2.0)
            conn, _ = transport.accept(lsock)
            assert conn.gettimeout() == 3.0
            conn.close()
            client.close()
        finally:
            lsock.close()

    def test_accept_times_out(self, free_port):
        transport = Transport(host="127.0.0.1", accept_poll=0.05)
        lsock = transport.bind(free_port())
        try:
            with pytest.raises(socket.timeout):
                transport.accept(lsock)
        finally:
            lsock.close()

    def test_port_in_use(self, free_port):
        port = free_port()
        blocker = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        blocker.bind(("127.0.0.1", port))
        blocker.listen(1)
        try:
            with pytest.raises(BindError):
                Transport(host="127.0.0.1").bind(port)
        finally:
            blocker.close()
