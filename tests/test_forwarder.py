"""Tests for the forwarder."""

import os
import socket
import threading
import time

import pytest
from screen_relay.forwarder import Forwarder, SessionEnd, read_payload
from screen_relay.liveness import ClientStatus, LivenessFlag
from screen_relay.mailbox import CommandMailbox
from screen_relay.protocol import encode_length_prefix


def recv_exactly(sock: socket.socket, size: int) -> bytes:
    data = b""
    while len(data) < size:
        chunk = sock.recv(size - len(data))
        if not chunk:
            break
        data += chunk
    return data


class TestReadPayload:
    def test_reads_file(self, tmp_path):
        path = tmp_path / "photo.jpg"
        path.write_bytes(b"ABCDE")
        assert read_payload(str(path)) == b"ABCDE"

    def test_missing_file(self, tmp_path):
        with pytest.raises(OSError):
            read_payload(str(tmp_path / "missing.jpg"))

    def test_directory(self, tmp_path):
        with pytest.raises(OSError):
            read_payload(str(tmp_path))


class TestForwarder:
    def setup_method(self):
        self.mailbox = CommandMailbox()
        self.flag = LivenessFlag()
        self.flag.set_status(ClientStatus.ALIVE)
        self.stop_event = threading.Event()
        self.forwarder = Forwarder(self.mailbox, self.flag, poll_interval=0.05, stop_event=self.stop_event)
        self.server_sock, self.client_sock = socket.socketpair()
        self.client_sock.settimeout(5.0)
        self.result = []
        self.thread = threading.Thread(
            target=lambda: self.result.append(self.forwarder.run(self.server_sock))
        )

    def teardown_method(self):
        self.stop_event.set()
        if self.thread.is_alive():
            self.thread.join(timeout=5.0)
        self.client_sock.close()

    def finish(self) -> SessionEnd:
        self.thread.join(timeout=5.0)
        assert not self.thread.is_alive()
        return self.result[0]

    def test_notify(self):
        self.thread.start()
        self.mailbox.publish("+")
        assert self.client_sock.recv(1) == b"\x01"
        self.stop_event.set()
        assert self.finish() == SessionEnd.STOPPED
        assert self.forwarder.notifications_sent == 1

    def test_deliver(self, tmp_path, wait_until):
        path = tmp_path / "photo.jpg"
        path.write_bytes(b"ABCDE")
        self.thread.start()
        self.mailbox.publish(str(path))
        assert recv_exactly(self.client_sock, 10) == b"\x02\x05\x00\x00\x00ABCDE"
        assert wait_until(lambda: self.forwarder.files_sent == 1)

    def test_missing_file_keeps_session(self, tmp_path, wait_until):
        self.thread.start()
        self.mailbox.publish(str(tmp_path / "missing.jpg"))
        assert wait_until(lambda: self.forwarder.files_skipped == 1)
        assert self.thread.is_alive()

        self.mailbox.publish("+")
        assert self.client_sock.recv(1) == b"\x01"

    def test_empty_command_sends_nothing(self, wait_until):
        self.thread.start()
        self.mailbox.publish("")
        assert wait_until(lambda: not self.mailbox.available)

        self.mailbox.publish("+")
        # The first byte on the wire is the notification, nothing before it
        assert self.client_sock.recv(1) == b"\x01"
        assert wait_until(lambda: self.forwarder.notifications_sent == 1)

    def test_dead_client_ends_session_on_idle(self):
        self.flag.set_status(ClientStatus.DEAD)
        self.thread.start()
        assert self.finish() == SessionEnd.CLIENT_DEAD
        # Socket was closed without sending anything
        assert self.client_sock.recv(1) == b""

    def test_write_failure_ends_session(self):
        self.client_sock.close()
        self.thread.start()
        self.mailbox.publish("+")
        assert self.finish() == SessionEnd.WRITE_FAILED
        # Only the heartbeat marks the client dead
        assert self.flag.is_alive

    def test_last_command_wins_while_busy(self, tmp_path):
        first = tmp_path / "first.jpg"
        first.write_bytes(b"11111")
        second = tmp_path / "second.jpg"
        second.write_bytes(b"22")
        self.mailbox.publish(str(first))
        self.mailbox.publish(str(second))
        self.thread.start()
        assert recv_exactly(self.client_sock, 7) == b"\x02\x02\x00\x00\x0022"
        self.stop_event.set()
        assert self.finish() == SessionEnd.STOPPED
        assert self.forwarder.files_sent == 1

    def test_large_file_to_slow_reader(self, tmp_path, wait_until):
        payload = os.urandom(2 * 1024 * 1024)
        path = tmp_path / "large.jpg"
        path.write_bytes(payload)
        # The whole transfer takes far longer than one send may stall
        self.server_sock.settimeout(0.3)
        self.thread.start()
        self.mailbox.publish(str(path))

        header = recv_exactly(self.client_sock, 5)
        assert header == b"\x02" + encode_length_prefix(len(payload))
        data = bytearray()
        while len(data) < len(payload):
            chunk = self.client_sock.recv(min(50 * 1024, len(payload) - len(data)))
            assert chunk
            data += chunk
            time.sleep(0.025)
        assert bytes(data) == payload
        assert wait_until(lambda: self.forwarder.files_sent == 1)
        assert self.thread.is_alive()
