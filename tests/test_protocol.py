"""Tests for the wire protocol."""

import socket

import pytest
from screen_relay.errors import ProtocolError
from screen_relay.protocol import (
    MAX_PAYLOAD_LENGTH,
    Frame,
    FrameKind,
    FrameReader,
    decode_length_prefix,
    encode_deliver,
    encode_length_prefix,
    encode_notify,
    encode_probe,
)


class TestLengthPrefix:
    def test_small_values(self):
        assert encode_length_prefix(0) == b"\x00\x00\x00\x00"
        assert encode_length_prefix(5) == b"\x05\x00\x00\x00"
        assert encode_length_prefix(254) == b"\xfe\x00\x00\x00"

    def test_base_255_digits(self):
        # 255 carries into the second digit, unlike base 256
        assert encode_length_prefix(255) == b"\x00\x01\x00\x00"
        assert encode_length_prefix(256) == b"\x01\x01\x00\x00"
        assert encode_length_prefix(255 * 255) == b"\x00\x00\x01\x00"
        assert encode_length_prefix(255 ** 3) == b"\x00\x00\x00\x01"

    def test_max_length(self):
        assert MAX_PAYLOAD_LENGTH == 255 ** 4 - 1 == 4_228_250_624
        assert encode_length_prefix(MAX_PAYLOAD_LENGTH) == b"\xfe\xfe\xfe\xfe"

    def test_round_trip(self):
        for n in [0, 1, 254, 255, 256, 65025, 1_000_000, 3_456_789, 255 ** 3 + 17, MAX_PAYLOAD_LENGTH]:
            assert decode_length_prefix(encode_length_prefix(n)) == n

    def test_never_emits_0xff(self):
        for n in [255 ** 4 - 1, 16_777_215, 4_000_000_000, 123_456_789]:
            assert 0xFF not in encode_length_prefix(n)

    def test_out_of_range(self):
        with pytest.raises(ValueError):
            encode_length_prefix(-1)
        with pytest.raises(ValueError):
            encode_length_prefix(MAX_PAYLOAD_LENGTH + 1)

    def test_decode_wrong_size(self):
        with pytest.raises(ProtocolError):
            decode_length_prefix(b"\x01\x02\x03")


class TestFrames:
    def test_notify(self):
        assert encode_notify() == b"\x01"

    def test_probe(self):
        assert encode_probe() == b"\x03"

    def test_deliver(self):
        assert encode_deliver(b"ABCDE") == b"\x02\x05\x00\x00\x00ABCDE"

    def test_deliver_empty(self):
        assert encode_deliver(b"") == b"\x02\x00\x00\x00\x00"


class TestFrameReader:
    def setup_method(self):
        self.writer, self.reader_sock = socket.socketpair()
        self.reader = FrameReader(self.reader_sock)

    def teardown_method(self):
        self.writer.close()
        self.reader_sock.close()

    def test_reads_mixed_stream(self):
        payload = bytes(range(256)) * 4
        self.writer.sendall(encode_notify() + encode_deliver(payload) + encode_probe())
        assert self.reader.read_frame() == Frame(FrameKind.NOTIFY)
        assert self.reader.read_frame() == Frame(FrameKind.DELIVER, payload)
        assert self.reader.read_frame() == Frame(FrameKind.PROBE)

    def test_clean_close_returns_none(self):
        self.writer.sendall(encode_notify())
        self.writer.close()
        assert self.reader.read_frame().kind == FrameKind.NOTIFY
        assert self.reader.read_frame() is None

    def test_unknown_tag(self):
        self.writer.sendall(b"\x07")
        with pytest.raises(ProtocolError):
            self.reader.read_frame()

    def test_truncated_payload(self):
        self.writer.sendall(b"\x02\x0a\x00\x00\x00abc")
        self.writer.close()
        with pytest.raises(ProtocolError):
            self.reader.read_frame()
