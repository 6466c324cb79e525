"""Pytest configuration."""

import os
import socket
import sys
import time

import pytest

# Add project root to path
sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))


def _free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def free_port():
    """Returns a function that picks an unused localhost TCP port."""
    return _free_port


@pytest.fixture
def wait_until():
    """Returns a function that polls predicate until it is true or timeout expires."""
    def _wait_until(predicate, timeout: float = 5.0, interval: float = 0.01) -> bool:
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            if predicate():
                return True
            time.sleep(interval)
        return predicate()
    return _wait_until


@pytest.fixture
def connect_retry():
    """Returns a function that connects to a localhost port, retrying while it is not listening yet."""
    def _connect(port: int, timeout: float = 5.0) -> socket.socket:
        deadline = time.monotonic() + timeout
        while True:
            try:
                return socket.create_connection(("127.0.0.1", port), timeout=timeout)
            except ConnectionRefusedError:
                if time.monotonic() >= deadline:
                    raise
                time.sleep(0.02)
    return _connect
