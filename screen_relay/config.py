"""
Relay configuration.

Defaults match the ports deployed display apps connect to. Every field can
be overridden from the environment (SCREEN_RELAY_<FIELD>) and then from the
command line.
"""

import os
from dataclasses import dataclass, fields
from typing import Optional

DEFAULT_FIFO = "/tmp/screen-relay.fifo"
DATA_PORT = 1338
HEARTBEAT_PORT = 1339

ENV_PREFIX = "SCREEN_RELAY_"

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass
class RelayConfig:
    """Complete relay configuration."""

    fifo_path: str = DEFAULT_FIFO

    # Network
    host: Optional[str] = None  # None = all interfaces
    data_port: int = DATA_PORT
    heartbeat_port: int = HEARTBEAT_PORT
    backlog: int = 0

    # Timing (seconds)
    probe_interval: float = 0.5
    poll_interval: float = 0.5  # worst-case idle detection latency for a dead client
    send_timeout: Optional[float] = 10.0

    # Read commands from ZeroMQ instead of the FIFO
    zmq_endpoint: Optional[str] = None

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "RelayConfig":
        """Build a config from SCREEN_RELAY_* variables, falling back to defaults."""
        environ = os.environ if environ is None else environ
        config = cls()
        for f in fields(cls):
            # fifo_path is read from SCREEN_RELAY_FIFO
            name = "FIFO" if f.name == "fifo_path" else f.name.upper()
            raw = environ.get(ENV_PREFIX + name)
            if raw is None or raw == "":
                continue
            setattr(config, f.name, _convert(f.name, raw))
        return config

    def to_dict(self) -> dict:
        return {
            "fifo_path": self.fifo_path,
            "network": {
                "host": self.host or "*",
                "data_port": self.data_port,
                "heartbeat_port": self.heartbeat_port,
                "backlog": self.backlog,
            },
            "timing_s": {
                "probe_interval": self.probe_interval,
                "poll_interval": self.poll_interval,
                "send_timeout": self.send_timeout,
            },
            "zmq_endpoint": self.zmq_endpoint,
            "log_level": self.log_level,
        }


_INT_FIELDS = {"data_port", "heartbeat_port", "backlog"}
_FLOAT_FIELDS = {"probe_interval", "poll_interval", "send_timeout"}


def _convert(name: str, raw: str):
    if name == "log_level":
        level = raw.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"{ENV_PREFIX}LOG_LEVEL={raw!r} is not one of {', '.join(LOG_LEVELS)}")
        return level
    try:
        if name in _INT_FIELDS:
            return int(raw)
        if name in _FLOAT_FIELDS:
            value = float(raw)
            # 0 disables the send timeout
            if name == "send_timeout" and value <= 0:
                return None
            return value
    except ValueError:
        raise ValueError(f"{ENV_PREFIX}{name.upper()}={raw!r} is not a number")
    return raw
