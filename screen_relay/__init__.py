"""Screen relay - forwards photobooth events to a remote display over TCP."""

from .client import ScreenClient
from .config import RelayConfig
from .forwarder import Forwarder, SessionEnd
from .liveness import ClientStatus, LivenessFlag, LivenessMonitor
from .mailbox import Command, CommandKind, CommandMailbox
from .server import RelayServer, SessionLoop

__all__ = [
    "ScreenClient",
    "RelayConfig",
    "Forwarder",
    "SessionEnd",
    "ClientStatus",
    "LivenessFlag",
    "LivenessMonitor",
    "Command",
    "CommandKind",
    "CommandMailbox",
    "RelayServer",
    "SessionLoop",
]
