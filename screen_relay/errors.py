"""
Error classes.

Fatal errors (BindError, CommandSourceError) end the process. Session-ending
and transient failures are reported as return values, not exceptions.
"""

import logging
import os

logger = logging.getLogger(__name__)


class RelayError(Exception):
    """Base class for screen relay errors."""


class ProtocolError(RelayError):
    """Malformed or unexpected data on the wire."""


class BindError(RelayError):
    """No address could be bound for a listening socket."""


class CommandSourceError(RelayError):
    """The command source cannot be set up."""


def exit_on_fatal(error: BaseException):
    """Default fatal handler for worker threads."""
    logger.critical(f"Fatal error in {type(error).__name__}: {error}")
    # sys.exit would only end the calling thread
    os._exit(1)
