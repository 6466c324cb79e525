"""
Single-slot command handoff between the command source and the forwarder.

Only the most recent command matters ("show the latest photo"), so the
mailbox holds one pending command and every publish overwrites it.
"""

import enum
import logging
import threading
import time
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

# 255-byte command buffer, one byte reserved for the terminator
MAX_COMMAND_LENGTH = 254

NOTIFY_SENTINEL = "+"


class CommandKind(enum.Enum):
    NOTIFY = "notify"    # photo was just taken
    DELIVER = "deliver"  # send the photo at path
    EMPTY = "empty"      # blank line, nothing to send


@dataclass(frozen=True)
class Command:
    kind: CommandKind
    path: Optional[str] = None


def parse_command(text: str) -> Command:
    """Classify raw command text."""
    if not text:
        return Command(CommandKind.EMPTY)
    if text[0] == NOTIFY_SENTINEL:
        return Command(CommandKind.NOTIFY)
    return Command(CommandKind.DELIVER, path=text)


class CommandMailbox:
    """
    Last-write-wins slot guarded by its own lock and condition.

    publish() never blocks on the consumer. take() waits at most the given
    timeout so the caller can re-check client liveness while idle.
    """

    def __init__(self, max_length: int = MAX_COMMAND_LENGTH):
        self.max_length = max_length
        self._lock = threading.Lock()
        self._cond = threading.Condition(self._lock)
        self._pending: Optional[str] = None
        self._available = False

        # Stats
        self.published = 0
        self.overwritten = 0

    @property
    def available(self) -> bool:
        with self._lock:
            return self._available

    def publish(self, text: str):
        """Store text as the pending command, replacing any unconsumed one."""
        if len(text) > self.max_length:
            logger.warning(
                f"Command of {len(text)} characters truncated to {self.max_length}"
            )
            text = text[:self.max_length]
        with self._lock:
            if self._available:
                self.overwritten += 1
            self._pending = text
            self._available = True
            self.published += 1
            self._cond.notify()

    def take(self, timeout: float) -> Optional[Command]:
        """
        Wait up to timeout seconds for a command.

        Returns:
            The parsed command, or None if nothing was published in time.
        """
        deadline = time.monotonic() + timeout
        with self._lock:
            while not self._available:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                self._cond.wait(remaining)
            text = self._pending
            self._pending = None
            self._available = False
        return parse_command(text)
