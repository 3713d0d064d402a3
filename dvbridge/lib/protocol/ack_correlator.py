"""
SLCAN Acknowledgement Correlator
FIFO table of outstanding command acknowledgements with per-waiter timeouts
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Optional

from dvbridge.lib.errors import AckError, AckRejected, AckTimeout
from dvbridge.lib.protocol.slcan_protocol import (
    ACK_ERROR_TOKENS, ACK_OK_TOKENS, FRAME_MARKERS, POLL_TOKEN, SlcanCommand
)

logger = logging.getLogger(__name__)

# Default timeouts (ms)
ACK_TIMEOUT_MS = 750
INIT_ACK_TIMEOUT_MS = 2000
CLOSE_ACK_TIMEOUT_MS = 150

# Lines that can never be a version string
_VERSION_EXCLUDED_MARKERS = FRAME_MARKERS + ("r", "R")
_VERSION_EXCLUDED_TOKENS = ("Z", POLL_TOKEN)


@dataclass
class AckWaiter:
    """One outstanding acknowledgement"""
    command: str
    allow_ack_error: bool
    future: asyncio.Future
    created_at: float = field(default_factory=time.monotonic)
    timeout_handle: Optional[asyncio.TimerHandle] = None

    def cancel_timer(self):
        if self.timeout_handle is not None:
            self.timeout_handle.cancel()
            self.timeout_handle = None


class AckCorrelator:
    """
    Matches inbound lines to outstanding commands.

    Only the head waiter may match the next line. Every waiter leaves the
    table exactly once: on match, on timeout, or via clear_all().
    """

    def __init__(self):
        self._waiters: Deque[AckWaiter] = deque()
        self.unsolicited_errors = 0

    @property
    def pending(self) -> int:
        return len(self._waiters)

    def head(self) -> Optional[AckWaiter]:
        return self._waiters[0] if self._waiters else None

    def register(self, command: str, allow_ack_error: bool = False,
                 timeout_ms: int = ACK_TIMEOUT_MS) -> AckWaiter:
        """Append a waiter for command and arm its timeout"""
        loop = asyncio.get_running_loop()
        waiter = AckWaiter(
            command=command,
            allow_ack_error=allow_ack_error,
            future=loop.create_future(),
        )
        waiter.timeout_handle = loop.call_later(
            max(0, timeout_ms) / 1000.0, self._expire, waiter
        )
        self._waiters.append(waiter)
        return waiter

    def discard(self, waiter: AckWaiter):
        """Drop a waiter whose command never reached the wire"""
        waiter.cancel_timer()
        try:
            self._waiters.remove(waiter)
        except ValueError:
            pass

    def _expire(self, waiter: AckWaiter):
        waiter.timeout_handle = None
        try:
            self._waiters.remove(waiter)
        except ValueError:
            return
        logger.warning(f"SLCAN command {waiter.command!r} timed out waiting for acknowledgement")
        if not waiter.future.done():
            waiter.future.set_exception(AckTimeout(
                waiter.command,
                f'SLCAN command "{waiter.command}" timed out waiting for acknowledgement'
            ))

    def settle_next(self, success: bool, value: Any = True):
        """Resolve or reject the head waiter"""
        if not self._waiters:
            if not success:
                self.unsolicited_errors += 1
                logger.debug("Ignoring unsolicited SLCAN error acknowledgement")
            return

        waiter = self._waiters.popleft()
        waiter.cancel_timer()
        if waiter.future.done():
            return

        if success:
            waiter.future.set_result(value)
        elif waiter.allow_ack_error:
            waiter.future.set_result(None)
        else:
            logger.warning(f"SLCAN command {waiter.command!r} rejected by adapter")
            waiter.future.set_exception(AckRejected(
                waiter.command,
                f'SLCAN command "{waiter.command}" rejected by adapter'
            ))

    def match_line(self, trimmed_line: str) -> bool:
        """
        Try to consume a trimmed inbound line as the head waiter's ack.
        Returns False when the line should fall through to frame handling.
        """
        waiter = self.head()
        if waiter is None:
            upper = trimmed_line.upper()
            if upper in ACK_OK_TOKENS or upper in ACK_ERROR_TOKENS:
                logger.debug(f"Discarding unsolicited acknowledgement {trimmed_line!r}")
                if upper in ACK_ERROR_TOKENS:
                    self.unsolicited_errors += 1
                return True
            return False

        upper = trimmed_line.upper()
        if upper in ACK_OK_TOKENS:
            self.settle_next(True)
            return True

        if upper in ACK_ERROR_TOKENS:
            self.settle_next(False)
            return True

        if waiter.command == SlcanCommand.VERSION:
            if trimmed_line[:1] in _VERSION_EXCLUDED_MARKERS or upper in _VERSION_EXCLUDED_TOKENS:
                return False
            self.settle_next(True, trimmed_line)
            return True

        if upper == waiter.command.upper():
            self.settle_next(True)
            return True

        return False

    def allow_implicit_open_ack(self, trimmed_line: str) -> bool:
        """Any non-error line while waiting on O means the channel opened"""
        waiter = self.head()
        if waiter is None or waiter.command != SlcanCommand.OPEN:
            return False
        if trimmed_line.upper() in ACK_ERROR_TOKENS:
            return False
        self.settle_next(True)
        return True

    def clear_all(self, reason: str = "serial acknowledgements cleared"):
        """Fail every outstanding waiter immediately"""
        pending, self._waiters = self._waiters, deque()
        for waiter in pending:
            waiter.cancel_timer()
            if not waiter.future.done():
                waiter.future.set_exception(AckError(waiter.command, reason))
